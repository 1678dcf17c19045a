from backoffice.models.audience import Author, Lead
from backoffice.models.campaign import (
    MarketingCampaign,
    MarketingCampaignAsset,
    MarketingCampaignBatch,
    MarketingCampaignRecipient,
)

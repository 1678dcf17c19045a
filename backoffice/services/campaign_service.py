import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backoffice.core.config import settings
from backoffice.core.errors import NotFoundError, ValidationError
from backoffice.core.observability import log_event
from backoffice.models.campaign import (
    MarketingCampaign,
    MarketingCampaignAsset,
    MarketingCampaignBatch,
    MarketingCampaignRecipient,
)
from backoffice.schemas.campaign import CampaignAssetIn, CampaignCreateIn, CampaignUpdateIn
from backoffice.services.campaign_audience import includes_leads, includes_users
from backoffice.services.campaign_filters import compile_filter, parse_filter_tree
from backoffice.services.campaign_state import (
    ensure_assets_mutable,
    ensure_deletable,
    ensure_editable,
    get_campaign_or_404,
)

logger = logging.getLogger("backoffice.campaigns")

DUPLICATE_SUFFIX = " - copy"
MAX_CAMPAIGN_TITLE_LENGTH = 255


def build_duplicate_title(title: str) -> str:
    max_base_length = MAX_CAMPAIGN_TITLE_LENGTH - len(DUPLICATE_SUFFIX)
    return f"{title[:max_base_length]}{DUPLICATE_SUFFIX}"


def _filter_tree_json(tree) -> dict[str, Any] | None:
    node = parse_filter_tree(tree)
    return node.model_dump(mode="json") if node is not None else None


def validate_filter_for_audience(tree, audience_source: str) -> None:
    """Compile once per targeted source so bad values fail before anything is stored."""
    strict = settings.campaign_filter_reject_unknown_fields
    if includes_users(audience_source):
        compile_filter(tree, "users", reject_unknown_fields=strict)
    if includes_leads(audience_source):
        compile_filter(tree, "leads", reject_unknown_fields=strict)


def create_campaign(db: Session, payload: CampaignCreateIn, *, actor: str) -> MarketingCampaign:
    validate_filter_for_audience(payload.filter_tree, payload.audience_source)
    campaign = MarketingCampaign(
        id=str(uuid.uuid4()),
        title=payload.title,
        description=payload.description,
        status="draft",
        audience_source=payload.audience_source,
        user_notification_preferences=payload.user_notification_preferences,
        filter_tree=_filter_tree_json(payload.filter_tree),
        daily_send_limit=payload.daily_send_limit,
        start_at=payload.start_at,
        end_at=payload.end_at,
        created_by=actor,
        updated_by=actor,
    )
    db.add(campaign)
    db.flush()
    log_event(logger, "campaign.created", campaign_id=campaign.id, actor=actor)
    return campaign


def list_campaigns(
    db: Session,
    *,
    page: int = 1,
    limit: int = 20,
    status: str | None = None,
) -> tuple[list[MarketingCampaign], int]:
    count_stmt = select(func.count(MarketingCampaign.id))
    stmt = select(MarketingCampaign)
    if status:
        count_stmt = count_stmt.where(MarketingCampaign.status == status)
        stmt = stmt.where(MarketingCampaign.status == status)
    total = int(db.execute(count_stmt).scalar_one())
    rows = db.execute(
        stmt.order_by(MarketingCampaign.created_at.desc(), MarketingCampaign.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).scalars().all()
    return list(rows), total


def update_campaign(db: Session, campaign_id: str, payload: CampaignUpdateIn, *, actor: str) -> MarketingCampaign:
    """Apply metadata and asset changes in one transaction.

    Metadata and filter changes need a draft campaign; asset upserts are also
    accepted while active.
    """
    campaign = get_campaign_or_404(db, campaign_id, for_update=True)
    changes = payload.model_dump(exclude_unset=True, exclude={"assets", "filter_tree"})
    filter_changed = "filter_tree" in payload.model_fields_set

    if changes or filter_changed:
        ensure_editable(campaign)
        audience_source = changes.get("audience_source", campaign.audience_source)
        tree = payload.filter_tree if filter_changed else campaign.filter_tree
        validate_filter_for_audience(tree, audience_source)
        start_at = changes.get("start_at", campaign.start_at)
        end_at = changes.get("end_at", campaign.end_at)
        if start_at and end_at and _as_utc(end_at) <= _as_utc(start_at):
            raise ValidationError("end_at must be after start_at", field="end_at")
        for key, value in changes.items():
            setattr(campaign, key, value)
        if filter_changed:
            campaign.filter_tree = _filter_tree_json(payload.filter_tree)

    if payload.assets:
        ensure_assets_mutable(campaign)
        for asset in payload.assets:
            _upsert_asset_row(db, campaign_id=campaign.id, asset=asset)

    campaign.updated_by = actor
    campaign.updated_at = datetime.now(timezone.utc)
    db.flush()
    log_event(
        logger,
        "campaign.updated",
        campaign_id=campaign.id,
        actor=actor,
        fields=sorted([*changes, *(["filter_tree"] if filter_changed else [])]),
        assets=len(payload.assets or []),
    )
    return campaign


def delete_campaign(db: Session, campaign_id: str, *, actor: str) -> None:
    campaign = get_campaign_or_404(db, campaign_id, for_update=True)
    ensure_deletable(campaign)
    db.execute(delete(MarketingCampaignRecipient).where(MarketingCampaignRecipient.campaign_id == campaign.id))
    db.execute(delete(MarketingCampaignBatch).where(MarketingCampaignBatch.campaign_id == campaign.id))
    db.execute(delete(MarketingCampaignAsset).where(MarketingCampaignAsset.campaign_id == campaign.id))
    db.delete(campaign)
    db.flush()
    log_event(logger, "campaign.deleted", campaign_id=campaign_id, actor=actor)


def duplicate_campaign(db: Session, campaign_id: str, *, actor: str) -> MarketingCampaign:
    """Clone a campaign and its assets as a new draft; batches and recipients stay behind."""
    source = get_campaign_or_404(db, campaign_id)
    duplicated = MarketingCampaign(
        id=str(uuid.uuid4()),
        title=build_duplicate_title(source.title),
        description=source.description,
        status="draft",
        audience_source=source.audience_source,
        user_notification_preferences=source.user_notification_preferences,
        filter_tree=source.filter_tree,
        daily_send_limit=source.daily_send_limit,
        start_at=source.start_at,
        end_at=source.end_at,
        created_by=actor,
        updated_by=actor,
    )
    db.add(duplicated)
    db.flush()
    for asset in list_assets(db, source.id):
        db.add(
            MarketingCampaignAsset(
                id=str(uuid.uuid4()),
                campaign_id=duplicated.id,
                channel=asset.channel,
                language=asset.language,
                subject=asset.subject,
                html_body=asset.html_body,
                text_body=asset.text_body,
            )
        )
    db.flush()
    log_event(logger, "campaign.duplicated", campaign_id=duplicated.id, source_campaign_id=source.id, actor=actor)
    return duplicated


def list_assets(db: Session, campaign_id: str) -> list[MarketingCampaignAsset]:
    return list(
        db.execute(
            select(MarketingCampaignAsset)
            .where(MarketingCampaignAsset.campaign_id == campaign_id)
            .order_by(MarketingCampaignAsset.language.asc())
        ).scalars()
    )


def _upsert_asset_row(db: Session, *, campaign_id: str, asset: CampaignAssetIn) -> MarketingCampaignAsset:
    existing = db.execute(
        select(MarketingCampaignAsset).where(
            MarketingCampaignAsset.campaign_id == campaign_id,
            MarketingCampaignAsset.channel == asset.channel,
            MarketingCampaignAsset.language == asset.language,
        )
    ).scalar_one_or_none()
    if existing is None:
        row = MarketingCampaignAsset(
            id=str(uuid.uuid4()),
            campaign_id=campaign_id,
            channel=asset.channel,
            language=asset.language,
            subject=asset.subject,
            html_body=asset.html_body,
            text_body=asset.text_body,
        )
        try:
            with db.begin_nested():
                db.add(row)
            return row
        except IntegrityError:
            # A concurrent writer created the same locale first; update theirs.
            existing = db.execute(
                select(MarketingCampaignAsset).where(
                    MarketingCampaignAsset.campaign_id == campaign_id,
                    MarketingCampaignAsset.channel == asset.channel,
                    MarketingCampaignAsset.language == asset.language,
                )
            ).scalar_one()

    existing.subject = asset.subject
    existing.html_body = asset.html_body
    existing.text_body = asset.text_body
    existing.updated_at = datetime.now(timezone.utc)
    db.flush()
    return existing


def upsert_asset(db: Session, campaign_id: str, asset: CampaignAssetIn, *, actor: str) -> MarketingCampaignAsset:
    campaign = get_campaign_or_404(db, campaign_id, for_update=True)
    ensure_assets_mutable(campaign)
    row = _upsert_asset_row(db, campaign_id=campaign.id, asset=asset)
    campaign.updated_by = actor
    campaign.updated_at = datetime.now(timezone.utc)
    db.flush()
    return row


def delete_asset(db: Session, campaign_id: str, asset_id: str, *, actor: str) -> None:
    campaign = get_campaign_or_404(db, campaign_id, for_update=True)
    ensure_assets_mutable(campaign, deleting=True)
    asset = db.execute(
        select(MarketingCampaignAsset).where(
            MarketingCampaignAsset.id == asset_id,
            MarketingCampaignAsset.campaign_id == campaign.id,
        )
    ).scalar_one_or_none()
    if not asset:
        raise NotFoundError("Asset", asset_id)
    db.delete(asset)
    campaign.updated_by = actor
    campaign.updated_at = datetime.now(timezone.utc)
    db.flush()


def get_campaign_progress(db: Session, campaign_id: str) -> dict[str, int]:
    rows = db.execute(
        select(MarketingCampaignRecipient.status, func.count(MarketingCampaignRecipient.id))
        .where(MarketingCampaignRecipient.campaign_id == campaign_id)
        .group_by(MarketingCampaignRecipient.status)
    ).all()
    counts = {status: int(count) for status, count in rows}
    return {
        "sent": counts.get("sent", 0),
        "failed": counts.get("failed", 0),
        "skipped": counts.get("skipped", 0),
        "queued": counts.get("queued", 0),
        "total": sum(counts.values()),
    }


def get_batch_history(
    db: Session,
    campaign_id: str,
    *,
    page: int = 1,
    limit: int = 20,
    include_samples: bool = False,
) -> tuple[list[MarketingCampaignBatch], int]:
    filters = [MarketingCampaignBatch.campaign_id == campaign_id]
    if not include_samples:
        filters.append(MarketingCampaignBatch.sample_send.is_(False))
    total = int(db.execute(select(func.count(MarketingCampaignBatch.id)).where(*filters)).scalar_one())
    rows = db.execute(
        select(MarketingCampaignBatch)
        .where(*filters)
        .order_by(MarketingCampaignBatch.requested_at.desc(), MarketingCampaignBatch.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).scalars().all()
    return list(rows), total


def start_of_utc_day(now: datetime | None = None) -> datetime:
    current = _as_utc(now or datetime.now(timezone.utc))
    return current.replace(hour=0, minute=0, second=0, microsecond=0)


def get_daily_send_count(
    db: Session,
    campaign_id: str,
    *,
    now: datetime | None = None,
    include_in_flight: bool = False,
) -> int:
    """Emails sent today (UTC). With ``include_in_flight``, claimed but unfinished rows count too."""
    sent_today = and_(
        MarketingCampaignRecipient.status == "sent",
        MarketingCampaignRecipient.processed_at >= start_of_utc_day(now),
    )
    condition = or_(sent_today, MarketingCampaignRecipient.status == "queued") if include_in_flight else sent_today
    return int(
        db.execute(
            select(func.count(MarketingCampaignRecipient.id)).where(
                MarketingCampaignRecipient.campaign_id == campaign_id,
                condition,
            )
        ).scalar_one()
    )


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

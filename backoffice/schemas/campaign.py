from datetime import datetime
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from backoffice.schemas.common import PaginationMeta


CampaignStatus = Literal["draft", "active", "paused", "completed", "cancelled"]
AudienceSource = Literal["users", "leads", "both"]
NotificationPreference = Literal["essential", "inspiration", "news"]
AssetChannel = Literal["email"]
BatchStatus = Literal["queued", "running", "completed", "failed"]
RecipientStatus = Literal["queued", "sent", "failed", "skipped"]
RecipientType = Literal["user", "lead"]
FilterOperator = Literal["eq", "ne", "gt", "gte", "lt", "lte", "between", "in", "not_in", "is_null"]
SupportedLocale = Literal["en-US", "pt-PT", "es-ES", "fr-FR", "de-DE"]
AssetTemplateName = Literal["default", "story-launch", "enchanted-scroll", "minimal-ink", "aurora-split"]

SUPPORTED_LOCALES: tuple[str, ...] = ("en-US", "pt-PT", "es-ES", "fr-FR", "de-DE")


class FilterCondition(BaseModel):
    field: str = Field(min_length=1, max_length=64)
    operator: FilterOperator
    value: Any = None

    model_config = ConfigDict(extra="forbid")


class FilterGroup(BaseModel):
    logic: Literal["and", "or"] = "and"
    conditions: list[Union[FilterCondition, "FilterGroup"]] = Field(default_factory=list)

    model_config = ConfigDict(
        extra="forbid",
        json_schema_extra={
            "example": {
                "logic": "and",
                "conditions": [
                    {"field": "preferredLocale", "operator": "eq", "value": "en-US"},
                    {
                        "logic": "or",
                        "conditions": [
                            {"field": "lastLoginAt", "operator": "gte", "value": "2026-01-01T00:00:00Z"},
                            {"field": "createdAt", "operator": "between", "value": ["2025-01-01", "2025-06-30"]},
                        ],
                    },
                ],
            }
        },
    )


FilterGroup.model_rebuild()

FilterNode = Union[FilterCondition, FilterGroup]


class CampaignAssetIn(BaseModel):
    channel: AssetChannel = "email"
    language: str = Field(min_length=2, max_length=10, pattern=r"^[a-z]{2}(-[A-Z]{2})?$")
    subject: str = Field(min_length=1, max_length=1000)
    html_body: str = Field(min_length=1)
    text_body: str = Field(min_length=1)


class CampaignCreateIn(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=5000)
    audience_source: AudienceSource = "users"
    user_notification_preferences: list[NotificationPreference] | None = Field(default=None, min_length=1)
    filter_tree: FilterNode | None = None
    daily_send_limit: int | None = Field(default=None, ge=1)
    start_at: datetime | None = None
    end_at: datetime | None = None

    @field_validator("title")
    @classmethod
    def validate_title(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("title is required")
        return cleaned

    @model_validator(mode="after")
    def validate_window(self) -> "CampaignCreateIn":
        if self.start_at and self.end_at and self.end_at <= self.start_at:
            raise ValueError("end_at must be after start_at")
        return self

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "title": "Spring story launch",
                "description": "Announce the new illustrated templates",
                "audience_source": "both",
                "user_notification_preferences": ["news", "inspiration"],
                "filter_tree": {
                    "logic": "and",
                    "conditions": [{"field": "preferredLocale", "operator": "eq", "value": "en-US"}],
                },
                "daily_send_limit": 500,
            }
        }
    )


class CampaignUpdateIn(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=5000)
    audience_source: AudienceSource | None = None
    user_notification_preferences: list[NotificationPreference] | None = Field(default=None, min_length=1)
    filter_tree: FilterNode | None = None
    daily_send_limit: int | None = Field(default=None, ge=1)
    start_at: datetime | None = None
    end_at: datetime | None = None
    assets: list[CampaignAssetIn] | None = None

    @model_validator(mode="after")
    def validate_has_field(self) -> "CampaignUpdateIn":
        if not self.model_fields_set:
            raise ValueError("At least one field must be provided")
        if "title" in self.model_fields_set and self.title is None:
            raise ValueError("title cannot be null")
        if "audience_source" in self.model_fields_set and self.audience_source is None:
            raise ValueError("audience_source cannot be null")
        return self


class CampaignOut(BaseModel):
    id: str
    title: str
    description: str | None = None
    status: CampaignStatus
    audience_source: AudienceSource
    user_notification_preferences: list[NotificationPreference] | None = None
    filter_tree: dict[str, Any] | None = None
    filter_summary: str | None = None
    daily_send_limit: int | None = None
    start_at: datetime | None = None
    end_at: datetime | None = None
    created_by: str
    updated_by: str | None = None
    created_at: datetime
    updated_at: datetime


class CampaignListOut(BaseModel):
    items: list[CampaignOut]
    pagination: PaginationMeta
    status: CampaignStatus | None = None


class CampaignAssetOut(BaseModel):
    id: str
    campaign_id: str
    channel: AssetChannel
    language: str
    subject: str
    html_body: str
    text_body: str
    created_at: datetime
    updated_at: datetime


class BatchStatsOut(BaseModel):
    processed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0


class CampaignBatchOut(BaseModel):
    id: str
    campaign_id: str
    status: BatchStatus
    requested_by: str | None = None
    requested_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    stats: BatchStatsOut
    asset_snapshot_hash: str | None = None
    sample_send: bool
    error_message: str | None = None


class CampaignBatchListOut(BaseModel):
    items: list[CampaignBatchOut]
    pagination: PaginationMeta


class CampaignProgressOut(BaseModel):
    sent: int
    failed: int
    skipped: int
    queued: int
    total: int


class CampaignDetailOut(BaseModel):
    campaign: CampaignOut
    assets: list[CampaignAssetOut]
    progress: CampaignProgressOut
    batch_history: CampaignBatchListOut


class AudienceCountIn(BaseModel):
    audience_source: AudienceSource | None = None
    filter_tree: FilterNode | None = None
    user_notification_preferences: list[NotificationPreference] | None = None


class AudienceCountOut(BaseModel):
    users: int
    leads: int
    total: int


class SendBatchIn(BaseModel):
    batch_size: int | None = Field(default=None, ge=1, le=500)


class BatchRunOut(BaseModel):
    batch: CampaignBatchOut
    campaign_status: CampaignStatus


class ScheduledRunOut(BaseModel):
    campaign_id: str
    batch_id: str | None = None
    status: str
    error: str | None = None


class ScheduledRunListOut(BaseModel):
    items: list[ScheduledRunOut]


class SampleSendIn(BaseModel):
    locale: SupportedLocale
    emails: list[EmailStr] = Field(min_length=1)
    variables: dict[str, Any] | None = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "locale": "en-US",
                "emails": ["qa@mythoria.pt"],
                "variables": {"firstName": "Ana"},
            }
        }
    )


class GenerateAssetsIn(BaseModel):
    source_locale: SupportedLocale
    subject: str = Field(min_length=1, max_length=1000)
    body_description: str = Field(min_length=1, max_length=10_000)
    template_name: AssetTemplateName = "default"
    target_locales: list[SupportedLocale] | None = None


class AssetJobHandleOut(BaseModel):
    job_id: str


class GeneratedAssetOut(BaseModel):
    subject: str
    html_body: str
    text_body: str


class AssetJobResultOut(BaseModel):
    assets: dict[str, GeneratedAssetOut] = Field(default_factory=dict)


class AssetJobStatusOut(BaseModel):
    job_id: str
    status: Literal["queued", "running", "completed", "failed"]
    progress: int = Field(ge=0, le=100)
    result: AssetJobResultOut | None = None
    error: str | None = None
    applied_languages: list[str] | None = None

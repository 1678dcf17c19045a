import json
from typing import List, Union
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _split_list_value(v: Union[str, List[str], None], *, name: str) -> List[str]:
    if v is None:
        return []
    if isinstance(v, str):
        if not v.strip():
            return []
        if v.startswith("["):
            parsed = json.loads(v)
            if not isinstance(parsed, list):
                raise ValueError(f"{name} JSON value must be a list")
            return [str(i).strip() for i in parsed if str(i).strip()]
        return [i.strip() for i in v.split(",") if i.strip()]
    if isinstance(v, list):
        return [str(i).strip() for i in v if str(i).strip()]
    raise ValueError(v)


class Settings(BaseSettings):
    app_name: str = "Backoffice Admin API"
    env: str = "dev"
    secret_key: str
    access_token_expire_minutes: int = 480

    # DATABASES
    core_database_url: str
    admin_database_url: str
    db_pool_size: int = Field(default=10, ge=1, le=100)
    db_max_overflow: int = Field(default=20, ge=0, le=200)
    db_pool_timeout_seconds: int = Field(default=30, ge=1, le=300)
    db_pool_recycle_seconds: int = Field(default=1800, ge=30, le=86_400)
    db_connect_timeout_seconds: int = Field(default=10, ge=1, le=120)

    # GOOGLE AUTH
    google_client_id: str | None = None
    allowed_email_domains: List[str] = Field(default_factory=lambda: ["@mythoria.pt"])

    # CAMPAIGN DISPATCH
    notification_provider_default: str = "stub"
    notification_engine_url: str | None = None
    notification_engine_api_key: str | None = None
    dispatch_timeout_seconds: float = Field(default=10.0, gt=0, le=120)
    campaign_batch_size: int = Field(default=100, ge=10, le=500)
    campaign_sample_max_recipients: int = Field(default=5, ge=1, le=20)
    campaign_filter_reject_unknown_fields: bool = False

    # ASSET GENERATION WORKFLOW
    asset_workflow_url: str | None = None
    asset_workflow_api_key: str | None = None
    asset_job_timeout_seconds: float = Field(default=10.0, gt=0, le=120)
    asset_job_poll_interval_seconds: float = Field(default=3.0, gt=0, le=60)

    # CORS
    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])
    cors_origin_regex: str | None = None

    @field_validator("cors_origins", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> List[str]:
        return _split_list_value(v, name="CORS_ORIGINS")

    @field_validator("allowed_email_domains", mode="before")
    @classmethod
    def assemble_allowed_email_domains(cls, v: Union[str, List[str]]) -> List[str]:
        return [item.lower() for item in _split_list_value(v, name="ALLOWED_EMAIL_DOMAINS")]

    @field_validator(
        "google_client_id",
        "notification_engine_url",
        "notification_engine_api_key",
        "asset_workflow_url",
        "asset_workflow_api_key",
        mode="before",
    )
    @classmethod
    def normalize_optional_strings(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = str(value).strip()
        return cleaned or None

    @field_validator("notification_engine_url", "asset_workflow_url")
    @classmethod
    def strip_trailing_slash(cls, value: str | None) -> str | None:
        return value.rstrip("/") if value else value

    @model_validator(mode="after")
    def validate_production_safety(self) -> "Settings":
        env_value = self.env.lower().strip()
        if env_value not in {"prod", "production"}:
            return self

        weak_secrets = {
            "",
            "change_me",
            "change_me_please_to_a_long_random_string",
            "dev-secret-key-change-before-prod",
        }
        if self.secret_key.strip() in weak_secrets or len(self.secret_key.strip()) < 32:
            raise ValueError("SECRET_KEY must be a strong random value in production")

        if "*" in self.cors_origins:
            raise ValueError("CORS_ORIGINS cannot contain '*' in production")
        if self.cors_origin_regex:
            raise ValueError("CORS_ORIGIN_REGEX cannot be set in production")

        if not self.allowed_email_domains:
            raise ValueError("ALLOWED_EMAIL_DOMAINS must list at least one domain in production")

        if self.notification_provider_default == "notification_engine" and not self.notification_engine_url:
            raise ValueError("NOTIFICATION_ENGINE_URL is required when the notification engine provider is used")

        return self

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        enable_decoding=False,
    )


settings = Settings()

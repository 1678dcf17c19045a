import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("CORE_DATABASE_URL", "sqlite://")
os.environ.setdefault("ADMIN_DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import backoffice.models  # noqa: F401
from backoffice.core.config import settings
from backoffice.core.deps import get_admin_db, get_core_db
from backoffice.core.errors import DispatchError
from backoffice.core.security import create_access_token
from backoffice.db.base import Base
from backoffice.main import app
from backoffice.models.audience import Author, Lead
from backoffice.models.campaign import MarketingCampaign, MarketingCampaignAsset
from backoffice.routers.campaigns import get_dispatch_provider
from backoffice.services.notification_provider import EmailDispatchRequest, EmailDispatchResult

ADMIN_EMAIL = "admin@mythoria.pt"


class RecordingProvider:
    """Notification provider double that records every request and can fail chosen addresses."""

    name = "recording"

    def __init__(self):
        self.requests: list[EmailDispatchRequest] = []
        self.fail_for: set[str] = set()
        self.on_send = None

    def send_email(self, request: EmailDispatchRequest, *, timeout: float) -> EmailDispatchResult:
        self.requests.append(request)
        if self.on_send is not None:
            self.on_send(request)
        if request.to in self.fail_for:
            raise DispatchError(f"Mailbox unavailable for {request.to}")
        return EmailDispatchResult(provider=self.name, message_id=f"msg-{len(self.requests)}", status="sent")

    @property
    def sent_to(self) -> list[str]:
        return [item.to for item in self.requests]


@dataclass
class CampaignTestContext:
    client: TestClient
    core_session: sessionmaker
    admin_session: sessionmaker
    provider: RecordingProvider
    headers: dict[str, str] = field(default_factory=dict)


def _sqlite_engine():
    return create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


def _create_tables():
    core_engine = _sqlite_engine()
    admin_engine = _sqlite_engine()
    Author.__table__.create(bind=core_engine)
    Lead.__table__.create(bind=admin_engine)
    Base.metadata.create_all(bind=admin_engine)
    return core_engine, admin_engine


def auth_headers(email: str = ADMIN_EMAIL) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(email)}"}


@pytest.fixture()
def databases():
    original_secret = settings.secret_key
    settings.secret_key = "test-secret-key"

    core_engine, admin_engine = _create_tables()
    core_session = sessionmaker(autocommit=False, autoflush=False, bind=core_engine)
    admin_session = sessionmaker(autocommit=False, autoflush=False, bind=admin_engine)

    yield core_session, admin_session

    Base.metadata.drop_all(bind=admin_engine)
    Lead.__table__.drop(bind=admin_engine)
    Author.__table__.drop(bind=core_engine)
    settings.secret_key = original_secret


@pytest.fixture()
def dbs(databases):
    core_session, admin_session = databases
    core_db = core_session()
    admin_db = admin_session()
    try:
        yield core_db, admin_db
    finally:
        admin_db.close()
        core_db.close()


@pytest.fixture()
def provider():
    return RecordingProvider()


@pytest.fixture()
def test_context(databases, provider):
    core_session, admin_session = databases

    def override_get_core_db():
        db = core_session()
        try:
            yield db
        finally:
            db.close()

    def override_get_admin_db():
        db = admin_session()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_core_db] = override_get_core_db
    app.dependency_overrides[get_admin_db] = override_get_admin_db
    app.dependency_overrides[get_dispatch_provider] = lambda: provider

    with TestClient(app) as client:
        yield CampaignTestContext(
            client=client,
            core_session=core_session,
            admin_session=admin_session,
            provider=provider,
            headers=auth_headers(),
        )

    app.dependency_overrides.clear()


def add_author(
    db: Session,
    *,
    email: str,
    locale: str | None = "en-US",
    preference: str | None = "news",
    author_id: str | None = None,
    **extra,
) -> Author:
    author = Author(
        author_id=author_id or str(uuid.uuid4()),
        email=email,
        display_name=email.split("@")[0].title(),
        preferred_locale=locale,
        notification_preference=preference,
        created_at=extra.pop("created_at", datetime(2026, 1, 15, tzinfo=timezone.utc)),
        **extra,
    )
    db.add(author)
    db.commit()
    return author


def add_lead(
    db: Session,
    *,
    email: str,
    language: str | None = "en-US",
    email_status: str = "ready",
    lead_id: str | None = None,
) -> Lead:
    lead = Lead(
        id=lead_id or str(uuid.uuid4()),
        name=email.split("@")[0].title(),
        email=email,
        language=language,
        email_status=email_status,
    )
    db.add(lead)
    db.commit()
    return lead


def add_campaign(
    db: Session,
    *,
    status: str = "active",
    audience_source: str = "users",
    filter_tree: dict | None = None,
    preferences: list[str] | None = None,
    daily_send_limit: int | None = None,
    languages: tuple[str, ...] = ("en-US",),
    **extra,
) -> MarketingCampaign:
    campaign = MarketingCampaign(
        id=str(uuid.uuid4()),
        title=extra.pop("title", "Spring story launch"),
        status=status,
        audience_source=audience_source,
        user_notification_preferences=preferences,
        filter_tree=filter_tree,
        daily_send_limit=daily_send_limit,
        created_by=ADMIN_EMAIL,
        updated_by=ADMIN_EMAIL,
        **extra,
    )
    db.add(campaign)
    db.flush()
    for language in languages:
        db.add(
            MarketingCampaignAsset(
                id=str(uuid.uuid4()),
                campaign_id=campaign.id,
                channel="email",
                language=language,
                subject=f"[{language}] Hello {{{{name}}}}",
                html_body="<p>Hi {{name}}</p>",
                text_body="Hi {{name}}",
            )
        )
    db.commit()
    return campaign

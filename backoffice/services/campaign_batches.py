"""Batch send orchestration for marketing campaigns.

One call runs one batch to completion inside the current request: create the
batch row, resolve eligible recipients under the daily cap, claim each
recipient through the unique (campaign, recipient) row, dispatch, and record
the outcome. Every recipient outcome is committed on its own, so a failure
later in the batch never rolls back earlier sends.
"""

import hashlib
import json
import logging
import re
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from backoffice.core.config import settings
from backoffice.core.errors import BatchSetupError, CampaignError, DispatchError, InvalidStateError, ValidationError
from backoffice.core.observability import log_event
from backoffice.models.audience import Author, Lead
from backoffice.models.campaign import MarketingCampaign, MarketingCampaignBatch, MarketingCampaignRecipient
from backoffice.services.campaign_audience import (
    excluded_recipient_ids,
    includes_leads,
    includes_users,
    lead_audience_query,
    user_audience_query,
)
from backoffice.services.campaign_service import get_daily_send_count, list_assets
from backoffice.services.campaign_state import SYSTEM_ACTOR, get_campaign_or_404, mark_campaign_completed
from backoffice.services.notification_provider import (
    EmailDispatchRequest,
    NotificationProvider,
    get_notification_provider,
)

logger = logging.getLogger("backoffice.campaigns")

# Sent and in-flight recipients are never picked again. Failed and skipped rows
# are retried after every never-contacted recipient has had a turn.
NON_RETRYABLE_STATUSES: tuple[str, ...] = ("sent", "queued")
RETRYABLE_STATUSES: tuple[str, ...] = ("failed", "skipped")
ALL_RECIPIENT_STATUSES: tuple[str, ...] = NON_RETRYABLE_STATUSES + RETRYABLE_STATUSES

_TEMPLATE_VAR_RE = re.compile(r"{{\s*([a-zA-Z0-9_.]+)\s*}}")


@dataclass
class BatchStats:
    processed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0

    def as_dict(self) -> dict[str, int]:
        return {"processed": self.processed, "sent": self.sent, "failed": self.failed, "skipped": self.skipped}


@dataclass(frozen=True)
class AssetSnapshot:
    subject: str
    html_body: str
    text_body: str


@dataclass(frozen=True)
class EligibleRecipient:
    recipient_type: str
    recipient_id: str
    email: str
    language: str | None
    variables: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class BatchResult:
    batch: MarketingCampaignBatch
    stats: BatchStats
    campaign_status: str
    stopped_reason: str | None = None


@dataclass(frozen=True)
class ScheduledRun:
    campaign_id: str
    status: str
    batch_id: str | None = None
    error: str | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _short_error(value: Exception | str) -> str:
    text = str(value).strip() or "Dispatch failed"
    return text[:255]


def _resolve_path(container: Any, path: str) -> Any:
    current: Any = container
    for part in [item for item in (path or "").split(".") if item]:
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def render_template(template: str, context: dict[str, Any]) -> str:
    def _replace(match: re.Match[str]) -> str:
        resolved = _resolve_path(context, match.group(1))
        if resolved is None:
            return ""
        if isinstance(resolved, (dict, list)):
            return json.dumps(resolved, ensure_ascii=True)
        return str(resolved)

    return _TEMPLATE_VAR_RE.sub(_replace, template)


def snapshot_assets(admin_db: Session, campaign_id: str) -> tuple[dict[str, AssetSnapshot], str | None]:
    """Freeze the email assets for this run and hash them for the batch record."""
    snapshot = {
        asset.language: AssetSnapshot(subject=asset.subject, html_body=asset.html_body, text_body=asset.text_body)
        for asset in list_assets(admin_db, campaign_id)
        if asset.channel == "email"
    }
    if not snapshot:
        return snapshot, None
    canonical = json.dumps(
        {language: [item.subject, item.html_body, item.text_body] for language, item in snapshot.items()},
        sort_keys=True,
        ensure_ascii=False,
    )
    return snapshot, hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def asset_for_locale(snapshot: dict[str, AssetSnapshot], language: str | None) -> AssetSnapshot | None:
    if not language:
        return None
    if language in snapshot:
        return snapshot[language]
    lowered = {key.lower(): value for key, value in snapshot.items()}
    if language.lower() in lowered:
        return lowered[language.lower()]
    # "pt" or "pt-BR" falls back to any asset with the same primary language.
    primary = language.split("-")[0].lower()
    for key in sorted(lowered):
        if key.split("-")[0] == primary:
            return lowered[key]
    return None


def resolve_eligible_recipients(
    core_db: Session,
    admin_db: Session,
    campaign: MarketingCampaign,
    *,
    limit: int,
) -> list[EligibleRecipient]:
    """Recipients not yet sent or in flight for this campaign.

    Never-contacted users, then never-contacted leads, then failed or skipped
    users and leads again. Retries come last so a recipient that keeps failing
    never starves the rest of the audience.
    """
    if limit <= 0:
        return []
    recipients: list[EligibleRecipient] = []
    for retry in (False, True):
        if includes_users(campaign.audience_source) and len(recipients) < limit:
            recipients.extend(
                _eligible_users(core_db, admin_db, campaign, limit=limit - len(recipients), retry=retry)
            )
        if includes_leads(campaign.audience_source) and len(recipients) < limit:
            recipients.extend(_eligible_leads(admin_db, campaign, limit=limit - len(recipients), retry=retry))
    return recipients


def _eligible_users(
    core_db: Session,
    admin_db: Session,
    campaign: MarketingCampaign,
    *,
    limit: int,
    retry: bool,
) -> list[EligibleRecipient]:
    if retry:
        retryable = excluded_recipient_ids(
            admin_db, campaign_id=campaign.id, recipient_type="user", statuses=RETRYABLE_STATUSES
        )
        if not retryable:
            return []
        stmt = user_audience_query(
            filter_tree=campaign.filter_tree,
            preferences=campaign.user_notification_preferences,
            included_ids=retryable,
            dialect_name=core_db.get_bind().dialect.name,
        )
    else:
        contacted = excluded_recipient_ids(
            admin_db, campaign_id=campaign.id, recipient_type="user", statuses=ALL_RECIPIENT_STATUSES
        )
        stmt = user_audience_query(
            filter_tree=campaign.filter_tree,
            preferences=campaign.user_notification_preferences,
            excluded_ids=contacted,
            dialect_name=core_db.get_bind().dialect.name,
        )
    if stmt is None:
        return []
    authors = core_db.execute(stmt.order_by(Author.author_id).limit(limit)).scalars().all()
    return [
        EligibleRecipient(
            recipient_type="user",
            recipient_id=author.author_id,
            email=author.email,
            language=author.preferred_locale,
            variables={"name": author.display_name, "email": author.email},
        )
        for author in authors
    ]


def _eligible_leads(
    admin_db: Session,
    campaign: MarketingCampaign,
    *,
    limit: int,
    retry: bool,
) -> list[EligibleRecipient]:
    if retry:
        stmt = lead_audience_query(
            filter_tree=campaign.filter_tree,
            campaign_id=campaign.id,
            excluded_statuses=(),
            included_statuses=RETRYABLE_STATUSES,
        )
    else:
        stmt = lead_audience_query(
            filter_tree=campaign.filter_tree,
            campaign_id=campaign.id,
            excluded_statuses=ALL_RECIPIENT_STATUSES,
        )
    leads = admin_db.execute(stmt.order_by(Lead.id).limit(limit)).scalars().all()
    return [
        EligibleRecipient(
            recipient_type="lead",
            recipient_id=lead.id,
            email=lead.email,
            language=lead.language,
            variables={"name": lead.name, "email": lead.email},
        )
        for lead in leads
    ]


def _create_batch(admin_db: Session, *, campaign_id: str, requested_by: str | None, sample_send: bool) -> MarketingCampaignBatch:
    batch = MarketingCampaignBatch(
        id=str(uuid.uuid4()),
        campaign_id=campaign_id,
        status="queued",
        requested_by=requested_by,
        requested_at=_utcnow(),
        sample_send=sample_send,
        stats_json=BatchStats().as_dict(),
    )
    admin_db.add(batch)
    admin_db.commit()
    return batch


def _fail_batch(admin_db: Session, batch: MarketingCampaignBatch, *, reason: str, stats: BatchStats) -> None:
    try:
        batch.status = "failed"
        batch.completed_at = _utcnow()
        batch.error_message = _short_error(reason)
        batch.stats_json = stats.as_dict()
        admin_db.commit()
    except SQLAlchemyError as exc:
        admin_db.rollback()
        log_event(
            logger,
            "batch.fail_record_error",
            level=logging.ERROR,
            batch_id=batch.id,
            error=_short_error(exc),
        )
    log_event(logger, "batch.failed", level=logging.WARNING, batch_id=batch.id, reason=reason, **stats.as_dict())


def _current_status(admin_db: Session, campaign_id: str) -> str | None:
    return admin_db.execute(
        select(MarketingCampaign.status).where(MarketingCampaign.id == campaign_id)
    ).scalar_one_or_none()


def _lock_campaign_state(admin_db: Session, campaign_id: str) -> tuple[str | None, int | None]:
    """Status and daily limit under a row lock held until the next claim commits or rolls back."""
    row = admin_db.execute(
        select(MarketingCampaign.status, MarketingCampaign.daily_send_limit)
        .where(MarketingCampaign.id == campaign_id)
        .with_for_update()
    ).one_or_none()
    if row is None:
        return None, None
    return row.status, row.daily_send_limit


def _has_in_flight(admin_db: Session, campaign_id: str) -> bool:
    return (
        admin_db.execute(
            select(MarketingCampaignRecipient.id)
            .where(
                MarketingCampaignRecipient.campaign_id == campaign_id,
                MarketingCampaignRecipient.status == "queued",
            )
            .limit(1)
        ).first()
        is not None
    )


def _claim_recipient(
    admin_db: Session,
    *,
    batch: MarketingCampaignBatch,
    recipient: EligibleRecipient,
) -> MarketingCampaignRecipient | None:
    """Take ownership of the (campaign, recipient) row.

    The unique (campaign, recipient) constraint decides first-time claims. An
    existing row is only taken back while it is still failed or skipped, so a
    recipient that another run has sent or holds comes back as ``None``.
    """
    row = MarketingCampaignRecipient(
        id=str(uuid.uuid4()),
        batch_id=batch.id,
        campaign_id=batch.campaign_id,
        recipient_type=recipient.recipient_type,
        recipient_id=recipient.recipient_id,
        email=recipient.email,
        language=recipient.language,
        status="queued",
    )
    try:
        with admin_db.begin_nested():
            admin_db.add(row)
    except IntegrityError:
        pass
    else:
        admin_db.commit()
        return row

    result = admin_db.execute(
        update(MarketingCampaignRecipient)
        .where(
            MarketingCampaignRecipient.campaign_id == batch.campaign_id,
            MarketingCampaignRecipient.recipient_id == recipient.recipient_id,
            MarketingCampaignRecipient.status.in_(RETRYABLE_STATUSES),
        )
        .values(
            status="queued",
            batch_id=batch.id,
            email=recipient.email,
            language=recipient.language,
            last_error=None,
            processed_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        admin_db.rollback()
        return None
    admin_db.commit()
    return admin_db.execute(
        select(MarketingCampaignRecipient).where(
            MarketingCampaignRecipient.campaign_id == batch.campaign_id,
            MarketingCampaignRecipient.recipient_id == recipient.recipient_id,
        )
    ).scalar_one()


def _finish_recipient(
    admin_db: Session,
    row: MarketingCampaignRecipient,
    *,
    status: str,
    processed_at: datetime,
    error: str | None = None,
) -> None:
    row.status = status
    row.last_error = _short_error(error) if error else None
    row.processed_at = processed_at
    admin_db.commit()


def run_campaign_batch(
    core_db: Session,
    admin_db: Session,
    *,
    campaign_id: str,
    requested_by: str | None,
    provider: NotificationProvider | None = None,
    batch_size: int | None = None,
    now: datetime | None = None,
) -> BatchResult:
    """Run one send cycle for an active campaign.

    The batch is capped at ``min(batch_size, daily_send_limit - sent_today)``.
    Recipient dispatch failures are recorded and counted; only setup problems
    (no assets, database errors before dispatch) fail the whole batch.
    """
    provider = provider or get_notification_provider()
    clock: Callable[[], datetime] = (lambda: now) if now else _utcnow

    campaign = get_campaign_or_404(admin_db, campaign_id)
    if campaign.status != "active":
        raise InvalidStateError(
            f"Cannot send batch for campaign in '{campaign.status}' status. Only active campaigns can send.",
            current_status=campaign.status,
            operation="send_batch",
        )

    batch = _create_batch(admin_db, campaign_id=campaign_id, requested_by=requested_by, sample_send=False)
    stats = BatchStats()
    try:
        batch.status = "running"
        batch.started_at = clock()
        admin_db.commit()

        snapshot, snapshot_hash = snapshot_assets(admin_db, campaign_id)
        if not snapshot:
            raise BatchSetupError("Campaign has no email assets to send", batch_id=batch.id)
        batch.asset_snapshot_hash = snapshot_hash
        admin_db.commit()

        cap = batch_size or settings.campaign_batch_size
        if campaign.daily_send_limit is not None:
            used_today = get_daily_send_count(admin_db, campaign_id, now=clock(), include_in_flight=True)
            cap = min(cap, campaign.daily_send_limit - used_today)
        recipients = resolve_eligible_recipients(core_db, admin_db, campaign, limit=cap)
    except CampaignError as exc:
        admin_db.rollback()
        _fail_batch(admin_db, batch, reason=exc.message, stats=stats)
        if isinstance(exc, BatchSetupError):
            raise
        raise BatchSetupError(exc.message, batch_id=batch.id) from exc
    except SQLAlchemyError as exc:
        admin_db.rollback()
        _fail_batch(admin_db, batch, reason=f"Database error during batch setup: {exc}", stats=stats)
        raise BatchSetupError("Database error during batch setup", batch_id=batch.id) from exc

    log_event(
        logger,
        "batch.started",
        campaign_id=campaign_id,
        batch_id=batch.id,
        cap=cap,
        eligible=len(recipients),
        asset_snapshot_hash=snapshot_hash,
    )

    stopped_reason = None
    try:
        for recipient in recipients:
            # Concurrent batches share the daily limit, so it is rechecked under the lock per claim.
            status, daily_limit = _lock_campaign_state(admin_db, campaign_id)
            if status != "active":
                admin_db.rollback()
                stopped_reason = f"campaign {status}"
                break
            if daily_limit is not None and (
                get_daily_send_count(admin_db, campaign_id, now=clock(), include_in_flight=True) >= daily_limit
            ):
                admin_db.rollback()
                stopped_reason = "daily send limit reached"
                break

            row = _claim_recipient(admin_db, batch=batch, recipient=recipient)
            if row is None:
                continue
            stats.processed += 1

            asset = asset_for_locale(snapshot, recipient.language)
            if asset is None:
                _finish_recipient(
                    admin_db,
                    row,
                    status="skipped",
                    processed_at=clock(),
                    error=f"No asset for locale '{recipient.language or 'unknown'}'",
                )
                stats.skipped += 1
                continue

            context = {**recipient.variables, "locale": recipient.language}
            try:
                provider.send_email(
                    EmailDispatchRequest(
                        campaign_id=campaign_id,
                        batch_id=batch.id,
                        to=recipient.email,
                        locale=recipient.language or "",
                        subject=render_template(asset.subject, context),
                        html_body=render_template(asset.html_body, context),
                        text_body=render_template(asset.text_body, context),
                        recipient_type=recipient.recipient_type,
                        recipient_id=recipient.recipient_id,
                    ),
                    timeout=settings.dispatch_timeout_seconds,
                )
            except Exception as exc:  # noqa: BLE001
                error = exc if isinstance(exc, DispatchError) else f"{type(exc).__name__}: {exc}"
                _finish_recipient(admin_db, row, status="failed", processed_at=clock(), error=str(error))
                stats.failed += 1
                log_event(
                    logger,
                    "dispatch.failed",
                    level=logging.WARNING,
                    campaign_id=campaign_id,
                    batch_id=batch.id,
                    recipient_type=recipient.recipient_type,
                    recipient_id=recipient.recipient_id,
                    error=_short_error(str(error)),
                )
                continue

            _finish_recipient(admin_db, row, status="sent", processed_at=clock())
            stats.sent += 1
    except SQLAlchemyError as exc:
        admin_db.rollback()
        _fail_batch(admin_db, batch, reason=f"Database error while sending: {exc}", stats=stats)
        raise BatchSetupError("Database error while sending batch", batch_id=batch.id) from exc

    batch.status = "completed"
    batch.completed_at = clock()
    batch.stats_json = stats.as_dict()
    admin_db.commit()

    campaign_status = _current_status(admin_db, campaign_id) or campaign.status
    if campaign_status == "active" and stopped_reason is None:
        admin_db.expire(campaign)
        exhausted = not resolve_eligible_recipients(core_db, admin_db, campaign, limit=1) and not _has_in_flight(
            admin_db, campaign_id
        )
        if exhausted and mark_campaign_completed(admin_db, campaign_id):
            admin_db.commit()
            campaign_status = "completed"

    log_event(
        logger,
        "batch.completed",
        campaign_id=campaign_id,
        batch_id=batch.id,
        campaign_status=campaign_status,
        stopped_reason=stopped_reason,
        **stats.as_dict(),
    )
    return BatchResult(batch=batch, stats=stats, campaign_status=campaign_status, stopped_reason=stopped_reason)


def send_sample(
    admin_db: Session,
    *,
    campaign_id: str,
    locale: str,
    emails: list[str],
    variables: dict[str, Any] | None,
    requested_by: str | None,
    provider: NotificationProvider | None = None,
) -> MarketingCampaignBatch:
    """Send the locale's asset to a short fixed address list.

    Sample batches keep their counts in the batch stats only; no recipient rows
    are written, so they never affect deduplication or daily limits.
    """
    provider = provider or get_notification_provider()
    get_campaign_or_404(admin_db, campaign_id)

    addresses = list(dict.fromkeys(email.strip().lower() for email in emails if email and email.strip()))
    if not addresses:
        raise ValidationError("At least one sample address is required", field="emails")
    if len(addresses) > settings.campaign_sample_max_recipients:
        raise ValidationError(
            f"Sample sends are limited to {settings.campaign_sample_max_recipients} addresses",
            field="emails",
        )

    snapshot, snapshot_hash = snapshot_assets(admin_db, campaign_id)
    asset = snapshot.get(locale)
    if asset is None:
        raise ValidationError(f"No email asset for locale '{locale}'", field="locale")

    batch = _create_batch(admin_db, campaign_id=campaign_id, requested_by=requested_by, sample_send=True)
    batch.status = "running"
    batch.started_at = _utcnow()
    batch.asset_snapshot_hash = snapshot_hash
    admin_db.commit()

    context = {**(variables or {}), "locale": locale}
    stats = BatchStats()
    for address in addresses:
        stats.processed += 1
        try:
            provider.send_email(
                EmailDispatchRequest(
                    campaign_id=campaign_id,
                    batch_id=batch.id,
                    to=address,
                    locale=locale,
                    subject=render_template(asset.subject, context),
                    html_body=render_template(asset.html_body, context),
                    text_body=render_template(asset.text_body, context),
                    metadata={"sample": True},
                ),
                timeout=settings.dispatch_timeout_seconds,
            )
        except Exception as exc:  # noqa: BLE001
            stats.failed += 1
            log_event(
                logger,
                "dispatch.failed",
                level=logging.WARNING,
                campaign_id=campaign_id,
                batch_id=batch.id,
                sample=True,
                error=_short_error(exc),
            )
            continue
        stats.sent += 1

    batch.status = "completed"
    batch.completed_at = _utcnow()
    batch.stats_json = stats.as_dict()
    admin_db.commit()
    log_event(logger, "batch.sample_completed", campaign_id=campaign_id, batch_id=batch.id, **stats.as_dict())
    return batch


def run_scheduled_batches(
    core_db: Session,
    admin_db: Session,
    *,
    provider: NotificationProvider | None = None,
    now: datetime | None = None,
) -> list[ScheduledRun]:
    """Cron entry point: one batch per active campaign whose send window contains ``now``."""
    current = _as_utc(now or _utcnow())
    rows = admin_db.execute(
        select(MarketingCampaign.id, MarketingCampaign.start_at, MarketingCampaign.end_at)
        .where(MarketingCampaign.status == "active")
        .order_by(MarketingCampaign.created_at.asc())
    ).all()

    runs: list[ScheduledRun] = []
    for campaign_id, start_at, end_at in rows:
        if start_at is not None and _as_utc(start_at) > current:
            continue
        if end_at is not None and _as_utc(end_at) <= current:
            continue
        try:
            result = run_campaign_batch(
                core_db,
                admin_db,
                campaign_id=campaign_id,
                requested_by=SYSTEM_ACTOR,
                provider=provider,
                now=now,
            )
        except CampaignError as exc:
            admin_db.rollback()
            runs.append(
                ScheduledRun(
                    campaign_id=campaign_id,
                    status="failed",
                    batch_id=getattr(exc, "batch_id", None),
                    error=exc.message,
                )
            )
            continue
        runs.append(ScheduledRun(campaign_id=campaign_id, status=result.batch.status, batch_id=result.batch.id))
    return runs

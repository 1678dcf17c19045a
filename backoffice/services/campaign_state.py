import logging
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from backoffice.core.errors import InvalidStateError, InvalidTransitionError, NotFoundError
from backoffice.core.observability import log_event
from backoffice.models.campaign import MarketingCampaign

logger = logging.getLogger("backoffice.campaigns")

CAMPAIGN_STATUSES: tuple[str, ...] = ("draft", "active", "paused", "completed", "cancelled")

ALLOWED_TRANSITIONS: dict[str, tuple[str, ...]] = {
    "draft": ("active", "cancelled"),
    "active": ("paused", "cancelled"),
    "paused": ("active", "cancelled"),
    "completed": (),
    "cancelled": (),
}

SYSTEM_ACTOR = "system"


def allowed_transitions(status: str) -> list[str]:
    return list(ALLOWED_TRANSITIONS.get(status, ()))


def is_valid_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, ())


def get_campaign_or_404(db: Session, campaign_id: str, *, for_update: bool = False) -> MarketingCampaign:
    stmt = select(MarketingCampaign).where(MarketingCampaign.id == campaign_id)
    if for_update:
        stmt = stmt.with_for_update()
    campaign = db.execute(stmt).scalar_one_or_none()
    if not campaign:
        raise NotFoundError("Campaign", campaign_id)
    return campaign


def _compare_and_set_status(
    db: Session,
    campaign: MarketingCampaign,
    *,
    expected: str,
    target: str,
    actor: str,
) -> bool:
    result = db.execute(
        update(MarketingCampaign)
        .where(MarketingCampaign.id == campaign.id, MarketingCampaign.status == expected)
        .values(status=target, updated_by=actor, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount == 1


def transition_campaign(db: Session, campaign_id: str, target_status: str, actor: str) -> MarketingCampaign:
    """Move a campaign to ``target_status`` on behalf of ``actor``.

    The status is read under a row lock and written with a conditional update,
    so two concurrent requests from the same state cannot both succeed.
    ``completed`` is never reachable from here; only the send loop completes a
    campaign. The caller owns the commit.
    """
    campaign = get_campaign_or_404(db, campaign_id, for_update=True)
    current = campaign.status
    if target_status == "completed" or not is_valid_transition(current, target_status):
        raise InvalidTransitionError(current, target_status, allowed_transitions(current))

    if not _compare_and_set_status(db, campaign, expected=current, target=target_status, actor=actor):
        db.rollback()
        latest = get_campaign_or_404(db, campaign_id)
        raise InvalidTransitionError(latest.status, target_status, allowed_transitions(latest.status))

    db.refresh(campaign)
    log_event(
        logger,
        "campaign.transition",
        campaign_id=campaign_id,
        from_status=current,
        to_status=target_status,
        actor=actor,
    )
    return campaign


def mark_campaign_completed(db: Session, campaign_id: str) -> bool:
    """System-only ``active -> completed`` once the eligible audience is exhausted."""
    campaign = get_campaign_or_404(db, campaign_id, for_update=True)
    if campaign.status != "active":
        return False
    if not _compare_and_set_status(db, campaign, expected="active", target="completed", actor=SYSTEM_ACTOR):
        return False
    db.refresh(campaign)
    log_event(logger, "campaign.completed", campaign_id=campaign_id)
    return True


def ensure_editable(campaign: MarketingCampaign) -> None:
    if campaign.status != "draft":
        raise InvalidStateError(
            f"Cannot update campaign in '{campaign.status}' status. Only draft campaigns can be edited.",
            current_status=campaign.status,
            operation="update",
        )


def ensure_assets_mutable(campaign: MarketingCampaign, *, deleting: bool = False) -> None:
    if deleting and campaign.status != "draft":
        raise InvalidStateError(
            f"Cannot delete assets of campaign in '{campaign.status}' status. Only draft campaigns allow asset deletion.",
            current_status=campaign.status,
            operation="delete_asset",
        )
    if campaign.status not in {"draft", "active"}:
        raise InvalidStateError(
            f"Cannot update assets of campaign in '{campaign.status}' status. Only draft or active campaigns allow asset edits.",
            current_status=campaign.status,
            operation="upsert_asset",
        )


def ensure_deletable(campaign: MarketingCampaign) -> None:
    if campaign.status not in {"draft", "cancelled"}:
        raise InvalidStateError(
            f"Cannot delete campaign in '{campaign.status}' status. Only draft or cancelled campaigns can be deleted.",
            current_status=campaign.status,
            operation="delete",
        )

import pytest

from backoffice.core.errors import InvalidStateError, InvalidTransitionError, NotFoundError
from backoffice.models.campaign import MarketingCampaign
from backoffice.services.campaign_state import (
    ALLOWED_TRANSITIONS,
    CAMPAIGN_STATUSES,
    ensure_assets_mutable,
    ensure_deletable,
    ensure_editable,
    is_valid_transition,
    mark_campaign_completed,
    transition_campaign,
)

from conftest import ADMIN_EMAIL, add_campaign


@pytest.mark.parametrize(
    "current,target",
    [
        ("draft", "active"),
        ("draft", "cancelled"),
        ("active", "paused"),
        ("active", "cancelled"),
        ("paused", "active"),
        ("paused", "cancelled"),
    ],
)
def test_allowed_transitions_apply(dbs, current, target):
    _, admin_db = dbs
    campaign = add_campaign(admin_db, status=current)

    updated = transition_campaign(admin_db, campaign.id, target, ADMIN_EMAIL)
    admin_db.commit()

    assert updated.status == target
    assert updated.updated_by == ADMIN_EMAIL


def test_transition_table_is_closed_for_terminal_states():
    assert set(ALLOWED_TRANSITIONS) == set(CAMPAIGN_STATUSES)
    assert ALLOWED_TRANSITIONS["completed"] == ()
    assert ALLOWED_TRANSITIONS["cancelled"] == ()
    assert not is_valid_transition("draft", "paused")
    assert not is_valid_transition("active", "draft")


@pytest.mark.parametrize("current", ["draft", "paused", "active"])
def test_completed_is_never_a_manual_target(dbs, current):
    _, admin_db = dbs
    campaign = add_campaign(admin_db, status=current)

    with pytest.raises(InvalidTransitionError):
        transition_campaign(admin_db, campaign.id, "completed", ADMIN_EMAIL)


def test_invalid_transition_message_lists_allowed_targets(dbs):
    _, admin_db = dbs
    campaign = add_campaign(admin_db, status="draft")

    with pytest.raises(InvalidTransitionError) as exc_info:
        transition_campaign(admin_db, campaign.id, "paused", ADMIN_EMAIL)
    assert exc_info.value.message == "Invalid transition: 'draft' -> 'paused'. Allowed: active, cancelled"
    assert exc_info.value.status_code == 409

    cancelled = add_campaign(admin_db, status="cancelled")
    with pytest.raises(InvalidTransitionError) as exc_info:
        transition_campaign(admin_db, cancelled.id, "active", ADMIN_EMAIL)
    assert exc_info.value.message.endswith("Allowed: none")


def test_transition_unknown_campaign_is_not_found(dbs):
    _, admin_db = dbs
    with pytest.raises(NotFoundError):
        transition_campaign(admin_db, "missing", "active", ADMIN_EMAIL)


def test_mark_completed_only_from_active(dbs):
    _, admin_db = dbs
    active = add_campaign(admin_db, status="active")
    paused = add_campaign(admin_db, status="paused")

    assert mark_campaign_completed(admin_db, active.id) is True
    admin_db.commit()
    assert admin_db.get(MarketingCampaign, active.id).status == "completed"
    assert admin_db.get(MarketingCampaign, active.id).updated_by == "system"

    assert mark_campaign_completed(admin_db, paused.id) is False
    assert admin_db.get(MarketingCampaign, paused.id).status == "paused"


def test_guards_follow_status_rules():
    draft = MarketingCampaign(status="draft")
    active = MarketingCampaign(status="active")
    paused = MarketingCampaign(status="paused")
    cancelled = MarketingCampaign(status="cancelled")

    ensure_editable(draft)
    with pytest.raises(InvalidStateError) as exc_info:
        ensure_editable(active)
    assert exc_info.value.message == "Cannot update campaign in 'active' status. Only draft campaigns can be edited."

    ensure_assets_mutable(draft)
    ensure_assets_mutable(active)
    with pytest.raises(InvalidStateError):
        ensure_assets_mutable(paused)
    ensure_assets_mutable(draft, deleting=True)
    with pytest.raises(InvalidStateError):
        ensure_assets_mutable(active, deleting=True)

    ensure_deletable(draft)
    ensure_deletable(cancelled)
    with pytest.raises(InvalidStateError):
        ensure_deletable(active)

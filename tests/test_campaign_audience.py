import uuid

import pytest
from sqlalchemy.dialects import postgresql

from backoffice.core.errors import ValidationError
from backoffice.models.campaign import MarketingCampaignBatch, MarketingCampaignRecipient
from backoffice.services.campaign_audience import estimate_audience, resolve_user_preferences, user_audience_query

from conftest import add_author, add_campaign, add_lead


def _record_recipient(admin_db, campaign_id: str, *, recipient_type: str, recipient_id: str, status: str):
    batch = MarketingCampaignBatch(id=str(uuid.uuid4()), campaign_id=campaign_id, status="completed")
    admin_db.add(batch)
    admin_db.flush()
    admin_db.add(
        MarketingCampaignRecipient(
            id=str(uuid.uuid4()),
            batch_id=batch.id,
            campaign_id=campaign_id,
            recipient_type=recipient_type,
            recipient_id=recipient_id,
            email=f"{recipient_id}@example.com",
            status=status,
        )
    )
    admin_db.commit()


def test_resolve_user_preferences_defaults_and_explicit_empty():
    assert resolve_user_preferences(None) == ["news", "inspiration"]
    assert resolve_user_preferences([]) == []
    assert resolve_user_preferences(["news", "news", "essential"]) == ["news", "essential"]


def test_default_preferences_exclude_essential_only_users(dbs):
    core_db, admin_db = dbs
    add_author(core_db, email="news@example.com", preference="news")
    add_author(core_db, email="inspo@example.com", preference="inspiration")
    add_author(core_db, email="essential@example.com", preference="essential")

    count = estimate_audience(
        core_db,
        admin_db,
        campaign_id=None,
        audience_source="users",
        filter_tree=None,
        user_preferences=None,
    )
    assert (count.users, count.leads, count.total) == (2, 0, 2)


def test_explicit_empty_preferences_target_no_users(dbs):
    core_db, admin_db = dbs
    add_author(core_db, email="news@example.com", preference="news")

    count = estimate_audience(
        core_db,
        admin_db,
        campaign_id=None,
        audience_source="users",
        filter_tree=None,
        user_preferences=[],
    )
    assert count.total == 0


def test_both_sources_share_locale_filter_and_skip_suppressed_leads(dbs):
    core_db, admin_db = dbs
    add_author(core_db, email="u1@example.com", locale="en-US")
    add_author(core_db, email="u2@example.com", locale="en-US")
    add_author(core_db, email="u3@example.com", locale="pt-PT")
    add_lead(admin_db, email="l1@example.com", language="en-US")
    add_lead(admin_db, email="l2@example.com", language="en-US", email_status="unsub")
    add_lead(admin_db, email="l3@example.com", language="en-US", email_status="hard_bounce")
    add_lead(admin_db, email="l4@example.com", language="es-ES")

    count = estimate_audience(
        core_db,
        admin_db,
        campaign_id=None,
        audience_source="both",
        filter_tree={"field": "preferredLocale", "operator": "eq", "value": "en-US"},
        user_preferences=None,
    )
    assert (count.users, count.leads, count.total) == (2, 1, 3)


def test_estimate_excludes_recipients_already_sent(dbs):
    core_db, admin_db = dbs
    sent_user = add_author(core_db, email="sent@example.com")
    failed_user = add_author(core_db, email="failed@example.com")
    add_author(core_db, email="fresh@example.com")
    sent_lead = add_lead(admin_db, email="lead-sent@example.com")
    add_lead(admin_db, email="lead-fresh@example.com")
    campaign = add_campaign(admin_db, audience_source="both")

    _record_recipient(admin_db, campaign.id, recipient_type="user", recipient_id=sent_user.author_id, status="sent")
    _record_recipient(admin_db, campaign.id, recipient_type="user", recipient_id=failed_user.author_id, status="failed")
    _record_recipient(admin_db, campaign.id, recipient_type="lead", recipient_id=sent_lead.id, status="sent")

    count = estimate_audience(
        core_db,
        admin_db,
        campaign_id=campaign.id,
        audience_source="both",
        filter_tree=None,
        user_preferences=None,
    )
    # Failed recipients are still reachable, so they stay in the estimate.
    assert (count.users, count.leads) == (2, 1)


def test_estimate_strict_mode_rejects_unknown_fields(dbs):
    core_db, admin_db = dbs
    with pytest.raises(ValidationError):
        estimate_audience(
            core_db,
            admin_db,
            campaign_id=None,
            audience_source="leads",
            filter_tree={"field": "gender", "operator": "eq", "value": "female"},
            user_preferences=None,
            reject_unknown_fields=True,
        )

    lenient = estimate_audience(
        core_db,
        admin_db,
        campaign_id=None,
        audience_source="leads",
        filter_tree={"field": "gender", "operator": "eq", "value": "female"},
        user_preferences=None,
    )
    assert lenient.leads == 0


def test_large_recipient_id_lists_bind_as_one_postgres_array():
    sent_ids = [f"author-{index}" for index in range(70_000)]

    excluded = user_audience_query(
        filter_tree=None, preferences=None, excluded_ids=sent_ids, dialect_name="postgresql"
    ).compile(dialect=postgresql.dialect())
    assert "!= ALL (" in str(excluded)
    assert len(excluded.params) == 2
    assert [value for value in excluded.params.values() if value == sent_ids]

    included = user_audience_query(
        filter_tree=None, preferences=None, included_ids=sent_ids[:3], dialect_name="postgresql"
    ).compile(dialect=postgresql.dialect())
    assert "= ANY (" in str(included)
    assert len(included.params) == 2

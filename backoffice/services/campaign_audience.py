from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from sqlalchemy import ARRAY, Select, String, all_, any_, bindparam, func, select
from sqlalchemy.orm import Session

from backoffice.core.config import settings
from backoffice.models.audience import Author, Lead
from backoffice.models.campaign import MarketingCampaignRecipient
from backoffice.services.campaign_filters import compile_filter

DEFAULT_USER_PREFERENCES: tuple[str, ...] = ("news", "inspiration")
SUPPRESSED_LEAD_STATUSES: tuple[str, ...] = ("unsub", "hard_bounce")


@dataclass(frozen=True)
class AudienceCount:
    users: int
    leads: int

    @property
    def total(self) -> int:
        return self.users + self.leads


def resolve_user_preferences(preferences: Iterable[str] | None) -> list[str]:
    # None means "use defaults"; an explicit empty list excludes every user.
    if preferences is None:
        return list(DEFAULT_USER_PREFERENCES)
    return list(dict.fromkeys(preferences))


def includes_users(audience_source: str) -> bool:
    return audience_source in {"users", "both"}


def includes_leads(audience_source: str) -> bool:
    return audience_source in {"leads", "both"}


def excluded_recipient_ids(
    admin_db: Session,
    *,
    campaign_id: str | None,
    recipient_type: str,
    statuses: Sequence[str] = ("sent",),
) -> list[str]:
    if not campaign_id:
        return []
    return list(
        admin_db.execute(
            select(MarketingCampaignRecipient.recipient_id).where(
                MarketingCampaignRecipient.campaign_id == campaign_id,
                MarketingCampaignRecipient.recipient_type == recipient_type,
                MarketingCampaignRecipient.status.in_(list(statuses)),
            )
        ).scalars()
    )


def _id_membership(column, ids: Sequence[str], *, dialect_name: str | None, exclude: bool):
    values = list(ids)
    if dialect_name == "postgresql":
        # A single array parameter; expanding IN would bind one parameter per id.
        param = bindparam("recipient_ids", value=values, type_=ARRAY(String), unique=True)
        return column != all_(param) if exclude else column == any_(param)
    return column.not_in(values) if exclude else column.in_(values)


def user_audience_query(
    *,
    filter_tree,
    preferences: Iterable[str] | None,
    excluded_ids: Sequence[str] = (),
    included_ids: Sequence[str] | None = None,
    dialect_name: str | None = None,
    reject_unknown_fields: bool | None = None,
) -> Select | None:
    """Authors matching the campaign. ``None`` when the preference set excludes everyone.

    Recipient ids come from the admin database, so they are bound as values
    rather than joined. ``included_ids`` narrows the result to those authors.
    """
    resolved = resolve_user_preferences(preferences)
    if not resolved:
        return None
    strict = settings.campaign_filter_reject_unknown_fields if reject_unknown_fields is None else reject_unknown_fields
    stmt = select(Author).where(Author.notification_preference.in_(resolved))
    predicate = compile_filter(filter_tree, "users", reject_unknown_fields=strict)
    if predicate is not None:
        stmt = stmt.where(predicate)
    if included_ids is not None:
        stmt = stmt.where(_id_membership(Author.author_id, included_ids, dialect_name=dialect_name, exclude=False))
    if excluded_ids:
        stmt = stmt.where(_id_membership(Author.author_id, excluded_ids, dialect_name=dialect_name, exclude=True))
    return stmt


def lead_audience_query(
    *,
    filter_tree,
    campaign_id: str | None = None,
    excluded_statuses: Sequence[str] = ("sent",),
    included_statuses: Sequence[str] | None = None,
    reject_unknown_fields: bool | None = None,
) -> Select:
    """Non-suppressed leads matching the campaign.

    Leads live in the admin database next to the recipient table, so the
    recipient-status checks run as subqueries. ``included_statuses`` keeps only
    leads that already have a row in one of those states.
    """
    strict = settings.campaign_filter_reject_unknown_fields if reject_unknown_fields is None else reject_unknown_fields
    stmt = select(Lead).where(Lead.email_status.not_in(list(SUPPRESSED_LEAD_STATUSES)))
    predicate = compile_filter(filter_tree, "leads", reject_unknown_fields=strict)
    if predicate is not None:
        stmt = stmt.where(predicate)
    if campaign_id:

        def _lead_rows(statuses: Sequence[str]):
            return select(MarketingCampaignRecipient.recipient_id).where(
                MarketingCampaignRecipient.campaign_id == campaign_id,
                MarketingCampaignRecipient.recipient_type == "lead",
                MarketingCampaignRecipient.status.in_(list(statuses)),
            )

        if included_statuses is not None:
            stmt = stmt.where(Lead.id.in_(_lead_rows(included_statuses)))
        if excluded_statuses:
            stmt = stmt.where(Lead.id.not_in(_lead_rows(excluded_statuses)))
    return stmt


def _count(db: Session, stmt: Select | None) -> int:
    if stmt is None:
        return 0
    return int(db.execute(select(func.count()).select_from(stmt.subquery())).scalar_one())


def estimate_audience(
    core_db: Session,
    admin_db: Session,
    *,
    campaign_id: str | None,
    audience_source: str,
    filter_tree,
    user_preferences: Iterable[str] | None,
    reject_unknown_fields: bool | None = None,
) -> AudienceCount:
    """Count eligible recipients per source. Read-only; users and leads are never joined."""
    users = 0
    leads = 0
    if includes_users(audience_source):
        sent_user_ids = excluded_recipient_ids(admin_db, campaign_id=campaign_id, recipient_type="user")
        users = _count(
            core_db,
            user_audience_query(
                filter_tree=filter_tree,
                preferences=user_preferences,
                excluded_ids=sent_user_ids,
                dialect_name=core_db.get_bind().dialect.name,
                reject_unknown_fields=reject_unknown_fields,
            ),
        )
    if includes_leads(audience_source):
        leads = _count(
            admin_db,
            lead_audience_query(
                filter_tree=filter_tree,
                campaign_id=campaign_id,
                reject_unknown_fields=reject_unknown_fields,
            ),
        )
    return AudienceCount(users=users, leads=leads)

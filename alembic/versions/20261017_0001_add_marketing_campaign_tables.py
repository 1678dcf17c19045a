"""add marketing campaign tables

Revision ID: 20261017_0001
Revises:
Create Date: 2026-10-17 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "20261017_0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "marketing_campaigns",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="draft"),
        sa.Column("audience_source", sa.String(length=20), nullable=False, server_default="users"),
        sa.Column("user_notification_preferences", sa.JSON(), nullable=True),
        sa.Column("filter_tree", sa.JSON(), nullable=True),
        sa.Column("daily_send_limit", sa.Integer(), nullable=True),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("end_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.String(length=255), nullable=False),
        sa.Column("updated_by", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "status IN ('draft', 'active', 'paused', 'completed', 'cancelled')",
            name="ck_marketing_campaigns_status",
        ),
        sa.CheckConstraint(
            "audience_source IN ('users', 'leads', 'both')",
            name="ck_marketing_campaigns_audience_source",
        ),
        sa.CheckConstraint(
            "daily_send_limit IS NULL OR daily_send_limit >= 1",
            name="ck_marketing_campaigns_daily_send_limit",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_marketing_campaigns_status_created_at",
        "marketing_campaigns",
        ["status", "created_at"],
        unique=False,
    )

    op.create_table(
        "marketing_campaign_assets",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("campaign_id", sa.String(length=36), nullable=False),
        sa.Column("channel", sa.String(length=20), nullable=False, server_default="email"),
        sa.Column("language", sa.String(length=10), nullable=False),
        sa.Column("subject", sa.String(length=1000), nullable=False),
        sa.Column("html_body", sa.Text(), nullable=False),
        sa.Column("text_body", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("channel IN ('email')", name="ck_marketing_campaign_assets_channel"),
        sa.ForeignKeyConstraint(["campaign_id"], ["marketing_campaigns.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "campaign_id",
            "channel",
            "language",
            name="uq_marketing_campaign_assets_campaign_channel_language",
        ),
    )
    op.create_index(
        "ix_marketing_campaign_assets_campaign_id",
        "marketing_campaign_assets",
        ["campaign_id"],
        unique=False,
    )

    op.create_table(
        "marketing_campaign_batches",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("campaign_id", sa.String(length=36), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="queued"),
        sa.Column("requested_by", sa.String(length=255), nullable=True),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("stats_json", sa.JSON(), nullable=True),
        sa.Column("asset_snapshot_hash", sa.String(length=128), nullable=True),
        sa.Column("sample_send", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("error_message", sa.String(length=255), nullable=True),
        sa.CheckConstraint(
            "status IN ('queued', 'running', 'completed', 'failed')",
            name="ck_marketing_campaign_batches_status",
        ),
        sa.ForeignKeyConstraint(["campaign_id"], ["marketing_campaigns.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_marketing_campaign_batches_campaign_id",
        "marketing_campaign_batches",
        ["campaign_id"],
        unique=False,
    )
    op.create_index(
        "ix_marketing_campaign_batches_campaign_requested_at",
        "marketing_campaign_batches",
        ["campaign_id", "requested_at"],
        unique=False,
    )

    op.create_table(
        "marketing_campaign_recipients",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("batch_id", sa.String(length=36), nullable=False),
        sa.Column("campaign_id", sa.String(length=36), nullable=False),
        sa.Column("recipient_type", sa.String(length=10), nullable=False),
        sa.Column("recipient_id", sa.String(length=64), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("language", sa.String(length=10), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="queued"),
        sa.Column("last_error", sa.String(length=255), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("recipient_type IN ('user', 'lead')", name="ck_marketing_campaign_recipients_type"),
        sa.CheckConstraint(
            "status IN ('queued', 'sent', 'failed', 'skipped')",
            name="ck_marketing_campaign_recipients_status",
        ),
        sa.ForeignKeyConstraint(["batch_id"], ["marketing_campaign_batches.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["campaign_id"], ["marketing_campaigns.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "campaign_id",
            "recipient_id",
            name="uq_marketing_campaign_recipients_campaign_recipient",
        ),
    )
    op.create_index(
        "ix_marketing_campaign_recipients_batch_id",
        "marketing_campaign_recipients",
        ["batch_id"],
        unique=False,
    )
    op.create_index(
        "ix_marketing_campaign_recipients_campaign_status",
        "marketing_campaign_recipients",
        ["campaign_id", "status"],
        unique=False,
    )
    op.create_index(
        "ix_marketing_campaign_recipients_campaign_processed_at",
        "marketing_campaign_recipients",
        ["campaign_id", "processed_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_marketing_campaign_recipients_campaign_processed_at", table_name="marketing_campaign_recipients")
    op.drop_index("ix_marketing_campaign_recipients_campaign_status", table_name="marketing_campaign_recipients")
    op.drop_index("ix_marketing_campaign_recipients_batch_id", table_name="marketing_campaign_recipients")
    op.drop_table("marketing_campaign_recipients")

    op.drop_index("ix_marketing_campaign_batches_campaign_requested_at", table_name="marketing_campaign_batches")
    op.drop_index("ix_marketing_campaign_batches_campaign_id", table_name="marketing_campaign_batches")
    op.drop_table("marketing_campaign_batches")

    op.drop_index("ix_marketing_campaign_assets_campaign_id", table_name="marketing_campaign_assets")
    op.drop_table("marketing_campaign_assets")

    op.drop_index("ix_marketing_campaigns_status_created_at", table_name="marketing_campaigns")
    op.drop_table("marketing_campaigns")

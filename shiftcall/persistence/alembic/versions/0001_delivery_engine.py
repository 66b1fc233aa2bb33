"""delivery engine

Revision ID: 0001_delivery_engine
Revises: 
Create Date: 2026-10-19 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_delivery_engine"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "delivery_campaigns",
        sa.Column("id", sa.String(), primary_key=True),
        # Avoid index=True here because we create explicit indexes below.
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("template_id", sa.String(), nullable=True),
        sa.Column("message_template", sa.Text(), nullable=True),
        sa.Column("custom_message", sa.Text(), nullable=True),
        sa.Column("org_tier", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("abort_undelivered", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_delivery_campaigns_organization_id", "delivery_campaigns", ["organization_id"])
    op.create_index("ix_delivery_campaigns_job_id", "delivery_campaigns", ["job_id"])
    op.create_index(
        "ix_delivery_campaigns_org_created", "delivery_campaigns", ["organization_id", "created_at"]
    )

    op.create_table(
        "deliveries",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("campaign_id", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("contact_id", sa.String(), nullable=False),
        sa.Column("channel", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("notification_id", sa.String(), nullable=False),
        sa.Column("device_token", sa.String(), nullable=True),
        sa.Column("phone_number", sa.String(), nullable=True),
        sa.Column("template_id", sa.String(), nullable=True),
        sa.Column("message_body", sa.Text(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=True),
        sa.Column("priority_reason", sa.String(), nullable=True),
        sa.Column("batch_id", sa.String(), nullable=True),
        sa.Column("batch_position", sa.Integer(), nullable=True),
        sa.Column("fallback_due_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("fallback_processed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("delivery_attempt", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cost_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sms_message_id", sa.String(), nullable=True),
        sa.Column("sms_sid", sa.String(), nullable=True),
        sa.Column("failure_reason", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("campaign_id", "contact_id", name="uq_deliveries_campaign_contact"),
        sa.UniqueConstraint("notification_id", name="uq_deliveries_notification_id"),
        sa.UniqueConstraint("sms_message_id", name="uq_deliveries_sms_message_id"),
    )
    op.create_index("ix_deliveries_organization_id", "deliveries", ["organization_id"])
    op.create_index("ix_deliveries_campaign_id", "deliveries", ["campaign_id"])
    op.create_index("ix_deliveries_status", "deliveries", ["status"])
    op.create_index("ix_deliveries_sms_sid", "deliveries", ["sms_sid"])
    op.create_index("ix_deliveries_contact_job", "deliveries", ["contact_id", "job_id"])
    # The sweep scans unprocessed push deliveries past their deadline.
    op.create_index(
        "ix_deliveries_fallback_scan",
        "deliveries",
        ["channel", "status", "fallback_processed", "fallback_due_at"],
    )

    op.create_table(
        "credit_grants",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("source_type", sa.String(), nullable=False),
        sa.Column("source_ref", sa.String(), nullable=True),
        sa.Column("credits_granted", sa.Integer(), nullable=False),
        sa.Column("credits_consumed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("credits_remaining", sa.Integer(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("credits_remaining >= 0", name="ck_credit_grants_remaining_non_negative"),
        sa.CheckConstraint(
            "credits_remaining = credits_granted - credits_consumed",
            name="ck_credit_grants_remaining_balance",
        ),
    )
    op.create_index("ix_credit_grants_organization_id", "credit_grants", ["organization_id"])
    op.create_index("ix_credit_grants_org_expiry", "credit_grants", ["organization_id", "expires_at"])

    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("grant_id", sa.String(), nullable=False),
        sa.Column("message_id", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("split_index", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("delta", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "message_id", "kind", "split_index", name="uq_credit_transactions_message_kind_split"
        ),
    )
    op.create_index("ix_credit_transactions_organization_id", "credit_transactions", ["organization_id"])
    op.create_index("ix_credit_transactions_message_id", "credit_transactions", ["message_id"])
    op.create_index("ix_credit_transactions_grant", "credit_transactions", ["grant_id"])

    op.create_table(
        "message_log_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("contact_id", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("campaign_id", sa.String(), nullable=True),
        sa.Column("delivery_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("channel", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=True),
        sa.Column("priority_reason", sa.String(), nullable=True),
        sa.Column("batch_id", sa.String(), nullable=True),
        sa.Column("batch_position", sa.Integer(), nullable=True),
        sa.Column("delivery_attempt", sa.Integer(), nullable=True),
        sa.Column("notification_id", sa.String(), nullable=True),
        sa.Column("twilio_sid", sa.String(), nullable=True),
        sa.Column("cost_credits", sa.Integer(), nullable=True),
        sa.Column("reason", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_message_log_events_organization_id", "message_log_events", ["organization_id"])
    op.create_index("ix_message_log_events_campaign_id", "message_log_events", ["campaign_id"])
    op.create_index("ix_message_log_events_delivery_id", "message_log_events", ["delivery_id"])
    op.create_index(
        "ix_message_log_events_contact_job", "message_log_events", ["contact_id", "job_id", "created_at"]
    )
    op.create_index("ix_message_log_events_batch", "message_log_events", ["batch_id"])
    op.create_index("ix_message_log_events_type_status", "message_log_events", ["event_type", "status"])

    # Append-only at the database level as well; the ORM guards only cover application flushes.
    op.execute(
        """
        CREATE OR REPLACE FUNCTION reject_append_only_mutation() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION '% rows are append-only', TG_TABLE_NAME;
        END;
        $$ LANGUAGE plpgsql;
        """
    )
    for table in ("message_log_events", "credit_transactions"):
        op.execute(
            f"""
            CREATE TRIGGER {table}_append_only
            BEFORE UPDATE OR DELETE ON {table}
            FOR EACH ROW EXECUTE FUNCTION reject_append_only_mutation();
            """
        )


def downgrade() -> None:
    for table in ("message_log_events", "credit_transactions"):
        op.execute(f"DROP TRIGGER IF EXISTS {table}_append_only ON {table}")
    op.execute("DROP FUNCTION IF EXISTS reject_append_only_mutation()")
    op.drop_table("message_log_events")
    op.drop_table("credit_transactions")
    op.drop_table("credit_grants")
    op.drop_table("deliveries")
    op.drop_table("delivery_campaigns")

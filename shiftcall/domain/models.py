from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON elsewhere (aiosqlite for local runs and tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
EventIdType = BigInteger().with_variant(Integer(), "sqlite")


class UtcDateTime(TypeDecorator):
    # Normalize every timestamp to aware UTC so Python-side comparisons never mix naive and aware values.
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:  # noqa: ANN001
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:  # noqa: ANN001
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class Base(DeclarativeBase):
    pass


class DeliveryCampaign(Base):
    __tablename__ = "delivery_campaigns"
    __table_args__ = (
        Index("ix_delivery_campaigns_org_created", "organization_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    job_id: Mapped[str] = mapped_column(String, index=True)
    # Content is supplied by the caller; the engine only renders placeholders.
    template_id: Mapped[str | None] = mapped_column(String, nullable=True)
    message_template: Mapped[str | None] = mapped_column(Text, nullable=True)
    custom_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Organization tier drives the per-batch admission size.
    org_tier: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default="active")
    # When set alongside cancellation, pending escalations are failed instead of sent.
    abort_undelivered: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    cancelled_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, server_default=func.now())


class Delivery(Base):
    __tablename__ = "deliveries"
    __table_args__ = (
        UniqueConstraint("campaign_id", "contact_id", name="uq_deliveries_campaign_contact"),
        Index(
            "ix_deliveries_fallback_scan",
            "channel",
            "status",
            "fallback_processed",
            "fallback_due_at",
        ),
        Index("ix_deliveries_contact_job", "contact_id", "job_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    campaign_id: Mapped[str] = mapped_column(String, index=True)
    job_id: Mapped[str] = mapped_column(String)
    contact_id: Mapped[str] = mapped_column(String)
    channel: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, index=True)
    # Opaque id of the physical push send; receipts are correlated on it.
    notification_id: Mapped[str] = mapped_column(String, unique=True)
    # Snapshot channel capabilities at admission so escalation never re-reads the contact store.
    device_token: Mapped[str | None] = mapped_column(String, nullable=True)
    phone_number: Mapped[str | None] = mapped_column(String, nullable=True)
    template_id: Mapped[str | None] = mapped_column(String, nullable=True)
    message_body: Mapped[str] = mapped_column(Text)
    priority: Mapped[int | None] = mapped_column(Integer, nullable=True)
    priority_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    batch_id: Mapped[str | None] = mapped_column(String, nullable=True)
    batch_position: Mapped[int | None] = mapped_column(Integer, nullable=True)
    fallback_due_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    # Flips false -> true exactly once; the compare-and-set on it is the fallback claim.
    fallback_processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    delivery_attempt: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    cost_credits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Ledger idempotency key for the SMS escalation, fixed at claim time.
    sms_message_id: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    sms_sid: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    failure_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, server_default=func.now())
    sent_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, server_default=func.now())


class CreditGrant(Base):
    __tablename__ = "credit_grants"
    __table_args__ = (
        CheckConstraint("credits_remaining >= 0", name="ck_credit_grants_remaining_non_negative"),
        CheckConstraint(
            "credits_remaining = credits_granted - credits_consumed",
            name="ck_credit_grants_remaining_balance",
        ),
        Index("ix_credit_grants_org_expiry", "organization_id", "expires_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    # trial, subscription or bundle.
    source_type: Mapped[str] = mapped_column(String)
    source_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    credits_granted: Mapped[int] = mapped_column(Integer)
    credits_consumed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    credits_remaining: Mapped[int] = mapped_column(Integer)
    expires_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, server_default=func.now())


class CreditTransaction(Base):
    __tablename__ = "credit_transactions"
    __table_args__ = (
        # One consumption and at most one refund per message; split_index orders multi-grant splits.
        UniqueConstraint("message_id", "kind", "split_index", name="uq_credit_transactions_message_kind_split"),
        Index("ix_credit_transactions_grant", "grant_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    grant_id: Mapped[str] = mapped_column(String)
    message_id: Mapped[str] = mapped_column(String, index=True)
    kind: Mapped[str] = mapped_column(String)
    split_index: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    delta: Mapped[int] = mapped_column(Integer)
    reason: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, server_default=func.now())


class MessageLogEvent(Base):
    __tablename__ = "message_log_events"
    __table_args__ = (
        Index("ix_message_log_events_contact_job", "contact_id", "job_id", "created_at"),
        Index("ix_message_log_events_batch", "batch_id"),
        Index("ix_message_log_events_type_status", "event_type", "status"),
    )

    # Monotonic id breaks created_at ties when reconstructing a timeline.
    id: Mapped[int] = mapped_column(EventIdType, primary_key=True, autoincrement=True)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    contact_id: Mapped[str] = mapped_column(String)
    job_id: Mapped[str] = mapped_column(String)
    campaign_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    delivery_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    event_type: Mapped[str] = mapped_column(String)
    channel: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String)
    priority: Mapped[int | None] = mapped_column(Integer, nullable=True)
    priority_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    batch_id: Mapped[str | None] = mapped_column(String, nullable=True)
    batch_position: Mapped[int | None] = mapped_column(Integer, nullable=True)
    delivery_attempt: Mapped[int | None] = mapped_column(Integer, nullable=True)
    notification_id: Mapped[str | None] = mapped_column(String, nullable=True)
    twilio_sid: Mapped[str | None] = mapped_column(String, nullable=True)
    cost_credits: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reason: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, server_default=func.now())

from sqlalchemy import Column, Boolean, DateTime, ForeignKey, JSON, Numeric, Text, Index
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from core.database import Base
import uuid


def _uuid_str() -> str:
    return str(uuid.uuid4())


# JSONB on Postgres, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class User(Base):
    """
    Entitlement view of an account.

    `id` is the opaque identifier issued by the identity collaborator. The row is
    provisioned lazily at `free` tier on first authenticated touch.
    """

    __tablename__ = "users"

    id = Column(Text, primary_key=True)
    email = Column(Text, nullable=True, index=True)
    role = Column(Text, default="user", nullable=False)  # 'user', 'admin', 'owner'
    subscription_tier = Column(Text, default="free", nullable=False, index=True)  # free|grandfathered|premium
    # Non-null only while tier is grandfathered (and transiently during the grace window).
    grandfathered_until = Column(DateTime(timezone=True), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class WorkoutGeneration(Base):
    """
    One row per generation attempt (the usage ledger).

    Free-tier rows are written as a placeholder before the generation call and
    finalized in place afterward.
    """

    __tablename__ = "workout_generations"

    id = Column(Text, primary_key=True, default=_uuid_str)
    user_id = Column(Text, ForeignKey("users.id"), nullable=False)
    generated_at = Column(DateTime(timezone=True), nullable=False)
    generation_type = Column(Text, nullable=False)  # ai|template|fallback
    payload = Column(JSONType, nullable=True)

    __table_args__ = (
        Index("ix_workout_generations_user_generated_at", "user_id", "generated_at"),
    )


class Subscription(Base):
    """
    Billing provider subscription mirror.

    The provider is the billing source of truth; this table stores a queryable
    mirror for entitlement decisions and admin/support visibility. At most one
    row per user is `active` (application-enforced).
    """

    __tablename__ = "subscriptions"

    id = Column(Text, primary_key=True, default=_uuid_str)
    user_id = Column(Text, ForeignKey("users.id"), nullable=False, index=True)

    external_subscription_id = Column(Text, nullable=False, unique=True)
    external_plan_id = Column(Text, nullable=True)

    status = Column(Text, nullable=False, default="pending", index=True)  # pending|active|cancelled|suspended|expired
    amount_per_cycle = Column(Numeric(10, 2), nullable=True)
    currency = Column(Text, nullable=True)
    billing_cycle = Column(Text, nullable=True)  # monthly|yearly

    trial_end = Column(DateTime(timezone=True), nullable=True)
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)

    last_payment_at = Column(DateTime(timezone=True), nullable=True)
    last_payment_amount = Column(Numeric(10, 2), nullable=True)
    payment_failed_at = Column(DateTime(timezone=True), nullable=True)
    expired_at = Column(DateTime(timezone=True), nullable=True)
    # Ordering guard: events older than this are acknowledged but not applied.
    last_event_at = Column(DateTime(timezone=True), nullable=True)

    provider_payload = Column(JSONType, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class ProcessedBillingEvent(Base):
    """
    Processed billing provider events (idempotency guard).

    Providers retry webhook deliveries; storing event ids makes webhook handling safe.
    """

    __tablename__ = "processed_billing_events"

    event_id = Column(Text, primary_key=True)
    event_type = Column(Text, nullable=False)
    external_subscription_id = Column(Text, nullable=True)

    received_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_processed_billing_events_event_type", "event_type"),
    )

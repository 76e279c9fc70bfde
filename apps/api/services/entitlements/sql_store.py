"""
SQLAlchemy-backed entitlement store.

Each operation runs in its own short session and commits before returning;
no transaction spans more than one user. SQLAlchemy errors are rolled back
and re-raised as UpstreamUnavailable so callers never see driver exceptions.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Iterator, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from models import ProcessedBillingEvent, Subscription, User, WorkoutGeneration
from services.entitlements.clock import ensure_aware
from services.entitlements.errors import NotFound, UpstreamUnavailable
from services.entitlements.records import (
    GenerationType,
    SubscriptionRecord,
    SubscriptionStatus,
    Tier,
    UsageRecord,
    UserRecord,
)
from services.entitlements.store import EntitlementStore

logger = logging.getLogger(__name__)

_SUBSCRIPTION_FIELDS = (
    "external_plan_id",
    "amount_per_cycle",
    "currency",
    "billing_cycle",
    "trial_end",
    "current_period_start",
    "current_period_end",
    "cancelled_at",
    "cancel_at_period_end",
    "last_payment_at",
    "last_payment_amount",
    "payment_failed_at",
    "expired_at",
    "last_event_at",
    "provider_payload",
)


def _to_db(value):
    """Enums to their values, aware datetimes to UTC (SQLite stores wall time only)."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return ensure_aware(value).astimezone(timezone.utc)
    return value


def _from_db(value: Optional[datetime]) -> Optional[datetime]:
    return ensure_aware(value) if value is not None else None


def _user_record(row: User) -> UserRecord:
    return UserRecord(
        id=row.id,
        email=row.email,
        subscription_tier=Tier(row.subscription_tier),
        grandfathered_until=_from_db(row.grandfathered_until),
        created_at=_from_db(row.created_at),
        role=row.role or "user",
        updated_at=_from_db(row.updated_at),
    )


def _usage_record(row: WorkoutGeneration) -> UsageRecord:
    return UsageRecord(
        id=row.id,
        user_id=row.user_id,
        generated_at=_from_db(row.generated_at),
        generation_type=GenerationType(row.generation_type),
        payload=row.payload,
    )


def _subscription_record(row: Subscription) -> SubscriptionRecord:
    values = {}
    for name in _SUBSCRIPTION_FIELDS:
        value = getattr(row, name)
        values[name] = _from_db(value) if isinstance(value, datetime) else value
    values["cancel_at_period_end"] = bool(row.cancel_at_period_end)
    return SubscriptionRecord(
        id=row.id,
        user_id=row.user_id,
        external_subscription_id=row.external_subscription_id,
        status=SubscriptionStatus(row.status),
        **values,
    )


class SqlEntitlementStore(EntitlementStore):
    def __init__(self, session_factory) -> None:
        self._session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Entitlement store operation failed: {e}", exc_info=True)
            raise UpstreamUnavailable(f"Entitlement store unavailable: {e.__class__.__name__}") from e
        finally:
            db.close()

    # users

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        with self._session() as db:
            row = db.get(User, user_id)
            return _user_record(row) if row else None

    def create_user(self, user: UserRecord) -> UserRecord:
        with self._session() as db:
            row = User(
                id=user.id,
                email=user.email,
                role=user.role,
                subscription_tier=_to_db(user.subscription_tier),
                grandfathered_until=_to_db(user.grandfathered_until),
                created_at=_to_db(user.created_at),
                updated_at=_to_db(user.updated_at or user.created_at),
            )
            db.add(row)
            try:
                db.commit()
            except IntegrityError:
                # Concurrent first touch; the other request won.
                db.rollback()
                existing = db.get(User, user.id)
                if existing is None:
                    raise
                return _user_record(existing)
            return _user_record(row)

    def update_user(self, user_id: str, **changes) -> UserRecord:
        with self._session() as db:
            row = db.get(User, user_id)
            if row is None:
                raise NotFound("User", user_id)
            for key, value in changes.items():
                setattr(row, key, _to_db(value))
            db.commit()
            return _user_record(row)

    def list_users(
        self, *, tier=None, created_before=None, grandfathered_until_before=None, email_contains=None, limit=None
    ) -> List[UserRecord]:
        with self._session() as db:
            stmt = select(User)
            if tier is not None:
                stmt = stmt.where(User.subscription_tier == _to_db(tier))
            if created_before is not None:
                stmt = stmt.where(User.created_at < _to_db(created_before))
            if grandfathered_until_before is not None:
                stmt = stmt.where(
                    User.grandfathered_until.is_not(None),
                    User.grandfathered_until < _to_db(grandfathered_until_before),
                )
            if email_contains:
                stmt = stmt.where(User.email.ilike(f"%{email_contains}%"))
            stmt = stmt.order_by(User.created_at)
            if limit is not None:
                stmt = stmt.limit(limit)
            rows = db.execute(stmt).scalars().all()
            return [_user_record(r) for r in rows]

    def downgrade_expired_grandfathered(self, user_id: str, cutoff: datetime, now: datetime) -> bool:
        with self._session() as db:
            result = (
                db.query(User)
                .filter(
                    User.id == user_id,
                    User.subscription_tier == Tier.GRANDFATHERED.value,
                    User.grandfathered_until.is_not(None),
                    User.grandfathered_until < _to_db(cutoff),
                )
                .update(
                    {
                        User.subscription_tier: Tier.FREE.value,
                        User.grandfathered_until: None,
                        User.updated_at: _to_db(now),
                    },
                    synchronize_session=False,
                )
            )
            db.commit()
            return result > 0

    # usage

    def add_usage(self, record: UsageRecord) -> UsageRecord:
        with self._session() as db:
            db.add(self._usage_row(record))
            db.commit()
            return record

    def update_usage(self, usage_id: str, **changes) -> UsageRecord:
        with self._session() as db:
            row = db.get(WorkoutGeneration, usage_id)
            if row is None:
                raise NotFound("UsageRecord", usage_id)
            for key, value in changes.items():
                setattr(row, key, _to_db(value))
            db.commit()
            return _usage_record(row)

    def list_usage(self, user_id: str, start: datetime, end: datetime) -> List[UsageRecord]:
        with self._session() as db:
            rows = db.execute(
                select(WorkoutGeneration)
                .where(
                    WorkoutGeneration.user_id == user_id,
                    WorkoutGeneration.generated_at >= _to_db(start),
                    WorkoutGeneration.generated_at < _to_db(end),
                )
                .order_by(WorkoutGeneration.generated_at)
            ).scalars().all()
            return [_usage_record(r) for r in rows]

    def list_recent_usage(self, user_id: str, limit: int) -> List[UsageRecord]:
        with self._session() as db:
            rows = db.execute(
                select(WorkoutGeneration)
                .where(WorkoutGeneration.user_id == user_id)
                .order_by(WorkoutGeneration.generated_at.desc())
                .limit(limit)
            ).scalars().all()
            return [_usage_record(r) for r in rows]

    def count_usage(self, user_id: str, start: datetime, end: datetime) -> int:
        with self._session() as db:
            return int(self._count(db, user_id, start, end))

    def reserve_usage(self, user_id, start, end, limit, record) -> Tuple[bool, int]:
        with self._session() as db:
            # Row lock on the user serializes concurrent reservations (no-op on SQLite).
            locked = db.execute(
                select(User.id).where(User.id == user_id).with_for_update()
            ).scalar_one_or_none()
            if locked is None:
                db.rollback()
                raise NotFound("User", user_id)
            used = int(self._count(db, user_id, start, end))
            if used >= limit:
                db.rollback()
                return False, used
            db.add(self._usage_row(record))
            db.commit()
            return True, used

    @staticmethod
    def _count(db: Session, user_id: str, start: datetime, end: datetime) -> int:
        return db.execute(
            select(func.count(WorkoutGeneration.id)).where(
                WorkoutGeneration.user_id == user_id,
                WorkoutGeneration.generated_at >= _to_db(start),
                WorkoutGeneration.generated_at < _to_db(end),
            )
        ).scalar_one()

    @staticmethod
    def _usage_row(record: UsageRecord) -> WorkoutGeneration:
        return WorkoutGeneration(
            id=record.id,
            user_id=record.user_id,
            generated_at=_to_db(record.generated_at),
            generation_type=_to_db(record.generation_type),
            payload=record.payload,
        )

    # subscriptions

    def get_subscription_by_external_id(self, external_subscription_id: str) -> Optional[SubscriptionRecord]:
        with self._session() as db:
            row = db.execute(
                select(Subscription).where(Subscription.external_subscription_id == external_subscription_id)
            ).scalar_one_or_none()
            return _subscription_record(row) if row else None

    def list_subscriptions(self, *, user_id=None, status=None, period_end_before=None) -> List[SubscriptionRecord]:
        with self._session() as db:
            stmt = select(Subscription)
            if user_id is not None:
                stmt = stmt.where(Subscription.user_id == user_id)
            if status is not None:
                stmt = stmt.where(Subscription.status == _to_db(status))
            if period_end_before is not None:
                stmt = stmt.where(
                    Subscription.current_period_end.is_not(None),
                    Subscription.current_period_end < _to_db(period_end_before),
                )
            rows = db.execute(stmt.order_by(Subscription.created_at)).scalars().all()
            return [_subscription_record(r) for r in rows]

    def create_subscription(self, record: SubscriptionRecord) -> SubscriptionRecord:
        with self._session() as db:
            row = Subscription(
                id=record.id,
                user_id=record.user_id,
                external_subscription_id=record.external_subscription_id,
                status=_to_db(record.status),
                **{name: _to_db(getattr(record, name)) for name in _SUBSCRIPTION_FIELDS},
            )
            db.add(row)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                existing = db.execute(
                    select(Subscription).where(
                        Subscription.external_subscription_id == record.external_subscription_id
                    )
                ).scalar_one_or_none()
                if existing is None:
                    raise
                return _subscription_record(existing)
            return _subscription_record(row)

    def update_subscription(self, subscription_id: str, **changes) -> SubscriptionRecord:
        with self._session() as db:
            row = db.get(Subscription, subscription_id)
            if row is None:
                raise NotFound("Subscription", subscription_id)
            for key, value in changes.items():
                setattr(row, key, _to_db(value))
            db.commit()
            return _subscription_record(row)

    # events

    def claim_event(self, event_id, event_type, external_subscription_id) -> bool:
        with self._session() as db:
            db.add(
                ProcessedBillingEvent(
                    event_id=event_id,
                    event_type=event_type,
                    external_subscription_id=external_subscription_id,
                )
            )
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return False
            return True

    def release_event(self, event_id: str) -> None:
        with self._session() as db:
            db.query(ProcessedBillingEvent).filter(ProcessedBillingEvent.event_id == event_id).delete()
            db.commit()

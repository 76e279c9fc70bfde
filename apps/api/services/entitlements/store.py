"""
Persistent store interface for the entitlement engine.

Two backends implement it:
- SqlEntitlementStore (services.entitlements.sql_store): SQLAlchemy sessions, production
- InMemoryEntitlementStore (below): process-local dicts, tests and local demos

The backend is chosen once at startup (routers.deps) and injected; business
logic never branches on which one it has.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from services.entitlements.errors import NotFound
from services.entitlements.records import (
    SubscriptionRecord,
    SubscriptionStatus,
    Tier,
    UsageRecord,
    UserRecord,
)


class EntitlementStore(ABC):
    # --- users ---

    @abstractmethod
    def get_user(self, user_id: str) -> Optional[UserRecord]:
        ...

    @abstractmethod
    def create_user(self, user: UserRecord) -> UserRecord:
        """Insert the user; if the id already exists, return the stored row unchanged."""

    @abstractmethod
    def update_user(self, user_id: str, **changes) -> UserRecord:
        """Single-row update. Raises NotFound."""

    @abstractmethod
    def list_users(
        self,
        *,
        tier: Optional[Tier] = None,
        created_before: Optional[datetime] = None,
        grandfathered_until_before: Optional[datetime] = None,
        email_contains: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[UserRecord]:
        """Oldest registration first. `email_contains` is case-insensitive."""

    @abstractmethod
    def downgrade_expired_grandfathered(self, user_id: str, cutoff: datetime, now: datetime) -> bool:
        """
        Conditional update: only when the user is still grandfathered with an
        expiry strictly before `cutoff`. Returns True when a row changed.
        """

    # --- usage ledger ---

    @abstractmethod
    def add_usage(self, record: UsageRecord) -> UsageRecord:
        ...

    @abstractmethod
    def update_usage(self, usage_id: str, **changes) -> UsageRecord:
        """Raises NotFound."""

    @abstractmethod
    def list_usage(self, user_id: str, start: datetime, end: datetime) -> List[UsageRecord]:
        """Records with start <= generated_at < end, oldest first."""

    @abstractmethod
    def list_recent_usage(self, user_id: str, limit: int) -> List[UsageRecord]:
        """Newest first."""

    def count_usage(self, user_id: str, start: datetime, end: datetime) -> int:
        return len(self.list_usage(user_id, start, end))

    @abstractmethod
    def reserve_usage(
        self, user_id: str, start: datetime, end: datetime, limit: int, record: UsageRecord
    ) -> Tuple[bool, int]:
        """
        Atomic increment-if-below-limit for the (user, day window) key.

        Returns (reserved, used_before). The record is only written when
        used_before < limit.
        """

    # --- subscriptions ---

    @abstractmethod
    def get_subscription_by_external_id(self, external_subscription_id: str) -> Optional[SubscriptionRecord]:
        ...

    @abstractmethod
    def list_subscriptions(
        self,
        *,
        user_id: Optional[str] = None,
        status: Optional[SubscriptionStatus] = None,
        period_end_before: Optional[datetime] = None,
    ) -> List[SubscriptionRecord]:
        ...

    @abstractmethod
    def create_subscription(self, record: SubscriptionRecord) -> SubscriptionRecord:
        ...

    @abstractmethod
    def update_subscription(self, subscription_id: str, **changes) -> SubscriptionRecord:
        """Raises NotFound."""

    # --- processed billing events ---

    @abstractmethod
    def claim_event(self, event_id: str, event_type: str, external_subscription_id: Optional[str]) -> bool:
        """Record the event id. Returns False when it was already recorded."""

    @abstractmethod
    def release_event(self, event_id: str) -> None:
        """Forget a claimed event so a redelivery is applied again."""


class InMemoryEntitlementStore(EntitlementStore):
    """Thread-safe dict-backed store. One lock guards every table."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._users: Dict[str, UserRecord] = {}
        self._usage: Dict[str, UsageRecord] = {}
        self._subscriptions: Dict[str, SubscriptionRecord] = {}
        self._events: Dict[str, Tuple[str, Optional[str]]] = {}

    # users

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        with self._lock:
            return self._users.get(user_id)

    def create_user(self, user: UserRecord) -> UserRecord:
        with self._lock:
            existing = self._users.get(user.id)
            if existing is not None:
                return existing
            self._users[user.id] = user
            return user

    def update_user(self, user_id: str, **changes) -> UserRecord:
        with self._lock:
            current = self._users.get(user_id)
            if current is None:
                raise NotFound("User", user_id)
            updated = replace(current, **changes)
            self._users[user_id] = updated
            return updated

    def list_users(
        self, *, tier=None, created_before=None, grandfathered_until_before=None, email_contains=None, limit=None
    ) -> List[UserRecord]:
        with self._lock:
            users = list(self._users.values())
        if tier is not None:
            users = [u for u in users if u.subscription_tier == tier]
        if created_before is not None:
            users = [u for u in users if u.created_at < created_before]
        if grandfathered_until_before is not None:
            users = [
                u for u in users
                if u.grandfathered_until is not None and u.grandfathered_until < grandfathered_until_before
            ]
        if email_contains:
            needle = email_contains.lower()
            users = [u for u in users if u.email and needle in u.email.lower()]
        users = sorted(users, key=lambda u: u.created_at)
        return users[:limit] if limit is not None else users

    def downgrade_expired_grandfathered(self, user_id: str, cutoff: datetime, now: datetime) -> bool:
        with self._lock:
            current = self._users.get(user_id)
            if (
                current is None
                or current.subscription_tier != Tier.GRANDFATHERED
                or current.grandfathered_until is None
                or not current.grandfathered_until < cutoff
            ):
                return False
            self._users[user_id] = replace(
                current, subscription_tier=Tier.FREE, grandfathered_until=None, updated_at=now
            )
            return True

    # usage

    def add_usage(self, record: UsageRecord) -> UsageRecord:
        with self._lock:
            self._usage[record.id] = record
            return record

    def update_usage(self, usage_id: str, **changes) -> UsageRecord:
        with self._lock:
            current = self._usage.get(usage_id)
            if current is None:
                raise NotFound("UsageRecord", usage_id)
            updated = replace(current, **changes)
            self._usage[usage_id] = updated
            return updated

    def list_usage(self, user_id: str, start: datetime, end: datetime) -> List[UsageRecord]:
        with self._lock:
            rows = [
                r for r in self._usage.values()
                if r.user_id == user_id and start <= r.generated_at < end
            ]
        return sorted(rows, key=lambda r: r.generated_at)

    def list_recent_usage(self, user_id: str, limit: int) -> List[UsageRecord]:
        with self._lock:
            rows = [r for r in self._usage.values() if r.user_id == user_id]
        return sorted(rows, key=lambda r: r.generated_at, reverse=True)[:limit]

    def reserve_usage(self, user_id, start, end, limit, record) -> Tuple[bool, int]:
        with self._lock:
            used = self.count_usage(user_id, start, end)
            if used >= limit:
                return False, used
            self._usage[record.id] = record
            return True, used

    # subscriptions

    def get_subscription_by_external_id(self, external_subscription_id: str) -> Optional[SubscriptionRecord]:
        with self._lock:
            for sub in self._subscriptions.values():
                if sub.external_subscription_id == external_subscription_id:
                    return sub
        return None

    def list_subscriptions(self, *, user_id=None, status=None, period_end_before=None) -> List[SubscriptionRecord]:
        with self._lock:
            subs = list(self._subscriptions.values())
        if user_id is not None:
            subs = [s for s in subs if s.user_id == user_id]
        if status is not None:
            subs = [s for s in subs if s.status == status]
        if period_end_before is not None:
            subs = [
                s for s in subs
                if s.current_period_end is not None and s.current_period_end < period_end_before
            ]
        return subs

    def create_subscription(self, record: SubscriptionRecord) -> SubscriptionRecord:
        with self._lock:
            existing = self.get_subscription_by_external_id(record.external_subscription_id)
            if existing is not None:
                return existing
            self._subscriptions[record.id] = record
            return record

    def update_subscription(self, subscription_id: str, **changes) -> SubscriptionRecord:
        with self._lock:
            current = self._subscriptions.get(subscription_id)
            if current is None:
                raise NotFound("Subscription", subscription_id)
            updated = replace(current, **changes)
            self._subscriptions[subscription_id] = updated
            return updated

    # events

    def claim_event(self, event_id, event_type, external_subscription_id) -> bool:
        with self._lock:
            if event_id in self._events:
                return False
            self._events[event_id] = (event_type, external_subscription_id)
            return True

    def release_event(self, event_id: str) -> None:
        with self._lock:
            self._events.pop(event_id, None)

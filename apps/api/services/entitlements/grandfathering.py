"""
Grandfathering manager.

Mutating operations built on the resolver: opportunistic auto-grant, bulk
grant, admin grant/revoke, cleanup of expired grants and the read-only
expiration report used by the admin dashboard.

Batch operations process each user independently: one user's failure is
recorded in the result's `errors` list and the batch continues.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from services.entitlements.clock import Clock
from services.entitlements.config import EntitlementConfig
from services.entitlements.errors import NotFound
from services.entitlements.records import ExpirationState, ExpirationStatus, Tier, UserRecord, record_to_dict
from services.entitlements.resolver import (
    cleanup_cutoff,
    expiration_status,
    format_time_until_expiration,
    grandfathered_expiry_for,
    is_grandfathering_eligible,
)
from services.entitlements.store import EntitlementStore

logger = logging.getLogger(__name__)


class ExpirationNotifier(Protocol):
    def notify(self, user: UserRecord, bucket: str, status: ExpirationStatus) -> None:
        ...


class LoggingExpirationNotifier:
    """Logs each warning; stands in until an email channel exists."""

    def notify(self, user: UserRecord, bucket: str, status: ExpirationStatus) -> None:
        logger.info(
            "Grandfathering expiration warning",
            extra={
                "user_id": user.id,
                "email": user.email,
                "bucket": bucket,
                "expires": format_time_until_expiration(status),
            },
        )


def bucket_name(days: int) -> str:
    return f"expiring_in_{days}_day" if days == 1 else f"expiring_in_{days}_days"


def _user_summary(user: UserRecord, status: ExpirationStatus) -> Dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "grandfathered_until": user.grandfathered_until.isoformat() if user.grandfathered_until else None,
        "created_at": user.created_at.isoformat(),
        "expirationStatus": status.to_dict(),
        "timeUntilExpiration": format_time_until_expiration(status),
    }


def _error_entry(user_id: str, exc: Exception) -> Dict[str, str]:
    return {"userId": user_id, "error": str(exc) or exc.__class__.__name__}


class GrandfatheringManager:
    def __init__(
        self,
        store: EntitlementStore,
        clock: Clock,
        config: EntitlementConfig,
        notifier: Optional[ExpirationNotifier] = None,
    ) -> None:
        self.store = store
        self.clock = clock
        self.config = config
        self.notifier = notifier or LoggingExpirationNotifier()

    def _get_user(self, user_id: str) -> UserRecord:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFound("User", user_id)
        return user

    def _born_expired(self, user: UserRecord, now: datetime) -> bool:
        # A registration-anchored expiry already past grace would be cleaned up
        # right away and re-granted on the next request.
        return grandfathered_expiry_for(user, self.config) < cleanup_cutoff(now, self.config)

    def auto_grant_if_eligible(self, user_id: str) -> UserRecord:
        user = self._get_user(user_id)
        if user.subscription_tier in (Tier.PREMIUM, Tier.GRANDFATHERED):
            return user
        if not is_grandfathering_eligible(user, self.config):
            return user

        now = self.clock.now()
        if self._born_expired(user, now):
            return user

        expires_at = grandfathered_expiry_for(user, self.config)
        updated = self.store.update_user(
            user_id,
            subscription_tier=Tier.GRANDFATHERED,
            grandfathered_until=expires_at,
            updated_at=now,
        )
        logger.info(
            f"Auto-granted grandfathered access to user {user_id}",
            extra={"user_id": user_id, "grandfathered_until": expires_at.isoformat()},
        )
        return updated

    def bulk_grant_eligible(self) -> Dict[str, Any]:
        if not self.config.grandfathering_enabled:
            logger.info("Grandfathering is disabled; bulk grant skipped")
            return {"processed": 0, "granted": 0, "skipped": 0, "errors": []}

        now = self.clock.now()
        eligible = self.store.list_users(
            tier=Tier.FREE, created_before=self.config.paywall_introduction_date
        )
        granted = 0
        skipped = 0
        errors: List[Dict[str, str]] = []

        for user in eligible:
            if self._born_expired(user, now):
                skipped += 1
                continue
            try:
                self.store.update_user(
                    user.id,
                    subscription_tier=Tier.GRANDFATHERED,
                    grandfathered_until=grandfathered_expiry_for(user, self.config),
                    updated_at=now,
                )
                granted += 1
            except Exception as e:
                logger.warning(f"Failed to grant grandfathered access to user {user.id}: {e}")
                errors.append(_error_entry(user.id, e))

        logger.info(
            f"Bulk grandfathering complete: {granted}/{len(eligible)} users granted",
            extra={"processed": len(eligible), "granted": granted, "skipped": skipped, "errors": len(errors)},
        )
        return {"processed": len(eligible), "granted": granted, "skipped": skipped, "errors": errors}

    def grant(self, user_id: str, expires_at: Optional[datetime] = None) -> UserRecord:
        """Admin override: no eligibility check. Defaults to now + grant duration."""
        now = self.clock.now()
        if expires_at is None:
            expires_at = now + self.config.grant_duration
        self._get_user(user_id)
        updated = self.store.update_user(
            user_id,
            subscription_tier=Tier.GRANDFATHERED,
            grandfathered_until=expires_at,
            updated_at=now,
        )
        logger.info(f"Granted grandfathered access to user {user_id} until {expires_at.isoformat()}")
        return updated

    def revoke(self, user_id: str) -> UserRecord:
        """Clears the expiry only. The stored tier is kept but resolves to free-tier limits."""
        self._get_user(user_id)
        updated = self.store.update_user(user_id, grandfathered_until=None, updated_at=self.clock.now())
        logger.info(f"Revoked grandfathered expiry for user {user_id} (tier unchanged: {updated.subscription_tier.value})")
        return updated

    def downgrade_if_expired(self, user_id: str) -> bool:
        """Single-user cleanup used by the access gate. Idempotent."""
        now = self.clock.now()
        changed = self.store.downgrade_expired_grandfathered(user_id, cleanup_cutoff(now, self.config), now)
        if changed:
            logger.info(f"Converted user {user_id} from expired grandfathered to free")
        return changed

    def cleanup_expired(self) -> Dict[str, Any]:
        if not self.config.auto_cleanup_enabled:
            logger.info("Grandfathering auto-cleanup is disabled")
            return {"processed": 0, "cleaned": 0, "errors": []}

        now = self.clock.now()
        cutoff = cleanup_cutoff(now, self.config)
        candidates = self.store.list_users(tier=Tier.GRANDFATHERED, grandfathered_until_before=cutoff)

        cleaned = 0
        errors: List[Dict[str, str]] = []
        for user in candidates:
            try:
                if self.store.downgrade_expired_grandfathered(user.id, cutoff, now):
                    cleaned += 1
            except Exception as e:
                logger.warning(f"Failed to clean up grandfathered user {user.id}: {e}")
                errors.append(_error_entry(user.id, e))

        if candidates:
            logger.info(
                f"Grandfathering cleanup complete: {cleaned}/{len(candidates)} users converted to free",
                extra={"processed": len(candidates), "cleaned": cleaned, "errors": len(errors)},
            )
        return {"processed": len(candidates), "cleaned": cleaned, "errors": errors}

    # --- read-only views ---

    def _grandfathered_with_status(self, now: datetime):
        for user in self.store.list_users(tier=Tier.GRANDFATHERED):
            if user.grandfathered_until is None:
                continue
            yield user, expiration_status(user.grandfathered_until, now, self.config)

    def approaching_expiration(self, now: Optional[datetime] = None) -> Dict[str, List[Dict[str, Any]]]:
        now = now or self.clock.now()
        thresholds = sorted(self.config.warning_days)
        buckets: Dict[str, List[Dict[str, Any]]] = {bucket_name(d): [] for d in thresholds}
        for user, status in self._grandfathered_with_status(now):
            if status.state not in (ExpirationState.ACTIVE, ExpirationState.EXPIRING_SOON):
                continue
            for days in thresholds:
                if status.days_remaining <= days:
                    buckets[bucket_name(days)].append(_user_summary(user, status))
                    break
        return buckets

    def users_in_grace_period(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        now = now or self.clock.now()
        return [
            _user_summary(user, status)
            for user, status in self._grandfathered_with_status(now)
            if status.state == ExpirationState.GRACE_PERIOD
        ]

    def fully_expired(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        now = now or self.clock.now()
        return [
            _user_summary(user, status)
            for user, status in self._grandfathered_with_status(now)
            if status.state == ExpirationState.EXPIRED
        ]

    def _with_expiration(self, user: UserRecord, now: datetime) -> Dict[str, Any]:
        view = record_to_dict(user)
        if user.grandfathered_until is None:
            view["expirationStatus"] = None
            view["timeUntilExpiration"] = None
        else:
            status = expiration_status(user.grandfathered_until, now, self.config)
            view["expirationStatus"] = status.to_dict()
            view["timeUntilExpiration"] = format_time_until_expiration(status)
        return view

    def search_users(
        self, *, email: Optional[str] = None, tier: Optional[Tier] = None, limit: int = 50
    ) -> Dict[str, Any]:
        now = self.clock.now()
        users = self.store.list_users(tier=tier, email_contains=email, limit=limit)
        views = [self._with_expiration(u, now) for u in users]
        return {"users": views, "total": len(views)}

    def user_detail(self, user_id: str, recent_limit: int = 10) -> Dict[str, Any]:
        """Raises NotFound."""
        user = self._get_user(user_id)
        view = self._with_expiration(user, self.clock.now())
        view["recentGenerations"] = [
            record_to_dict(r) for r in self.store.list_recent_usage(user_id, recent_limit)
        ]
        return view

    def expiration_report(self) -> Dict[str, Any]:
        now = self.clock.now()
        approaching = self.approaching_expiration(now)
        grace = self.users_in_grace_period(now)
        expired = self.fully_expired(now)
        return {
            "timestamp": now.isoformat(),
            "config": {
                "warning_days_before": list(self.config.warning_days),
                "auto_cleanup_enabled": self.config.auto_cleanup_enabled,
                "grace_period_hours": self.config.grace_period.total_seconds() / 3600,
                "send_notifications": self.config.send_notifications,
            },
            "approaching_expiration": {
                "total": sum(len(users) for users in approaching.values()),
                "breakdown": approaching,
            },
            "grace_period": {"total": len(grace), "users": grace},
            "fully_expired": {"total": len(expired), "users": expired},
        }

    def stats(self) -> Dict[str, int]:
        now = self.clock.now()
        users = self.store.list_users()
        cutoff = self.config.paywall_introduction_date
        grandfathered = [u for u in users if u.subscription_tier == Tier.GRANDFATHERED]
        return {
            "total_users": len(users),
            "free_users": sum(1 for u in users if u.subscription_tier == Tier.FREE),
            "premium_users": sum(1 for u in users if u.subscription_tier == Tier.PREMIUM),
            "grandfathered_users": len(grandfathered),
            "active_grandfathered": sum(
                1 for u in grandfathered if u.grandfathered_until and u.grandfathered_until > now
            ),
            "expired_grandfathered": sum(
                1 for u in grandfathered if u.grandfathered_until and u.grandfathered_until <= now
            ),
            "users_before_paywall": sum(1 for u in users if u.created_at < cutoff),
            "users_after_paywall": sum(1 for u in users if u.created_at >= cutoff),
        }

    # --- warnings / maintenance ---

    def send_expiration_warnings(self) -> Dict[str, Any]:
        if not self.config.send_notifications:
            logger.info("Expiration notifications are disabled")
            return {"warnings_sent": 0, "message": "Notifications disabled"}

        now = self.clock.now()
        sent = 0
        errors: List[Dict[str, str]] = []
        breakdown: Dict[str, int] = {}
        for user, status in self._grandfathered_with_status(now):
            if status.state != ExpirationState.EXPIRING_SOON:
                continue
            bucket = next(
                bucket_name(d) for d in sorted(self.config.warning_days) if status.days_remaining <= d
            )
            try:
                self.notifier.notify(user, bucket, status)
                sent += 1
                breakdown[bucket] = breakdown.get(bucket, 0) + 1
            except Exception as e:
                logger.warning(f"Failed to send expiration warning to user {user.id}: {e}")
                errors.append(_error_entry(user.id, e))

        return {
            "warnings_sent": sent,
            "breakdown": breakdown,
            "errors": errors,
            "message": f"Sent {sent} expiration warnings",
        }

    def run_expiration_maintenance(self) -> Dict[str, Any]:
        logger.info("Starting grandfathering expiration maintenance")
        results = {
            "timestamp": self.clock.now().isoformat(),
            "warnings": self.send_expiration_warnings(),
            "cleanup": self.cleanup_expired(),
            "grace_period_users": self.users_in_grace_period(),
        }
        logger.info(
            "Expiration maintenance complete",
            extra={
                "warnings_sent": results["warnings"]["warnings_sent"],
                "cleaned": results["cleanup"]["cleaned"],
                "grace_period_users": len(results["grace_period_users"]),
            },
        )
        return results

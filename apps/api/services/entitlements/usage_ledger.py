"""
Usage ledger: append-only record of workout generations per user per day.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, time, timedelta
from typing import Any, Dict, Optional, Tuple

from services.entitlements.clock import Clock
from services.entitlements.config import EntitlementConfig
from services.entitlements.records import PRETRACK_MARKER, GenerationType, UsageRecord
from services.entitlements.store import EntitlementStore

logger = logging.getLogger(__name__)


def day_window(now: datetime, config: EntitlementConfig) -> Tuple[datetime, datetime]:
    """
    [start, end) of the calendar day containing `now`.

    Uses the configured usage timezone, or the host's local timezone when unset.
    """
    tz = config.usage_day_timezone
    day = now.astimezone(tz).date()
    if tz is None:
        # Host local: each midnight gets its own UTC offset.
        start = datetime.combine(day, time.min).astimezone()
        end = datetime.combine(day + timedelta(days=1), time.min).astimezone()
        return start, end
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return start, end


def placeholder_payload(now: datetime) -> Dict[str, Any]:
    return {PRETRACK_MARKER: True, "timestamp": now.isoformat()}


class UsageLedger:
    def __init__(self, store: EntitlementStore, clock: Clock, config: EntitlementConfig) -> None:
        self.store = store
        self.clock = clock
        self.config = config

    def today_window(self) -> Tuple[datetime, datetime]:
        return day_window(self.clock.now(), self.config)

    def count_on(self, user_id: str, day: datetime) -> int:
        start, end = day_window(day, self.config)
        return self.store.count_usage(user_id, start, end)

    def count_today(self, user_id: str) -> int:
        start, end = self.today_window()
        return self.store.count_usage(user_id, start, end)

    def next_reset_time(self) -> datetime:
        return self.today_window()[1]

    def _new_record(self, user_id: str, generation_type: GenerationType, payload) -> UsageRecord:
        return UsageRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            generated_at=self.clock.now(),
            generation_type=GenerationType(generation_type),
            payload=payload,
        )

    def record(
        self,
        user_id: str,
        generation_type: GenerationType,
        payload: Optional[Dict[str, Any]] = None,
    ) -> UsageRecord:
        return self.store.add_usage(self._new_record(user_id, generation_type, payload))

    def reserve(self, user_id: str, limit: int) -> Tuple[Optional[UsageRecord], int]:
        """
        Atomically write a placeholder if today's count is below `limit`.

        Returns (placeholder or None, used_before).
        """
        now = self.clock.now()
        record = self._new_record(user_id, GenerationType.FALLBACK, placeholder_payload(now))
        start, end = day_window(now, self.config)
        reserved, used = self.store.reserve_usage(user_id, start, end, limit, record)
        if not reserved:
            return None, used
        logger.info(
            "Usage slot reserved",
            extra={"user_id": user_id, "usage_id": record.id, "used_before": used},
        )
        return record, used

    def finalize(
        self,
        user_id: str,
        payload: Optional[Dict[str, Any]],
        generation_type: GenerationType,
        reservation_id: Optional[str] = None,
    ) -> UsageRecord:
        """
        Fill a placeholder in place with the real result.

        Without an explicit reservation id the latest placeholder of the day is
        used; when none exists a fresh record is appended.
        """
        if reservation_id is None:
            start, end = self.today_window()
            placeholders = [r for r in self.store.list_usage(user_id, start, end) if r.is_placeholder]
            if placeholders:
                reservation_id = placeholders[-1].id

        if reservation_id is None:
            return self.record(user_id, generation_type, payload)

        return self.store.update_usage(
            reservation_id,
            payload=payload,
            generation_type=GenerationType(generation_type),
        )

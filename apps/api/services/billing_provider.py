"""
Billing provider collaborator interface.

The entitlement engine only needs three outbound calls; provider wire formats
stay inside the concrete implementation (services.stripe_service).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class ProviderSubscription:
    external_subscription_id: str
    # Lifecycle vocabulary of the reconciler: activated, cancelled, suspended, expired, created
    event_type: str
    status: str
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    plan_id: Optional[str] = None
    approval_url: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class BillingProvider(ABC):
    @abstractmethod
    def create_subscription(
        self, *, user_id: str, email: Optional[str], billing_cycle: str
    ) -> ProviderSubscription:
        """Start checkout. The returned subscription is `pending` until activation arrives."""

    @abstractmethod
    def cancel_subscription(self, external_subscription_id: str, *, reason: Optional[str] = None) -> None:
        ...

    @abstractmethod
    def get_subscription_status(self, external_subscription_id: str) -> ProviderSubscription:
        ...

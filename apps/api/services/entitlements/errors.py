from __future__ import annotations

from typing import Optional


class EntitlementError(RuntimeError):
    """Base class for infrastructure failures raised by the entitlement engine."""

    error_code = "ENTITLEMENT_ERROR"

    def __init__(self, message: str, *, user_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.user_id = user_id


class Unauthenticated(EntitlementError):
    error_code = "UNAUTHENTICATED"


class NotFound(EntitlementError):
    error_code = "NOT_FOUND"

    def __init__(self, resource: str, identifier: str) -> None:
        super().__init__(f"{resource} not found: {identifier}")
        self.resource = resource
        self.identifier = identifier


class UpstreamUnavailable(EntitlementError):
    """Store or billing provider call failed."""

    error_code = "UPSTREAM_UNAVAILABLE"


class UnknownEvent(EntitlementError):
    """Webhook event type we do not handle. Acknowledged, never retried."""

    error_code = "UNKNOWN_EVENT"


class MalformedEvent(EntitlementError):
    """Webhook payload missing the fields needed to apply it."""

    error_code = "MALFORMED_EVENT"

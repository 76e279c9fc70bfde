"""
Custom exception classes and error handling.

Provides consistent error responses across the API.
"""
from fastapi import HTTPException, status
from typing import Optional, Dict, Any


class APIException(HTTPException):
    """Base API exception with consistent structure."""

    def __init__(
        self,
        status_code: int,
        detail: Any,
        error_code: Optional[str] = None,
        headers: Optional[Dict[str, Any]] = None
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_code = error_code


class ConflictError(APIException):
    """Request conflicts with current state (e.g. a second active subscription)."""

    def __init__(self, detail: str):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=detail,
            error_code="CONFLICT"
        )


class WebhookRejectedError(APIException):
    """Webhook failed verification or could not be parsed. The provider will retry."""

    def __init__(self, detail: str):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=detail,
            error_code="WEBHOOK_REJECTED"
        )


class QuotaExceededError(APIException):
    """Daily generation quota used up. Carries the decision so the UI can show remaining quota."""

    def __init__(self, decision_payload: Dict[str, Any], error: str, message: str):
        super().__init__(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "error": error,
                "message": message,
                "reason": decision_payload.get("reason"),
                "usedToday": decision_payload.get("usedToday"),
                "dailyLimit": decision_payload.get("dailyLimit"),
                "accessInfo": decision_payload,
                "upgradeRequired": True,
            },
            error_code="QUOTA_EXCEEDED"
        )


class ServiceUnavailableError(APIException):
    """Upstream store or provider failed."""

    def __init__(self, detail: str = "Service temporarily unavailable"):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=detail,
            error_code="UPSTREAM_UNAVAILABLE"
        )

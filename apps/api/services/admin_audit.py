from __future__ import annotations

from typing import Any, Dict, Optional

import logging
from fastapi import Request

from core.auth import Identity

logger = logging.getLogger("admin_audit")


def record_admin_audit_event(
    *,
    request: Optional[Request],
    actor: Identity,
    action: str,
    target_user_id: Optional[str] = None,
    reason: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Best-effort audit trail for admin actions on entitlements.

    Written as a structured log line on the `admin_audit` logger so it lands in
    the same JSON stream (and Sentry breadcrumbs) as the rest of the API.

    Safety:
    - Never throws (does not block primary operation).
    - Payload must be bounded and must not contain secrets.
    """
    try:
        ip_address = None
        user_agent = None
        if request is not None:
            ip_address = request.client.host if request.client else None
            user_agent = request.headers.get("user-agent")

        logger.info(
            f"admin action {action} by {actor.id}",
            extra={
                "audit_action": action,
                "actor_user_id": actor.id,
                "actor_roles": sorted(actor.roles),
                "target_user_id": target_user_id,
                "reason": reason,
                "ip_address": ip_address,
                "user_agent": user_agent,
                "payload": payload or {},
            },
        )
    except Exception as e:
        # Never block admin operations on audit logging, but do emit a server log.
        logger.exception("Admin audit logging failed: %s", str(e))

"""
Grandfathering admin API.

Admin/owner role only. Every mutating call leaves an audit log entry.
"""

from typing import Optional

from fastapi import APIRouter, Body, Depends, Query, Request

from core.auth import Identity, require_admin
from routers.deps import get_grandfathering_manager
from schemas import GrandfatherGrantRequest, GrandfatherRevokeRequest, UserResponse
from services.admin_audit import record_admin_audit_event
from services.entitlements import GrandfatheringManager, Tier
from services.entitlements.clock import ensure_aware
from services.entitlements.records import record_to_dict

router = APIRouter(prefix="/v1/admin/grandfathering", tags=["admin"])


def _user_view(user) -> dict:
    return UserResponse.model_validate(record_to_dict(user)).model_dump(mode="json")


@router.get("/stats")
def grandfathering_stats(
    current_user: Identity = Depends(require_admin),
    manager: GrandfatheringManager = Depends(get_grandfathering_manager),
):
    return manager.stats()


@router.get("/report")
def expiration_report(
    current_user: Identity = Depends(require_admin),
    manager: GrandfatheringManager = Depends(get_grandfathering_manager),
):
    return manager.expiration_report()


@router.post("/bulk-grant")
def bulk_grant(
    http_request: Request,
    current_user: Identity = Depends(require_admin),
    manager: GrandfatheringManager = Depends(get_grandfathering_manager),
):
    """Grant grandfathered access to every eligible free user that predates the paywall."""
    result = manager.bulk_grant_eligible()
    record_admin_audit_event(
        request=http_request,
        actor=current_user,
        action="grandfathering.bulk_grant",
        payload={"processed": result["processed"], "granted": result["granted"], "errors": len(result["errors"])},
    )
    return result


@router.post("/cleanup")
def cleanup_expired(
    http_request: Request,
    current_user: Identity = Depends(require_admin),
    manager: GrandfatheringManager = Depends(get_grandfathering_manager),
):
    result = manager.cleanup_expired()
    record_admin_audit_event(
        request=http_request,
        actor=current_user,
        action="grandfathering.cleanup",
        payload={"processed": result["processed"], "cleaned": result["cleaned"], "errors": len(result["errors"])},
    )
    return result


@router.post("/warnings")
def send_warnings(
    http_request: Request,
    current_user: Identity = Depends(require_admin),
    manager: GrandfatheringManager = Depends(get_grandfathering_manager),
):
    result = manager.send_expiration_warnings()
    record_admin_audit_event(
        request=http_request,
        actor=current_user,
        action="grandfathering.warnings",
        payload={"warnings_sent": result.get("warnings_sent", 0)},
    )
    return result


@router.post("/maintenance")
def run_maintenance(
    http_request: Request,
    current_user: Identity = Depends(require_admin),
    manager: GrandfatheringManager = Depends(get_grandfathering_manager),
):
    """Warnings, then cleanup, then a grace-period snapshot."""
    result = manager.run_expiration_maintenance()
    record_admin_audit_event(
        request=http_request,
        actor=current_user,
        action="grandfathering.maintenance",
        payload={
            "warnings_sent": result["warnings"].get("warnings_sent", 0),
            "cleaned": result["cleanup"]["cleaned"],
        },
    )
    return result


@router.get("/users")
def search_users(
    email: Optional[str] = Query(default=None, max_length=254),
    tier: Optional[Tier] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    current_user: Identity = Depends(require_admin),
    manager: GrandfatheringManager = Depends(get_grandfathering_manager),
):
    """Email substring and tier filters; each user carries its expiration status."""
    return {"success": True, **manager.search_users(email=email, tier=tier, limit=limit)}


@router.get("/users/{user_id}")
def user_detail(
    user_id: str,
    current_user: Identity = Depends(require_admin),
    manager: GrandfatheringManager = Depends(get_grandfathering_manager),
):
    return {"success": True, "user": manager.user_detail(user_id)}


@router.post("/users/{user_id}/grant")
def grant_user(
    user_id: str,
    http_request: Request,
    request: Optional[GrandfatherGrantRequest] = Body(default=None),
    current_user: Identity = Depends(require_admin),
    manager: GrandfatheringManager = Depends(get_grandfathering_manager),
):
    """Manual override: no eligibility check."""
    request = request or GrandfatherGrantRequest()
    expires_at = ensure_aware(request.expires_at) if request.expires_at else None
    user = manager.grant(user_id, expires_at)
    record_admin_audit_event(
        request=http_request,
        actor=current_user,
        action="grandfathering.grant",
        target_user_id=user_id,
        reason=request.reason,
        payload={"grandfathered_until": user.grandfathered_until.isoformat() if user.grandfathered_until else None},
    )
    return {"success": True, "user": _user_view(user)}


@router.post("/users/{user_id}/revoke")
def revoke_user(
    user_id: str,
    http_request: Request,
    request: Optional[GrandfatherRevokeRequest] = Body(default=None),
    current_user: Identity = Depends(require_admin),
    manager: GrandfatheringManager = Depends(get_grandfathering_manager),
):
    """Clears the expiry. The user now gets free-tier limits (stored tier is left as is)."""
    request = request or GrandfatherRevokeRequest()
    user = manager.revoke(user_id)
    record_admin_audit_event(
        request=http_request,
        actor=current_user,
        action="grandfathering.revoke",
        target_user_id=user_id,
        reason=request.reason,
        payload={"tier": user.subscription_tier.value},
    )
    return {"success": True, "user": _user_view(user)}

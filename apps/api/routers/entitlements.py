"""
Entitlement read endpoints.

Both routes are read-only: they provision the caller on first touch and may
auto-grant grandfathered access, but never reserve a usage slot or downgrade.
"""

from fastapi import APIRouter, Depends

from core.auth import Identity, get_current_identity
from routers.deps import get_access_gate
from services.entitlements import AccessGate, Tier
from services.entitlements.resolver import format_time_until_expiration

router = APIRouter(prefix="/v1/entitlements", tags=["entitlements"])


@router.get("")
def get_entitlements(
    identity: Identity = Depends(get_current_identity),
    gate: AccessGate = Depends(get_access_gate),
):
    decision = gate.evaluate(identity.id, identity)
    payload = decision.to_payload()
    payload["timeUntilExpiration"] = (
        format_time_until_expiration(decision.expiration)
        if decision.tier == Tier.GRANDFATHERED and decision.expiration is not None
        else None
    )
    return payload


@router.get("/daily-usage")
def get_daily_usage(
    identity: Identity = Depends(get_current_identity),
    gate: AccessGate = Depends(get_access_gate),
):
    return gate.daily_usage(identity.id, identity)

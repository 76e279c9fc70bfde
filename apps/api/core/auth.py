"""
Authentication and authorization dependencies.

Provides FastAPI dependencies for:
- Getting the current identity from the bearer credential
- Role-based access control (admin surface)

The identity collaborator issues the credentials; we only verify them and read
the identity claims. The user row itself is provisioned lazily by the access gate.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import FrozenSet, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from core.security import decode_access_token
from services.entitlements.errors import Unauthenticated

# Use auto_error=False to handle missing credentials manually and return 401 (not 403)
security = HTTPBearer(auto_error=False)

ADMIN_ROLES = frozenset({"admin", "owner"})


@dataclass(frozen=True)
class Identity:
    id: str
    email: Optional[str]
    created_at: datetime
    roles: FrozenSet[str] = field(default_factory=frozenset)


def _parse_created_at(value) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def identity_from_claims(payload: dict) -> Identity:
    """
    Build an Identity from decoded JWT claims.

    Raises Unauthenticated (rendered as 401) when a required claim is missing or malformed.
    """
    user_id = payload.get("sub")
    if not user_id:
        raise Unauthenticated("Invalid token payload")

    created_at = _parse_created_at(payload.get("created_at"))
    if created_at is None:
        raise Unauthenticated("Invalid token payload: created_at", user_id=str(user_id))

    roles = payload.get("roles") or []
    if isinstance(roles, str):
        roles = [roles]
    role = payload.get("role")
    if role:
        roles = list(roles) + [role]

    return Identity(
        id=str(user_id),
        email=payload.get("email"),
        created_at=created_at,
        roles=frozenset(str(r) for r in roles),
    )


def get_current_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Identity:
    """
    Get the current authenticated identity from the JWT bearer token.

    Raises Unauthenticated if the token is missing or invalid.
    """
    if not credentials:
        raise Unauthenticated("Not authenticated")

    payload = decode_access_token(credentials.credentials)
    if not payload:
        raise Unauthenticated("Invalid authentication credentials")

    return identity_from_claims(payload)


def require_role(allowed_roles: list[str]):
    """
    Dependency factory for role-based access control.

    Usage:
        @router.get("/admin-only")
        def admin_endpoint(identity: Identity = Depends(require_role(["admin"]))):
            ...
    """
    def role_checker(identity: Identity = Depends(get_current_identity)) -> Identity:
        if not identity.roles & set(allowed_roles):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. Required roles: {allowed_roles}",
            )
        return identity

    return role_checker


def require_admin(
    identity: Identity = Depends(require_role(sorted(ADMIN_ROLES)))
) -> Identity:
    """Require admin or owner role."""
    return identity

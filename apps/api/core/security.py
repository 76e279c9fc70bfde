"""
Bearer credential utilities.

Credentials are JWTs issued by the identity collaborator. This module only
verifies them and extracts the identity claims; it never issues production
tokens (create_access_token exists for tests and local tooling).

Expected claims: sub, created_at (ISO-8601 or epoch seconds), optional email
and roles. When JWT_ISSUER / JWT_AUDIENCE are configured, iss / aud must match.

SECURITY REQUIREMENTS:
- SECRET_KEY must be set via environment variable (32+ characters)
- SECRET_KEY must NEVER be committed to source control
"""
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict
from jose import JWTError, jwt
from core.config import settings
import logging

logger = logging.getLogger(__name__)

# SECRET_KEY is required by config.py; startup fails if it is missing
SECRET_KEY = settings.SECRET_KEY

if len(SECRET_KEY) < 32:
    raise ValueError(
        "SECRET_KEY must be at least 32 characters. "
        "Generate with: python -c \"import secrets; print(secrets.token_urlsafe(32))\""
    )

ALGORITHM = "HS256"
TEST_TOKEN_EXPIRE_MINUTES = 60


def create_access_token(data: Dict, expires_delta: Optional[timedelta] = None) -> str:
    """Mint a token the way the identity service does (tests and local tooling only)."""
    to_encode = data.copy()
    to_encode["exp"] = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=TEST_TOKEN_EXPIRE_MINUTES))
    if settings.JWT_ISSUER:
        to_encode.setdefault("iss", settings.JWT_ISSUER)
    if settings.JWT_AUDIENCE:
        to_encode.setdefault("aud", settings.JWT_AUDIENCE)
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> Optional[Dict]:
    """Verify signature, expiry and (when configured) issuer/audience. None if invalid."""
    try:
        return jwt.decode(
            token,
            SECRET_KEY,
            algorithms=[ALGORITHM],
            audience=settings.JWT_AUDIENCE,
            issuer=settings.JWT_ISSUER,
            options={"verify_aud": bool(settings.JWT_AUDIENCE)},
        )
    except JWTError as e:
        logger.debug(f"Rejected bearer token: {e}")
        return None

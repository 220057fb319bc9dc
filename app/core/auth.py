"""
Bearer token verification.

Login and token issuance belong to the identity provider. The core only
verifies the HS256 JWT it receives and trusts the ``user_id`` / ``role``
claims inside it. ``create_access_token`` exists for the identity provider's
integration and for tests.
"""
import enum
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt as pyjwt
from pydantic import BaseModel

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)


class PrincipalRole(str, enum.Enum):
    STUDENT = "student"
    MENTOR = "mentor"
    ADMIN = "admin"


class TokenPayload(BaseModel):
    """Authenticated principal carried by the JWT"""
    user_id: int
    role: PrincipalRole
    exp: int  # Unix timestamp


def create_access_token(user_id: int, role: str) -> str:
    """Issue a JWT for a principal"""
    if not settings.JWT_SECRET_KEY:
        raise ValueError("JWT_SECRET_KEY is not configured, cannot issue tokens")
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES)
    payload = {
        "user_id": user_id,
        "role": PrincipalRole(role).value,
        "exp": int(expire.timestamp()),
    }
    return pyjwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def verify_token(token: str) -> Optional[TokenPayload]:
    """Verify a JWT. Returns None when invalid, expired or malformed"""
    if not settings.JWT_SECRET_KEY:
        logger.error("JWT_SECRET_KEY is empty, tokens cannot be verified")
        return None
    try:
        payload = pyjwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
        )
        return TokenPayload(**payload)
    except pyjwt.InvalidTokenError:
        logger.warning("JWT token invalid or expired")
        return None
    except (KeyError, ValueError, TypeError) as e:
        logger.warning("JWT payload malformed", extra_data={"error": str(e)})
        return None


def extract_bearer_token(authorization: str | None) -> str | None:
    """Pull the token out of an ``Authorization: Bearer <token>`` header value"""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()

"""
FastAPI dependencies for authenticated principals

Usage:
    @router.get("/wallet/balance")
    async def balance(
        principal: TokenPayload = Depends(get_current_principal),
        db: AsyncSession = Depends(get_db),
    ):
        user_id = principal.user_id
"""
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from starlette.requests import HTTPConnection

from app.core.auth import verify_token, TokenPayload, PrincipalRole
from app.core.logging import get_logger
from app.realtime.fanout import RealtimeFanout

logger = get_logger(__name__)

security = HTTPBearer(auto_error=False)


async def get_current_principal(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> TokenPayload:
    """
    Verify the bearer JWT and return its principal.

    Raises 401 when the header is missing or the token is invalid/expired.
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token_data = verify_token(credentials.credentials)
    if not token_data:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return token_data


async def require_student(
    principal: TokenPayload = Depends(get_current_principal),
) -> TokenPayload:
    if principal.role != PrincipalRole.STUDENT:
        logger.warning(
            "Student-only endpoint denied",
            extra_data={"user_id": principal.user_id, "role": principal.role.value},
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Student role required",
        )
    return principal


async def require_mentor(
    principal: TokenPayload = Depends(get_current_principal),
) -> TokenPayload:
    if principal.role != PrincipalRole.MENTOR:
        logger.warning(
            "Mentor-only endpoint denied",
            extra_data={"user_id": principal.user_id, "role": principal.role.value},
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Mentor role required",
        )
    return principal


async def require_admin(
    principal: TokenPayload = Depends(get_current_principal),
) -> TokenPayload:
    if principal.role != PrincipalRole.ADMIN:
        logger.warning(
            "Admin endpoint denied",
            extra_data={"user_id": principal.user_id, "role": principal.role.value},
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required",
        )
    return principal


def get_fanout(connection: HTTPConnection) -> RealtimeFanout:
    """The process-wide fan-out created at startup"""
    return connection.app.state.fanout

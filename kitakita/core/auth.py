"""Authentication dependencies.

Two auth paths:
1. Authorization Bearer JWT (web dashboard users)
2. X-Internal-Key header (the Telegram bot process)
"""

from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from kitakita.core.security import decode_access_token, verify_internal_key
from kitakita.database import get_db
from kitakita.logging_config import get_logger
from kitakita.models.user import User

logger = get_logger(__name__)

INTERNAL_KEY_HEADER = "X-Internal-Key"


async def get_current_user(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> User:
    """Extract and validate the current user from a Bearer token.

    Raises:
        HTTPException 401: If the token is missing, invalid, or the
            account is unknown or disabled
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Not authenticated",
        headers={"WWW-Authenticate": "Bearer"},
    )

    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise credentials_exception

    payload = decode_access_token(auth_header[7:])
    if payload is None:
        raise credentials_exception

    result = await db.execute(select(User).where(User.id == payload["sub"]))
    user = result.scalar_one_or_none()
    if user is None:
        raise credentials_exception
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User account is disabled",
        )
    return user


async def require_internal_key(
    x_internal_key: Annotated[str | None, Header(alias=INTERNAL_KEY_HEADER)] = None,
) -> None:
    """Allow only callers presenting the shared internal key."""
    if not verify_internal_key(x_internal_key):
        logger.warning("Rejected bot-facing request with invalid internal key")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid internal key",
        )


# Type aliases for cleaner route signatures
CurrentUser = Annotated[User, Depends(get_current_user)]
InternalCaller = Depends(require_internal_key)

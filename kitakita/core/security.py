"""Bearer token and internal key verification.

Web sessions are established by the upstream identity provider, which
mints HS256 access tokens whose ``sub`` is the account id. The API only
verifies them. The Telegram bot authenticates to the bot-facing
endpoints with a shared internal key.
"""

import hmac
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from kitakita.config import settings

# Lifetime of tokens minted by create_access_token (tooling and tests)
DEFAULT_TOKEN_LIFETIME = timedelta(hours=1)


def create_access_token(
    user_id: str,
    email: str,
    expires_delta: timedelta | None = None,
) -> str:
    """Mint an access token in the identity provider's format."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "email": email,
        "exp": now + (expires_delta or DEFAULT_TOKEN_LIFETIME),
        "iat": now,
        "type": "access",
    }

    return jwt.encode(
        payload,
        settings.secret_key,
        algorithm=settings.jwt_algorithm,
    )


def decode_access_token(token: str) -> dict | None:
    """Decode and validate a JWT access token.

    Returns:
        Token payload dict if valid, None if invalid or expired
    """
    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError:
        return None

    if payload.get("type") != "access" or not payload.get("sub"):
        return None

    return payload


def verify_internal_key(presented: str | None) -> bool:
    """Constant-time check of the bot's shared key.

    An unset ``internal_api_key`` rejects everything.
    """
    if not settings.internal_api_key or not presented:
        return False
    return hmac.compare_digest(presented, settings.internal_api_key)

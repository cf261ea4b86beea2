"""Rate limiting with slowapi.

Connection key issuance is limited per web account so a leaked session
cannot mint keys in bulk; requests without a valid token fall back to
the client address.
"""

from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from starlette.requests import Request
from starlette.responses import JSONResponse

from kitakita.config import settings
from kitakita.core.security import decode_access_token

# Redis when configured; in-memory for tests and single-process setups
_storage_uri = (
    settings.redis_url if settings.redis_url and not settings.testing else "memory://"
)


def client_address(request: Request) -> str:
    """Original client address, honouring X-Forwarded-For behind a proxy."""
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def account_or_address(request: Request) -> str:
    """Rate limit key: the bearer token's account, else the client address."""
    auth_header = request.headers.get("authorization", "")
    if auth_header.startswith("Bearer "):
        payload = decode_access_token(auth_header[7:])
        if payload is not None:
            return f"user:{payload['sub']}"
    return f"ip:{client_address(request)}"


limiter = Limiter(
    key_func=account_or_address,
    storage_uri=_storage_uri,
    enabled=not settings.testing,
)


async def rate_limit_exceeded_handler(
    request: Request, exc: RateLimitExceeded
) -> JSONResponse:
    """Return a 429 JSON response when a limit is hit."""
    return JSONResponse(
        status_code=429,
        content={"detail": f"Rate limit exceeded: {exc.detail}"},
    )

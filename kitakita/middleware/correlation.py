"""Correlation ID middleware.

Reuses the caller's ``X-Correlation-ID`` or mints one, exposes it to the
logging context for the lifetime of the request, echoes it on the
response, and logs one line when the request starts and one when it ends.

Written as plain ASGI rather than ``BaseHTTPMiddleware`` so requests
stay on the event loop their asyncpg connections were opened on.
"""

import time
import uuid

from starlette.types import ASGIApp, Message, Receive, Scope, Send

from kitakita.logging_config import correlation_id_ctx, get_logger

logger = get_logger(__name__)

CORRELATION_ID_HEADER = "X-Correlation-ID"
_HEADER_KEY = CORRELATION_ID_HEADER.lower().encode()

# Caller-supplied IDs longer than this are replaced
MAX_CORRELATION_ID_LENGTH = 128


def _incoming_correlation_id(scope: Scope) -> str | None:
    for name, value in scope.get("headers", []):
        if name == _HEADER_KEY:
            decoded = value.decode("latin-1").strip()
            if decoded and len(decoded) <= MAX_CORRELATION_ID_LENGTH:
                return decoded
    return None


class CorrelationIdMiddleware:
    """Tag every HTTP request with a correlation ID."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        correlation_id = _incoming_correlation_id(scope) or str(uuid.uuid4())
        token = correlation_id_ctx.set(correlation_id)

        method = scope.get("method", "")
        path = scope.get("path", "")
        started = time.perf_counter()
        status_code: int | None = None

        logger.info("Request started", method=method, path=path)

        async def send_with_header(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message.get("status")
                headers = [
                    *message.get("headers", []),
                    (_HEADER_KEY, correlation_id.encode()),
                ]
                message = {**message, "headers": headers}
            await send(message)

        try:
            await self.app(scope, receive, send_with_header)
        except Exception:
            logger.exception(
                "Request failed",
                method=method,
                path=path,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
            )
            raise
        else:
            logger.info(
                "Request completed",
                method=method,
                path=path,
                status_code=status_code,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
            )
        finally:
            correlation_id_ctx.reset(token)

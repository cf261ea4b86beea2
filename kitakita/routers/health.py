"""Health check endpoints for container orchestration."""

from typing import Any

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

from kitakita.config import settings
from kitakita.database import check_database_connection

router = APIRouter(tags=["Health"])


async def _database_probe(ok_status: str, failed_status: str) -> JSONResponse:
    if await check_database_connection():
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"status": ok_status, "database": "connected"},
        )
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": failed_status, "database": "disconnected"},
    )


@router.get("/health", response_model=None)
async def health_check() -> JSONResponse:
    """Overall health, including database reachability.

    The link store is the only hard dependency; Telegram and the LLM
    providers are reported by configuration only.
    """
    response = await _database_probe("healthy", "degraded")
    response.headers["X-Service-Name"] = settings.service_name
    return response


@router.get("/health/live")
async def liveness_probe() -> dict[str, Any]:
    """Liveness: the process is up. Does not touch the database."""
    return {
        "status": "alive",
        "telegram_configured": bool(settings.telegram_bot_token),
    }


@router.get("/health/ready", response_model=None)
async def readiness_probe() -> JSONResponse:
    """Readiness: the database answers, so link operations can be served."""
    return await _database_probe("ready", "not_ready")

"""Kita-kita FastAPI application."""

from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded

from kitakita import __version__
from kitakita.config import settings, validate_secret_key
from kitakita.core.errors import LinkError
from kitakita.database import close_database
from kitakita.logging_config import get_logger, setup_logging
from kitakita.middleware import CorrelationIdMiddleware
from kitakita.middleware.rate_limit import limiter, rate_limit_exceeded_handler
from kitakita.routers import agents, health, telegram
from kitakita.services.scheduler import scheduler_lifespan

setup_logging(
    log_format=settings.log_format,
    log_level=settings.log_level,
    service_name=settings.service_name,
)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Migrations run before uvicorn starts (alembic upgrade head)
    validate_secret_key()
    async with scheduler_lifespan():
        logger.info("Kita-kita API started", version=__version__)
        yield
        logger.info("Shutting down Kita-kita API...")

    await close_database()
    logger.info("Kita-kita API shutdown complete")


app = FastAPI(
    title="Kita-kita API",
    description="Personal finance API with Telegram account linking",
    version=__version__,
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
app.add_exception_handler(LinkError, telegram.link_error_handler)

# First added = innermost
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(CorrelationIdMiddleware)

app.include_router(health.router)
app.include_router(telegram.router)
app.include_router(agents.router)


@app.get("/")
async def root() -> dict[str, Any]:
    """Root endpoint."""
    return {
        "name": "Kita-kita API",
        "version": __version__,
        "docs": "/docs",
    }

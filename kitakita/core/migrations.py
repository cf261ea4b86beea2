"""Database migration utilities."""

from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.script import ScriptDirectory
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError

from kitakita.database import get_engine
from kitakita.logging_config import get_logger

logger = get_logger(__name__)

# Repository root, where alembic.ini and migrations/ live
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


def get_alembic_config() -> Config:
    """Build the Alembic configuration for this checkout.

    Raises:
        FileNotFoundError: If alembic.ini is missing (e.g. a wheel install).
    """
    alembic_ini = PROJECT_ROOT / "alembic.ini"
    if not alembic_ini.exists():
        raise FileNotFoundError(f"alembic.ini not found at {alembic_ini}")

    config = Config(str(alembic_ini))
    config.set_main_option("script_location", str(PROJECT_ROOT / "migrations"))
    return config


def run_migrations(revision: str = "head") -> None:
    """Upgrade the database schema to ``revision``.

    Synchronous; env.py drives the async engine itself, so call this
    before an event loop is running (start scripts, the bot entry point).
    """
    logger.info("Running database migrations", revision=revision)
    try:
        command.upgrade(get_alembic_config(), revision)
    except Exception:
        logger.error("Database migration failed", exc_info=True)
        raise
    logger.info("Database migrations completed")


def get_head_revision() -> str | None:
    """Latest revision shipped in migrations/versions."""
    script = ScriptDirectory.from_config(get_alembic_config())
    return script.get_current_head()


async def get_database_revision() -> str | None:
    """Revision recorded in the database, or None before the first upgrade."""
    try:
        async with get_engine().connect() as conn:
            result = await conn.execute(
                text("SELECT version_num FROM alembic_version LIMIT 1")
            )
            return result.scalar_one_or_none()
    except DBAPIError:
        # alembic_version does not exist yet
        return None

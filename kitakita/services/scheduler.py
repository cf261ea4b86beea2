"""Background job scheduler.

APScheduler-based jobs: in-process Telegram polling and connection key
housekeeping.
"""

from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from kitakita.config import settings
from kitakita.database import get_session_maker
from kitakita.logging_config import get_logger
from kitakita.services.linking import find_unlinked_consumptions, purge_expired_codes

logger = get_logger(__name__)

# Process-wide scheduler; None when stopped
scheduler: AsyncIOScheduler | None = None


async def poll_telegram_updates() -> None:
    """Poll Telegram once and handle pending messages.

    Runs every N seconds when polling is enabled and a bot token is set.
    """
    from kitakita.services.telegram_bot import (
        TelegramBotError,
        poll_and_handle_messages,
    )

    try:
        processed = await poll_and_handle_messages()
        if processed > 0:
            logger.info("Processed Telegram messages", count=processed)
    except TelegramBotError as e:
        logger.warning("Telegram polling error", error=str(e))
    except Exception as e:
        logger.error("Unexpected Telegram polling error", error=str(e))


async def purge_expired_codes_job() -> None:
    """Delete unused connection keys past their expiry."""
    async with get_session_maker()() as db:
        try:
            deleted = await purge_expired_codes(db)
            logger.info("Scheduled key purge completed", deleted=deleted)
        except Exception as e:
            logger.error("Scheduled key purge failed", error=str(e))


async def reconcile_links_job() -> None:
    """Report consumed keys that have no account link."""
    async with get_session_maker()() as db:
        try:
            orphans = await find_unlinked_consumptions(db)
        except Exception as e:
            logger.error("Scheduled link reconciliation failed", error=str(e))
            return

    # Each orphan is already logged by find_unlinked_consumptions
    if orphans:
        logger.warning("Unlinked key consumptions found", count=len(orphans))


def _scheduled_jobs() -> list[tuple[Callable, IntervalTrigger, str, str]]:
    """Jobs enabled by the current settings as (func, trigger, id, name)."""
    jobs = []
    if settings.code_purge_enabled:
        jobs.append(
            (
                purge_expired_codes_job,
                IntervalTrigger(hours=settings.code_purge_interval_hours),
                "code_purge",
                "Expired Connection Key Purge",
            )
        )
    if settings.link_reconcile_enabled:
        jobs.append(
            (
                reconcile_links_job,
                IntervalTrigger(hours=settings.link_reconcile_interval_hours),
                "link_reconcile",
                "Account Link Reconciliation",
            )
        )
    # In-process polling; the standalone kitakita-bot runs the same loop
    if settings.telegram_polling_enabled and settings.telegram_bot_token:
        jobs.append(
            (
                poll_telegram_updates,
                IntervalTrigger(seconds=settings.telegram_polling_interval_seconds),
                "telegram_poll",
                "Telegram Bot Polling",
            )
        )
    return jobs


def start_scheduler() -> AsyncIOScheduler:
    """Start the background scheduler, or return the running one."""
    global scheduler

    if scheduler is not None:
        logger.warning("Scheduler already running")
        return scheduler

    scheduler = AsyncIOScheduler()
    for func, trigger, job_id, name in _scheduled_jobs():
        scheduler.add_job(
            func,
            trigger=trigger,
            id=job_id,
            name=name,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info("Scheduled job", job_id=job_id, trigger=str(trigger))

    scheduler.start()
    logger.info("Background scheduler started")
    return scheduler


def stop_scheduler() -> None:
    """Stop the background scheduler without waiting for running jobs."""
    global scheduler

    if scheduler is not None:
        scheduler.shutdown(wait=False)
        scheduler = None
        logger.info("Background scheduler stopped")


def get_scheduler() -> AsyncIOScheduler | None:
    return scheduler


@asynccontextmanager
async def scheduler_lifespan() -> AsyncGenerator[None, None]:
    """Run the scheduler for the duration of the block."""
    start_scheduler()
    try:
        yield
    finally:
        stop_scheduler()

"""Standalone Telegram bot process (``kitakita-bot``).

Runs the same poller the API can run in-process, for deployments that
keep the bot separate from the web API. Both may run against the same
database; link state is never held in memory.
"""

import argparse
import asyncio

from kitakita.config import settings, validate_secret_key
from kitakita.database import close_database
from kitakita.logging_config import get_logger, setup_logging
from kitakita.services.telegram_bot import (
    TelegramBotError,
    get_bot_info,
    poll_and_handle_messages,
)

logger = get_logger(__name__)

# Upper bound on the pause after consecutive Telegram failures
MAX_ERROR_BACKOFF_SECONDS = 60.0


async def run_bot(max_iterations: int | None = None) -> None:
    """Poll Telegram until cancelled.

    Args:
        max_iterations: Stop after this many polls (used by tests).
    """
    username = await get_bot_info()
    logger.info("Telegram bot started", bot_username=username)

    interval = float(settings.telegram_polling_interval_seconds)
    backoff = interval
    iterations = 0

    try:
        while max_iterations is None or iterations < max_iterations:
            iterations += 1
            try:
                processed = await poll_and_handle_messages()
            except TelegramBotError as e:
                logger.warning("Telegram polling error", error=str(e))
                backoff = min(backoff * 2, MAX_ERROR_BACKOFF_SECONDS)
                await asyncio.sleep(backoff)
                continue

            backoff = interval
            if processed:
                logger.info("Processed Telegram messages", count=processed)
            await asyncio.sleep(interval)
    finally:
        await close_database()
        logger.info("Telegram bot stopped")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="kitakita-bot",
        description="Run the Kita-kita Telegram bot with long polling.",
    )
    parser.add_argument(
        "--migrate",
        action="store_true",
        help="apply database migrations before starting",
    )
    args = parser.parse_args(argv)

    setup_logging(
        log_format=settings.log_format,
        log_level=settings.log_level,
        service_name="kitakita-bot",
    )

    if not settings.telegram_bot_token:
        logger.error("TELEGRAM_BOT_TOKEN is not set")
        return 2

    validate_secret_key()

    if args.migrate:
        from kitakita.core.migrations import run_migrations

        run_migrations()

    try:
        asyncio.run(run_bot())
    except KeyboardInterrupt:
        logger.info("Interrupted")
    except TelegramBotError as e:
        logger.error("Telegram bot could not start", error=str(e))
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

"""Telegram Bot API client and update poller.

Raw Bot API calls over httpx (bot info, messaging, file download) and the
long-polling loop that hands each update to ``telegram_commands``. Each
update gets its own database session; no chat state lives in the process.
"""

import httpx

from kitakita.config import settings
from kitakita.core.errors import UpstreamUnavailable
from kitakita.database import get_db_session
from kitakita.logging_config import correlation_id_ctx, get_logger

logger = get_logger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org/bot"
TELEGRAM_FILE_BASE = "https://api.telegram.org/file/bot"

# Telegram message length limit
TELEGRAM_MAX_LENGTH = 4096

# Update offset of the poller. Losing it on restart only replays
# updates Telegram has not yet seen acknowledged.
_last_update_offset: int | None = None

# Cached bot info
_bot_username: str | None = None


class TelegramBotError(UpstreamUnavailable):
    """Error communicating with the Telegram Bot API."""


def _get_api_url(method: str) -> str:
    """Build Telegram Bot API URL for a given method."""
    return f"{TELEGRAM_API_BASE}{settings.telegram_bot_token}/{method}"


def _require_token() -> None:
    if not settings.telegram_bot_token:
        raise TelegramBotError("Telegram bot token is not configured")


async def _call(
    method: str,
    *,
    params: dict | None = None,
    json: dict | None = None,
    timeout: float | None = None,
) -> dict | list | bool:
    """Call a Bot API method and return its ``result``.

    Raises:
        TelegramBotError: On transport errors, timeouts, non-200 responses
            or ``ok: false`` payloads.
    """
    _require_token()

    try:
        async with httpx.AsyncClient(
            timeout=timeout or settings.telegram_timeout_seconds
        ) as client:
            if json is not None:
                response = await client.post(_get_api_url(method), json=json)
            else:
                response = await client.get(_get_api_url(method), params=params)
    except httpx.HTTPError as e:
        raise TelegramBotError(f"Telegram {method} request failed: {e!r}") from e

    if response.status_code != 200:
        raise TelegramBotError(
            f"Telegram {method} error: {response.status_code} {response.text}"
        )

    data = response.json()
    if not data.get("ok"):
        raise TelegramBotError(
            f"Telegram {method} failed: {data.get('description', 'Unknown')}"
        )

    return data.get("result")


async def get_bot_info() -> str:
    """Get the bot's username by calling Telegram getMe.

    Returns:
        The bot's username (without @).

    Raises:
        TelegramBotError: If the bot token is invalid or API call fails.
    """
    global _bot_username

    if _bot_username is not None:
        return _bot_username

    result = await _call("getMe")
    _bot_username = result["username"]
    return _bot_username


async def send_message(chat_id: int, text: str) -> bool:
    """Send an HTML-formatted message to a Telegram chat.

    Text longer than Telegram's limit is truncated.

    Raises:
        TelegramBotError: If the API call fails.
    """
    if len(text) > TELEGRAM_MAX_LENGTH:
        text = text[: TELEGRAM_MAX_LENGTH - 3] + "..."

    await _call(
        "sendMessage",
        json={
            "chat_id": chat_id,
            "text": text,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        },
    )
    return True


async def get_updates(offset: int | None = None) -> list[dict]:
    """Get updates from Telegram using long polling.

    Raises:
        TelegramBotError: If the API call fails.
    """
    params: dict = {"timeout": 1, "allowed_updates": '["message"]'}
    if offset is not None:
        params["offset"] = offset

    result = await _call(
        "getUpdates",
        params=params,
        timeout=settings.telegram_timeout_seconds + 5,
    )
    return result or []


async def download_file(file_id: str) -> bytes:
    """Download a file (e.g. a photo) sent to the bot.

    Raises:
        TelegramBotError: If the file cannot be resolved or downloaded, or
            exceeds ``settings.receipt_max_image_bytes``.
    """
    file_info = await _call("getFile", params={"file_id": file_id})
    file_path = file_info.get("file_path")
    if not file_path:
        raise TelegramBotError("Telegram getFile returned no file_path")

    file_size = file_info.get("file_size") or 0
    if file_size > settings.receipt_max_image_bytes:
        raise TelegramBotError(f"File too large: {file_size} bytes")

    url = f"{TELEGRAM_FILE_BASE}{settings.telegram_bot_token}/{file_path}"
    try:
        async with httpx.AsyncClient(
            timeout=settings.telegram_timeout_seconds
        ) as client:
            response = await client.get(url)
    except httpx.HTTPError as e:
        raise TelegramBotError(f"File download failed: {e!r}") from e

    if response.status_code != 200:
        raise TelegramBotError(f"File download failed: {response.status_code}")

    return response.content


async def _reply(chat_id: int, text: str) -> None:
    try:
        await send_message(chat_id, text)
    except TelegramBotError:
        logger.warning("Failed to send reply", chat_id=chat_id, exc_info=True)


async def handle_update(update: dict) -> bool:
    """Route one Telegram update to its handler and send the reply.

    Returns:
        True if the update carried a message that was handled.
    """
    # Lazy import to avoid circular dependency
    # (telegram_commands -> receipt_scanner -> telegram_bot)
    from kitakita.services.telegram_commands import (
        RECEIPT_PROCESSING_MESSAGE,
        handle_command,
        handle_photo,
    )

    message = update.get("message") or {}
    chat = message.get("chat", {})
    from_user = message.get("from", {})

    chat_id = chat.get("id")
    external_id = from_user.get("id") or chat_id
    display_name = from_user.get("username") or from_user.get("first_name")

    if not chat_id:
        return False

    async with get_db_session() as db:
        if message.get("photo"):
            await _reply(chat_id, RECEIPT_PROCESSING_MESSAGE)
            response = await handle_photo(db, external_id, message["photo"])
        elif message.get("text"):
            response = await handle_command(
                db, external_id, message["text"], display_name
            )
        else:
            return False

    await _reply(chat_id, response)
    return True


async def poll_and_handle_messages() -> int:
    """Poll Telegram once and handle every pending update.

    Returns:
        Number of messages handled.
    """
    global _last_update_offset

    updates = await get_updates(_last_update_offset)
    if not updates:
        return 0

    processed = 0

    for update in updates:
        update_id = update.get("update_id", 0)
        _last_update_offset = update_id + 1

        token = correlation_id_ctx.set(f"tg-{update_id}")
        try:
            if await handle_update(update):
                processed += 1
        except Exception:
            logger.error(
                "Unexpected error handling Telegram update",
                update_id=update_id,
                exc_info=True,
            )
        finally:
            correlation_id_ctx.reset(token)

    return processed


def reset_bot_cache() -> None:
    """Reset cached bot info and polling offset. Used for testing."""
    global _bot_username, _last_update_offset
    _bot_username = None
    _last_update_offset = None

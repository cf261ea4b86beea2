"""Telegram command and photo handlers.

Routes incoming Telegram messages to the appropriate handler and
returns HTML-formatted response strings. The caller is responsible
for sending the response via ``send_message``.

Supported commands:
  /start [KEY]  – Welcome message; with a key, connects like /connect
  /connect KEY  – Link this Telegram account to a Kita-kita web account
  /account      – Show the linked web account
  /disconnect   – Unlink this Telegram account
  /help         – List available commands

Photos are treated as receipts. Every message resolves the sender's link
from the database; nothing is remembered between messages.
"""

import html

from sqlalchemy.ext.asyncio import AsyncSession

from kitakita.config import settings
from kitakita.core.errors import (
    AlreadyLinkedElsewhere,
    AlreadyUsed,
    Expired,
    LinkError,
    Malformed,
    NotFound,
    StorageUnavailable,
    UpstreamUnavailable,
)
from kitakita.logging_config import get_logger
from kitakita.models.user import User
from kitakita.schemas.ai_response import Unparseable
from kitakita.services import linking
from kitakita.services.ai_client import AIConfigurationError
from kitakita.services.receipt_scanner import (
    ReceiptAnalysisTimeout,
    analyze_receipt,
    format_receipt_message,
    format_receipt_summary,
    save_receipt_transaction,
)
from kitakita.services.telegram_bot import TelegramBotError, download_file

logger = get_logger(__name__)

RECEIPT_PROCESSING_MESSAGE = "\U0001f50d Analyzing your receipt, one moment..."

GENERIC_ERROR_MESSAGE = "⚠️ Something went wrong. Please try again later."

_CONNECT_USAGE = (
    "Send <code>/connect YOUR-KEY</code>, for example:\n"
    "<code>/connect TG-ABC234-XYZ7890</code>"
)


def _link_error_message(error: LinkError) -> str:
    """One message per failure reason, each with the step that fixes it."""
    new_key = (
        f"Generate a new key in the web app (Settings → Telegram) at "
        f"{html.escape(settings.web_app_url)}."
    )
    if isinstance(error, Malformed):
        return (
            "❌ <b>Invalid key format</b>\n"
            "Keys look like <code>TG-XXXXXX-XXXXXXX</code>.\n" + _CONNECT_USAGE
        )
    if isinstance(error, NotFound):
        return (
            "❌ <b>Key not found</b>\n"
            "Check that you copied the whole key. " + new_key
        )
    if isinstance(error, Expired):
        return (
            "⌛ <b>Key expired</b>\n"
            f"Keys are valid for {settings.link_code_ttl_minutes} minutes. " + new_key
        )
    if isinstance(error, AlreadyUsed):
        return (
            "\U0001f512 <b>Key already used</b>\n"
            "Each key works only once. " + new_key
        )
    if isinstance(error, AlreadyLinkedElsewhere):
        return (
            "\U0001f517 <b>Already linked</b>\n"
            "This Telegram account or that web account is already connected.\n"
            "Send /disconnect here (or unlink in the web app) first, then try again."
        )
    if isinstance(error, StorageUnavailable):
        return (
            "⚠️ Kita-kita is temporarily unavailable. "
            "Your key was not used; please try again in a minute."
        )
    return GENERIC_ERROR_MESSAGE


async def _account_label(db: AsyncSession, web_user_id: str) -> str:
    user = await db.get(User, web_user_id)
    if user is None:
        return "your Kita-kita account"
    return html.escape(user.display_name or user.email)


async def _handle_start(db: AsyncSession, external_id: int) -> str:
    """Welcome message reflecting the current link state."""
    link = await linking.resolve_link(db, external_id)

    lines = ["\U0001f44b <b>Welcome to Kita-kita Bot!</b>", ""]
    if link is not None:
        label = await _account_label(db, link.web_user_id)
        lines += [
            f"✅ Connected as <b>{label}</b>.",
            "",
            "\U0001f4f8 Send me a photo of a receipt and I'll save it as a "
            "transaction in your account.",
        ]
    else:
        lines += [
            "\U0001f4f8 Send me a photo of a receipt and I'll read it for you.",
            "",
            "\U0001f517 To save receipts to your account, generate a key in the "
            "web app and send it here:",
            _CONNECT_USAGE,
        ]
    lines += ["", "Send /help to see all commands."]
    return "\n".join(lines)


async def _handle_connect(
    db: AsyncSession,
    external_id: int,
    key: str,
    display_name: str | None,
) -> str:
    """Consume a connection key and link this chat."""
    try:
        link = await linking.consume_and_link(
            db,
            key,
            external_chat_id=external_id,
            external_display_name=display_name,
        )
    except LinkError as e:
        return _link_error_message(e)

    label = await _account_label(db, link.web_user_id)
    return (
        "\U0001f389 <b>Account connected!</b>\n"
        f"This Telegram account is now linked to <b>{label}</b>.\n"
        "Receipts you send will be saved to your account."
    )


async def _handle_account(db: AsyncSession, external_id: int) -> str:
    """Show which web account this chat is linked to."""
    link = await linking.resolve_link(db, external_id)
    if link is None:
        return (
            "ℹ️ This Telegram account is not connected.\n" + _CONNECT_USAGE
        )

    user = await db.get(User, link.web_user_id)
    lines = ["\U0001f464 <b>Connected Account</b>", ""]
    if user is not None:
        if user.display_name:
            lines.append(f"<b>Name:</b> {html.escape(user.display_name)}")
        lines.append(f"<b>Email:</b> {html.escape(user.email)}")
    lines.append(f"<b>Linked since:</b> {link.linked_at:%Y-%m-%d %H:%M} UTC")
    lines += ["", "Send /disconnect to unlink."]
    return "\n".join(lines)


async def _handle_disconnect(db: AsyncSession, external_id: int) -> str:
    """Unlink this chat from its web account."""
    link = await linking.resolve_link(db, external_id)
    if link is None:
        return "ℹ️ This Telegram account is not connected."

    await linking.disconnect(db, external_id)
    return (
        "\U0001f44b <b>Account disconnected.</b>\n"
        "Receipts will no longer be saved. "
        "To reconnect, send <code>/connect YOUR-KEY</code> anytime."
    )


def _handle_help() -> str:
    """Return a help message listing all available commands."""
    return (
        "\U0001f4cb <b>Available Commands</b>\n"
        "\n"
        "/connect KEY – Link your Kita-kita account\n"
        "/account – Show the linked account\n"
        "/disconnect – Unlink your account\n"
        "/help – Show this help message\n"
        "\n"
        "\U0001f4f8 Send a receipt photo to scan it."
    )


def _handle_unknown() -> str:
    """Return guidance for an unrecognized command."""
    return "❓ Unrecognized command.\nSend /help to see available commands."


def _handle_text() -> str:
    return (
        "\U0001f4f8 Send me a photo of a receipt to scan it, "
        "or /help to see what I can do."
    )


async def handle_command(
    db: AsyncSession,
    external_id: int,
    text: str,
    display_name: str | None = None,
) -> str:
    """Route a Telegram text message to the appropriate command handler.

    Always returns a response string. Exceptions are caught and
    converted to user-friendly error messages.

    Args:
        db: Database session.
        external_id: Telegram user id of the sender.
        text: Raw message text.
        display_name: Sender's Telegram username, if any.

    Returns:
        HTML-formatted response string.
    """
    try:
        return await _route_command(db, external_id, text, display_name)
    except StorageUnavailable:
        logger.warning("Storage unavailable in command handler", chat_id=external_id)
        return _link_error_message(StorageUnavailable())
    except Exception:
        logger.error(
            "Unexpected error in command handler",
            chat_id=external_id,
            exc_info=True,
        )
        return GENERIC_ERROR_MESSAGE


async def _route_command(
    db: AsyncSession,
    external_id: int,
    text: str,
    display_name: str | None,
) -> str:
    """Internal command router (may raise)."""
    stripped = text.strip()
    command, _, args = stripped.partition(" ")
    # Group chats address commands as /command@BotName
    command = command.split("@", 1)[0].lower()
    args = args.strip()

    if command == "/start":
        if args:
            return await _handle_connect(db, external_id, args, display_name)
        return await _handle_start(db, external_id)

    if command == "/connect":
        if not args:
            return "\U0001f517 <b>Connect your account</b>\n" + _CONNECT_USAGE
        return await _handle_connect(db, external_id, args, display_name)

    if command == "/account":
        return await _handle_account(db, external_id)

    if command == "/disconnect":
        return await _handle_disconnect(db, external_id)

    if command == "/help":
        return _handle_help()

    if stripped.startswith("/"):
        return _handle_unknown()

    return _handle_text()


async def handle_photo(
    db: AsyncSession,
    external_id: int,
    photos: list[dict],
) -> str:
    """Scan a receipt photo and save it if the chat is linked.

    Unlinked chats still get the scan result, marked as not saved.

    Args:
        db: Database session.
        external_id: Telegram user id of the sender.
        photos: Telegram ``PhotoSize`` list, smallest first.

    Returns:
        HTML-formatted response string.
    """
    try:
        return await _scan_photo(db, external_id, photos)
    except Exception:
        logger.error(
            "Unexpected error in photo handler",
            chat_id=external_id,
            exc_info=True,
        )
        return GENERIC_ERROR_MESSAGE


async def _scan_photo(
    db: AsyncSession,
    external_id: int,
    photos: list[dict],
) -> str:
    if not photos:
        return _handle_text()

    largest = photos[-1]
    try:
        image = await download_file(largest["file_id"])
    except TelegramBotError:
        logger.warning(
            "Receipt photo download failed", chat_id=external_id, exc_info=True
        )
        return (
            "⚠️ I couldn't download that photo. "
            "Please send it again (max "
            f"{settings.receipt_max_image_bytes // (1024 * 1024)} MB)."
        )

    try:
        result = await analyze_receipt(image)
    except AIConfigurationError:
        logger.error("Receipt scanning requested but no AI provider is configured")
        return "⚠️ Receipt scanning is not available right now."
    except ReceiptAnalysisTimeout:
        return (
            "⌛ The receipt analysis took too long. "
            "Please try again with a clearer photo."
        )
    except UpstreamUnavailable as e:
        logger.warning(
            "AI provider unavailable during receipt scan",
            chat_id=external_id,
            error=str(e),
        )
        return (
            "⚠️ Unable to analyze the receipt right now. "
            "Please try again later."
        )
    except Exception:
        logger.error(
            "AI provider error during receipt scan",
            chat_id=external_id,
            exc_info=True,
        )
        return (
            "⚠️ Unable to analyze the receipt right now. "
            "Please try again later."
        )

    if isinstance(result, Unparseable):
        return (
            "\U0001f615 I couldn't read that receipt.\n"
            "Tips: good lighting, receipt flat and straight, all text in frame."
        )

    receipt = result.data
    link = await linking.resolve_link(db, external_id)
    if link is None:
        return format_receipt_message(receipt, saved=False)

    try:
        await save_receipt_transaction(db, link.web_user_id, receipt)
    except Exception:
        logger.error(
            "Failed to save receipt transaction",
            user_id=link.web_user_id,
            chat_id=external_id,
            exc_info=True,
        )
        await db.rollback()
        return (
            format_receipt_summary(receipt)
            + "\n\n⚠️ Saving to your account failed; please try again."
        )

    return format_receipt_message(receipt, saved=True)

"""Receipt scanning via a vision LLM.

A receipt photo is sent to the configured provider with a fixed
extraction prompt; the answer is parsed into ``ReceiptData`` or reported
as ``Unparseable``. Linked chats get the receipt saved as an expense.
"""

import asyncio
import html
from datetime import date
from decimal import ROUND_HALF_UP, Decimal

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from kitakita.config import settings
from kitakita.core.errors import UpstreamUnavailable
from kitakita.logging_config import get_logger
from kitakita.models.transaction import Transaction, TransactionType
from kitakita.schemas.ai_response import Parsed, ParseResult, Unparseable
from kitakita.schemas.receipt import ReceiptData
from kitakita.services.ai_client import get_ai_client, parse_json_response

logger = get_logger(__name__)


class ReceiptAnalysisTimeout(UpstreamUnavailable):
    """The provider did not answer within receipt_analysis_timeout_seconds."""


TRANSACTION_SOURCE = "telegram_bot"
DEFAULT_TRANSACTION_NAME = "Receipt Transaction"
RECEIPT_MAX_TOKENS = 1024

# Items listed individually in the notes before collapsing to "and N more"
MAX_NOTED_ITEMS = 3

RECEIPT_PROMPT = """\
Analyze this receipt image and extract transaction information. \
Return ONLY a valid JSON object with the following structure:

{
  "merchant": "Store/Restaurant Name",
  "date": "YYYY-MM-DD",
  "time": "HH:MM",
  "total": 0.00,
  "currency": "PHP",
  "items": [
    {"name": "Item Name", "quantity": 1, "price": 0.00}
  ],
  "tax": 0.00,
  "category": "Food/Shopping/Transport/etc",
  "paymentMethod": "Cash/Card/etc",
  "location": "City/Address if available"
}

Focus on accuracy. If information is unclear, use null for that field."""

# Transaction category -> receipt category keywords
_CATEGORY_KEYWORDS: dict[str, tuple[str, ...]] = {
    "food": ("food", "grocery", "restaurant", "dining"),
    "shopping": ("shopping", "retail"),
    "transportation": ("transport", "transportation", "gas", "fuel"),
    "entertainment": ("entertainment", "movie", "games"),
    "health": ("health", "medical", "pharmacy"),
    "bills": ("bills", "utilities", "phone", "internet"),
    "housing": ("housing", "rent"),
    "education": ("education", "school", "books"),
}


async def analyze_receipt(
    image: bytes,
    mime_type: str = "image/jpeg",
) -> ParseResult:
    """Extract structured receipt data from a photo.

    Args:
        image: Raw image bytes.
        mime_type: Image MIME type.

    Returns:
        ``Parsed`` carrying a ``ReceiptData``, or ``Unparseable`` with the
        model's raw answer.

    Raises:
        AIConfigurationError: No usable AI provider is configured.
        ReceiptAnalysisTimeout: The analysis timed out.
        UpstreamUnavailable: The provider request failed.
    """
    client = get_ai_client()

    try:
        response = await asyncio.wait_for(
            client.analyze_image(
                RECEIPT_PROMPT,
                image,
                mime_type=mime_type,
                max_tokens=RECEIPT_MAX_TOKENS,
            ),
            timeout=settings.receipt_analysis_timeout_seconds,
        )
    except TimeoutError as e:
        logger.warning(
            "Receipt analysis timed out",
            timeout=settings.receipt_analysis_timeout_seconds,
        )
        raise ReceiptAnalysisTimeout("Receipt analysis timed out") from e

    result = parse_json_response(response.content)
    if isinstance(result, Unparseable):
        logger.info("Receipt answer was not JSON", error=result.error)
        return result

    try:
        receipt = ReceiptData.model_validate(result.data)
    except ValidationError as e:
        logger.info("Receipt answer failed validation", errors=e.error_count())
        return Unparseable(raw_text=response.content, error="invalid receipt data")

    logger.info(
        "Receipt analyzed",
        model=response.model,
        provider=response.provider.value,
        items=len(receipt.items),
    )
    return Parsed(data=receipt)


def map_receipt_category(category: str | None) -> str:
    """Map a free-form receipt category onto a transaction category."""
    if not category:
        return "other"

    lowered = category.lower()
    for transaction_category, keywords in _CATEGORY_KEYWORDS.items():
        if any(keyword in lowered for keyword in keywords):
            return transaction_category
    return "other"


def _format_quantity(quantity: float) -> str:
    return f"{quantity:g}"


def build_transaction_notes(receipt: ReceiptData) -> str:
    """Summarize the receipt for the transaction's notes field."""
    notes: list[str] = []

    if receipt.merchant:
        notes.append(f"Store: {receipt.merchant}")
    if receipt.location:
        notes.append(f"Location: {receipt.location}")
    if receipt.payment_method:
        notes.append(f"Payment: {receipt.payment_method}")

    if receipt.items:
        count = len(receipt.items)
        notes.append(f"Items: {count} item{'s' if count != 1 else ''}")
        if count <= MAX_NOTED_ITEMS:
            notes.extend(
                f"- {item.name} ({_format_quantity(item.quantity)}x)"
                for item in receipt.items
            )
        else:
            first = receipt.items[0]
            notes.append(
                f"- {first.name} ({_format_quantity(first.quantity)}x) "
                f"and {count - 1} more"
            )

    notes.append("Scanned via Telegram bot")
    return " | ".join(notes)


def _receipt_date(receipt: ReceiptData, today: date) -> date:
    if receipt.date:
        try:
            return date.fromisoformat(receipt.date)
        except ValueError:
            logger.debug("Unreadable receipt date, using today", value=receipt.date)
    return today


async def save_receipt_transaction(
    db: AsyncSession,
    user_id: str,
    receipt: ReceiptData,
    today: date | None = None,
) -> Transaction:
    """Record a scanned receipt as an expense of the linked account.

    Args:
        db: Database session.
        user_id: Web account resolved from the chat's active link.
        receipt: Parsed receipt.
        today: Fallback date when the receipt has none.

    Returns:
        The persisted Transaction.
    """
    transaction = Transaction(
        user_id=user_id,
        name=receipt.merchant or DEFAULT_TRANSACTION_NAME,
        amount=receipt.total.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP),
        type=TransactionType.EXPENSE,
        category=map_receipt_category(receipt.category),
        transaction_date=_receipt_date(receipt, today or date.today()),
        notes=build_transaction_notes(receipt),
        source=TRANSACTION_SOURCE,
        receipt_data=receipt.model_dump(mode="json", by_alias=True),
    )
    db.add(transaction)
    await db.commit()
    await db.refresh(transaction)

    logger.info(
        "Receipt transaction saved",
        user_id=user_id,
        transaction_id=str(transaction.id),
        category=transaction.category,
    )
    return transaction


def format_receipt_summary(receipt: ReceiptData) -> str:
    """HTML description of a scanned receipt, without the save status."""
    currency = html.escape(receipt.currency or settings.default_currency)
    lines = [
        "\U0001f9fe <b>Receipt Scanned</b>",
        "",
        f"\U0001f3ea <b>Merchant:</b> {html.escape(receipt.merchant or 'Unknown')}",
        f"\U0001f4b0 <b>Total:</b> {currency} {receipt.total:,.2f}",
    ]
    if receipt.date:
        when = receipt.date if not receipt.time else f"{receipt.date} {receipt.time}"
        lines.append(f"\U0001f4c5 <b>Date:</b> {html.escape(when)}")
    lines.append(
        f"\U0001f3f7 <b>Category:</b> {map_receipt_category(receipt.category)}"
    )
    if receipt.payment_method:
        lines.append(
            f"\U0001f4b3 <b>Payment:</b> {html.escape(receipt.payment_method)}"
        )

    if receipt.items:
        lines.append("")
        lines.append(f"\U0001f4cb <b>Items ({len(receipt.items)}):</b>")
        for item in receipt.items[:10]:
            price = f" - {currency} {item.price:,.2f}" if item.price is not None else ""
            lines.append(
                f"• {html.escape(item.name)} "
                f"x{_format_quantity(item.quantity)}{price}"
            )
        if len(receipt.items) > 10:
            lines.append(f"…and {len(receipt.items) - 10} more")

    return "\n".join(lines)


def format_receipt_message(receipt: ReceiptData, saved: bool) -> str:
    """Build the HTML reply for a scanned receipt.

    ``saved`` is False for chats without an active link.
    """
    if saved:
        footer = "✅ Saved to your Kita-kita account."
    else:
        footer = (
            "ℹ️ Not saved: this chat is not linked to a Kita-kita account.\n"
            "Use /connect with a key from the web app to save receipts automatically."
        )
    return format_receipt_summary(receipt) + "\n\n" + footer

"""Tests for Telegram command and photo handlers."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from kitakita.core.errors import (
    AlreadyLinkedElsewhere,
    AlreadyUsed,
    Expired,
    Malformed,
    NotFound,
    StorageUnavailable,
    UpstreamUnavailable,
)
from kitakita.models import Transaction
from kitakita.schemas.ai_response import Parsed, Unparseable
from kitakita.schemas.receipt import ReceiptData, ReceiptItem
from kitakita.services import linking
from kitakita.services.ai_client import AIConfigurationError
from kitakita.services.receipt_scanner import ReceiptAnalysisTimeout
from kitakita.services.telegram_bot import TelegramBotError
from kitakita.services.telegram_commands import (
    GENERIC_ERROR_MESSAGE,
    _handle_help,
    _handle_unknown,
    _link_error_message,
    handle_command,
    handle_photo,
)

CHAT_ID = 424242
PHOTOS = [{"file_id": "small"}, {"file_id": "large"}]


def make_receipt(**overrides) -> ReceiptData:
    data = {
        "merchant": "Jollibee",
        "date": "2026-03-01",
        "total": Decimal("245.50"),
        "currency": "PHP",
        "category": "Food",
        "items": [ReceiptItem(name="Chickenjoy", quantity=2, price=Decimal("99"))],
    }
    data.update(overrides)
    return ReceiptData(**data)


async def _issue(db, user_id: str, now: datetime | None = None) -> str:
    return (await linking.issue_code(db, user_id, now=now)).code


# ---------------------------------------------------------------------------
# Static messages
# ---------------------------------------------------------------------------
class TestStaticMessages:
    """Tests for help and unknown command messages."""

    def test_help_lists_commands(self):
        text = _handle_help()
        for command in ("/connect", "/account", "/disconnect", "/help"):
            assert command in text

    def test_unknown(self):
        assert "Unrecognized command" in _handle_unknown()

    @pytest.mark.parametrize(
        "error,fragment",
        [
            (Malformed(), "Invalid key format"),
            (NotFound(), "Key not found"),
            (Expired(), "Key expired"),
            (AlreadyUsed(), "Key already used"),
            (AlreadyLinkedElsewhere(), "Already linked"),
            (StorageUnavailable(), "temporarily unavailable"),
        ],
    )
    def test_each_link_error_has_its_own_message(self, error, fragment):
        assert fragment in _link_error_message(error)

    def test_link_error_messages_are_distinct(self):
        errors = [
            Malformed(),
            NotFound(),
            Expired(),
            AlreadyUsed(),
            AlreadyLinkedElsewhere(),
            StorageUnavailable(),
        ]
        messages = {_link_error_message(e) for e in errors}
        assert len(messages) == len(errors)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------
class TestConnect:
    """Tests for /connect and /start KEY."""

    async def test_connect_links_chat(self, db_session, user):
        code = await _issue(db_session, user.id)

        text = await handle_command(db_session, CHAT_ID, f"/connect {code}", "juan_tg")

        assert "Account connected" in text
        assert "Juan" in text
        link = await linking.resolve_link(db_session, CHAT_ID)
        assert link.web_user_id == user.id
        assert link.external_display_name == "juan_tg"

    async def test_start_with_key_links_chat(self, db_session, user):
        code = await _issue(db_session, user.id)

        text = await handle_command(db_session, CHAT_ID, f"/start {code}")

        assert "Account connected" in text

    async def test_connect_with_bot_suffix(self, db_session, user):
        code = await _issue(db_session, user.id)

        text = await handle_command(
            db_session, CHAT_ID, f"/connect@KitaKitaBot {code.lower()}"
        )

        assert "Account connected" in text

    async def test_connect_without_key_shows_usage(self, db_session):
        text = await handle_command(db_session, CHAT_ID, "/connect")
        assert "/connect YOUR-KEY" in text

    async def test_connect_malformed(self, db_session):
        text = await handle_command(db_session, CHAT_ID, "/connect hello")
        assert "Invalid key format" in text

    async def test_connect_unknown_key(self, db_session):
        text = await handle_command(db_session, CHAT_ID, "/connect TG-ABCDEF-GHJKMNP")
        assert "Key not found" in text

    async def test_connect_expired_key(self, db_session, user):
        code = await _issue(
            db_session, user.id, now=datetime.now(UTC) - timedelta(hours=1)
        )

        text = await handle_command(db_session, CHAT_ID, f"/connect {code}")

        assert "Key expired" in text
        assert await linking.resolve_link(db_session, CHAT_ID) is None

    async def test_connect_used_key(self, db_session, user):
        code = await _issue(db_session, user.id)
        await handle_command(db_session, CHAT_ID, f"/connect {code}")

        text = await handle_command(db_session, CHAT_ID, f"/connect {code}")

        assert "Key already used" in text

    async def test_connect_chat_linked_elsewhere(self, db_session, user, other_user):
        await handle_command(
            db_session, CHAT_ID, f"/connect {await _issue(db_session, user.id)}"
        )
        code = await _issue(db_session, other_user.id)

        text = await handle_command(db_session, CHAT_ID, f"/connect {code}")

        assert "Already linked" in text
        link = await linking.resolve_link(db_session, CHAT_ID)
        assert link.web_user_id == user.id

    @patch(
        "kitakita.services.telegram_commands.linking.consume_and_link",
        new_callable=AsyncMock,
        side_effect=StorageUnavailable(),
    )
    async def test_connect_storage_unavailable(self, mock_consume, db_session):
        text = await handle_command(db_session, CHAT_ID, "/connect TG-ABCDEF-GHJKMNP")
        assert "temporarily unavailable" in text


class TestAccountCommands:
    """Tests for /start, /account and /disconnect."""

    async def test_start_unlinked(self, db_session):
        text = await handle_command(db_session, CHAT_ID, "/start")
        assert "Welcome" in text
        assert "/connect" in text

    async def test_start_linked(self, db_session, user):
        await handle_command(
            db_session, CHAT_ID, f"/connect {await _issue(db_session, user.id)}"
        )

        text = await handle_command(db_session, CHAT_ID, "/start")

        assert "Connected as" in text

    async def test_account_unlinked(self, db_session):
        text = await handle_command(db_session, CHAT_ID, "/account")
        assert "not connected" in text

    async def test_account_linked(self, db_session, user):
        await handle_command(
            db_session, CHAT_ID, f"/connect {await _issue(db_session, user.id)}"
        )

        text = await handle_command(db_session, CHAT_ID, "/account")

        assert "juan@example.com" in text
        assert "Linked since" in text

    async def test_disconnect(self, db_session, user):
        await handle_command(
            db_session, CHAT_ID, f"/connect {await _issue(db_session, user.id)}"
        )

        text = await handle_command(db_session, CHAT_ID, "/disconnect")

        assert "disconnected" in text
        assert await linking.resolve_link(db_session, CHAT_ID) is None

    async def test_disconnect_unlinked(self, db_session):
        text = await handle_command(db_session, CHAT_ID, "/disconnect")
        assert "not connected" in text

    async def test_unknown_command(self, db_session):
        text = await handle_command(db_session, CHAT_ID, "/balance")
        assert "Unrecognized command" in text

    async def test_plain_text(self, db_session):
        text = await handle_command(db_session, CHAT_ID, "hello")
        assert "photo of a receipt" in text

    @patch(
        "kitakita.services.telegram_commands.linking.resolve_link",
        new_callable=AsyncMock,
        side_effect=RuntimeError("boom"),
    )
    async def test_unexpected_error_returns_generic_message(
        self, mock_resolve, db_session
    ):
        text = await handle_command(db_session, CHAT_ID, "/account")
        assert text == GENERIC_ERROR_MESSAGE


# ---------------------------------------------------------------------------
# Photos
# ---------------------------------------------------------------------------
@patch(
    "kitakita.services.telegram_commands.download_file",
    new_callable=AsyncMock,
    return_value=b"jpeg",
)
class TestHandlePhoto:
    """Tests for receipt photos."""

    async def _transactions(self, db) -> list[Transaction]:
        result = await db.execute(select(Transaction))
        return list(result.scalars().all())

    async def test_linked_chat_saves_transaction(self, mock_download, db_session, user):
        await handle_command(
            db_session, CHAT_ID, f"/connect {await _issue(db_session, user.id)}"
        )

        with patch(
            "kitakita.services.telegram_commands.analyze_receipt",
            new_callable=AsyncMock,
            return_value=Parsed(data=make_receipt()),
        ):
            text = await handle_photo(db_session, CHAT_ID, PHOTOS)

        assert "Saved to your Kita-kita account" in text
        mock_download.assert_awaited_once_with("large")

        transactions = await self._transactions(db_session)
        assert len(transactions) == 1
        saved = transactions[0]
        assert saved.user_id == user.id
        assert saved.amount == Decimal("245.50")
        assert saved.category == "food"
        assert saved.source == "telegram_bot"

    async def test_unlinked_chat_reports_without_saving(
        self, mock_download, db_session
    ):
        with patch(
            "kitakita.services.telegram_commands.analyze_receipt",
            new_callable=AsyncMock,
            return_value=Parsed(data=make_receipt()),
        ):
            text = await handle_photo(db_session, CHAT_ID, PHOTOS)

        assert "Jollibee" in text
        assert "Not saved" in text
        assert await self._transactions(db_session) == []

    async def test_disconnected_chat_is_unlinked(self, mock_download, db_session, user):
        await handle_command(
            db_session, CHAT_ID, f"/connect {await _issue(db_session, user.id)}"
        )
        await handle_command(db_session, CHAT_ID, "/disconnect")

        with patch(
            "kitakita.services.telegram_commands.analyze_receipt",
            new_callable=AsyncMock,
            return_value=Parsed(data=make_receipt()),
        ):
            text = await handle_photo(db_session, CHAT_ID, PHOTOS)

        assert "Not saved" in text
        assert await self._transactions(db_session) == []

    async def test_unparseable_receipt(self, mock_download, db_session):
        with patch(
            "kitakita.services.telegram_commands.analyze_receipt",
            new_callable=AsyncMock,
            return_value=Unparseable(raw_text="sorry", error="no JSON object found"),
        ):
            text = await handle_photo(db_session, CHAT_ID, PHOTOS)

        assert "couldn't read that receipt" in text

    async def test_timeout(self, mock_download, db_session):
        with patch(
            "kitakita.services.telegram_commands.analyze_receipt",
            new_callable=AsyncMock,
            side_effect=ReceiptAnalysisTimeout("timed out"),
        ):
            text = await handle_photo(db_session, CHAT_ID, PHOTOS)

        assert "took too long" in text

    async def test_provider_unavailable_is_not_a_timeout(
        self, mock_download, db_session
    ):
        with patch(
            "kitakita.services.telegram_commands.analyze_receipt",
            new_callable=AsyncMock,
            side_effect=UpstreamUnavailable("Gemini API error: 503"),
        ):
            text = await handle_photo(db_session, CHAT_ID, PHOTOS)

        assert "Unable to analyze" in text
        assert "took too long" not in text

    async def test_provider_not_configured(self, mock_download, db_session):
        with patch(
            "kitakita.services.telegram_commands.analyze_receipt",
            new_callable=AsyncMock,
            side_effect=AIConfigurationError("no key"),
        ):
            text = await handle_photo(db_session, CHAT_ID, PHOTOS)

        assert "not available" in text

    async def test_provider_error(self, mock_download, db_session):
        with patch(
            "kitakita.services.telegram_commands.analyze_receipt",
            new_callable=AsyncMock,
            side_effect=RuntimeError("quota"),
        ):
            text = await handle_photo(db_session, CHAT_ID, PHOTOS)

        assert "Unable to analyze" in text

    async def test_download_failure(self, mock_download, db_session):
        mock_download.side_effect = TelegramBotError("404")

        text = await handle_photo(db_session, CHAT_ID, PHOTOS)

        assert "couldn't download" in text

    async def test_save_failure_reports_scan(self, mock_download, db_session, user):
        await handle_command(
            db_session, CHAT_ID, f"/connect {await _issue(db_session, user.id)}"
        )

        with (
            patch(
                "kitakita.services.telegram_commands.analyze_receipt",
                new_callable=AsyncMock,
                return_value=Parsed(data=make_receipt()),
            ),
            patch(
                "kitakita.services.telegram_commands.save_receipt_transaction",
                new_callable=AsyncMock,
                side_effect=RuntimeError("disk full"),
            ),
        ):
            text = await handle_photo(db_session, CHAT_ID, PHOTOS)

        assert "Jollibee" in text
        assert "Saving to your account failed" in text
        assert "Not saved: this chat is not linked" not in text

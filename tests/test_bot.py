"""Tests for the standalone bot process."""

from unittest.mock import AsyncMock, MagicMock, patch

from kitakita import bot
from kitakita.config import settings
from kitakita.services.telegram_bot import TelegramBotError


@patch("kitakita.bot.close_database", new_callable=AsyncMock)
@patch("kitakita.bot.asyncio.sleep", new_callable=AsyncMock)
@patch("kitakita.bot.get_bot_info", new_callable=AsyncMock, return_value="kk_bot")
class TestRunBot:
    """Tests for the polling loop."""

    async def test_polls_until_limit(self, mock_info, mock_sleep, mock_close):
        with patch(
            "kitakita.bot.poll_and_handle_messages",
            new_callable=AsyncMock,
            return_value=1,
        ) as mock_poll:
            await bot.run_bot(max_iterations=3)

        assert mock_poll.await_count == 3
        mock_close.assert_awaited_once()

    async def test_backs_off_on_errors(self, mock_info, mock_sleep, mock_close):
        with patch(
            "kitakita.bot.poll_and_handle_messages",
            new_callable=AsyncMock,
            side_effect=[TelegramBotError("502")] * 3 + [0],
        ):
            await bot.run_bot(max_iterations=4)

        interval = float(settings.telegram_polling_interval_seconds)
        delays = [c.args[0] for c in mock_sleep.await_args_list]
        assert delays == [interval * 2, interval * 4, interval * 8, interval]


@patch("kitakita.bot.setup_logging")
@patch("kitakita.bot.run_bot", new_callable=MagicMock)
class TestMain:
    """Tests for the kitakita-bot entry point."""

    def test_requires_token(self, mock_run, mock_logging):
        with patch.object(settings, "telegram_bot_token", ""):
            assert bot.main([]) == 2
        mock_run.assert_not_called()

    def test_runs_bot(self, mock_run, mock_logging):
        with patch("kitakita.bot.asyncio.run") as mock_asyncio_run:
            assert bot.main([]) == 0

        mock_asyncio_run.assert_called_once_with(mock_run.return_value)
        assert mock_logging.call_args.kwargs["service_name"] == "kitakita-bot"

    def test_startup_failure(self, mock_run, mock_logging):
        with patch(
            "kitakita.bot.asyncio.run", side_effect=TelegramBotError("Unauthorized")
        ):
            assert bot.main([]) == 1

    def test_interrupt_exits_cleanly(self, mock_run, mock_logging):
        with patch("kitakita.bot.asyncio.run", side_effect=KeyboardInterrupt):
            assert bot.main([]) == 0

    def test_migrate_flag(self, mock_run, mock_logging):
        with (
            patch("kitakita.core.migrations.run_migrations") as mock_migrate,
            patch("kitakita.bot.asyncio.run"),
        ):
            assert bot.main(["--migrate"]) == 0
        mock_migrate.assert_called_once()

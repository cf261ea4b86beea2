"""Tests for background jobs and the scheduler lifecycle."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

from sqlalchemy import select, update

from kitakita.config import settings
from kitakita.database import get_session_maker
from kitakita.models import LinkingCode
from kitakita.services import linking, scheduler
from kitakita.services.telegram_bot import TelegramBotError


class TestJobs:
    """Tests for the scheduled job functions."""

    async def test_purge_job_deletes_expired_keys(self, user):
        async with get_session_maker()() as db:
            old = await linking.issue_code(
                db, user.id, now=datetime.now(UTC) - timedelta(days=1)
            )
            fresh = await linking.issue_code(db, user.id)

        await scheduler.purge_expired_codes_job()

        async with get_session_maker()() as db:
            codes = set((await db.execute(select(LinkingCode.code))).scalars())
        assert codes == {fresh.code}
        assert old.code not in codes

    async def test_purge_job_swallows_errors(self):
        with patch(
            "kitakita.services.scheduler.purge_expired_codes",
            new_callable=AsyncMock,
            side_effect=RuntimeError("boom"),
        ):
            await scheduler.purge_expired_codes_job()

    async def test_reconcile_job_logs_orphans(self, caplog):
        orphan = LinkingCode(code="TG-ABCDEF-GHJKMNP", owner_user_id="u1")
        with patch(
            "kitakita.services.scheduler.find_unlinked_consumptions",
            new_callable=AsyncMock,
            return_value=[orphan],
        ):
            await scheduler.reconcile_links_job()

        assert "Unlinked key consumptions found" in caplog.text

    async def test_reconcile_job_logs_each_orphan_once(self, user, caplog):
        async with get_session_maker()() as db:
            record = await linking.issue_code(db, user.id)
            await db.execute(
                update(LinkingCode)
                .where(LinkingCode.code == record.code)
                .values(used=True, used_by_external_id=77, used_at=datetime.now(UTC))
            )
            await db.commit()

        await scheduler.reconcile_links_job()

        per_row = [
            r
            for r in caplog.records
            if r.getMessage().startswith("Consumed connection")
        ]
        assert len(per_row) == 1
        assert "Unlinked key consumptions found" in caplog.text

    async def test_poll_job_handles_telegram_errors(self):
        with patch(
            "kitakita.services.telegram_bot.poll_and_handle_messages",
            new_callable=AsyncMock,
            side_effect=TelegramBotError("502"),
        ) as mock_poll:
            await scheduler.poll_telegram_updates()

        mock_poll.assert_awaited_once()


class TestSchedulerLifecycle:
    """Tests for start/stop."""

    async def test_registers_housekeeping_jobs(self):
        try:
            instance = scheduler.start_scheduler()
            job_ids = {job.id for job in instance.get_jobs()}
        finally:
            scheduler.stop_scheduler()

        assert job_ids == {"code_purge", "link_reconcile"}
        assert scheduler.get_scheduler() is None

    async def test_polling_job_when_enabled(self):
        with patch.object(settings, "telegram_polling_enabled", True):
            try:
                instance = scheduler.start_scheduler()
                job_ids = {job.id for job in instance.get_jobs()}
            finally:
                scheduler.stop_scheduler()

        assert "telegram_poll" in job_ids

    async def test_start_is_idempotent(self):
        try:
            first = scheduler.start_scheduler()
            assert scheduler.start_scheduler() is first
        finally:
            scheduler.stop_scheduler()

    async def test_lifespan(self):
        async with scheduler.scheduler_lifespan():
            assert scheduler.get_scheduler() is not None
        assert scheduler.get_scheduler() is None

    async def test_app_lifespan_runs_scheduler(self):
        from kitakita.main import app, lifespan

        with patch(
            "kitakita.main.close_database", new_callable=AsyncMock
        ) as mock_close:
            async with lifespan(app):
                assert scheduler.get_scheduler() is not None

        assert scheduler.get_scheduler() is None
        mock_close.assert_awaited_once()

"""Tests for the Telegram linking endpoints."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest

from conftest import INTERNAL_HEADERS, auth_headers, create_test_user
from kitakita.config import settings
from kitakita.core.errors import StorageUnavailable
from kitakita.database import get_session_maker
from kitakita.services import linking
from kitakita.services.telegram_bot import TelegramBotError

BOT_INFO = "kitakita.routers.telegram.get_bot_info"


async def _issue(user_id: str, now: datetime | None = None) -> str:
    async with get_session_maker()() as db:
        return (await linking.issue_code(db, user_id, now=now)).code


async def _link(user_id: str, chat_id: int) -> None:
    code = await _issue(user_id)
    async with get_session_maker()() as db:
        await linking.consume_and_link(db, code, chat_id)


# ---------------------------------------------------------------------------
# Web dashboard
# ---------------------------------------------------------------------------
class TestStatus:
    """Tests for GET /api/telegram/status."""

    async def test_requires_auth(self, client):
        response = await client.get("/api/telegram/status")
        assert response.status_code == 401

    async def test_unlinked(self, client, user):
        with patch(BOT_INFO, new_callable=AsyncMock, return_value="kitakita_bot"):
            response = await client.get(
                "/api/telegram/status", headers=auth_headers(user)
            )

        assert response.status_code == 200
        body = response.json()
        assert body["linked"] is False
        assert body["link"] is None
        assert body["bot_username"] == "kitakita_bot"

    async def test_linked(self, client, user):
        await _link(user.id, 12345)

        with patch(BOT_INFO, new_callable=AsyncMock, return_value="kitakita_bot"):
            response = await client.get(
                "/api/telegram/status", headers=auth_headers(user)
            )

        body = response.json()
        assert body["linked"] is True
        assert body["link"]["external_chat_id"] == 12345
        assert body["link"]["web_user_id"] == user.id

    async def test_bot_unreachable_returns_503(self, client, user):
        with patch(
            BOT_INFO,
            new_callable=AsyncMock,
            side_effect=TelegramBotError("getMe failed"),
        ):
            response = await client.get(
                "/api/telegram/status", headers=auth_headers(user)
            )

        assert response.status_code == 503

    async def test_bot_not_configured_returns_503(self, client, user):
        with patch.object(settings, "telegram_bot_token", ""):
            response = await client.get(
                "/api/telegram/status", headers=auth_headers(user)
            )

        assert response.status_code == 503

    async def test_disabled_user_rejected(self, client):
        disabled = await create_test_user(is_active=False)

        response = await client.get(
            "/api/telegram/status", headers=auth_headers(disabled)
        )

        assert response.status_code == 401


class TestIssueKey:
    """Tests for POST /api/telegram/link."""

    async def test_issues_key(self, client, user):
        with patch(BOT_INFO, new_callable=AsyncMock, return_value="kitakita_bot"):
            response = await client.post(
                "/api/telegram/link", headers=auth_headers(user)
            )

        assert response.status_code == 201
        body = response.json()
        assert linking.is_well_formed(body["code"])
        assert body["bot_username"] == "kitakita_bot"

        async with get_session_maker()() as db:
            result = await linking.validate_code(db, body["code"])
        assert result.valid is True
        assert result.owner_user_id == user.id

    async def test_expiry_is_ttl_from_now(self, client, user):
        before = datetime.now(UTC)
        with patch(BOT_INFO, new_callable=AsyncMock, return_value="kitakita_bot"):
            response = await client.post(
                "/api/telegram/link", headers=auth_headers(user)
            )

        expires_at = datetime.fromisoformat(response.json()["expires_at"])
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=UTC)
        ttl = timedelta(minutes=settings.link_code_ttl_minutes)
        assert before + ttl <= expires_at <= datetime.now(UTC) + ttl

    async def test_requires_auth(self, client):
        response = await client.post("/api/telegram/link")
        assert response.status_code == 401

    async def test_already_linked_returns_409(self, client, user):
        await _link(user.id, 12345)

        with patch(BOT_INFO, new_callable=AsyncMock, return_value="kitakita_bot"):
            response = await client.post(
                "/api/telegram/link", headers=auth_headers(user)
            )

        assert response.status_code == 409


class TestUnlink:
    """Tests for DELETE /api/telegram/link."""

    async def test_unlinks(self, client, user):
        await _link(user.id, 12345)

        response = await client.delete(
            "/api/telegram/link", headers=auth_headers(user)
        )

        assert response.status_code == 200
        assert response.json()["success"] is True
        async with get_session_maker()() as db:
            assert await linking.resolve_link(db, 12345) is None

    async def test_not_linked_returns_404(self, client, user):
        response = await client.delete(
            "/api/telegram/link", headers=auth_headers(user)
        )
        assert response.status_code == 404


# ---------------------------------------------------------------------------
# Bot-facing
# ---------------------------------------------------------------------------
class TestInternalAuth:
    """Bot-facing endpoints require the internal key."""

    @pytest.mark.parametrize(
        "method,path",
        [
            ("post", "/api/telegram/codes/validate"),
            ("post", "/api/telegram/codes/consume"),
            ("get", "/api/telegram/links/1"),
            ("delete", "/api/telegram/links/1"),
        ],
    )
    async def test_missing_key_rejected(self, client, method, path):
        kwargs = {}
        if method == "post":
            kwargs["json"] = {"code": "x", "external_chat_id": 1}
        response = await getattr(client, method)(path, **kwargs)
        assert response.status_code == 403

    async def test_wrong_key_rejected(self, client):
        response = await client.get(
            "/api/telegram/links/1", headers={"X-Internal-Key": "nope"}
        )
        assert response.status_code == 403

    async def test_bearer_token_is_not_enough(self, client, user):
        response = await client.get(
            "/api/telegram/links/1", headers=auth_headers(user)
        )
        assert response.status_code == 403


class TestValidateEndpoint:
    """Tests for POST /api/telegram/codes/validate."""

    async def test_valid_key(self, client, user):
        code = await _issue(user.id)

        response = await client.post(
            "/api/telegram/codes/validate",
            json={"code": code},
            headers=INTERNAL_HEADERS,
        )

        assert response.status_code == 200
        assert response.json() == {
            "valid": True,
            "owner_user_id": user.id,
            "reason": None,
        }

    @pytest.mark.parametrize(
        "code,reason",
        [("garbage", "malformed"), ("TG-ABCDEF-GHJKMNP", "not_found")],
    )
    async def test_invalid_key_is_not_an_http_error(self, client, code, reason):
        response = await client.post(
            "/api/telegram/codes/validate",
            json={"code": code},
            headers=INTERNAL_HEADERS,
        )

        assert response.status_code == 200
        assert response.json()["valid"] is False
        assert response.json()["reason"] == reason

    async def test_expired_key(self, client, user):
        code = await _issue(user.id, now=datetime.now(UTC) - timedelta(hours=1))

        response = await client.post(
            "/api/telegram/codes/validate",
            json={"code": code},
            headers=INTERNAL_HEADERS,
        )

        assert response.json()["reason"] == "expired"


class TestConsumeEndpoint:
    """Tests for POST /api/telegram/codes/consume and its error mapping."""

    async def _consume(self, client, code: str, chat_id: int = 12345):
        return await client.post(
            "/api/telegram/codes/consume",
            json={
                "code": code,
                "external_chat_id": chat_id,
                "external_display_name": "juan_tg",
            },
            headers=INTERNAL_HEADERS,
        )

    async def test_consume_links(self, client, user):
        code = await _issue(user.id)

        response = await self._consume(client, code)

        assert response.status_code == 200
        body = response.json()
        assert body["web_user_id"] == user.id
        assert body["external_chat_id"] == 12345
        assert body["external_display_name"] == "juan_tg"
        assert body["active"] is True

    async def test_malformed_422(self, client):
        response = await self._consume(client, "garbage")
        assert response.status_code == 422
        assert response.json()["reason"] == "malformed"

    async def test_not_found_404(self, client):
        response = await self._consume(client, "TG-ABCDEF-GHJKMNP")
        assert response.status_code == 404
        assert response.json()["reason"] == "not_found"

    async def test_expired_410(self, client, user):
        code = await _issue(user.id, now=datetime.now(UTC) - timedelta(hours=1))

        response = await self._consume(client, code)

        assert response.status_code == 410
        assert response.json()["reason"] == "expired"

    async def test_already_used_409(self, client, user):
        code = await _issue(user.id)
        await self._consume(client, code)

        response = await self._consume(client, code)

        assert response.status_code == 409
        assert response.json()["reason"] == "already_used"

    async def test_already_linked_elsewhere_409(self, client, user, other_user):
        await _link(user.id, 12345)
        code = await _issue(other_user.id)

        response = await self._consume(client, code, chat_id=12345)

        assert response.status_code == 409
        assert response.json()["reason"] == "already_linked_elsewhere"

    async def test_storage_unavailable_503(self, client):
        with patch(
            "kitakita.routers.telegram.linking.consume_and_link",
            new_callable=AsyncMock,
            side_effect=StorageUnavailable(),
        ):
            response = await self._consume(client, "TG-ABCDEF-GHJKMNP")

        assert response.status_code == 503
        assert response.json()["reason"] == "storage_unavailable"


class TestLinkLookupEndpoints:
    """Tests for GET/DELETE /api/telegram/links/{external_chat_id}."""

    async def test_resolve(self, client, user):
        await _link(user.id, 777)

        response = await client.get(
            "/api/telegram/links/777", headers=INTERNAL_HEADERS
        )

        assert response.status_code == 200
        assert response.json()["web_user_id"] == user.id

    async def test_resolve_unlinked_404(self, client):
        response = await client.get(
            "/api/telegram/links/777", headers=INTERNAL_HEADERS
        )
        assert response.status_code == 404

    async def test_disconnect(self, client, user):
        await _link(user.id, 777)

        response = await client.delete(
            "/api/telegram/links/777", headers=INTERNAL_HEADERS
        )

        assert response.status_code == 200
        assert response.json() == {"success": True}
        lookup = await client.get("/api/telegram/links/777", headers=INTERNAL_HEADERS)
        assert lookup.status_code == 404

    async def test_disconnect_unlinked_succeeds(self, client):
        response = await client.delete(
            "/api/telegram/links/777", headers=INTERNAL_HEADERS
        )
        assert response.status_code == 200

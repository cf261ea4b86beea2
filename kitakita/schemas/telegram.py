"""Telegram linking schemas."""

import uuid
from datetime import datetime

from pydantic import BaseModel, Field


class AccountLinkResponse(BaseModel):
    """An account link as returned to the dashboard and the bot."""

    model_config = {"from_attributes": True}

    id: uuid.UUID
    web_user_id: str
    external_chat_id: int
    external_display_name: str | None
    linked_at: datetime
    active: bool


class TelegramStatusResponse(BaseModel):
    """Response schema for GET /api/telegram/status."""

    linked: bool
    link: AccountLinkResponse | None = None
    bot_username: str


class ConnectionKeyResponse(BaseModel):
    """Response schema for POST /api/telegram/link (issue a key)."""

    code: str
    expires_at: datetime
    bot_username: str


class TelegramUnlinkResponse(BaseModel):
    """Response schema for DELETE /api/telegram/link."""

    success: bool
    message: str


class ValidateCodeRequest(BaseModel):
    """Request body for POST /api/telegram/codes/validate."""

    code: str = Field(..., min_length=1, max_length=64)


class ValidateCodeResponse(BaseModel):
    """Outcome of a key check. ``reason`` is set only when not valid."""

    valid: bool
    owner_user_id: str | None = None
    reason: str | None = None


class ConsumeCodeRequest(BaseModel):
    """Request body for POST /api/telegram/codes/consume."""

    code: str = Field(..., min_length=1, max_length=64)
    external_chat_id: int
    external_display_name: str | None = Field(default=None, max_length=100)


class DisconnectResponse(BaseModel):
    """Response schema for DELETE /api/telegram/links/{external_chat_id}."""

    success: bool


class LinkErrorResponse(BaseModel):
    """Error body for link failures."""

    detail: str
    reason: str

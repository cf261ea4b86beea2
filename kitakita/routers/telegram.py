"""Telegram account linking router.

Web endpoints (bearer auth) let a dashboard user see their link, issue a
connection key and unlink. Bot-facing endpoints (internal key) validate
and consume keys, resolve a chat to its link and disconnect it, for bot
processes that do not talk to the database directly.
"""

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from kitakita.config import settings
from kitakita.core.auth import CurrentUser, InternalCaller
from kitakita.core.errors import LinkError
from kitakita.database import get_db
from kitakita.logging_config import get_logger
from kitakita.middleware.rate_limit import limiter
from kitakita.schemas.telegram import (
    AccountLinkResponse,
    ConnectionKeyResponse,
    ConsumeCodeRequest,
    DisconnectResponse,
    LinkErrorResponse,
    TelegramStatusResponse,
    TelegramUnlinkResponse,
    ValidateCodeRequest,
    ValidateCodeResponse,
)
from kitakita.services import linking
from kitakita.services.telegram_bot import TelegramBotError, get_bot_info

logger = get_logger(__name__)

router = APIRouter(
    prefix="/api/telegram",
    tags=["telegram"],
)

LINK_ERROR_STATUS: dict[str, int] = {
    "malformed": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "not_found": status.HTTP_404_NOT_FOUND,
    "expired": status.HTTP_410_GONE,
    "already_used": status.HTTP_409_CONFLICT,
    "already_linked_elsewhere": status.HTTP_409_CONFLICT,
    "storage_unavailable": status.HTTP_503_SERVICE_UNAVAILABLE,
}

_LINK_ERROR_RESPONSES = {
    code: {"model": LinkErrorResponse}
    for code in sorted(set(LINK_ERROR_STATUS.values()))
}


async def link_error_handler(request: Request, exc: LinkError) -> JSONResponse:
    """Render a LinkError as ``{"detail", "reason"}`` with its HTTP status."""
    status_code = LINK_ERROR_STATUS.get(
        exc.reason, status.HTTP_500_INTERNAL_SERVER_ERROR
    )
    return JSONResponse(
        status_code=status_code,
        content=LinkErrorResponse(detail=str(exc), reason=exc.reason).model_dump(),
    )


def _check_bot_configured() -> None:
    """Raise 503 if the Telegram bot token is not configured."""
    if not settings.telegram_bot_token:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Telegram bot is not configured",
        )


async def _bot_username() -> str:
    _check_bot_configured()
    try:
        return await get_bot_info()
    except TelegramBotError:
        logger.warning("Telegram getMe failed", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Telegram bot is temporarily unavailable",
        )


# ── Web dashboard ──


@router.get(
    "/status",
    response_model=TelegramStatusResponse,
)
async def get_telegram_status(
    user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> TelegramStatusResponse:
    """Whether the user has a linked Telegram account, plus the bot's name."""
    bot_username = await _bot_username()
    link = await linking.get_link_for_user(db, user.id)

    return TelegramStatusResponse(
        linked=link is not None,
        link=AccountLinkResponse.model_validate(link) if link else None,
        bot_username=bot_username,
    )


@router.post(
    "/link",
    response_model=ConnectionKeyResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        409: {"description": "Telegram account already linked"},
        429: {"description": "Too many keys issued"},
        503: {"description": "Bot not configured or storage unavailable"},
    },
)
@limiter.limit(settings.link_code_issue_rate_limit)
async def issue_connection_key(
    request: Request,
    user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> ConnectionKeyResponse:
    """Issue a connection key to send to the bot as ``/connect KEY``."""
    bot_username = await _bot_username()

    existing = await linking.get_link_for_user(db, user.id)
    if existing is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Telegram account is already linked; disconnect it first",
        )

    record = await linking.issue_code(db, user.id)

    return ConnectionKeyResponse(
        code=record.code,
        expires_at=record.expires_at,
        bot_username=bot_username,
    )


@router.delete(
    "/link",
    response_model=TelegramUnlinkResponse,
)
async def remove_telegram_link(
    user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> TelegramUnlinkResponse:
    """Unlink the user's Telegram account."""
    link = await linking.disconnect_user(db, user.id)

    if link is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No Telegram account linked",
        )

    return TelegramUnlinkResponse(
        success=True,
        message="Telegram account unlinked successfully",
    )


# ── Bot-facing ──


@router.post(
    "/codes/validate",
    response_model=ValidateCodeResponse,
    dependencies=[InternalCaller],
)
async def validate_connection_key(
    body: ValidateCodeRequest,
    db: AsyncSession = Depends(get_db),
) -> ValidateCodeResponse:
    """Check a key without consuming it. Invalid keys are not an HTTP error."""
    result = await linking.validate_code(db, body.code)
    return ValidateCodeResponse(
        valid=result.valid,
        owner_user_id=result.owner_user_id,
        reason=result.reason,
    )


@router.post(
    "/codes/consume",
    response_model=AccountLinkResponse,
    dependencies=[InternalCaller],
    responses=_LINK_ERROR_RESPONSES,
)
async def consume_connection_key(
    body: ConsumeCodeRequest,
    db: AsyncSession = Depends(get_db),
) -> AccountLinkResponse:
    """Consume a key and link its owner to the Telegram identity."""
    link = await linking.consume_and_link(
        db,
        body.code,
        external_chat_id=body.external_chat_id,
        external_display_name=body.external_display_name,
    )
    return AccountLinkResponse.model_validate(link)


@router.get(
    "/links/{external_chat_id}",
    response_model=AccountLinkResponse,
    dependencies=[InternalCaller],
)
async def get_chat_link(
    external_chat_id: int,
    db: AsyncSession = Depends(get_db),
) -> AccountLinkResponse:
    """Resolve a Telegram identity to its active link."""
    link = await linking.resolve_link(db, external_chat_id)
    if link is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Telegram account is not linked",
        )
    return AccountLinkResponse.model_validate(link)


@router.delete(
    "/links/{external_chat_id}",
    response_model=DisconnectResponse,
    dependencies=[InternalCaller],
)
async def disconnect_chat(
    external_chat_id: int,
    db: AsyncSession = Depends(get_db),
) -> DisconnectResponse:
    """Deactivate the chat's link. Succeeds when nothing was linked."""
    await linking.disconnect(db, external_chat_id)
    return DisconnectResponse(success=True)

"""Connection key issuance and Telegram account linking.

The web dashboard issues a key (``issue_code``), the user types it into
the bot, the bot checks it (``validate_code``) and consumes it
(``consume_and_link``). Later bot messages resolve the sender with
``resolve_link``. ``disconnect`` deactivates a link without deleting it.

All coordination happens in the database: consumption is a conditional
UPDATE on ``used = false`` and the one-active-link rules are partial
unique indexes, so two bot instances racing on the same key cannot both
win. Every function takes an explicit ``now`` so callers and tests can
pin the clock.
"""

import re
import secrets
import string
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy import delete, exists, or_, select, update
from sqlalchemy.exc import IntegrityError
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
)
from kitakita.core.retry import with_storage_retry
from kitakita.logging_config import get_logger
from kitakita.models.account_link import AccountLink
from kitakita.models.link_code import LinkingCode

logger = get_logger(__name__)

# Exclude ambiguous characters (0/O, 1/I)
CODE_ALPHABET = string.ascii_uppercase.replace("O", "").replace("I", "") + "23456789"

# Attempts at drawing a key that does not collide with an existing one
CODE_GENERATION_ATTEMPTS = 3

_ERRORS_BY_REASON: dict[str, type[LinkError]] = {
    error.reason: error for error in (NotFound, AlreadyUsed, Expired)
}


@dataclass(frozen=True)
class CodeValidation:
    """Outcome of ``validate_code``.

    ``owner_user_id`` is set only when ``valid``; ``reason`` only when not.
    """

    valid: bool
    owner_user_id: str | None = None
    reason: str | None = None


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _generate_code() -> str:
    """Generate a random key such as ``TG-7KQ2MX-P4WZ9HC``."""
    segments = [
        "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))
        for length in settings.link_code_segments
    ]
    return "-".join([settings.link_code_prefix, *segments])


def _code_pattern() -> re.Pattern[str]:
    charset = f"[{re.escape(CODE_ALPHABET)}]"
    parts = [re.escape(settings.link_code_prefix)] + [
        f"{charset}{{{length}}}" for length in settings.link_code_segments
    ]
    return re.compile("^" + "-".join(parts) + "$")


def normalize_code(raw: str) -> str:
    """Trim and uppercase a key as typed by a user."""
    return raw.strip().upper()


def is_well_formed(code: str) -> bool:
    """Check an already-normalized key against the configured format."""
    return _code_pattern().fullmatch(code) is not None


def _unusable_reason(record: LinkingCode | None, now: datetime) -> str | None:
    """Return why a key cannot be consumed at ``now``, or None if it can.

    ``now == expires_at`` still counts as usable.
    """
    if record is None:
        return NotFound.reason
    if record.used:
        return AlreadyUsed.reason
    if now > _as_utc(record.expires_at):
        return Expired.reason
    return None


async def _load_code(db: AsyncSession, code: str) -> LinkingCode | None:
    result = await db.execute(
        select(LinkingCode)
        .where(LinkingCode.code == code)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _active_link_for_chat(
    db: AsyncSession,
    external_chat_id: int,
) -> AccountLink | None:
    result = await db.execute(
        select(AccountLink)
        .where(
            AccountLink.external_chat_id == external_chat_id,
            AccountLink.active.is_(True),
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _active_link_for_user(
    db: AsyncSession,
    web_user_id: str,
) -> AccountLink | None:
    result = await db.execute(
        select(AccountLink)
        .where(
            AccountLink.web_user_id == web_user_id,
            AccountLink.active.is_(True),
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _latest_link(
    db: AsyncSession,
    web_user_id: str,
    external_chat_id: int,
) -> AccountLink | None:
    """Most recent link row, active or not, for this account/chat pair."""
    result = await db.execute(
        select(AccountLink)
        .where(
            AccountLink.web_user_id == web_user_id,
            AccountLink.external_chat_id == external_chat_id,
        )
        .order_by(AccountLink.linked_at.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def issue_code(
    db: AsyncSession,
    owner_user_id: str,
    now: datetime | None = None,
) -> LinkingCode:
    """Issue a fresh connection key for a web account.

    Every call issues a new key; earlier keys stay valid until they expire
    or are consumed.

    Args:
        db: Database session.
        owner_user_id: Authenticated web account the key is bound to.
        now: Issuance instant (defaults to the current time).

    Returns:
        The persisted LinkingCode.

    Raises:
        StorageUnavailable: If the key could not be written.
    """
    now = now or _utcnow()
    expires_at = now + timedelta(minutes=settings.link_code_ttl_minutes)

    async def _issue() -> LinkingCode:
        for _attempt in range(CODE_GENERATION_ATTEMPTS):
            record = LinkingCode(
                code=_generate_code(),
                owner_user_id=owner_user_id,
                created_at=now,
                expires_at=expires_at,
                used=False,
            )
            db.add(record)
            try:
                await db.commit()
                return record
            except IntegrityError:
                await db.rollback()
                logger.warning(
                    "Connection key collision, regenerating",
                    user_id=owner_user_id,
                )
        raise StorageUnavailable("Failed to generate a unique connection key")

    record = await with_storage_retry(db, _issue, name="issue_code")

    logger.info(
        "Connection key issued",
        user_id=owner_user_id,
        expires_at=expires_at.isoformat(),
    )
    return record


async def validate_code(
    db: AsyncSession,
    code: str,
    now: datetime | None = None,
) -> CodeValidation:
    """Check whether a typed key can currently be consumed.

    Read-only: never marks the key used. Malformed input is rejected
    without touching the store.

    Args:
        db: Database session.
        code: Key as typed by the user.
        now: Validation instant (defaults to the current time).

    Returns:
        CodeValidation with the owner on success or the failure reason.

    Raises:
        StorageUnavailable: If the store could not be read.
    """
    normalized = normalize_code(code)
    if not is_well_formed(normalized):
        return CodeValidation(valid=False, reason=Malformed.reason)

    now = now or _utcnow()
    record = await with_storage_retry(
        db, lambda: _load_code(db, normalized), name="validate_code"
    )

    reason = _unusable_reason(record, now)
    if reason is not None:
        logger.debug("Connection key rejected", reason=reason)
        return CodeValidation(valid=False, reason=reason)

    return CodeValidation(valid=True, owner_user_id=record.owner_user_id)


async def consume_and_link(
    db: AsyncSession,
    code: str,
    external_chat_id: int,
    external_display_name: str | None = None,
    now: datetime | None = None,
) -> AccountLink:
    """Consume a connection key and link its owner to a Telegram identity.

    The key is re-validated, then claimed with a conditional UPDATE that
    only matches while ``used`` is still false. The link rules are checked
    after the claim; a rejection rolls the claim back. The link upsert
    commits in the same transaction, so a burned key without a link can
    only come from outside this function (see ``find_unlinked_consumptions``).

    Args:
        db: Database session.
        code: Key as typed by the user.
        external_chat_id: Telegram identity consuming the key.
        external_display_name: Telegram username, cached for display.
        now: Consumption instant (defaults to the current time).

    Returns:
        The active AccountLink.

    Raises:
        Malformed: The key fails the format check.
        NotFound: No such key was issued.
        Expired: The key's TTL elapsed, including between validate and consume.
        AlreadyUsed: The key was consumed before, including by a concurrent caller.
        AlreadyLinkedElsewhere: The chat or the key's owner already has a
            different active link.
        StorageUnavailable: The store could not be read or written.
    """
    normalized = normalize_code(code)
    if not is_well_formed(normalized):
        raise Malformed()

    now = now or _utcnow()

    async def _consume() -> AccountLink:
        record = await _load_code(db, normalized)
        reason = _unusable_reason(record, now)
        if reason is not None:
            raise _ERRORS_BY_REASON[reason]()

        owner_user_id = record.owner_user_id

        # Claim the key before the link rules: a consumer that lost the
        # key reports AlreadyUsed, never the winner's fresh link
        result = await db.execute(
            update(LinkingCode)
            .where(
                LinkingCode.code == normalized,
                LinkingCode.used.is_(False),
                LinkingCode.expires_at >= now,
            )
            .values(
                used=True,
                used_by_external_id=external_chat_id,
                used_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            # Lost the race or crossed the expiry; re-read to tell which
            await db.rollback()
            reason = _unusable_reason(await _load_code(db, normalized), now)
            raise _ERRORS_BY_REASON.get(reason, AlreadyUsed)()

        # A rejection below rolls the claim back, leaving the key usable
        chat_link = await _active_link_for_chat(db, external_chat_id)
        if chat_link is not None and chat_link.web_user_id != owner_user_id:
            await db.rollback()
            raise AlreadyLinkedElsewhere(
                "This Telegram account is linked to another web account"
            )

        user_link = await _active_link_for_user(db, owner_user_id)
        if user_link is not None and user_link.external_chat_id != external_chat_id:
            await db.rollback()
            raise AlreadyLinkedElsewhere(
                "This web account is linked to another Telegram account"
            )

        link = chat_link or await _latest_link(db, owner_user_id, external_chat_id)
        if link is None:
            link = AccountLink(
                web_user_id=owner_user_id,
                external_chat_id=external_chat_id,
                external_display_name=external_display_name,
                linked_at=now,
                active=True,
            )
            db.add(link)
        else:
            link.active = True
            link.linked_at = now
            link.unlinked_at = None
            if external_display_name:
                link.external_display_name = external_display_name

        try:
            await db.commit()
        except IntegrityError:
            # A concurrent consume of a different key claimed the chat or user
            await db.rollback()
            raise AlreadyLinkedElsewhere(
                "Another link was created for this account at the same time"
            )
        return link

    try:
        link = await with_storage_retry(db, _consume, name="consume_and_link")
    except LinkError as e:
        if not isinstance(e, StorageUnavailable):
            await db.rollback()
        logger.info(
            "Connection key consumption refused",
            reason=e.reason,
            chat_id=external_chat_id,
        )
        raise

    logger.info(
        "Telegram account linked",
        user_id=link.web_user_id,
        chat_id=external_chat_id,
        username=external_display_name,
    )
    return link


async def resolve_link(
    db: AsyncSession,
    external_chat_id: int,
) -> AccountLink | None:
    """Resolve a Telegram identity to its active link.

    None means the chat is not linked; callers treat that as the
    supported unlinked mode, not as an error.
    """
    return await with_storage_retry(
        db,
        lambda: _active_link_for_chat(db, external_chat_id),
        name="resolve_link",
    )


async def get_link_for_user(
    db: AsyncSession,
    web_user_id: str,
) -> AccountLink | None:
    """Return the web account's active link, or None."""
    return await with_storage_retry(
        db,
        lambda: _active_link_for_user(db, web_user_id),
        name="get_link_for_user",
    )


async def disconnect(
    db: AsyncSession,
    external_chat_id: int,
    now: datetime | None = None,
) -> None:
    """Deactivate the chat's active link; a no-op when there is none."""
    now = now or _utcnow()

    async def _disconnect() -> int:
        result = await db.execute(
            update(AccountLink)
            .where(
                AccountLink.external_chat_id == external_chat_id,
                AccountLink.active.is_(True),
            )
            .values(active=False, unlinked_at=now)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount

    count = await with_storage_retry(db, _disconnect, name="disconnect")
    if count:
        logger.info("Telegram account unlinked", chat_id=external_chat_id)


async def disconnect_user(
    db: AsyncSession,
    web_user_id: str,
    now: datetime | None = None,
) -> AccountLink | None:
    """Deactivate the web account's active link.

    Returns:
        The deactivated link, or None if the account was not linked.
    """
    now = now or _utcnow()

    async def _disconnect() -> AccountLink | None:
        link = await _active_link_for_user(db, web_user_id)
        if link is None:
            return None
        link.active = False
        link.unlinked_at = now
        await db.commit()
        return link

    link = await with_storage_retry(db, _disconnect, name="disconnect_user")
    if link is not None:
        logger.info(
            "Telegram account unlinked from web",
            user_id=web_user_id,
            chat_id=link.external_chat_id,
        )
    return link


async def find_unlinked_consumptions(db: AsyncSession) -> list[LinkingCode]:
    """Find keys that were consumed but have no matching link.

    Such a key is burned and cannot be reused; support must issue a new
    key or create the link by hand. Nothing here repairs the data.
    """
    # An older, since-disconnected link for the same pair does not count
    link_exists = exists().where(
        AccountLink.web_user_id == LinkingCode.owner_user_id,
        AccountLink.external_chat_id == LinkingCode.used_by_external_id,
        or_(
            AccountLink.active.is_(True),
            AccountLink.linked_at >= LinkingCode.used_at,
        ),
    )
    result = await db.execute(
        select(LinkingCode)
        .where(LinkingCode.used.is_(True), ~link_exists)
        .order_by(LinkingCode.used_at)
    )
    orphans = list(result.scalars().all())

    for record in orphans:
        logger.warning(
            "Consumed connection key has no account link",
            user_id=record.owner_user_id,
            chat_id=record.used_by_external_id,
            used_at=record.used_at.isoformat() if record.used_at else None,
        )
    return orphans


async def purge_expired_codes(
    db: AsyncSession,
    now: datetime | None = None,
) -> int:
    """Delete unused keys past their expiry.

    Consumed keys are kept; reconciliation needs them.

    Returns:
        Number of keys deleted.
    """
    now = now or _utcnow()

    async def _purge() -> int:
        result = await db.execute(
            delete(LinkingCode)
            .where(
                LinkingCode.used.is_(False),
                LinkingCode.expires_at < now,
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount

    count = await with_storage_retry(db, _purge, name="purge_expired_codes")
    if count:
        logger.info("Expired connection keys purged", count=count)
    return count

"""Error taxonomy for account linking and upstream calls.

User-facing outcomes (malformed, not found, expired, already used, already
linked elsewhere) are never retried. ``StorageUnavailable`` is the only
condition eligible for an automatic retry.
"""


class LinkError(Exception):
    """Base class for connection key and account link failures."""

    reason: str = "link_error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.reason)


class Malformed(LinkError):
    """The presented key fails the format check; the store was not queried."""

    reason = "malformed"


class NotFound(LinkError):
    """No key with this value was ever issued."""

    reason = "not_found"


class Expired(LinkError):
    """The key's TTL has elapsed."""

    reason = "expired"


class AlreadyUsed(LinkError):
    """The key was consumed earlier, possibly by a concurrent request."""

    reason = "already_used"


class AlreadyLinkedElsewhere(LinkError):
    """The chat or the web account already has a different active link."""

    reason = "already_linked_elsewhere"


class StorageUnavailable(LinkError):
    """The database could not be reached or the write failed."""

    reason = "storage_unavailable"


class UpstreamUnavailable(Exception):
    """An external service (Telegram, LLM provider) failed or timed out."""

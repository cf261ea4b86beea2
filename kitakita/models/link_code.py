"""Connection key model.

Short-lived, single-use keys a user copies from the web dashboard into
the Telegram bot to prove control of both identities.
"""

from datetime import datetime

from sqlalchemy import BigInteger, Boolean, DateTime, ForeignKey, String, func
from sqlalchemy.orm import Mapped, mapped_column

from kitakita.models.base import Base


class LinkingCode(Base):
    """A connection key bound to the web account that issued it.

    A key is consumable while ``used`` is false and the current time is at
    or before ``expires_at``. ``used`` flips to true exactly once, through
    a conditional update, and never back. Expired rows are never updated
    and may be purged.
    """

    __tablename__ = "link_codes"

    code: Mapped[str] = mapped_column(
        String(32),
        primary_key=True,
    )

    owner_user_id: Mapped[str] = mapped_column(
        String(128),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    used: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )

    used_by_external_id: Mapped[int | None] = mapped_column(
        BigInteger,
        nullable=True,
    )

    used_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:
        return (
            f"<LinkingCode(owner_user_id={self.owner_user_id}, "
            f"used={self.used}, expires_at={self.expires_at})>"
        )

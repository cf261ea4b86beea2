"""Account link model.

Stores the association between a web account and a Telegram identity.
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    String,
    Uuid,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from kitakita.models.base import Base, TimestampMixin


class AccountLink(Base, TimestampMixin):
    """A web account linked to a Telegram chat identity.

    Created on the first successful connection key consumption and
    deactivated (never deleted) on disconnect. Partial unique indexes
    allow at most one active link per chat and per web account; any
    number of inactive rows may remain as history.
    """

    __tablename__ = "account_links"
    __table_args__ = (
        Index(
            "uq_account_links_active_chat",
            "external_chat_id",
            unique=True,
            postgresql_where=text("active"),
            sqlite_where=text("active = 1"),
        ),
        Index(
            "uq_account_links_active_user",
            "web_user_id",
            unique=True,
            postgresql_where=text("active"),
            sqlite_where=text("active = 1"),
        ),
        Index(
            "ix_account_links_user_chat",
            "web_user_id",
            "external_chat_id",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    web_user_id: Mapped[str] = mapped_column(
        String(128),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )

    external_chat_id: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )

    # Cached for display only; Telegram usernames change
    external_display_name: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )

    linked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
    )

    unlinked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    user = relationship("User", back_populates="account_links")

    def __repr__(self) -> str:
        return (
            f"<AccountLink(web_user_id={self.web_user_id}, "
            f"external_chat_id={self.external_chat_id}, "
            f"active={self.active})>"
        )

"""Web application account model.

Accounts are created by the upstream identity provider; the API only
stores what the linking and receipt flows need.
"""

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from kitakita.models.base import Base, TimestampMixin


class User(Base, TimestampMixin):
    """Web application account.

    Attributes:
        id: Opaque account identifier issued by the identity provider
        email: Account email, shown in the bot's /account reply
        display_name: Optional name for greetings
        is_active: Disabled accounts cannot authenticate
    """

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(
        String(128),
        primary_key=True,
    )
    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        index=True,
    )
    display_name: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    is_active: Mapped[bool] = mapped_column(
        default=True,
    )

    account_links = relationship(
        "AccountLink",
        back_populates="user",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email})>"

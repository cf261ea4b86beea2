# Database Models
from kitakita.models.account_link import AccountLink
from kitakita.models.base import Base, TimestampMixin
from kitakita.models.link_code import LinkingCode
from kitakita.models.transaction import Transaction, TransactionType
from kitakita.models.user import User

__all__ = [
    "AccountLink",
    "Base",
    "LinkingCode",
    "TimestampMixin",
    "Transaction",
    "TransactionType",
    "User",
]

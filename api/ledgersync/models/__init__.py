from ledgersync.models.account import Account, Category, Transaction, TransactionMapping
from ledgersync.models.connection import AccountLink, Connection, SyncCursor
from ledgersync.models.user import User

__all__ = [
    "Account",
    "AccountLink",
    "Category",
    "Connection",
    "SyncCursor",
    "Transaction",
    "TransactionMapping",
    "User",
]

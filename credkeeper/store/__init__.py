"""credkeeper user store package.

Re-exports the public API for ergonomic imports:

    from credkeeper.store import User, UserStore, Purpose

Layout:
    models.py       — User, ApiKeyRecord, TokenFields, Purpose, Slot
    protocol.py     — UserStore Protocol
    memory.py       — InMemoryUserStore
    sqlite_store.py — SQLiteUserStore (aiosqlite, WAL mode, PRAGMA version guard)
    factory.py      — create_user_store() — backend selection from config
"""

from credkeeper.store.models import (
    ApiKeyRecord,
    Purpose,
    Slot,
    TokenFields,
    User,
    utcnow,
)
from credkeeper.store.protocol import UserStore

__all__ = [
    "Slot",
    "Purpose",
    "User",
    "ApiKeyRecord",
    "TokenFields",
    "utcnow",
    "UserStore",
]

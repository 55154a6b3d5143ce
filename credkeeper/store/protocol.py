"""UserStore Protocol — the persistence interface credkeeper depends on.

Records are defined in credkeeper/store/models.py. This module defines the
pluggable store interface only.

Layout:
    models.py       — User, ApiKeyRecord, TokenFields, Purpose, Slot
    protocol.py     — UserStore Protocol
    memory.py       — InMemoryUserStore (tests, single-process dev)
    sqlite_store.py — SQLiteUserStore (aiosqlite, WAL mode, PRAGMA version guard)
    factory.py      — create_user_store() — backend selection from config
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol, runtime_checkable

from credkeeper.store.models import ApiKeyRecord, Purpose, Slot, TokenFields, User


@runtime_checkable
class UserStore(Protocol):
    """Pluggable user store interface.

    Implementations: SQLiteUserStore (default), InMemoryUserStore.
    Selection via create_user_store() factory (store/factory.py).

    All methods are async. Failures of the underlying storage surface as
    StoreError; credkeeper never retries them. Uniqueness violations on
    username or email surface as AccountStateError.
    """

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Open resources and create/verify schema."""
        ...

    async def close(self) -> None:
        """Clean up connections and resources. Called during graceful shutdown."""
        ...

    async def health_check(self) -> bool:
        """Returns True if the store is operational. Must not raise."""
        ...

    # ── Users ─────────────────────────────────────────────────────────────────

    async def create_user(
        self, username: str, email: str, password_hash: str, is_verified: bool = False
    ) -> User:
        ...

    async def get_user(self, user_id: int) -> Optional[User]:
        ...

    async def get_user_by_username(self, username: str) -> Optional[User]:
        ...

    async def get_user_by_email(self, email: str) -> Optional[User]:
        ...

    async def delete_user(self, user_id: int) -> bool:
        """Delete the user with both API key slots and every purpose-token side record.

        Returns False when no such user exists. User ids are never reused.
        """
        ...

    # ── Purpose-token side records ────────────────────────────────────────────

    async def get_token_fields(self, user_id: int, purpose: Purpose) -> Optional[TokenFields]:
        ...

    async def set_token_fields(
        self, user_id: int, purpose: Purpose, token_digest: str, expires_at: datetime
    ) -> None:
        """Record the outstanding token for (user_id, purpose), overwriting any earlier one."""
        ...

    async def clear_token_fields(self, user_id: int, purpose: Purpose) -> None:
        ...

    async def consume_token_fields(
        self,
        user_id: int,
        purpose: Purpose,
        token_digest: str,
        now: datetime,
        *,
        password_hash: Optional[str] = None,
        email: Optional[str] = None,
        mark_verified: bool = False,
    ) -> bool:
        """Atomically consume a side record and apply the change it authorises.

        Returns False (and changes nothing) when no record exists, the digest
        does not match the outstanding token, or the record has expired.
        Otherwise applies the non-None updates to the user, deletes the side
        record and returns True. A consumed token can never be consumed again.
        """
        ...

    # ── API keys ──────────────────────────────────────────────────────────────

    async def get_api_key(self, user_id: int, slot: Slot) -> Optional[ApiKeyRecord]:
        ...

    async def set_api_key(
        self,
        user_id: int,
        slot: Slot,
        key_hash: str,
        key_hint: str,
        active: bool,
        created_at: datetime,
    ) -> None:
        """Overwrite the slot's record. last_used_at is reset to None."""
        ...

    async def set_api_key_active(self, user_id: int, slot: Slot, active: bool) -> bool:
        """Set the active flag. Returns False when the slot is empty."""
        ...

    async def clear_api_key(self, user_id: int, slot: Slot) -> bool:
        """Delete the slot's record. Returns False when the slot was already empty."""
        ...

    async def list_api_keys(self, user_id: int) -> list[ApiKeyRecord]:
        """Records for user_id, primary before secondary."""
        ...

    async def find_api_key(self, key_hash: str) -> Optional[ApiKeyRecord]:
        ...

    async def touch_last_used(self, user_id: int, slot: Slot, at: datetime) -> None:
        """Stamp last_used_at = max(last_used_at, at). Never moves the stamp backwards."""
        ...

"""InMemoryUserStore — dict-backed UserStore for tests and single-process dev.

State lives for the lifetime of the process. Writes are serialised with an
asyncio.Lock so consume-and-apply is atomic with respect to other coroutines.
"""

from __future__ import annotations

import asyncio
import dataclasses
from datetime import datetime
from typing import Optional

from credkeeper.constants import API_KEY_SLOTS
from credkeeper.errors import AccountStateError
from credkeeper.store.models import ApiKeyRecord, Purpose, Slot, TokenFields, User, utcnow
from credkeeper.store.protocol import UserStore
from credkeeper.utils.logger import get_logger

logger = get_logger(__name__)


class InMemoryUserStore:
    """UserStore kept entirely in process memory.

    Returned records are copies; mutating them never changes stored state.
    """

    def __init__(self) -> None:
        self._users: dict[int, User] = {}
        self._next_id = 1
        self._tokens: dict[tuple[int, Purpose], TokenFields] = {}
        self._keys: dict[tuple[int, str], ApiKeyRecord] = {}
        self._lock = asyncio.Lock()

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        logger.info("user_store_ready", backend="memory")

    async def close(self) -> None:
        logger.debug("user_store_closed", backend="memory")

    async def health_check(self) -> bool:
        return True

    # ── Users ─────────────────────────────────────────────────────────────────

    async def create_user(
        self, username: str, email: str, password_hash: str, is_verified: bool = False
    ) -> User:
        async with self._lock:
            if self._find_user(username=username) is not None:
                raise AccountStateError("Username already exists")
            if self._find_user(email=email) is not None:
                raise AccountStateError("Email already exists")
            user = User(
                id=self._next_id,
                username=username,
                email=email,
                password_hash=password_hash,
                is_verified=is_verified,
                created_at=utcnow(),
            )
            self._users[user.id] = user
            self._next_id += 1
            return dataclasses.replace(user)

    async def get_user(self, user_id: int) -> Optional[User]:
        user = self._users.get(user_id)
        return dataclasses.replace(user) if user else None

    async def get_user_by_username(self, username: str) -> Optional[User]:
        user = self._find_user(username=username)
        return dataclasses.replace(user) if user else None

    async def get_user_by_email(self, email: str) -> Optional[User]:
        user = self._find_user(email=email)
        return dataclasses.replace(user) if user else None

    async def delete_user(self, user_id: int) -> bool:
        async with self._lock:
            if self._users.pop(user_id, None) is None:
                return False
            for key in [k for k in self._tokens if k[0] == user_id]:
                del self._tokens[key]
            for key in [k for k in self._keys if k[0] == user_id]:
                del self._keys[key]
            return True

    def _find_user(
        self, *, username: Optional[str] = None, email: Optional[str] = None
    ) -> Optional[User]:
        for user in self._users.values():
            if username is not None and user.username == username:
                return user
            if email is not None and user.email == email:
                return user
        return None

    # ── Purpose-token side records ────────────────────────────────────────────

    async def get_token_fields(self, user_id: int, purpose: Purpose) -> Optional[TokenFields]:
        fields = self._tokens.get((user_id, Purpose(purpose)))
        return dataclasses.replace(fields) if fields else None

    async def set_token_fields(
        self, user_id: int, purpose: Purpose, token_digest: str, expires_at: datetime
    ) -> None:
        async with self._lock:
            purpose = Purpose(purpose)
            self._tokens[(user_id, purpose)] = TokenFields(
                user_id=user_id,
                purpose=purpose,
                token_digest=token_digest,
                expires_at=expires_at,
            )

    async def clear_token_fields(self, user_id: int, purpose: Purpose) -> None:
        async with self._lock:
            self._tokens.pop((user_id, Purpose(purpose)), None)

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
        async with self._lock:
            key = (user_id, Purpose(purpose))
            fields = self._tokens.get(key)
            user = self._users.get(user_id)
            if fields is None or user is None:
                return False
            if fields.token_digest != token_digest or fields.is_expired(now):
                return False
            if email is not None:
                other = self._find_user(email=email)
                if other is not None and other.id != user_id:
                    raise AccountStateError("Email already in use")
                user.email = email
            if password_hash is not None:
                user.password_hash = password_hash
            if mark_verified:
                user.is_verified = True
            del self._tokens[key]
            return True

    # ── API keys ──────────────────────────────────────────────────────────────

    async def get_api_key(self, user_id: int, slot: Slot) -> Optional[ApiKeyRecord]:
        record = self._keys.get((user_id, slot))
        return dataclasses.replace(record) if record else None

    async def set_api_key(
        self,
        user_id: int,
        slot: Slot,
        key_hash: str,
        key_hint: str,
        active: bool,
        created_at: datetime,
    ) -> None:
        async with self._lock:
            self._keys[(user_id, slot)] = ApiKeyRecord(
                user_id=user_id,
                slot=slot,
                key_hash=key_hash,
                key_hint=key_hint,
                active=active,
                created_at=created_at,
                last_used_at=None,
            )

    async def set_api_key_active(self, user_id: int, slot: Slot, active: bool) -> bool:
        async with self._lock:
            record = self._keys.get((user_id, slot))
            if record is None:
                return False
            record.active = active
            return True

    async def clear_api_key(self, user_id: int, slot: Slot) -> bool:
        async with self._lock:
            return self._keys.pop((user_id, slot), None) is not None

    async def list_api_keys(self, user_id: int) -> list[ApiKeyRecord]:
        return [
            dataclasses.replace(self._keys[(user_id, slot)])
            for slot in API_KEY_SLOTS
            if (user_id, slot) in self._keys
        ]

    async def find_api_key(self, key_hash: str) -> Optional[ApiKeyRecord]:
        for record in self._keys.values():
            if record.key_hash == key_hash:
                return dataclasses.replace(record)
        return None

    async def touch_last_used(self, user_id: int, slot: Slot, at: datetime) -> None:
        async with self._lock:
            record = self._keys.get((user_id, slot))
            if record is None:
                return
            if record.last_used_at is None or at > record.last_used_at:
                record.last_used_at = at


# ─── Protocol compliance assertion ────────────────────────────────────────────
# Runs at import time: fails on protocol drift.
assert isinstance(InMemoryUserStore(), UserStore), (
    "InMemoryUserStore does not satisfy UserStore protocol — implementation error"
)

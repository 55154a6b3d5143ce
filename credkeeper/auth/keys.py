"""credkeeper API key lifecycle.

Implements:
  - generate_key()                 — "ck_" + 160 bits of CSPRNG hex
  - hash_key()                     — SHA-256 digest stored in place of the key
  - CooldownTracker                — per-(user, slot) regeneration cooldown
  - ApiKeyManager.rotate()         — cooldown-gated regeneration of one slot
  - ApiKeyManager.provision_primary() — primary key created at registration
  - ApiKeyManager.activate()/deactivate()/delete()
  - ApiKeyManager.list_keys()      — masked view, never plaintext
  - ApiKeyManager.authenticate_key() — lookup by digest + last_used_at stamp

Non-negotiables:
  - Plaintext is NEVER stored — only the SHA-256 digest and a 4-char hint.
    The value is returned exactly once, by rotate() or provision_primary().
  - Key material comes from the secrets module only.
  - Check-then-record on the cooldown is atomic (CooldownTracker.reserve).
  - No await inside a CooldownTracker critical section.
"""

from __future__ import annotations

import hashlib
import math
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from credkeeper.constants import (
    API_KEY_BYTES,
    API_KEY_COOLDOWN_SECONDS,
    API_KEY_PREFIX,
    API_KEY_SLOTS,
)
from credkeeper.errors import NotFound, RateLimited
from credkeeper.store.models import ApiKeyRecord, Slot, utcnow
from credkeeper.store.protocol import UserStore
from credkeeper.utils.logger import get_logger

logger = get_logger(__name__)

# Length of the hex body after the prefix
_KEY_BODY_LENGTH: int = API_KEY_BYTES * 2


# ─── Key material ─────────────────────────────────────────────────────────────


def generate_key() -> str:
    """Return a fresh API key value: ck_ + 40 lowercase hex characters."""
    return API_KEY_PREFIX + secrets.token_hex(API_KEY_BYTES)


def hash_key(value: str) -> str:
    """SHA-256 hex digest of an API key value.

    Keys carry 160 bits of entropy, so an unsalted fast hash is sufficient
    and keeps lookup O(1) by digest.
    """
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def is_well_formed(value: str) -> bool:
    if not value.startswith(API_KEY_PREFIX):
        return False
    body = value[len(API_KEY_PREFIX):]
    return len(body) == _KEY_BODY_LENGTH and all(c in "0123456789abcdef" for c in body)


def validate_slot(slot: str) -> Slot:
    """Return slot unchanged or raise NotFound for anything but primary/secondary."""
    if slot not in API_KEY_SLOTS:
        raise NotFound(f"Unknown API key slot: {slot}")
    return slot  # type: ignore[return-value]


# ─── Cooldown ─────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class CooldownStatus:
    on_cooldown: bool
    retry_after_seconds: int = 0
    message: Optional[str] = None


def _plural(n: int, unit: str) -> str:
    return f"{n} {unit}{'s' if n != 1 else ''}"


def format_wait(remaining_seconds: int) -> str:
    """Render a wait as '4 minutes and 59 seconds', '1 minute' or '30 seconds'."""
    minutes, seconds = divmod(remaining_seconds, 60)
    if minutes > 0:
        text = _plural(minutes, "minute")
        if seconds > 0:
            text += f" and {_plural(seconds, 'second')}"
        return text
    return _plural(seconds, "second")


class CooldownTracker:
    """Last-regeneration stamps per (user_id, slot), guarded by a threading.Lock.

    Stamps come from `clock` (default time.monotonic), so wall-clock changes
    never shorten or extend a window. Entries older than the window are
    harmless and removed by prune().
    """

    def __init__(
        self,
        window_seconds: int = API_KEY_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.window_seconds = window_seconds
        self._clock = clock
        self._stamps: dict[tuple[int, str], float] = {}
        self._lock = threading.Lock()

    def _status(self, user_id: int, slot: str, now: float) -> CooldownStatus:
        stamp = self._stamps.get((user_id, slot))
        if stamp is None or now - stamp >= self.window_seconds:
            return CooldownStatus(on_cooldown=False)
        # ceil, so a caller honouring Retry-After is never early
        remaining = max(1, math.ceil(stamp + self.window_seconds - now))
        return CooldownStatus(
            on_cooldown=True,
            retry_after_seconds=remaining,
            message=(
                f"Please wait {format_wait(remaining)} before generating a new {slot} API key"
            ),
        )

    def check(self, user_id: int, slot: str) -> CooldownStatus:
        with self._lock:
            return self._status(user_id, slot, self._clock())

    def record(self, user_id: int, slot: str) -> None:
        with self._lock:
            self._stamps[(user_id, slot)] = self._clock()

    def reserve(self, user_id: int, slot: str) -> tuple[CooldownStatus, Optional[float]]:
        """Atomically check and, when allowed, stamp now.

        Returns (status, previous_stamp). When status.on_cooldown is False the
        slot has been stamped and previous_stamp can be handed to release()
        if the regeneration does not complete.
        """
        with self._lock:
            now = self._clock()
            status = self._status(user_id, slot, now)
            if status.on_cooldown:
                return status, None
            previous = self._stamps.get((user_id, slot))
            self._stamps[(user_id, slot)] = now
            return status, previous

    def release(self, user_id: int, slot: str, previous: Optional[float]) -> None:
        """Undo a reservation whose regeneration failed to persist."""
        with self._lock:
            if previous is None:
                self._stamps.pop((user_id, slot), None)
            else:
                self._stamps[(user_id, slot)] = previous

    def prune(self) -> int:
        """Drop stamps whose window has elapsed. Returns the number removed."""
        with self._lock:
            now = self._clock()
            stale = [k for k, stamp in self._stamps.items() if now - stamp >= self.window_seconds]
            for k in stale:
                del self._stamps[k]
            return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._stamps)


# ─── ApiKeyManager ────────────────────────────────────────────────────────────


class ApiKeyManager:
    """Issues, rotates, toggles and authenticates per-user API keys.

    Usage:
        manager = ApiKeyManager(store)
        key = await manager.rotate(user_id=42, slot="primary")   # shown once
        record = await manager.authenticate_key(key)
    """

    def __init__(
        self,
        store: UserStore,
        cooldown: Optional[CooldownTracker] = None,
    ) -> None:
        self._store = store
        self.cooldown = cooldown if cooldown is not None else CooldownTracker()

    # ── Cooldown pass-throughs ────────────────────────────────────────────────

    def check_cooldown(self, user_id: int, slot: Slot) -> CooldownStatus:
        return self.cooldown.check(user_id, slot)

    def record_regeneration(self, user_id: int, slot: Slot) -> None:
        self.cooldown.record(user_id, slot)

    # ── Creation / rotation ───────────────────────────────────────────────────

    async def _persist_new_key(self, user_id: int, slot: Slot) -> str:
        value = generate_key()
        await self._store.set_api_key(
            user_id=user_id,
            slot=slot,
            key_hash=hash_key(value),
            key_hint=value[-4:],
            active=True,
            created_at=utcnow(),
        )
        return value

    async def rotate(self, user_id: int, slot: Slot) -> str:
        """Generate a new key for (user_id, slot), replacing the slot's previous key.

        Raises:
            RateLimited: The slot was regenerated less than the cooldown window ago.
            StoreError:  Persistence failed; the cooldown reservation is released.
        """
        slot = validate_slot(slot)
        status, previous = self.cooldown.reserve(user_id, slot)
        if status.on_cooldown:
            logger.info(
                "api_key_rotation_throttled",
                user_id=user_id,
                slot=slot,
                retry_after_seconds=status.retry_after_seconds,
            )
            raise RateLimited(status.message, retry_after_seconds=status.retry_after_seconds)

        try:
            value = await self._persist_new_key(user_id, slot)
        except Exception:
            self.cooldown.release(user_id, slot, previous)
            raise

        logger.info("api_key_rotated", user_id=user_id, slot=slot)
        return value

    async def provision_primary(self, user_id: int) -> str:
        """Create the primary key at registration. Does not start a cooldown."""
        value = await self._persist_new_key(user_id, "primary")
        logger.info("api_key_created", user_id=user_id, slot="primary")
        return value

    # ── Toggle / delete ───────────────────────────────────────────────────────

    async def activate(self, user_id: int, slot: Slot) -> bool:
        slot = validate_slot(slot)
        found = await self._store.set_api_key_active(user_id, slot, True)
        if found:
            logger.info("api_key_activated", user_id=user_id, slot=slot)
        return found

    async def deactivate(self, user_id: int, slot: Slot) -> bool:
        slot = validate_slot(slot)
        found = await self._store.set_api_key_active(user_id, slot, False)
        if found:
            logger.info("api_key_deactivated", user_id=user_id, slot=slot)
        return found

    async def toggle(self, user_id: int, slot: Slot) -> bool:
        """Flip the slot's active flag. Returns the new state.

        Raises:
            NotFound: The slot holds no key.
        """
        slot = validate_slot(slot)
        record = await self._store.get_api_key(user_id, slot)
        if record is None:
            raise NotFound(f"No {slot} API key found")
        if record.active:
            await self.deactivate(user_id, slot)
        else:
            await self.activate(user_id, slot)
        return not record.active

    async def delete(self, user_id: int, slot: Slot) -> bool:
        """Clear the slot. Idempotent; returns whether a key was removed."""
        slot = validate_slot(slot)
        removed = await self._store.clear_api_key(user_id, slot)
        if removed:
            logger.info("api_key_deleted", user_id=user_id, slot=slot)
        else:
            logger.debug("api_key_delete_noop", user_id=user_id, slot=slot)
        return removed

    # ── Read paths ────────────────────────────────────────────────────────────

    async def list_keys(self, user_id: int) -> list[dict]:
        """Masked view of the user's keys. The plaintext is never returned."""
        records = await self._store.list_api_keys(user_id)
        return [
            {
                "slot": r.slot,
                "masked_key": r.masked,
                "active": r.active,
                "created_at": r.created_at.isoformat(),
                "last_used_at": r.last_used_at.isoformat() if r.last_used_at else None,
            }
            for r in records
        ]

    async def authenticate_key(self, value: str) -> Optional[ApiKeyRecord]:
        """Resolve a presented key to its active record and stamp last_used_at.

        Returns None for malformed, unknown or inactive keys.
        """
        if not value or not is_well_formed(value):
            return None
        record = await self._store.find_api_key(hash_key(value))
        if record is None or not record.active:
            return None
        used_at = utcnow()
        await self._store.touch_last_used(record.user_id, record.slot, used_at)
        if record.last_used_at is None or used_at > record.last_used_at:
            record.last_used_at = used_at
        return record

"""User, API key and purpose-token records for the credkeeper user store.

All persisted state flows through these dataclasses. The type aliases pin
the Literal string unions used across the auth and store packages.

IMPORTANT: no record holds a usable secret. API keys are stored as SHA-256
digests plus a 4-character display hint; purpose tokens are stored as the
SHA-256 digest of the outstanding token.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Optional

# ─── Type Aliases ─────────────────────────────────────────────────────────────

Slot = Literal["primary", "secondary"]


class Purpose(str, Enum):
    """The closed set of actions a purpose token can authorise."""

    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"
    PASSWORD_CHANGE = "password_change"
    EMAIL_CHANGE = "email_change"


def utcnow() -> datetime:
    """Timezone-aware current UTC time. All stored datetimes use this convention."""
    return datetime.now(timezone.utc)


# ─── User ─────────────────────────────────────────────────────────────────────


@dataclass
class User:
    """A registered account.

    password_hash is a bcrypt hash; it never leaves the auth package.
    """

    id: int
    username: str
    email: str
    password_hash: str
    is_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)


# ─── ApiKeyRecord ─────────────────────────────────────────────────────────────


@dataclass
class ApiKeyRecord:
    """The single key record held in one (user_id, slot).

    Invariants:
        - at most one record per (user_id, slot); slots are independent
        - overwriting a slot makes the previous key value unusable
        - last_used_at is None until first use and never decreases
    """

    user_id: int
    slot: Slot
    key_hash: str
    """SHA-256 hex digest of the full key value."""
    key_hint: str
    """Last 4 characters of the key value, for masked display."""
    active: bool
    created_at: datetime
    last_used_at: Optional[datetime] = None

    @property
    def masked(self) -> str:
        return f"ck_...{self.key_hint}"


# ─── TokenFields ──────────────────────────────────────────────────────────────


@dataclass
class TokenFields:
    """Side record of the one outstanding token for a (user_id, purpose).

    Issuing a new token overwrites this record, which supersedes any earlier
    token of the same purpose even though its signature remains valid.
    """

    user_id: int
    purpose: Purpose
    token_digest: str
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

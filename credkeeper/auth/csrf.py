"""Anti-forgery (CSRF) token store.

Tokens are keyed by session id: str(user_id) for authenticated callers.
Before login a caller is identified one of two ways:

  - by a client id (the csrf_client cookie); its token lives under
    "preauth:<client id>" and belongs to that client alone
  - by nothing; it shares the "anonymous" token, which is mirrored under
    "global" so a token fetched before authentication still validates
    right after it

Pre-auth adoption: when an authenticated request validates through a
pre-auth key, the token is copied to the session (keeping its original
timestamp) unless the session already holds a fresh token of its own. A
per-client token is then removed, so it authorises at most one session and
no other client is affected. The shared "anonymous"/"global" entries are
never removed by adoption: every unidentified visitor depends on them.
Disable adoption with csrf.bind_preauth_on_use: false.

State is process-local and guarded by a threading.Lock; no await happens
inside a critical section.
"""

from __future__ import annotations

import secrets
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from credkeeper.constants import (
    CSRF_ANONYMOUS_SESSION,
    CSRF_GLOBAL_SESSION,
    CSRF_PREAUTH_PREFIX,
    CSRF_SAFE_METHODS,
    CSRF_TOKEN_BYTES,
    CSRF_TOKEN_TTL_SECONDS,
)
from credkeeper.utils.logger import get_logger

logger = get_logger(__name__)

_SHARED_SESSIONS: tuple[str, ...] = (CSRF_ANONYMOUS_SESSION, CSRF_GLOBAL_SESSION)


@dataclass
class CsrfEntry:
    token: str
    created_at: float


def requires_validation(method: str) -> bool:
    """False for GET, HEAD, OPTIONS and TRACE; True for every state-changing method."""
    return method.upper() not in CSRF_SAFE_METHODS


def preauth_session_id(client_id: str) -> str:
    return f"{CSRF_PREAUTH_PREFIX}{client_id}"


def _is_preauth(session_id: str) -> bool:
    return session_id in _SHARED_SESSIONS or session_id.startswith(CSRF_PREAUTH_PREFIX)


class CsrfTokenStore:
    """Issues and validates CSRF tokens per session id."""

    def __init__(
        self,
        ttl_seconds: int = CSRF_TOKEN_TTL_SECONDS,
        bind_preauth_on_use: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.bind_preauth_on_use = bind_preauth_on_use
        self._clock = clock
        self._entries: dict[str, CsrfEntry] = {}
        self._lock = threading.Lock()

    def _is_fresh(self, entry: CsrfEntry, now: float) -> bool:
        return now - entry.created_at < self.ttl_seconds

    @staticmethod
    def _own_key(session_id: Optional[str], client_id: Optional[str]) -> str:
        if session_id:
            return session_id
        if client_id:
            return preauth_session_id(client_id)
        return CSRF_ANONYMOUS_SESSION

    def token_for(self, session_id: Optional[str], client_id: Optional[str] = None) -> str:
        """Return the caller's unexpired token, minting a new one when needed.

        session_id wins; without one, client_id selects a per-client pre-auth
        token; without either, the shared anonymous token is used.
        """
        key = self._own_key(session_id, client_id)
        with self._lock:
            now = self._clock()
            entry = self._entries.get(key)
            if entry is not None and self._is_fresh(entry, now):
                return entry.token

            entry = CsrfEntry(token=secrets.token_hex(CSRF_TOKEN_BYTES), created_at=now)
            self._entries[key] = entry
            if key == CSRF_ANONYMOUS_SESSION:
                self._entries[CSRF_GLOBAL_SESSION] = CsrfEntry(entry.token, entry.created_at)
        logger.debug("csrf_token_issued", session_id=key)
        return entry.token

    def validate(
        self,
        session_id: Optional[str],
        presented: Optional[str],
        client_id: Optional[str] = None,
    ) -> bool:
        """True when presented matches a fresh token for the caller or a pre-auth fallback.

        Lookup order: session_id, "preauth:<client_id>", "anonymous", "global".
        Comparison is constant-time.
        """
        if not presented:
            return False
        own = self._own_key(session_id, client_id)
        candidates = [own]
        if client_id:
            candidates.append(preauth_session_id(client_id))
        candidates.extend(_SHARED_SESSIONS)

        with self._lock:
            now = self._clock()
            own_is_fresh = False
            for key in dict.fromkeys(candidates):
                entry = self._entries.get(key)
                if entry is None:
                    continue
                if not self._is_fresh(entry, now):
                    del self._entries[key]
                    continue
                if key == own:
                    own_is_fresh = True
                if not secrets.compare_digest(entry.token, presented):
                    continue
                if key != own and self.bind_preauth_on_use and not _is_preauth(own):
                    self._adopt(own, key, entry, replace_own=not own_is_fresh)
                    logger.info("csrf_preauth_token_adopted", session_id=own)
                return True
        return False

    def _adopt(self, session_id: str, source: str, entry: CsrfEntry, *, replace_own: bool) -> None:
        # caller holds the lock
        if replace_own:
            self._entries[session_id] = CsrfEntry(entry.token, entry.created_at)
        if source not in _SHARED_SESSIONS:
            del self._entries[source]

    def revoke(self, session_id: str) -> None:
        """Forget the session's token (logout)."""
        with self._lock:
            self._entries.pop(session_id, None)

    def sweep(self) -> int:
        """Remove every entry older than the TTL. Returns the number removed."""
        with self._lock:
            now = self._clock()
            stale = [k for k, e in self._entries.items() if not self._is_fresh(e, now)]
            for k in stale:
                del self._entries[k]
        if stale:
            logger.info("csrf_tokens_swept", count=len(stale))
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

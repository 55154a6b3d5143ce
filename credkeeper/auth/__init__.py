"""credkeeper credential components.

Public API:
  - ApiKeyManager, CooldownTracker   — API key slots with regeneration cooldown (keys.py)
  - PurposeTokenService, IssuedToken — purpose-scoped signed tokens (purpose_tokens.py)
  - CsrfTokenStore                   — anti-forgery tokens per session (csrf.py)
  - SessionAuthenticator, Identity   — session tokens from cookie or bearer (session.py)
  - AccountLifecycle                 — registration, login and token-authorised changes (lifecycle.py)
  - run_credential_sweeper()         — background expiry sweep (sweeper.py)
"""

from __future__ import annotations

from credkeeper.auth.csrf import CsrfTokenStore, requires_validation
from credkeeper.auth.keys import ApiKeyManager, CooldownStatus, CooldownTracker
from credkeeper.auth.lifecycle import AccountLifecycle
from credkeeper.auth.purpose_tokens import IssuedToken, PurposeTokenService, token_digest
from credkeeper.auth.session import Identity, SessionAuthenticator
from credkeeper.auth.sweeper import run_credential_sweeper

__all__ = [
    "ApiKeyManager",
    "CooldownStatus",
    "CooldownTracker",
    "PurposeTokenService",
    "IssuedToken",
    "token_digest",
    "CsrfTokenStore",
    "requires_validation",
    "SessionAuthenticator",
    "Identity",
    "AccountLifecycle",
    "run_credential_sweeper",
]

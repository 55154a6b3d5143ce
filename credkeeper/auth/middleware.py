"""FastAPI dependencies: session identity, admin gate, CSRF gate, API key auth.

Components live on app.state (wired by the lifespan in credkeeper/main.py):
    app.state.sessions   — SessionAuthenticator
    app.state.csrf       — CsrfTokenStore
    app.state.keys       — ApiKeyManager
    app.state.lifecycle  — AccountLifecycle

Every dependency raises a CredentialError subclass; the exception handler in
main.py turns it into {"error": {"message", "code"}} with the class status.

CSRF token sources, first match wins:
  1. X-CSRF-Token header
  2. X-XSRF-Token header
  3. _csrf query parameter

The XSRF-TOKEN cookie is never accepted as proof: a cross-site request
carries it automatically.

Callers without a session are matched against the pre-auth token of their
csrf_client cookie (set by GET /auth/csrf-token), so one visitor logging in
never invalidates the token another visitor is holding.

Requests that carry an Authorization: Bearer credential and no session
cookie are exempt from the CSRF gate. Browsers never attach that header on
their own, so such requests cannot be forged cross-site.
"""

from __future__ import annotations

import re
from typing import Optional

from fastapi import Depends, Request

from credkeeper.auth.csrf import CsrfTokenStore, requires_validation
from credkeeper.auth.keys import ApiKeyManager
from credkeeper.auth.lifecycle import AccountLifecycle
from credkeeper.auth.session import Identity, SessionAuthenticator
from credkeeper.constants import CSRF_CLIENT_COOKIE_NAME, CSRF_CLIENT_ID_MAX_LENGTH
from credkeeper.errors import CsrfMismatch, Forbidden, Unauthorized
from credkeeper.store.models import ApiKeyRecord
from credkeeper.utils.logger import get_logger

logger = get_logger(__name__)

_CSRF_HEADERS: tuple[str, ...] = ("x-csrf-token", "x-xsrf-token")
_CSRF_QUERY_PARAM = "_csrf"

# Matches "Bearer ck_..." so API keys can ride in the Authorization header too
_BEARER_KEY_RE = re.compile(r"^Bearer\s+(ck_\S+)", re.IGNORECASE)


# ─── Component accessors ──────────────────────────────────────────────────────


def get_sessions(request: Request) -> SessionAuthenticator:
    return request.app.state.sessions


def get_csrf_store(request: Request) -> CsrfTokenStore:
    return request.app.state.csrf


def get_key_manager(request: Request) -> ApiKeyManager:
    return request.app.state.keys


def get_lifecycle(request: Request) -> AccountLifecycle:
    return request.app.state.lifecycle


# ─── Session identity ─────────────────────────────────────────────────────────


async def require_session(request: Request) -> Identity:
    """FastAPI dependency: the authenticated caller.

    Raises:
        Unauthorized (401): no session cookie and no bearer token.
        Forbidden (403):    token presented but invalid or expired.
    """
    identity = get_sessions(request).authenticate(request)
    request.state.identity = identity
    return identity


async def optional_session(request: Request) -> Optional[Identity]:
    """The caller's identity, or None when no valid session is presented."""
    sessions = get_sessions(request)
    token = sessions.extract_token(request)
    if token is None:
        return None
    try:
        return sessions.verify(token)
    except Forbidden:
        return None


async def require_admin(identity: Identity = Depends(require_session)) -> Identity:
    """FastAPI dependency: an authenticated admin caller, else Forbidden (403)."""
    if not identity.is_admin:
        logger.warning("admin_access_denied", user_id=identity.user_id)
        raise Forbidden("Access denied: Admin privileges required")
    return identity


# ─── CSRF ─────────────────────────────────────────────────────────────────────


def extract_csrf_token(request: Request) -> Optional[str]:
    for header in _CSRF_HEADERS:
        value = request.headers.get(header)
        if value:
            return value
    return request.query_params.get(_CSRF_QUERY_PARAM) or None


def csrf_client_id(request: Request) -> Optional[str]:
    """The pre-auth client id from the csrf_client cookie, or None when absent or oversized."""
    value = request.cookies.get(CSRF_CLIENT_COOKIE_NAME)
    if not value or len(value) > CSRF_CLIENT_ID_MAX_LENGTH:
        return None
    return value


def _is_bearer_only(request: Request, sessions: SessionAuthenticator) -> bool:
    if request.cookies.get(sessions.cookie_name):
        return False
    return request.headers.get("authorization", "").lower().startswith("bearer ")


async def csrf_protect(
    request: Request,
    identity: Optional[Identity] = Depends(optional_session),
) -> None:
    """FastAPI dependency: reject state-changing requests without a valid CSRF token.

    GET, HEAD, OPTIONS and TRACE pass through untouched.

    Raises:
        CsrfMismatch (403): token missing, unknown, expired or for another session.
    """
    if not requires_validation(request.method):
        return
    if _is_bearer_only(request, get_sessions(request)):
        return

    presented = extract_csrf_token(request)
    if not presented:
        logger.warning("csrf_rejected", reason="missing", path=request.url.path)
        raise CsrfMismatch("CSRF token missing")

    session_id = identity.session_id if identity is not None else None
    if not get_csrf_store(request).validate(session_id, presented, csrf_client_id(request)):
        logger.warning("csrf_rejected", reason="invalid", path=request.url.path)
        raise CsrfMismatch("Invalid CSRF token")


# ─── API key authentication ───────────────────────────────────────────────────


def extract_api_key(request: Request) -> Optional[str]:
    """X-API-Key header first, then Authorization: Bearer ck_..."""
    key = request.headers.get("x-api-key")
    if key:
        return key.strip()
    match = _BEARER_KEY_RE.match(request.headers.get("authorization", "").strip())
    return match.group(1) if match else None


async def require_api_key(request: Request) -> ApiKeyRecord:
    """FastAPI dependency: authenticate by API key and stamp last_used_at.

    Raises:
        Unauthorized (401): key missing, unknown, malformed or inactive.
    """
    key = extract_api_key(request)
    if not key:
        logger.warning("api_key_auth_failed", reason="missing", path=request.url.path)
        raise Unauthorized("API key is required")

    record = await get_key_manager(request).authenticate_key(key)
    if record is None:
        logger.warning("api_key_auth_failed", reason="invalid", path=request.url.path)
        raise Unauthorized("Invalid or inactive API key")
    return record

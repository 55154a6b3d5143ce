"""Session tokens: issuance, extraction and authentication.

A session token is an HS256 JWT with aud="session", sub=str(user_id),
username, iat and exp. Admin tokens additionally carry is_admin=true.

Extraction order: the session cookie (auth_token by default) wins; the
Authorization: Bearer header is consulted only when the cookie is absent.

Outcomes of authenticate():
  - no credential presented      → Unauthorized (401)
  - bad signature / expired / malformed / admin claim not honoured → Forbidden (403)
  - otherwise                    → Identity
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

import jwt
from starlette.requests import HTTPConnection

from credkeeper.config import AdminConfig, SessionConfig
from credkeeper.constants import ADMIN_USER_ID, PURPOSE_TOKEN_ALGORITHM, SESSION_AUDIENCE
from credkeeper.errors import Forbidden, Unauthorized
from credkeeper.store.models import utcnow
from credkeeper.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Identity:
    user_id: int
    username: str
    is_admin: bool = False

    @property
    def session_id(self) -> str:
        """Key under which this caller's CSRF token is stored."""
        return str(self.user_id)


class SessionAuthenticator:
    """Issues and verifies session tokens.

    Usage:
        sessions = SessionAuthenticator(secret, config.session, config.admin)
        token = sessions.issue(user.id, user.username)
        identity = sessions.authenticate(request)
    """

    def __init__(
        self,
        secret: str,
        session: Optional[SessionConfig] = None,
        admin: Optional[AdminConfig] = None,
    ) -> None:
        if not secret:
            raise ValueError("session secret must not be empty")
        self._secret = secret
        self.session_config = session or SessionConfig()
        self.admin_config = admin or AdminConfig()

    @property
    def cookie_name(self) -> str:
        return self.session_config.cookie_name

    def issue(
        self,
        user_id: int,
        username: str,
        ttl_seconds: Optional[int] = None,
        is_admin: bool = False,
    ) -> str:
        now = utcnow().replace(microsecond=0)
        ttl = ttl_seconds if ttl_seconds is not None else self.session_config.ttl_seconds
        claims: dict[str, Any] = {
            "sub": str(user_id),
            "username": username,
            "aud": SESSION_AUDIENCE,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=ttl)).timestamp()),
        }
        if is_admin:
            claims["is_admin"] = True
        return jwt.encode(claims, self._secret, algorithm=PURPOSE_TOKEN_ALGORITHM)

    def extract_token(self, request: HTTPConnection) -> Optional[str]:
        """Cookie first, then `Authorization: Bearer <token>`. None when neither is present."""
        token = request.cookies.get(self.cookie_name)
        if token:
            return token
        header = request.headers.get("authorization", "")
        scheme, _, credentials = header.partition(" ")
        if scheme.lower() == "bearer" and credentials.strip():
            return credentials.strip()
        return None

    def verify(self, token: str) -> Identity:
        """Resolve a raw session token to an Identity.

        Raises:
            Forbidden: invalid, expired or malformed token, or an admin claim
                       that does not name the enabled admin principal.
        """
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[PURPOSE_TOKEN_ALGORITHM],
                audience=SESSION_AUDIENCE,
                options={"require": ["exp", "sub"]},
            )
        except jwt.InvalidTokenError as exc:
            logger.info("session_rejected", reason=type(exc).__name__)
            raise Forbidden() from exc

        username = claims.get("username") or ""
        if claims.get("is_admin") is True:
            admin = self.admin_config
            if not admin.enabled or username != admin.username:
                logger.warning("session_admin_claim_rejected", username=username)
                raise Forbidden()
            return Identity(user_id=ADMIN_USER_ID, username=admin.username, is_admin=True)

        try:
            user_id = int(claims["sub"])
        except (TypeError, ValueError) as exc:
            raise Forbidden() from exc
        return Identity(user_id=user_id, username=username)

    def authenticate(self, request: HTTPConnection) -> Identity:
        """Establish the caller's identity.

        Raises:
            Unauthorized: no session credential presented.
            Forbidden:    credential presented but not valid.
        """
        token = self.extract_token(request)
        if token is None:
            raise Unauthorized()
        return self.verify(token)

"""Purpose-scoped, expiry-bound signed tokens.

Every purpose (email_verification, password_reset, password_change,
email_change) signs with its own HS256 key:

  - the dedicated secret from secrets.purpose_secrets when configured
  - otherwise HMAC-SHA256(default_token_secret, purpose name)

so a token minted for one purpose fails signature verification under every
other purpose. The purpose is also carried in the `aud` claim.

Issuance and verification are pure: no I/O, no shared mutable state.
Single-use is enforced by the caller through the store's side record
(see AccountLifecycle and UserStore.consume_token_fields).
"""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional, Union

import jwt

from credkeeper.config import SecretsConfig, TokenConfig
from credkeeper.constants import PURPOSE_TOKEN_ALGORITHM
from credkeeper.errors import TokenExpired, TokenInvalid, VerificationFailure
from credkeeper.store.models import Purpose, utcnow
from credkeeper.utils.logger import get_logger
from credkeeper.utils.ulid import generate_ulid

logger = get_logger(__name__)

# Claims added at issuance and stripped from the payload returned by verify()
_REGISTERED_CLAIMS: frozenset[str] = frozenset({"aud", "iat", "exp", "jti"})


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: datetime


def token_digest(token: str) -> str:
    """SHA-256 hex digest stored as the side record of an outstanding token."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _derive_key(default_secret: str, purpose: Purpose) -> bytes:
    return hmac.new(
        default_secret.encode("utf-8"),
        purpose.value.encode("utf-8"),
        hashlib.sha256,
    ).digest()


class PurposeTokenService:
    """Issues and verifies purpose tokens.

    Usage:
        service = PurposeTokenService(config.secrets, config.tokens)
        issued = service.issue(Purpose.PASSWORD_RESET, {"user_id": 7})
        payload = service.verify(issued.token, Purpose.PASSWORD_RESET)
    """

    def __init__(self, secrets: SecretsConfig, tokens: Optional[TokenConfig] = None) -> None:
        if not secrets.default_token_secret and set(secrets.purpose_secrets) != {
            p.value for p in Purpose
        }:
            raise ValueError("default_token_secret is required unless every purpose has a secret")
        self._tokens = tokens or TokenConfig()
        self._keys: dict[Purpose, Union[str, bytes]] = {}
        for purpose in Purpose:
            dedicated = secrets.purpose_secrets.get(purpose.value)
            self._keys[purpose] = (
                dedicated if dedicated else _derive_key(secrets.default_token_secret, purpose)
            )

    def ttl_for(self, purpose: Purpose) -> timedelta:
        return timedelta(seconds=self._tokens.ttl_for(Purpose(purpose).value))

    def issue(
        self,
        purpose: Purpose,
        payload: Mapping[str, Any],
        now: Optional[datetime] = None,
    ) -> IssuedToken:
        """Sign payload for purpose. expires_at = now + the purpose's TTL.

        Payload keys must not collide with aud/iat/exp/jti.
        """
        purpose = Purpose(purpose)
        clash = _REGISTERED_CLAIMS & set(payload)
        if clash:
            raise ValueError(f"payload uses reserved claim(s): {sorted(clash)}")

        issued_at = (now or utcnow()).replace(microsecond=0)
        expires_at = issued_at + self.ttl_for(purpose)
        claims = dict(payload)
        claims.update(
            aud=purpose.value,
            iat=int(issued_at.timestamp()),
            exp=int(expires_at.timestamp()),
            jti=generate_ulid(),
        )
        token = jwt.encode(claims, self._keys[purpose], algorithm=PURPOSE_TOKEN_ALGORITHM)
        return IssuedToken(token=token, expires_at=expires_at)

    def verify(self, token: str, purpose: Purpose) -> dict[str, Any]:
        """Return the payload of a valid, unexpired token for purpose.

        Raises:
            TokenExpired: signature valid, past exp.
            TokenInvalid: bad signature, wrong purpose, or malformed token
                          (failure attribute tells which).
        """
        purpose = Purpose(purpose)
        try:
            claims = jwt.decode(
                token,
                self._keys[purpose],
                algorithms=[PURPOSE_TOKEN_ALGORITHM],
                audience=purpose.value,
                options={"require": ["exp", "iat", "aud"]},
            )
        except jwt.ExpiredSignatureError as exc:
            logger.info("purpose_token_rejected", purpose=purpose.value, failure="expired")
            raise TokenExpired() from exc
        except (jwt.InvalidSignatureError, jwt.InvalidAudienceError) as exc:
            logger.info("purpose_token_rejected", purpose=purpose.value, failure="bad_signature")
            raise TokenInvalid(failure=VerificationFailure.BAD_SIGNATURE) from exc
        except jwt.InvalidTokenError as exc:
            logger.info("purpose_token_rejected", purpose=purpose.value, failure="malformed")
            raise TokenInvalid(failure=VerificationFailure.MALFORMED) from exc

        return {k: v for k, v in claims.items() if k not in _REGISTERED_CLAIMS}

    digest = staticmethod(token_digest)

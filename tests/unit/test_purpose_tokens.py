"""Unit tests for credkeeper/auth/purpose_tokens.py.

Verifies:
  - issue/verify round trip for every purpose
  - a token for one purpose fails signature verification under another
  - expiry is reported as TokenExpired, distinct from a bad signature
  - malformed input → TokenInvalid(MALFORMED)
  - dedicated per-purpose secrets override the derived key
"""

from __future__ import annotations

from datetime import timedelta

import jwt
import pytest

from credkeeper.auth.purpose_tokens import PurposeTokenService, token_digest
from credkeeper.config import SecretsConfig, TokenConfig
from credkeeper.errors import TokenExpired, TokenInvalid, VerificationFailure
from credkeeper.store.models import Purpose, utcnow
from tests.conftest import TOKEN_SECRET


class TestRoundTrip:
    @pytest.mark.parametrize("purpose", list(Purpose))
    def test_payload_returned(self, token_service: PurposeTokenService, purpose: Purpose) -> None:
        issued = token_service.issue(purpose, {"user_id": 7, "new_email": "n@example.com"})
        payload = token_service.verify(issued.token, purpose)
        assert payload == {"user_id": 7, "new_email": "n@example.com"}

    def test_expires_at_uses_purpose_ttl(self, token_service: PurposeTokenService) -> None:
        now = utcnow().replace(microsecond=0)
        verification = token_service.issue(Purpose.EMAIL_VERIFICATION, {"user_id": 1}, now=now)
        reset = token_service.issue(Purpose.PASSWORD_RESET, {"user_id": 1}, now=now)
        assert verification.expires_at - now == timedelta(hours=24)
        assert reset.expires_at - now == timedelta(hours=1)

    def test_every_token_is_distinct(self, token_service: PurposeTokenService) -> None:
        now = utcnow()
        a = token_service.issue(Purpose.PASSWORD_RESET, {"user_id": 1}, now=now)
        b = token_service.issue(Purpose.PASSWORD_RESET, {"user_id": 1}, now=now)
        assert a.token != b.token
        assert token_digest(a.token) != token_digest(b.token)

    def test_reserved_claim_rejected(self, token_service: PurposeTokenService) -> None:
        with pytest.raises(ValueError):
            token_service.issue(Purpose.PASSWORD_RESET, {"user_id": 1, "exp": 0})


class TestPurposeIsolation:
    @pytest.mark.parametrize(
        "issued_for,checked_as",
        [
            (Purpose.PASSWORD_RESET, Purpose.EMAIL_VERIFICATION),
            (Purpose.EMAIL_VERIFICATION, Purpose.PASSWORD_RESET),
            (Purpose.PASSWORD_CHANGE, Purpose.EMAIL_CHANGE),
        ],
    )
    def test_cross_purpose_is_bad_signature(
        self, token_service: PurposeTokenService, issued_for: Purpose, checked_as: Purpose
    ) -> None:
        issued = token_service.issue(issued_for, {"user_id": 1})
        with pytest.raises(TokenInvalid) as exc_info:
            token_service.verify(issued.token, checked_as)
        assert exc_info.value.failure is VerificationFailure.BAD_SIGNATURE

    def test_other_service_secret_rejected(self, token_service: PurposeTokenService) -> None:
        other = PurposeTokenService(
            SecretsConfig(default_token_secret="another-secret-0123456789abcdef0123456789")
        )
        issued = other.issue(Purpose.PASSWORD_RESET, {"user_id": 1})
        with pytest.raises(TokenInvalid) as exc_info:
            token_service.verify(issued.token, Purpose.PASSWORD_RESET)
        assert exc_info.value.failure is VerificationFailure.BAD_SIGNATURE

    def test_dedicated_purpose_secret(self) -> None:
        dedicated = "reset-only-secret-0123456789abcdef0123456789ab"
        service = PurposeTokenService(
            SecretsConfig(
                default_token_secret=TOKEN_SECRET,
                purpose_secrets={"password_reset": dedicated},
            )
        )
        issued = service.issue(Purpose.PASSWORD_RESET, {"user_id": 3})
        # signed with the dedicated secret directly
        claims = jwt.decode(
            issued.token, dedicated, algorithms=["HS256"], audience="password_reset"
        )
        assert claims["user_id"] == 3

    def test_missing_default_secret_rejected(self) -> None:
        with pytest.raises(ValueError):
            PurposeTokenService(SecretsConfig())


class TestExpiry:
    def test_reset_token_expired_after_61_minutes(
        self, token_service: PurposeTokenService
    ) -> None:
        issued = token_service.issue(
            Purpose.PASSWORD_RESET, {"user_id": 1}, now=utcnow() - timedelta(minutes=61)
        )
        with pytest.raises(TokenExpired) as exc_info:
            token_service.verify(issued.token, Purpose.PASSWORD_RESET)
        assert exc_info.value.failure is VerificationFailure.EXPIRED

    def test_verification_token_valid_after_23_hours(
        self, token_service: PurposeTokenService
    ) -> None:
        issued = token_service.issue(
            Purpose.EMAIL_VERIFICATION, {"user_id": 1}, now=utcnow() - timedelta(hours=23)
        )
        assert token_service.verify(issued.token, Purpose.EMAIL_VERIFICATION)["user_id"] == 1

    def test_configured_ttl(self) -> None:
        service = PurposeTokenService(
            SecretsConfig(default_token_secret=TOKEN_SECRET),
            TokenConfig(password_change_ttl_seconds=60),
        )
        issued = service.issue(
            Purpose.PASSWORD_CHANGE, {"user_id": 1}, now=utcnow() - timedelta(minutes=2)
        )
        with pytest.raises(TokenExpired):
            service.verify(issued.token, Purpose.PASSWORD_CHANGE)


class TestMalformed:
    @pytest.mark.parametrize("token", ["", "not-a-token", "a.b.c", "x" * 300])
    def test_malformed(self, token_service: PurposeTokenService, token: str) -> None:
        with pytest.raises(TokenInvalid) as exc_info:
            token_service.verify(token, Purpose.PASSWORD_RESET)
        assert exc_info.value.failure is VerificationFailure.MALFORMED

    def test_tampered_payload_is_bad_signature(self, token_service: PurposeTokenService) -> None:
        issued = token_service.issue(Purpose.PASSWORD_RESET, {"user_id": 1})
        header, payload, signature = issued.token.split(".")
        forged = jwt.encode(
            {"user_id": 2, "aud": "password_reset", "iat": 0, "exp": 4_102_444_800},
            "attacker-secret-0123456789abcdef0123456789",
            algorithm="HS256",
        ).split(".")[1]
        with pytest.raises(TokenInvalid) as exc_info:
            token_service.verify(f"{header}.{forged}.{signature}", Purpose.PASSWORD_RESET)
        assert exc_info.value.failure is VerificationFailure.BAD_SIGNATURE

"""Unit tests for credkeeper/auth/lifecycle.py — AccountLifecycle flows.

Tokens are read back out of the links RecordingChannel captured, the same
way a user would click them.
"""

from __future__ import annotations

import re
from datetime import timedelta
from urllib.parse import unquote

import bcrypt
import jwt
import pytest

from credkeeper.auth.lifecycle import AccountLifecycle, check_password, hash_password
from credkeeper.auth.purpose_tokens import PurposeTokenService
from credkeeper.errors import (
    AccountStateError,
    EmailNotVerified,
    InvalidCredential,
    NotFound,
    TokenAlreadyConsumed,
    TokenExpired,
    TokenInvalid,
)
from credkeeper.store.memory import InMemoryUserStore
from credkeeper.store.models import Purpose, utcnow
from tests.conftest import RecordingChannel

pytestmark = pytest.mark.asyncio

_TOKEN_RE = re.compile(r"[?&]token=([^&\s]+)")


def _token_from(message: dict) -> str:
    match = _TOKEN_RE.search(message["body"])
    assert match, f"no link in {message['subject']!r}"
    return unquote(match.group(1))


async def _registered(lifecycle: AccountLifecycle, verified: bool = True) -> int:
    """Register alice and, by default, open her verification link."""
    reg = await lifecycle.register("alice", "Alice@Example.com", "correct-horse")
    if verified:
        token = _token_from(lifecycle.notifier.last_to("alice@example.com"))
        await lifecycle.verify_email(reg.user.id, token)
    return reg.user.id


# ─── Passwords ────────────────────────────────────────────────────────────────


class TestPasswordHashing:
    async def test_hash_and_check(self) -> None:
        hashed = await hash_password("s3cret-pass", rounds=4)
        assert hashed.startswith("$2b$04$")
        assert await check_password("s3cret-pass", hashed) is True
        assert await check_password("wrong", hashed) is False

    async def test_malformed_hash_is_mismatch(self) -> None:
        assert await check_password("anything", "not-a-bcrypt-hash") is False


# ─── Registration / login ─────────────────────────────────────────────────────


class TestRegister:
    async def test_creates_unverified_user_with_primary_key(
        self, lifecycle: AccountLifecycle, channel: RecordingChannel
    ) -> None:
        reg = await lifecycle.register("alice", "Alice@Example.com", "correct-horse")

        assert reg.user.email == "alice@example.com"
        assert reg.user.is_verified is False
        assert reg.api_key.startswith("ck_")
        assert await lifecycle.keys.authenticate_key(reg.api_key) is not None

        mail = channel.last_to("alice@example.com")
        assert mail["subject"] == "Verify your account"
        assert f"userId={reg.user.id}" in mail["body"]

    async def test_session_is_short_lived(self, lifecycle: AccountLifecycle) -> None:
        reg = await lifecycle.register("alice", "alice@example.com", "correct-horse")
        claims = jwt.decode(reg.session_token, options={"verify_signature": False})
        assert claims["exp"] - claims["iat"] == lifecycle.session_config.unverified_ttl_seconds

    async def test_duplicate_username(self, lifecycle: AccountLifecycle) -> None:
        await lifecycle.register("alice", "alice@example.com", "correct-horse")
        with pytest.raises(AccountStateError, match="Username"):
            await lifecycle.register("alice", "other@example.com", "correct-horse")

    async def test_duplicate_email_case_insensitive(self, lifecycle: AccountLifecycle) -> None:
        await lifecycle.register("alice", "alice@example.com", "correct-horse")
        with pytest.raises(AccountStateError, match="Email"):
            await lifecycle.register("bob", "ALICE@example.com", "correct-horse")

    async def test_short_password(self, lifecycle: AccountLifecycle) -> None:
        with pytest.raises(AccountStateError, match="at least 8"):
            await lifecycle.register("alice", "alice@example.com", "short")

    async def test_mail_failure_does_not_block_registration(
        self,
        memory_store: InMemoryUserStore,
        key_manager,
        token_service: PurposeTokenService,
        sessions,
    ) -> None:
        failing = AccountLifecycle(
            memory_store, key_manager, token_service, sessions,
            RecordingChannel(fail=True), "http://frontend.test", bcrypt_rounds=4,
        )
        reg = await failing.register("alice", "alice@example.com", "correct-horse")
        assert await memory_store.get_token_fields(reg.user.id, Purpose.EMAIL_VERIFICATION)


class TestLogin:
    async def test_success(self, lifecycle: AccountLifecycle) -> None:
        uid = await _registered(lifecycle)
        grant = await lifecycle.login("alice", "correct-horse")
        assert grant.user_id == uid
        assert lifecycle.sessions.verify(grant.session_token).user_id == uid

    async def test_wrong_password(self, lifecycle: AccountLifecycle) -> None:
        await _registered(lifecycle)
        with pytest.raises(InvalidCredential):
            await lifecycle.login("alice", "wrong-password")

    async def test_unknown_user_same_error(self, lifecycle: AccountLifecycle) -> None:
        with pytest.raises(InvalidCredential) as exc_info:
            await lifecycle.login("nobody", "whatever-pass")
        assert exc_info.value.message == "Invalid username or password"

    async def test_unverified_refused(self, lifecycle: AccountLifecycle) -> None:
        await _registered(lifecycle, verified=False)
        with pytest.raises(EmailNotVerified):
            await lifecycle.login("alice", "correct-horse")


class TestAdminLogin:
    async def test_disabled_without_hash(self, lifecycle: AccountLifecycle) -> None:
        with pytest.raises(InvalidCredential):
            await lifecycle.admin_login("admin", "anything")

    async def test_success(self, lifecycle: AccountLifecycle) -> None:
        lifecycle.admin_config.password_hash = bcrypt.hashpw(
            b"admin-pass", bcrypt.gensalt(rounds=4)
        ).decode()
        grant = await lifecycle.admin_login("admin", "admin-pass")
        assert grant.is_admin is True
        assert lifecycle.sessions.verify(grant.session_token).is_admin is True

    async def test_wrong_username(self, lifecycle: AccountLifecycle) -> None:
        lifecycle.admin_config.password_hash = bcrypt.hashpw(
            b"admin-pass", bcrypt.gensalt(rounds=4)
        ).decode()
        with pytest.raises(InvalidCredential):
            await lifecycle.admin_login("root", "admin-pass")


# ─── Email verification ───────────────────────────────────────────────────────


class TestVerifyEmail:
    async def test_link_verifies_once(
        self, lifecycle: AccountLifecycle, channel: RecordingChannel
    ) -> None:
        reg = await lifecycle.register("alice", "alice@example.com", "correct-horse")
        token = _token_from(channel.last_to("alice@example.com"))

        grant = await lifecycle.verify_email(reg.user.id, token)
        assert grant.already_verified is False
        assert lifecycle.sessions.verify(grant.session_token).user_id == reg.user.id
        assert (await lifecycle.store.get_user(reg.user.id)).is_verified is True

        again = await lifecycle.verify_email(reg.user.id, token)
        assert again.already_verified is True
        assert again.session_token is None

    async def test_verified_account_with_bogus_token_gets_no_session(
        self, lifecycle: AccountLifecycle
    ) -> None:
        uid = await _registered(lifecycle)
        grant = await lifecycle.verify_email(uid, "garbage")
        assert grant.already_verified is True
        assert grant.session_token is None

    async def test_resend_supersedes_earlier_link(
        self, lifecycle: AccountLifecycle, channel: RecordingChannel
    ) -> None:
        reg = await lifecycle.register("alice", "alice@example.com", "correct-horse")
        first = _token_from(channel.last_to("alice@example.com"))
        await lifecycle.resend_verification(reg.user.id)
        second = _token_from(channel.last_to("alice@example.com"))

        with pytest.raises(TokenAlreadyConsumed):
            await lifecycle.verify_email(reg.user.id, first)
        await lifecycle.verify_email(reg.user.id, second)

    async def test_token_for_other_user_rejected(
        self, lifecycle: AccountLifecycle, channel: RecordingChannel
    ) -> None:
        alice = await lifecycle.register("alice", "alice@example.com", "correct-horse")
        bob = await lifecycle.register("bob", "bob@example.com", "correct-horse")
        alice_token = _token_from(channel.last_to("alice@example.com"))

        with pytest.raises(TokenInvalid):
            await lifecycle.verify_email(bob.user.id, alice_token)
        assert (await lifecycle.store.get_user(alice.user.id)).is_verified is False

    async def test_reset_token_not_accepted_for_verification(
        self, lifecycle: AccountLifecycle
    ) -> None:
        reg = await lifecycle.register("alice", "alice@example.com", "correct-horse")
        reset = lifecycle.tokens.issue(Purpose.PASSWORD_RESET, {"user_id": reg.user.id})
        with pytest.raises(TokenInvalid):
            await lifecycle.verify_email(reg.user.id, reset.token)

    async def test_resend_when_verified(self, lifecycle: AccountLifecycle) -> None:
        uid = await _registered(lifecycle)
        with pytest.raises(AccountStateError):
            await lifecycle.resend_verification(uid)

    async def test_unknown_user(self, lifecycle: AccountLifecycle) -> None:
        with pytest.raises(NotFound):
            await lifecycle.verify_email(404, "token")


# ─── Password reset ───────────────────────────────────────────────────────────


class TestPasswordReset:
    async def test_unknown_email_is_silent(
        self, lifecycle: AccountLifecycle, channel: RecordingChannel
    ) -> None:
        await lifecycle.forgot_password("nobody@example.com")
        assert channel.sent == []

    async def test_reset_flow(
        self, lifecycle: AccountLifecycle, channel: RecordingChannel
    ) -> None:
        uid = await _registered(lifecycle)
        await lifecycle.forgot_password("ALICE@example.com")
        mail = channel.last_to("alice@example.com")
        assert mail["subject"] == "Reset your password"
        token = _token_from(mail)

        await lifecycle.reset_password(uid, token, "new-password-1")
        assert (await lifecycle.login("alice", "new-password-1")).user_id == uid
        assert channel.last_to("alice@example.com")["subject"] == "Your password has been changed"

        with pytest.raises(TokenAlreadyConsumed):
            await lifecycle.reset_password(uid, token, "new-password-2")

    async def test_second_request_supersedes_first(
        self, lifecycle: AccountLifecycle, channel: RecordingChannel
    ) -> None:
        uid = await _registered(lifecycle)
        await lifecycle.forgot_password("alice@example.com")
        first = _token_from(channel.last_to("alice@example.com"))
        await lifecycle.forgot_password("alice@example.com")

        with pytest.raises(TokenAlreadyConsumed):
            await lifecycle.reset_password(uid, first, "new-password-1")

    async def test_expired_reset_token(self, lifecycle: AccountLifecycle) -> None:
        uid = await _registered(lifecycle)
        issued = lifecycle.tokens.issue(
            Purpose.PASSWORD_RESET, {"user_id": uid}, now=utcnow() - timedelta(minutes=61)
        )
        with pytest.raises(TokenExpired):
            await lifecycle.reset_password(uid, issued.token, "new-password-1")

    async def test_short_new_password(self, lifecycle: AccountLifecycle) -> None:
        uid = await _registered(lifecycle)
        with pytest.raises(AccountStateError):
            await lifecycle.reset_password(uid, "irrelevant", "short")


# ─── Password change ──────────────────────────────────────────────────────────


class TestPasswordChange:
    async def test_password_unchanged_until_confirmed(
        self, lifecycle: AccountLifecycle, channel: RecordingChannel
    ) -> None:
        uid = await _registered(lifecycle)
        await lifecycle.request_password_change(uid, "correct-horse", "battery-staple")
        assert (await lifecycle.login("alice", "correct-horse")).user_id == uid

        mail = channel.last_to("alice@example.com")
        assert mail["subject"] == "Confirm your password change"
        assert "battery-staple" not in mail["body"]

        await lifecycle.confirm_password_change(uid, _token_from(mail))
        assert (await lifecycle.login("alice", "battery-staple")).user_id == uid
        with pytest.raises(InvalidCredential):
            await lifecycle.login("alice", "correct-horse")

    async def test_wrong_current_password(self, lifecycle: AccountLifecycle) -> None:
        uid = await _registered(lifecycle)
        with pytest.raises(InvalidCredential):
            await lifecycle.request_password_change(uid, "wrong-pass", "battery-staple")

    async def test_confirm_twice(
        self, lifecycle: AccountLifecycle, channel: RecordingChannel
    ) -> None:
        uid = await _registered(lifecycle)
        await lifecycle.request_password_change(uid, "correct-horse", "battery-staple")
        token = _token_from(channel.last_to("alice@example.com"))
        await lifecycle.confirm_password_change(uid, token)
        with pytest.raises(TokenAlreadyConsumed):
            await lifecycle.confirm_password_change(uid, token)


# ─── Email change ─────────────────────────────────────────────────────────────


class TestEmailChange:
    async def test_flow_notifies_both_addresses(
        self, lifecycle: AccountLifecycle, channel: RecordingChannel
    ) -> None:
        uid = await _registered(lifecycle)
        await lifecycle.request_email_change(uid, "alice@example.com", "New@Example.com")
        mail = channel.last_to("new@example.com")
        assert mail["subject"] == "Verify your new email address"

        new_email = await lifecycle.confirm_email_change(uid, _token_from(mail))
        assert new_email == "new@example.com"
        assert (await lifecycle.store.get_user(uid)).email == "new@example.com"
        assert channel.last_to("alice@example.com")["subject"] == "Your email has been changed"
        assert channel.last_to("new@example.com")["subject"] == "Your email change is complete"

    async def test_wrong_current_email(self, lifecycle: AccountLifecycle) -> None:
        uid = await _registered(lifecycle)
        with pytest.raises(InvalidCredential):
            await lifecycle.request_email_change(uid, "wrong@example.com", "new@example.com")

    async def test_same_email(self, lifecycle: AccountLifecycle) -> None:
        uid = await _registered(lifecycle)
        with pytest.raises(AccountStateError):
            await lifecycle.request_email_change(uid, "alice@example.com", "alice@example.com")

    async def test_email_taken(self, lifecycle: AccountLifecycle) -> None:
        uid = await _registered(lifecycle)
        await lifecycle.store.create_user("bob", "bob@example.com", "h")
        with pytest.raises(AccountStateError):
            await lifecycle.request_email_change(uid, "alice@example.com", "bob@example.com")


# ─── API keys ─────────────────────────────────────────────────────────────────


class TestApiKeyFlows:
    async def test_rotate_unknown_user(self, lifecycle: AccountLifecycle) -> None:
        with pytest.raises(NotFound):
            await lifecycle.rotate_api_key(404, "primary")

    async def test_list_after_registration(self, lifecycle: AccountLifecycle) -> None:
        uid = await _registered(lifecycle)
        keys = await lifecycle.list_api_keys(uid)
        assert [k["slot"] for k in keys] == ["primary"]
        assert keys[0]["active"] is True


# ─── Account deletion ─────────────────────────────────────────────────────────


class TestDeleteAccount:
    async def test_removes_keys_and_pending_links(
        self, lifecycle: AccountLifecycle, channel: RecordingChannel
    ) -> None:
        uid = await _registered(lifecycle)
        api_key = await lifecycle.rotate_api_key(uid, "secondary")
        await lifecycle.forgot_password("alice@example.com")
        reset_token = _token_from(channel.last_to("alice@example.com"))

        await lifecycle.delete_account(uid, "correct-horse")

        assert await lifecycle.store.get_user(uid) is None
        assert await lifecycle.keys.authenticate_key(api_key) is None
        assert await lifecycle.store.get_token_fields(uid, Purpose.PASSWORD_RESET) is None
        with pytest.raises(NotFound):
            await lifecycle.reset_password(uid, reset_token, "new-password-1")
        assert channel.last_to("alice@example.com")["subject"] == "Your account has been deleted"

    async def test_wrong_password_keeps_account(self, lifecycle: AccountLifecycle) -> None:
        uid = await _registered(lifecycle)
        with pytest.raises(InvalidCredential):
            await lifecycle.delete_account(uid, "wrong-pass")
        assert await lifecycle.store.get_user(uid) is not None

    async def test_admin_delete(self, lifecycle: AccountLifecycle) -> None:
        uid = await _registered(lifecycle)
        await lifecycle.admin_delete_user(uid)
        assert await lifecycle.store.get_user(uid) is None
        with pytest.raises(NotFound):
            await lifecycle.admin_delete_user(uid)

    async def test_username_free_again(self, lifecycle: AccountLifecycle) -> None:
        uid = await _registered(lifecycle)
        await lifecycle.admin_delete_user(uid)
        reg = await lifecycle.register("alice", "alice@example.com", "correct-horse")
        assert reg.user.id != uid

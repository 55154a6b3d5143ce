"""Account lifecycle flows built on the credential components.

Each flow logs one structured security event. Flows that authorise a change
through a purpose token follow the same shape:

    payload = tokens.verify(token, purpose)          # signature + expiry
    payload user must equal the requesting user id   # else TokenInvalid
    store.consume_token_fields(...)                  # single-use, atomic with the change
        False → TokenAlreadyConsumed

Mail delivery failure is logged and never rolls back token issuance.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Optional

import bcrypt

from credkeeper.auth.keys import ApiKeyManager
from credkeeper.auth.purpose_tokens import PurposeTokenService, token_digest
from credkeeper.auth.session import SessionAuthenticator
from credkeeper.config import AdminConfig, SessionConfig
from credkeeper.constants import ADMIN_USER_ID, BCRYPT_ROUNDS, MIN_PASSWORD_LENGTH
from credkeeper.errors import (
    AccountStateError,
    EmailNotVerified,
    InvalidCredential,
    NotFound,
    TokenAlreadyConsumed,
    TokenInvalid,
    VerificationFailure,
)
from credkeeper.notify import messages
from credkeeper.notify.protocol import NotificationChannel
from credkeeper.store.models import Purpose, Slot, User, utcnow
from credkeeper.store.protocol import UserStore
from credkeeper.utils.logger import get_logger

logger = get_logger(__name__)


# ─── Password hashing ─────────────────────────────────────────────────────────


def _hash_password_sync(password: str, rounds: int) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode()


def _check_password_sync(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # malformed stored hash
        return False


async def hash_password(password: str, rounds: int = BCRYPT_ROUNDS) -> str:
    return await asyncio.to_thread(_hash_password_sync, password, rounds)


async def check_password(password: str, password_hash: str) -> bool:
    return await asyncio.to_thread(_check_password_sync, password, password_hash)


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _require_password_policy(password: str) -> None:
    if len(password) < MIN_PASSWORD_LENGTH:
        raise AccountStateError(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"
        )


# ─── Results ──────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Registration:
    user: User
    api_key: str
    """Primary API key plaintext, shown exactly once."""
    session_token: str


@dataclass(frozen=True)
class SessionGrant:
    user_id: int
    username: str
    session_token: Optional[str]
    is_admin: bool = False
    already_verified: bool = False


# ─── AccountLifecycle ─────────────────────────────────────────────────────────


class AccountLifecycle:
    """Registration, login and every token-authorised account change."""

    def __init__(
        self,
        store: UserStore,
        keys: ApiKeyManager,
        tokens: PurposeTokenService,
        sessions: SessionAuthenticator,
        notifier: NotificationChannel,
        base_url: str,
        bcrypt_rounds: int = BCRYPT_ROUNDS,
    ) -> None:
        self.store = store
        self.keys = keys
        self.tokens = tokens
        self.sessions = sessions
        self.notifier = notifier
        self.base_url = base_url
        self.bcrypt_rounds = bcrypt_rounds
        self._dummy_hash: Optional[str] = None

    @property
    def session_config(self) -> SessionConfig:
        return self.sessions.session_config

    @property
    def admin_config(self) -> AdminConfig:
        return self.sessions.admin_config

    # ── Helpers ───────────────────────────────────────────────────────────────

    async def _require_user(self, user_id: int) -> User:
        user = await self.store.get_user(user_id)
        if user is None:
            raise NotFound("User not found")
        return user

    async def _notify(self, to: str, subject: str, body: str, *, purpose: str) -> None:
        result = await self.notifier.send(to, subject, body)
        if not result.success:
            logger.warning("mail_not_delivered", purpose=purpose, error=result.error)

    async def _issue_purpose_token(
        self, user_id: int, purpose: Purpose, payload: dict[str, Any]
    ) -> str:
        """Issue a token and record it as the single outstanding one for (user, purpose)."""
        issued = self.tokens.issue(purpose, {"user_id": user_id, **payload})
        await self.store.set_token_fields(
            user_id, purpose, token_digest(issued.token), issued.expires_at
        )
        logger.info("purpose_token_issued", user_id=user_id, purpose=purpose.value)
        return issued.token

    def _verify_for_user(self, token: str, purpose: Purpose, user_id: int) -> dict[str, Any]:
        payload = self.tokens.verify(token, purpose)
        if payload.get("user_id") != user_id:
            logger.warning("purpose_token_user_mismatch", user_id=user_id, purpose=purpose.value)
            raise TokenInvalid(failure=VerificationFailure.BAD_SIGNATURE)
        return payload

    async def _consume(self, user_id: int, purpose: Purpose, token: str, **changes: Any) -> None:
        consumed = await self.store.consume_token_fields(
            user_id, purpose, token_digest(token), utcnow(), **changes
        )
        if not consumed:
            logger.info("purpose_token_rejected", user_id=user_id, purpose=purpose.value,
                        failure="consumed")
            raise TokenAlreadyConsumed()
        logger.info("purpose_token_consumed", user_id=user_id, purpose=purpose.value)

    async def _equalize_timing(self, password: str) -> None:
        # unknown usernames cost one bcrypt check, same as a wrong password
        if self._dummy_hash is None:
            self._dummy_hash = await hash_password("credkeeper-dummy", self.bcrypt_rounds)
        await check_password(password, self._dummy_hash)

    # ── Registration / login ──────────────────────────────────────────────────

    async def register(self, username: str, email: str, password: str) -> Registration:
        """Create an unverified account with a primary API key and a short session."""
        email = normalize_email(email)
        username = username.strip()
        _require_password_policy(password)
        if await self.store.get_user_by_username(username) is not None:
            raise AccountStateError("Username already exists")
        if await self.store.get_user_by_email(email) is not None:
            raise AccountStateError("Email already in use")

        password_hash = await hash_password(password, self.bcrypt_rounds)
        user = await self.store.create_user(username, email, password_hash)
        api_key = await self.keys.provision_primary(user.id)

        token = await self._issue_purpose_token(user.id, Purpose.EMAIL_VERIFICATION, {})
        subject, body = messages.verification_message(self.base_url, token, user.id)
        await self._notify(user.email, subject, body, purpose=Purpose.EMAIL_VERIFICATION.value)

        session_token = self.sessions.issue(
            user.id, user.username, ttl_seconds=self.session_config.unverified_ttl_seconds
        )
        logger.info("user_registered", user_id=user.id)
        return Registration(user=user, api_key=api_key, session_token=session_token)

    async def login(self, username: str, password: str) -> SessionGrant:
        """Raises InvalidCredential for unknown user and wrong password alike."""
        user = await self.store.get_user_by_username(username.strip())
        if user is None:
            await self._equalize_timing(password)
            logger.info("login_failed", reason="invalid_credential")
            raise InvalidCredential("Invalid username or password")
        if not await check_password(password, user.password_hash):
            logger.info("login_failed", user_id=user.id, reason="invalid_credential")
            raise InvalidCredential("Invalid username or password")
        if not user.is_verified:
            logger.info("login_failed", user_id=user.id, reason="email_not_verified")
            raise EmailNotVerified()

        token = self.sessions.issue(user.id, user.username)
        logger.info("login_succeeded", user_id=user.id)
        return SessionGrant(user_id=user.id, username=user.username, session_token=token)

    async def admin_login(self, username: str, password: str) -> SessionGrant:
        admin = self.admin_config
        if not admin.enabled or not admin.password_hash:
            logger.warning("admin_login_rejected", reason="admin_disabled")
            raise InvalidCredential("Invalid admin credentials")
        password_ok = await check_password(password, admin.password_hash)
        if username != admin.username or not password_ok:
            logger.warning("admin_login_rejected", reason="invalid_credential")
            raise InvalidCredential("Invalid admin credentials")

        token = self.sessions.issue(ADMIN_USER_ID, admin.username, is_admin=True)
        logger.info("admin_login_succeeded")
        return SessionGrant(
            user_id=ADMIN_USER_ID, username=admin.username, session_token=token, is_admin=True
        )

    # ── Email verification ────────────────────────────────────────────────────

    async def resend_verification(self, user_id: int) -> None:
        """Issue a fresh verification token; any earlier one stops working."""
        user = await self._require_user(user_id)
        if user.is_verified:
            raise AccountStateError("Email already verified")
        token = await self._issue_purpose_token(user.id, Purpose.EMAIL_VERIFICATION, {})
        subject, body = messages.verification_message(self.base_url, token, user.id)
        await self._notify(user.email, subject, body, purpose=Purpose.EMAIL_VERIFICATION.value)

    async def verify_email(self, user_id: int, token: str) -> SessionGrant:
        """Mark the email verified and grant a full-length session.

        An already-verified account succeeds without consuming anything and
        without a session: session_token is None, because the link was not
        checked and proves nothing about the caller.
        """
        user = await self._require_user(user_id)
        if user.is_verified:
            logger.info("email_verification_repeated", user_id=user_id)
            return SessionGrant(
                user_id=user.id,
                username=user.username,
                session_token=None,
                already_verified=True,
            )

        self._verify_for_user(token, Purpose.EMAIL_VERIFICATION, user_id)
        await self._consume(user_id, Purpose.EMAIL_VERIFICATION, token, mark_verified=True)
        logger.info("email_verified", user_id=user_id)
        return SessionGrant(
            user_id=user.id,
            username=user.username,
            session_token=self.sessions.issue(user.id, user.username),
        )

    # ── Password reset ────────────────────────────────────────────────────────

    async def forgot_password(self, email: str) -> None:
        """Send a reset link when the email is registered. Silent either way."""
        user = await self.store.get_user_by_email(normalize_email(email))
        if user is None:
            logger.info("password_reset_requested", known_account=False)
            return
        token = await self._issue_purpose_token(user.id, Purpose.PASSWORD_RESET, {})
        subject, body = messages.password_reset_message(self.base_url, token, user.id)
        await self._notify(user.email, subject, body, purpose=Purpose.PASSWORD_RESET.value)
        logger.info("password_reset_requested", known_account=True, user_id=user.id)

    async def reset_password(self, user_id: int, token: str, new_password: str) -> None:
        _require_password_policy(new_password)
        user = await self._require_user(user_id)
        self._verify_for_user(token, Purpose.PASSWORD_RESET, user_id)
        new_hash = await hash_password(new_password, self.bcrypt_rounds)
        await self._consume(user_id, Purpose.PASSWORD_RESET, token, password_hash=new_hash)
        subject, body = messages.password_changed_message()
        await self._notify(user.email, subject, body, purpose="password_changed")
        logger.info("password_reset_completed", user_id=user_id)

    # ── Password change ───────────────────────────────────────────────────────

    async def request_password_change(
        self, user_id: int, current_password: str, new_password: str
    ) -> None:
        """Mail a confirmation link; the password changes only once it is opened.

        The token carries the bcrypt hash of the pending password, never the plaintext.
        """
        user = await self._require_user(user_id)
        if not await check_password(current_password, user.password_hash):
            logger.info("password_change_rejected", user_id=user_id, reason="invalid_credential")
            raise InvalidCredential("Current password is incorrect")
        _require_password_policy(new_password)

        pending_hash = await hash_password(new_password, self.bcrypt_rounds)
        token = await self._issue_purpose_token(
            user.id, Purpose.PASSWORD_CHANGE, {"pending_password_hash": pending_hash}
        )
        subject, body = messages.password_change_verification_message(
            self.base_url, token, user.id
        )
        await self._notify(user.email, subject, body, purpose=Purpose.PASSWORD_CHANGE.value)
        logger.info("password_change_requested", user_id=user_id)

    async def confirm_password_change(self, user_id: int, token: str) -> None:
        user = await self._require_user(user_id)
        payload = self._verify_for_user(token, Purpose.PASSWORD_CHANGE, user_id)
        pending_hash = payload.get("pending_password_hash")
        if not isinstance(pending_hash, str):
            raise TokenInvalid(failure=VerificationFailure.MALFORMED)
        await self._consume(user_id, Purpose.PASSWORD_CHANGE, token, password_hash=pending_hash)
        subject, body = messages.password_changed_message()
        await self._notify(user.email, subject, body, purpose="password_changed")
        logger.info("password_change_completed", user_id=user_id)

    # ── Email change ──────────────────────────────────────────────────────────

    async def request_email_change(
        self, user_id: int, current_email: str, new_email: str
    ) -> None:
        """Mail a confirmation link to the new address."""
        user = await self._require_user(user_id)
        new_email = normalize_email(new_email)
        if normalize_email(current_email) != user.email:
            logger.info("email_change_rejected", user_id=user_id, reason="invalid_credential")
            raise InvalidCredential("Current email does not match your account")
        if new_email == user.email:
            raise AccountStateError("New email is the same as the current email")
        if await self.store.get_user_by_email(new_email) is not None:
            raise AccountStateError("Email already in use by another account")

        token = await self._issue_purpose_token(
            user.id, Purpose.EMAIL_CHANGE, {"new_email": new_email}
        )
        subject, body = messages.email_change_verification_message(self.base_url, token, user.id)
        await self._notify(new_email, subject, body, purpose=Purpose.EMAIL_CHANGE.value)
        logger.info("email_change_requested", user_id=user_id)

    async def confirm_email_change(self, user_id: int, token: str) -> str:
        """Apply the pending email. Returns the new address."""
        user = await self._require_user(user_id)
        payload = self._verify_for_user(token, Purpose.EMAIL_CHANGE, user_id)
        new_email = payload.get("new_email")
        if not isinstance(new_email, str) or not new_email:
            raise TokenInvalid(failure=VerificationFailure.MALFORMED)
        await self._consume(user_id, Purpose.EMAIL_CHANGE, token, email=new_email)
        for recipient, (subject, body) in messages.email_changed_messages(
            user.email, new_email
        ).items():
            await self._notify(recipient, subject, body, purpose="email_changed")
        logger.info("email_change_completed", user_id=user_id)
        return new_email

    # ── API keys ──────────────────────────────────────────────────────────────

    async def rotate_api_key(self, user_id: int, slot: Slot) -> str:
        await self._require_user(user_id)
        return await self.keys.rotate(user_id, slot)

    async def toggle_api_key(self, user_id: int, slot: Slot) -> bool:
        await self._require_user(user_id)
        return await self.keys.toggle(user_id, slot)

    async def delete_api_key(self, user_id: int, slot: Slot) -> bool:
        await self._require_user(user_id)
        return await self.keys.delete(user_id, slot)

    async def list_api_keys(self, user_id: int) -> list[dict]:
        await self._require_user(user_id)
        return await self.keys.list_keys(user_id)

    # ── Account deletion ──────────────────────────────────────────────────────

    async def delete_account(self, user_id: int, password: str) -> None:
        """Delete the caller's own account after re-checking the password."""
        user = await self._require_user(user_id)
        if not await check_password(password, user.password_hash):
            logger.info("account_deletion_rejected", user_id=user_id, reason="invalid_credential")
            raise InvalidCredential("Password is incorrect")
        await self._delete_user(user, actor="owner")

    async def admin_delete_user(self, user_id: int) -> None:
        user = await self._require_user(user_id)
        await self._delete_user(user, actor="admin")

    async def _delete_user(self, user: User, *, actor: str) -> None:
        # the store drops both key slots and every outstanding side record with the user
        if not await self.store.delete_user(user.id):
            raise NotFound("User not found")
        subject, body = messages.account_deleted_message()
        await self._notify(user.email, subject, body, purpose="account_deleted")
        logger.info("account_deleted", user_id=user.id, actor=actor)

"""Message templates for account lifecycle mail.

Each builder returns (subject, body). Links point at the frontend base URL
and carry the token and user id as query parameters, e.g.

    {base_url}/verify-email?token=<token>&userId=<id>
"""

from __future__ import annotations

from urllib.parse import urlencode

from credkeeper.store.models import Purpose

# Frontend route per purpose
_PURPOSE_PATHS: dict[Purpose, str] = {
    Purpose.EMAIL_VERIFICATION: "/verify-email",
    Purpose.PASSWORD_RESET: "/reset-password",
    Purpose.PASSWORD_CHANGE: "/verify-password-change",
    Purpose.EMAIL_CHANGE: "/verify-email-change",
}


def link_for(base_url: str, purpose: Purpose, token: str, user_id: int) -> str:
    query = urlencode({"token": token, "userId": user_id})
    return f"{base_url.rstrip('/')}{_PURPOSE_PATHS[Purpose(purpose)]}?{query}"


def verification_message(base_url: str, token: str, user_id: int) -> tuple[str, str]:
    url = link_for(base_url, Purpose.EMAIL_VERIFICATION, token, user_id)
    body = (
        "Thank you for registering. Please verify your email address by opening the link below:\n\n"
        f"{url}\n\n"
        "This verification link will expire in 24 hours.\n"
        "If you didn't create an account, you can safely ignore this email."
    )
    return "Verify your account", body


def password_reset_message(base_url: str, token: str, user_id: int) -> tuple[str, str]:
    url = link_for(base_url, Purpose.PASSWORD_RESET, token, user_id)
    body = (
        "We received a request to reset your password. To choose a new password, open:\n\n"
        f"{url}\n\n"
        "This link will expire in 1 hour.\n"
        "If you didn't request a password reset, you can safely ignore this email."
    )
    return "Reset your password", body


def password_change_verification_message(
    base_url: str, token: str, user_id: int
) -> tuple[str, str]:
    url = link_for(base_url, Purpose.PASSWORD_CHANGE, token, user_id)
    body = (
        "A password change was requested for your account. To confirm it, open:\n\n"
        f"{url}\n\n"
        "This link will expire in 1 hour. Your password stays unchanged until you confirm.\n"
        "If you didn't request this change, secure your account immediately."
    )
    return "Confirm your password change", body


def password_changed_message() -> tuple[str, str]:
    body = (
        "Your password has been changed.\n"
        "If you didn't make this change, reset your password immediately."
    )
    return "Your password has been changed", body


def email_change_verification_message(
    base_url: str, token: str, user_id: int
) -> tuple[str, str]:
    url = link_for(base_url, Purpose.EMAIL_CHANGE, token, user_id)
    body = (
        "Please confirm this address as the new email for your account by opening:\n\n"
        f"{url}\n\n"
        "This link will expire in 1 hour."
    )
    return "Verify your new email address", body


def email_changed_messages(old_email: str, new_email: str) -> dict[str, tuple[str, str]]:
    """Confirmation sent to both the previous and the new address, keyed by recipient."""
    return {
        old_email: (
            "Your email has been changed",
            f"The email address of your account was changed to {new_email}.\n"
            "If you didn't make this change, contact support immediately.",
        ),
        new_email: (
            "Your email change is complete",
            "This address is now the email for your account.",
        ),
    }


def account_deleted_message() -> tuple[str, str]:
    body = (
        "Your account has been deleted. Its API keys and any pending links no longer work.\n"
        "If you didn't request this, contact support immediately."
    )
    return "Your account has been deleted", body

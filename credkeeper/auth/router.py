"""credkeeper HTTP endpoints, mounted at /auth.

Provides:
  GET    /auth/csrf-token                 — CSRF token (body + XSRF-TOKEN cookie)
  POST   /auth/register                   — create account, primary API key shown once
  POST   /auth/login                      — session cookie + token
  POST   /auth/logout                     — clear session cookie, forget CSRF token
  POST   /auth/admin/login                — admin session
  GET    /auth/verify-email               — consume email verification link
  POST   /auth/resend-verification        — new verification link
  POST   /auth/forgot-password            — reset link (never reveals whether the email exists)
  POST   /auth/reset-password             — consume reset link
  POST   /auth/change-password            — mail a password change confirmation link
  GET    /auth/verify-password-change     — consume password change link
  POST   /auth/change-email               — mail an email change link to the new address
  GET    /auth/verify-email-change        — consume email change link
  DELETE /auth/delete-account             — delete own account (password required)
  GET    /auth/api-keys                   — masked keys
  POST   /auth/api-keys/{slot}/rotate     — regenerate a slot (5 minute cooldown)
  POST   /auth/api-keys/{slot}/toggle     — activate/deactivate a slot
  DELETE /auth/api-keys/{slot}            — clear a slot
  DELETE /auth/admin/users/{id}           — delete any account (admin)
  GET    /auth/admin/users/{id}/api-keys  — masked keys of any user (admin)
  POST   /auth/admin/users/{id}/api-keys/{slot}/toggle — (admin)
  DELETE /auth/admin/users/{id}/api-keys/{slot}        — (admin)
  GET    /auth/session                    — whether the caller has a session
  GET    /auth/admin-check                — whether the caller is the admin
  GET    /auth/whoami-key                 — owner of the presented API key (X-API-Key)

Every state-changing endpoint depends on csrf_protect. Plaintext API keys are
returned only by register and rotate, once.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from pydantic import BaseModel, Field

from credkeeper.auth.lifecycle import AccountLifecycle
from credkeeper.auth.limiter import CREDENTIAL_RATE_LIMIT, KEY_MANAGEMENT_RATE_LIMIT, limiter
from credkeeper.auth.middleware import (
    csrf_client_id,
    csrf_protect,
    get_csrf_store,
    get_lifecycle,
    optional_session,
    require_admin,
    require_api_key,
    require_session,
)
from credkeeper.auth.session import Identity
from credkeeper.config import Config
from credkeeper.constants import CSRF_CLIENT_COOKIE_NAME
from credkeeper.store.models import ApiKeyRecord
from credkeeper.utils.logger import get_logger
from credkeeper.utils.ulid import generate_ulid

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


# ─── Request Models ───────────────────────────────────────────────────────────


class RegisterRequest(BaseModel):
    username: str = Field(min_length=3, max_length=64, pattern=r"^[A-Za-z0-9_.-]+$")
    email: str = Field(min_length=3, max_length=254, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    password: str = Field(min_length=1, max_length=256)


class LoginRequest(BaseModel):
    username: str = Field(min_length=1, max_length=64)
    password: str = Field(min_length=1, max_length=256)


class ForgotPasswordRequest(BaseModel):
    email: str = Field(min_length=3, max_length=254)


class ResetPasswordRequest(BaseModel):
    user_id: int
    token: str = Field(min_length=1)
    password: str = Field(min_length=1, max_length=256)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=256)
    new_password: str = Field(min_length=1, max_length=256)


class ChangeEmailRequest(BaseModel):
    current_email: str = Field(min_length=3, max_length=254)
    new_email: str = Field(min_length=3, max_length=254, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class DeleteAccountRequest(BaseModel):
    password: str = Field(min_length=1, max_length=256)


# ─── Cookie helpers ───────────────────────────────────────────────────────────


def _config(request: Request) -> Config:
    return request.app.state.config


def _set_session_cookie(request: Request, response: Response, token: str, max_age: int) -> None:
    session = _config(request).session
    response.set_cookie(
        key=session.cookie_name,
        value=token,
        max_age=max_age,
        httponly=True,
        secure=session.cookie_secure,
        samesite=session.cookie_samesite,
        path="/",
    )


def _clear_session_cookie(request: Request, response: Response) -> None:
    session = _config(request).session
    response.delete_cookie(
        key=session.cookie_name,
        path="/",
        httponly=True,
        secure=session.cookie_secure,
        samesite=session.cookie_samesite,
    )


def _user_view(user_id: int, username: str, **extra: object) -> dict:
    return {"id": user_id, "username": username, **extra}


# ─── CSRF ─────────────────────────────────────────────────────────────────────


@router.get("/csrf-token")
async def csrf_token(
    request: Request,
    response: Response,
    identity: Optional[Identity] = Depends(optional_session),
) -> dict:
    """Return the caller's CSRF token and mirror it in the XSRF-TOKEN cookie.

    The cookie is readable by JavaScript so single-page apps can echo it in
    the X-XSRF-Token header. Callers without a session also get an httponly
    csrf_client cookie naming their own pre-auth token.
    """
    config = _config(request)
    if identity is not None:
        token = get_csrf_store(request).token_for(identity.session_id)
    else:
        client_id = csrf_client_id(request) or generate_ulid()
        token = get_csrf_store(request).token_for(None, client_id=client_id)
        response.set_cookie(
            key=CSRF_CLIENT_COOKIE_NAME,
            value=client_id,
            max_age=config.csrf.ttl_seconds,
            httponly=True,
            secure=config.session.cookie_secure,
            samesite=config.session.cookie_samesite,
            path="/",
        )
    response.set_cookie(
        key=config.csrf.cookie_name,
        value=token,
        max_age=config.csrf.ttl_seconds,
        httponly=False,
        secure=config.session.cookie_secure,
        samesite=config.session.cookie_samesite,
        path="/",
    )
    return {"csrfToken": token}


# ─── Registration / login ─────────────────────────────────────────────────────


@router.post("/register", status_code=201, dependencies=[Depends(csrf_protect)])
@limiter.limit(CREDENTIAL_RATE_LIMIT)
async def register(
    body: RegisterRequest,
    request: Request,
    response: Response,
    lifecycle: AccountLifecycle = Depends(get_lifecycle),
) -> dict:
    """Create an unverified account.

    Returns the primary API key ONCE and a short-lived session (cookie + body).
    """
    result = await lifecycle.register(body.username, body.email, body.password)
    _set_session_cookie(
        request, response, result.session_token,
        _config(request).session.unverified_ttl_seconds,
    )
    return {
        "message": (
            "User registered successfully. Please check your email to verify your account."
        ),
        "user": _user_view(
            result.user.id, result.user.username,
            email=result.user.email, is_verified=result.user.is_verified,
        ),
        "api_key": result.api_key,
        "token": result.session_token,
    }


@router.post("/login", dependencies=[Depends(csrf_protect)])
@limiter.limit(CREDENTIAL_RATE_LIMIT)
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    lifecycle: AccountLifecycle = Depends(get_lifecycle),
) -> dict:
    grant = await lifecycle.login(body.username, body.password)
    _set_session_cookie(request, response, grant.session_token, _config(request).session.ttl_seconds)
    return {
        "message": "Login successful!",
        "user": _user_view(grant.user_id, grant.username),
        "token": grant.session_token,
    }


@router.post("/admin/login", dependencies=[Depends(csrf_protect)])
@limiter.limit(CREDENTIAL_RATE_LIMIT)
async def admin_login(
    body: LoginRequest,
    request: Request,
    response: Response,
    lifecycle: AccountLifecycle = Depends(get_lifecycle),
) -> dict:
    grant = await lifecycle.admin_login(body.username, body.password)
    _set_session_cookie(request, response, grant.session_token, _config(request).session.ttl_seconds)
    return {
        "message": "Admin login successful",
        "user": _user_view(grant.user_id, grant.username, is_admin=True),
        "token": grant.session_token,
    }


@router.post("/logout", dependencies=[Depends(csrf_protect)])
async def logout(
    request: Request,
    response: Response,
    identity: Optional[Identity] = Depends(optional_session),
) -> dict:
    """Clear the session cookie. Safe to call without a session."""
    if identity is not None:
        get_csrf_store(request).revoke(identity.session_id)
        logger.info("logout", user_id=identity.user_id)
    _clear_session_cookie(request, response)
    return {"message": "Logged out successfully"}


# ─── Email verification ───────────────────────────────────────────────────────


@router.get("/verify-email")
async def verify_email(
    request: Request,
    response: Response,
    token: str = Query(..., min_length=1),
    user_id: int = Query(..., alias="userId"),
    lifecycle: AccountLifecycle = Depends(get_lifecycle),
) -> dict:
    """Consume the verification link and start a session.

    An already-verified account gets a success message but no session: the
    link no longer proves anything once it has been used.
    """
    grant = await lifecycle.verify_email(user_id, token)
    if grant.already_verified:
        return {
            "message": "Your email is already verified. You can now login.",
            "token": None,
            "verified": True,
        }
    _set_session_cookie(request, response, grant.session_token, _config(request).session.ttl_seconds)
    return {
        "message": "Email verification successful! You can now login.",
        "token": grant.session_token,
        "verified": True,
    }


@router.post("/resend-verification", dependencies=[Depends(csrf_protect)])
@limiter.limit(CREDENTIAL_RATE_LIMIT)
async def resend_verification(
    request: Request,
    identity: Identity = Depends(require_session),
    lifecycle: AccountLifecycle = Depends(get_lifecycle),
) -> dict:
    await lifecycle.resend_verification(identity.user_id)
    return {"message": "Verification email resent successfully"}


# ─── Password reset / change ──────────────────────────────────────────────────


@router.post("/forgot-password", dependencies=[Depends(csrf_protect)])
@limiter.limit(CREDENTIAL_RATE_LIMIT)
async def forgot_password(
    body: ForgotPasswordRequest,
    request: Request,
    lifecycle: AccountLifecycle = Depends(get_lifecycle),
) -> dict:
    await lifecycle.forgot_password(body.email)
    return {
        "message": "If your email is registered, you'll receive a password reset link shortly"
    }


@router.post("/reset-password", dependencies=[Depends(csrf_protect)])
@limiter.limit(CREDENTIAL_RATE_LIMIT)
async def reset_password(
    body: ResetPasswordRequest,
    request: Request,
    lifecycle: AccountLifecycle = Depends(get_lifecycle),
) -> dict:
    await lifecycle.reset_password(body.user_id, body.token, body.password)
    return {"message": "Password reset successful. You can now log in with your new password."}


@router.post("/change-password", dependencies=[Depends(csrf_protect)])
@limiter.limit(CREDENTIAL_RATE_LIMIT)
async def change_password(
    body: ChangePasswordRequest,
    request: Request,
    identity: Identity = Depends(require_session),
    lifecycle: AccountLifecycle = Depends(get_lifecycle),
) -> dict:
    await lifecycle.request_password_change(
        identity.user_id, body.current_password, body.new_password
    )
    return {"message": "Password change verification sent to your email"}


@router.get("/verify-password-change")
async def verify_password_change(
    request: Request,
    response: Response,
    token: str = Query(..., min_length=1),
    user_id: int = Query(..., alias="userId"),
    lifecycle: AccountLifecycle = Depends(get_lifecycle),
) -> dict:
    await lifecycle.confirm_password_change(user_id, token)
    _clear_session_cookie(request, response)
    return {
        "message": "Password changed successfully. Please log in with your new password.",
    }


# ─── Email change ─────────────────────────────────────────────────────────────


@router.post("/change-email", dependencies=[Depends(csrf_protect)])
async def change_email(
    body: ChangeEmailRequest,
    request: Request,
    identity: Identity = Depends(require_session),
    lifecycle: AccountLifecycle = Depends(get_lifecycle),
) -> dict:
    await lifecycle.request_email_change(identity.user_id, body.current_email, body.new_email)
    return {"message": "Email change verification sent to your new email address"}


@router.get("/verify-email-change")
async def verify_email_change(
    request: Request,
    response: Response,
    token: str = Query(..., min_length=1),
    user_id: int = Query(..., alias="userId"),
    lifecycle: AccountLifecycle = Depends(get_lifecycle),
) -> dict:
    new_email = await lifecycle.confirm_email_change(user_id, token)
    _clear_session_cookie(request, response)
    return {
        "message": "Email changed successfully. Please log in with your new email.",
        "email": new_email,
    }


# ─── Account deletion ─────────────────────────────────────────────────────────


@router.delete("/delete-account", dependencies=[Depends(csrf_protect)])
@limiter.limit(CREDENTIAL_RATE_LIMIT)
async def delete_account(
    body: DeleteAccountRequest,
    request: Request,
    response: Response,
    identity: Identity = Depends(require_session),
    lifecycle: AccountLifecycle = Depends(get_lifecycle),
) -> dict:
    """Delete the caller's account, its API keys and its pending links.

    Requires the current password. The session cookie is cleared and the
    CSRF token forgotten.
    """
    await lifecycle.delete_account(identity.user_id, body.password)
    get_csrf_store(request).revoke(identity.session_id)
    _clear_session_cookie(request, response)
    return {"message": "User deleted successfully"}


# ─── API keys ─────────────────────────────────────────────────────────────────


@router.get("/api-keys")
@limiter.limit(KEY_MANAGEMENT_RATE_LIMIT)
async def list_api_keys(
    request: Request,
    identity: Identity = Depends(require_session),
    lifecycle: AccountLifecycle = Depends(get_lifecycle),
) -> dict:
    """Masked keys for the caller. The plaintext is NEVER returned here."""
    return {"keys": await lifecycle.list_api_keys(identity.user_id)}


@router.post("/api-keys/{slot}/rotate", dependencies=[Depends(csrf_protect)])
@limiter.limit(KEY_MANAGEMENT_RATE_LIMIT)
async def rotate_api_key(
    slot: str,
    request: Request,
    identity: Identity = Depends(require_session),
    lifecycle: AccountLifecycle = Depends(get_lifecycle),
) -> dict:
    """Regenerate the slot's key. Returns the new plaintext ONCE.

    Raises:
        429: the slot was regenerated less than the cooldown window ago
             (Retry-After header set).
    """
    value = await lifecycle.rotate_api_key(identity.user_id, slot)
    return {
        "message": f"New {slot} API Key generated successfully",
        "slot": slot,
        "api_key": value,
        "masked_key": f"ck_...{value[-4:]}",
    }


@router.post("/api-keys/{slot}/toggle", dependencies=[Depends(csrf_protect)])
@limiter.limit(KEY_MANAGEMENT_RATE_LIMIT)
async def toggle_api_key(
    slot: str,
    request: Request,
    identity: Identity = Depends(require_session),
    lifecycle: AccountLifecycle = Depends(get_lifecycle),
) -> dict:
    active = await lifecycle.toggle_api_key(identity.user_id, slot)
    return {
        "message": f"API key {'activated' if active else 'deactivated'} successfully",
        "slot": slot,
        "active": active,
    }


@router.delete("/api-keys/{slot}", dependencies=[Depends(csrf_protect)])
@limiter.limit(KEY_MANAGEMENT_RATE_LIMIT)
async def delete_api_key(
    slot: str,
    request: Request,
    identity: Identity = Depends(require_session),
    lifecycle: AccountLifecycle = Depends(get_lifecycle),
) -> dict:
    deleted = await lifecycle.delete_api_key(identity.user_id, slot)
    return {"message": "API Key deleted successfully", "slot": slot, "deleted": deleted}


# ─── Admin ────────────────────────────────────────────────────────────────────


@router.delete("/admin/users/{user_id}", dependencies=[Depends(csrf_protect)])
@limiter.limit(KEY_MANAGEMENT_RATE_LIMIT)
async def admin_delete_user(
    user_id: int,
    request: Request,
    admin: Identity = Depends(require_admin),
    lifecycle: AccountLifecycle = Depends(get_lifecycle),
) -> dict:
    await lifecycle.admin_delete_user(user_id)
    get_csrf_store(request).revoke(str(user_id))
    return {"message": "User deleted successfully", "user_id": user_id}


@router.get("/admin/users/{user_id}/api-keys")
@limiter.limit(KEY_MANAGEMENT_RATE_LIMIT)
async def admin_list_api_keys(
    user_id: int,
    request: Request,
    admin: Identity = Depends(require_admin),
    lifecycle: AccountLifecycle = Depends(get_lifecycle),
) -> dict:
    return {"user_id": user_id, "keys": await lifecycle.list_api_keys(user_id)}


@router.post("/admin/users/{user_id}/api-keys/{slot}/toggle", dependencies=[Depends(csrf_protect)])
@limiter.limit(KEY_MANAGEMENT_RATE_LIMIT)
async def admin_toggle_api_key(
    user_id: int,
    slot: str,
    request: Request,
    admin: Identity = Depends(require_admin),
    lifecycle: AccountLifecycle = Depends(get_lifecycle),
) -> dict:
    active = await lifecycle.toggle_api_key(user_id, slot)
    logger.info("admin_api_key_toggled", target_user_id=user_id, slot=slot, active=active)
    return {
        "message": f"API key {'activated' if active else 'deactivated'} successfully",
        "user_id": user_id,
        "slot": slot,
        "active": active,
    }


@router.delete("/admin/users/{user_id}/api-keys/{slot}", dependencies=[Depends(csrf_protect)])
@limiter.limit(KEY_MANAGEMENT_RATE_LIMIT)
async def admin_delete_api_key(
    user_id: int,
    slot: str,
    request: Request,
    admin: Identity = Depends(require_admin),
    lifecycle: AccountLifecycle = Depends(get_lifecycle),
) -> dict:
    deleted = await lifecycle.delete_api_key(user_id, slot)
    logger.info("admin_api_key_deleted", target_user_id=user_id, slot=slot, deleted=deleted)
    return {
        "message": "API Key deleted successfully",
        "user_id": user_id,
        "slot": slot,
        "deleted": deleted,
    }


# ─── Status ───────────────────────────────────────────────────────────────────


@router.get("/session")
async def check_session(identity: Optional[Identity] = Depends(optional_session)) -> dict:
    if identity is None:
        return {"authenticated": False}
    return {
        "authenticated": True,
        "user": _user_view(identity.user_id, identity.username, is_admin=identity.is_admin),
    }


@router.get("/admin-check")
async def check_admin(identity: Optional[Identity] = Depends(optional_session)) -> dict:
    return {"isAdmin": bool(identity is not None and identity.is_admin)}


@router.get("/whoami-key")
async def whoami_key(record: ApiKeyRecord = Depends(require_api_key)) -> dict:
    return {"user_id": record.user_id, "slot": record.slot}

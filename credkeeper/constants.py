"""Shared constants for credkeeper.

All lifetimes, windows and entropy sizes used across modules are defined here.
No magic numbers in other modules — import from here. Config values in
credkeeper/config.py default to these constants.
"""

# ─── API keys ─────────────────────────────────────────────────────────────────

# Random bytes per API key. 20 bytes = 160 bits of entropy (hex-encoded → 40 chars).
API_KEY_BYTES: int = 20

# Printable prefix so keys are recognisable in logs and secret scanners.
API_KEY_PREFIX: str = "ck_"

# Minimum interval between two regenerations of the same (user, slot).
API_KEY_COOLDOWN_SECONDS: int = 300  # 5 minutes

# The two independent key slots every user has.
API_KEY_SLOTS: tuple[str, ...] = ("primary", "secondary")

# ─── Purpose tokens ───────────────────────────────────────────────────────────

EMAIL_VERIFICATION_TTL_SECONDS: int = 24 * 3600
PASSWORD_RESET_TTL_SECONDS: int = 3600
PASSWORD_CHANGE_TTL_SECONDS: int = 3600
EMAIL_CHANGE_TTL_SECONDS: int = 3600

PURPOSE_TOKEN_ALGORITHM: str = "HS256"

# ─── Sessions ─────────────────────────────────────────────────────────────────

SESSION_TTL_SECONDS: int = 3600
# Registrants get a short session until they verify their email.
UNVERIFIED_SESSION_TTL_SECONDS: int = 900
SESSION_AUDIENCE: str = "session"
SESSION_COOKIE_NAME: str = "auth_token"

# Fixed identity every valid admin token resolves to.
ADMIN_USER_ID: int = 0

# ─── CSRF ─────────────────────────────────────────────────────────────────────

CSRF_TOKEN_BYTES: int = 32
CSRF_TOKEN_TTL_SECONDS: int = 3600
CSRF_SWEEP_INTERVAL_SECONDS: int = 3600
CSRF_COOKIE_NAME: str = "XSRF-TOKEN"

# Fallback session keys for tokens minted before the caller has an identity.
CSRF_ANONYMOUS_SESSION: str = "anonymous"
CSRF_GLOBAL_SESSION: str = "global"

# Per-client pre-auth tokens: the csrf_client cookie names the client, and its
# token is stored under "preauth:<client id>" until a session adopts it.
CSRF_CLIENT_COOKIE_NAME: str = "csrf_client"
CSRF_PREAUTH_PREFIX: str = "preauth:"
CSRF_CLIENT_ID_MAX_LENGTH: int = 64

# Methods with no side effects are exempt from CSRF validation.
CSRF_SAFE_METHODS: frozenset[str] = frozenset({"GET", "HEAD", "OPTIONS", "TRACE"})

# ─── Passwords ────────────────────────────────────────────────────────────────

BCRYPT_ROUNDS: int = 12
MIN_PASSWORD_LENGTH: int = 8

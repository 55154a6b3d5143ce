"""Shared rate limiter for credkeeper credential endpoints.

Uses slowapi (Starlette-compatible rate limiting) keyed by remote address.
Independent of the per-slot API key cooldown: this caps guessing against
login, registration and the password reset endpoints.

The Limiter instance is created here and shared between:
  - credkeeper/auth/router.py  (route decorators)
  - credkeeper/main.py         (app.state.limiter + RateLimitExceeded handler)
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

# Module-level limiter, imported by main.py and auth/router.py
limiter = Limiter(key_func=get_remote_address)

# Login, registration, forgot/reset password, admin login
CREDENTIAL_RATE_LIMIT = "10/minute"

# Key listing, rotation, toggling and deletion
KEY_MANAGEMENT_RATE_LIMIT = "20/minute"

"""ULID generation utility for credkeeper.

Provides ``generate_ulid()`` for:
  - X-Request-ID header value (assigned to every inbound request)
  - jti claim of purpose tokens
  - csrf_client cookie value naming a pre-auth CSRF client
  - request_id correlation key in structured log entries

Uses the ``python-ulid`` library — do NOT hand-roll ULID generation.
"""

from __future__ import annotations

from ulid import ULID


def generate_ulid() -> str:
    """Generate a new ULID as a 26-character uppercase string.

    Returns:
        str: Crockford Base32 ULID, e.g. ``"01KJ0JRVHYA7KX32VPN5ZSCTMV"``.
    """
    return str(ULID())

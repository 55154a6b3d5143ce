"""credkeeper — credential and token lifecycle manager.

Issues, validates, rotates and invalidates session tokens, purpose-scoped
one-time tokens, per-user API keys and CSRF tokens.
"""

__version__ = "1.0.0"

"""Config loading for credkeeper.

Reads `.credkeeper/config.yaml` (or `~/.credkeeper/config.yaml`).
Raises SystemExit on parse errors or missing `version` field.
If no config file is found, returns default values (safe to run without config).

Config search order:
  1. `config_path` argument (if provided — for testing or explicit override)
  2. CREDKEEPER_CONFIG environment variable (if set)
  3. `.credkeeper/config.yaml` (working directory — for development)
  4. `~/.credkeeper/config.yaml` (home directory — for production deployments)

Environment variable overrides (applied after file parsing):
  CREDKEEPER_PORT                — server.port
  CREDKEEPER_SESSION_SECRET      — secrets.session_secret
  CREDKEEPER_TOKEN_SECRET        — secrets.default_token_secret
  CREDKEEPER_ADMIN_PASSWORD_HASH — admin.password_hash (bcrypt)
  CREDKEEPER_DB_PATH             — store.path

Secrets left empty after overrides are replaced with ephemeral random values
and a warning is logged: every session and purpose token becomes invalid on
restart.
"""

from __future__ import annotations

import os
import secrets
import sys
from dataclasses import dataclass, field
from typing import Optional

import yaml

from credkeeper.constants import (
    API_KEY_COOLDOWN_SECONDS,
    BCRYPT_ROUNDS,
    CSRF_COOKIE_NAME,
    CSRF_SWEEP_INTERVAL_SECONDS,
    CSRF_TOKEN_TTL_SECONDS,
    EMAIL_CHANGE_TTL_SECONDS,
    EMAIL_VERIFICATION_TTL_SECONDS,
    PASSWORD_CHANGE_TTL_SECONDS,
    PASSWORD_RESET_TTL_SECONDS,
    SESSION_COOKIE_NAME,
    SESSION_TTL_SECONDS,
    UNVERIFIED_SESSION_TTL_SECONDS,
)
from credkeeper.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Version constants ────────────────────────────────────────────────────────

SUPPORTED_CONFIG_VERSION = 1
SUPPORTED_VERSIONS: frozenset[int] = frozenset({1})

# ─── Validation sets ─────────────────────────────────────────────────────────

VALID_STORE_BACKENDS: frozenset[str] = frozenset({"sqlite", "memory"})
VALID_SAMESITE: frozenset[str] = frozenset({"lax", "strict", "none"})
VALID_PURPOSES: frozenset[str] = frozenset(
    {"email_verification", "password_reset", "password_change", "email_change"}
)

DEFAULT_CONFIG_PATHS = [
    ".credkeeper/config.yaml",
    os.path.expanduser("~/.credkeeper/config.yaml"),
]


# ─── Dataclasses ─────────────────────────────────────────────────────────────


@dataclass
class ServerConfig:
    """HTTP binding configuration."""

    host: str = "127.0.0.1"
    port: int = 5000


@dataclass
class SecretsConfig:
    """Signing secrets.

    session_secret:       HMAC key for session tokens.
    default_token_secret: shared fallback for purpose tokens; a per-purpose key
                          is derived from it for every purpose without a
                          dedicated entry in purpose_secrets.
    purpose_secrets:      optional dedicated secret per purpose name.
    """

    session_secret: str = ""
    default_token_secret: str = ""
    purpose_secrets: dict[str, str] = field(default_factory=dict)


@dataclass
class SessionConfig:
    cookie_name: str = SESSION_COOKIE_NAME
    ttl_seconds: int = SESSION_TTL_SECONDS
    unverified_ttl_seconds: int = UNVERIFIED_SESSION_TTL_SECONDS
    cookie_secure: bool = False
    cookie_samesite: str = "lax"


@dataclass
class ApiKeyConfig:
    cooldown_seconds: int = API_KEY_COOLDOWN_SECONDS


@dataclass
class CsrfConfig:
    """CSRF token store configuration.

    bind_preauth_on_use: when True, a token accepted through the
    anonymous/global fallback is re-bound to the session that presented it
    and removed from the fallback keys.
    """

    ttl_seconds: int = CSRF_TOKEN_TTL_SECONDS
    sweep_interval_seconds: int = CSRF_SWEEP_INTERVAL_SECONDS
    cookie_name: str = CSRF_COOKIE_NAME
    bind_preauth_on_use: bool = True


@dataclass
class TokenConfig:
    """Purpose-token lifetimes, in seconds."""

    email_verification_ttl_seconds: int = EMAIL_VERIFICATION_TTL_SECONDS
    password_reset_ttl_seconds: int = PASSWORD_RESET_TTL_SECONDS
    password_change_ttl_seconds: int = PASSWORD_CHANGE_TTL_SECONDS
    email_change_ttl_seconds: int = EMAIL_CHANGE_TTL_SECONDS

    def ttl_for(self, purpose: str) -> int:
        return int(getattr(self, f"{purpose}_ttl_seconds"))


@dataclass
class AdminConfig:
    """Administrative principal. Admin login is disabled while password_hash is empty."""

    enabled: bool = True
    username: str = "admin"
    password_hash: str = ""


@dataclass
class PasswordConfig:
    """bcrypt cost factor. Valid range 4..31; lower it only in tests."""

    bcrypt_rounds: int = BCRYPT_ROUNDS


@dataclass
class StoreConfig:
    backend: str = "sqlite"  # "sqlite" | "memory"
    path: str = "~/.credkeeper/credkeeper.db"


@dataclass
class MailConfig:
    """Outbound notification channel.

    base_url:    frontend origin used to build verification/reset links.
    webhook_url: when set, mail is POSTed there as JSON; otherwise mail is logged.
    """

    base_url: str = "http://localhost:3000"
    sender: str = "no-reply@credkeeper.local"
    webhook_url: Optional[str] = None
    timeout_seconds: float = 5.0


@dataclass
class Config:
    """Root configuration object populated from .credkeeper/config.yaml.

    All fields have safe defaults — credkeeper can start without any config file.
    """

    version: int = SUPPORTED_CONFIG_VERSION
    server: ServerConfig = field(default_factory=ServerConfig)
    secrets: SecretsConfig = field(default_factory=SecretsConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    api_keys: ApiKeyConfig = field(default_factory=ApiKeyConfig)
    csrf: CsrfConfig = field(default_factory=CsrfConfig)
    tokens: TokenConfig = field(default_factory=TokenConfig)
    admin: AdminConfig = field(default_factory=AdminConfig)
    passwords: PasswordConfig = field(default_factory=PasswordConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    mail: MailConfig = field(default_factory=MailConfig)
    path: Optional[str] = None

    @classmethod
    def defaults(cls) -> "Config":
        """Return a fully-default Config (no file required)."""
        return cls()

    @classmethod
    def from_dict(cls, raw: dict, path: Optional[str] = None) -> "Config":
        """Construct Config from a parsed YAML dict.

        Merges user-supplied values onto defaults; unknown keys are silently ignored.

        Raises:
            SystemExit(1): On invalid store.backend, session.cookie_samesite or
                           an unknown purpose name under secrets.purpose_secrets.
        """
        # ── Store ─────────────────────────────────────────────────────────────
        store_raw = raw.get("store") or {}
        backend = store_raw.get("backend", "sqlite")
        if backend not in VALID_STORE_BACKENDS:
            _fail(
                f"CONFIG ERROR: Invalid store.backend: '{backend}'. "
                f"Supported values: {sorted(VALID_STORE_BACKENDS)}."
            )
        store = StoreConfig(
            backend=backend,
            path=store_raw.get("path", StoreConfig.path),
        )

        # ── Secrets ───────────────────────────────────────────────────────────
        secrets_raw = raw.get("secrets") or {}
        purpose_secrets = dict(secrets_raw.get("purpose_secrets") or {})
        unknown = set(purpose_secrets) - VALID_PURPOSES
        if unknown:
            _fail(
                f"CONFIG ERROR: Unknown purpose(s) in secrets.purpose_secrets: "
                f"{sorted(unknown)}. Supported values: {sorted(VALID_PURPOSES)}."
            )
        secrets_cfg = SecretsConfig(
            session_secret=secrets_raw.get("session_secret", ""),
            default_token_secret=secrets_raw.get("default_token_secret", ""),
            purpose_secrets=purpose_secrets,
        )

        # ── Session ───────────────────────────────────────────────────────────
        session_raw = raw.get("session") or {}
        samesite = str(session_raw.get("cookie_samesite", "lax")).lower()
        if samesite not in VALID_SAMESITE:
            _fail(
                f"CONFIG ERROR: Invalid session.cookie_samesite: '{samesite}'. "
                f"Supported values: {sorted(VALID_SAMESITE)}."
            )
        session = SessionConfig(
            cookie_name=session_raw.get("cookie_name", SESSION_COOKIE_NAME),
            ttl_seconds=session_raw.get("ttl_seconds", SESSION_TTL_SECONDS),
            unverified_ttl_seconds=session_raw.get(
                "unverified_ttl_seconds", UNVERIFIED_SESSION_TTL_SECONDS
            ),
            cookie_secure=session_raw.get("cookie_secure", False),
            cookie_samesite=samesite,
        )

        # ── API keys / CSRF / tokens ──────────────────────────────────────────
        keys_raw = raw.get("api_keys") or {}
        api_keys = ApiKeyConfig(
            cooldown_seconds=keys_raw.get("cooldown_seconds", API_KEY_COOLDOWN_SECONDS),
        )

        csrf_raw = raw.get("csrf") or {}
        csrf = CsrfConfig(
            ttl_seconds=csrf_raw.get("ttl_seconds", CSRF_TOKEN_TTL_SECONDS),
            sweep_interval_seconds=csrf_raw.get(
                "sweep_interval_seconds", CSRF_SWEEP_INTERVAL_SECONDS
            ),
            cookie_name=csrf_raw.get("cookie_name", CSRF_COOKIE_NAME),
            bind_preauth_on_use=csrf_raw.get("bind_preauth_on_use", True),
        )

        tokens_raw = raw.get("tokens") or {}
        tokens = TokenConfig(
            email_verification_ttl_seconds=tokens_raw.get(
                "email_verification_ttl_seconds", EMAIL_VERIFICATION_TTL_SECONDS
            ),
            password_reset_ttl_seconds=tokens_raw.get(
                "password_reset_ttl_seconds", PASSWORD_RESET_TTL_SECONDS
            ),
            password_change_ttl_seconds=tokens_raw.get(
                "password_change_ttl_seconds", PASSWORD_CHANGE_TTL_SECONDS
            ),
            email_change_ttl_seconds=tokens_raw.get(
                "email_change_ttl_seconds", EMAIL_CHANGE_TTL_SECONDS
            ),
        )

        passwords_raw = raw.get("passwords") or {}
        rounds = passwords_raw.get("bcrypt_rounds", BCRYPT_ROUNDS)
        if not isinstance(rounds, int) or not 4 <= rounds <= 31:
            _fail(
                f"CONFIG ERROR: Invalid passwords.bcrypt_rounds: '{rounds}'. "
                "Must be an integer between 4 and 31."
            )
        passwords = PasswordConfig(bcrypt_rounds=rounds)

        # ── Admin / mail / server ─────────────────────────────────────────────
        admin_raw = raw.get("admin") or {}
        admin = AdminConfig(
            enabled=admin_raw.get("enabled", True),
            username=admin_raw.get("username", "admin"),
            password_hash=admin_raw.get("password_hash", ""),
        )

        mail_raw = raw.get("mail") or {}
        mail = MailConfig(
            base_url=str(mail_raw.get("base_url", MailConfig.base_url)).rstrip("/"),
            sender=mail_raw.get("sender", MailConfig.sender),
            webhook_url=mail_raw.get("webhook_url"),
            timeout_seconds=float(mail_raw.get("timeout_seconds", 5.0)),
        )

        server_raw = raw.get("server") or {}
        server = ServerConfig(
            host=server_raw.get("host", "127.0.0.1"),
            port=server_raw.get("port", 5000),
        )

        return cls(
            version=raw.get("version", SUPPORTED_CONFIG_VERSION),
            server=server,
            secrets=secrets_cfg,
            session=session,
            api_keys=api_keys,
            csrf=csrf,
            tokens=tokens,
            admin=admin,
            store=store,
            mail=mail,
            passwords=passwords,
            path=path,
        )


def _fail(msg: str) -> None:
    print(msg, file=sys.stderr)
    raise SystemExit(1)


# ─── Config loading ───────────────────────────────────────────────────────────


def load_config(config_path: Optional[str] = None) -> Config:
    """Load and validate credkeeper configuration.

    If no file is found at any search path, returns default Config (not an error).
    If a file is found but invalid, writes error to stderr and raises SystemExit(1).

    Environment overrides and ephemeral-secret generation are applied in both
    cases, so the returned Config always has non-empty signing secrets.

    Raises:
        SystemExit(1): On YAML parse error, missing ``version`` field, unsupported
                       version, invalid section values, or invalid ``CREDKEEPER_PORT``.
    """
    search_paths: list[str] = []
    if config_path:
        search_paths.append(config_path)
    env_config = os.environ.get("CREDKEEPER_CONFIG")
    if env_config:
        search_paths.append(env_config)
    search_paths.extend(DEFAULT_CONFIG_PATHS)

    found_path: Optional[str] = None
    for candidate in search_paths:
        expanded = os.path.expanduser(candidate)
        if os.path.isfile(expanded):
            found_path = expanded
            break

    # ── No config file found ─────────────────────────────────────────────────
    if found_path is None:
        logger.info("No config file found — using defaults", searched=search_paths)
        config = Config.defaults()
        _apply_env_overrides(config)
        _ensure_secrets(config)
        return config

    # ── Parse config file ─────────────────────────────────────────────────────
    logger.info("Loading config", path=found_path)

    try:
        with open(found_path) as fh:
            raw = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        _fail(
            f"CONFIG ERROR: Failed to parse {found_path}: {exc}\n"
            "credkeeper refuses to start with an invalid config. "
            "Check the YAML syntax and try again."
        )
    except OSError as exc:
        _fail(f"CONFIG ERROR: Could not read {found_path}: {exc}")

    if not isinstance(raw, dict):
        if raw is None:
            _fail(
                f"CONFIG ERROR: {found_path} is missing the required 'version' field.\n"
                "Add 'version: 1' to the top of your config file."
            )
        _fail(
            f"CONFIG ERROR: {found_path} is not a valid YAML mapping.\n"
            "The config file must be a YAML dictionary at the top level."
        )

    # ── Version validation ────────────────────────────────────────────────────
    version = raw.get("version")
    if version is None:
        _fail(
            f"CONFIG ERROR: {found_path} is missing the required 'version' field.\n"
            "Add 'version: 1' to the top of your config file."
        )
    if version not in SUPPORTED_VERSIONS:
        _fail(
            f"CONFIG ERROR: Unsupported config version: {version}. "
            f"Supported versions: {sorted(SUPPORTED_VERSIONS)}."
        )

    config = Config.from_dict(raw, path=found_path)
    _apply_env_overrides(config)
    _ensure_secrets(config)

    # ── Security warnings ─────────────────────────────────────────────────────
    if config.server.host == "0.0.0.0":
        logger.warning(
            "SECURITY WARNING: credkeeper is configured to bind on 0.0.0.0 (all interfaces). "
            "Put it behind a TLS-terminating proxy and set session.cookie_secure: true."
        )
    if config.session.cookie_samesite == "none" and not config.session.cookie_secure:
        logger.warning(
            "session.cookie_samesite 'none' without cookie_secure — browsers will reject the cookie"
        )

    logger.info(
        "Config loaded",
        path=found_path,
        version=config.version,
        store_backend=config.store.backend,
    )
    return config


def _apply_env_overrides(config: Config) -> None:
    """Apply environment variable overrides to a Config object in-place.

    Raises:
        SystemExit(1): If CREDKEEPER_PORT is set but not a valid integer.
    """
    env_port = os.environ.get("CREDKEEPER_PORT")
    if env_port is not None:
        try:
            config.server.port = int(env_port)
        except ValueError:
            _fail(
                f"CONFIG ERROR: CREDKEEPER_PORT environment variable is not a valid "
                f"integer: '{env_port}'"
            )

    session_secret = os.environ.get("CREDKEEPER_SESSION_SECRET")
    if session_secret:
        config.secrets.session_secret = session_secret

    token_secret = os.environ.get("CREDKEEPER_TOKEN_SECRET")
    if token_secret:
        config.secrets.default_token_secret = token_secret

    admin_hash = os.environ.get("CREDKEEPER_ADMIN_PASSWORD_HASH")
    if admin_hash:
        config.admin.password_hash = admin_hash

    db_path = os.environ.get("CREDKEEPER_DB_PATH")
    if db_path:
        config.store.path = db_path


def _ensure_secrets(config: Config) -> None:
    """Replace empty signing secrets with ephemeral random ones (logged as a warning)."""
    if not config.secrets.session_secret:
        config.secrets.session_secret = secrets.token_urlsafe(48)
        logger.warning(
            "No session secret configured — using an ephemeral secret. "
            "All sessions are invalidated on restart. Set CREDKEEPER_SESSION_SECRET."
        )
    if not config.secrets.default_token_secret:
        config.secrets.default_token_secret = secrets.token_urlsafe(48)
        logger.warning(
            "No token secret configured — using an ephemeral secret. "
            "Outstanding verification/reset links break on restart. "
            "Set CREDKEEPER_TOKEN_SECRET."
        )

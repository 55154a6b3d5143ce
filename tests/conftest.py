"""Root test configuration for credkeeper.

Clears every CREDKEEPER_* environment variable so a developer's shell never
leaks into config loading, and resets the slowapi limiter between tests.

Shared fixtures build credential components with fixed secrets and
bcrypt_rounds=4 so password hashing stays fast.
"""

import os

import pytest

from credkeeper.auth.csrf import CsrfTokenStore
from credkeeper.auth.keys import ApiKeyManager, CooldownTracker
from credkeeper.auth.lifecycle import AccountLifecycle
from credkeeper.auth.purpose_tokens import PurposeTokenService
from credkeeper.auth.session import SessionAuthenticator
from credkeeper.config import Config
from credkeeper.notify.protocol import DeliveryResult
from credkeeper.store.memory import InMemoryUserStore

SESSION_SECRET = "test-session-secret-0123456789abcdef0123456789abcdef"
TOKEN_SECRET = "test-token-secret-0123456789abcdef0123456789abcdef"


class FakeClock:
    """Monotonic clock the test advances by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingChannel:
    """NotificationChannel that keeps every message in memory."""

    def __init__(self, fail: bool = False) -> None:
        self.sent: list[dict] = []
        self.fail = fail
        self.closed = False

    async def send(self, to: str, subject: str, body: str) -> DeliveryResult:
        self.sent.append({"to": to, "subject": subject, "body": body})
        if self.fail:
            return DeliveryResult(success=False, error="relay down")
        return DeliveryResult(success=True)

    async def close(self) -> None:
        self.closed = True

    def last_to(self, address: str) -> dict:
        return [m for m in self.sent if m["to"] == address][-1]


@pytest.fixture(autouse=True)
def clean_credkeeper_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove CREDKEEPER_* variables inherited from the shell."""
    for name in list(os.environ):
        if name.startswith("CREDKEEPER_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def reset_rate_limiter() -> None:
    """Reset the in-memory rate limiter storage between tests.

    Prevents test-to-test rate limit bleed where multiple tests hitting the
    same endpoint within the same minute would trigger a 429.
    """
    from credkeeper.auth.limiter import limiter

    limiter.reset()


@pytest.fixture
def test_config() -> Config:
    config = Config.defaults()
    config.secrets.session_secret = SESSION_SECRET
    config.secrets.default_token_secret = TOKEN_SECRET
    config.store.backend = "memory"
    config.passwords.bcrypt_rounds = 4
    config.mail.base_url = "http://frontend.test"
    return config


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_store() -> InMemoryUserStore:
    return InMemoryUserStore()


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def token_service(test_config: Config) -> PurposeTokenService:
    return PurposeTokenService(test_config.secrets, test_config.tokens)


@pytest.fixture
def sessions(test_config: Config) -> SessionAuthenticator:
    return SessionAuthenticator(SESSION_SECRET, test_config.session, test_config.admin)


@pytest.fixture
def csrf_store(clock: FakeClock) -> CsrfTokenStore:
    return CsrfTokenStore(ttl_seconds=3600, clock=clock)


@pytest.fixture
def key_manager(memory_store: InMemoryUserStore, clock: FakeClock) -> ApiKeyManager:
    return ApiKeyManager(memory_store, CooldownTracker(window_seconds=300, clock=clock))


@pytest.fixture
def lifecycle(
    memory_store: InMemoryUserStore,
    key_manager: ApiKeyManager,
    token_service: PurposeTokenService,
    sessions: SessionAuthenticator,
    channel: RecordingChannel,
) -> AccountLifecycle:
    return AccountLifecycle(
        store=memory_store,
        keys=key_manager,
        tokens=token_service,
        sessions=sessions,
        notifier=channel,
        base_url="http://frontend.test",
        bcrypt_rounds=4,
    )

import asyncio
import inspect
import os
import sys
from datetime import datetime, timezone
from pathlib import Path

# Configure the environment before any imports that read settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "8192")
os.environ.setdefault("ARGON2_PARALLELISM", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from travelauth.config import Settings  # noqa: E402
from travelauth.service.auth import AuthService  # noqa: E402
from travelauth.service.email_verification import EmailVerificationManager  # noqa: E402
from travelauth.service.notifications import LoggingNotificationSender  # noqa: E402
from travelauth.service.password_reset import PasswordResetManager  # noqa: E402
from travelauth.service.passwords import CredentialVerifier  # noqa: E402
from travelauth.service.rate_limit import RateLimiter  # noqa: E402
from travelauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from travelauth.service.sessions import SessionStore  # noqa: E402
from travelauth.service.tokens import TokenService  # noqa: E402
from travelauth.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class FakeClock:
    """Controllable clock shared by the limiter, token service and stores."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def time(self) -> float:
        return self.now

    def datetime(self) -> datetime:
        return datetime.fromtimestamp(self.now, tz=timezone.utc)

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_settings(**overrides) -> Settings:
    values = dict(
        jwt_secret=TEST_SECRET,
        argon2_time_cost=1,
        argon2_memory_cost=8192,
        argon2_parallelism=1,
        test_mode=True,
        use_memory_store=True,
    )
    values.update(overrides)
    return Settings(**values)


def build_auth_service(settings: Settings, clock: FakeClock, store: MemoryStore = None):
    store = store or MemoryStore()
    notifier = LoggingNotificationSender(settings.app_base_url)
    service = AuthService(
        users=store,
        sessions=SessionStore(store, settings, clock=clock.datetime),
        rate_limiter=RateLimiter.from_settings(store, settings, clock=clock.time),
        tokens=TokenService(settings, clock=clock.time),
        reset_tokens=PasswordResetManager(store, settings, clock=clock.datetime),
        email_verifications=EmailVerificationManager(store, settings, clock=clock.datetime),
        notifier=notifier,
        verifier=CredentialVerifier(settings),
        settings=settings,
    )
    return service, store, notifier


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def settings_factory():
    """Build Settings with test defaults plus overrides."""
    return make_settings


@pytest.fixture
def service_factory(clock):
    """Build an AuthService over a MemoryStore, sharing the test clock.

    Returns ``(service, store, notifier)``.
    """

    def factory(settings: Settings = None, store: MemoryStore = None):
        return build_auth_service(settings or make_settings(), clock, store)

    return factory


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")

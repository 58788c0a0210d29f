import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Set before any import that might build settings or the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="warden_test_")
os.environ.setdefault("WARDEN_STATE_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Keep argon2 cheap; production parameters make the suite crawl
os.environ.setdefault("ARGON2_MEMORY_COST_KIB", "1024")
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from warden.clock import FrozenClock  # noqa: E402
from warden.config import Settings  # noqa: E402
from warden.service.auth import AuthService  # noqa: E402
from warden.service.runtime import reset_runtime_for_tests  # noqa: E402
from warden.storage.memory import MemoryStore  # noqa: E402
from warden.storage.models import SYSTEM_ACTOR  # noqa: E402

STRONG_PASSWORD = "Correct-Horse-Battery-9"


class RecordingNotifier:
    """Collects outbound messages instead of sending them."""

    def __init__(self, *, fail: bool = False):
        self.fail = fail
        self.sent = []

    def _record(self, kind, to_email, value):
        self.sent.append((kind, to_email, value))
        return not self.fail

    def send_mfa_code(self, to_email, code):
        return self._record("mfa_code", to_email, code)

    def send_password_reset(self, to_email, token):
        return self._record("password_reset", to_email, token)

    def send_email_verification(self, to_email, token):
        return self._record("email_verification", to_email, token)

    def send_registration_link(self, to_email, token):
        return self._record("registration", to_email, token)

    def last(self, kind):
        matches = [value for sent_kind, _, value in self.sent if sent_kind == kind]
        return matches[-1] if matches else None


class FakeCache:
    """In-memory stand-in for RedisCache with the same coroutine surface."""

    def __init__(self, *, allow: bool = True):
        self.allow = allow
        self.denylisted = {}
        self.rate_calls = []

    async def check_rate_limit(self, key, limit, window_seconds):
        self.rate_calls.append((key, limit, window_seconds))
        return self.allow

    async def denylist_access_token(self, jti, ttl):
        self.denylisted[jti] = ttl

    async def is_access_token_denylisted(self, jti):
        return jti in self.denylisted

    async def close(self):
        return None


def create_user(auth, email="alice@example.com", username="alice", password=STRONG_PASSWORD):
    """Active user with a password credential."""
    user = auth.store.create_user(
        email, username=username, now=auth.clock.now(), actor=SYSTEM_ACTOR
    )
    auth.credentials.create(user.id, auth.passwords.hash(password), actor=SYSTEM_ACTOR)
    return user


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        test_mode=True,
        use_memory_store=True,
        argon2_memory_cost_kib=1024,
        argon2_time_cost=1,
    )


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def auth(store, settings, clock, notifier):
    return AuthService(store, None, settings, clock=clock, notifier=notifier)


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

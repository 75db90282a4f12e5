import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="tokenward_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("TOKEN_STORE_BACKEND", "memory")
os.environ.setdefault("REAPER_ENABLED", "false")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_LEVEL", "WARNING")
# Redis-backed tests use a dedicated database and skip when nothing is listening
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tokenward.config import Settings  # noqa: E402
from tokenward.service.audit import RecordingAuditSink  # noqa: E402
from tokenward.service.codec import ClaimCodec  # noqa: E402
from tokenward.service.runtime import reset_runtime_for_tests  # noqa: E402
from tokenward.service.tokens import TokenManager  # noqa: E402
from tokenward.storage.memory import MemoryTokenStore, MemoryUserDirectory  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    """Settings with a small session cap and a generous identity timeout."""
    return Settings(
        jwt_secret=TEST_SECRET,
        max_sessions_per_user=3,
        identity_timeout_ms=2000,
        store_timeout_ms=500,
    )


@pytest.fixture
def store():
    return MemoryTokenStore(shard_count=4, lock_timeout=0.5)


@pytest.fixture
def codec(settings):
    return ClaimCodec.from_settings(settings)


@pytest.fixture
def users():
    return MemoryUserDirectory()


@pytest.fixture
def audit():
    return RecordingAuditSink()


@pytest.fixture
def manager(store, codec, users, settings, audit):
    return TokenManager(store, codec, users, settings, audit=audit)


@pytest.fixture
def user(users):
    return users.create_user("u1", email="u1@example.com")


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

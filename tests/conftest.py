import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Environment must be in place before tonotes modules read it
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tonotes.app import create_app  # noqa: E402
from tonotes.config import Settings  # noqa: E402
from tonotes.service.passwords import PasswordHasher  # noqa: E402
from tonotes.service.runtime import Runtime  # noqa: E402
from tonotes.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class FrozenClock:
    """Controllable UTC clock shared by services under test."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def timestamp(self) -> float:
        return self.now.timestamp()

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def settings():
    """Test settings with no Redis and the in-memory store."""
    return Settings(
        jwt_secret_key=TEST_SECRET,
        test_mode=True,
        use_memory_store=True,
        redis_url=None,
    )


@pytest.fixture
def hasher():
    """Argon2id with minimal cost so tests stay fast."""
    return PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1)


@pytest.fixture
def memory_store(settings):
    return MemoryStore(secret_key=settings.secret_encryption_key)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def runtime(settings, memory_store, hasher):
    return Runtime(settings, store=memory_store, cache=None, hasher=hasher)


@pytest.fixture
def client(runtime):
    """HTTPS base URL so Secure cookies round-trip."""
    return TestClient(create_app(runtime), base_url="https://testserver")


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

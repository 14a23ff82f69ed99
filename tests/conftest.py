import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Configure before any imports that might initialize the runtime
os.environ["USE_MEMORY_STORE"] = "true"
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("OAUTH_GITHUB_CLIENT_ID", "test-github-client")
os.environ.setdefault("OAUTH_GITHUB_CLIENT_SECRET", "test-github-secret")
os.environ.setdefault("OAUTH_GOOGLE_CLIENT_ID", "test-google-client")
os.environ.setdefault("OAUTH_GOOGLE_CLIENT_SECRET", "test-google-secret")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from kvauth.config import Settings  # noqa: E402
from kvauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from kvauth.service.sessions import SessionStore  # noqa: E402
from kvauth.service.users import UserDirectory  # noqa: E402
from kvauth.storage.memory import MemoryKeyValueStore  # noqa: E402


class FakeClock:
    """Shared, adjustable "now" for the directory and session store."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(use_memory_store=True, production=False)


@pytest.fixture
def users_store():
    return MemoryKeyValueStore("users")


@pytest.fixture
def sessions_store():
    return MemoryKeyValueStore("sessions")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def directory(users_store, clock):
    users = UserDirectory(users_store)
    users._now = clock
    return users


@pytest.fixture
def session_store(sessions_store, directory, settings, clock):
    sessions = SessionStore(sessions_store, directory, settings)
    sessions._now = clock
    return sessions


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

import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that read settings
_test_tmp_dir = tempfile.mkdtemp(prefix="gatehouse_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault(
    "ACCESS_TOKEN_SECRET", "test-access-secret-for-testing-only-do-not-use-in-production"
)
os.environ.setdefault(
    "REFRESH_TOKEN_SECRET", "test-refresh-secret-for-testing-only-do-not-use-in-production"
)
# No Redis in unit tests; the runtime falls back to the in-process cache
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("COOKIE_SECURE", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from gatehouse.config import Settings, reset_settings_cache  # noqa: E402
from gatehouse.service.clock import ManualClock  # noqa: E402
from gatehouse.service.events import EventBus  # noqa: E402
from gatehouse.service.runtime import Runtime  # noqa: E402
from gatehouse.service.tokens import TokenService  # noqa: E402
from gatehouse.storage.memory import MemoryStore  # noqa: E402
from gatehouse.storage.memory_cache import MemoryCacheStore  # noqa: E402


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings() -> Settings:
    return Settings.from_env()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def bus(clock) -> EventBus:
    return EventBus(clock)


@pytest.fixture
def tokens(store, settings, clock) -> TokenService:
    return TokenService(store, settings, clock)


@pytest.fixture
def runtime(settings, clock) -> Runtime:
    return Runtime(
        settings,
        clock=clock,
        store=MemoryStore(),
        cache=MemoryCacheStore(clock),
    )


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

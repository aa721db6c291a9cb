import asyncio
import inspect
import os
import sys
from pathlib import Path

os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("EVENT_BACKEND", "memory")
os.environ.setdefault("AUTH_SERVICE_URL", "")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from identifier.config import EventBackend, Settings  # noqa: E402
from identifier.service.events import InMemoryEventPublisher  # noqa: E402
from identifier.service.passwords import PasswordHasher  # noqa: E402
from identifier.service.roles import StaticRoleResolver  # noqa: E402
from identifier.service.runtime import Runtime  # noqa: E402
from identifier.storage.memory import MemoryStore  # noqa: E402


@pytest.fixture
def settings():
    """Explicit test settings; nothing is read from the environment."""
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        access_token_ttl_seconds=900,
        refresh_token_ttl_seconds=7 * 24 * 3600,
        auth_service_url="",
        event_backend=EventBackend.MEMORY,
        use_memory_store=True,
        log_json=False,
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def hasher():
    # Minimal argon2 cost keeps the suite fast
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1)


@pytest.fixture
def events():
    return InMemoryEventPublisher()


@pytest.fixture
def resolver():
    return StaticRoleResolver(["member"], ["classes:book", "profile:read"])


@pytest.fixture
def runtime(settings, store, hasher, events, resolver):
    return Runtime(
        settings,
        store=store,
        resolver=resolver,
        event_sink=events,
        hasher=hasher,
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

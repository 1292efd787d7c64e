import asyncio
import inspect
import os
import sys
from pathlib import Path

# Tests run against the in-process cache unless a test wires its own backend
for _redis_env in ("REDIS_URL", "REDIS_CONNECTION_STRING", "REDIS_PRIVATE_URL", "SMTP_HOST"):
    os.environ.pop(_redis_env, None)
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from magiclink.app import create_app  # noqa: E402
from magiclink.config import Settings, reset_settings_cache  # noqa: E402
from magiclink.service.email import EmailService  # noqa: E402
from magiclink.service.runtime import Runtime  # noqa: E402
from magiclink.storage.errors import StorageBackendError  # noqa: E402
from magiclink.storage.fallback import FallbackCache  # noqa: E402
from magiclink.storage.memory import LocalCache  # noqa: E402


class FakeClock:
    """Monotonic clock the test moves by hand."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SwitchableBackend(LocalCache):
    """Distributed stand-in whose outage can be toggled per test."""

    name = "redis"

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.up = True
        self.failing = False
        self.closed = False

    def _check(self, operation: str) -> None:
        if self.failing:
            raise StorageBackendError(f"redis {operation} failed", backend=self.name)

    async def put(self, key, value, ttl_seconds):
        self._check("set")
        await super().put(key, value, ttl_seconds)

    async def get(self, key):
        self._check("get")
        return await super().get(key)

    async def delete(self, key):
        self._check("delete")
        await super().delete(key)

    async def pop(self, key):
        self._check("getdel")
        return await super().pop(key)

    async def exists(self, key):
        self._check("exists")
        return await super().exists(key)

    async def touch(self, key, ttl_seconds):
        self._check("expire")
        return await super().touch(key, ttl_seconds)

    async def is_available(self):
        return self.up

    async def close(self):
        self.closed = True


class RecordingEmailService(EmailService):
    """Email transport that records messages instead of opening SMTP connections."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.sent = []
        self.succeed = True

    def send(self, to_email, subject, html_body, text_body=None):
        self.sent.append(
            {"to": to_email, "subject": subject, "html": html_body, "text": text_body}
        )
        return self.succeed


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def local_cache(clock):
    return LocalCache(clock=clock)


@pytest.fixture
def distributed(clock):
    return SwitchableBackend(clock=clock)


@pytest.fixture
def local_only_cache(local_cache):
    return FallbackCache(local_cache)


@pytest.fixture
def dual_cache(local_cache, distributed):
    return FallbackCache(local_cache, distributed)


@pytest.fixture
def email_service():
    return RecordingEmailService()


@pytest.fixture
def settings():
    return Settings(cookie_secure=False, environment="test")


@pytest.fixture
def runtime(settings, local_cache, email_service):
    return Runtime(settings, local=local_cache, email=email_service)


@pytest.fixture
def client(runtime):
    with TestClient(create_app(runtime=runtime)) as test_client:
        yield test_client


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

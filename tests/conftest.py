import asyncio
import inspect
import os
import sys
import tempfile
import threading
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="courseauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from courseauth.config import Settings  # noqa: E402
from courseauth.service.auth import AuthService  # noqa: E402
from courseauth.service.passwords import Argon2Hasher  # noqa: E402
from courseauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from courseauth.service.tokens import JwtCodec  # noqa: E402
from courseauth.storage.memory import MemoryStore  # noqa: E402


class RecordingNotifier:
    """Notifier double that keeps every message it is asked to send."""

    def __init__(self) -> None:
        self.sent = []
        self._lock = threading.Lock()

    def send(self, to_address, recipient_name, template, link_or_code, subject):
        with self._lock:
            self.sent.append(
                {
                    "to": to_address,
                    "name": recipient_name,
                    "template": template,
                    "link_or_code": link_or_code,
                    "subject": subject,
                }
            )
        return True


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    """Settings for service-level tests (activation codes by default)."""
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
        confirmation_mode="code",
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def hasher():
    # Cheap parameters keep the suite fast; the algorithm is unchanged
    return Argon2Hasher(
        PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
    )


@pytest.fixture
def codec(settings):
    return JwtCodec(settings)


@pytest.fixture
def auth_service(memory_store, settings, hasher, codec, notifier):
    service = AuthService(
        memory_store,
        settings,
        hasher=hasher,
        codec=codec,
        notifier=notifier,
    )
    service.seed_roles()
    return service


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

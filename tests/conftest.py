import asyncio
import inspect
import os
import sys
import tempfile
import threading
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="expensebuddy_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-secret-for-testing-only-do-not-use")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use")
os.environ.setdefault("JWT_EMAIL_SECRET", "test-email-secret-for-testing-only-do-not-use")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "1024")
# Rate limits and the token blacklist run in-process so state never leaks
# between tests through a shared Redis; test_redis_cache covers Redis itself
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from expensebuddy.config import Settings  # noqa: E402
from expensebuddy.service.auth import AuthContext, AuthService  # noqa: E402
from expensebuddy.service.email import EmailDispatcher, EmailKind  # noqa: E402
from expensebuddy.service.family import FamilyService  # noqa: E402
from expensebuddy.service.runtime import reset_runtime_for_tests  # noqa: E402
from expensebuddy.service.tokens import TokenService  # noqa: E402
from expensebuddy.storage.memory import MemoryStore  # noqa: E402


def _clear_memory_state() -> None:
    state_file = Path(os.environ["SHARED_FS_ROOT"]) / "state" / "memory_store.json"
    state_file.unlink(missing_ok=True)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    _clear_memory_state()
    reset_runtime_for_tests()
    yield
    _clear_memory_state()
    reset_runtime_for_tests()


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


class RecordingGateway:
    """Email gateway that keeps every message instead of sending it."""

    def __init__(self):
        self.sent = []
        self.fail_kinds = set()
        self._lock = threading.Lock()

    def send(self, kind, to, variables):
        if kind in self.fail_kinds:
            raise RuntimeError(f"relay rejected {kind.value}")
        with self._lock:
            self.sent.append((kind, to, dict(variables)))

    def of_kind(self, kind: EmailKind):
        return [entry for entry in self.sent if entry[0] == kind]

    def last_token(self, kind: EmailKind) -> str:
        matches = self.of_kind(kind)
        assert matches, f"no {kind.value} email recorded"
        return matches[-1][2]["token"]


@pytest.fixture
def settings(tmp_path):
    return Settings(
        shared_fs_root=str(tmp_path),
        jwt_access_secret="unit-access-secret-0123456789abcdef0123456789",
        jwt_refresh_secret="unit-refresh-secret-0123456789abcdef012345678",
        jwt_email_secret="unit-email-secret-0123456789abcdef0123456789a",
        password_hash_time_cost=1,
        password_hash_memory_cost=1024,
        email_send_timeout_seconds=2.0,
    )


@pytest.fixture
def memory_store(tmp_path):
    """Create memory store for testing."""
    return MemoryStore(fs_root=str(tmp_path / "store"))


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def tokens(settings):
    return TokenService(settings)


@pytest.fixture
def mailer(gateway, settings):
    """Background email sender shared by both services; await drain() before
    inspecting what the gateway recorded."""
    return EmailDispatcher(gateway, timeout=settings.email_send_timeout_seconds)


@pytest.fixture
def auth_service(memory_store, tokens, gateway, settings, mailer):
    return AuthService(memory_store, tokens, gateway, settings, mailer=mailer)


@pytest.fixture
def family_service(memory_store, tokens, gateway, settings, mailer):
    return FamilyService(memory_store, tokens, gateway, settings, mailer=mailer)


@pytest.fixture
def ctx_for(memory_store):
    """Build an AuthContext from the current stored row, as authenticate() does."""

    def _build(user_id: str) -> AuthContext:
        user = memory_store.get_user(user_id)
        return AuthContext(
            user_id=user.id,
            email=user.email,
            family_id=user.family_id,
            role_in_family=user.role_in_family,
        )

    return _build

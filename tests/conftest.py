import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="tokenforge_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("KEY_ENCRYPTION_KEY", "test-key-encryption-key-for-testing-only-0123456789")
os.environ.setdefault("BASE_URL", "http://testserver")
# Empty REDIS_URL selects the in-process cache deterministically
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tokenforge.config import Settings  # noqa: E402
from tokenforge.service.audit import AuditRecorder  # noqa: E402
from tokenforge.service.auth import AuthService  # noqa: E402
from tokenforge.service.clock import Clock  # noqa: E402
from tokenforge.service.keys import SigningKeyManager  # noqa: E402
from tokenforge.service.login_policy import LoginPolicy  # noqa: E402
from tokenforge.service.mfa import MfaService  # noqa: E402
from tokenforge.service.runtime import reset_runtime_for_tests  # noqa: E402
from tokenforge.service.sealing import SecretSealer  # noqa: E402
from tokenforge.service.sessions import SessionLedger  # noqa: E402
from tokenforge.service.tokens import TokenService  # noqa: E402
from tokenforge.storage.memory import MemoryStore  # noqa: E402
from tokenforge.storage.memory_cache import MemoryCache  # noqa: E402


class ManualClock(Clock):
    """Clock that only moves when a test advances it."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def advance(self, **delta) -> datetime:
        self.current = self.current + timedelta(**delta)
        return self.current


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    runtime_root = tmp_path / "runtime"
    monkeypatch.setenv("SHARED_FS_ROOT", str(runtime_root))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        test_mode=True,
        use_memory_store=True,
        shared_fs_root=str(tmp_path),
        base_url="http://testserver",
        key_encryption_key="unit-test-key-encryption-key-0123456789abcdef",
    )


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "store"))


@pytest.fixture
def sealer(settings):
    return SecretSealer(settings.key_encryption_key)


@pytest.fixture
def audit(store, clock):
    return AuditRecorder(store, clock=clock)


@pytest.fixture
def keys(store, settings, clock, sealer):
    manager = SigningKeyManager(store, settings, clock=clock, sealer=sealer)
    manager.load()
    return manager


@pytest.fixture
def tokens(keys, settings, clock):
    return TokenService(keys, settings, clock=clock)


@pytest.fixture
def ledger(store, tokens, clock):
    return SessionLedger(store, tokens, clock=clock)


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def policy(store, audit, settings, clock):
    return LoginPolicy(store, audit, settings, clock=clock)


@pytest.fixture
def mfa(cache, store, audit, settings, clock, sealer):
    return MfaService(cache, store, audit, settings, clock=clock, sealer=sealer)


@pytest.fixture
def auth(store, cache, settings, tokens, ledger, policy, mfa, audit, clock):
    return AuthService(
        store,
        cache,
        settings,
        tokens=tokens,
        sessions=ledger,
        policy=policy,
        mfa=mfa,
        audit=audit,
        clock=clock,
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

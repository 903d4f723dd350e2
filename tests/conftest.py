import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment must be in place before any import that reads settings
_test_tmp_dir = tempfile.mkdtemp(prefix="taskhub_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "legacy-token-secret-for-tests-only")
os.environ.setdefault("AUTH_SECRET", "session-artifact-secret-for-tests-only")
os.environ.setdefault("COOKIE_SECURE", "false")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "1024")
os.environ.setdefault("OAUTH_GOOGLE_CLIENT_ID", "google-client-id")
os.environ.setdefault("OAUTH_GOOGLE_CLIENT_SECRET", "google-client-secret")
os.environ.setdefault("OAUTH_GITHUB_CLIENT_ID", "github-client-id")
os.environ.setdefault("OAUTH_GITHUB_CLIENT_SECRET", "github-client-secret")
os.environ.setdefault("OAUTH_REDIRECT_URI", "http://localhost:8000/api/auth/oauth/callback")
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from taskhub.service.runtime import reset_runtime_for_tests  # noqa: E402

START_TIME = 1_700_000_000.0


class FakeClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, start: float = START_TIME) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch, clock):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    runtime = reset_runtime_for_tests(clock=clock)
    yield runtime
    monkeypatch.undo()
    reset_runtime_for_tests()


@pytest.fixture
def runtime(reset_runtime_state):
    return reset_runtime_state


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

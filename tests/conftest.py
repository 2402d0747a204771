import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="examauth_test_")
os.environ.setdefault("STATE_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# States live in the memory store unless a test wires a cache explicitly
os.environ.pop("REDIS_URL", None)
os.environ.pop("SSO_FAILURE_REDIRECT_URL", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from examauth.config import Settings  # noqa: E402
from examauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from examauth.storage.memory import MemoryStore  # noqa: E402


class FakeClock:
    """Settable clock injected into services to step time deterministically."""

    def __init__(self, start=None):
        self.now = start or datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60,
        refresh_chain_ttl_minutes=24 * 60,
        max_active_chains_per_user=5,
        sso_state_ttl_seconds=600,
        oidc_client_id="exam-portal",
        oidc_client_secret="client-secret-value",
        oidc_authorization_endpoint="https://idp.example.com/authorize",
        oidc_token_endpoint="https://idp.example.com/token",
        oidc_userinfo_endpoint="https://idp.example.com/userinfo",
        sso_redirect_uri="https://exams.example.com/v1/auth/sso/callback",
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def clock():
    return FakeClock()


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

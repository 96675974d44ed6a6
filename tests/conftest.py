import asyncio
import inspect
import os
import tempfile

# Environment defaults must exist before nullpass modules load settings
_test_tmp_dir = tempfile.mkdtemp(prefix="nullpass_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("REDIS_URL", "")

import httpx  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from nullpass.config import Settings  # noqa: E402
from nullpass.service.audit import AuditLog  # noqa: E402
from nullpass.service.ciphers import SecretCipher  # noqa: E402
from nullpass.service.entitlements import EntitlementLedger  # noqa: E402
from nullpass.service.passwords import PasswordHasherService  # noqa: E402
from nullpass.service.sessions import SessionReconciler  # noqa: E402
from nullpass.service.tokens import TokenCodec  # noqa: E402
from nullpass.service.totp import TOTPVerifier  # noqa: E402
from nullpass.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "unit-test-signing-secret"
INTERNAL_SECRET = "internal-test-secret"
DROP_WEBHOOK_SECRET = "whsec-drop-test"
USER_PASSWORD = "CorrectHorse9"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        jwt_secret=TEST_SECRET,
        shared_fs_root=str(tmp_path),
        use_memory_store=True,
        test_mode=True,
        redis_url=None,
        internal_secret=INTERNAL_SECRET,
        drop_polar_secret=DROP_WEBHOOK_SECRET,
        polar_access_token="polar-test-token",
        discord_webhook_url="https://discord.test/webhook",
        session_reaper_interval_seconds=0,
    )


@pytest.fixture
def cipher():
    return SecretCipher(TEST_SECRET)


@pytest.fixture
def store(tmp_path, cipher):
    return MemoryStore(fs_root=str(tmp_path), cipher=cipher, persist=False)


@pytest.fixture
def codec():
    return TokenCodec(TEST_SECRET, "7d")


@pytest.fixture
def hasher():
    return PasswordHasherService()


@pytest.fixture
def totp():
    return TOTPVerifier(issuer="Nullpass", window_steps=2)


@pytest.fixture
def audit(store, cipher):
    return AuditLog(store, cipher)


@pytest.fixture
def ledger(store):
    return EntitlementLedger(store)


@pytest.fixture
def reconciler(store, codec, audit):
    return SessionReconciler(store, codec, audit, session_days=7)


@pytest.fixture
def user(store, hasher):
    return store.create_user("alice@example.com", hasher.hash(USER_PASSWORD), display_name="Alice")


@pytest.fixture
def outbound_requests():
    """Requests captured by the mock transport standing in for Polar and Discord."""
    return []


@pytest.fixture
def http_client(outbound_requests):
    def handler(request: httpx.Request) -> httpx.Response:
        outbound_requests.append(request)
        if request.url.host == "discord.test":
            return httpx.Response(204)
        if request.url.path.startswith("/v1/subscriptions/"):
            subscription_id = request.url.path.rsplit("/", 1)[-1]
            if request.method == "DELETE":
                return httpx.Response(200, json={"id": subscription_id, "status": "canceled"})
            return httpx.Response(
                200,
                json={
                    "id": subscription_id,
                    "status": "active",
                    "current_period_start": "2026-10-01T00:00:00Z",
                    "current_period_end": "2026-11-01T00:00:00Z",
                    "cancel_at_period_end": False,
                    "metadata": {"plan": "pro", "billingCycle": "monthly"},
                    "price": {
                        "price_amount": 999,
                        "price_currency": "usd",
                        "recurring_interval": "month",
                    },
                    "product": {"name": "Drop Pro"},
                },
            )
        return httpx.Response(404)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def client(settings, http_client):
    from nullpass.app import create_app

    with TestClient(create_app(settings, http_client=http_client)) as test_client:
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

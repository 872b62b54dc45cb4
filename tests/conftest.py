import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment must be in place before anything builds settings or the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="bookshelf_test_")
os.environ.setdefault("STATE_DIR", os.path.join(_test_tmp_dir, "state"))
os.environ.setdefault("UPLOAD_DIR", os.path.join(_test_tmp_dir, "uploads"))
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-testing-only-0123456789")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-9876543210")
# empty disables Redis; the in-process MemoryCache is used instead
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("SMTP_HOST", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from bookshelf.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
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


class RecordingMailSender:
    """Collects outgoing mail instead of delivering it."""

    def __init__(self):
        self.messages = []

    def send(self, message):
        self.messages.append(message)
        return True


class FloatClock:
    def __init__(self, start=None):
        import time

        self.now = time.time() - 60 if start is None else start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def services(tmp_path):
    """Service graph over the memory store and cache, without the HTTP layer."""
    from types import SimpleNamespace

    from bookshelf.config import Settings
    from bookshelf.service.auth import AuthService
    from bookshelf.service.books import BookService
    from bookshelf.service.email import EmailService
    from bookshelf.service.fs import ThumbnailStorage
    from bookshelf.service.sessions import SessionManager
    from bookshelf.service.tokens import TokenService
    from bookshelf.service.users import UserService
    from bookshelf.storage.cache import EntityCache, SafeCache
    from bookshelf.storage.memory import MemoryStore
    from bookshelf.storage.memory_cache import MemoryCache

    settings = Settings(
        state_dir=str(tmp_path / "state"),
        upload_dir=str(tmp_path / "uploads"),
        jwt_access_secret="unit-access-secret-0123456789-abcdefghijk",
        jwt_refresh_secret="unit-refresh-secret-0123456789-abcdefghij",
        max_upload_bytes=1024,
    )
    store = MemoryStore()
    backend = MemoryCache()
    cache = EntityCache(SafeCache(backend))
    files = ThumbnailStorage(settings.upload_dir, max_bytes=settings.max_upload_bytes)
    sender = RecordingMailSender()
    email = EmailService(sender, frontend_url=settings.frontend_url, app_name="Bookshelf")
    sessions = SessionManager(cache)
    tokens = TokenService(store)
    users = UserService(store, cache, sessions, files)
    books = BookService(store, cache, files)
    clock = FloatClock()
    auth = AuthService(
        store,
        cache,
        settings,
        users=users,
        tokens=tokens,
        sessions=sessions,
        email=email,
        clock=clock,
    )
    return SimpleNamespace(
        settings=settings,
        store=store,
        backend=backend,
        cache=cache,
        files=files,
        sender=sender,
        sessions=sessions,
        tokens=tokens,
        users=users,
        books=books,
        auth=auth,
        clock=clock,
    )


@pytest.fixture
def client():
    """Create a test client for the API."""
    from fastapi.testclient import TestClient

    from bookshelf import app as app_module

    return TestClient(app_module.app)


@pytest.fixture
def mailbox():
    """Capture mail sent by the shared runtime."""
    from bookshelf.service.runtime import get_runtime

    sender = RecordingMailSender()
    get_runtime().email.sender = sender
    return sender


@pytest.fixture
def make_user(client):
    """Register through the API; ``admin=True`` promotes in the store afterwards."""
    import uuid

    from bookshelf.service.runtime import get_runtime

    def _make(name="Test Reader", password="Secret123", *, admin=False, email=None):
        email = email or f"reader_{uuid.uuid4().hex[:8]}@example.com"
        resp = client.post(
            "/api/auth/register",
            json={"name": name, "email": email, "password": password},
        )
        assert resp.status_code == 201, resp.text
        data = resp.json()["data"]
        if admin:
            get_runtime().store.update_user(data["user"]["id"], is_admin=True)
            asyncio.run(get_runtime().cache.invalidate_user(data["user"]["id"]))
        return {
            "id": data["user"]["id"],
            "email": email,
            "password": password,
            "access_token": data["tokens"]["accessToken"],
            "refresh_token": data["tokens"]["refreshToken"],
            "session_id": data["sessionId"],
            "headers": {"Authorization": f"Bearer {data['tokens']['accessToken']}"},
        }

    return _make

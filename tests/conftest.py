"""
Pytest configuration and shared fixtures.

Environment variables are set here, before any chatseal import, so the
module-level settings, engine and app all see the test configuration.
Graph API traffic never leaves the process: FakeGraph answers it through
httpx.MockTransport.
"""

import os
import tempfile

_TEST_DIR = tempfile.mkdtemp(prefix="chatseal-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_DIR, 'test.db')}"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["META_APP_ID"] = "test-app-id"
os.environ["META_APP_SECRET"] = "test-app-secret"
os.environ["META_VERIFY_TOKEN"] = "test-verify-token"
os.environ["ADMIN_API_KEY"] = "test-admin-key"
os.environ.pop("PUBLIC_BASE_URL", None)

import httpx  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from chatseal import models  # noqa: E402,F401
from chatseal.config import settings  # noqa: E402
from chatseal.graph import GraphClient, get_graph_client  # noqa: E402
from chatseal.main import app  # noqa: E402
from chatseal.notifier import hub as notification_hub  # noqa: E402
from chatseal.storage import Base, SessionLocal, engine, upsert_tenant  # noqa: E402


TEST_PHONE_NUMBER_ID = "109876543210"
TEST_WABA_ID = "WABA-100"
TEST_TOKEN = "EAAG-test-token"


class FakeGraph:
    """
    Canned Graph API responses keyed by (method, path without version).

    Unregistered calls answer 404 with a Graph-shaped error so a missing
    route shows up as an upstream failure rather than a hang.
    """

    def __init__(self):
        self.routes = {}
        self.requests = []

    def _key(self, method: str, path: str):
        return method.upper(), f"/{settings.GRAPH_API_VERSION}/{path.lstrip('/')}"

    def add(self, method: str, path: str, json=None, status_code: int = 200, raises=None):
        self.routes[self._key(method, path)] = (status_code, json, raises)

    def fail(self, method: str, path: str, code: int, message: str = "Graph error", status_code: int = 400):
        self.add(
            method,
            path,
            json={"error": {"message": message, "type": "OAuthException", "code": code, "fbtrace_id": "trace"}},
            status_code=status_code,
        )

    def calls(self, method: str, path: str) -> list:
        key = self._key(method, path)
        return [r for r in self.requests if (r.method, r.url.path) == key]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        if key not in self.routes:
            return httpx.Response(404, json={"error": {"message": f"Unexpected call {key}", "code": 803}})
        status_code, body, raises = self.routes[key]
        if raises is not None:
            raise raises(request)
        return httpx.Response(status_code, json=body if body is not None else {})


@pytest.fixture
def fake_graph() -> FakeGraph:
    return FakeGraph()


@pytest.fixture(scope="function")
def client(fake_graph):
    """Create test client with fresh database and a fake Graph API for each test."""
    Base.metadata.create_all(bind=engine)

    async def override_graph_client():
        async with GraphClient(transport=httpx.MockTransport(fake_graph.handler)) as graph:
            yield graph

    app.dependency_overrides[get_graph_client] = override_graph_client

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(client):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def tenant(db):
    """A connected tenant owning TEST_PHONE_NUMBER_ID."""
    created, _ = upsert_tenant(
        db,
        waba_id=TEST_WABA_ID,
        name="Acme Store",
        access_token=TEST_TOKEN,
        phone_number_id=TEST_PHONE_NUMBER_ID,
        phone_number="+1 555 0100",
    )
    return created


@pytest.fixture
def hub():
    return notification_hub


@pytest.fixture
def admin_headers():
    return {"X-Admin-Key": "test-admin-key"}

import pathlib
import sys
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
import jwt

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.llm_provider import LLMGateway
from app.main import create_app, queue_backend
from app.queue_backend import InMemoryQueueBackend
from app.scraper import SAMPLE_PROFILE, StaticScraper
from app.store import InMemoryStore, store

OPS_TOKEN = "ops_test_token"
PROFILE_URL = "https://booksy.com/pl-pl/123456_studio-urody-przyklad_salon-kosmetyczny_3_warszawa"


def _issue_token(*, secret: str, user_id: str, email: str | None = None) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "exp": int((now + timedelta(minutes=30)).timestamp()),
        "iat": int(now.timestamp()),
        "iss": "test-issuer",
        "aud": "test-audience",
    }
    if email:
        payload["email"] = email
    return jwt.encode(payload, secret, algorithm="HS256")


class AuthenticatedClient:
    def __init__(self, client: TestClient, *, jwt_secret: str):
        self._client = client
        self._jwt_secret = jwt_secret

    def request(self, method: str, url: str, **kwargs):
        headers = dict(kwargs.pop("headers", {}) or {})
        if url.startswith("/api/v1/") and not url.startswith("/api/v1/internal/"):
            if "Authorization" not in headers:
                user_id = headers.get("x-user-id") or "user_default"
                token = _issue_token(secret=self._jwt_secret, user_id=str(user_id), email=f"{user_id}@example.com")
                headers["Authorization"] = f"Bearer {token}"
        if url.startswith("/api/v1/internal/") and "x-ops-token" not in headers:
            headers["x-ops-token"] = OPS_TOKEN
        return self._client.request(method, url, headers=headers, **kwargs)

    def __getattr__(self, name: str):
        return getattr(self._client, name)

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)

    def put(self, url: str, **kwargs):
        return self.request("PUT", url, **kwargs)

    def delete(self, url: str, **kwargs):
        return self.request("DELETE", url, **kwargs)


@pytest.fixture(autouse=True)
def reset_store(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("JWT_SHARED_SECRET", "jwt_test_secret")
    monkeypatch.setenv("JWT_ISSUER", "test-issuer")
    monkeypatch.setenv("JWT_AUDIENCE", "test-audience")
    monkeypatch.setenv("JWT_REQUIRED_CLAIMS", "sub,exp")
    monkeypatch.setenv("OPS_API_TOKEN", OPS_TOKEN)
    monkeypatch.setenv("SCRAPER_BACKEND", "static")
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("LLM_PROVIDER", raising=False)
    monkeypatch.delenv("SPA_REQUIRE_REAL_PROVIDERS", raising=False)
    monkeypatch.delenv("EMAIL_ENABLED", raising=False)
    store.reset()
    if hasattr(queue_backend, "reset"):
        queue_backend.reset()
    yield


@pytest.fixture
def client() -> TestClient:
    app = create_app()
    base = TestClient(app)
    return AuthenticatedClient(base, jwt_secret="jwt_test_secret")


@pytest.fixture
def fresh_store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def queue() -> InMemoryQueueBackend:
    return InMemoryQueueBackend()


@pytest.fixture
def sample_scraper() -> StaticScraper:
    return StaticScraper(default=SAMPLE_PROFILE)


@pytest.fixture
def mock_llm() -> LLMGateway:
    return LLMGateway(use_mock=True)

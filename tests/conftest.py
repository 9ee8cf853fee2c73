"""Shared fixtures for the LLM Key Gateway test suite."""

import json

import httpx
import pytest

from src.config.settings import Settings, get_settings
from src.gateway.service import build_gateway
from src.store.json_store import JSONDocumentStore
from src.store.models import BACKEND_CONFIGS, CLIENT_KEYS

ACCOUNT_A = "account-a"
ACCOUNT_B = "account-b"


def key_doc(**overrides) -> dict:
    doc = {
        "id": "key-1",
        "secret_value": "sk-client-aaa",
        "owner_account_id": ACCOUNT_A,
        "active": True,
        "name": "default",
        "created_at": "2024-01-01T00:00:00+00:00",
        "updated_at": "2024-01-01T00:00:00+00:00",
        "usage": {"request_count": 0, "token_count": 0, "last_used_at": None},
    }
    doc.update(overrides)
    return doc


def backend_doc(**overrides) -> dict:
    doc = {
        "id": "backend-1",
        "owner_account_id": ACCOUNT_A,
        "display_name": "Primary",
        "base_url": "https://backend-one.test",
        "backend_secret": "sk-backend-one",
        "active": True,
        "supported_models": ["gpt-4"],
        "created_at": "2024-01-01T00:00:00+00:00",
        "updated_at": "2024-01-01T00:00:00+00:00",
    }
    doc.update(overrides)
    return doc


@pytest.fixture
def store_data() -> dict:
    """Account A: one active key, two active backends, one inactive backend.
    Account B: one active key and no backends at all."""
    return {
        CLIENT_KEYS: [
            key_doc(),
            key_doc(id="key-inactive", secret_value="sk-client-off", active=False),
            key_doc(id="key-b", secret_value="sk-client-bbb", owner_account_id=ACCOUNT_B),
        ],
        BACKEND_CONFIGS: [
            backend_doc(),
            backend_doc(
                id="backend-2",
                display_name="Secondary",
                base_url="https://backend-two.test/",
                backend_secret="sk-backend-two",
                supported_models=["gpt-4", "gpt-3.5-turbo"],
            ),
            backend_doc(
                id="backend-off",
                display_name="Disabled",
                base_url="https://backend-off.test",
                backend_secret="sk-backend-off",
                active=False,
                supported_models=["claude-3"],
            ),
        ],
    }


@pytest.fixture
def memory_store(store_data) -> JSONDocumentStore:
    return JSONDocumentStore(data=store_data)


@pytest.fixture
def store_file(tmp_path, store_data) -> str:
    path = tmp_path / "store.json"
    path.write_text(json.dumps(store_data), encoding="utf-8")
    return str(path)


@pytest.fixture
def override_settings(monkeypatch):
    """Factory fixture: set env vars and clear settings cache.

    Usage:
        override_settings(STORE_BACKEND="dynamodb", USAGE_WORKERS=4)
    """
    def _override(**kwargs):
        for key, value in kwargs.items():
            monkeypatch.setenv(key.upper(), str(value))
        # Clear lru_cache so Settings re-reads env
        get_settings.cache_clear()

    yield _override

    # Always clear cache on teardown so other tests get fresh settings
    get_settings.cache_clear()


class UpstreamRecorder:
    """httpx handler standing in for every backend. Records what it receives."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.responder = self.default_response

    @staticmethod
    def default_response(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "id": "chatcmpl-1",
                "object": "chat.completion",
                "choices": [{"index": 0, "message": {"role": "assistant", "content": "Hello!"}}],
            },
        )

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        await request.aread()
        self.requests.append(request)
        return self.responder(request)


@pytest.fixture
def upstream() -> UpstreamRecorder:
    return UpstreamRecorder()


@pytest.fixture
async def gateway(memory_store, upstream):
    """Running gateway over the in-memory store and a mocked upstream."""
    gw = build_gateway(
        Settings(usage_workers=1),
        store=memory_store,
        transport=httpx.MockTransport(upstream),
    )
    await gw.start()
    yield gw
    await gw.close()


@pytest.fixture
async def app_client(gateway):
    """httpx AsyncClient wired to the FastAPI app with the test gateway."""
    from src.main import app

    app.state.gateway = gateway
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    del app.state.gateway


def auth(key: str = "sk-client-aaa") -> dict:
    return {"Authorization": f"Bearer {key}"}

"""
Pytest configuration and shared fixtures.

Environment variables are set here, before any chatlens import, so the
cached settings pick up the test configuration: in-memory store, no LLM
key, no webhook secret.
"""

import json
import os
import time

os.environ["STORE_BACKEND"] = "memory"
os.environ["LOG_LEVEL"] = "WARNING"
for _name in ("LLM_API_KEY", "WEBHOOK_SECRET", "WEBHOOK_VERIFY_TOKEN", "CATEGORY_RULES_FILE"):
    os.environ.pop(_name, None)

import pytest
import requests
from fastapi.testclient import TestClient

# Clear settings cache before any app imports to ensure test env vars are used
from chatlens.config import get_settings
get_settings.cache_clear()

from chatlens.categorizer import Categorizer
from chatlens.llm import LLMClient
from chatlens.main import app
from chatlens.pipeline import MessagePipeline
from chatlens.storage import InMemoryMessageStore, SqlMessageStore, build_engine
from chatlens.summarizer import Summarizer


@pytest.fixture
def memory_store():
    return InMemoryMessageStore(max_limit=200)


@pytest.fixture
def sql_store(tmp_path):
    """SQLite-file backed store with the schema applied."""
    engine = build_engine(f"sqlite:///{tmp_path / 'chatlens-test.db'}", pool_size=5, pool_timeout=5.0)
    store = SqlMessageStore(engine, max_limit=200)
    store.init()
    yield store
    store.close()


@pytest.fixture(params=["memory", "sql"])
def store(request):
    """Run a test against both store backends."""
    return request.getfixturevalue(f"{request.param}_store")


@pytest.fixture
def pipeline(memory_store):
    return MessagePipeline(
        memory_store,
        Categorizer(),
        Summarizer(max_chars=50),
        default_group_id="default",
    )


class FakeResponse:
    """Minimal stand-in for a streamed requests.Response."""

    def __init__(self, payload, status_code=200, chunk_size=None, chunk_delay=0.0):
        self._payload = payload
        self.status_code = status_code
        self._chunk_size = chunk_size
        self._chunk_delay = chunk_delay

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def iter_content(self, chunk_size=1):
        if isinstance(self._payload, Exception):
            body = b"not json"
        else:
            body = json.dumps(self._payload).encode("utf-8")
        size = self._chunk_size or len(body) or 1
        for start in range(0, len(body), size):
            if self._chunk_delay:
                time.sleep(self._chunk_delay)
            yield body[start:start + size]


class FakeLLM:
    """Replaces requests.post in chatlens.llm and records each call."""

    def __init__(self):
        self.calls = []
        self._result = None

    def answer(self, text, status_code=200, **streaming):
        self._result = FakeResponse({"content": [{"type": "text", "text": text}]}, status_code, **streaming)

    def respond(self, payload, status_code=200):
        self._result = FakeResponse(payload, status_code)

    def fail(self, exc):
        self._result = exc

    def post(self, url, headers=None, json=None, timeout=None, stream=False):
        self.calls.append({"url": url, "headers": headers, "json": json, "timeout": timeout, "stream": stream})
        if isinstance(self._result, Exception):
            raise self._result
        return self._result


@pytest.fixture
def fake_llm(monkeypatch):
    fake = FakeLLM()
    monkeypatch.setattr("chatlens.llm.requests.post", fake.post)
    return fake


@pytest.fixture
def llm_client():
    return LLMClient(api_key="test-key", api_url="https://llm.test/v1/messages", timeout_seconds=5.0)


@pytest.fixture
def client():
    """Test client with a fresh in-memory store for each test."""
    with TestClient(app) as test_client:
        yield test_client

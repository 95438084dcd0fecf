"""Shared fixtures."""

import json

import httpx
import pytest

from config import Settings
from core.llm import LLMClient
from memory.history import ChatHistoryLog
from storage.local_store import LocalStore
from transport.http import RetryPolicy


@pytest.fixture
def cfg(tmp_path):
    """Settings isolated to a temp directory with fast transport timings."""
    return Settings(
        STORE_PATH=tmp_path / "store.json",
        HISTORY_PATH=tmp_path / "history.json",
        PROVIDER="openai",
        API_KEY="test-key",
        TIMEOUT_MS=2000,
        STREAM_STALL_MS=1000,
        POLL_INTERVAL_MS=5,
        MAX_RETRIES=2,
        RETRY_BASE_DELAY_MS=0,
        INGEST_TICK_MS=0,
        CHUNK_SIZE=40,
        CHUNK_OVERLAP=5,
        CHUNK_PAD=4,
    )


@pytest.fixture
def store(tmp_path):
    return LocalStore(tmp_path / "store.json")


@pytest.fixture
def history(tmp_path):
    return ChatHistoryLog(tmp_path / "history.json")


@pytest.fixture
def fast_policy():
    """Retry policy without delays."""
    return RetryPolicy(max_retries=2, base_delay_ms=0, jitter_ms=0)


def json_response(payload, status_code=200):
    return httpx.Response(status_code, content=json.dumps(payload).encode())


def make_client(handler):
    """httpx client whose requests are answered by `handler(request)`."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def llm_factory(cfg, fast_policy):
    """Build an LLMClient backed by a mock transport handler."""

    def factory(handler, settings=None):
        return LLMClient(settings or cfg, client=make_client(handler), policy=fast_policy)

    return factory

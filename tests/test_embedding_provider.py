import os

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "python")

import httpx
import pytest

from core.errors import EmbeddingProviderError
from core.services import engine_shared


@pytest.fixture
def provider(monkeypatch):
    """Route provider calls through an in-memory transport."""
    calls = []
    responses = []

    def handler(request):
        calls.append(request)
        status, payload = responses.pop(0)
        return httpx.Response(status, json=payload)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    monkeypatch.setattr(engine_shared, "http_client", client)
    monkeypatch.setattr(engine_shared, "_sleep_backoff", lambda attempt: None)
    monkeypatch.setattr(engine_shared, "EMBEDDING_RETRY_MAX", 2)
    engine_shared.embedding_circuit_breaker.reset()
    yield calls, responses
    engine_shared.embedding_circuit_breaker.reset()
    client.close()


def test_openai_request_and_parse(provider, monkeypatch):
    calls, responses = provider
    monkeypatch.setattr(engine_shared, "EMBEDDING_PROVIDER", "openai")
    monkeypatch.setattr(engine_shared, "EMBEDDING_MODEL", "text-embedding-3-small")
    monkeypatch.setattr(engine_shared, "OPENAI_API_KEY", "sk-test")
    responses.append((200, {"data": [{"embedding": [0.1, 0.2, 0.3, 0.4]}]}))

    assert engine_shared.embed_text_sync("dune") == [0.1, 0.2, 0.3, 0.4]
    request = calls[0]
    assert str(request.url) == engine_shared.OPENAI_EMBEDDINGS_URL
    assert request.headers["authorization"] == "Bearer sk-test"


def test_gemini_request_and_parse(provider, monkeypatch):
    calls, responses = provider
    monkeypatch.setattr(engine_shared, "EMBEDDING_PROVIDER", "gemini")
    monkeypatch.setattr(engine_shared, "EMBEDDING_MODEL", "text-embedding-004")
    monkeypatch.setattr(engine_shared, "GEMINI_API_KEY", "g-test")
    responses.append((200, {"embedding": {"values": [1, 0, 0, 0]}}))

    assert engine_shared.embed_text_sync("dune") == [1.0, 0.0, 0.0, 0.0]
    request = calls[0]
    assert request.url.path.endswith("/models/text-embedding-004:embedContent")
    assert request.headers["x-goog-api-key"] == "g-test"


def test_retryable_status_is_retried(provider, monkeypatch):
    calls, responses = provider
    monkeypatch.setattr(engine_shared, "EMBEDDING_PROVIDER", "openai")
    responses.extend([
        (503, {"error": "busy"}),
        (429, {"error": "slow down"}),
        (200, {"data": [{"embedding": [0.0, 1.0, 0.0, 0.0]}]}),
    ])

    assert engine_shared.embed_text_sync("dune") == [0.0, 1.0, 0.0, 0.0]
    assert len(calls) == 3
    assert engine_shared.embedding_circuit_breaker.status()["consecutive_failures"] == 0


def test_client_error_and_wrong_dimension_raise(provider, monkeypatch):
    _, responses = provider
    monkeypatch.setattr(engine_shared, "EMBEDDING_PROVIDER", "openai")
    responses.append((401, {"error": "bad key"}))
    with pytest.raises(EmbeddingProviderError):
        engine_shared.embed_text_sync("dune")

    responses.append((200, {"data": [{"embedding": [0.1, 0.2]}]}))
    with pytest.raises(EmbeddingProviderError):
        engine_shared.embed_text_sync("dune")


def test_disabled_provider_raises(monkeypatch):
    monkeypatch.setattr(engine_shared, "EMBEDDING_PROVIDER", "none")
    with pytest.raises(EmbeddingProviderError):
        engine_shared.embed_text_sync("dune")


def test_circuit_breaker_opens_after_threshold():
    breaker = engine_shared.EmbeddingCircuitBreaker(failure_threshold=2, cooldown_seconds=60)
    breaker.record_failure("status 503")
    assert not breaker.is_open()
    breaker.record_failure("status 503")
    assert breaker.is_open()
    assert breaker.status()["last_error"] == "status 503"

    breaker.record_success()
    assert not breaker.is_open()

"""
Shared helpers and configuration for ReadGraph services.

Holds the embedding provider client (OpenAI or Gemini over httpx), the
provider circuit breaker, and the ``service_tool`` error envelope used by
every dict-returning service entry point.
"""

from __future__ import annotations

import asyncio
import random
import threading
import time
from datetime import datetime
from functools import wraps
from typing import Callable, List, Optional

import httpx

import core.config as config
from core.errors import EmbeddingProviderError, ValidationIssue
from core.validators import validate_embedding_text as _validate_embedding_text

# =============================================================================
# Configuration
# =============================================================================

logger = config.logger

OPENAI_API_KEY = config.OPENAI_API_KEY
GEMINI_API_KEY = config.GEMINI_API_KEY
EMBEDDING_PROVIDER = config.EMBEDDING_PROVIDER
EMBEDDING_MODEL = config.EMBEDDING_MODEL
EMBEDDING_DIM = config.EMBEDDING_DIM

EMBEDDING_TIMEOUT_SECONDS = config.EMBEDDING_TIMEOUT_SECONDS
EMBEDDING_RETRY_MAX = config.EMBEDDING_RETRY_MAX
EMBEDDING_RETRY_BACKOFF_SECONDS = config.EMBEDDING_RETRY_BACKOFF_SECONDS
EMBEDDING_RETRY_JITTER_SECONDS = config.EMBEDDING_RETRY_JITTER_SECONDS
EMBEDDING_FAILURE_THRESHOLD = config.EMBEDDING_FAILURE_THRESHOLD
EMBEDDING_COOLDOWN_SECONDS = config.EMBEDDING_COOLDOWN_SECONDS

MAX_RESULT_LIMIT = config.MAX_RESULT_LIMIT

OPENAI_EMBEDDINGS_URL = "https://api.openai.com/v1/embeddings"
GEMINI_EMBEDDINGS_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:embedContent"
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

http_client = None  # Reusable HTTP client for the embedding provider


def init_http_client():
    """Initialize HTTP client for embedding provider calls."""
    global http_client
    http_client = httpx.Client(
        timeout=httpx.Timeout(EMBEDDING_TIMEOUT_SECONDS),
        limits=httpx.Limits(max_keepalive_connections=10, max_connections=100),
        headers={"Content-Type": "application/json"},
    )
    logger.info("HTTP client initialized", extra={"provider": EMBEDDING_PROVIDER})


def cleanup_http_client():
    """Clean up HTTP client on shutdown."""
    global http_client
    if http_client:
        http_client.close()
        http_client = None
        logger.info("HTTP client closed")


# =============================================================================
# Embedding provider
# =============================================================================

def _build_request(text: str) -> tuple[str, dict, dict]:
    """Return (url, headers, json body) for the configured provider."""
    if EMBEDDING_PROVIDER == "openai":
        return (
            OPENAI_EMBEDDINGS_URL,
            {"Authorization": f"Bearer {OPENAI_API_KEY}"},
            {"model": EMBEDDING_MODEL, "input": text, "dimensions": EMBEDDING_DIM},
        )
    if EMBEDDING_PROVIDER == "gemini":
        return (
            GEMINI_EMBEDDINGS_URL.format(model=EMBEDDING_MODEL),
            {"x-goog-api-key": GEMINI_API_KEY or ""},
            {
                "model": f"models/{EMBEDDING_MODEL}",
                "content": {"parts": [{"text": text}]},
                "outputDimensionality": EMBEDDING_DIM,
            },
        )
    _raise_embedding_unavailable(f"unsupported provider {EMBEDDING_PROVIDER}")


def _parse_embedding(data: dict) -> List[float]:
    try:
        if EMBEDDING_PROVIDER == "gemini":
            values = data["embedding"]["values"]
        else:
            values = data["data"][0]["embedding"]
    except (KeyError, IndexError, TypeError):
        embedding_circuit_breaker.record_failure("malformed response")
        _raise_embedding_unavailable("malformed response")
    if len(values) != EMBEDDING_DIM:
        embedding_circuit_breaker.record_failure("dimension mismatch")
        _raise_embedding_unavailable(f"expected {EMBEDDING_DIM} dimensions, got {len(values)}")
    return [float(value) for value in values]


def _check_provider_ready() -> None:
    if EMBEDDING_PROVIDER == "none":
        _raise_embedding_unavailable("embedding provider disabled")
    if embedding_circuit_breaker.is_open():
        _raise_embedding_unavailable("circuit breaker open")


async def embed_text(text: str) -> List[float]:
    """Generate embedding using configured provider."""
    _validate_embedding_text(text)
    _check_provider_ready()
    url, headers, body = _build_request(text)
    timeout = httpx.Timeout(EMBEDDING_TIMEOUT_SECONDS)
    async with httpx.AsyncClient(timeout=timeout) as client:
        for attempt in range(EMBEDDING_RETRY_MAX + 1):
            try:
                response = await client.post(url, headers=headers, json=body)
            except httpx.RequestError as exc:
                if attempt >= EMBEDDING_RETRY_MAX:
                    embedding_circuit_breaker.record_failure(str(exc))
                    _raise_embedding_unavailable(str(exc))
                await _async_sleep_backoff(attempt)
                continue

            if response.status_code in RETRYABLE_STATUS_CODES:
                if attempt >= EMBEDDING_RETRY_MAX:
                    embedding_circuit_breaker.record_failure(
                        f"status {response.status_code}"
                    )
                    _raise_embedding_unavailable(f"status {response.status_code}")
                await _async_sleep_backoff(attempt)
                continue
            if response.status_code >= 400:
                embedding_circuit_breaker.record_failure(
                    f"status {response.status_code}"
                )
                _raise_embedding_unavailable(f"status {response.status_code}")

            vector = _parse_embedding(response.json())
            embedding_circuit_breaker.record_success()
            return vector


def embed_text_sync(text: str) -> List[float]:
    """Synchronous version of embed_text using pooled HTTP client."""
    _validate_embedding_text(text)
    _check_provider_ready()
    global http_client
    if http_client is None:
        init_http_client()
    url, headers, body = _build_request(text)

    for attempt in range(EMBEDDING_RETRY_MAX + 1):
        try:
            response = http_client.post(url, headers=headers, json=body)
        except httpx.RequestError:
            if attempt >= EMBEDDING_RETRY_MAX:
                embedding_circuit_breaker.record_failure("request error")
                _raise_embedding_unavailable("request error")
            _sleep_backoff(attempt)
            continue

        if response.status_code in RETRYABLE_STATUS_CODES:
            if attempt >= EMBEDDING_RETRY_MAX:
                embedding_circuit_breaker.record_failure(
                    f"status {response.status_code}"
                )
                _raise_embedding_unavailable(f"status {response.status_code}")
            _sleep_backoff(attempt)
            continue
        if response.status_code >= 400:
            embedding_circuit_breaker.record_failure(
                f"status {response.status_code}"
            )
            _raise_embedding_unavailable(f"status {response.status_code}")

        vector = _parse_embedding(response.json())
        embedding_circuit_breaker.record_success()
        return vector


class EmbeddingCircuitBreaker:
    def __init__(self, failure_threshold: int, cooldown_seconds: int):
        self._failure_threshold = max(1, failure_threshold)
        self._cooldown_seconds = max(1, cooldown_seconds)
        self._lock = threading.Lock()
        self._consecutive_failures = 0
        self._cooldown_until = 0.0
        self._last_error: Optional[str] = None
        self._last_failure_ts: Optional[float] = None
        self._last_success_ts: Optional[float] = None

    def is_open(self) -> bool:
        with self._lock:
            return time.time() < self._cooldown_until

    def record_success(self) -> None:
        with self._lock:
            self._consecutive_failures = 0
            self._cooldown_until = 0.0
            self._last_success_ts = time.time()

    def record_failure(self, error: str) -> None:
        with self._lock:
            self._consecutive_failures += 1
            self._last_error = error
            self._last_failure_ts = time.time()
            if self._consecutive_failures >= self._failure_threshold:
                self._cooldown_until = time.time() + self._cooldown_seconds

    def reset(self) -> None:
        with self._lock:
            self._consecutive_failures = 0
            self._cooldown_until = 0.0
            self._last_error = None

    def status(self) -> dict:
        with self._lock:
            return {
                "open": time.time() < self._cooldown_until,
                "consecutive_failures": self._consecutive_failures,
                "cooldown_until_epoch": int(self._cooldown_until) if self._cooldown_until else None,
                "last_error": self._last_error,
                "last_failure_epoch": int(self._last_failure_ts) if self._last_failure_ts else None,
                "last_success_epoch": int(self._last_success_ts) if self._last_success_ts else None,
            }


embedding_circuit_breaker = EmbeddingCircuitBreaker(
    failure_threshold=EMBEDDING_FAILURE_THRESHOLD,
    cooldown_seconds=EMBEDDING_COOLDOWN_SECONDS,
)


def _raise_embedding_unavailable(detail: str) -> None:
    logger.warning("Embedding provider unavailable", extra={"detail": detail})
    raise EmbeddingProviderError(f"embedding provider unavailable: {detail}")


def _sleep_backoff(attempt: int) -> None:
    base = EMBEDDING_RETRY_BACKOFF_SECONDS * (2 ** attempt)
    jitter = random.uniform(0, EMBEDDING_RETRY_JITTER_SECONDS)
    time.sleep(base + jitter)


async def _async_sleep_backoff(attempt: int) -> None:
    base = EMBEDDING_RETRY_BACKOFF_SECONDS * (2 ** attempt)
    jitter = random.uniform(0, EMBEDDING_RETRY_JITTER_SECONDS)
    await asyncio.sleep(base + jitter)


# =============================================================================
# Helper Functions
# =============================================================================

def _utcnow() -> datetime:
    return datetime.utcnow()


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _tool_error_payload(tool_name: str, exc: ValidationIssue) -> dict:
    return {
        "status": "error",
        "error_type": "validation_error",
        "tool": tool_name,
        "field": exc.field,
        "message": str(exc),
    }


def _log_validation_issue(tool_name: str, exc: ValidationIssue, warn: bool = False) -> None:
    payload = {
        "tool": tool_name,
        "field": exc.field,
        "error_type": exc.error_type,
        "detail": str(exc),
    }
    if warn:
        logger.warning("tool_validation_error", extra=payload)
    else:
        logger.info("tool_validation_error", extra=payload)


def _tool_error_handler(fn: Callable[..., dict]) -> Callable[..., dict]:
    @wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except ValidationIssue as exc:
            _log_validation_issue(fn.__name__, exc, warn=False)
            return _tool_error_payload(fn.__name__, exc)
        except ValueError as exc:
            issue = ValidationIssue(str(exc), field="unknown", error_type="value_error")
            _log_validation_issue(fn.__name__, issue, warn=True)
            return _tool_error_payload(fn.__name__, issue)
    return wrapper


def service_tool(fn: Callable[..., dict]) -> Callable[..., dict]:
    return _tool_error_handler(fn)

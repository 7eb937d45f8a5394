"""
Shared configuration for ReadGraph core.
"""

from __future__ import annotations

import logging
import os

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("readgraph")


def _get_bool(env_name: str, default: bool) -> bool:
    value = os.environ.get(env_name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_int(env_name: str, default: int) -> int:
    value = os.environ.get(env_name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_float(env_name: str, default: float) -> float:
    value = os.environ.get(env_name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _derive_effective_backends(db_backend: str, vector_backend: str) -> tuple[str, str]:
    db_effective = db_backend if db_backend in {"postgres", "sqlite"} else "postgres"
    vector_effective = vector_backend if vector_backend in {"pgvector", "python"} else "python"
    # pgvector needs a postgres database; everything else scans in-process
    if db_effective != "postgres" and vector_effective == "pgvector":
        vector_effective = "python"
    return db_effective, vector_effective


# Database settings
DB_BACKEND = os.environ.get("DB_BACKEND", "postgres").strip().lower()
VECTOR_BACKEND = os.environ.get("VECTOR_BACKEND", "pgvector").strip().lower()
SQLITE_PATH = os.environ.get("SQLITE_PATH", "/data/readgraph.db")
DATABASE_URL = os.environ.get("DATABASE_URL")
DB_BACKEND_EFFECTIVE, VECTOR_BACKEND_EFFECTIVE = _derive_effective_backends(
    DB_BACKEND,
    VECTOR_BACKEND,
)

# Embedding settings
EMBEDDING_PROVIDER = os.environ.get("EMBEDDING_PROVIDER", "gemini").strip().lower()
OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY")
GEMINI_API_KEY = os.environ.get("GEMINI_API_KEY")
_DEFAULT_MODELS = {
    "openai": "text-embedding-3-small",
    "gemini": "gemini-embedding-001",
}
EMBEDDING_MODEL = os.environ.get(
    "EMBEDDING_MODEL",
    _DEFAULT_MODELS.get(EMBEDDING_PROVIDER, "none"),
).strip()
EMBEDDING_DIM = _get_int("EMBEDDING_DIM", 768)

# Database initialization controls
AUTO_CREATE_EXTENSIONS = _get_bool("AUTO_CREATE_EXTENSIONS", True)
AUTO_MIGRATE_ON_STARTUP = _get_bool("AUTO_MIGRATE_ON_STARTUP", True)

# Request/input limits
MAX_RESULT_LIMIT = _get_int("READGRAPH_MAX_RESULT_LIMIT", 100)
MAX_OWNER_ID_LENGTH = _get_int("READGRAPH_MAX_OWNER_ID_LENGTH", 100)
MAX_ITEM_ID_LENGTH = _get_int("READGRAPH_MAX_ITEM_ID_LENGTH", 64)
MAX_ERROR_MESSAGE_LENGTH = _get_int("READGRAPH_MAX_ERROR_MESSAGE_LENGTH", 2000)
MAX_EMBEDDING_TEXT_LENGTH = _get_int("READGRAPH_MAX_EMBEDDING_TEXT_LENGTH", 8000)

# Embedding provider retry/backoff
EMBEDDING_TIMEOUT_SECONDS = _get_float("EMBEDDING_TIMEOUT_SECONDS", 30.0)
EMBEDDING_RETRY_MAX = _get_int("EMBEDDING_RETRY_MAX", 2)
EMBEDDING_RETRY_BACKOFF_SECONDS = _get_float("EMBEDDING_RETRY_BACKOFF_SECONDS", 0.5)
EMBEDDING_RETRY_JITTER_SECONDS = _get_float("EMBEDDING_RETRY_JITTER_SECONDS", 0.25)
EMBEDDING_FAILURE_THRESHOLD = _get_int("EMBEDDING_FAILURE_THRESHOLD", 5)
EMBEDDING_COOLDOWN_SECONDS = _get_int("EMBEDDING_COOLDOWN_SECONDS", 60)
EMBEDDING_HEALTHCHECK_ENABLED = _get_bool("EMBEDDING_HEALTHCHECK_ENABLED", True)

# Embedding job queue
JOB_DEFAULT_PRIORITY = _get_int("JOB_DEFAULT_PRIORITY", 5)
JOB_MAX_PRIORITY = _get_int("JOB_MAX_PRIORITY", 10)
JOB_MAX_RETRIES = _get_int("JOB_MAX_RETRIES", 3)
JOB_LEASE_SECONDS = _get_int("JOB_LEASE_SECONDS", 300)
JOB_BATCH_SIZE = _get_int("JOB_BATCH_SIZE", 50)
WORKER_ENABLED = _get_bool("WORKER_ENABLED", True)
WORKER_INTERVAL_SECONDS = _get_int("WORKER_INTERVAL_SECONDS", 30)
LEASE_SWEEP_INTERVAL_SECONDS = _get_int("LEASE_SWEEP_INTERVAL_SECONDS", 60)
MISSING_EMBEDDING_SWEEP_INTERVAL_SECONDS = _get_int("MISSING_EMBEDDING_SWEEP_INTERVAL_SECONDS", 300)
MISSING_EMBEDDING_SWEEP_LIMIT = _get_int("MISSING_EMBEDDING_SWEEP_LIMIT", 200)

# Relationship graph
GRAPH_SIMILARITY_THRESHOLD = _get_float("GRAPH_SIMILARITY_THRESHOLD", 0.60)
GRAPH_NEIGHBOR_LIMIT = _get_int("GRAPH_NEIGHBOR_LIMIT", 20)

# Recommendations and interest profiles
RECOMMENDATION_LIMIT_PER_SIGNAL = _get_int("RECOMMENDATION_LIMIT_PER_SIGNAL", 5)
PROFILE_LOOKBACK_DAYS = _get_int("PROFILE_LOOKBACK_DAYS", 30)
PROFILE_TOP_CONCEPTS = _get_int("PROFILE_TOP_CONCEPTS", 20)
SIMILAR_OWNER_THRESHOLD = _get_float("SIMILAR_OWNER_THRESHOLD", 0.75)
SIMILAR_OWNER_LIMIT = _get_int("SIMILAR_OWNER_LIMIT", 10)

# Audit trail
AUDIT_ENABLED = _get_bool("AUDIT_ENABLED", True)


def validate_and_prepare_config() -> None:
    """Validate configuration and apply derived settings at startup."""
    global DATABASE_URL, DB_BACKEND_EFFECTIVE, VECTOR_BACKEND_EFFECTIVE

    errors = []
    if DB_BACKEND not in {"postgres", "sqlite"}:
        errors.append("DB_BACKEND must be 'postgres' or 'sqlite'")

    if VECTOR_BACKEND not in {"pgvector", "python"}:
        errors.append("VECTOR_BACKEND must be 'pgvector' or 'python'")

    if DB_BACKEND == "sqlite" and VECTOR_BACKEND == "pgvector":
        errors.append("VECTOR_BACKEND=pgvector requires DB_BACKEND=postgres")

    if EMBEDDING_PROVIDER not in {"openai", "gemini", "none"}:
        errors.append("EMBEDDING_PROVIDER must be 'openai', 'gemini', or 'none'")
    if EMBEDDING_PROVIDER == "openai" and not OPENAI_API_KEY:
        errors.append("OPENAI_API_KEY is required when EMBEDDING_PROVIDER=openai")
    if EMBEDDING_PROVIDER == "gemini" and not GEMINI_API_KEY:
        errors.append("GEMINI_API_KEY is required when EMBEDDING_PROVIDER=gemini")

    if EMBEDDING_DIM <= 0:
        errors.append("EMBEDDING_DIM must be positive")
    if JOB_MAX_RETRIES < 1:
        errors.append("JOB_MAX_RETRIES must be at least 1")
    if JOB_LEASE_SECONDS <= 0:
        errors.append("JOB_LEASE_SECONDS must be positive")
    if not 0.0 <= GRAPH_SIMILARITY_THRESHOLD <= 1.0:
        errors.append("GRAPH_SIMILARITY_THRESHOLD must be between 0 and 1")

    if not DATABASE_URL:
        if DB_BACKEND == "sqlite":
            if not SQLITE_PATH:
                errors.append("SQLITE_PATH environment variable is required for sqlite")
            else:
                DATABASE_URL = f"sqlite:///{SQLITE_PATH}"
        else:
            errors.append("DATABASE_URL environment variable is required")
    else:
        url_lower = DATABASE_URL.lower()
        is_sqlite_url = url_lower.startswith("sqlite")
        if DB_BACKEND == "sqlite" and not is_sqlite_url:
            errors.append("DATABASE_URL must be a sqlite URL when DB_BACKEND=sqlite")
        if DB_BACKEND == "postgres" and is_sqlite_url:
            errors.append("DATABASE_URL must be a postgres URL when DB_BACKEND=postgres")

    DB_BACKEND_EFFECTIVE, VECTOR_BACKEND_EFFECTIVE = _derive_effective_backends(
        DB_BACKEND,
        VECTOR_BACKEND,
    )

    if errors:
        raise RuntimeError("Configuration invalid: " + "; ".join(errors))

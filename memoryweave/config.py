"""
Shared configuration for the MemoryWeave engine.
"""

from __future__ import annotations

import logging
import os

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("memoryweave")


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


def _derive_effective_backend(db_backend: str) -> str:
    return db_backend if db_backend in {"postgres", "sqlite"} else "postgres"


# Database settings
DB_BACKEND = os.environ.get("DB_BACKEND", "postgres").strip().lower()
SQLITE_PATH = os.environ.get("SQLITE_PATH", "/data/memoryweave.db")
DATABASE_URL = os.environ.get("DATABASE_URL")
DB_BACKEND_EFFECTIVE = _derive_effective_backend(DB_BACKEND)

# Database initialization controls
AUTO_MIGRATE_ON_STARTUP = _get_bool("AUTO_MIGRATE_ON_STARTUP", True)

# Tenancy: callers supply the tenant; "required" rejects the default tenant
TENANCY_SINGLE = "single"
TENANCY_REQUIRED = "required"
TENANCY_MODE = os.environ.get("MEMORYWEAVE_TENANCY_MODE", TENANCY_REQUIRED).strip().lower()
DEFAULT_TENANT_ID = os.environ.get("MEMORYWEAVE_DEFAULT_TENANT_ID", "system")

# Request/input limits
MAX_RESULT_LIMIT = _get_int("MEMORYWEAVE_MAX_RESULT_LIMIT", 100)
MAX_QUERY_LENGTH = _get_int("MEMORYWEAVE_MAX_QUERY_LENGTH", 4000)
MAX_TEXT_LENGTH = _get_int("MEMORYWEAVE_MAX_TEXT_LENGTH", 8000)
MAX_SHORT_TEXT_LENGTH = _get_int("MEMORYWEAVE_MAX_SHORT_TEXT_LENGTH", 255)
MAX_METADATA_BYTES = _get_int("MEMORYWEAVE_MAX_METADATA_BYTES", 20000)
MAX_LIST_ITEMS = _get_int("MEMORYWEAVE_MAX_LIST_ITEMS", 50)
MAX_EMBEDDING_TEXT_LENGTH = _get_int("MEMORYWEAVE_MAX_EMBEDDING_TEXT_LENGTH", 8000)
WRITE_BATCH_SIZE = _get_int("MEMORYWEAVE_WRITE_BATCH_SIZE", 50)

# Embedding provider
OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY")
OPENAI_BASE_URL = os.environ.get("OPENAI_BASE_URL", "https://api.openai.com/v1").rstrip("/")
EMBEDDING_PROVIDER = os.environ.get("EMBEDDING_PROVIDER", "openai").strip().lower()
EMBEDDING_MODEL = os.environ.get("EMBEDDING_MODEL", "text-embedding-3-small")
EMBEDDING_DIM = _get_int("EMBEDDING_DIM", 1536)
EMBEDDING_TIMEOUT_SECONDS = _get_float("EMBEDDING_TIMEOUT_SECONDS", 30.0)
EMBEDDING_RETRY_MAX = _get_int("EMBEDDING_RETRY_MAX", 2)
EMBEDDING_RETRY_BACKOFF_SECONDS = _get_float("EMBEDDING_RETRY_BACKOFF_SECONDS", 0.5)
EMBEDDING_RETRY_JITTER_SECONDS = _get_float("EMBEDDING_RETRY_JITTER_SECONDS", 0.25)
EMBEDDING_FAILURE_THRESHOLD = _get_int("EMBEDDING_FAILURE_THRESHOLD", 5)
EMBEDDING_COOLDOWN_SECONDS = _get_int("EMBEDDING_COOLDOWN_SECONDS", 60)

# Language-model provider
LLM_PROVIDER = os.environ.get("LLM_PROVIDER", "openai").strip().lower()
LLM_MODEL = os.environ.get("LLM_MODEL", "gpt-4o")
LLM_SUMMARY_MODEL = os.environ.get("LLM_SUMMARY_MODEL", "gpt-3.5-turbo")
LLM_TIMEOUT_SECONDS = _get_float("LLM_TIMEOUT_SECONDS", 60.0)
LLM_RETRY_MAX = _get_int("LLM_RETRY_MAX", 1)
LLM_TEMPERATURE = _get_float("LLM_TEMPERATURE", 0.2)

# Hybrid search
SEARCH_VECTOR_WEIGHT = _get_float("SEARCH_VECTOR_WEIGHT", 0.7)
SEARCH_KEYWORD_WEIGHT = _get_float("SEARCH_KEYWORD_WEIGHT", 0.3)
SEARCH_MIN_SCORE = _get_float("SEARCH_MIN_SCORE", 0.6)
SEARCH_MAX_RESULTS = _get_int("SEARCH_MAX_RESULTS", 50)
SEARCH_TEMPORAL_WEIGHTING = _get_bool("SEARCH_TEMPORAL_WEIGHTING", True)
SEARCH_TEMPORAL_DECAY = _get_float("SEARCH_TEMPORAL_DECAY", 0.01)
SEARCH_VECTOR_CANDIDATE_LIMIT = _get_int("SEARCH_VECTOR_CANDIDATE_LIMIT", 1000)
SEARCH_KEYWORD_CANDIDATE_LIMIT = _get_int("SEARCH_KEYWORD_CANDIDATE_LIMIT", 100)
RELATED_MEMORY_SCORE = _get_float("RELATED_MEMORY_SCORE", 0.9)

# Importance scoring
IMPORTANCE_RECENCY_WEIGHT = _get_float("IMPORTANCE_RECENCY_WEIGHT", 0.3)
IMPORTANCE_USAGE_WEIGHT = _get_float("IMPORTANCE_USAGE_WEIGHT", 0.2)
IMPORTANCE_FEEDBACK_WEIGHT = _get_float("IMPORTANCE_FEEDBACK_WEIGHT", 0.2)
IMPORTANCE_RELATIONSHIP_WEIGHT = _get_float("IMPORTANCE_RELATIONSHIP_WEIGHT", 0.15)
IMPORTANCE_EXPLICIT_WEIGHT = _get_float("IMPORTANCE_EXPLICIT_WEIGHT", 0.15)
IMPORTANCE_RECENCY_DECAY = _get_float("IMPORTANCE_RECENCY_DECAY", 0.1)
IMPORTANCE_MAX_RECENCY_AGE_DAYS = _get_float("IMPORTANCE_MAX_RECENCY_AGE_DAYS", 30.0)
IMPORTANCE_USAGE_CAP = _get_int("IMPORTANCE_USAGE_CAP", 100)
IMPORTANCE_RELATIONSHIP_CAP = _get_int("IMPORTANCE_RELATIONSHIP_CAP", 20)

# Context window
CONTEXT_MAX_TOKENS = _get_int("CONTEXT_MAX_TOKENS", 4000)
CONTEXT_MAX_MEMORIES = _get_int("CONTEXT_MAX_MEMORIES", 50)
CONTEXT_MIN_IMPORTANCE = _get_float("CONTEXT_MIN_IMPORTANCE", 0.3)
CONTEXT_USE_COMPRESSION = _get_bool("CONTEXT_USE_COMPRESSION", True)
CONTEXT_COMPRESSION_RATIO = _get_float("CONTEXT_COMPRESSION_RATIO", 0.7)
CONTEXT_RETENTION_DAYS = _get_int("CONTEXT_RETENTION_DAYS", 30)
CONTEXT_PERSISTENCE_ENABLED = _get_bool("CONTEXT_PERSISTENCE_ENABLED", True)

# Summarization
SUMMARIZATION_ENABLED = _get_bool("SUMMARIZATION_ENABLED", True)
SUMMARY_MAX_MEMORIES = _get_int("SUMMARY_MAX_MEMORIES", 10)
SUMMARY_MIN_MEMORIES = _get_int("SUMMARY_MIN_MEMORIES", 3)
SUMMARY_SIMILARITY_THRESHOLD = _get_float("SUMMARY_SIMILARITY_THRESHOLD", 0.8)
SUMMARY_MAX_LENGTH = _get_int("SUMMARY_MAX_LENGTH", 500)
SUMMARY_MIN_AGE_HOURS = _get_int("SUMMARY_MIN_AGE_HOURS", 24)
SUMMARY_BATCH_LIMIT = _get_int("SUMMARY_BATCH_LIMIT", 100)
SUMMARY_IMPORTANCE = _get_float("SUMMARY_IMPORTANCE", 0.8)

# Chain reasoning
CHAIN_MAX_LENGTH = _get_int("CHAIN_MAX_LENGTH", 5)
CHAIN_MIN_CONFIDENCE = _get_float("CHAIN_MIN_CONFIDENCE", 0.7)
CHAIN_MAX_CHAINS = _get_int("CHAIN_MAX_CHAINS", 3)
CHAIN_MAX_CANDIDATES = _get_int("CHAIN_MAX_CANDIDATES", 20)
CONTRADICTION_MIN_CONFIDENCE = _get_float("CONTRADICTION_MIN_CONFIDENCE", 0.7)
GRAPH_MAX_DEPTH = _get_int("GRAPH_MAX_DEPTH", 3)


def validate_and_prepare_config() -> None:
    """Validate configuration and apply derived settings at startup."""
    global DATABASE_URL, DB_BACKEND_EFFECTIVE

    errors = []
    if TENANCY_MODE not in {TENANCY_SINGLE, TENANCY_REQUIRED}:
        errors.append("MEMORYWEAVE_TENANCY_MODE must be 'single' or 'required'")
    if DB_BACKEND not in {"postgres", "sqlite"}:
        errors.append("DB_BACKEND must be 'postgres' or 'sqlite'")
    if EMBEDDING_PROVIDER not in {"openai", "none"}:
        errors.append("EMBEDDING_PROVIDER must be 'openai' or 'none'")
    if LLM_PROVIDER not in {"openai", "none"}:
        errors.append("LLM_PROVIDER must be 'openai' or 'none'")

    search_weights = SEARCH_VECTOR_WEIGHT + SEARCH_KEYWORD_WEIGHT
    if search_weights > 1.0 + 1e-9:
        errors.append("SEARCH_VECTOR_WEIGHT + SEARCH_KEYWORD_WEIGHT must not exceed 1")
    importance_weights = (
        IMPORTANCE_RECENCY_WEIGHT
        + IMPORTANCE_USAGE_WEIGHT
        + IMPORTANCE_FEEDBACK_WEIGHT
        + IMPORTANCE_RELATIONSHIP_WEIGHT
        + IMPORTANCE_EXPLICIT_WEIGHT
    )
    if importance_weights > 1.0 + 1e-9:
        errors.append("IMPORTANCE_*_WEIGHT values must not sum above 1")
    if not 0.0 < CONTEXT_COMPRESSION_RATIO <= 1.0:
        errors.append("CONTEXT_COMPRESSION_RATIO must be in (0, 1]")

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

    if EMBEDDING_PROVIDER == "openai" and not OPENAI_API_KEY:
        logger.warning("OPENAI_API_KEY is not set; embedding calls will fail and search degrades to keywords")

    DB_BACKEND_EFFECTIVE = _derive_effective_backend(DB_BACKEND)

    if errors:
        raise RuntimeError("Configuration invalid: " + "; ".join(errors))

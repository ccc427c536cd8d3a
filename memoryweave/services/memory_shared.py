"""
Shared helpers for memory services.
"""

from __future__ import annotations

import random
import threading
import time
from functools import wraps
from typing import Callable, Iterator, Optional, Sequence, TypeVar

import memoryweave.config as config
from memoryweave.db import DB
from memoryweave.errors import (
    AccessNotFoundError,
    ContextNotFoundError,
    MemoryNotFoundError,
    MemoryRelationshipNotFoundError,
    ValidationIssue,
)
from memoryweave.validators import (
    validate_required_text as _validate_required_text,
    validate_optional_text as _validate_optional_text,
    validate_limit as _validate_limit,
    validate_unit_interval as _validate_unit_interval,
    validate_id_list as _validate_id_list,
    validate_metadata as _validate_metadata,
    validate_embedding_text as _validate_embedding_text,
)

# =============================================================================
# Configuration
# =============================================================================

logger = config.logger

MAX_RESULT_LIMIT = config.MAX_RESULT_LIMIT
MAX_QUERY_LENGTH = config.MAX_QUERY_LENGTH
MAX_TEXT_LENGTH = config.MAX_TEXT_LENGTH
MAX_SHORT_TEXT_LENGTH = config.MAX_SHORT_TEXT_LENGTH
MAX_LIST_ITEMS = config.MAX_LIST_ITEMS
WRITE_BATCH_SIZE = config.WRITE_BATCH_SIZE

T = TypeVar("T")


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    """Yield consecutive slices of at most ``size`` items."""
    step = max(1, size)
    for start in range(0, len(items), step):
        yield items[start:start + step]


def clamp_unit(value: float) -> float:
    return max(0.0, min(1.0, value))


def open_session(session_factory: Optional[Callable] = None):
    """Open a session from the injected factory, or the process-wide one."""
    factory = session_factory or DB.SessionLocal
    if factory is None:
        raise RuntimeError("Database not initialized; call init_db() first")
    return factory()


# =============================================================================
# Provider resilience
# =============================================================================

class ProviderCircuitBreaker:
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


def _sleep_backoff(attempt: int) -> None:
    base = config.EMBEDDING_RETRY_BACKOFF_SECONDS * (2 ** attempt)
    jitter = random.uniform(0, config.EMBEDDING_RETRY_JITTER_SECONDS)
    time.sleep(base + jitter)


# =============================================================================
# Tool error handling
# =============================================================================

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
        except (
            MemoryNotFoundError,
            MemoryRelationshipNotFoundError,
            ContextNotFoundError,
            AccessNotFoundError,
        ) as exc:
            logger.info("tool_not_found", extra={"tool": fn.__name__, "detail": str(exc)})
            return {"status": "not_found", "tool": fn.__name__, "message": str(exc)}
        except ValueError as exc:
            issue = ValidationIssue(str(exc), field="unknown", error_type="value_error")
            _log_validation_issue(fn.__name__, issue, warn=True)
            return _tool_error_payload(fn.__name__, issue)
    return wrapper


def service_tool(fn: Callable[..., dict]) -> Callable[..., dict]:
    return _tool_error_handler(fn)


__all__ = [
    "logger",
    "chunked",
    "clamp_unit",
    "open_session",
    "ProviderCircuitBreaker",
    "service_tool",
    "_sleep_backoff",
    "_validate_required_text",
    "_validate_optional_text",
    "_validate_limit",
    "_validate_unit_interval",
    "_validate_id_list",
    "_validate_metadata",
    "_validate_embedding_text",
    "MAX_RESULT_LIMIT",
    "MAX_QUERY_LENGTH",
    "MAX_TEXT_LENGTH",
    "MAX_SHORT_TEXT_LENGTH",
    "MAX_LIST_ITEMS",
    "WRITE_BATCH_SIZE",
]

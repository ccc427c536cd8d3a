"""
Shared validation helpers for memory engine services.
"""

from __future__ import annotations

import json
from typing import Optional, Sequence

from memoryweave.config import (
    MAX_EMBEDDING_TEXT_LENGTH,
    MAX_METADATA_BYTES,
)
from memoryweave.errors import ValidationIssue
from memoryweave.models import ACCESS_TYPES, MEMORY_TYPES, RELATIONSHIP_TYPES


def validate_required_text(value: str, field: str, max_len: int) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValidationIssue(f"{field} must be a non-empty string", field=field, error_type="required")
    if len(value) > max_len:
        raise ValidationIssue(f"{field} exceeds max length {max_len}", field=field, error_type="max_length")


def validate_optional_text(value: Optional[str], field: str, max_len: int) -> None:
    if value is None:
        return
    if not isinstance(value, str):
        raise ValidationIssue(f"{field} must be a string", field=field, error_type="invalid_type")
    if len(value) > max_len:
        raise ValidationIssue(f"{field} exceeds max length {max_len}", field=field, error_type="max_length")


def validate_limit(value: int, field: str, max_value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationIssue(f"{field} must be an integer", field=field, error_type="invalid_type")
    if value <= 0 or value > max_value:
        raise ValidationIssue(f"{field} must be between 1 and {max_value}", field=field, error_type="out_of_range")


def validate_unit_interval(value: float, field: str) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationIssue(f"{field} must be a number", field=field, error_type="invalid_type")
    if value < 0.0 or value > 1.0:
        raise ValidationIssue(f"{field} must be between 0.0 and 1.0", field=field, error_type="out_of_range")


def validate_id_list(values: Optional[Sequence[str]], field: str, max_items: int) -> None:
    if values is None:
        return
    if isinstance(values, (str, bytes)) or not isinstance(values, (list, tuple, set, frozenset)):
        raise ValidationIssue(f"{field} must be a list", field=field, error_type="invalid_type")
    if len(values) > max_items:
        raise ValidationIssue(f"{field} exceeds max items {max_items}", field=field, error_type="max_items")
    for item in values:
        if not isinstance(item, str) or not item.strip():
            raise ValidationIssue(f"{field} must contain only non-empty strings", field=field, error_type="invalid_type")


def validate_metadata(metadata: Optional[dict], field: str) -> None:
    if metadata is None:
        return
    if not isinstance(metadata, dict):
        raise ValidationIssue(f"{field} must be an object", field=field, error_type="invalid_type")
    try:
        size = len(json.dumps(metadata))
    except (TypeError, ValueError) as exc:
        raise ValidationIssue(f"{field} must be JSON-serializable", field=field, error_type="invalid_type") from exc
    if size > MAX_METADATA_BYTES:
        raise ValidationIssue(
            f"{field} exceeds max size {MAX_METADATA_BYTES} bytes",
            field=field,
            error_type="max_bytes",
        )


def validate_embedding_text(text: str) -> None:
    validate_required_text(text, "text", MAX_EMBEDDING_TEXT_LENGTH)


def _normalize_choice(value: str, field: str, allowed: Sequence[str]) -> str:
    if not isinstance(value, str):
        raise ValidationIssue(f"{field} must be a string", field=field, error_type="invalid_type")
    normalized = value.strip().lower()
    if normalized not in allowed:
        raise ValidationIssue(
            f"{field} must be one of: {', '.join(allowed)}",
            field=field,
            error_type="invalid_value",
        )
    return normalized


def normalize_memory_type(value: str, field: str = "memory_type") -> str:
    return _normalize_choice(value, field, MEMORY_TYPES)


def normalize_relationship_type(value: str, field: str = "relationship_type") -> str:
    return _normalize_choice(value, field, RELATIONSHIP_TYPES)


def normalize_access_type(value: str, field: str = "access_type") -> str:
    return _normalize_choice(value, field, ACCESS_TYPES)

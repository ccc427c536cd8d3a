"""
Tenant scoping helpers for the memory engine.
"""

from __future__ import annotations

from typing import Optional

import memoryweave.config as config
from memoryweave.errors import ValidationIssue


def require_tenant_id_value(tenant_id: Optional[str]) -> str:
    if tenant_id is not None and not isinstance(tenant_id, str):
        raise ValidationIssue(
            "tenant_id must be a string",
            field="tenant_id",
            error_type="invalid_type",
        )
    value = (tenant_id or "").strip()
    if len(value) > 100:
        raise ValidationIssue(
            "tenant_id exceeds max length 100",
            field="tenant_id",
            error_type="max_length",
        )
    if config.TENANCY_MODE == config.TENANCY_REQUIRED and (
        not value or value == config.DEFAULT_TENANT_ID
    ):
        raise ValidationIssue(
            "tenant_id is required for this operation",
            field="tenant_id",
            error_type="required",
        )
    return value or config.DEFAULT_TENANT_ID


def optional_user_id(user_id: Optional[str]) -> Optional[str]:
    if user_id is None:
        return None
    if not isinstance(user_id, str):
        raise ValidationIssue(
            "user_id must be a string",
            field="user_id",
            error_type="invalid_type",
        )
    value = user_id.strip()
    return value or None


__all__ = [
    "require_tenant_id_value",
    "optional_user_id",
]

"""
Shared validation helpers for ReadGraph services.
"""

from __future__ import annotations

import math
from typing import Optional, Sequence

from core.config import (
    EMBEDDING_DIM,
    MAX_EMBEDDING_TEXT_LENGTH,
    MAX_ITEM_ID_LENGTH,
    MAX_OWNER_ID_LENGTH,
)
from core.errors import ValidationIssue
from core.models import ITEM_TYPES


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


def validate_threshold(value: float, field: str) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationIssue(f"{field} must be a number", field=field, error_type="invalid_type")
    if value < 0.0 or value > 1.0:
        raise ValidationIssue(f"{field} must be between 0.0 and 1.0", field=field, error_type="out_of_range")


def validate_owner_id(value: str, field: str = "owner_id") -> str:
    validate_required_text(value, field, MAX_OWNER_ID_LENGTH)
    return value.strip()


def validate_item_id(value: str, field: str = "item_id") -> str:
    validate_required_text(value, field, MAX_ITEM_ID_LENGTH)
    return value.strip()


def validate_item_type(value: str, field: str = "item_type", allowed: Optional[Sequence[str]] = None) -> str:
    if not isinstance(value, str):
        raise ValidationIssue(f"{field} must be a string", field=field, error_type="invalid_type")
    normalized = value.strip().lower()
    choices = tuple(allowed or ITEM_TYPES)
    if normalized not in choices:
        raise ValidationIssue(
            f"{field} must be one of: {'|'.join(choices)}",
            field=field,
            error_type="invalid_type",
        )
    return normalized


def validate_priority(value: int, field: str = "priority") -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationIssue(f"{field} must be an integer", field=field, error_type="invalid_type")


def validate_vector(values: Sequence[float], field: str = "vector", dim: Optional[int] = None) -> list[float]:
    expected = dim or EMBEDDING_DIM
    if values is None or isinstance(values, (str, bytes)):
        raise ValidationIssue(f"{field} must be a list of numbers", field=field, error_type="invalid_type")
    try:
        vector = [float(value) for value in values]
    except (TypeError, ValueError) as exc:
        raise ValidationIssue(f"{field} must be a list of numbers", field=field, error_type="invalid_type") from exc
    if len(vector) != expected:
        raise ValidationIssue(
            f"{field} must have {expected} dimensions (got {len(vector)})",
            field=field,
            error_type="invalid_dimension",
        )
    if not all(math.isfinite(value) for value in vector):
        raise ValidationIssue(f"{field} must contain finite numbers", field=field, error_type="invalid_value")
    return vector


def validate_embedding_text(text: str) -> None:
    validate_required_text(text, "text", MAX_EMBEDDING_TEXT_LENGTH)

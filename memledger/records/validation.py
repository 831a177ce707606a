"""Field validation for ledger records.

Records validate at construction and reject malformed input immediately.
Every helper raises RecordValidationError (a ValueError) naming the field.
"""

import math
import re
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Type

from memledger.protocols import RecordValidationError
from memledger.types import parse_datetime

# ISO-8601 duration, e.g. P30D, PT12H, P1Y2M
_DURATION_RE = re.compile(
    r"^P(?!$)(\d+Y)?(\d+M)?(\d+W)?(\d+D)?(T(?=\d)(\d+H)?(\d+M)?(\d+(\.\d+)?S)?)?$"
)
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_SHA256_HEX_RE = re.compile(r"^[0-9a-f]{64}$")


def require_string(
    value: Any, field_name: str, max_length: int = 1000, required: bool = True
) -> Optional[str]:
    """Validate a string field and strip control characters.

    Returns None for an absent optional field.
    """
    if value is None and not required:
        return None
    if not isinstance(value, str):
        raise RecordValidationError(
            f"{field_name} must be a string, got {type(value).__name__}"
        )
    if required and not value.strip():
        raise RecordValidationError(f"{field_name} cannot be empty")
    if len(value) > max_length:
        raise RecordValidationError(
            f"{field_name} too long (max {max_length} characters, got {len(value)})"
        )
    return _CONTROL_CHARS_RE.sub("", value)


def require_enum(value: Any, enum_cls: Type[Enum], field_name: str) -> str:
    """Validate an enum field and return its wire value."""
    if isinstance(value, enum_cls):
        return value.value
    valid = [e.value for e in enum_cls]
    if value not in valid:
        raise RecordValidationError(f"{field_name} must be one of {valid}, got {value!r}")
    return value


def string_list(
    value: Any,
    field_name: str,
    item_max_length: int = 500,
    max_items: int = 1000,
    unique: bool = False,
) -> List[str]:
    """Validate a list of strings. None becomes an empty list.

    With ``unique=True`` duplicates are dropped, first occurrence wins.
    """
    if value is None:
        return []
    if isinstance(value, (set, frozenset, tuple)):
        value = list(value)
    if not isinstance(value, list):
        raise RecordValidationError(
            f"{field_name} must be an array, got {type(value).__name__}"
        )
    if len(value) > max_items:
        raise RecordValidationError(
            f"{field_name} too many items (max {max_items}, got {len(value)})"
        )
    result: List[str] = []
    for i, item in enumerate(value):
        cleaned = require_string(item, f"{field_name}[{i}]", item_max_length)
        if unique and cleaned in result:
            continue
        result.append(cleaned)
    return result


def require_timestamp(value: Any, field_name: str, required: bool = True) -> Optional[str]:
    """Validate an ISO-8601 timestamp string. The original text is kept."""
    if value is None and not required:
        return None
    text = require_string(value, field_name, max_length=64)
    try:
        parse_datetime(text)
    except ValueError as e:
        raise RecordValidationError(f"{field_name} is not an ISO-8601 timestamp: {text!r}") from e
    return text


def require_duration(value: Any, field_name: str) -> str:
    text = require_string(value, field_name, max_length=64)
    if not _DURATION_RE.match(text):
        raise RecordValidationError(f"{field_name} is not an ISO-8601 duration: {text!r}")
    return text


def require_sha256(value: Any, field_name: str) -> str:
    text = require_string(value, field_name, max_length=64)
    if not _SHA256_HEX_RE.match(text):
        raise RecordValidationError(f"{field_name} must be a SHA-256 hex digest")
    return text


def require_mapping(value: Any, field_name: str, required: bool = True) -> Dict[str, Any]:
    if value is None and not required:
        return {}
    if not isinstance(value, dict):
        raise RecordValidationError(
            f"{field_name} must be an object, got {type(value).__name__}"
        )
    return value


def require_bool(value: Any, field_name: str) -> bool:
    if not isinstance(value, bool):
        raise RecordValidationError(f"{field_name} must be a boolean")
    return value


def require_number(
    value: Any,
    field_name: str,
    min_val: Optional[float] = None,
    max_val: Optional[float] = None,
) -> float:
    """Validate a finite number, rejecting bools, NaN and Infinity."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise RecordValidationError(f"{field_name} must be a number")
    if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
        raise RecordValidationError(f"{field_name} must be a finite number, got {value}")
    if min_val is not None and value < min_val:
        raise RecordValidationError(f"{field_name} must be >= {min_val}, got {value}")
    if max_val is not None and value > max_val:
        raise RecordValidationError(f"{field_name} must be <= {max_val}, got {value}")
    return float(value)


def require_subset(values: Iterable[str], allowed: Iterable[str], field_name: str) -> None:
    unknown = sorted(set(values) - set(allowed))
    if unknown:
        raise RecordValidationError(f"{field_name} has unknown entries: {unknown}")

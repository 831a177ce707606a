"""Canonical JSON encoding for signing and hashing.

Two semantically equal records must always produce the same bytes:
keys sorted, no insignificant whitespace, UTF-8 without ASCII escaping.
"""

import json
from typing import Any


def canonical_json(data: Any) -> bytes:
    """Encode ``data`` deterministically.

    Raises:
        TypeError: If ``data`` contains values JSON cannot represent.
    """
    return json.dumps(
        data, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False
    ).encode("utf-8")


def load_json_object(data: bytes, what: str = "record") -> dict:
    """Parse stored bytes as a JSON object.

    Raises:
        ValueError: If the bytes are not UTF-8 JSON or not an object.
    """
    try:
        parsed = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f"Stored {what} is not valid JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise ValueError(f"Stored {what} must be a JSON object")
    return parsed

"""Canonical serialization and content hashing.

Every hash the control plane exposes (idempotency keys, action
fingerprints, draft content hashes, patch hashes) is computed over the
same canonical JSON form so that hashes are portable across processes and
implementations:

- object keys sorted recursively
- no insignificant whitespace
- non-ASCII characters kept as-is (UTF-8 encoded before hashing)
- datetimes rendered as ISO 8601 strings
"""

import hashlib
import json
from datetime import date, datetime
from enum import Enum
from typing import Any


def _default(value: Any) -> Any:
    if isinstance(value, datetime | date):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, set | frozenset):
        return sorted(value)
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    raise TypeError(f"Object of type {type(value).__name__} is not canonically serializable")


def canonical_json(value: Any) -> str:
    """Serialize a value to canonical JSON.

    Args:
        value: Any JSON-compatible value (plus datetimes, enums, sets and
            pydantic models)

    Returns:
        Compact JSON with recursively sorted keys

    Example:
        >>> canonical_json({"b": 2, "a": {"d": 1, "c": 0}})
        '{"a":{"c":0,"d":1},"b":2}'
    """
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=_default)


def sha256_hex(text: str) -> str:
    """Return the hex SHA-256 digest of a UTF-8 string."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def content_hash(value: Any) -> str:
    """Hash a value's canonical JSON form."""
    return sha256_hex(canonical_json(value))

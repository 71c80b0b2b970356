"""Idempotency keys and action fingerprints.

Keys are built from a policy's field template so that two requests with
the same identifying values collapse to one logical effect::

    >>> generate_idempotency_key(["repo", "owner", "prNumber"],
    ...     {"owner": "acme", "repo": "control", "prNumber": 123})
    'owner=acme::prNumber=123::repo=control'

Template fields are sorted, fields absent from the context are skipped and
non-string values are rendered as canonical JSON, so neither template order
nor object key insertion order affects the result.
"""

from collections.abc import Iterable, Mapping
from typing import Any

from canonflow.utils.hashing import canonical_json, content_hash, sha256_hex

KEY_SEPARATOR = "::"


def _render_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    return canonical_json(value)


def generate_idempotency_key(template: Iterable[str], action_context: Mapping[str, Any]) -> str:
    """Derive the idempotency key for an action context."""
    parts = []
    for field in sorted(set(template)):
        value = action_context.get(field)
        if value is None:
            continue
        parts.append(f"{field}={_render_value(value)}")
    return KEY_SEPARATOR.join(parts)


def hash_idempotency_key(key: str) -> str:
    """SHA-256 hex digest of an idempotency key."""
    return sha256_hex(key)


def action_fingerprint(action_type: str, target_identifier: str, params: Mapping[str, Any] | None = None) -> str:
    """Content-addressed fingerprint of an action on a target."""
    return content_hash({"action_type": action_type, "target": target_identifier, "params": dict(params or {})})

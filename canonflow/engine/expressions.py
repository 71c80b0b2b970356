"""Variable substitution and step conditions.

Step params may reference run variables with ``${path}``. Paths use dots
and list indices: ``${issue.labels[0].name}``.

- A string that is exactly one reference is replaced by the referenced
  value with its type preserved (``"${count}"`` -> ``3``)
- References embedded in longer strings are rendered with ``str``
- Unresolved references are left untouched

Conditions (the ``if`` of a step) are deliberately small. Supported forms
are ``true``/``false``, a single reference tested for truthiness, ``!``
negation of a reference, and one comparison (``==``, ``!=``, ``>=``,
``<=``, ``>``, ``<``) between references and literals. Nothing is ever
passed to ``eval``.
"""

import json
import re
from collections.abc import Mapping
from typing import Any

import structlog

log = structlog.get_logger(__name__)

_REFERENCE = re.compile(r"\$\{([^}]+)\}")
_COMPARISON = re.compile(r"^(.+?)\s*(===|!==|==|!=|>=|<=|>|<)\s*(.+)$")

_MISSING = object()


def resolve_path(variables: Mapping[str, Any], path: str) -> Any:
    """Resolve a dotted path against run variables.

    Returns:
        The referenced value, or ``None`` when any segment is missing
    """
    value = _lookup(variables, path)
    return None if value is _MISSING else value


def _lookup(variables: Mapping[str, Any], path: str) -> Any:
    current: Any = variables
    for part in re.sub(r"\[(\d+)\]", r".\1", path.strip()).split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return _MISSING
            current = current[part]
        elif isinstance(current, list | tuple) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return current


def substitute(value: Any, variables: Mapping[str, Any]) -> Any:
    """Recursively replace ``${path}`` references in strings, lists and dicts."""
    if isinstance(value, str):
        whole = _REFERENCE.fullmatch(value)
        if whole:
            resolved = _lookup(variables, whole.group(1))
            return value if resolved is _MISSING else resolved

        def replace(match: re.Match[str]) -> str:
            resolved = _lookup(variables, match.group(1))
            if resolved is _MISSING:
                return match.group(0)
            return resolved if isinstance(resolved, str) else json.dumps(resolved, default=str)

        return _REFERENCE.sub(replace, value)
    if isinstance(value, list | tuple):
        return [substitute(item, variables) for item in value]
    if isinstance(value, Mapping):
        return {key: substitute(item, variables) for key, item in value.items()}
    return value


def _operand(token: str, variables: Mapping[str, Any]) -> Any:
    token = token.strip()
    reference = _REFERENCE.fullmatch(token)
    if reference:
        return _lookup(variables, reference.group(1))
    if len(token) >= 2 and token[0] == token[-1] and token[0] in "'\"":
        return token[1:-1]
    try:
        return json.loads(token)
    except json.JSONDecodeError:
        return token


def evaluate_condition(condition: str | bool | None, variables: Mapping[str, Any]) -> bool:
    """Evaluate a step condition against run variables.

    A condition that references a missing variable is false.
    """
    if condition is None:
        return True
    if isinstance(condition, bool):
        return condition

    text = condition.strip()
    if text in ("true", "false"):
        return text == "true"

    negated = text.startswith("!") and not text.startswith("!=")
    if negated:
        text = text[1:].strip()

    reference = _REFERENCE.fullmatch(text)
    if reference:
        value = _lookup(variables, reference.group(1))
        result = value is not _MISSING and bool(value)
        return not result if negated else result

    comparison = _COMPARISON.match(text)
    if comparison is None or negated:
        log.warning("condition_unsupported", condition=condition)
        return False

    left = _operand(comparison.group(1), variables)
    op = comparison.group(2)
    right = _operand(comparison.group(3), variables)
    if left is _MISSING or right is _MISSING:
        return False

    if op in ("==", "==="):
        return bool(left == right)
    if op in ("!=", "!=="):
        return bool(left != right)
    try:
        if op == ">=":
            return bool(left >= right)
        if op == "<=":
            return bool(left <= right)
        if op == ">":
            return bool(left > right)
        return bool(left < right)
    except TypeError:
        log.warning("condition_type_mismatch", condition=condition, left=repr(left), right=repr(right))
        return False

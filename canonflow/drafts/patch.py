"""
Whitelist-based, deterministic patching of issue drafts.

``apply_patch`` is a pure function of ``(draft, patch)``: it never mutates
its input, never raises for a bad patch and always produces the same
``after_hash`` for the same inputs.

Patch values:
    - Scalars (``title``, ``body``, ``priority``) replace the current value
    - Objects (``kpi``, ``guards``, ``verify``) replace the whole object and
      are validated against the draft schema
    - Lists (``labels``, ``dependsOn``, ``acceptanceCriteria``) take either a
      full replacement list or one operation::

        {"op": "append", "values": [...]}
        {"op": "remove", "values": [...]}
        {"op": "replaceByIndex", "index": 2, "value": "..."}
        {"op": "replaceAll", "values": [...]}

Example:
    >>> result = apply_patch(draft, {"labels": {"op": "append", "values": ["prio:high"]}})
    >>> result.success, result.diff_summary.added_items
    (True, 1)
"""

from collections import Counter
from dataclasses import dataclass, field
from typing import Any

import structlog
from pydantic import ValidationError

from canonflow.enums import ListOp
from canonflow.drafts.models import LIST_FIELDS, IssueDraft, field_name
from canonflow.exceptions import PatchError
from canonflow.utils.hashing import content_hash

log = structlog.get_logger(__name__)

PATCH_FIELD_NOT_ALLOWED = "PATCH_FIELD_NOT_ALLOWED"
PATCH_VALIDATION_FAILED = "PATCH_VALIDATION_FAILED"
PATCH_APPLICATION_FAILED = "PATCH_APPLICATION_FAILED"
PATCH_INDEX_OUT_OF_RANGE = "PATCH_INDEX_OUT_OF_RANGE"
PATCH_INVALID_OPERATION = "PATCH_INVALID_OPERATION"
PATCH_SCHEMA_INVALID = "PATCH_SCHEMA_INVALID"
PATCH_CONFLICT = "PATCH_CONFLICT"


@dataclass(frozen=True)
class PatchIssue:
    code: str
    field: str | None
    message: str


@dataclass(frozen=True)
class DiffSummary:
    changed_fields: list[str] = field(default_factory=list)
    added_items: int = 0
    removed_items: int = 0


@dataclass(frozen=True)
class PatchResult:
    """Outcome of ``apply_patch``.

    On failure ``draft`` is None and ``code`` names the failure class;
    ``errors`` carries the per-field details.
    """

    success: bool
    draft: IssueDraft | None = None
    before_hash: str | None = None
    after_hash: str | None = None
    patch_hash: str | None = None
    diff_summary: DiffSummary | None = None
    code: str | None = None
    errors: list[PatchIssue] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "draft": self.draft.to_document() if self.draft else None,
            "before_hash": self.before_hash,
            "after_hash": self.after_hash,
            "patch_hash": self.patch_hash,
            "diff_summary": (
                {
                    "changed_fields": self.diff_summary.changed_fields,
                    "added_items": self.diff_summary.added_items,
                    "removed_items": self.diff_summary.removed_items,
                }
                if self.diff_summary
                else None
            ),
            "code": self.code,
            "errors": [{"code": e.code, "field": e.field, "message": e.message} for e in self.errors],
        }


def validate_patch(patch: Any) -> list[PatchIssue]:
    """Check patch keys against the whitelist.

    Returns:
        One ``PATCH_FIELD_NOT_ALLOWED`` issue per unknown key, sorted by key;
        empty if the patch is acceptable
    """
    if not isinstance(patch, dict):
        return [PatchIssue(PATCH_VALIDATION_FAILED, None, "Patch must be an object")]
    return [
        PatchIssue(PATCH_FIELD_NOT_ALLOWED, key, f"Field '{key}' may not be patched")
        for key in sorted(patch)
        if field_name(key) is None
    ]


def _apply_list_value(name: str, current: list[Any], value: Any) -> list[Any]:
    if isinstance(value, list):
        return list(value)
    if not isinstance(value, dict) or "op" not in value:
        raise PatchError(f"'{name}' expects a list or an operation object", PATCH_INVALID_OPERATION, name)

    try:
        op = ListOp(value["op"])
    except ValueError:
        raise PatchError(f"Unknown list operation '{value['op']}'", PATCH_INVALID_OPERATION, name) from None

    if op == ListOp.REPLACE_BY_INDEX:
        index = value.get("index")
        if not isinstance(index, int) or isinstance(index, bool) or "value" not in value:
            raise PatchError("replaceByIndex requires an integer 'index' and a 'value'", PATCH_INVALID_OPERATION, name)
        if not 0 <= index < len(current):
            raise PatchError(
                f"Index {index} out of range for '{name}' with {len(current)} items", PATCH_INDEX_OUT_OF_RANGE, name
            )
        updated = list(current)
        updated[index] = value["value"]
        return updated

    values = value.get("values")
    if not isinstance(values, list):
        raise PatchError(f"{op.value} requires a 'values' list", PATCH_INVALID_OPERATION, name)
    if op == ListOp.APPEND:
        return [*current, *values]
    if op == ListOp.REMOVE:
        return [item for item in current if item not in values]
    return list(values)


def _diff(before: IssueDraft, after: IssueDraft) -> DiffSummary:
    before_data = before.model_dump(mode="json")
    after_data = after.model_dump(mode="json")
    changed = sorted(name for name in after_data if before_data.get(name) != after_data[name])
    added = removed = 0
    for name in LIST_FIELDS:
        old, new = Counter(before_data[name]), Counter(after_data[name])
        added += sum((new - old).values())
        removed += sum((old - new).values())
    return DiffSummary(changed_fields=changed, added_items=added, removed_items=removed)


def apply_patch(
    draft: IssueDraft | dict[str, Any],
    patch: dict[str, Any],
    expected_hash: str | None = None,
) -> PatchResult:
    """Apply a whitelisted patch to a draft.

    Args:
        draft: Current draft (model or camelCase document)
        patch: Field -> new value or list operation
        expected_hash: Content hash the caller last saw. If the draft has
            changed since, the patch is refused with ``PATCH_CONFLICT``.

    Returns:
        ``PatchResult``; the input draft is never modified
    """
    if not isinstance(draft, IssueDraft):
        try:
            draft = IssueDraft.model_validate(draft)
        except ValidationError as e:
            return PatchResult(
                success=False,
                code=PATCH_VALIDATION_FAILED,
                errors=[PatchIssue(PATCH_SCHEMA_INVALID, None, f"Invalid draft: {e}")],
            )

    before_hash = draft.content_hash
    errors = validate_patch(patch)
    if errors:
        log.info("patch_rejected", fields=[e.field for e in errors])
        return PatchResult(success=False, before_hash=before_hash, code=PATCH_VALIDATION_FAILED, errors=errors)

    patch_hash = content_hash(patch)
    if expected_hash is not None and expected_hash != before_hash:
        log.info("patch_conflict", expected_hash=expected_hash, actual_hash=before_hash)
        return PatchResult(
            success=False,
            before_hash=before_hash,
            patch_hash=patch_hash,
            code=PATCH_CONFLICT,
            errors=[PatchIssue(PATCH_CONFLICT, None, "Draft was modified since it was read")],
        )

    data = draft.model_dump()
    try:
        for key in sorted(patch):
            name = field_name(key)
            value = patch[key]
            if name in LIST_FIELDS:
                data[name] = _apply_list_value(name, data[name], value)
            else:
                data[name] = value
    except PatchError as e:
        log.info("patch_application_failed", field=e.field, code=e.code, error=e.message)
        return PatchResult(
            success=False,
            before_hash=before_hash,
            patch_hash=patch_hash,
            code=PATCH_APPLICATION_FAILED,
            errors=[PatchIssue(e.code, e.field, e.message)],
        )

    try:
        patched = IssueDraft.model_validate(data).normalized()
    except ValidationError as e:
        issues = [
            PatchIssue(PATCH_SCHEMA_INVALID, ".".join(str(p) for p in err["loc"]) or None, err["msg"])
            for err in e.errors()
        ]
        issues.sort(key=lambda issue: issue.field or "")
        return PatchResult(
            success=False,
            before_hash=before_hash,
            patch_hash=patch_hash,
            code=PATCH_VALIDATION_FAILED,
            errors=issues,
        )

    return PatchResult(
        success=True,
        draft=patched,
        before_hash=before_hash,
        after_hash=patched.content_hash,
        patch_hash=patch_hash,
        diff_summary=_diff(draft, patched),
    )

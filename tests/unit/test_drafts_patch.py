"""Tests for drafts/models.py and drafts/patch.py."""

import copy

import pytest
from pydantic import ValidationError

from canonflow.drafts import IssueDraft, apply_patch, validate_patch
from canonflow.drafts.patch import (
    PATCH_APPLICATION_FAILED,
    PATCH_CONFLICT,
    PATCH_FIELD_NOT_ALLOWED,
    PATCH_INDEX_OUT_OF_RANGE,
    PATCH_INVALID_OPERATION,
    PATCH_SCHEMA_INVALID,
    PATCH_VALIDATION_FAILED,
)


class TestIssueDraftSchema:
    def test_document_is_camel_case(self, base_draft: IssueDraft):
        document = base_draft.to_document()
        assert document["canonicalId"] == "E86.5"
        assert document["guards"] == {"env": "development", "prodBlocked": True}
        assert "canonical_id" not in document

    def test_unknown_key_rejected(self, draft_document: dict):
        draft_document["assignee"] = "someone"
        with pytest.raises(ValidationError):
            IssueDraft.model_validate(draft_document)

    @pytest.mark.parametrize("canonical_id", ["E86.5", "CID:I811", "TBD", "E1.2.3"])
    def test_valid_canonical_ids(self, draft_document: dict, canonical_id: str):
        draft_document["canonicalId"] = canonical_id
        assert IssueDraft.model_validate(draft_document).canonical_id == canonical_id

    @pytest.mark.parametrize("canonical_id", ["e86", "86.5", "E86.", "CID:", ""])
    def test_invalid_canonical_ids(self, draft_document: dict, canonical_id: str):
        draft_document["canonicalId"] = canonical_id
        with pytest.raises(ValidationError):
            IssueDraft.model_validate(draft_document)

    def test_prod_guard_rejected(self, draft_document: dict):
        draft_document["guards"] = {"env": "prod", "prodBlocked": True}
        with pytest.raises(ValidationError):
            IssueDraft.model_validate(draft_document)

    def test_short_body_rejected(self, draft_document: dict):
        draft_document["body"] = "too short"
        with pytest.raises(ValidationError):
            IssueDraft.model_validate(draft_document)

    def test_content_hash_stable(self, base_draft: IssueDraft, draft_document: dict):
        reordered = dict(reversed(list(draft_document.items())))
        assert IssueDraft.model_validate(reordered).content_hash == base_draft.content_hash

    def test_normalized(self, draft_document: dict):
        draft_document["labels"] = ["b", "a", "b"]
        draft_document["dependsOn"] = ["I2", "E1"]
        draft = IssueDraft.model_validate(draft_document).normalized()
        assert draft.labels == ["a", "b"]
        assert draft.depends_on == ["E1", "I2"]


class TestValidatePatch:
    def test_whitelisted_keys(self):
        assert validate_patch({"title": "x", "acceptanceCriteria": ["y"], "depends_on": []}) == []

    def test_unknown_keys_reported_sorted(self):
        issues = validate_patch({"zeta": 1, "canonicalId": "E1", "title": "ok"})
        assert [(i.code, i.field) for i in issues] == [
            (PATCH_FIELD_NOT_ALLOWED, "canonicalId"),
            (PATCH_FIELD_NOT_ALLOWED, "zeta"),
        ]

    def test_non_object_patch(self):
        assert validate_patch(["title"])[0].code == PATCH_VALIDATION_FAILED


class TestApplyPatch:
    def test_scalar_replace(self, base_draft: IssueDraft):
        result = apply_patch(base_draft, {"title": "  New title  ", "priority": "P0"})

        assert result.success
        assert result.draft.title == "New title"
        assert result.draft.priority == "P0"
        assert result.before_hash == base_draft.content_hash
        assert result.after_hash == result.draft.content_hash
        assert result.diff_summary.changed_fields == ["priority", "title"]

    def test_forbidden_field_leaves_draft_unchanged(self, base_draft: IssueDraft):
        before = base_draft.model_dump()

        result = apply_patch(base_draft, {"foo": "bar"})

        assert not result.success
        assert result.draft is None
        assert result.code == PATCH_VALIDATION_FAILED
        assert result.errors[0].code == PATCH_FIELD_NOT_ALLOWED
        assert result.errors[0].field == "foo"
        assert base_draft.model_dump() == before

    def test_identity_fields_not_patchable(self, base_draft: IssueDraft):
        result = apply_patch(base_draft, {"canonicalId": "E99"})
        assert result.code == PATCH_VALIDATION_FAILED

    def test_deterministic(self, base_draft: IssueDraft):
        patch = {"labels": {"op": "append", "values": ["prio:high"]}, "body": "A longer body for the draft."}
        first = apply_patch(base_draft, patch)
        second = apply_patch(base_draft, copy.deepcopy(patch))
        assert first.after_hash == second.after_hash
        assert first.patch_hash == second.patch_hash

    def test_idempotent_set_like_append(self, base_draft: IssueDraft):
        patch = {"labels": {"op": "append", "values": ["prio:high"]}}
        once = apply_patch(base_draft, patch)
        twice = apply_patch(once.draft, patch)
        assert twice.after_hash == once.after_hash

    def test_set_like_fields_normalized(self, base_draft: IssueDraft):
        result = apply_patch(base_draft, {"labels": [" b ", "a", "b"], "dependsOn": ["I9", "E1", "I9"]})
        assert result.draft.labels == ["a", "b"]
        assert result.draft.depends_on == ["E1", "I9"]

    def test_ordered_list_keeps_order(self, base_draft: IssueDraft):
        result = apply_patch(base_draft, {"acceptanceCriteria": {"op": "append", "values": ["Docs updated"]}})
        assert result.draft.acceptance_criteria[-1] == "Docs updated"
        assert result.diff_summary.added_items == 1
        assert result.diff_summary.removed_items == 0

    def test_remove(self, base_draft: IssueDraft):
        result = apply_patch(base_draft, {"labels": {"op": "remove", "values": ["area:drafts", "absent"]}})
        assert "area:drafts" not in result.draft.labels
        assert result.diff_summary.removed_items == 1

    def test_replace_by_index(self, base_draft: IssueDraft):
        result = apply_patch(
            base_draft, {"acceptanceCriteria": {"op": "replaceByIndex", "index": 1, "value": "Output is stable"}}
        )
        assert result.draft.acceptance_criteria[1] == "Output is stable"
        assert result.diff_summary.changed_fields == ["acceptance_criteria"]

    def test_replace_by_index_out_of_range(self, base_draft: IssueDraft):
        result = apply_patch(base_draft, {"acceptanceCriteria": {"op": "replaceByIndex", "index": 5, "value": "x"}})

        assert not result.success
        assert result.code == PATCH_APPLICATION_FAILED
        assert result.errors[0].code == PATCH_INDEX_OUT_OF_RANGE
        assert result.errors[0].field == "acceptance_criteria"

    def test_replace_all(self, base_draft: IssueDraft):
        result = apply_patch(base_draft, {"dependsOn": {"op": "replaceAll", "values": ["I3"]}})
        assert result.draft.depends_on == ["I3"]

    @pytest.mark.parametrize(
        "value",
        [
            {"op": "shuffle", "values": []},
            {"op": "append"},
            {"op": "replaceByIndex", "index": "1", "value": "x"},
            "not-a-list",
        ],
    )
    def test_invalid_list_operation(self, base_draft: IssueDraft, value):
        result = apply_patch(base_draft, {"labels": value})
        assert result.code == PATCH_APPLICATION_FAILED
        assert result.errors[0].code == PATCH_INVALID_OPERATION

    def test_schema_violation_after_patch(self, base_draft: IssueDraft):
        result = apply_patch(base_draft, {"acceptanceCriteria": [], "priority": "P9"})

        assert not result.success
        assert result.code == PATCH_VALIDATION_FAILED
        assert {e.code for e in result.errors} == {PATCH_SCHEMA_INVALID}
        assert len(result.errors) == 2
        assert result.errors[-1].field == "priority"

    def test_object_fields_replaced(self, base_draft: IssueDraft):
        result = apply_patch(base_draft, {"kpi": {"dcu": 2}, "guards": {"env": "staging"}})
        assert result.draft.kpi.dcu == 2
        assert result.draft.kpi.intent is None
        assert result.draft.guards.env == "staging"
        assert result.draft.guards.prod_blocked is True

    def test_expected_hash_conflict(self, base_draft: IssueDraft):
        result = apply_patch(base_draft, {"title": "x"}, expected_hash="0" * 64)
        assert result.code == PATCH_CONFLICT
        assert result.draft is None

    def test_expected_hash_match(self, base_draft: IssueDraft):
        result = apply_patch(base_draft, {"title": "x"}, expected_hash=base_draft.content_hash)
        assert result.success

    def test_accepts_document(self, draft_document: dict):
        result = apply_patch(draft_document, {"priority": "P2"})
        assert result.success
        assert draft_document["priority"] == "P1"

    def test_invalid_input_draft(self):
        result = apply_patch({"title": "x"}, {"priority": "P2"})
        assert result.code == PATCH_VALIDATION_FAILED
        assert result.errors[0].code == PATCH_SCHEMA_INVALID

    def test_to_dict(self, base_draft: IssueDraft):
        data = apply_patch(base_draft, {"priority": "P0"}).to_dict()
        assert data["success"] is True
        assert data["draft"]["priority"] == "P0"
        assert data["diff_summary"]["changed_fields"] == ["priority"]
        assert data["errors"] == []

"""Tests for policy/idempotency.py and utils/hashing.py."""

import hashlib

from canonflow.policy.idempotency import action_fingerprint, generate_idempotency_key, hash_idempotency_key
from canonflow.utils.hashing import canonical_json, content_hash


class TestGenerateIdempotencyKey:
    def test_fields_sorted(self):
        key = generate_idempotency_key(
            ["repo", "owner", "prNumber"],
            {"owner": "acme", "repo": "control", "prNumber": 123},
        )
        assert key == "owner=acme::prNumber=123::repo=control"

    def test_template_order_irrelevant(self):
        context = {"owner": "acme", "repo": "control"}
        assert generate_idempotency_key(["owner", "repo"], context) == generate_idempotency_key(
            ["repo", "owner"], context
        )

    def test_missing_and_none_fields_skipped(self):
        key = generate_idempotency_key(["owner", "repo", "prNumber"], {"owner": "acme", "prNumber": None})
        assert key == "owner=acme"

    def test_duplicate_template_fields_collapse(self):
        assert generate_idempotency_key(["owner", "owner"], {"owner": "acme"}) == "owner=acme"

    def test_empty_template(self):
        assert generate_idempotency_key([], {"owner": "acme"}) == ""

    def test_extra_context_ignored(self):
        assert generate_idempotency_key(["owner"], {"owner": "acme", "noise": 1}) == "owner=acme"

    def test_structured_values_are_canonical(self):
        first = generate_idempotency_key(["labels"], {"labels": {"b": 1, "a": [True, None]}})
        second = generate_idempotency_key(["labels"], {"labels": {"a": [True, None], "b": 1}})
        assert first == second == 'labels={"a":[true,null],"b":1}'


class TestHashing:
    def test_hash_is_sha256_hex(self):
        key = "owner=acme::repo=control"
        assert hash_idempotency_key(key) == hashlib.sha256(key.encode("utf-8")).hexdigest()

    def test_canonical_json_sorts_nested_keys(self):
        assert canonical_json({"b": 2, "a": {"d": 1, "c": 0}}) == '{"a":{"c":0,"d":1},"b":2}'

    def test_canonical_json_keeps_unicode(self):
        assert canonical_json({"title": "Grüße"}) == '{"title":"Grüße"}'

    def test_content_hash_independent_of_key_order(self):
        assert content_hash({"x": 1, "y": [1, 2]}) == content_hash({"y": [1, 2], "x": 1})

    def test_fingerprint_distinguishes_targets(self):
        first = action_fingerprint("merge_pr", "acme/control#1", {"method": "squash"})
        second = action_fingerprint("merge_pr", "acme/control#2", {"method": "squash"})
        assert first != second
        assert first == action_fingerprint("merge_pr", "acme/control#1", {"method": "squash"})

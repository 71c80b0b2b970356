"""Tests for policy/loader.py."""

from pathlib import Path

import pytest

from canonflow.exceptions import PolicyConfigError, SpecLoadError
from canonflow.policy.loader import load_default_policies, load_policy_set


def _write(tmp_path: Path, content: str) -> Path:
    path = tmp_path / "policies.yaml"
    path.write_text(content)
    return path


class TestLoadPolicySet:
    def test_default_policies(self):
        policy_set = load_default_policies()
        assert "issue_publish" in policy_set.action_types
        publish = policy_set.find("issue_publish")
        assert publish.allowed_envs == ("staging",)
        assert publish.max_runs_per_window == 1
        assert publish.window_seconds == 3600
        assert policy_set.find("merge_pr").requires_approval

    def test_camel_case_keys(self, tmp_path: Path):
        path = _write(
            tmp_path,
            """
version: "7"
policies:
  - actionType: rerun_checks
    allowedEnvs: [staging]
    maxRunsPerWindow: 2
    windowSeconds: 60
    cooldownSeconds: 10
    idempotencyKeyTemplate: [owner, repo]
""",
        )
        policy_set = load_policy_set(path)
        policy = policy_set.find("rerun_checks")
        assert policy_set.version == "7"
        assert policy.cooldown_seconds == 10
        assert policy.idempotency_key_template == ("owner", "repo")

    def test_empty_policies(self, tmp_path: Path):
        assert load_policy_set(_write(tmp_path, "version: '1'\n")).policies == ()

    def test_find_unknown(self):
        assert load_default_policies().find("launch_rockets") is None


class TestLoadPolicySetFailures:
    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(SpecLoadError, match="not found"):
            load_policy_set(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, tmp_path: Path):
        with pytest.raises(SpecLoadError, match="Invalid YAML"):
            load_policy_set(_write(tmp_path, "policies: [\n"))

    def test_policies_not_a_list(self, tmp_path: Path):
        with pytest.raises(SpecLoadError, match="must be a list"):
            load_policy_set(_write(tmp_path, "policies:\n  issue_publish: {}\n"))

    def test_out_of_range_value(self, tmp_path: Path):
        path = _write(tmp_path, "policies:\n  - action_type: a\n    max_runs_per_window: 0\n    window_seconds: 10\n")
        with pytest.raises(SpecLoadError, match="index 0"):
            load_policy_set(path)

    def test_unknown_field(self, tmp_path: Path):
        path = _write(tmp_path, "policies:\n  - action_type: a\n  - action_type: b\n    allowed_env: [prod]\n")
        with pytest.raises(SpecLoadError, match="index 1"):
            load_policy_set(path)

    def test_duplicate_action(self, tmp_path: Path):
        path = _write(tmp_path, "policies:\n  - action_type: a\n  - action_type: a\n")
        with pytest.raises(SpecLoadError, match="Duplicate policy"):
            load_policy_set(path)

    def test_half_configured_rate_window(self, tmp_path: Path):
        path = _write(tmp_path, "policies:\n  - action_type: a\n    max_runs_per_window: 2\n")
        with pytest.raises(PolicyConfigError) as exc_info:
            load_policy_set(path)
        assert exc_info.value.code == "INVALID_POLICY_CONFIG"
        assert exc_info.value.action_type == "a"

"""Unit tests for the canonflow CLI.

Commands run against a file store in a temporary directory so state
carries across invocations the way it does between real processes.
"""

import json
from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner

from canonflow.main import cli

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def no_logging_setup(monkeypatch):
    """Leave structlog to the capture fixture instead of binding to CliRunner streams."""
    monkeypatch.setattr("canonflow.main.configure_logging", lambda level: None)


@pytest.fixture
def cli_runner():
    return CliRunner()


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    config = tmp_path / "canonflow.yaml"
    config.write_text(
        yaml.safe_dump(
            {
                "engine": {
                    "store": "file",
                    "state_directory": str(tmp_path / "state"),
                    "default_timeout_seconds": 30,
                }
            }
        )
    )
    return config


@pytest.fixture
def invoke(cli_runner: CliRunner, config_file: Path):
    """Invoke the CLI with the temporary configuration."""

    def _invoke(*args: str):
        return cli_runner.invoke(cli, ["--config", str(config_file), *args])

    return _invoke


def _write_playbook(tmp_path: Path, steps: list[dict], name: str = "playbook.yaml") -> Path:
    path = tmp_path / name
    path.write_text(yaml.safe_dump({"id": "cli-playbook", "version": "2", "steps": steps}))
    return path


# =============================================================================
# Group options
# =============================================================================


class TestCliGroup:
    def test_help(self, cli_runner: CliRunner):
        result = cli_runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert "run-playbook" in result.output
        assert "apply-patch" in result.output

    def test_missing_config(self, cli_runner: CliRunner, tmp_path: Path):
        result = cli_runner.invoke(cli, ["--config", str(tmp_path / "nope.yaml"), "transitions", "CREATED"])
        assert result.exit_code == 1
        assert "Configuration file not found" in result.output


# =============================================================================
# State machine commands
# =============================================================================


class TestStateMachineCommands:
    def test_transitions(self, invoke):
        result = invoke("transitions", "IMPLEMENTING")
        assert result.exit_code == 0
        assert "VERIFIED" in result.stdout.split()

    def test_transitions_unknown_state(self, invoke):
        result = invoke("transitions", "NOPE")
        assert result.exit_code == 1
        assert "State not found" in result.output

    def test_check_transition_allowed(self, invoke):
        result = invoke(
            "check-transition", "IMPLEMENTING", "VERIFIED", "-e", "tests_pass=true", "-e", "code_committed=true"
        )
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["allowed"] is True
        assert data["transition"] == "verify_implementation"

    def test_check_transition_missing_evidence(self, invoke):
        result = invoke("check-transition", "IMPLEMENTING", "VERIFIED", "-e", "tests_pass=true")
        assert result.exit_code == 1
        data = json.loads(result.stdout)
        assert data["reason_code"] == "PRECONDITIONS_NOT_MET"
        assert data["missing"] == ["code_committed"]

    def test_check_transition_bad_evidence(self, invoke):
        result = invoke("check-transition", "IMPLEMENTING", "VERIFIED", "-e", "tests_pass")
        assert result.exit_code == 2


# =============================================================================
# Policy commands
# =============================================================================


class TestEvaluatePolicy:
    def _context(self, tmp_path: Path, **overrides) -> Path:
        context = {
            "requestId": "cli-req-1",
            "actionType": "issue_publish",
            "targetType": "issue",
            "targetIdentifier": "acme/control#7",
            "deploymentEnv": "staging",
            "actionContext": {"owner": "acme", "repo": "control", "canonicalId": "E86.5"},
        }
        context.update(overrides)
        path = tmp_path / "context.json"
        path.write_text(json.dumps(context))
        return path

    def test_allowed(self, invoke, tmp_path: Path):
        result = invoke("evaluate-policy", str(self._context(tmp_path)))
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["decision"] == "allowed"
        assert data["policy_name"] == "issue_publish"

    def test_environment_denied(self, invoke, tmp_path: Path):
        result = invoke("evaluate-policy", str(self._context(tmp_path, deploymentEnv="prod")))
        assert result.exit_code == 0
        assert json.loads(result.stdout)["reason_code"] == "ENV_NOT_PERMITTED"

    def test_recorded_decisions_count_against_the_window(self, invoke, tmp_path: Path):
        first = invoke("evaluate-policy", "--record", str(self._context(tmp_path)))
        assert json.loads(first.stdout)["decision"] == "allowed"

        second = invoke("evaluate-policy", "--record", str(self._context(tmp_path, requestId="cli-req-2")))

        data = json.loads(second.stdout)
        assert data["reason_code"] == "RATE_LIMITED"
        assert data["next_allowed_at"] is not None

    def test_invalid_context(self, invoke, tmp_path: Path):
        path = tmp_path / "context.json"
        path.write_text(json.dumps({"actionType": "issue_publish"}))
        result = invoke("evaluate-policy", str(path))
        assert result.exit_code == 1
        assert "Invalid policy context" in result.output


# =============================================================================
# Run commands
# =============================================================================


class TestRunCommands:
    def test_run_playbook(self, invoke, tmp_path: Path):
        playbook = _write_playbook(
            tmp_path,
            [
                {"id": "greet", "action": "core.echo", "params": {"message": "hello ${who}"}, "assign": "greeting"},
                {"id": "done", "action": "core.noop"},
            ],
        )

        result = invoke("run-playbook", str(playbook), "--var", "who=world", "--triggered-by", "ops")

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["status"] == "completed"
        assert data["playbook_id"] == "cli-playbook"
        assert data["playbook_version"] == "2"
        assert data["steps"][0]["output"] == {"message": "hello world"}
        assert data["summary"]["succeeded"] == 2
        assert "playbook" not in data

    def test_failed_run_exits_nonzero(self, invoke, tmp_path: Path):
        playbook = _write_playbook(tmp_path, [{"id": "missing", "action": "core.does_not_exist"}])

        result = invoke("run-playbook", str(playbook))

        assert result.exit_code == 1
        assert json.loads(result.stdout)["status"] == "failed"

    def test_invalid_playbook(self, invoke, tmp_path: Path):
        path = tmp_path / "playbook.yaml"
        path.write_text(yaml.safe_dump({"id": "empty", "steps": []}))
        result = invoke("run-playbook", str(path))
        assert result.exit_code == 1
        assert "Invalid playbook" in result.output

    def test_show_and_list_runs(self, invoke, tmp_path: Path):
        playbook = _write_playbook(tmp_path, [{"id": "only", "action": "core.noop"}])
        run_id = json.loads(invoke("run-playbook", str(playbook)).stdout)["id"]

        shown = invoke("show-run", run_id)
        listed = invoke("list-runs", "--status", "completed")

        assert json.loads(shown.stdout)["id"] == run_id
        assert run_id in listed.stdout
        assert "1/1 succeeded" in listed.stdout

    def test_list_runs_empty(self, invoke):
        result = invoke("list-runs")
        assert result.exit_code == 0
        assert "No runs found" in result.stdout

    def test_show_missing_run(self, invoke):
        result = invoke("show-run", "run-missing")
        assert result.exit_code == 1
        assert "run-missing" in result.output

    def test_pause_completed_run_rejected(self, invoke, tmp_path: Path):
        playbook = _write_playbook(tmp_path, [{"id": "only", "action": "core.noop"}])
        run_id = json.loads(invoke("run-playbook", str(playbook)).stdout)["id"]

        result = invoke("pause", run_id, "--by", "ops", "--reason", "too late")

        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_approval_round_trip(self, invoke, tmp_path: Path):
        playbook = _write_playbook(
            tmp_path,
            [
                {
                    "id": "merge",
                    "action": "core.echo",
                    "policy_action": "merge_pr",
                    "target_type": "pull_request",
                    "target": "acme/control#42",
                    "params": {"owner": "acme", "repo": "control", "prNumber": 42},
                }
            ],
        )

        started = invoke("run-playbook", str(playbook), "--env", "staging")
        run = json.loads(started.stdout)
        assert started.exit_code == 0
        assert run["status"] == "paused"
        assert run["pause"]["awaiting_approval_for"] == "merge"

        resumed = invoke("resume", run["id"], "--by", "reviewer", "--approve")

        assert resumed.exit_code == 0
        data = json.loads(resumed.stdout)
        assert data["status"] == "completed"
        assert data["approved_steps"] == {"merge": "reviewer"}

    def test_cancel_paused_run(self, invoke, tmp_path: Path):
        playbook = _write_playbook(
            tmp_path,
            [{"id": "merge", "action": "core.noop", "policy_action": "merge_pr", "params": {"prNumber": 1}}],
        )
        run_id = json.loads(invoke("run-playbook", str(playbook), "--env", "staging").stdout)["id"]

        result = invoke("cancel", run_id, "--by", "ops", "--reason", "not needed")

        assert result.exit_code == 0
        assert result.stdout.strip() == f"Run {run_id} is cancelled"

    def test_recover_with_nothing_running(self, invoke):
        result = invoke("recover")
        assert result.exit_code == 0
        assert "Recovered 0 run(s)" in result.stdout


# =============================================================================
# Draft commands
# =============================================================================


class TestApplyPatch:
    def test_apply_and_write(self, cli_runner: CliRunner, tmp_path: Path, draft_document: dict):
        draft = tmp_path / "draft.json"
        draft.write_text(json.dumps(draft_document))
        patch = tmp_path / "patch.yaml"
        patch.write_text("priority: P0\nlabels:\n  op: append\n  values: [needs-review]\n")
        output = tmp_path / "out.json"

        result = cli_runner.invoke(cli, ["apply-patch", str(draft), str(patch), "-o", str(output)])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["success"] is True
        written = json.loads(output.read_text())
        assert written["priority"] == "P0"
        assert "needs-review" in written["labels"]
        assert written["canonicalId"] == "E86.5"

    def test_forbidden_field(self, cli_runner: CliRunner, tmp_path: Path, draft_document: dict):
        draft = tmp_path / "draft.json"
        draft.write_text(json.dumps(draft_document))
        patch = tmp_path / "patch.json"
        patch.write_text(json.dumps({"canonicalId": "E99"}))
        output = tmp_path / "out.json"

        result = cli_runner.invoke(cli, ["apply-patch", str(draft), str(patch), "-o", str(output)])

        assert result.exit_code == 1
        data = json.loads(result.stdout)
        assert data["code"] == "PATCH_VALIDATION_FAILED"
        assert data["errors"][0]["field"] == "canonicalId"
        assert not output.exists()

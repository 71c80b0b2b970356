"""Tests for statemachine/loader.py."""

import shutil
from pathlib import Path

import pytest
import yaml

from canonflow.exceptions import SpecLoadError
from canonflow.statemachine.loader import default_spec_dir, load_default_spec, load_state_machine_spec


@pytest.fixture
def spec_dir(tmp_path: Path) -> Path:
    """Writable copy of the bundled specification."""
    target = tmp_path / "spec"
    shutil.copytree(default_spec_dir(), target)
    return target


def _edit(path: Path, mutate) -> None:
    data = yaml.safe_load(path.read_text())
    mutate(data)
    path.write_text(yaml.safe_dump(data))


class TestLoadSpec:
    """Tests for successful loads."""

    def test_load_default(self):
        spec = load_default_spec()
        assert set(spec.states) == {
            "CREATED",
            "SPEC_READY",
            "IMPLEMENTING",
            "VERIFIED",
            "MERGE_READY",
            "DONE",
            "HOLD",
            "KILLED",
        }
        assert spec.version == "1"

    def test_load_copy(self, spec_dir: Path, captured_logs):
        spec = load_state_machine_spec(spec_dir)
        assert spec.get_transition("CREATED", "SPEC_READY").name == "approve_spec"
        assert any(e["event"] == "state_machine_loaded" for e in captured_logs)

    def test_states_are_immutable(self):
        spec = load_default_spec()
        with pytest.raises(TypeError):
            spec.states["NEW"] = spec.states["CREATED"]


class TestLoadSpecFailures:
    """Every malformed input is fatal."""

    def test_missing_directory(self, tmp_path: Path):
        with pytest.raises(SpecLoadError) as exc_info:
            load_state_machine_spec(tmp_path / "missing")
        assert exc_info.value.code == "SPEC_LOAD_FAILED"

    def test_missing_file(self, spec_dir: Path):
        (spec_dir / "transitions.yaml").unlink()
        with pytest.raises(SpecLoadError, match="not found"):
            load_state_machine_spec(spec_dir)

    def test_invalid_yaml(self, spec_dir: Path):
        (spec_dir / "state-machine.yaml").write_text("states: [unclosed\n")
        with pytest.raises(SpecLoadError, match="Invalid YAML"):
            load_state_machine_spec(spec_dir)

    def test_not_a_mapping(self, spec_dir: Path):
        (spec_dir / "status-mapping.yaml").write_text("- a\n- b\n")
        with pytest.raises(SpecLoadError, match="mapping"):
            load_state_machine_spec(spec_dir)

    def test_unknown_category(self, spec_dir: Path):
        _edit(spec_dir / "state-machine.yaml", lambda d: d["states"]["CREATED"].update(category="limbo"))
        with pytest.raises(SpecLoadError, match="Invalid state 'CREATED'"):
            load_state_machine_spec(spec_dir)

    def test_terminal_with_successors(self, spec_dir: Path):
        _edit(spec_dir / "state-machine.yaml", lambda d: d["states"]["DONE"].update(successors=["CREATED"]))
        with pytest.raises(SpecLoadError, match="terminal"):
            load_state_machine_spec(spec_dir)

    def test_dangling_successor(self, spec_dir: Path):
        _edit(
            spec_dir / "state-machine.yaml",
            lambda d: d["states"]["CREATED"]["successors"].append("ARCHIVED"),
        )
        with pytest.raises(SpecLoadError, match="unknown state 'ARCHIVED'"):
            load_state_machine_spec(spec_dir)

    def test_duplicate_transition_pair(self, spec_dir: Path):
        def add_duplicate(data):
            data["transitions"]["approve_spec_again"] = dict(data["transitions"]["approve_spec"])

        _edit(spec_dir / "transitions.yaml", add_duplicate)
        with pytest.raises(SpecLoadError, match="Duplicate transition"):
            load_state_machine_spec(spec_dir)

    def test_transition_not_backed_by_successor(self, spec_dir: Path):
        def add_shortcut(data):
            data["transitions"]["shortcut"] = {"from": "CREATED", "to": "DONE", "type": "forward"}

        _edit(spec_dir / "transitions.yaml", add_shortcut)
        with pytest.raises(SpecLoadError, match="not backed by a successor"):
            load_state_machine_spec(spec_dir)

    def test_auto_transition_without_triggers(self, spec_dir: Path):
        def drop_triggers(data):
            data["transitions"]["complete"]["auto_transition_on"] = []

        _edit(spec_dir / "transitions.yaml", drop_triggers)
        with pytest.raises(SpecLoadError, match="Invalid transition 'complete'"):
            load_state_machine_spec(spec_dir)

    def test_state_missing_hold_successor(self, spec_dir: Path):
        _edit(
            spec_dir / "state-machine.yaml",
            lambda d: d["states"]["VERIFIED"]["successors"].remove("HOLD"),
        )
        with pytest.raises(SpecLoadError, match="must list hold state"):
            load_state_machine_spec(spec_dir)

    def test_mapping_to_unknown_state(self, spec_dir: Path):
        _edit(
            spec_dir / "status-mapping.yaml",
            lambda d: d["from_external"]["pr_status"].update(merged="SHIPPED"),
        )
        with pytest.raises(SpecLoadError, match="unknown state 'SHIPPED'"):
            load_state_machine_spec(spec_dir)

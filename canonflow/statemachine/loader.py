"""Load and validate the state machine specification from YAML.

The specification lives in three files inside one directory:

- ``state-machine.yaml``: states keyed by name
- ``transitions.yaml``: transitions keyed by name
- ``status-mapping.yaml``: label/status mappings to and from external systems

Any problem (missing file, YAML syntax, schema violation, dangling state
reference, duplicate ``(from, to)`` pair, broken HOLD wiring) raises
``SpecLoadError``. The process must not start with a partial state machine.
"""

from importlib import resources
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import ValidationError

from canonflow.enums import StateCategory
from canonflow.exceptions import SpecLoadError
from canonflow.statemachine.models import StateDefinition, StatusMapping, TransitionDefinition
from canonflow.statemachine.spec import StateMachineSpec

log = structlog.get_logger(__name__)

STATE_MACHINE_FILE = "state-machine.yaml"
TRANSITIONS_FILE = "transitions.yaml"
STATUS_MAPPING_FILE = "status-mapping.yaml"


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.is_file():
        raise SpecLoadError("Specification file not found", path=str(path))
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise SpecLoadError(f"Cannot read specification file: {e}", path=str(path)) from e
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML syntax: {e}", path=str(path)) from e
    if not isinstance(data, dict):
        raise SpecLoadError("Specification must be a YAML mapping", path=str(path))
    return data


def _section(data: dict[str, Any], key: str, path: Path) -> dict[str, Any]:
    section = data.get(key)
    if not isinstance(section, dict) or not section:
        raise SpecLoadError(f"Missing or empty '{key}' section", path=str(path))
    return section


def _parse_states(data: dict[str, Any], path: Path) -> dict[str, StateDefinition]:
    states: dict[str, StateDefinition] = {}
    for name, body in _section(data, "states", path).items():
        try:
            states[name] = StateDefinition(name=name, **(body or {}))
        except (ValidationError, TypeError) as e:
            raise SpecLoadError(f"Invalid state '{name}': {e}", path=str(path)) from e
    return states


def _parse_transitions(data: dict[str, Any], path: Path) -> dict[tuple[str, str], TransitionDefinition]:
    transitions: dict[tuple[str, str], TransitionDefinition] = {}
    for name, body in _section(data, "transitions", path).items():
        try:
            transition = TransitionDefinition(name=name, **(body or {}))
        except (ValidationError, TypeError) as e:
            raise SpecLoadError(f"Invalid transition '{name}': {e}", path=str(path)) from e
        if transition.key in transitions:
            other = transitions[transition.key].name
            raise SpecLoadError(
                f"Duplicate transition for {transition.from_state} -> {transition.to_state}: '{other}' and '{name}'",
                path=str(path),
            )
        transitions[transition.key] = transition
    return transitions


def _validate_graph(
    states: dict[str, StateDefinition],
    transitions: dict[tuple[str, str], TransitionDefinition],
    mapping: StatusMapping,
) -> None:
    errors: list[str] = []

    for state in states.values():
        for ref in (*state.successors, *state.predecessors):
            if ref not in states:
                errors.append(f"state '{state.name}' references unknown state '{ref}'")

    for transition in transitions.values():
        for ref in transition.key:
            if ref not in states:
                errors.append(f"transition '{transition.name}' references unknown state '{ref}'")
        source = states.get(transition.from_state)
        if source is not None and transition.to_state not in source.successors:
            errors.append(
                f"transition '{transition.name}' is not backed by a successor of '{transition.from_state}'"
            )

    holds = [s for s in states.values() if s.category == StateCategory.SPECIAL_HOLD]
    if len(holds) > 1:
        errors.append(f"at most one hold state is allowed, found {sorted(s.name for s in holds)}")
    for hold in holds:
        if hold.terminal:
            errors.append(f"hold state '{hold.name}' must not be terminal")
        for state in states.values():
            if state.terminal or state.name == hold.name:
                continue
            if hold.name not in state.successors:
                errors.append(f"state '{state.name}' must list hold state '{hold.name}' as successor")
            if state.name not in hold.successors:
                errors.append(f"hold state '{hold.name}' must list '{state.name}' as successor")

    inbound = mapping.from_external
    for table_name in ("project_status", "labels", "issue_state", "pr_status"):
        for external, target in getattr(inbound, table_name).items():
            if target is not None and target not in states:
                errors.append(f"mapping {table_name}['{external}'] targets unknown state '{target}'")
    for name in mapping.to_external_labels:
        if name not in states:
            errors.append(f"label mapping defined for unknown state '{name}'")

    if errors:
        raise SpecLoadError("Invalid state machine: " + "; ".join(errors))


def load_state_machine_spec(spec_dir: str | Path) -> StateMachineSpec:
    """Load the state machine specification from a directory.

    Args:
        spec_dir: Directory containing the three specification files

    Returns:
        Immutable ``StateMachineSpec``

    Raises:
        SpecLoadError: On any missing or malformed input
    """
    base = Path(spec_dir)
    machine_path = base / STATE_MACHINE_FILE
    transitions_path = base / TRANSITIONS_FILE
    mapping_path = base / STATUS_MAPPING_FILE

    machine_yaml = _read_yaml(machine_path)
    transitions_yaml = _read_yaml(transitions_path)
    mapping_yaml = _read_yaml(mapping_path)

    states = _parse_states(machine_yaml, machine_path)
    transitions = _parse_transitions(transitions_yaml, transitions_path)
    try:
        mapping = StatusMapping(**mapping_yaml)
    except (ValidationError, TypeError) as e:
        raise SpecLoadError(f"Invalid status mapping: {e}", path=str(mapping_path)) from e

    _validate_graph(states, transitions, mapping)

    spec = StateMachineSpec(states, transitions, mapping, version=str(machine_yaml.get("version", "1")))
    log.info(
        "state_machine_loaded",
        spec_dir=str(base),
        version=spec.version,
        states=len(states),
        transitions=len(transitions),
    )
    return spec


def default_spec_dir() -> Path:
    """Directory of the specification bundled with the package."""
    return Path(str(resources.files("canonflow.statemachine") / "definitions"))


def load_default_spec() -> StateMachineSpec:
    """Load the bundled canonical issue lifecycle."""
    return load_state_machine_spec(default_spec_dir())

"""
Canonical state machine for the issue lifecycle.

``StateMachineSpec`` is an immutable, explicitly constructed configuration
object. It is built once by ``load_state_machine_spec`` and passed by
reference to every component that needs it; there is no module-level
cache.

Rules enforced here:

- A terminal state never transitions anywhere.
- A transition is structurally allowed iff the target is listed as a
  successor of the source.
- A structurally allowed pair without a transition definition is
  "unspecified" and callers must deny it by default.
- Preconditions are fail-closed: a tag that is absent from the evidence
  counts as unmet.
- An incidental ``closed`` signal never implies a terminal state unless
  the inbound mapping table explicitly says so.

Example:
    >>> spec = load_default_spec()
    >>> spec.is_transition_allowed("IMPLEMENTING", "VERIFIED")
    True
    >>> spec.valid_next_states("DONE")
    []
"""

from collections.abc import Mapping
from types import MappingProxyType

import structlog

from canonflow.enums import StateCategory, StatusSource
from canonflow.exceptions import UnknownStateError
from canonflow.statemachine.evidence import Evidence, parse_evidence
from canonflow.statemachine.models import (
    ChecksRequirements,
    LabelMapping,
    PreconditionResult,
    StateDefinition,
    StatusMapping,
    TransitionCheck,
    TransitionDefinition,
)

log = structlog.get_logger(__name__)


class StateMachineSpec:
    """Loaded, read-only canonical state machine.

    Attributes:
        states: State definitions keyed by name
        transitions: Transition definitions keyed by ``(from, to)``
        mapping: External status mapping tables
        hold_state: Name of the special hold state, if the machine has one
    """

    def __init__(
        self,
        states: Mapping[str, StateDefinition],
        transitions: Mapping[tuple[str, str], TransitionDefinition],
        mapping: StatusMapping,
        version: str = "1",
    ) -> None:
        self.states: Mapping[str, StateDefinition] = MappingProxyType(dict(states))
        self.transitions: Mapping[tuple[str, str], TransitionDefinition] = MappingProxyType(dict(transitions))
        self.mapping = mapping
        self.version = version
        holds = [s.name for s in self.states.values() if s.category == StateCategory.SPECIAL_HOLD]
        self.hold_state: str | None = holds[0] if holds else None

    def __repr__(self) -> str:
        return f"StateMachineSpec(version={self.version!r}, states={len(self.states)}, transitions={len(self.transitions)})"

    def get_state(self, name: str) -> StateDefinition:
        """Look up a state by name.

        Raises:
            UnknownStateError: If no state has this name. There is no default
                state.
        """
        state = self.states.get(name)
        if state is None:
            raise UnknownStateError(name)
        return state

    def has_state(self, name: str) -> bool:
        return name in self.states

    def is_terminal(self, name: str) -> bool:
        """Check if a state is terminal.

        Raises:
            UnknownStateError: If the state does not exist
        """
        return self.get_state(name).terminal

    def is_transition_allowed(self, from_state: str, to_state: str) -> bool:
        """Check whether ``to_state`` is a structurally valid successor.

        Unknown source states and terminal source states always yield
        ``False``.
        """
        state = self.states.get(from_state)
        if state is None or state.terminal:
            return False
        return to_state in state.successors

    def valid_next_states(self, name: str) -> list[str]:
        """List the successors of a state (empty for terminal states).

        Raises:
            UnknownStateError: If the state does not exist
        """
        state = self.get_state(name)
        if state.terminal:
            return []
        return list(state.successors)

    def get_transition(self, from_state: str, to_state: str) -> TransitionDefinition | None:
        """Return the transition definition for a pair, or None.

        Absence is not an error; callers treat it as "unspecified, deny by
        default".
        """
        return self.transitions.get((from_state, to_state))

    def check_preconditions(
        self,
        transition: TransitionDefinition,
        evidence: Mapping[str, object] | Evidence | None,
    ) -> PreconditionResult:
        """Check a transition's required preconditions against evidence.

        A precondition is met only if its tag is present and ``True``.
        Missing tags are reported in declaration order.
        """
        parsed = parse_evidence(evidence)
        missing = [p.type for p in transition.preconditions if p.required and not parsed.is_true(p.type)]
        return PreconditionResult(met=not missing, missing=missing)

    def validate_transition(
        self,
        from_state: str,
        to_state: str,
        evidence: Mapping[str, object] | Evidence | None = None,
        trigger: str | None = None,
    ) -> TransitionCheck:
        """Produce a structured verdict for a proposed transition.

        Args:
            from_state: Current state
            to_state: Requested state
            evidence: Evidence map used for precondition checks
            trigger: Observed trigger when the transition is attempted
                automatically; ``None`` for a human-initiated transition

        Returns:
            ``TransitionCheck`` with a stable reason code
        """
        for name in (from_state, to_state):
            if name not in self.states:
                return TransitionCheck(False, "UNKNOWN_STATE", f"State not found: {name}")

        if self.states[from_state].terminal:
            return TransitionCheck(
                False, "TERMINAL_STATE", f"{from_state} is terminal and cannot transition"
            )

        if not self.is_transition_allowed(from_state, to_state):
            return TransitionCheck(
                False,
                "TRANSITION_NOT_ALLOWED",
                f"{to_state} is not a successor of {from_state}",
            )

        transition = self.get_transition(from_state, to_state)
        if transition is None:
            return TransitionCheck(
                False,
                "TRANSITION_UNSPECIFIED",
                f"No transition defined for {from_state} -> {to_state}",
            )

        if trigger is not None and (not transition.auto_transition or trigger not in transition.auto_transition_on):
            return TransitionCheck(
                False,
                "AUTO_TRANSITION_NOT_PERMITTED",
                f"Transition '{transition.name}' may not fire automatically on '{trigger}'",
                transition=transition,
            )

        result = self.check_preconditions(transition, evidence)
        if not result.met:
            return TransitionCheck(
                False,
                "PRECONDITIONS_NOT_MET",
                f"Missing preconditions: {', '.join(result.missing)}",
                transition=transition,
                missing=result.missing,
            )

        return TransitionCheck(True, "OK", f"{from_state} -> {to_state} permitted", transition=transition)

    def map_external_status(self, external_status: str, source: StatusSource | str) -> StateDefinition | None:
        """Map an external status value to a canonical state.

        Each source has its own table; there is no cross-table fallback.
        Entries mapped to ``None`` (for example ``closed``) and absent
        entries both return ``None``.
        """
        inbound = self.mapping.from_external
        table = {
            StatusSource.PROJECT_STATUS: inbound.project_status,
            StatusSource.LABELS: inbound.labels,
            StatusSource.ISSUE_STATE: inbound.issue_state,
            StatusSource.PR_STATUS: inbound.pr_status,
        }[StatusSource(source)]
        target = table.get(external_status)
        if target is None:
            return None
        return self.states.get(target)

    def labels_for_state(self, name: str) -> LabelMapping | None:
        """External labels to apply for a canonical state, if mapped."""
        return self.mapping.to_external_labels.get(name)

    def required_checks(self, name: str) -> ChecksRequirements | None:
        """CI checks associated with a canonical state, if any."""
        return self.mapping.checks_requirements.get(name)

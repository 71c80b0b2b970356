"""Canonical issue state machine.

Key Components:
    - StateMachineSpec: Immutable lifecycle definition and transition checks
    - load_state_machine_spec / load_default_spec: Fail-fast YAML loaders
    - EvidenceKind / parse_evidence: Typed evidence for preconditions

Example:
    >>> from canonflow.statemachine import load_default_spec
    >>> spec = load_default_spec()
    >>> spec.validate_transition("IMPLEMENTING", "VERIFIED", {"tests_pass": True}).reason_code
    'PRECONDITIONS_NOT_MET'
"""

from canonflow.statemachine.evidence import Evidence, EvidenceKind, parse_evidence
from canonflow.statemachine.loader import default_spec_dir, load_default_spec, load_state_machine_spec
from canonflow.statemachine.models import (
    PreconditionResult,
    StateDefinition,
    TransitionCheck,
    TransitionDefinition,
)
from canonflow.statemachine.spec import StateMachineSpec

__all__ = [
    "Evidence",
    "EvidenceKind",
    "PreconditionResult",
    "StateDefinition",
    "StateMachineSpec",
    "TransitionCheck",
    "TransitionDefinition",
    "default_spec_dir",
    "load_default_spec",
    "load_state_machine_spec",
    "parse_evidence",
]

"""Typed models for the canonical state machine specification.

The specification is loaded once from YAML and never mutated: every model
here is a frozen pydantic model, so a loaded ``StateMachineSpec`` can be
shared freely between the policy evaluator, the execution engine and
request handlers.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from pydantic import BaseModel, ConfigDict, Field, model_validator

from canonflow.enums import StateCategory, TransitionKind


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)


class StateDefinition(_Frozen):
    """A single canonical state."""

    name: str
    category: StateCategory
    terminal: bool = False
    active: bool = True
    entry_conditions: tuple[str, ...] = ()
    exit_conditions: tuple[str, ...] = ()
    predecessors: tuple[str, ...] = ()
    successors: tuple[str, ...] = ()

    @model_validator(mode="after")
    def _terminal_has_no_successors(self) -> StateDefinition:
        if self.terminal and self.successors:
            raise ValueError(f"terminal state '{self.name}' must not declare successors")
        return self


class Precondition(_Frozen):
    """A typed precondition tag on a transition."""

    type: str
    required: bool = True


class SideEffect(_Frozen):
    """A side effect descriptor executed by collaborators after a transition."""

    type: str
    action: str
    value: str | None = None


class TransitionDefinition(_Frozen):
    """A transition between two states.

    ``from`` and ``to`` are the YAML keys; they are exposed as
    ``from_state``/``to_state`` because ``from`` is a Python keyword.
    """

    name: str
    from_state: str = Field(alias="from")
    to_state: str = Field(alias="to")
    kind: TransitionKind = Field(alias="type")
    description: str = ""
    preconditions: tuple[Precondition, ...] = ()
    side_effects: tuple[SideEffect, ...] = ()
    evidence_required: bool = False
    evidence_types: tuple[str, ...] = ()
    auto_transition: bool = False
    auto_transition_on: tuple[str, ...] = ()

    @model_validator(mode="after")
    def _auto_transition_names_trigger(self) -> TransitionDefinition:
        # Automatic transitions may only fire on observed evidence.
        if self.auto_transition and not self.auto_transition_on:
            raise ValueError(f"automatic transition '{self.name}' must list auto_transition_on triggers")
        return self

    @property
    def key(self) -> tuple[str, str]:
        return (self.from_state, self.to_state)


class LabelMapping(_Frozen):
    """External labels applied for a canonical state."""

    primary_label: str
    additional_labels: tuple[str, ...] = ()
    description: str = ""


class CheckRequirement(_Frozen):
    name: str
    status: str = "success"
    description: str = ""


class ChecksRequirements(_Frozen):
    required_checks: tuple[CheckRequirement, ...] = ()
    optional_checks: tuple[CheckRequirement, ...] = ()


class InboundMapping(_Frozen):
    """External status -> canonical state tables, one per signal source.

    A ``None`` value explicitly records "this external status implies no
    canonical state"; it is how ``closed`` is kept from meaning ``DONE``.
    """

    project_status: dict[str, str | None] = Field(default_factory=dict)
    labels: dict[str, str | None] = Field(default_factory=dict)
    issue_state: dict[str, str | None] = Field(default_factory=dict)
    pr_status: dict[str, str | None] = Field(default_factory=dict)


class StatusMapping(_Frozen):
    """Bidirectional mapping between canonical states and external systems."""

    to_external_labels: dict[str, LabelMapping] = Field(default_factory=dict)
    from_external: InboundMapping = Field(default_factory=InboundMapping)
    checks_requirements: dict[str, ChecksRequirements] = Field(default_factory=dict)


@dataclass(frozen=True)
class PreconditionResult:
    """Outcome of ``check_preconditions``."""

    met: bool
    missing: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class TransitionCheck:
    """Structured verdict for a proposed transition.

    Attributes:
        allowed: Whether the transition may happen now
        reason_code: Stable machine-readable reason (``OK`` when allowed)
        message: Human-readable explanation
        transition: Matching transition definition, if one exists
        missing: Unmet precondition tags
    """

    allowed: bool
    reason_code: str
    message: str
    transition: TransitionDefinition | None = None
    missing: list[str] = field(default_factory=list)

"""
Playbook and run models for the execution engine.

A ``Playbook`` is a named, versioned list of steps. A ``RunRecord`` is one
concrete execution of a playbook; it embeds the playbook definition it was
started with so that a run can be resumed after a process restart without
consulting any external registry.

Example:
    Defining a two-step playbook::

        playbook = Playbook(
            id="redeploy",
            name="Redeploy last known good",
            steps=[
                PlaybookStep(id="snapshot", action="deploy.snapshot", assign="snapshot"),
                PlaybookStep(
                    id="rollout",
                    action="deploy.rollout",
                    params={"image": "${snapshot.image}"},
                    policy_action="redeploy_lkg",
                    retry=RetryPolicy(max_attempts=3, backoff_seconds=1.0),
                ),
            ],
        )
"""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, computed_field, model_validator

from canonflow.enums import RunStatus, StepStatus
from canonflow.exceptions import ConfigurationError


def utcnow() -> datetime:
    return datetime.now(UTC)


class RetryPolicy(BaseModel):
    """Retry behaviour for a step's delegated action.

    The delay after failed attempt ``n`` is
    ``backoff_seconds * backoff_multiplier ** (n - 1)``.
    """

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=1, ge=1, le=20)
    backoff_seconds: float = Field(default=0.0, ge=0.0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)


class TransitionRef(BaseModel):
    """Canonical state transition a step performs.

    Values may contain ``${var}`` references resolved against run
    variables before the state machine is consulted. ``trigger`` marks the
    transition as automatic; it must then be one the transition fires on.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    from_state: str = Field(alias="from")
    to_state: str = Field(alias="to")
    evidence: dict[str, Any] = Field(default_factory=dict)
    trigger: str | None = None


class PlaybookStep(BaseModel):
    """One step of a playbook."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    name: str = ""
    action: str
    params: dict[str, Any] = Field(default_factory=dict)
    condition: str | None = Field(default=None, alias="if")
    assign: str | None = None
    retry: RetryPolicy | None = None
    timeout_seconds: float | None = Field(default=None, gt=0)
    continue_on_error: bool | None = None
    policy_action: str | None = None
    target_type: str = "issue"
    target: str | None = None
    transition: TransitionRef | None = None

    @property
    def display_name(self) -> str:
        return self.name or self.id


class Playbook(BaseModel):
    """A named multi-step automated procedure."""

    model_config = ConfigDict(frozen=True)

    id: str
    version: str = "1"
    name: str = ""
    description: str = ""
    steps: tuple[PlaybookStep, ...]
    timeout_seconds: float = Field(default=300.0, gt=0)
    continue_on_error: bool = False
    retry: RetryPolicy = Field(default_factory=RetryPolicy)

    @model_validator(mode="after")
    def _unique_step_ids(self) -> Playbook:
        seen: set[str] = set()
        for step in self.steps:
            if step.id in seen:
                raise ValueError(f"duplicate step id '{step.id}'")
            seen.add(step.id)
        if not self.steps:
            raise ValueError("playbook must define at least one step")
        return self

    @classmethod
    def from_yaml(cls, path: str | Path, defaults: dict[str, Any] | None = None) -> Playbook:
        """Load a playbook definition from a YAML file.

        ``defaults`` supplies top-level values the file does not set
        (``timeout_seconds``, ``retry``).

        Raises:
            ConfigurationError: If the file is missing or invalid
        """
        playbook_file = Path(path)
        if not playbook_file.is_file():
            raise ConfigurationError(f"Playbook file not found: {path}")
        try:
            data = yaml.safe_load(playbook_file.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError("Playbook must be a YAML object")
        try:
            return cls.model_validate({**(defaults or {}), **data})
        except ValidationError as e:
            raise ConfigurationError(f"Invalid playbook {path}: {e}") from e


class StepRecord(BaseModel):
    """Persisted result of one step within a run."""

    id: str
    index: int
    name: str
    action: str
    status: StepStatus = StepStatus.PENDING
    attempts: int = 0
    output: Any = None
    error: str | None = None
    error_code: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def duration_ms(self) -> int | None:
        if self.started_at is None or self.completed_at is None:
            return None
        return int((self.completed_at - self.started_at).total_seconds() * 1000)


class PauseMetadata(BaseModel):
    paused_by: str
    reason: str
    paused_at: datetime = Field(default_factory=utcnow)
    paused_at_step: int | None = None
    awaiting_approval_for: str | None = None
    resumed_by: str | None = None
    resumed_at: datetime | None = None


class CancelMetadata(BaseModel):
    cancelled_by: str
    reason: str
    cancelled_at: datetime = Field(default_factory=utcnow)


class RunSummary(BaseModel):
    total_steps: int
    succeeded: int
    failed: int
    skipped: int
    pending: int
    duration_ms: int | None = None


class RunRecord(BaseModel):
    """One execution of a playbook, owning its step records."""

    id: str = Field(default_factory=lambda: f"run-{uuid4().hex}")
    playbook: Playbook
    environment: str | None = None
    status: RunStatus = RunStatus.PENDING
    triggered_by: str | None = None
    variables: dict[str, Any] = Field(default_factory=dict)
    steps: list[StepRecord] = Field(default_factory=list)
    approved_steps: dict[str, str] = Field(default_factory=dict)
    pause: PauseMetadata | None = None
    pause_history: list[PauseMetadata] = Field(default_factory=list)
    cancellation: CancelMetadata | None = None
    error: str | None = None
    error_code: str | None = None
    active_seconds: float = 0.0
    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def for_playbook(
        cls,
        playbook: Playbook,
        environment: str | None = None,
        variables: dict[str, Any] | None = None,
        triggered_by: str | None = None,
    ) -> RunRecord:
        """Create a pending run with one pending step record per playbook step."""
        return cls(
            playbook=playbook,
            environment=environment,
            triggered_by=triggered_by,
            variables=dict(variables or {}),
            steps=[
                StepRecord(id=step.id, index=i, name=step.display_name, action=step.action)
                for i, step in enumerate(playbook.steps)
            ],
        )

    @property
    def playbook_id(self) -> str:
        return self.playbook.id

    @computed_field  # type: ignore[prop-decorator]
    @property
    def summary(self) -> RunSummary:
        counts = {status: 0 for status in StepStatus}
        for step in self.steps:
            counts[step.status] += 1
        duration_ms = None
        if self.started_at is not None and self.completed_at is not None:
            duration_ms = int((self.completed_at - self.started_at).total_seconds() * 1000)
        return RunSummary(
            total_steps=len(self.steps),
            succeeded=counts[StepStatus.SUCCEEDED],
            failed=counts[StepStatus.FAILED],
            skipped=counts[StepStatus.SKIPPED],
            pending=counts[StepStatus.PENDING] + counts[StepStatus.RUNNING],
            duration_ms=duration_ms,
        )

"""Enumerations shared across the canonflow control plane."""

from enum import Enum


class StateCategory(str, Enum):
    """Category of a canonical issue state."""

    INITIAL = "initial"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    VERIFICATION = "verification"
    MERGE_PENDING = "merge_pending"
    TERMINAL = "terminal"
    SPECIAL_HOLD = "special_hold"

    def __str__(self) -> str:
        return self.value


class TransitionKind(str, Enum):
    """Kind of a state transition."""

    FORWARD = "forward"
    BACKWARD = "backward"
    PAUSE = "pause"
    RESUME = "resume"
    TERMINATE = "terminate"

    def __str__(self) -> str:
        return self.value


class StatusSource(str, Enum):
    """External signal source used when mapping a status to a canonical state."""

    PROJECT_STATUS = "project_status"
    LABELS = "labels"
    ISSUE_STATE = "issue_state"
    PR_STATUS = "pr_status"

    def __str__(self) -> str:
        return self.value


class Decision(str, Enum):
    """Outcome of a policy evaluation."""

    ALLOWED = "allowed"
    DENIED = "denied"

    def __str__(self) -> str:
        return self.value


class RunStatus(str, Enum):
    """Status of a playbook run.

    Transitions are governed by ``canonflow.engine.run_state``:
    PENDING -> RUNNING -> {COMPLETED | FAILED | CANCELLED}, with PAUSED
    reachable from RUNNING and returning only to RUNNING (or being
    cancelled by an operator).
    """

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        """Check if no further transitions are possible."""
        return self in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)


class StepStatus(str, Enum):
    """Status of a single step within a run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    def __str__(self) -> str:
        return self.value

    @property
    def is_final(self) -> bool:
        """Check if the step has a recorded outcome."""
        return self in (StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.SKIPPED)


class ListOp(str, Enum):
    """Operations accepted on list fields of a draft patch."""

    APPEND = "append"
    REMOVE = "remove"
    REPLACE_BY_INDEX = "replaceByIndex"
    REPLACE_ALL = "replaceAll"

    def __str__(self) -> str:
        return self.value

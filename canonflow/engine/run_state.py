"""Explicit transition tables for run and step statuses.

Run statuses::

    pending  -> running | cancelled
    running  -> paused | completed | failed | cancelled
    paused   -> running | cancelled
    completed, failed, cancelled: no exits

``paused`` never leads directly to ``completed`` or ``failed``: a paused run
must be resumed first, or cancelled. A cancelled run cannot be resumed.

Step statuses::

    pending  -> running | skipped | failed
    running  -> succeeded | failed | running

``running -> running`` is re-entry of a step whose attempt was interrupted
by a process restart before its outcome was recorded.
"""

from types import MappingProxyType

from canonflow.enums import RunStatus, StepStatus
from canonflow.exceptions import InvalidRunStateError, WorkflowError

RUN_TRANSITIONS = MappingProxyType(
    {
        RunStatus.PENDING: frozenset({RunStatus.RUNNING, RunStatus.CANCELLED}),
        RunStatus.RUNNING: frozenset(
            {RunStatus.PAUSED, RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED}
        ),
        RunStatus.PAUSED: frozenset({RunStatus.RUNNING, RunStatus.CANCELLED}),
        RunStatus.COMPLETED: frozenset(),
        RunStatus.FAILED: frozenset(),
        RunStatus.CANCELLED: frozenset(),
    }
)

STEP_TRANSITIONS = MappingProxyType(
    {
        StepStatus.PENDING: frozenset({StepStatus.RUNNING, StepStatus.SKIPPED, StepStatus.FAILED}),
        StepStatus.RUNNING: frozenset({StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.RUNNING}),
        StepStatus.SUCCEEDED: frozenset(),
        StepStatus.FAILED: frozenset(),
        StepStatus.SKIPPED: frozenset(),
    }
)


def can_transition_run(current: RunStatus, target: RunStatus) -> bool:
    return target in RUN_TRANSITIONS[current]


def sources_for(target: RunStatus) -> frozenset[RunStatus]:
    """Run statuses from which ``target`` is reachable.

    Used as the compare-and-set guard when persisting a status change.
    """
    return frozenset(status for status, targets in RUN_TRANSITIONS.items() if target in targets)


def ensure_run_transition(run_id: str, current: RunStatus, target: RunStatus, action: str) -> None:
    """Raise ``InvalidRunStateError`` unless ``current -> target`` is permitted."""
    if not can_transition_run(current, target):
        raise InvalidRunStateError(run_id, current.value, action)


def can_transition_step(current: StepStatus, target: StepStatus) -> bool:
    return target in STEP_TRANSITIONS[current]


def ensure_step_transition(step_id: str, current: StepStatus, target: StepStatus) -> None:
    if not can_transition_step(current, target):
        raise WorkflowError(f"Step {step_id} cannot move from '{current}' to '{target}'")

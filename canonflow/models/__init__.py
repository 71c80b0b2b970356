"""Domain models shared by the policy evaluator, execution engine and stores."""

from canonflow.models.audit import AuditSnapshot, ExecutionRecord, IdempotencyClaim
from canonflow.models.runs import (
    CancelMetadata,
    PauseMetadata,
    Playbook,
    PlaybookStep,
    RetryPolicy,
    RunRecord,
    RunSummary,
    StepRecord,
    TransitionRef,
)

__all__ = [
    "AuditSnapshot",
    "CancelMetadata",
    "ExecutionRecord",
    "IdempotencyClaim",
    "PauseMetadata",
    "Playbook",
    "PlaybookStep",
    "RetryPolicy",
    "RunRecord",
    "RunSummary",
    "StepRecord",
    "TransitionRef",
]

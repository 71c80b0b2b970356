"""
Audit trail models for policy decisions.

``ExecutionRecord`` rows are append-only: once inserted they are never
updated or deleted. Rate windows and cooldowns are computed from them, and
``AuditSnapshot`` is the consistent read a single evaluation works from.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from canonflow.enums import Decision


def _new_record_id() -> str:
    return f"rec-{uuid4().hex}"


class ExecutionRecord(BaseModel):
    """Immutable audit row for one evaluated or attempted action."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_record_id)
    request_id: str
    session_id: str | None = None
    action_type: str
    action_fingerprint: str
    target_type: str
    target_identifier: str
    decision: Decision
    reason: str
    reason_code: str
    idempotency_key: str
    idempotency_key_hash: str
    policy_name: str | None = None
    enforcement_data: dict[str, Any] = Field(default_factory=dict)
    next_allowed_at: datetime | None = None
    deployment_env: str | None = None
    actor: str | None = None
    approval_fingerprint: str | None = None
    policy_set_version: str | None = None
    policy_set_hash: str | None = None
    context_data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def allowed(self) -> bool:
        return self.decision == Decision.ALLOWED


@dataclass(frozen=True)
class AuditSnapshot:
    """Consistent view of prior allowed executions for one action and target.

    Attributes:
        count_in_window: Allowed executions created at or after the window start
        oldest_in_window: Earliest allowed execution inside the window
        last_allowed: Most recent allowed execution, regardless of window
    """

    count_in_window: int = 0
    oldest_in_window: ExecutionRecord | None = None
    last_allowed: ExecutionRecord | None = None


@dataclass(frozen=True)
class IdempotencyClaim:
    """Result of a first-writer-wins claim on an idempotency key hash.

    Attributes:
        claimed: True if this caller now owns the key (or already did)
        duplicate: True if another owner claimed the key first
        owner: Owner recorded for the key
        claimed_at: When the winning claim was made
    """

    key_hash: str
    claimed: bool
    duplicate: bool
    owner: str
    claimed_at: datetime

"""
Persistence capability consumed by the control plane core.

The core never talks to a database directly. It needs exactly these
operations, each of which must be a single atomic step in the backing
store:

Audit trail:
    - ``insert_record_if_absent``: append an ``ExecutionRecord`` unless a
      record with the same ``request_id`` already exists
    - ``claim_idempotency_key``: first-writer-wins claim of a key hash
    - ``audit_snapshot``: consistent read of window/cooldown counters

Runs:
    - ``create_run``: insert a new run
    - ``update_step``: replace one step record of a run
    - ``update_run``: change run fields, optionally guarded by a
      compare-and-set on the current status
    - ``get_run`` / ``list_runs``: reads

Implementations raise ``PersistenceError`` when the backing store is
unavailable; callers never treat a failed write as success.
"""

from collections.abc import Iterable
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from canonflow.enums import RunStatus
from canonflow.models.audit import AuditSnapshot, ExecutionRecord, IdempotencyClaim
from canonflow.models.runs import RunRecord, StepRecord


@runtime_checkable
class AuditStore(Protocol):
    """Append-only audit trail with idempotency claims."""

    async def insert_record_if_absent(self, record: ExecutionRecord) -> tuple[bool, ExecutionRecord]:
        """Insert a record keyed by ``request_id``.

        Returns:
            ``(inserted, stored_record)``; when a record with the same
            request id exists, ``inserted`` is False and the existing record
            is returned unchanged.
        """
        ...

    async def claim_idempotency_key(self, key_hash: str, owner: str) -> IdempotencyClaim:
        """Claim a key hash for ``owner`` if nobody holds it yet."""
        ...

    async def audit_snapshot(self, action_type: str, target_identifier: str, since: datetime) -> AuditSnapshot:
        """Read counters for allowed executions of an action on a target."""
        ...

    async def list_records(
        self, action_type: str | None = None, target_identifier: str | None = None
    ) -> list[ExecutionRecord]:
        """List records in insertion order, optionally filtered."""
        ...


@runtime_checkable
class RunStore(Protocol):
    """Durable storage for runs and their step records."""

    async def create_run(self, run: RunRecord) -> RunRecord: ...

    async def get_run(self, run_id: str) -> RunRecord | None: ...

    async def list_runs(self, status: RunStatus | None = None) -> list[RunRecord]: ...

    async def update_step(self, run_id: str, step: StepRecord) -> RunRecord: ...

    async def update_run(
        self,
        run_id: str,
        changes: dict[str, Any],
        expected_status: Iterable[RunStatus] | None = None,
        action: str = "update",
    ) -> RunRecord:
        """Apply field changes to a run.

        ``action`` names the operation in error messages ("pause", "resume").

        Raises:
            RunNotFoundError: If the run does not exist
            InvalidRunStateError: If ``expected_status`` is given and the
                stored status is not one of them
        """
        ...


def build_snapshot(records: Iterable[ExecutionRecord], action_type: str, target_identifier: str, since: datetime) -> AuditSnapshot:
    """Compute an ``AuditSnapshot`` from records in insertion order.

    Only ``allowed`` records count. A record is inside the window when it
    was created at or after ``since``.
    """
    count = 0
    oldest: ExecutionRecord | None = None
    last: ExecutionRecord | None = None
    for record in records:
        if not record.allowed or record.action_type != action_type or record.target_identifier != target_identifier:
            continue
        if last is None or record.created_at >= last.created_at:
            last = record
        if record.created_at >= since:
            count += 1
            if oldest is None or record.created_at < oldest.created_at:
                oldest = record
    return AuditSnapshot(count_in_window=count, oldest_in_window=oldest, last_allowed=last)

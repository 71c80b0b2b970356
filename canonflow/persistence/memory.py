"""In-process store implementing both ``AuditStore`` and ``RunStore``.

Every operation runs under a single ``asyncio.Lock`` so each call is
atomic with respect to other coroutines in the same event loop. Records
and runs are deep-copied on the way in and out so callers can never mutate
stored state by accident.
"""

import asyncio
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

import structlog

from canonflow.enums import RunStatus
from canonflow.exceptions import InvalidRunStateError, RunNotFoundError, WorkflowError
from canonflow.models.audit import AuditSnapshot, ExecutionRecord, IdempotencyClaim
from canonflow.models.runs import RunRecord, StepRecord
from canonflow.persistence.base import build_snapshot

log = structlog.get_logger(__name__)


def apply_run_changes(
    run: RunRecord,
    changes: dict[str, Any],
    expected_status: Iterable[RunStatus] | None,
    requested: str,
) -> RunRecord:
    """Validate a guarded update and return the changed copy of ``run``."""
    if expected_status is not None:
        allowed = set(expected_status)
        if run.status not in allowed:
            raise InvalidRunStateError(run.id, run.status.value, requested)
    data = run.model_dump()
    data.update(changes)
    data["updated_at"] = datetime.now(UTC)
    return RunRecord.model_validate(data)


def replace_step(run: RunRecord, step: StepRecord) -> RunRecord:
    """Return a copy of ``run`` with one step record replaced by index."""
    if not 0 <= step.index < len(run.steps) or run.steps[step.index].id != step.id:
        raise WorkflowError(f"Step {step.id} at index {step.index} does not belong to run {run.id}")
    updated = run.model_copy(deep=True)
    updated.steps[step.index] = step.model_copy(deep=True)
    updated.updated_at = datetime.now(UTC)
    return updated


class InMemoryStore:
    """Volatile store for tests, the CLI and single-process deployments."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._records: list[ExecutionRecord] = []
        self._request_index: dict[str, ExecutionRecord] = {}
        self._claims: dict[str, IdempotencyClaim] = {}
        self._runs: dict[str, RunRecord] = {}

    async def insert_record_if_absent(self, record: ExecutionRecord) -> tuple[bool, ExecutionRecord]:
        async with self._lock:
            existing = self._request_index.get(record.request_id)
            if existing is not None:
                return False, existing
            self._records.append(record)
            self._request_index[record.request_id] = record
            return True, record

    async def claim_idempotency_key(self, key_hash: str, owner: str) -> IdempotencyClaim:
        async with self._lock:
            existing = self._claims.get(key_hash)
            if existing is None:
                claim = IdempotencyClaim(
                    key_hash=key_hash,
                    claimed=True,
                    duplicate=False,
                    owner=owner,
                    claimed_at=datetime.now(UTC),
                )
                self._claims[key_hash] = claim
                return claim
            same_owner = existing.owner == owner
            return IdempotencyClaim(
                key_hash=key_hash,
                claimed=same_owner,
                duplicate=not same_owner,
                owner=existing.owner,
                claimed_at=existing.claimed_at,
            )

    async def audit_snapshot(self, action_type: str, target_identifier: str, since: datetime) -> AuditSnapshot:
        async with self._lock:
            return build_snapshot(self._records, action_type, target_identifier, since)

    async def list_records(
        self, action_type: str | None = None, target_identifier: str | None = None
    ) -> list[ExecutionRecord]:
        async with self._lock:
            return [
                r
                for r in self._records
                if (action_type is None or r.action_type == action_type)
                and (target_identifier is None or r.target_identifier == target_identifier)
            ]

    async def create_run(self, run: RunRecord) -> RunRecord:
        async with self._lock:
            if run.id in self._runs:
                raise InvalidRunStateError(run.id, self._runs[run.id].status.value, "create")
            self._runs[run.id] = run.model_copy(deep=True)
            return run.model_copy(deep=True)

    async def get_run(self, run_id: str) -> RunRecord | None:
        async with self._lock:
            run = self._runs.get(run_id)
            return run.model_copy(deep=True) if run is not None else None

    async def list_runs(self, status: RunStatus | None = None) -> list[RunRecord]:
        async with self._lock:
            return [
                run.model_copy(deep=True)
                for run in sorted(self._runs.values(), key=lambda r: r.created_at)
                if status is None or run.status == status
            ]

    async def update_step(self, run_id: str, step: StepRecord) -> RunRecord:
        async with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                raise RunNotFoundError(run_id)
            updated = replace_step(run, step)
            self._runs[run_id] = updated
            return updated.model_copy(deep=True)

    async def update_run(
        self,
        run_id: str,
        changes: dict[str, Any],
        expected_status: Iterable[RunStatus] | None = None,
        action: str = "update",
    ) -> RunRecord:
        async with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                raise RunNotFoundError(run_id)
            updated = apply_run_changes(run, changes, expected_status, action)
            self._runs[run_id] = updated
            return updated.model_copy(deep=True)

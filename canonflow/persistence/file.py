"""
JSON-file store with atomic writes, safe to share between processes.

Implements ``AuditStore`` and ``RunStore`` on the local filesystem so that
runs survive process restarts and several engine processes can work from
the same state directory.

Layout::

    {state_dir}/
        runs/{run_id}.json              one file per run, replaced atomically
        audit/records/{sha256}.json     one immutable file per ExecutionRecord,
                                        named by the hash of its request_id
        audit/claims/{sha256}.json      one immutable file per idempotency claim,
                                        named by the hash of the claimed key
        locks/{run_id}.lock             flock sidecar guarding a run's updates

Atomicity:
    Run writes go to a uniquely named ``.tmp`` sibling first and are then
    renamed over the target, so readers only ever observe the previous or
    the new complete document. Audit records and claims are written to a
    temp file and hard-linked into place: the link fails if the name
    already exists, which makes insert-if-absent and first-writer-wins a
    single filesystem operation.

Concurrency Model:
    Run updates are read-modify-write and hold two locks: an asyncio lock
    per run for coroutines of this process, and an exclusive ``flock`` on
    the run's lock file for other processes. The run is re-read after both
    are held, so a pause written by another process is never overwritten.
    Audit records and claims need no lock.
"""

import asyncio
import fcntl
import json
import os
import weakref
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

import aiofiles
import structlog
from pydantic import ValidationError

from canonflow.enums import RunStatus
from canonflow.exceptions import InvalidRunStateError, PersistenceError, RunNotFoundError
from canonflow.models.audit import AuditSnapshot, ExecutionRecord, IdempotencyClaim
from canonflow.models.runs import RunRecord, StepRecord
from canonflow.persistence.base import build_snapshot
from canonflow.persistence.memory import apply_run_changes, replace_step
from canonflow.utils.hashing import sha256_hex
from canonflow.utils.retry import async_retry

log = structlog.get_logger(__name__)

_LOCK_POLL_SECONDS = 0.01


def _tmp_path(path: Path) -> Path:
    return path.with_name(f".{path.name}.{uuid4().hex}.tmp")


async def _flock_exclusive(fd: int) -> None:
    """Take an exclusive flock without blocking the event loop."""
    while True:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            return
        except BlockingIOError:
            await asyncio.sleep(_LOCK_POLL_SECONDS)


class FileStore:
    """Durable store backed by JSON documents in a directory.

    Attributes:
        state_dir: Root directory for all store files.
    """

    def __init__(self, state_dir: str | Path) -> None:
        """Initialize the store, creating its directories if needed.

        Args:
            state_dir: Root directory. Created with parents if missing.
        """
        self.state_dir = Path(state_dir)
        self.runs_dir = self.state_dir / "runs"
        self.records_dir = self.state_dir / "audit" / "records"
        self.claims_dir = self.state_dir / "audit" / "claims"
        self.locks_dir = self.state_dir / "locks"
        try:
            for directory in (self.runs_dir, self.records_dir, self.claims_dir, self.locks_dir):
                directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceError(f"Cannot create state directory {self.state_dir}: {e}") from e
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _run_path(self, run_id: str) -> Path:
        return self.runs_dir / f"{run_id}.json"

    def record_path(self, request_id: str) -> Path:
        return self.records_dir / f"{sha256_hex(request_id)}.json"

    def claim_path(self, key_hash: str) -> Path:
        return self.claims_dir / f"{sha256_hex(key_hash)}.json"

    def _get_lock(self, run_id: str) -> asyncio.Lock:
        lock = self._locks.get(run_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[run_id] = lock
        return lock

    @asynccontextmanager
    async def _run_lock(self, run_id: str) -> AsyncIterator[None]:
        async with self._get_lock(run_id):
            lock_path = self.locks_dir / f"{run_id}.lock"
            try:
                handle = lock_path.open("a+", encoding="utf-8")
            except OSError as e:
                raise PersistenceError(f"Cannot open lock file {lock_path}: {e}") from e
            with handle:
                await _flock_exclusive(handle.fileno())
                try:
                    yield
                finally:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    @async_retry(max_attempts=3, exceptions=(OSError,))
    async def _write_json_raw(self, path: Path, payload: str) -> None:
        tmp_path = _tmp_path(path)
        try:
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(payload)
            tmp_path.replace(path)
        finally:
            tmp_path.unlink(missing_ok=True)

    async def _write_json(self, path: Path, data: Any) -> None:
        try:
            await self._write_json_raw(path, json.dumps(data, indent=2, sort_keys=True))
        except OSError as e:
            log.error("store_write_failed", path=str(path), error=str(e))
            raise PersistenceError(f"Failed to write {path}: {e}") from e

    @async_retry(max_attempts=3, exceptions=(OSError,))
    async def _create_exclusive_raw(self, path: Path, payload: str) -> bool:
        tmp_path = _tmp_path(path)
        try:
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(payload)
            try:
                os.link(tmp_path, path)
            except FileExistsError:
                return False
            return True
        finally:
            tmp_path.unlink(missing_ok=True)

    async def _create_exclusive(self, path: Path, data: Any) -> bool:
        """Write ``data`` to ``path`` unless the file already exists.

        Returns:
            True if this call created the file
        """
        try:
            return await self._create_exclusive_raw(path, json.dumps(data, indent=2, sort_keys=True))
        except OSError as e:
            log.error("store_write_failed", path=str(path), error=str(e))
            raise PersistenceError(f"Failed to write {path}: {e}") from e

    async def _read_json(self, path: Path, default: Any) -> Any:
        if not path.exists():
            return default
        try:
            async with aiofiles.open(path, encoding="utf-8") as f:
                return json.loads(await f.read())
        except FileNotFoundError:
            return default
        except OSError as e:
            raise PersistenceError(f"Failed to read {path}: {e}") from e
        except json.JSONDecodeError as e:
            raise PersistenceError(f"Corrupt store file {path}: {e}", retryable=False) from e

    async def _load_record(self, path: Path) -> ExecutionRecord | None:
        raw = await self._read_json(path, None)
        if raw is None:
            return None
        try:
            return ExecutionRecord.model_validate(raw)
        except ValidationError as e:
            raise PersistenceError(f"Corrupt audit record in {path}: {e}", retryable=False) from e

    async def _load_records(self) -> list[ExecutionRecord]:
        records = []
        for path in self.records_dir.glob("*.json"):
            record = await self._load_record(path)
            if record is not None:
                records.append(record)
        return sorted(records, key=lambda r: (r.created_at, r.id))

    async def _load_run(self, run_id: str) -> RunRecord | None:
        raw = await self._read_json(self._run_path(run_id), None)
        if raw is None:
            return None
        try:
            return RunRecord.model_validate(raw)
        except ValidationError as e:
            raise PersistenceError(f"Corrupt run file for {run_id}: {e}", retryable=False) from e

    async def _save_run(self, run: RunRecord) -> None:
        await self._write_json(self._run_path(run.id), run.model_dump(mode="json", exclude={"summary"}))

    async def insert_record_if_absent(self, record: ExecutionRecord) -> tuple[bool, ExecutionRecord]:
        path = self.record_path(record.request_id)
        if await self._create_exclusive(path, record.model_dump(mode="json")):
            return True, record
        existing = await self._load_record(path)
        if existing is None:
            raise PersistenceError(f"Audit record for request {record.request_id} vanished from {path}")
        return False, existing

    async def claim_idempotency_key(self, key_hash: str, owner: str) -> IdempotencyClaim:
        path = self.claim_path(key_hash)
        now = datetime.now(UTC)
        if await self._create_exclusive(path, {"key_hash": key_hash, "owner": owner, "claimed_at": now.isoformat()}):
            return IdempotencyClaim(key_hash=key_hash, claimed=True, duplicate=False, owner=owner, claimed_at=now)

        existing = await self._read_json(path, None)
        if existing is None:
            raise PersistenceError(f"Idempotency claim vanished from {path}")
        same_owner = existing["owner"] == owner
        return IdempotencyClaim(
            key_hash=key_hash,
            claimed=same_owner,
            duplicate=not same_owner,
            owner=existing["owner"],
            claimed_at=datetime.fromisoformat(existing["claimed_at"]),
        )

    async def audit_snapshot(self, action_type: str, target_identifier: str, since: datetime) -> AuditSnapshot:
        records = await self._load_records()
        return build_snapshot(records, action_type, target_identifier, since)

    async def list_records(
        self, action_type: str | None = None, target_identifier: str | None = None
    ) -> list[ExecutionRecord]:
        """List records oldest first, optionally filtered."""
        records = await self._load_records()
        return [
            r
            for r in records
            if (action_type is None or r.action_type == action_type)
            and (target_identifier is None or r.target_identifier == target_identifier)
        ]

    async def create_run(self, run: RunRecord) -> RunRecord:
        async with self._run_lock(run.id):
            existing = await self._load_run(run.id)
            if existing is not None:
                raise InvalidRunStateError(run.id, existing.status.value, "create")
            await self._save_run(run)
        log.debug("run_created", run_id=run.id, playbook_id=run.playbook_id)
        return run.model_copy(deep=True)

    async def get_run(self, run_id: str) -> RunRecord | None:
        return await self._load_run(run_id)

    async def list_runs(self, status: RunStatus | None = None) -> list[RunRecord]:
        runs = []
        for run_file in self.runs_dir.glob("*.json"):
            run = await self.get_run(run_file.stem)
            if run is not None and (status is None or run.status == status):
                runs.append(run)
        return sorted(runs, key=lambda r: r.created_at)

    async def update_step(self, run_id: str, step: StepRecord) -> RunRecord:
        async with self._run_lock(run_id):
            run = await self._load_run(run_id)
            if run is None:
                raise RunNotFoundError(run_id)
            updated = replace_step(run, step)
            await self._save_run(updated)
            return updated

    async def update_run(
        self,
        run_id: str,
        changes: dict[str, Any],
        expected_status: Iterable[RunStatus] | None = None,
        action: str = "update",
    ) -> RunRecord:
        async with self._run_lock(run_id):
            run = await self._load_run(run_id)
            if run is None:
                raise RunNotFoundError(run_id)
            updated = apply_run_changes(run, changes, expected_status, action)
            await self._save_run(updated)
            return updated

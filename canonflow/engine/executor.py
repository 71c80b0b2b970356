"""
Resumable execution engine for multi-step playbook runs.

This module provides the ExecutionEngine class, which drives playbook runs
step by step and persists every step and run status change through a
``RunStore`` before moving on. A crash at any point leaves the last
durably-recorded state, which is always a valid state.

Step Lifecycle:
    1. The step's ``if`` condition is evaluated against run variables;
       false marks the step ``skipped``
    2. A declared canonical state ``transition`` is validated against the
       state machine (structural failures are never retried)
    3. A declared ``policy_action`` is evaluated and recorded by the policy
       evaluator, then its idempotency key is claimed. A denial that needs
       human approval pauses the run; any other denial fails the step. A
       key already claimed by another run skips the step.
    4. The step is marked ``running`` and its action is invoked with
       retries and exponential backoff
    5. The outcome is recorded; ``assign`` copies the output into run
       variables

Pause and Cancel:
    Both are requested out-of-band and are cooperative: the engine re-reads
    the run status from the store between steps and stops scheduling new
    steps once the run is no longer ``running``. An in-flight action call is
    never preempted by a pause.

Timeout:
    ``Playbook.timeout_seconds`` bounds the total time the run spends
    executing, accumulated across resumes. Exceeding it fails the run with
    ``RUN_TIMEOUT``; steps that never started stay ``pending``. A run that
    was paused while its last step was in flight is never failed: the step
    records its outcome and the run stays ``paused``.

Example:
    >>> engine = ExecutionEngine(InMemoryStore(), ActionRegistry())
    >>> run = await engine.start(playbook, environment="staging", triggered_by="ops")
    >>> run.status
    <RunStatus.COMPLETED: 'completed'>
"""

import asyncio
import contextlib
import time
from typing import Any

import structlog

from canonflow.enums import RunStatus, StepStatus
from canonflow.engine.actions import ActionContext, ActionRegistry
from canonflow.engine.expressions import evaluate_condition, substitute
from canonflow.engine.run_state import ensure_run_transition, ensure_step_transition, sources_for
from canonflow.exceptions import (
    ActionNotRegisteredError,
    InvalidRunStateError,
    RunNotFoundError,
    StepExecutionError,
    WorkflowError,
)
from canonflow.models.runs import (
    CancelMetadata,
    PauseMetadata,
    Playbook,
    PlaybookStep,
    RunRecord,
    StepRecord,
    utcnow,
)
from canonflow.persistence.base import RunStore
from canonflow.policy.evaluator import PolicyEvaluator
from canonflow.policy.models import PolicyContext
from canonflow.statemachine.models import TransitionDefinition
from canonflow.statemachine.spec import StateMachineSpec
from canonflow.utils.hashing import content_hash
from canonflow.utils.logging_config import bind_run_context, clear_run_context
from canonflow.utils.retry import backoff_delay

log = structlog.get_logger(__name__)

RUN_TIMEOUT = "RUN_TIMEOUT"
STEP_TIMEOUT = "STEP_TIMEOUT"
STEP_FAILED = "STEP_FAILED"
DUPLICATE_ACTION = "DUPLICATE_ACTION"
POLICY_UNAVAILABLE = "POLICY_UNAVAILABLE"
STATE_MACHINE_UNAVAILABLE = "STATE_MACHINE_UNAVAILABLE"


class _StepFailure(Exception):
    """Internal signal carrying the reason a step must be marked failed."""

    def __init__(self, message: str, code: str, output: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.output = output


class ExecutionEngine:
    """Drive playbook runs through their steps.

    Attributes:
        store: Durable run storage
        actions: Registry of delegated step actions
        state_machine: Canonical lifecycle used for step transitions
        policy: Policy evaluator used for governed steps
    """

    def __init__(
        self,
        store: RunStore,
        actions: ActionRegistry,
        state_machine: StateMachineSpec | None = None,
        policy: PolicyEvaluator | None = None,
    ) -> None:
        self.store = store
        self.actions = actions
        self.state_machine = state_machine
        self.policy = policy
        self._active: set[str] = set()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def start(
        self,
        playbook: Playbook,
        environment: str | None = None,
        variables: dict[str, Any] | None = None,
        triggered_by: str | None = None,
    ) -> RunRecord:
        """Create a run for ``playbook`` and execute it.

        Returns:
            The run as persisted when execution stopped (completed, failed,
            paused or cancelled)

        Raises:
            PersistenceError: If the run cannot be stored
        """
        run = RunRecord.for_playbook(playbook, environment, variables, triggered_by)
        run = await self.store.create_run(run)
        log.info(
            "run_created",
            run_id=run.id,
            playbook_id=playbook.id,
            playbook_version=playbook.version,
            environment=environment,
            triggered_by=triggered_by,
        )
        await self._set_status(run.id, RunStatus.RUNNING, "start", started_at=utcnow())
        return await self._drive(run.id)

    async def pause(self, run_id: str, paused_by: str, reason: str) -> RunRecord:
        """Pause a running run before its next step.

        Raises:
            RunNotFoundError: If the run does not exist
            InvalidRunStateError: If the run is not ``running``
        """
        run = await self.get_run(run_id)
        ensure_run_transition(run.id, run.status, RunStatus.PAUSED, "pause")
        pause = PauseMetadata(paused_by=paused_by, reason=reason, paused_at_step=_next_step_index(run))
        updated = await self.store.update_run(
            run_id,
            {"status": RunStatus.PAUSED, "pause": pause},
            expected_status={RunStatus.RUNNING},
            action="pause",
        )
        log.info("run_paused", run_id=run_id, paused_by=paused_by, reason=reason, at_step=pause.paused_at_step)
        return updated

    async def resume(self, run_id: str, resumed_by: str, approve: bool = False) -> RunRecord:
        """Resume a paused run and continue executing its pending steps.

        Args:
            run_id: Run to resume
            resumed_by: Identity of the human resuming the run (required)
            approve: Grant approval for the step the run is waiting on

        Returns:
            The run as persisted when execution stopped again

        Raises:
            WorkflowError: If ``resumed_by`` is empty
            RunNotFoundError: If the run does not exist
            InvalidRunStateError: If the run is not ``paused``
        """
        if not resumed_by or not resumed_by.strip():
            raise WorkflowError("resumed_by is required to resume a run", code="RESUMED_BY_REQUIRED")

        run = await self.get_run(run_id)
        if run.status != RunStatus.PAUSED:
            raise InvalidRunStateError(run.id, run.status.value, "resume")

        changes: dict[str, Any] = {"status": RunStatus.RUNNING, "pause": None}
        if run.pause is not None:
            resumed = run.pause.model_copy(update={"resumed_by": resumed_by, "resumed_at": utcnow()})
            changes["pause_history"] = [*run.pause_history, resumed]
            if approve and run.pause.awaiting_approval_for:
                changes["approved_steps"] = {**run.approved_steps, run.pause.awaiting_approval_for: resumed_by}

        await self.store.update_run(run_id, changes, expected_status={RunStatus.PAUSED}, action="resume")
        log.info("run_resumed", run_id=run_id, resumed_by=resumed_by, approved=approve)
        return await self._drive(run_id)

    async def cancel(self, run_id: str, cancelled_by: str, reason: str) -> RunRecord:
        """Cancel a run. Already-recorded step results are left as they are.

        Raises:
            RunNotFoundError: If the run does not exist
            InvalidRunStateError: If the run already finished
        """
        run = await self.get_run(run_id)
        ensure_run_transition(run.id, run.status, RunStatus.CANCELLED, "cancel")
        updated = await self._set_status(
            run_id,
            RunStatus.CANCELLED,
            "cancel",
            cancellation=CancelMetadata(cancelled_by=cancelled_by, reason=reason),
            completed_at=utcnow(),
        )
        log.info("run_cancelled", run_id=run_id, cancelled_by=cancelled_by, reason=reason)
        return updated

    async def get_run(self, run_id: str) -> RunRecord:
        run = await self.store.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    async def list_runs(self, status: RunStatus | None = None) -> list[RunRecord]:
        return await self.store.list_runs(status)

    async def recover_interrupted(self, paused_by: str = "system") -> list[RunRecord]:
        """Pause runs left ``running`` by a process that no longer exists.

        Call once at startup. A recovered run resumes like any paused run;
        a step interrupted mid-attempt is executed again.
        """
        recovered = []
        for run in await self.store.list_runs(RunStatus.RUNNING):
            if run.id in self._active:
                continue
            try:
                recovered.append(await self.pause(run.id, paused_by, "Interrupted by process restart"))
            except InvalidRunStateError:
                continue
            log.warning("run_recovered", run_id=run.id, playbook_id=run.playbook_id)
        return recovered

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    async def _set_status(self, run_id: str, target: RunStatus, action: str, **changes: Any) -> RunRecord:
        return await self.store.update_run(
            run_id, {"status": target, **changes}, expected_status=sources_for(target), action=action
        )

    async def _drive(self, run_id: str) -> RunRecord:
        run = await self.get_run(run_id)
        remaining = run.playbook.timeout_seconds - run.active_seconds
        bind_run_context(run_id, run.playbook_id)
        self._active.add(run_id)
        started = time.monotonic()
        try:
            if remaining <= 0:
                await self._handle_timeout(run_id)
            else:
                await self._execute_with_deadline(run_id, remaining)
        finally:
            elapsed = time.monotonic() - started
            self._active.discard(run_id)
            clear_run_context()

        run = await self.get_run(run_id)
        return await self.store.update_run(run_id, {"active_seconds": run.active_seconds + elapsed})

    async def _execute_with_deadline(self, run_id: str, remaining: float) -> None:
        task = asyncio.create_task(self._execute_steps(run_id))
        try:
            done, _ = await asyncio.wait({task}, timeout=remaining)
        except asyncio.CancelledError:
            task.cancel()
            raise
        if task in done:
            task.result()
            return

        run = await self.get_run(run_id)
        if run.status == RunStatus.PAUSED:
            # A paused run cannot fail; the in-flight step finishes and records its outcome.
            log.info("run_timeout_while_paused", run_id=run_id)
            await task
            return

        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        await self._handle_timeout(run_id)

    async def _execute_steps(self, run_id: str) -> None:
        while True:
            run = await self.get_run(run_id)
            if run.status != RunStatus.RUNNING:
                log.info("run_halted", run_id=run_id, status=run.status.value)
                return

            record = next((step for step in run.steps if not step.status.is_final), None)
            if record is None:
                await self._complete_run(run_id)
                return

            if not await self._execute_step(run, record):
                return

    async def _complete_run(self, run_id: str) -> None:
        try:
            run = await self.store.update_run(
                run_id,
                {"status": RunStatus.COMPLETED, "completed_at": utcnow()},
                expected_status={RunStatus.RUNNING},
                action="complete",
            )
        except InvalidRunStateError as e:
            log.info("run_completion_preempted", run_id=run_id, status=e.current_status)
            return
        log.info("run_completed", run_id=run_id, **run.summary.model_dump(exclude={"duration_ms"}))

    async def _fail_run(self, run_id: str, error: str, error_code: str) -> None:
        try:
            await self._set_status(
                run_id, RunStatus.FAILED, "fail", error=error, error_code=error_code, completed_at=utcnow()
            )
        except InvalidRunStateError as e:
            log.info("run_failure_preempted", run_id=run_id, status=e.current_status)
            return
        log.error("run_failed", run_id=run_id, error=error, error_code=error_code)

    async def _handle_timeout(self, run_id: str) -> None:
        run = await self.get_run(run_id)
        message = f"Run exceeded timeout of {run.playbook.timeout_seconds}s"
        for record in run.steps:
            if record.status == StepStatus.RUNNING:
                await self._record_step(
                    run_id,
                    record,
                    StepStatus.FAILED,
                    error=message,
                    error_code=RUN_TIMEOUT,
                    completed_at=utcnow(),
                )
        await self._fail_run(run_id, message, RUN_TIMEOUT)

    # ------------------------------------------------------------------
    # Single step
    # ------------------------------------------------------------------

    async def _record_step(self, run_id: str, record: StepRecord, status: StepStatus, **changes: Any) -> StepRecord:
        ensure_step_transition(record.id, record.status, status)
        updated = record.model_copy(update={"status": status, **changes})
        await self.store.update_step(run_id, updated)
        return updated

    async def _execute_step(self, run: RunRecord, record: StepRecord) -> bool:
        """Execute one step. Returns False when the run must stop."""
        step = run.playbook.steps[record.index]
        variables = run.variables

        if record.status == StepStatus.PENDING and not evaluate_condition(step.condition, variables):
            await self._record_step(run.id, record, StepStatus.SKIPPED, completed_at=utcnow())
            log.info("step_skipped", run_id=run.id, step_id=step.id, condition=step.condition)
            return True

        params = substitute(step.params, variables)
        continue_on_error = run.playbook.continue_on_error if step.continue_on_error is None else step.continue_on_error

        try:
            transition = self._check_transition(step, variables)
            if step.policy_action:
                proceed = await self._check_policy(run, record, step, params)
                if not proceed:
                    return await self._run_still_active(run.id)
        except _StepFailure as failure:
            await self._record_step(
                run.id,
                record,
                StepStatus.FAILED,
                error=str(failure),
                error_code=failure.code,
                output=failure.output,
                completed_at=utcnow(),
            )
            log.warning("step_blocked", run_id=run.id, step_id=step.id, error_code=failure.code, error=str(failure))
            return await self._after_failure(run.id, step, continue_on_error)

        record = await self._record_step(
            run.id, record, StepStatus.RUNNING, started_at=record.started_at or utcnow()
        )
        log.info("step_started", run_id=run.id, step_id=step.id, action=step.action)
        return await self._invoke_with_retries(run, record, step, params, transition, continue_on_error)

    def _check_transition(self, step: PlaybookStep, variables: dict[str, Any]) -> TransitionDefinition | None:
        if step.transition is None:
            return None
        if self.state_machine is None:
            raise _StepFailure("Step declares a transition but no state machine is configured", STATE_MACHINE_UNAVAILABLE)
        from_state = str(substitute(step.transition.from_state, variables))
        to_state = str(substitute(step.transition.to_state, variables))
        evidence = substitute(step.transition.evidence, variables)
        check = self.state_machine.validate_transition(from_state, to_state, evidence, trigger=step.transition.trigger)
        if not check.allowed:
            raise _StepFailure(check.message, check.reason_code, output={"missing": list(check.missing)})
        return check.transition

    async def _check_policy(self, run: RunRecord, record: StepRecord, step: PlaybookStep, params: dict[str, Any]) -> bool:
        """Consult the policy evaluator. Returns False if the run was paused."""
        if self.policy is None:
            raise _StepFailure("Step declares a policy action but no policy evaluator is configured", POLICY_UNAVAILABLE)

        approved_by = run.approved_steps.get(step.id)
        request_id = f"{run.id}/{step.id}" + ("/approved" if approved_by else "")
        target = substitute(step.target, run.variables) if step.target else run.playbook_id
        context = PolicyContext(
            request_id=request_id,
            session_id=run.id,
            action_type=step.policy_action,
            target_type=step.target_type,
            target_identifier=str(target),
            deployment_env=run.environment,
            actor=approved_by or run.triggered_by,
            action_context=params,
            has_approval=approved_by is not None,
            approval_fingerprint=_approval_fingerprint(run.id, step.id, approved_by),
        )
        decision = await self.policy.evaluate_and_record(context)

        if not decision.allow:
            if decision.requires_approval:
                await self._pause_for_approval(run.id, step.id, decision.reason)
                return False
            raise _StepFailure(decision.reason, decision.reason_code, output=decision.to_dict())

        claim = await self.policy.claim_idempotency(decision, owner=f"{run.id}/{step.id}")
        if claim.duplicate:
            await self._record_step(
                run.id,
                record,
                StepStatus.SKIPPED,
                error_code=DUPLICATE_ACTION,
                output={"duplicate": True, "owner": claim.owner, "idempotency_key_hash": decision.idempotency_key_hash},
                completed_at=utcnow(),
            )
            log.info("step_duplicate", run_id=run.id, step_id=step.id, owner=claim.owner)
            return False
        return True

    async def _pause_for_approval(self, run_id: str, step_id: str, reason: str) -> None:
        run = await self.get_run(run_id)
        pause = PauseMetadata(
            paused_by="policy",
            reason=reason,
            paused_at_step=_next_step_index(run),
            awaiting_approval_for=step_id,
        )
        try:
            await self.store.update_run(
                run_id,
                {"status": RunStatus.PAUSED, "pause": pause},
                expected_status={RunStatus.RUNNING},
                action="pause",
            )
        except InvalidRunStateError as e:
            log.info("approval_pause_preempted", run_id=run_id, status=e.current_status)
            return
        log.info("run_awaiting_approval", run_id=run_id, step_id=step_id)

    async def _run_still_active(self, run_id: str) -> bool:
        run = await self.get_run(run_id)
        return run.status == RunStatus.RUNNING

    async def _after_failure(self, run_id: str, step: PlaybookStep, continue_on_error: bool) -> bool:
        if continue_on_error:
            log.info("step_failure_ignored", run_id=run_id, step_id=step.id)
            return True
        await self._fail_run(run_id, f"Step '{step.display_name}' failed", STEP_FAILED)
        return False

    async def _invoke_with_retries(
        self,
        run: RunRecord,
        record: StepRecord,
        step: PlaybookStep,
        params: dict[str, Any],
        transition: TransitionDefinition | None,
        continue_on_error: bool,
    ) -> bool:
        retry = step.retry or run.playbook.retry
        first_attempt = record.attempts + 1
        last_attempt = record.attempts + max(retry.max_attempts - record.attempts, 1)
        error = "Step did not run"
        error_code = STEP_FAILED

        for attempt in range(first_attempt, last_attempt + 1):
            record = record.model_copy(update={"attempts": attempt})
            await self.store.update_step(run.id, record)
            context = ActionContext(
                run_id=run.id,
                step_id=step.id,
                attempt=attempt,
                environment=run.environment,
                variables=dict(run.variables),
                transition=transition,
            )
            try:
                output = await self._invoke(step, params, context)
            except ActionNotRegisteredError as e:
                error, error_code = e.message, e.code
                break
            except StepExecutionError as e:
                error, error_code = e.message, e.code
                if not e.recoverable:
                    break
            except TimeoutError:
                error, error_code = f"Step exceeded timeout of {step.timeout_seconds}s", STEP_TIMEOUT
            except Exception as e:
                error, error_code = str(e) or type(e).__name__, STEP_FAILED
            else:
                await self._record_step(
                    run.id, record, StepStatus.SUCCEEDED, output=output, error=None, error_code=None, completed_at=utcnow()
                )
                if step.assign:
                    await self._assign(run.id, step.assign, output)
                log.info("step_succeeded", run_id=run.id, step_id=step.id, attempts=attempt)
                return True

            if attempt < last_attempt:
                delay = backoff_delay(attempt - first_attempt + 1, retry.backoff_seconds, retry.backoff_multiplier)
                log.warning(
                    "step_retry",
                    run_id=run.id,
                    step_id=step.id,
                    attempt=attempt,
                    max_attempts=last_attempt,
                    delay=delay,
                    error=error,
                )
                await asyncio.sleep(delay)

        await self._record_step(
            run.id, record, StepStatus.FAILED, error=error, error_code=error_code, completed_at=utcnow()
        )
        log.error("step_failed", run_id=run.id, step_id=step.id, attempts=record.attempts, error=error, error_code=error_code)
        return await self._after_failure(run.id, step, continue_on_error)

    async def _invoke(self, step: PlaybookStep, params: dict[str, Any], context: ActionContext) -> Any:
        invoker = self.actions.get(step.action)
        if step.timeout_seconds is None:
            return await invoker(params, context)
        return await asyncio.wait_for(invoker(params, context), timeout=step.timeout_seconds)

    async def _assign(self, run_id: str, name: str, output: Any) -> None:
        run = await self.get_run(run_id)
        await self.store.update_run(run_id, {"variables": {**run.variables, name: output}})


def _next_step_index(run: RunRecord) -> int | None:
    for record in run.steps:
        if not record.status.is_final:
            return record.index
    return None


def _approval_fingerprint(run_id: str, step_id: str, approved_by: str | None) -> str | None:
    """Identify the human approval a governed step runs under."""
    if approved_by is None:
        return None
    return content_hash({"run_id": run_id, "step_id": step_id, "approved_by": approved_by})

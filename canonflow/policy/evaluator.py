"""
Deterministic, fail-closed automation policy evaluation.

The evaluator answers one question: may this automated action run now?
Checks run in a fixed order and the first failing check decides:

1. A policy exists for the action type (``NO_POLICY``) and its rate window
   is consistent (``INVALID_POLICY_CONFIG``)
2. The deployment environment is allowlisted (``ENV_NOT_PERMITTED``)
3. Required approval was granted (``APPROVAL_REQUIRED``)
4. The rate window has capacity (``RATE_LIMITED``)
5. No cooldown is active (``COOLDOWN_ACTIVE``)

``evaluate`` never writes. ``evaluate_and_record`` evaluates and appends
an audit record while holding a lock for the action and target, so that
concurrent callers for the same target are decided against a consistent
view of the audit trail.

Example:
    >>> evaluator = PolicyEvaluator(load_default_policies(), InMemoryStore())
    >>> decision = await evaluator.evaluate_and_record(
    ...     PolicyContext(action_type="issue_publish", target_type="issue",
    ...                   target_identifier="acme/control#7", deployment_env="staging")
    ... )
    >>> decision.allow
    True
"""

import asyncio
import weakref
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from canonflow.enums import Decision
from canonflow.models.audit import AuditSnapshot, ExecutionRecord, IdempotencyClaim
from canonflow.persistence.base import AuditStore
from canonflow.policy.idempotency import action_fingerprint, generate_idempotency_key, hash_idempotency_key
from canonflow.policy.models import LOW_RISK_ENVS, PolicyContext, PolicyDecision, PolicySet, ReasonCode

log = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class PolicyEvaluator:
    """Decide whether proposed automated actions are permitted.

    Attributes:
        policy_set: Loaded, read-only policy definitions
        audit_store: Audit trail used for windows, cooldowns and claims
    """

    def __init__(
        self,
        policy_set: PolicySet,
        audit_store: AuditStore,
        clock: Callable[[], datetime] | None = None,
        low_risk_envs: Iterable[str] = LOW_RISK_ENVS,
    ) -> None:
        self.policy_set = policy_set
        self.audit_store = audit_store
        self._clock = clock or _utcnow
        self.low_risk_envs = tuple(low_risk_envs)
        # Entries disappear once no caller holds or waits on the lock.
        self._locks: weakref.WeakValueDictionary[tuple[str, str], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _get_lock(self, action_type: str, target_identifier: str) -> asyncio.Lock:
        key = (action_type, target_identifier)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _deny(
        self,
        context: PolicyContext,
        reason_code: str,
        reason: str,
        policy_name: str | None = None,
        idempotency_key: str = "",
        enforcement_data: dict[str, Any] | None = None,
        next_allowed_at: datetime | None = None,
        requires_approval: bool = False,
    ) -> PolicyDecision:
        log.info(
            "policy_denied",
            request_id=context.request_id,
            action_type=context.action_type,
            target=context.target_identifier,
            reason_code=reason_code,
            next_allowed_at=next_allowed_at.isoformat() if next_allowed_at else None,
        )
        return PolicyDecision(
            decision=Decision.DENIED,
            reason=reason,
            reason_code=reason_code,
            next_allowed_at=next_allowed_at,
            requires_approval=requires_approval,
            idempotency_key=idempotency_key,
            idempotency_key_hash=hash_idempotency_key(idempotency_key),
            policy_name=policy_name,
            enforcement_data=enforcement_data or {},
            policy_set_version=self.policy_set.version,
            policy_set_hash=self.policy_set.content_hash,
        )

    async def evaluate(self, context: PolicyContext) -> PolicyDecision:
        """Evaluate a proposed action without recording anything.

        Raises:
            PersistenceError: If the audit trail cannot be read. A read
                failure is never turned into an allow.
        """
        now = self._clock()
        policy = self.policy_set.find(context.action_type)
        if policy is None:
            return self._deny(
                context,
                ReasonCode.NO_POLICY,
                f"No policy defined for action type '{context.action_type}'",
            )

        config_error = policy.rate_limit_config_error()
        if config_error:
            log.error("policy_config_invalid", action_type=policy.action_type, error=config_error)
            return self._deny(
                context,
                ReasonCode.INVALID_POLICY_CONFIG,
                f"Invalid policy configuration: {config_error}",
                policy_name=policy.action_type,
            )

        key = generate_idempotency_key(policy.idempotency_key_template, context.action_context)
        allowed_envs = list(policy.allowed_envs)

        if not policy.allows_env(context.deployment_env, self.low_risk_envs):
            env_label = f"'{context.deployment_env}'" if context.deployment_env else "unspecified environment"
            return self._deny(
                context,
                ReasonCode.ENV_NOT_PERMITTED,
                f"Action not allowed in {env_label} (allowed: {', '.join(allowed_envs) or 'none'})",
                policy_name=policy.action_type,
                idempotency_key=key,
                enforcement_data={"allowed_envs": allowed_envs},
            )

        if policy.requires_approval and not context.has_approval:
            return self._deny(
                context,
                ReasonCode.APPROVAL_REQUIRED,
                "Action requires explicit approval, not granted",
                policy_name=policy.action_type,
                idempotency_key=key,
                enforcement_data={"allowed_envs": allowed_envs},
                requires_approval=True,
            )

        snapshot = AuditSnapshot()
        if policy.has_rate_window or policy.cooldown_seconds:
            window = timedelta(seconds=policy.window_seconds or 0)
            snapshot = await self.audit_store.audit_snapshot(context.action_type, context.target_identifier, now - window)

        if policy.has_rate_window and snapshot.count_in_window >= policy.max_runs_per_window:
            window = timedelta(seconds=policy.window_seconds)
            oldest = snapshot.oldest_in_window
            return self._deny(
                context,
                ReasonCode.RATE_LIMITED,
                f"Rate limit exceeded: {snapshot.count_in_window}/{policy.max_runs_per_window} "
                f"executions in {policy.window_seconds}s window",
                policy_name=policy.action_type,
                idempotency_key=key,
                enforcement_data={
                    "max_runs_per_window": policy.max_runs_per_window,
                    "window_seconds": policy.window_seconds,
                    "current_run_count": snapshot.count_in_window,
                    "allowed_envs": allowed_envs,
                },
                next_allowed_at=oldest.created_at + window if oldest else now + window,
            )

        if policy.cooldown_seconds and snapshot.last_allowed is not None:
            cooldown_end = snapshot.last_allowed.created_at + timedelta(seconds=policy.cooldown_seconds)
            if now < cooldown_end:
                return self._deny(
                    context,
                    ReasonCode.COOLDOWN_ACTIVE,
                    f"Cooldown active: {policy.cooldown_seconds}s since last execution",
                    policy_name=policy.action_type,
                    idempotency_key=key,
                    enforcement_data={
                        "cooldown_seconds": policy.cooldown_seconds,
                        "last_execution_at": snapshot.last_allowed.created_at.isoformat(),
                        "allowed_envs": allowed_envs,
                    },
                    next_allowed_at=cooldown_end,
                )

        log.info(
            "policy_allowed",
            request_id=context.request_id,
            action_type=context.action_type,
            target=context.target_identifier,
        )
        return PolicyDecision(
            decision=Decision.ALLOWED,
            reason="All policy checks passed",
            reason_code=ReasonCode.ALLOWED,
            idempotency_key=key,
            idempotency_key_hash=hash_idempotency_key(key),
            policy_name=policy.action_type,
            enforcement_data={
                "cooldown_seconds": policy.cooldown_seconds,
                "max_runs_per_window": policy.max_runs_per_window,
                "window_seconds": policy.window_seconds,
                "current_run_count": snapshot.count_in_window,
                "allowed_envs": allowed_envs,
            },
            policy_set_version=self.policy_set.version,
            policy_set_hash=self.policy_set.content_hash,
        )

    async def evaluate_and_record(self, context: PolicyContext) -> PolicyDecision:
        """Evaluate and append the decision to the audit trail.

        Recording is keyed by ``request_id``: replaying a request returns
        the decision recorded the first time instead of evaluating again.

        Raises:
            PersistenceError: If the audit record cannot be written
        """
        lock = self._get_lock(context.action_type, context.target_identifier)
        async with lock:
            decision = await self.evaluate(context)
            record = ExecutionRecord(
                request_id=context.request_id,
                session_id=context.session_id,
                action_type=context.action_type,
                action_fingerprint=action_fingerprint(
                    context.action_type, context.target_identifier, context.action_context
                ),
                target_type=context.target_type,
                target_identifier=context.target_identifier,
                decision=decision.decision,
                reason=decision.reason,
                reason_code=decision.reason_code,
                idempotency_key=decision.idempotency_key,
                idempotency_key_hash=decision.idempotency_key_hash,
                policy_name=decision.policy_name,
                enforcement_data=decision.enforcement_data,
                next_allowed_at=decision.next_allowed_at,
                policy_set_version=decision.policy_set_version,
                policy_set_hash=decision.policy_set_hash,
                approval_fingerprint=context.approval_fingerprint,
                deployment_env=context.deployment_env,
                actor=context.actor,
                context_data=context.action_context,
                created_at=self._clock(),
            )
            inserted, stored = await self.audit_store.insert_record_if_absent(record)

        if not inserted:
            log.info("policy_request_replayed", request_id=context.request_id, record_id=stored.id)
            return decision_from_record(stored)
        log.debug("policy_decision_recorded", request_id=context.request_id, record_id=stored.id)
        return decision

    async def claim_idempotency(self, decision: PolicyDecision, owner: str) -> IdempotencyClaim:
        """Claim the decision's idempotency key for ``owner``.

        Claims are scoped by policy name so equal keys of different action
        types never collide. The first claimant wins; later claimants get
        ``duplicate=True`` and the winning owner. A decision with an empty
        key (no template fields) cannot be deduplicated and is always
        claimed.
        """
        if not decision.idempotency_key:
            return IdempotencyClaim(
                key_hash=decision.idempotency_key_hash,
                claimed=True,
                duplicate=False,
                owner=owner,
                claimed_at=self._clock(),
            )
        scoped = f"{decision.policy_name}:{decision.idempotency_key_hash}"
        claim = await self.audit_store.claim_idempotency_key(scoped, owner)
        if claim.duplicate:
            log.info("idempotency_duplicate", policy_name=decision.policy_name, owner=owner, existing_owner=claim.owner)
        return claim


def decision_from_record(record: ExecutionRecord) -> PolicyDecision:
    """Rebuild the decision stored in an audit record."""
    return PolicyDecision(
        decision=record.decision,
        reason=record.reason,
        reason_code=record.reason_code,
        next_allowed_at=record.next_allowed_at,
        requires_approval=record.reason_code == ReasonCode.APPROVAL_REQUIRED,
        idempotency_key=record.idempotency_key,
        idempotency_key_hash=record.idempotency_key_hash,
        policy_name=record.policy_name,
        enforcement_data=record.enforcement_data,
        policy_set_version=record.policy_set_version,
        policy_set_hash=record.policy_set_hash,
    )

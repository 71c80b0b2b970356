"""
Policy definitions, evaluation context and decisions.

A ``PolicySet`` is loaded once per process and is read-only afterwards.
``PolicyDecision`` is a value, not an exception: denials carry a stable
``reason_code`` and, where time-bound, ``next_allowed_at``.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from canonflow.enums import Decision
from canonflow.utils import hashing

#: Environments an unspecified deployment environment may fall back to.
LOW_RISK_ENVS: tuple[str, ...] = ("staging", "development")


class ReasonCode:
    """Stable, machine-readable policy reason codes."""

    NO_POLICY = "NO_POLICY"
    INVALID_POLICY_CONFIG = "INVALID_POLICY_CONFIG"
    ENV_NOT_PERMITTED = "ENV_NOT_PERMITTED"
    APPROVAL_REQUIRED = "APPROVAL_REQUIRED"
    RATE_LIMITED = "RATE_LIMITED"
    COOLDOWN_ACTIVE = "COOLDOWN_ACTIVE"
    ALLOWED = "ALLOWED"


class PolicyAction(BaseModel):
    """Automation policy for one action type.

    The rate window is ``max_runs_per_window`` + ``window_seconds``; both
    must be set or both omitted. The loader rejects a policy with only one,
    and the evaluator denies it should one be constructed in code.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel, extra="forbid")

    action_type: str = Field(min_length=1)
    description: str = ""
    allowed_envs: tuple[str, ...] = ()
    max_runs_per_window: int | None = Field(default=None, ge=1)
    window_seconds: int | None = Field(default=None, ge=1)
    cooldown_seconds: int | None = Field(default=None, ge=0)
    requires_approval: bool = False
    idempotency_key_template: tuple[str, ...] = ()

    def rate_limit_config_error(self) -> str | None:
        """Return a description of an inconsistent rate window, or None."""
        if (self.max_runs_per_window is None) != (self.window_seconds is None):
            return "max_runs_per_window and window_seconds must both be defined or both be omitted"
        return None

    def allows_env(self, env: str | None, low_risk_envs: Iterable[str] = LOW_RISK_ENVS) -> bool:
        """Check the environment allowlist.

        An unspecified environment is permitted only when the allowlist
        contains one of the low-risk defaults.
        """
        if env is None:
            return any(candidate in self.allowed_envs for candidate in low_risk_envs)
        return env in self.allowed_envs

    @property
    def has_rate_window(self) -> bool:
        return self.max_runs_per_window is not None and self.window_seconds is not None


class PolicySet(BaseModel):
    """All automation policies, indexed by action type.

    ``content_hash`` identifies the exact definitions a decision was made
    under; it ignores key order and YAML formatting.
    """

    model_config = ConfigDict(frozen=True)

    version: str = "1"
    policies: tuple[PolicyAction, ...] = ()

    def find(self, action_type: str) -> PolicyAction | None:
        for policy in self.policies:
            if policy.action_type == action_type:
                return policy
        return None

    @property
    def action_types(self) -> list[str]:
        return [p.action_type for p in self.policies]

    @property
    def content_hash(self) -> str:
        return hashing.content_hash(
            {"version": self.version, "policies": [p.model_dump(mode="json") for p in self.policies]}
        )


class PolicyContext(BaseModel):
    """A proposed automated action awaiting a policy decision.

    Accepts snake_case or camelCase keys (``targetIdentifier``,
    ``deploymentEnv``, ``actionContext``...).
    """

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    request_id: str = Field(default_factory=lambda: uuid4().hex)
    session_id: str | None = None
    action_type: str
    target_type: str
    target_identifier: str
    deployment_env: str | None = None
    actor: str | None = None
    action_context: dict[str, Any] = Field(default_factory=dict)
    has_approval: bool = False
    approval_fingerprint: str | None = None


class PolicyDecision(BaseModel):
    """Outcome of evaluating a ``PolicyContext``."""

    model_config = ConfigDict(frozen=True)

    decision: Decision
    reason: str
    reason_code: str
    next_allowed_at: datetime | None = None
    requires_approval: bool = False
    idempotency_key: str = ""
    idempotency_key_hash: str = ""
    policy_name: str | None = None
    enforcement_data: dict[str, Any] = Field(default_factory=dict)
    policy_set_version: str | None = None
    policy_set_hash: str | None = None

    @property
    def allow(self) -> bool:
        return self.decision == Decision.ALLOWED

    def to_dict(self) -> dict[str, Any]:
        """Render the response shape returned to callers."""
        return {
            "decision": self.decision.value,
            "allow": self.allow,
            "reason": self.reason,
            "reason_code": self.reason_code,
            "next_allowed_at": self.next_allowed_at.isoformat() if self.next_allowed_at else None,
            "requires_approval": self.requires_approval,
            "idempotency_key": self.idempotency_key,
            "idempotency_key_hash": self.idempotency_key_hash,
            "policy_name": self.policy_name,
            "enforcement_data": dict(self.enforcement_data),
            "policy_set_version": self.policy_set_version,
            "policy_set_hash": self.policy_set_hash,
        }

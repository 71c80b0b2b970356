"""Automation policy evaluation.

Key Components:
    - PolicyEvaluator: Fail-closed allow/deny decisions with audit recording
    - PolicySet / PolicyAction: Loaded policy definitions
    - PolicyContext / PolicyDecision: Request and response values
    - generate_idempotency_key / action_fingerprint: Deterministic hashing
"""

from canonflow.policy.evaluator import PolicyEvaluator, decision_from_record
from canonflow.policy.idempotency import action_fingerprint, generate_idempotency_key, hash_idempotency_key
from canonflow.policy.loader import default_policies_path, load_default_policies, load_policy_set
from canonflow.policy.models import (
    LOW_RISK_ENVS,
    PolicyAction,
    PolicyContext,
    PolicyDecision,
    PolicySet,
    ReasonCode,
)

__all__ = [
    "LOW_RISK_ENVS",
    "PolicyAction",
    "PolicyContext",
    "PolicyDecision",
    "PolicyEvaluator",
    "PolicySet",
    "ReasonCode",
    "action_fingerprint",
    "decision_from_record",
    "default_policies_path",
    "generate_idempotency_key",
    "hash_idempotency_key",
    "load_default_policies",
    "load_policy_set",
]

"""Pytest configuration and shared fixtures."""

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from structlog.testing import capture_logs

from canonflow.drafts.models import IssueDraft
from canonflow.engine.actions import ActionRegistry
from canonflow.engine.executor import ExecutionEngine
from canonflow.persistence.file import FileStore
from canonflow.persistence.memory import InMemoryStore
from canonflow.policy.evaluator import PolicyEvaluator
from canonflow.policy.models import PolicyAction, PolicySet
from canonflow.statemachine.loader import load_default_spec
from canonflow.statemachine.spec import StateMachineSpec


class FakeClock:
    """Settable clock injected into the policy evaluator."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 15, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture(autouse=True)
def captured_logs():
    """Capture structlog events instead of printing them."""
    with capture_logs() as logs:
        yield logs


@pytest.fixture
def spec() -> StateMachineSpec:
    """Bundled canonical issue lifecycle."""
    return load_default_spec()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def file_store(tmp_path: Path) -> FileStore:
    return FileStore(tmp_path / "state")


@pytest.fixture
def policy_set() -> PolicySet:
    """Policies covering every evaluator branch."""
    return PolicySet(
        version="test",
        policies=(
            PolicyAction(
                action_type="issue_publish",
                allowed_envs=("staging",),
                max_runs_per_window=1,
                window_seconds=3600,
                idempotency_key_template=("owner", "repo", "canonicalId"),
            ),
            PolicyAction(
                action_type="merge_pr",
                allowed_envs=("staging", "prod"),
                requires_approval=True,
                idempotency_key_template=("owner", "repo", "prNumber"),
            ),
            PolicyAction(
                action_type="rerun_checks",
                allowed_envs=("staging", "prod"),
                max_runs_per_window=3,
                window_seconds=3600,
                cooldown_seconds=300,
                idempotency_key_template=("owner", "repo", "prNumber", "runId"),
            ),
            PolicyAction(
                action_type="deploy_prod",
                allowed_envs=("prod",),
            ),
            PolicyAction(
                action_type="notify",
                allowed_envs=("staging", "development"),
            ),
            PolicyAction(
                action_type="label_issue",
                allowed_envs=("staging",),
                idempotency_key_template=("issue", "label"),
            ),
            PolicyAction(
                action_type="broken_window",
                allowed_envs=("staging",),
                window_seconds=60,
            ),
        ),
    )


@pytest.fixture
def evaluator(policy_set: PolicySet, store: InMemoryStore, clock: FakeClock) -> PolicyEvaluator:
    return PolicyEvaluator(policy_set, store, clock=clock)


@pytest.fixture
def actions() -> ActionRegistry:
    return ActionRegistry()


@pytest.fixture
def engine(
    store: InMemoryStore, actions: ActionRegistry, spec: StateMachineSpec, evaluator: PolicyEvaluator
) -> ExecutionEngine:
    return ExecutionEngine(store, actions, state_machine=spec, policy=evaluator)


@pytest.fixture
def draft_document() -> dict:
    """camelCase issue draft as exchanged over the wire."""
    return {
        "issueDraftVersion": "1.0",
        "title": "Publish canonical issue drafts",
        "body": "Drafts are validated, patched and published to the tracker.",
        "type": "issue",
        "canonicalId": "E86.5",
        "labels": ["area:drafts", "kind:feature", "prio:p1"],
        "dependsOn": ["E86.1"],
        "priority": "P1",
        "kpi": {"dcu": 1, "intent": "Fewer manual edits"},
        "acceptanceCriteria": [
            "Patch rejects unknown fields",
            "Patch output is deterministic",
            "Hashes are stable",
        ],
        "verify": {"commands": ["pytest tests/unit"], "expected": ["all tests pass"]},
        "guards": {"env": "development", "prodBlocked": True},
    }


@pytest.fixture
def base_draft(draft_document: dict) -> IssueDraft:
    return IssueDraft.model_validate(draft_document)

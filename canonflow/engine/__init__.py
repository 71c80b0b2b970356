"""Resumable playbook execution.

Key Components:
    - ExecutionEngine: Start, pause, resume and cancel runs
    - ActionRegistry / ActionContext: Delegated step actions
    - run_state: Run and step status transition tables
    - expressions: ``${var}`` substitution and step conditions
"""

from canonflow.engine.actions import ActionContext, ActionInvoker, ActionRegistry, register_builtins
from canonflow.engine.executor import RUN_TIMEOUT, ExecutionEngine
from canonflow.engine.expressions import evaluate_condition, resolve_path, substitute
from canonflow.engine.run_state import (
    RUN_TRANSITIONS,
    STEP_TRANSITIONS,
    can_transition_run,
    can_transition_step,
)

__all__ = [
    "RUN_TIMEOUT",
    "RUN_TRANSITIONS",
    "STEP_TRANSITIONS",
    "ActionContext",
    "ActionInvoker",
    "ActionRegistry",
    "ExecutionEngine",
    "can_transition_run",
    "can_transition_step",
    "evaluate_condition",
    "register_builtins",
    "resolve_path",
    "substitute",
]

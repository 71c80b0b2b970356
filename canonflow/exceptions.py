"""Custom exception hierarchy for the canonflow control plane.

This module defines a structured exception hierarchy that enables
precise error handling and stable, machine-readable failure reasons
throughout the control plane.

Exception Hierarchy:
    CanonflowError (base)
    ├── ConfigurationError
    │   └── SpecLoadError
    ├── StateMachineError
    │   ├── UnknownStateError
    │   └── InvalidTransitionError
    ├── PolicyError
    │   └── PolicyConfigError
    ├── WorkflowError
    │   ├── RunNotFoundError
    │   ├── InvalidRunStateError
    │   ├── ActionNotRegisteredError
    │   └── StepExecutionError
    ├── PatchError
    └── PersistenceError

Policy denials are deliberately NOT exceptions: they are returned as
``PolicyDecision`` values. Exceptions here are reserved for structural
errors (raised to the immediate caller, never retried), execution errors
(captured into step results by the engine) and persistence failures
(propagated so that a failed write is never read as success).

Example Usage:
    >>> from canonflow.exceptions import SpecLoadError
    >>> try:
    ...     load_state_machine_spec(path)
    ... except FileNotFoundError as e:
    ...     raise SpecLoadError(f"Spec file not found: {path}") from e
"""

from typing import Any


class CanonflowError(Exception):
    """Base exception for all canonflow errors.

    All custom exceptions inherit from this base class, allowing callers
    to catch every canonflow-specific error with a single except clause.

    Attributes:
        message: Human-readable error description
        code: Stable, machine-readable reason code
    """

    code = "CANONFLOW_ERROR"

    def __init__(self, message: str, code: str | None = None) -> None:
        """Initialize exception.

        Args:
            message: Error message
            code: Optional reason code overriding the class default
        """
        self.message = message
        if code is not None:
            self.code = code
        super().__init__(message)


class ConfigurationError(CanonflowError):
    """Configuration-related errors.

    Raised when configuration files are invalid, missing, or contain
    incompatible settings.

    Examples:
        - Configuration file not found
        - Invalid YAML syntax
        - Missing required configuration fields
    """

    code = "CONFIGURATION_ERROR"


class SpecLoadError(ConfigurationError):
    """State machine or policy specification could not be loaded.

    Always fatal at startup: the process must not run with a partial
    state machine or policy set.

    Attributes:
        path: File that failed to load, if known
    """

    code = "SPEC_LOAD_FAILED"

    def __init__(self, message: str, path: str | None = None) -> None:
        self.path = path
        full_message = message if path is None else f"{message} (file: {path})"
        super().__init__(full_message)
        self.message = message


class StateMachineError(CanonflowError):
    """Structural state machine errors."""

    code = "STATE_MACHINE_ERROR"


class UnknownStateError(StateMachineError):
    """A state name does not exist in the loaded state machine."""

    code = "UNKNOWN_STATE"

    def __init__(self, state: str) -> None:
        self.state = state
        super().__init__(f"State not found: {state}")


class InvalidTransitionError(StateMachineError):
    """A requested transition is not structurally valid.

    Attributes:
        from_state: Source state
        to_state: Target state
        missing: Unmet precondition tags, if that is the cause
    """

    code = "TRANSITION_NOT_ALLOWED"

    def __init__(
        self,
        message: str,
        from_state: str,
        to_state: str,
        code: str | None = None,
        missing: list[str] | None = None,
    ) -> None:
        self.from_state = from_state
        self.to_state = to_state
        self.missing = missing or []
        super().__init__(f"{message} ({from_state} -> {to_state})", code=code)
        self.message = message


class PolicyError(CanonflowError):
    """Policy definition errors (never used for denials)."""

    code = "POLICY_ERROR"


class PolicyConfigError(PolicyError):
    """A policy definition is internally inconsistent.

    Example:
        ``max_runs_per_window`` set without ``window_seconds``.
    """

    code = "INVALID_POLICY_CONFIG"

    def __init__(self, message: str, action_type: str | None = None) -> None:
        self.action_type = action_type
        full_message = message if action_type is None else f"{message} (action: {action_type})"
        super().__init__(full_message)
        self.message = message


class WorkflowError(CanonflowError):
    """Run and step execution errors.

    Examples:
        - Run not found
        - Pause requested on a run that is not running
        - Step action not registered
    """

    code = "WORKFLOW_ERROR"


class RunNotFoundError(WorkflowError):
    """No run exists with the requested id."""

    code = "RUN_NOT_FOUND"

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"Run not found: {run_id}")


class InvalidRunStateError(WorkflowError):
    """A run operation was requested from a status that does not permit it.

    Attributes:
        run_id: Run the operation targeted
        current_status: Status the run was actually in
        requested: Operation or target status that was rejected
    """

    code = "INVALID_RUN_STATE"

    def __init__(self, run_id: str, current_status: str, requested: str) -> None:
        self.run_id = run_id
        self.current_status = current_status
        self.requested = requested
        super().__init__(f"Cannot {requested} run {run_id}: run is '{current_status}'")


class ActionNotRegisteredError(WorkflowError):
    """A step references an action no invoker is registered for."""

    code = "ACTION_NOT_REGISTERED"

    def __init__(self, action: str) -> None:
        self.action = action
        super().__init__(f"No action registered under '{action}'")


class StepExecutionError(WorkflowError):
    """A delegated step action failed.

    Attributes:
        step_id: Identifier of the failed step
        recoverable: Whether retrying may succeed
        details: Optional structured details from the action
    """

    code = "STEP_EXECUTION_FAILED"

    def __init__(
        self,
        message: str,
        step_id: str | None = None,
        recoverable: bool = True,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.step_id = step_id
        self.recoverable = recoverable
        self.details = details or {}
        full_message = message if step_id is None else f"{message} (step: {step_id})"
        super().__init__(full_message)
        self.message = message


class PatchError(CanonflowError):
    """A draft patch could not be parsed or applied.

    Raised internally by the patch applier and converted into a failed
    ``PatchResult``; callers of ``apply_patch`` never see it.
    """

    code = "PATCH_APPLICATION_FAILED"

    def __init__(self, message: str, code: str | None = None, field: str | None = None) -> None:
        self.field = field
        super().__init__(message, code=code)


class PersistenceError(CanonflowError):
    """The persistence layer failed.

    Fatal for the in-flight operation. A failed audit write must never be
    interpreted as "allowed".

    Attributes:
        retryable: Whether the caller may retry the operation
    """

    code = "PERSISTENCE_UNAVAILABLE"

    def __init__(self, message: str, retryable: bool = True) -> None:
        self.retryable = retryable
        super().__init__(message)

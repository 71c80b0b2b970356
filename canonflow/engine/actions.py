"""Registry of delegated step actions.

The engine never performs external work itself. Each step names an action
(``"github.merge_pr"``, ``"core.echo"``) and the engine calls the invoker
registered under that name with the step's substituted params.

Example:
    >>> registry = ActionRegistry()
    >>> @registry.action("deploy.rollout")
    ... async def rollout(params, ctx):
    ...     return {"image": params["image"], "run": ctx.run_id}
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

import structlog

from canonflow.exceptions import ActionNotRegisteredError
from canonflow.statemachine.models import TransitionDefinition

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ActionContext:
    """What an invoker knows about the step it is executing."""

    run_id: str
    step_id: str
    attempt: int
    environment: str | None = None
    variables: dict[str, Any] = field(default_factory=dict)
    transition: TransitionDefinition | None = None


class ActionInvoker(Protocol):
    def __call__(self, params: dict[str, Any], context: ActionContext) -> Awaitable[Any]: ...


class ActionRegistry:
    """Maps action names to invokers."""

    def __init__(self, include_builtins: bool = True) -> None:
        self._actions: dict[str, ActionInvoker] = {}
        if include_builtins:
            register_builtins(self)

    def register(self, name: str, invoker: ActionInvoker, replace: bool = False) -> None:
        if name in self._actions and not replace:
            raise ValueError(f"Action '{name}' is already registered")
        self._actions[name] = invoker
        log.debug("action_registered", action=name)

    def action(self, name: str) -> Callable[[ActionInvoker], ActionInvoker]:
        """Decorator form of ``register``."""

        def decorator(invoker: ActionInvoker) -> ActionInvoker:
            self.register(name, invoker)
            return invoker

        return decorator

    def get(self, name: str) -> ActionInvoker:
        try:
            return self._actions[name]
        except KeyError:
            raise ActionNotRegisteredError(name) from None

    def __contains__(self, name: object) -> bool:
        return name in self._actions

    @property
    def names(self) -> list[str]:
        return sorted(self._actions)


async def _noop(params: dict[str, Any], context: ActionContext) -> None:
    return None


async def _echo(params: dict[str, Any], context: ActionContext) -> dict[str, Any]:
    return dict(params)


async def _sleep(params: dict[str, Any], context: ActionContext) -> dict[str, float]:
    seconds = float(params.get("seconds", 0))
    await asyncio.sleep(seconds)
    return {"slept": seconds}


def register_builtins(registry: ActionRegistry) -> None:
    """Register ``core.noop``, ``core.echo`` and ``core.sleep``."""
    registry.register("core.noop", _noop)
    registry.register("core.echo", _echo)
    registry.register("core.sleep", _sleep)

"""CLI entry point for the canonflow control plane."""

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable, Coroutine
from pathlib import Path
from typing import Any

import click
import structlog
import yaml
from pydantic import ValidationError

from canonflow.config.settings import CanonflowSettings
from canonflow.drafts.patch import apply_patch
from canonflow.engine.actions import ActionRegistry
from canonflow.engine.executor import ExecutionEngine
from canonflow.enums import RunStatus
from canonflow.exceptions import CanonflowError, ConfigurationError
from canonflow.models.runs import Playbook, RunRecord
from canonflow.persistence.file import FileStore
from canonflow.persistence.memory import InMemoryStore
from canonflow.policy.evaluator import PolicyEvaluator
from canonflow.policy.loader import load_default_policies, load_policy_set
from canonflow.policy.models import PolicyContext, PolicySet
from canonflow.statemachine.loader import load_default_spec, load_state_machine_spec
from canonflow.statemachine.spec import StateMachineSpec
from canonflow.utils.logging_config import configure_logging

log = structlog.get_logger(__name__)


@click.group()
@click.option("--config", default=None, help="Path to configuration file (defaults and CANONFLOW_* env if omitted)")
@click.option("--log-level", default=None, help="Logging level (overrides the configuration)")
@click.pass_context
def cli(ctx: click.Context, config: str | None, log_level: str | None) -> None:
    """canonflow: governed automation for canonical issue lifecycles."""
    try:
        settings = CanonflowSettings.from_yaml(config) if config else CanonflowSettings()
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)

    configure_logging(log_level or settings.logging.level)
    ctx.obj = {"settings": settings}


def _run(coro: Coroutine[Any, Any, Any], event: str) -> Any:
    """Run a coroutine, mapping failures to CLI exit codes."""
    try:
        return asyncio.run(coro)
    except CanonflowError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug(f"{event}_error", code=e.code, exc_info=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)
    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        log.error(f"{event}_unexpected", exc_info=True)
        sys.exit(1)


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, sort_keys=True, default=str))


def _parse_pairs(pairs: tuple[str, ...], option: str) -> dict[str, Any]:
    """Parse ``key=value`` options; values are read as YAML scalars."""
    parsed: dict[str, Any] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected key=value, got '{pair}'", param_hint=option)
        parsed[key] = yaml.safe_load(value) if value else ""
    return parsed


def _read_document(path: str) -> Any:
    """Read a JSON or YAML document."""
    try:
        return yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigurationError(f"Cannot read {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid document {path}: {e}") from e


def load_state_machine(settings: CanonflowSettings) -> StateMachineSpec:
    if settings.state_machine.spec_dir:
        return load_state_machine_spec(settings.state_machine.spec_dir)
    return load_default_spec()


def load_policies(settings: CanonflowSettings) -> PolicySet:
    if settings.policy.policies_file:
        return load_policy_set(settings.policy.policies_file)
    return load_default_policies()


def _load_spec_or_exit(settings: CanonflowSettings) -> StateMachineSpec:
    try:
        return load_state_machine(settings)
    except CanonflowError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)


def build_engine(settings: CanonflowSettings) -> ExecutionEngine:
    """Wire the store, state machine, policy evaluator and actions together."""
    store: InMemoryStore | FileStore
    if settings.engine.store == "file":
        store = FileStore(settings.state_dir)
    else:
        store = InMemoryStore()
    policy = PolicyEvaluator(load_policies(settings), store, low_risk_envs=settings.policy.low_risk_envs)
    return ExecutionEngine(store, ActionRegistry(), state_machine=load_state_machine(settings), policy=policy)


async def _with_engine(settings: CanonflowSettings, operation: Callable[[ExecutionEngine], Awaitable[Any]]) -> Any:
    return await operation(build_engine(settings))


def _run_view(run: RunRecord) -> dict[str, Any]:
    data = run.model_dump(mode="json", exclude={"playbook"})
    data["playbook_id"] = run.playbook.id
    data["playbook_version"] = run.playbook.version
    return data


@cli.command()
@click.argument("state")
@click.pass_context
def transitions(ctx: click.Context, state: str) -> None:
    """List the states reachable from STATE."""
    spec = _load_spec_or_exit(ctx.obj["settings"])
    if not spec.has_state(state):
        click.echo(f"Error: State not found: {state}", err=True)
        sys.exit(1)
    for name in spec.valid_next_states(state):
        click.echo(name)


@cli.command("check-transition")
@click.argument("from_state")
@click.argument("to_state")
@click.option("--evidence", "-e", multiple=True, help="Evidence as tag=value (repeatable)")
@click.option("--trigger", default=None, help="Observed trigger for an automatic transition")
@click.pass_context
def check_transition(
    ctx: click.Context, from_state: str, to_state: str, evidence: tuple[str, ...], trigger: str | None
) -> None:
    """Validate FROM_STATE -> TO_STATE against the state machine."""
    spec = _load_spec_or_exit(ctx.obj["settings"])
    check = spec.validate_transition(from_state, to_state, _parse_pairs(evidence, "--evidence"), trigger=trigger)
    _echo_json(
        {
            "allowed": check.allowed,
            "reason_code": check.reason_code,
            "message": check.message,
            "transition": check.transition.name if check.transition else None,
            "missing": list(check.missing),
        }
    )
    if not check.allowed:
        sys.exit(1)


@cli.command("evaluate-policy")
@click.argument("context_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--record", is_flag=True, help="Record the decision in the audit trail")
@click.pass_context
def evaluate_policy(ctx: click.Context, context_file: str, record: bool) -> None:
    """Evaluate the policy for the action described in CONTEXT_FILE."""
    settings = ctx.obj["settings"]

    async def evaluate() -> dict[str, Any]:
        data = _read_document(context_file)
        if not isinstance(data, dict):
            raise ConfigurationError("Policy context must be an object")
        try:
            context = PolicyContext.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid policy context: {e}") from e
        engine = build_engine(settings)
        evaluator = engine.policy
        decision = await (evaluator.evaluate_and_record(context) if record else evaluator.evaluate(context))
        return decision.to_dict()

    _echo_json(_run(evaluate(), "evaluate_policy"))


@cli.command("run-playbook")
@click.argument("playbook_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--env", "environment", default=None, help="Deployment environment")
@click.option("--var", "variables", multiple=True, help="Run variable as key=value (repeatable)")
@click.option("--triggered-by", default=None, help="Actor starting the run")
@click.pass_context
def run_playbook(
    ctx: click.Context, playbook_file: str, environment: str | None, variables: tuple[str, ...], triggered_by: str | None
) -> None:
    """Start a run of the playbook in PLAYBOOK_FILE."""
    settings = ctx.obj["settings"]
    run_vars = _parse_pairs(variables, "--var")

    async def start() -> RunRecord:
        playbook = Playbook.from_yaml(
            playbook_file,
            defaults={
                "timeout_seconds": settings.engine.default_timeout_seconds,
                "retry": settings.engine.default_retry.model_dump(),
            },
        )
        return await build_engine(settings).start(playbook, environment, run_vars, triggered_by)

    run = _run(start(), "run_playbook")
    _echo_json(_run_view(run))
    if run.status == RunStatus.FAILED:
        sys.exit(1)


@cli.command()
@click.argument("run_id")
@click.option("--by", "paused_by", required=True, help="Who is pausing the run")
@click.option("--reason", required=True, help="Why the run is paused")
@click.pass_context
def pause(ctx: click.Context, run_id: str, paused_by: str, reason: str) -> None:
    """Pause a running run before its next step."""
    run = _run(_with_engine(ctx.obj["settings"], lambda engine: engine.pause(run_id, paused_by, reason)), "pause")
    click.echo(f"Run {run.id} is {run.status}")


@cli.command()
@click.argument("run_id")
@click.option("--by", "resumed_by", required=True, help="Who is resuming the run")
@click.option("--approve", is_flag=True, help="Approve the step the run is waiting on")
@click.pass_context
def resume(ctx: click.Context, run_id: str, resumed_by: str, approve: bool) -> None:
    """Resume a paused run and continue its remaining steps."""
    run = _run(
        _with_engine(ctx.obj["settings"], lambda engine: engine.resume(run_id, resumed_by, approve=approve)), "resume"
    )
    _echo_json(_run_view(run))


@cli.command()
@click.argument("run_id")
@click.option("--by", "cancelled_by", required=True, help="Who is cancelling the run")
@click.option("--reason", required=True, help="Why the run is cancelled")
@click.pass_context
def cancel(ctx: click.Context, run_id: str, cancelled_by: str, reason: str) -> None:
    """Cancel a run; recorded step results are kept."""
    run = _run(_with_engine(ctx.obj["settings"], lambda engine: engine.cancel(run_id, cancelled_by, reason)), "cancel")
    click.echo(f"Run {run.id} is {run.status}")


@cli.command("show-run")
@click.argument("run_id")
@click.pass_context
def show_run(ctx: click.Context, run_id: str) -> None:
    """Show a run with its step results and summary."""
    run = _run(_with_engine(ctx.obj["settings"], lambda engine: engine.get_run(run_id)), "show_run")
    _echo_json(_run_view(run))


@cli.command("list-runs")
@click.option("--status", type=click.Choice([s.value for s in RunStatus]), default=None, help="Filter by status")
@click.pass_context
def list_runs(ctx: click.Context, status: str | None) -> None:
    """List runs, oldest first."""
    wanted = RunStatus(status) if status else None
    runs = _run(_with_engine(ctx.obj["settings"], lambda engine: engine.list_runs(wanted)), "list_runs")
    if not runs:
        click.echo("No runs found")
        return
    for run in runs:
        summary = run.summary
        click.echo(
            f"{run.id}  {run.playbook_id:<24} {run.status.value:<10} "
            f"{summary.succeeded}/{summary.total_steps} succeeded"
        )


@cli.command()
@click.option("--by", "paused_by", default="system", help="Actor recorded on recovered runs")
@click.pass_context
def recover(ctx: click.Context, paused_by: str) -> None:
    """Pause runs left running by a process that exited."""
    recovered = _run(_with_engine(ctx.obj["settings"], lambda engine: engine.recover_interrupted(paused_by)), "recover")
    for run in recovered:
        click.echo(f"Paused interrupted run {run.id}")
    click.echo(f"Recovered {len(recovered)} run(s)")


@cli.command("apply-patch")
@click.argument("draft_file", type=click.Path(exists=True, dir_okay=False))
@click.argument("patch_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--expected-hash", default=None, help="Refuse the patch if the draft hash differs")
@click.option("--output", "-o", type=click.Path(dir_okay=False), default=None, help="Write the patched draft here")
def apply_patch_command(draft_file: str, patch_file: str, expected_hash: str | None, output: str | None) -> None:
    """Apply PATCH_FILE to the issue draft in DRAFT_FILE."""
    try:
        draft = _read_document(draft_file)
        patch = _read_document(patch_file)
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)

    result = apply_patch(draft, patch, expected_hash=expected_hash)
    if result.success and output:
        Path(output).write_text(json.dumps(result.draft.to_document(), indent=2, sort_keys=True) + "\n")
    _echo_json(result.to_dict())
    if not result.success:
        sys.exit(1)


if __name__ == "__main__":
    cli()

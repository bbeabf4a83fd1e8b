"""Run service reconciler CLI (runsvc).

Usage:
    runsvc validate service.yaml
    runsvc graph service.yaml
    runsvc plan service.yaml --state state.yaml
    runsvc apply service.yaml --backend mybackends.run:CloudRunBackend

Exit codes:
    0: success
    1: invalid spec, or some node failed / was skipped
    2: fatal graph, configuration or state fault
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, NoReturn

import click

from .backend import BackendLoadError, BackendOperationError, load_backend
from .builder import build_graph
from .config import (
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_MAX_RETRIES,
    DEFAULT_OPERATION_TIMEOUT_SECONDS,
    DEFAULT_RETRY_BACKOFF_BASE_SECONDS,
    DEFAULT_STATE_FILE,
    ConfigurationError,
    ReconcilerConfig,
)
from .dependency import GraphConsistencyFault
from .main import setup_logging
from .models import ResourceSpec
from .preconditions import ValidationError
from .reconciler import Action, NodeStatus, Plan, Reconciler, ReconcileResult, build_and_plan
from .spec_loader import SpecLoadError, load_spec
from .state import StateStore, StateStoreError

EXIT_FAILURE = 1
EXIT_FATAL = 2

ACTION_SYMBOLS = {
    Action.CREATE: "+",
    Action.UPDATE: "~",
    Action.NO_OP: "=",
    Action.DELETE: "-",
}

STATUS_COLORS = {
    NodeStatus.SUCCEEDED: "green",
    NodeStatus.FAILED: "red",
    NodeStatus.SKIPPED: "yellow",
}

spec_argument = click.argument(
    "spec_file", type=click.Path(exists=True, dir_okay=False, path_type=Path)
)
state_option = click.option(
    "--state",
    "state_file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=DEFAULT_STATE_FILE,
    show_default=True,
    help="Observed-state file",
)
json_option = click.option("--json", "as_json", is_flag=True, help="Print JSON output")


def fail(message: str, code: int = EXIT_FAILURE) -> NoReturn:
    """Print message to stderr and exit with code."""
    click.secho(message, fg="red", err=True)
    raise SystemExit(code)


def load_or_fail(spec_file: Path) -> ResourceSpec:
    """Load a spec, exiting 1 with every violation listed if it is invalid."""
    try:
        return load_spec(spec_file)
    except SpecLoadError as e:
        fail(str(e))
    except ValidationError as e:
        fail(str(e))


def echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def echo_plan(plan: Plan) -> None:
    for key in plan.order:
        planned = plan.actions[key]
        symbol = ACTION_SYMBOLS[planned.action]
        line = f"  {symbol} {key} ({planned.action.value})"
        if planned.changed_paths:
            line += f" [{', '.join(planned.changed_paths)}]"
        click.echo(line)
    summary = plan.summary()
    click.echo(
        f"\nPlan: {summary['create']} to create, {summary['update']} to update, "
        f"{summary['delete']} to delete, {summary['no_op']} unchanged."
    )


def echo_result(result: ReconcileResult) -> None:
    for key, outcome in result.outcomes.items():
        line = f"  {outcome.status.value:<9} {outcome.action.value:<6} {key}"
        if outcome.error:
            line += f": {outcome.error}"
        click.secho(line, fg=STATUS_COLORS[outcome.status])
    click.echo(
        f"\n{len(result.outcomes) - len(result.retry_keys)} succeeded, "
        f"{len(result.failed_keys)} failed, {len(result.skipped_keys)} skipped "
        f"in {result.duration_seconds:.1f}s."
    )
    if result.cancelled:
        click.secho("Pass was cancelled.", fg="yellow")
    if result.outputs is not None:
        for name, value in result.outputs.to_dict().items():
            click.echo(f"  {name}: {value}")


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="runsvc")
@click.option(
    "--log-format",
    type=click.Choice(["json", "text"]),
    default="text",
    show_default=True,
    help="Log output format",
)
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def cli(log_format: str, verbose: bool) -> None:
    """Reconcile a declarative run service spec against a backend.

    \b
    Quick Start:
        runsvc validate service.yaml
        runsvc plan service.yaml
        runsvc apply service.yaml --backend pkg.module:Backend
    """
    setup_logging(log_format, logging.DEBUG if verbose else logging.WARNING)


@cli.command()
@spec_argument
def validate(spec_file: Path) -> None:
    """Validate a spec and report every violation."""
    spec = load_or_fail(spec_file)
    try:
        build_graph(spec)
    except ValidationError as e:
        fail(str(e))
    except GraphConsistencyFault as e:
        fail(f"Graph fault: {e}", EXIT_FATAL)
    click.secho(f"✓ {spec_file}: service '{spec.name}' is valid", fg="green")


@cli.command()
@spec_argument
@json_option
def graph(spec_file: Path, as_json: bool) -> None:
    """Show the resource graph in dependency order."""
    spec = load_or_fail(spec_file)
    try:
        resource_graph = build_graph(spec)
        order = resource_graph.topological_sort()
    except ValidationError as e:
        fail(str(e))
    except GraphConsistencyFault as e:
        fail(f"Graph fault: {e}", EXIT_FATAL)

    if as_json:
        echo_json(
            [
                {
                    "key": key,
                    "kind": resource_graph.get(key).kind.value,
                    "dependsOn": resource_graph.get(key).depends_on,
                }
                for key in order
            ]
        )
        return

    for key in order:
        node = resource_graph.get(key)
        click.echo(f"{key} ({node.kind.value})")
        for dep in node.depends_on:
            click.echo(f"    depends on {dep}")


@cli.command()
@spec_argument
@state_option
@click.option("--backend", help="Refresh observed state through this backend (module:attribute)")
@json_option
def plan(spec_file: Path, state_file: Path, backend: str | None, as_json: bool) -> None:
    """Show what a pass would do.

    Without --backend, plans offline against the stored snapshot.
    """
    spec = load_or_fail(spec_file)
    try:
        if backend is None:
            planned = build_and_plan(spec, StateStore(state_file).load())
        else:
            config = ReconcilerConfig(state_file=state_file, backend=backend, dry_run=True)
            result = asyncio.run(
                Reconciler(load_backend(backend), config).reconcile(spec, StateStore(state_file))
            )
            planned = result.plan
    except ValidationError as e:
        fail(str(e))
    except (BackendLoadError, BackendOperationError) as e:
        fail(f"Backend error: {e}")
    except (GraphConsistencyFault, ConfigurationError, StateStoreError) as e:
        fail(f"Fatal: {e}", EXIT_FATAL)

    if as_json:
        echo_json(planned.to_dict())
    else:
        echo_plan(planned)


@cli.command()
@spec_argument
@state_option
@click.option("--backend", required=True, help="Backend reference (module:attribute)")
@click.option(
    "--max-concurrency",
    type=int,
    default=DEFAULT_MAX_CONCURRENCY,
    show_default=True,
    help="Parallel node applications",
)
@click.option(
    "--timeout",
    type=int,
    default=DEFAULT_OPERATION_TIMEOUT_SECONDS,
    show_default=True,
    help="Backend call timeout in seconds",
)
@click.option(
    "--retries",
    type=int,
    default=DEFAULT_MAX_RETRIES,
    show_default=True,
    help="Attempts per node for transient errors",
)
@click.option(
    "--backoff",
    type=float,
    default=DEFAULT_RETRY_BACKOFF_BASE_SECONDS,
    show_default=True,
    help="Base retry backoff in seconds",
)
@click.option("--dry-run", is_flag=True, help="Plan only, do not mutate")
@json_option
def apply(
    spec_file: Path,
    state_file: Path,
    backend: str,
    max_concurrency: int,
    timeout: int,
    retries: int,
    backoff: float,
    dry_run: bool,
    as_json: bool,
) -> None:
    """Run one reconciliation pass."""
    spec = load_or_fail(spec_file)
    try:
        config = ReconcilerConfig(
            max_concurrency=max_concurrency,
            operation_timeout_seconds=timeout,
            max_retries=retries,
            retry_backoff_base_seconds=backoff,
            dry_run=dry_run,
            state_file=state_file,
            backend=backend,
        )
        reconciler = Reconciler(load_backend(backend), config)
        result = asyncio.run(reconciler.reconcile(spec, StateStore(state_file)))
    except ValidationError as e:
        fail(str(e))
    except (BackendLoadError, BackendOperationError) as e:
        fail(f"Backend error: {e}")
    except (GraphConsistencyFault, ConfigurationError, StateStoreError) as e:
        fail(f"Fatal: {e}", EXIT_FATAL)

    if as_json:
        echo_json(
            {
                "success": result.success,
                "plan": result.plan.to_dict(),
                "outcomes": {
                    key: {
                        "action": o.action.value,
                        "status": o.status.value,
                        "error": o.error,
                        "attempts": o.attempts,
                    }
                    for key, o in result.outcomes.items()
                },
                "retryKeys": result.retry_keys,
                "outputs": result.outputs.to_dict() if result.outputs else None,
            }
        )
    elif dry_run:
        echo_plan(result.plan)
    else:
        echo_result(result)

    if not result.success:
        raise SystemExit(EXIT_FAILURE)


def main() -> None:
    """Entry point for the runsvc CLI."""
    cli()


if __name__ == "__main__":
    main()

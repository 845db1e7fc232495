"""Command-line interface: plan, apply, destroy, output and state inspection."""

from __future__ import annotations

import json
import logging
import signal
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import hcl
from .config import EngineConfig
from .diff import Action, Plan
from .engine import Engine
from .errors import TerrikError
from .executor import ExecutionReport, Status
from .resolve import Unknown
from .state import StateStore

app = typer.Typer(
    name="terrik",
    help="Reconcile declared infrastructure with its recorded state",
    add_completion=False,
    no_args_is_help=True,
)
state_app = typer.Typer(name="state", help="Inspect recorded state")
app.add_typer(state_app, name="state")

console = Console()

logger = logging.getLogger(__name__)

EXIT_FAILED = 1
EXIT_PLAN_ERROR = 2

_SYMBOLS = {
    Action.CREATE: ("+", "green"),
    Action.UPDATE: ("~", "yellow"),
    Action.REPLACE: ("-/+", "magenta"),
    Action.DELETE: ("-", "red"),
}

_STATUS_STYLES = {
    Status.APPLIED: "green",
    Status.FAILED: "red",
    Status.SKIPPED: "yellow",
}


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


def _parse_vars(values: list[str] | None) -> dict[str, str]:
    variables: dict[str, str] = {}
    for item in values or []:
        name, sep, value = item.partition("=")
        if not sep or not name:
            raise typer.BadParameter(f"expected NAME=VALUE, got '{item}'", param_hint="--var")
        variables[name.strip()] = value
    return variables


def _engine(
    directory: Path,
    state: Path | None,
    variables: list[str] | None,
    parallelism: int | None,
) -> Engine:
    return Engine.from_directory(
        directory,
        variables=_parse_vars(variables),
        state=state.resolve() if state is not None else None,
        parallelism=parallelism,
    )


def _store(directory: Path, state: Path | None) -> StateStore:
    """Open the state file without planning; broken documents only cost their settings."""
    if state is not None:
        return StateStore(state.resolve())
    try:
        config = EngineConfig.from_settings(hcl.scan(directory).settings)
    except TerrikError as exc:
        logger.warning("Ignoring settings of unreadable documents: %s", exc)
        config = EngineConfig()
    return StateStore(config.state_path(directory))


def _fail(exc: TerrikError) -> typer.Exit:
    console.print(f"[bold red]Error:[/bold red] {exc}")
    return typer.Exit(EXIT_PLAN_ERROR)


def _format(value: Any) -> str:
    if isinstance(value, Unknown):
        return "[dim](known after apply)[/dim]"
    return escape(json.dumps(value, default=str))


def _print_plan(plan: Plan) -> None:
    if not plan.has_changes:
        console.print("[green]No changes.[/green] Infrastructure matches the configuration.")
        return
    for step in plan:
        if step.replaced:
            continue
        symbol, style = _SYMBOLS[step.action]
        title = f"[{style}]{symbol} {step.address}[/{style}]"
        if step.replace_strategy is not None:
            title += f" [dim]({step.replace_strategy})[/dim]"
        console.print(title)
        if step.action is Action.DELETE:
            continue
        for key, change in step.changes.items():
            marker = " [magenta]# forces replacement[/magenta]" if change.forces_replacement else ""
            if step.action is Action.CREATE:
                console.print(f"    {key} = {_format(change.new)}")
            else:
                console.print(f"    {key}: {_format(change.old)} -> {_format(change.new)}{marker}")
    console.print(f"\n[bold]{plan.summary()}[/bold]")


def _print_report(report: ExecutionReport) -> None:
    if report.results:
        table = Table(show_header=True, header_style="bold cyan")
        table.add_column("Resource", style="cyan")
        table.add_column("Action")
        table.add_column("Status")
        table.add_column("Detail", style="dim")
        for result in report.results.values():
            style = _STATUS_STYLES[result.status]
            table.add_row(
                result.address,
                str(result.action),
                f"[{style}]{result.status}[/{style}]",
                result.error or "",
            )
        console.print(table)
    console.print(f"[bold]{report.summary()}[/bold]")
    _print_outputs(report.outputs)


def _print_outputs(outputs: dict[str, Any]) -> None:
    if not outputs:
        return
    console.print("\n[bold]Outputs:[/bold]")
    for name, value in outputs.items():
        console.print(f"  {name} = {_format(value)}")


def _run_apply(engine: Engine, *, destroy: bool, refresh: bool | None) -> None:
    previous = signal.signal(signal.SIGINT, lambda *_: engine.cancel())
    try:
        plan, report = engine.apply(destroy=destroy, refresh=refresh)
    except TerrikError as exc:
        raise _fail(exc) from None
    finally:
        signal.signal(signal.SIGINT, previous)
    _print_plan(plan)
    _print_report(report)
    if not report.success:
        raise typer.Exit(EXIT_FAILED)


@app.command()
def plan(
    directory: Path = typer.Option(Path("."), "--dir", "-d", help="Directory of .hcl documents"),
    state: Optional[Path] = typer.Option(None, "--state", help="State file (default from settings)"),
    var: Optional[list[str]] = typer.Option(None, "--var", help="Variable as NAME=VALUE"),
    parallelism: Optional[int] = typer.Option(None, "--parallelism", "-p", min=1),
    refresh: Optional[bool] = typer.Option(None, "--refresh/--no-refresh", help="Read live state first"),
    destroy: bool = typer.Option(False, "--destroy", help="Plan removal of every resource"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Show the actions needed to reconcile state with the documents."""
    _configure_logging(verbose)
    try:
        engine = _engine(directory, state, var, parallelism)
        result = engine.plan(destroy=destroy, refresh=refresh)
    except TerrikError as exc:
        raise _fail(exc) from None
    _print_plan(result)


@app.command()
def apply(
    directory: Path = typer.Option(Path("."), "--dir", "-d", help="Directory of .hcl documents"),
    state: Optional[Path] = typer.Option(None, "--state", help="State file (default from settings)"),
    var: Optional[list[str]] = typer.Option(None, "--var", help="Variable as NAME=VALUE"),
    parallelism: Optional[int] = typer.Option(None, "--parallelism", "-p", min=1),
    refresh: Optional[bool] = typer.Option(None, "--refresh/--no-refresh", help="Read live state first"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Plan and apply all changes."""
    _configure_logging(verbose)
    try:
        engine = _engine(directory, state, var, parallelism)
    except TerrikError as exc:
        raise _fail(exc) from None
    _run_apply(engine, destroy=False, refresh=refresh)


@app.command()
def destroy(
    directory: Path = typer.Option(Path("."), "--dir", "-d", help="Directory of .hcl documents"),
    state: Optional[Path] = typer.Option(None, "--state", help="State file (default from settings)"),
    var: Optional[list[str]] = typer.Option(None, "--var", help="Variable as NAME=VALUE"),
    parallelism: Optional[int] = typer.Option(None, "--parallelism", "-p", min=1),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Delete every resource recorded in state."""
    _configure_logging(verbose)
    try:
        engine = _engine(directory, state, var, parallelism)
    except TerrikError as exc:
        raise _fail(exc) from None
    _run_apply(engine, destroy=True, refresh=False)


@app.command()
def output(
    name: Optional[str] = typer.Argument(None, help="Show a single output"),
    directory: Path = typer.Option(Path("."), "--dir", "-d", help="Directory of .hcl documents"),
    state: Optional[Path] = typer.Option(None, "--state", help="State file (default from settings)"),
    var: Optional[list[str]] = typer.Option(None, "--var", help="Variable as NAME=VALUE"),
):
    """Print output values computed from the recorded state."""
    try:
        values = _engine(directory, state, var, None).outputs()
    except TerrikError as exc:
        raise _fail(exc) from None
    if name is None:
        _print_outputs(values)
        return
    if name not in values:
        console.print(f"[red]Output '{name}' not found[/red]")
        raise typer.Exit(EXIT_FAILED)
    console.print(_format(values[name]))


@state_app.command("list")
def state_list(
    directory: Path = typer.Option(Path("."), "--dir", "-d", help="Directory of .hcl documents"),
    state: Optional[Path] = typer.Option(None, "--state", help="State file (default from settings)"),
):
    """List recorded resources."""
    try:
        store = _store(directory, state)
    except TerrikError as exc:
        raise _fail(exc) from None
    if not len(store):
        console.print("[yellow]No resources in state[/yellow]")
        return
    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Address", style="cyan")
    table.add_column("ID", style="green")
    table.add_column("Updated", style="dim")
    for address in store.addresses():
        record = store.get(address)
        table.add_row(address, record.id or "", record.updated_at.isoformat(timespec="seconds"))
    console.print(table)


@state_app.command("show")
def state_show(
    address: str = typer.Argument(..., help="Resource address, e.g. bucket.site"),
    directory: Path = typer.Option(Path("."), "--dir", "-d", help="Directory of .hcl documents"),
    state: Optional[Path] = typer.Option(None, "--state", help="State file (default from settings)"),
):
    """Show the recorded attributes of one resource."""
    try:
        store = _store(directory, state)
    except TerrikError as exc:
        raise _fail(exc) from None
    record = store.get(address)
    if record is None:
        console.print(f"[red]{address} is not in state[/red]")
        raise typer.Exit(EXIT_FAILED)
    console.print_json(record.model_dump_json())


def main():
    app()

#!/usr/bin/env python3
"""
Strata CLI - Main entry point.

Commands:
- validate / graph: parse declarations and check the dependency graph
- plan: show the change-set (exit 0 no changes, 2 changes pending, 1 error)
- apply / destroy: reconcile the remote account (exit 0 success, 1 failure)
- output / state: inspect stored outputs and records
"""
from __future__ import annotations

import asyncio
import json
import sys
import uuid
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from strata import __version__
from strata.config.loader import load_config
from strata.core.exceptions import StrataError
from strata.core.types import ApplyResult, Operation, Plan
from strata.engine.engine import Engine
from strata.utils.logger import setup_logger

console = Console()

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CHANGES = 2

OPERATION_STYLES = {
    Operation.CREATE: ("+", "green"),
    Operation.UPDATE: ("~", "yellow"),
    Operation.REPLACE: ("-/+", "magenta"),
    Operation.DESTROY: ("-", "red"),
    Operation.NOOP: (" ", "dim"),
}


def _parse_vars(values: tuple[str, ...]) -> dict[str, str]:
    """Parse repeated --var name=value options."""
    parsed = {}
    for item in values:
        if "=" not in item:
            raise click.BadParameter(f"expected NAME=VALUE, got '{item}'", param_hint="--var")
        name, value = item.split("=", 1)
        parsed[name.strip()] = value
    return parsed


def _engine(ctx: click.Context) -> Engine:
    return ctx.obj["engine_factory"]()


def _run(coro: Any) -> Any:
    """Run a coroutine, turning Strata errors into exit code 1."""
    try:
        return asyncio.run(coro)
    except StrataError as e:
        _fail(e)


def _fail(error: StrataError) -> None:
    ctx = click.get_current_context()
    if ctx.obj.get("json"):
        click.echo(json.dumps({"error": type(error).__name__, "message": error.message, "details": error.details},
                              default=str))
    else:
        console.print(f"[red]Error ({type(error).__name__}):[/red] {error.message}")
    sys.exit(EXIT_ERROR)


def _print_plan(plan: Plan) -> None:
    changes = plan.changes if plan.destroy else plan.actionable
    if not changes:
        console.print("[green]No changes.[/green] Remote state matches the declarations.")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("", width=3)
    table.add_column("Address", style="cyan")
    table.add_column("Operation")
    table.add_column("Reason", style="dim")
    for change in changes:
        symbol, style = OPERATION_STYLES[change.operation]
        table.add_row(f"[{style}]{symbol}[/{style}]", change.address, f"[{style}]{change.operation}[/{style}]",
                      change.reason)
    console.print(table)

    counts = plan.summary()
    console.print(
        f"Plan: [green]{counts['create']} to create[/green], [yellow]{counts['update']} to update[/yellow], "
        f"[magenta]{counts['replace']} to replace[/magenta], [red]{counts['destroy']} to destroy[/red]."
    )


def _print_result(result: ApplyResult) -> None:
    for change in result.applied:
        symbol, style = OPERATION_STYLES[change.operation]
        console.print(f"  [{style}]{symbol}[/{style}] {change.address}: {change.operation} complete")
    for failure in result.failures:
        console.print(f"  [red]✗ {failure.address}: {failure.operation} failed: {failure.reason}[/red]")
    for skipped in result.skipped:
        console.print(f"  [yellow]- {skipped.address}: {skipped.operation} skipped ({skipped.reason})[/yellow]")

    if result.timed_out:
        console.print("[yellow]⏱️  Run timeout exceeded; remaining changes were not started.[/yellow]")
    if result.success:
        console.print(f"[green]✅ Apply complete:[/green] {len(result.applied)} change(s) in {result.duration_s:.1f}s")
    else:
        console.print(
            f"[red]❌ Apply incomplete:[/red] {len(result.applied)} applied, "
            f"{len(result.failures)} failed, {len(result.skipped)} skipped"
        )


def _plan_dict(plan: Plan) -> dict[str, Any]:
    return {
        "destroy": plan.destroy,
        "has_changes": plan.has_changes,
        "summary": plan.summary(),
        "changes": [c.to_dict() for c in plan.changes],
    }


@click.group()
@click.version_option(version=__version__, prog_name="strata")
@click.option("--state", "state_path", type=click.Path(path_type=Path), default=None,
              help="State database (default: ~/.strata/state.db)")
@click.option("--provider", type=click.Choice(["aws", "local"]), default=None, help="Provider to use")
@click.option("--config", "config_path", type=click.Path(path_type=Path), default=None,
              help="Configuration file (default: ~/.strata/config.yaml)")
@click.option("--verbose", "-v", is_flag=True, help="Log to stderr")
@click.option("--json", "as_json", is_flag=True, help="Print machine-readable JSON")
@click.pass_context
def cli(ctx, state_path, provider, config_path, verbose, as_json):
    """
    Strata - Declarative cloud resource provisioning.

    Declarations are YAML files describing resources, variables and
    outputs. Run `strata plan PATH` to see what would change.
    """
    ctx.ensure_object(dict)
    ctx.obj["json"] = as_json

    try:
        config = load_config(config_path)
    except StrataError as e:
        _fail(e)
    if state_path is not None:
        config.general.state_path = state_path
    if provider is not None:
        config.provider.name = provider

    setup_logger(verbose=verbose, run_id=uuid.uuid4().hex[:8], config=config.logging)
    ctx.obj["config"] = config
    ctx.obj["engine_factory"] = lambda: Engine(config)


def _declaration_options(func):
    func = click.option("--var", "variables", multiple=True, help="Set a variable (NAME=VALUE)")(func)
    func = click.option("--var-file", "var_files", multiple=True, type=click.Path(exists=True, path_type=Path),
                        help="YAML file of variable values")(func)
    return func


@cli.command()
@click.argument("path", type=click.Path(path_type=Path))
@_declaration_options
@click.pass_context
def validate(ctx, path, variables, var_files):
    """Parse declarations and check the dependency graph."""
    try:
        engine = _engine(ctx)
        declaration, graph = engine.load(path, _parse_vars(variables), list(var_files))
    except StrataError as e:
        _fail(e)

    if ctx.obj["json"]:
        click.echo(json.dumps({"valid": True, "resources": len(graph), "outputs": len(declaration.outputs)}))
    else:
        console.print(
            f"[green]✅ Valid:[/green] {len(graph)} resource(s), {len(declaration.outputs)} output(s) "
            f"in {len(declaration.sources)} file(s)"
        )


@cli.command()
@click.argument("path", type=click.Path(path_type=Path))
@_declaration_options
@click.pass_context
def graph(ctx, path, variables, var_files):
    """Print the topological order and dependency edges."""
    try:
        _, dag = _engine(ctx).load(path, _parse_vars(variables), list(var_files))
    except StrataError as e:
        _fail(e)

    if ctx.obj["json"]:
        click.echo(json.dumps({"order": dag.topological_order(), "edges": dag.edge_list()}))
        return

    console.print("[bold]Apply order[/bold]")
    for i, address in enumerate(dag.topological_order(), 1):
        deps = dag.dependencies(address)
        suffix = f" [dim]<- {', '.join(deps)}[/dim]" if deps else ""
        console.print(f"  {i:>3}. [cyan]{address}[/cyan]{suffix}")


@cli.command()
@click.argument("path", type=click.Path(path_type=Path))
@_declaration_options
@click.option("--no-refresh", is_flag=True, help="Do not re-read remote state first")
@click.pass_context
def plan(ctx, path, variables, var_files, no_refresh):
    """Show the change-set. Exit 0: no changes, 2: changes pending, 1: error."""
    values = _parse_vars(variables)
    engine = _engine(ctx)

    async def _plan() -> Plan:
        try:
            return await engine.plan(path, values, list(var_files),
                                     refresh=False if no_refresh else None)
        finally:
            await engine.close()

    result = _run(_plan())
    if ctx.obj["json"]:
        click.echo(json.dumps(_plan_dict(result)))
    else:
        _print_plan(result)
    sys.exit(EXIT_CHANGES if result.has_changes else EXIT_OK)


@cli.command()
@click.argument("path", type=click.Path(path_type=Path))
@_declaration_options
@click.option("--no-refresh", is_flag=True, help="Do not re-read remote state first")
@click.pass_context
def apply(ctx, path, variables, var_files, no_refresh):
    """Apply the change-set. Exit 0: success, 1: partial or total failure."""
    values = _parse_vars(variables)
    engine = _engine(ctx)

    async def _apply() -> tuple[Plan, ApplyResult]:
        try:
            return await engine.apply(path, values, list(var_files),
                                      refresh=False if no_refresh else None)
        finally:
            await engine.close()

    planned, result = _run(_apply())
    _report(ctx, planned, result)


@cli.command()
@click.option("--no-refresh", is_flag=True, help="Do not re-read remote state first")
@click.pass_context
def destroy(ctx, no_refresh):
    """Destroy every resource in state, dependents first."""
    engine = _engine(ctx)

    async def _destroy() -> tuple[Plan, ApplyResult]:
        try:
            return await engine.destroy(refresh=False if no_refresh else None)
        finally:
            await engine.close()

    planned, result = _run(_destroy())
    _report(ctx, planned, result)


def _report(ctx: click.Context, planned: Plan, result: ApplyResult) -> None:
    if ctx.obj["json"]:
        click.echo(json.dumps({"plan": _plan_dict(planned), "result": result.to_dict()}))
    else:
        _print_plan(planned)
        if planned.has_changes:
            _print_result(result)
    sys.exit(EXIT_OK if result.success else EXIT_ERROR)


@cli.command()
@click.argument("name", required=False)
@click.pass_context
def output(ctx, name):
    """Print a stored output, or all of them."""
    engine = _engine(ctx)

    if name is None:
        values = _run(engine.outputs())
        if ctx.obj["json"]:
            click.echo(json.dumps({v.name: v.value for v in values}, default=str))
            return
        for value in values:
            shown = "(sensitive)" if value.sensitive else json.dumps(value.value, default=str)
            console.print(f"[cyan]{value.name}[/cyan] = {shown}")
        return

    value = _run(engine.output(name))
    if value is None:
        console.print(f"[red]Error:[/red] output '{name}' not found")
        sys.exit(EXIT_ERROR)
    if ctx.obj["json"]:
        click.echo(json.dumps(value.value, default=str))
    elif isinstance(value.value, str):
        click.echo(value.value)
    else:
        click.echo(json.dumps(value.value, default=str))


@cli.group()
def state():
    """Inspect stored state."""


@state.command("list")
@click.pass_context
def state_list(ctx):
    """List resources in state."""
    records = _run(_engine(ctx).state_list())
    if ctx.obj["json"]:
        click.echo(json.dumps([{"address": r.address, "remote_id": r.remote_id} for r in records]))
        return
    for record in records:
        console.print(f"[cyan]{record.address}[/cyan]  {record.remote_id}")


@state.command("show")
@click.argument("address")
@click.pass_context
def state_show(ctx, address):
    """Show one resource record."""
    record = _run(_engine(ctx).state_show(address))
    if record is None:
        console.print(f"[red]Error:[/red] {address} is not in state")
        sys.exit(EXIT_ERROR)

    data = {
        "address": record.address,
        "remote_id": record.remote_id,
        "attributes": record.attributes,
        "outputs": record.outputs,
        "dependencies": record.dependencies,
        "created_at": record.created_at.isoformat(),
        "updated_at": record.updated_at.isoformat(),
    }
    if ctx.obj["json"]:
        click.echo(json.dumps(data, default=str))
        return
    console.print(f"[bold cyan]{record.address}[/bold cyan] ({record.remote_id})")
    for section in ("attributes", "outputs"):
        console.print(f"  [bold]{section}[/bold]")
        for key, value in sorted(data[section].items()):
            console.print(f"    {key} = {json.dumps(value, default=str)}")
    if record.dependencies:
        console.print(f"  [bold]depends on[/bold] {', '.join(record.dependencies)}")


def main():
    """Entry point for the strata CLI."""
    cli()


if __name__ == "__main__":
    main()

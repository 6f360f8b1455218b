"""
envstack CLI: plan and apply environment compositions from the command line.

Usage:
    envstack plan <env>                 Show what apply would change
    envstack apply <env>                Plan, confirm and apply
    envstack destroy <env>              Remove everything recorded for <env>
    envstack output <env> <name>        Print one exported value
    envstack status                     Show every environment's lifecycle status
    envstack validate                   Validate configuration and every composition
    envstack handoff <env>              Print deployment facts for a build
"""

import json
from dataclasses import replace
from typing import Optional

import typer
from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from ..config import PolicyConfig, StateConfig, get_config, set_config
from ..engine import Engine
from ..errors import ConfigurationError, EnvStackError, PartialApplyFailure
from ..executors import NodeResult
from ..planning import ResolvedPlan
from ..types import NodeStatus, PlanAction

console = Console()
err_console = Console(stderr=True)

cli = typer.Typer(
    name="envstack",
    help="Declarative environment composition: plan and apply network, cluster and registry stacks.",
    no_args_is_help=True,
)

ACTION_STYLES = {
    PlanAction.CREATE: ("+", "green"),
    PlanAction.UPDATE: ("~", "yellow"),
    PlanAction.DESTROY: ("-", "red"),
    PlanAction.NOOP: (" ", "dim"),
}

PAST_TENSE = {
    PlanAction.CREATE: "created",
    PlanAction.UPDATE: "updated",
    PlanAction.DESTROY: "destroyed",
    PlanAction.NOOP: "unchanged",
}


@cli.callback()
def main(
    parameters: Optional[str] = typer.Option(
        None, "--parameters", "-p", help="YAML or JSON parameters file (built-in environments if omitted)"
    ),
    state_dir: Optional[str] = typer.Option(None, "--state-dir", help="Directory holding applied state"),
    strict: bool = typer.Option(False, "--strict", help="Fail plans that carry policy warnings"),
):
    """Declarative environment composition."""
    try:
        config = get_config()
    except ConfigurationError as e:
        _fail(e)

    if parameters is None and state_dir is None and not strict:
        return

    try:
        state = StateConfig(
            state_dir=state_dir or config.state.state_dir,
            parameters_file=parameters or config.state.parameters_file,
        )
        policy = config.policy
        if strict:
            policy = PolicyConfig(strict=True, allowed_open_cidrs=list(config.policy.allowed_open_cidrs))
        set_config(replace(config, state=state, policy=policy))
    except ValueError as e:
        err_console.print(f"[red]ConfigurationError:[/red] {e}")
        raise typer.Exit(code=2)


@cli.command()
def plan(
    environment: str = typer.Argument(..., help="Environment to plan, e.g. dev"),
    show_all: bool = typer.Option(False, "--all", help="Also list unchanged resources"),
    output_json: bool = typer.Option(False, "--json", help="Output plan as JSON"),
):
    """Show the changes apply would make to an environment."""
    try:
        resolved = _engine().plan(environment)
    except EnvStackError as e:
        _fail(e)

    if output_json:
        typer.echo(json.dumps(resolved.to_dict(), indent=2))
        return

    _print_plan(resolved, show_all)


@cli.command()
def apply(
    environment: str = typer.Argument(..., help="Environment to apply, e.g. dev"),
    auto_approve: bool = typer.Option(False, "--auto-approve", "-y", help="Skip the confirmation prompt"),
):
    """Plan an environment and apply the changes."""
    engine = _engine(progress=_print_progress)
    try:
        resolved = engine.plan(environment)
        _print_plan(resolved, show_all=False)

        if resolved.has_changes and not auto_approve:
            typer.confirm(f"Apply these changes to '{environment}'?", abort=True)

        result = engine.apply_plan(resolved)
    except EnvStackError as e:
        _fail(e)

    console.print(f"[green]Apply complete:[/green] {len(result.succeeded)} resource(s) changed.")
    for name, value in sorted(result.outputs.items()):
        console.print(f"  {name} = {_render(value)}", highlight=False, soft_wrap=True)


@cli.command()
def destroy(
    environment: str = typer.Argument(..., help="Environment to destroy, e.g. dev"),
    auto_approve: bool = typer.Option(False, "--auto-approve", "-y", help="Skip the confirmation prompt"),
):
    """Remove every resource recorded for an environment."""
    engine = _engine(progress=_print_progress)
    try:
        resolved = engine.destroy_plan(environment)
        if not resolved.has_changes:
            console.print(f"Nothing to destroy in '{environment}'.")
            engine.apply_plan(resolved)
            return

        _print_plan(resolved, show_all=False)
        if not auto_approve:
            typer.confirm(f"Destroy every resource of '{environment}'?", abort=True)

        result = engine.apply_plan(resolved)
    except EnvStackError as e:
        _fail(e)

    console.print(f"[green]Destroy complete:[/green] {len(result.succeeded)} resource(s) destroyed.")


@cli.command()
def output(
    environment: str = typer.Argument(..., help="Environment to read from"),
    name: str = typer.Argument(..., help="Exported output name, e.g. ecr_repository_url"),
):
    """Print one exported value of an applied environment."""
    try:
        value = _engine().output(environment, name)
    except EnvStackError as e:
        _fail(e)

    typer.echo(value if isinstance(value, str) else json.dumps(value))


@cli.command()
def status(
    output_json: bool = typer.Option(False, "--json", help="Output status as JSON"),
):
    """Show lifecycle status, resource counts and outputs of every environment."""
    engine = _engine()
    rows = []
    try:
        environments = sorted(set(engine.environments()) | set(engine.state_store.environments()))
        for environment in environments:
            state = engine.state(environment)
            rows.append({
                "environment": environment,
                "status": engine.status(environment).value,
                "resources": len(state.resources) if state else 0,
                "serial": state.serial if state else 0,
                "updated_at": state.updated_at if state else None,
                "last_error": state.last_error if state else None,
            })
    except EnvStackError as e:
        _fail(e)

    if output_json:
        typer.echo(json.dumps(rows, indent=2))
        return

    table = Table(title="Environments", box=box.ROUNDED)
    table.add_column("Environment", style="bold")
    table.add_column("Status")
    table.add_column("Resources")
    table.add_column("Serial")
    table.add_column("Last error")

    for row in rows:
        error = row["last_error"]
        table.add_row(
            row["environment"],
            _status_badge(row["status"]),
            str(row["resources"]),
            str(row["serial"]),
            f"{error['kind']} at {error['address']}" if error else "",
        )
    console.print(table)


@cli.command()
def validate():
    """Validate configuration and plan every environment without applying."""
    config = get_config()
    console.print("[bold]Running validation checks...[/bold]\n")
    exit_code = 0

    config_errors = config.validate()
    if config_errors:
        exit_code = 2
        for err in config_errors:
            console.print(f"  [red]FAIL[/red] Config: {err}")
    else:
        console.print("  [green]PASS[/green] Configuration is valid")

    try:
        engine = _engine()
        environments = engine.environments()
    except EnvStackError as e:
        _fail(e)

    for environment in environments:
        try:
            resolved = engine.plan(environment)
        except EnvStackError as e:
            exit_code = exit_code or e.exit_code
            console.print(f"  [red]FAIL[/red] {environment}: {e.kind}: {e}", highlight=False, soft_wrap=True)
            continue

        summary = resolved.summary()
        console.print(
            f"  [green]PASS[/green] {environment}: {len(resolved.entries)} resources, "
            f"{summary['create']} to create, {summary['update']} to update"
        )
        for warning in resolved.warnings:
            console.print(
                f"    [yellow]WARN[/yellow] {warning.rule} {warning.address}: {warning.message}",
                highlight=False,
                soft_wrap=True,
            )

    console.print()
    if exit_code:
        console.print("[red]Validation failed.[/red]")
        raise typer.Exit(code=exit_code)
    console.print("[green]All validation checks passed.[/green]")


@cli.command()
def handoff(
    environment: str = typer.Argument(..., help="Applied environment to deploy to"),
    branch: str = typer.Option(..., "--branch", "-b", help="Source branch of the build"),
    build_number: int = typer.Option(..., "--build-number", "-n", help="CI build number"),
    output_json: bool = typer.Option(False, "--json", help="Output handoff as JSON"),
):
    """Print the cluster, repository and image reference for a build."""
    try:
        result = _engine().handoff(environment, branch, build_number)
    except EnvStackError as e:
        _fail(e)
    except ValueError as e:
        err_console.print(f"[red]Validation error:[/red] {e}")
        raise typer.Exit(code=2)

    if output_json:
        typer.echo(json.dumps(result.to_dict(), indent=2))
        return

    table = Table(show_header=False, box=box.SIMPLE)
    table.add_column("Field", style="bold")
    table.add_column("Value", overflow="fold")
    for key, value in result.to_dict().items():
        table.add_row(key, str(value))
    console.print(Panel(table, title=f"Deployment handoff: {environment}", border_style="blue"))


def _engine(progress=None) -> Engine:
    try:
        return Engine(progress=progress)
    except EnvStackError as e:
        _fail(e)


def _print_plan(resolved: ResolvedPlan, show_all: bool) -> None:
    entries = resolved.entries if show_all else resolved.actionable()

    if entries:
        table = Table(title=f"Plan: {resolved.environment}", box=box.ROUNDED)
        table.add_column("", width=1)
        table.add_column("Address", style="bold", overflow="fold")
        table.add_column("Type")
        table.add_column("Changes", overflow="fold")

        for entry in entries:
            symbol, style = ACTION_STYLES[entry.action]
            changes = ", ".join(entry.changed_attributes) if entry.action is PlanAction.UPDATE else ""
            table.add_row(f"[{style}]{symbol}[/{style}]", entry.address, entry.resource_type, changes)
        console.print(table)

    summary = resolved.summary()
    if not resolved.has_changes:
        console.print(f"No changes. '{resolved.environment}' matches its applied state.")
    else:
        console.print(
            f"Plan: {summary['create']} to create, {summary['update']} to update, "
            f"{summary['destroy']} to destroy, {summary['noop']} unchanged."
        )

    for warning in resolved.warnings:
        console.print(
            f"[yellow]Warning:[/yellow] {warning.rule} at {warning.address}: {warning.message}",
            highlight=False,
            soft_wrap=True,
        )


def _print_progress(node: NodeResult) -> None:
    if node.status is NodeStatus.SUCCEEDED:
        console.print(f"  [green]{PAST_TENSE[node.action]}[/green] {node.address}", highlight=False)
    elif node.status is NodeStatus.FAILED:
        err_console.print(f"  [red]failed[/red] {node.address}", highlight=False)


def _fail(error: EnvStackError) -> None:
    err_console.print(f"[red]{error.kind}:[/red] {escape(str(error))}", highlight=False, soft_wrap=True)

    if isinstance(error, PartialApplyFailure):
        for address, node_error in error.failed.items():
            err_console.print(
                f"  failed node: {escape(address)} ({node_error.kind}: {escape(str(node_error))})",
                highlight=False,
                soft_wrap=True,
            )
        if error.skipped:
            err_console.print(f"  skipped: {', '.join(error.skipped)}", highlight=False, soft_wrap=True)

    raise typer.Exit(code=error.exit_code)


def _render(value) -> str:
    return value if isinstance(value, str) else json.dumps(value)


def _status_badge(value: str) -> str:
    styles = {"applied": "green", "failed": "red", "applying": "yellow", "planned": "cyan"}
    style = styles.get(value, "dim")
    return f"[{style}]{value}[/{style}]"


if __name__ == "__main__":
    cli()

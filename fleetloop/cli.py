"""
fleetloop CLI - operator commands for the build/deploy/test/fix loop.

Exit codes:
    0 success · 1 unexpected error · 2 unreachable fleet · 3 build failure
    4 unrecoverable test failure · 5 invalid input · 6 stopped by operator
"""
import asyncio
import json
import logging
import os
import signal
import sys
from typing import Optional, Tuple

import click
import uvicorn
import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from fleetloop.core.config import FLEET_INVENTORY
from fleetloop.core.constants import EXIT_INVALID_INPUT, EXIT_OK
from fleetloop.core.errors import NodeNotFoundError, ProjectActiveError
from fleetloop.models.test_plan import TestPlan
from fleetloop.services.session_manager import SessionManager
from fleetloop.utils.logging_config import setup_logging

console = Console()
logger = logging.getLogger(__name__)


def _fail(message: str, code: int = EXIT_INVALID_INPUT) -> None:
    console.print(f"[red]✗ {escape(message)}[/red]")
    sys.exit(code)


def _manager(ctx) -> SessionManager:
    inventory = ctx.obj["inventory"]
    if not os.path.exists(inventory):
        _fail(f"Inventory not found: {inventory}")
    return SessionManager(inventory_path=inventory)


def _parse_thresholds(values: Tuple[str, ...]) -> dict:
    thresholds = {}
    for value in values:
        metric, sep, pct = value.partition("=")
        if not sep or not metric:
            raise click.BadParameter(f"expected METRIC=PERCENT, got {value!r}", param_hint="--threshold")
        try:
            thresholds[metric.strip()] = float(pct)
        except ValueError:
            raise click.BadParameter(f"not a number: {pct!r}", param_hint="--threshold")
    return thresholds


def load_plan(plan_file: Optional[str], project: Optional[str], focus: Optional[str],
              criteria: Optional[str], thresholds: dict, predicate: Optional[str],
              proof_method: Optional[str]) -> TestPlan:
    """Merge a plan file (YAML or JSON) with command line overrides and validate."""
    data: dict = {}
    if plan_file:
        with open(plan_file, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    if project:
        data["project"] = project
    if focus:
        data["focus"] = focus
    if proof_method:
        data["proof_method"] = proof_method
    success = dict(data.get("success_criteria") or {})
    if criteria:
        success["kind"] = criteria
    if thresholds:
        success["thresholds"] = thresholds
    if predicate:
        success["predicate"] = predicate
    if success:
        data["success_criteria"] = success
    return TestPlan.model_validate(data)


class ExitCodeGroup(click.Group):
    """Usage errors exit with the invalid-input code instead of click's 2."""

    def make_context(self, *args, **kwargs):
        try:
            return super().make_context(*args, **kwargs)
        except click.UsageError as e:
            e.exit_code = EXIT_INVALID_INPUT
            raise

    def invoke(self, ctx):
        try:
            return super().invoke(ctx)
        except click.UsageError as e:
            e.exit_code = EXIT_INVALID_INPUT
            raise


@click.group(cls=ExitCodeGroup)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.option("--inventory", default=FLEET_INVENTORY, show_default=True, help="Fleet inventory YAML")
@click.pass_context
def main(ctx, verbose, inventory):
    """Autonomous build → deploy → test → fix loop over a VPS test fleet."""
    ctx.ensure_object(dict)
    ctx.obj["inventory"] = inventory
    setup_logging(logging.DEBUG if verbose else logging.INFO, log_dir=os.getenv("LOG_DIR", "logs"))


@main.command()
@click.option("--plan", "plan_file", type=click.Path(exists=True, dir_okay=False), help="Plan file (YAML/JSON)")
@click.option("--project", "-p", help="Project identifier")
@click.option("--focus", type=click.Choice(["connectivity", "nat-traversal", "gossip", "throughput", "full-suite"]))
@click.option("--criteria", type=click.Choice(["all-pass", "threshold", "improvement", "custom"]))
@click.option("--threshold", "thresholds", multiple=True, help="METRIC=PERCENT (repeatable)")
@click.option("--predicate", help="Registered custom predicate name")
@click.option("--proof-method", type=click.Choice(["logs", "metrics", "manual", "all"]))
@click.option("--fresh", is_flag=True, help="Ignore saved state and start from SETUP")
@click.pass_context
def start(ctx, plan_file, project, focus, criteria, thresholds, predicate, proof_method, fresh):
    """Run a project's loop in the foreground until COMPLETE or STOPPED."""
    try:
        plan = load_plan(plan_file, project, focus, criteria, _parse_thresholds(thresholds),
                         predicate, proof_method)
    except ValidationError as e:
        _fail(f"Invalid test plan:\n{e}")
    except (OSError, yaml.YAMLError) as e:
        _fail(f"Cannot read plan file: {e}")

    manager = _manager(ctx)
    try:
        orchestrator = manager.prepare(plan, resume=not fresh)
    except ProjectActiveError as e:
        _fail(str(e))

    async def _run():
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, orchestrator.request_stop)
            except NotImplementedError:
                pass
        return await orchestrator.run()

    console.print(f"[bold blue]▶ {plan.project}[/bold blue] starting at {orchestrator.state.state.value}")
    try:
        final = asyncio.run(_run())
    finally:
        manager.release(plan.project)
    code = orchestrator.exit_code()
    color = "green" if code == EXIT_OK else "red"
    console.print(f"[{color}]{final.project}: {final.state.value}"
                  f"{' (' + final.stop_reason + ')' if final.stop_reason else ''}[/{color}]")
    if final.proof_path:
        console.print(f"Proof: {final.proof_path}")
    sys.exit(code)


@main.command()
@click.pass_context
def status(ctx):
    """Show every known project's loop state."""
    manager = SessionManager(inventory_path=ctx.obj["inventory"])
    states = manager.status()
    if not states:
        console.print("[dim]No projects.[/dim]")
        return

    table = Table(title="Loops")
    table.add_column("Project", style="cyan")
    table.add_column("State")
    table.add_column("Tests", justify="right")
    table.add_column("Fix attempts", justify="right")
    table.add_column("Last transition")
    table.add_column("Wait until")
    table.add_column("Stop reason", style="red")
    for s in states:
        table.add_row(
            s.project,
            s.state.value,
            str(s.test_count),
            str(s.fix_attempts),
            s.last_transition_at.strftime("%Y-%m-%d %H:%M:%S"),
            s.wait_deadline.strftime("%Y-%m-%d %H:%M:%S") if s.wait_deadline else "-",
            s.stop_reason or "",
        )
    console.print(table)


@main.command()
@click.argument("project")
@click.pass_context
def stop(ctx, project):
    """Ask a running loop to stop."""
    manager = SessionManager(inventory_path=ctx.obj["inventory"])
    if not manager.stop(project):
        _fail(f"No running loop for {project}")
    console.print(f"[yellow]Stop requested for {project}[/yellow]")


@main.command()
@click.argument("project")
@click.option("--limit", "-n", default=50, show_default=True, help="Entries to show (0 = all)")
@click.pass_context
def logs(ctx, project, limit):
    """Show a project's activity log."""
    manager = SessionManager(inventory_path=ctx.obj["inventory"])
    if manager.get_state(project) is None:
        _fail(f"Unknown project: {project}")
    styles = {"warning": "yellow", "error": "red"}
    for entry in manager.logs(project, limit):
        style = styles.get(entry.level, "white")
        console.print(
            f"{entry.timestamp.strftime('%Y-%m-%d %H:%M:%S')} [{style}]{entry.state.value:<10}[/{style}] "
            f"{escape(entry.message)}",
            highlight=False,
        )


@main.command()
@click.argument("node")
@click.pass_context
def diagnose(ctx, node):
    """Probe one node and print its diagnostics as JSON."""
    manager = _manager(ctx)
    try:
        report = asyncio.run(manager.diagnose(node))
    except NodeNotFoundError as e:
        _fail(str(e))
    click.echo(json.dumps(report, indent=2))


@main.command()
@click.pass_context
def nodes(ctx):
    """List the fleet inventory."""
    manager = _manager(ctx)
    table = Table(title="Fleet")
    table.add_column("Name", style="cyan")
    table.add_column("Address")
    table.add_column("Role")
    table.add_column("NAT profile")
    table.add_column("Provider / region", style="dim")
    for n in manager.list_nodes():
        address = n.hostname if not n.ip or n.ip == n.hostname else f"{n.hostname} ({n.ip})"
        table.add_row(n.name, address, n.role.value, n.nat_profile.value,
                      f"{n.provider} {n.region}".strip())
    console.print(table)


@main.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, show_default=True, type=int)
def serve(host, port):
    """Run the HTTP API."""
    uvicorn.run("main:app", host=host, port=port)


if __name__ == "__main__":
    main()

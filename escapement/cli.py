"""
Escapement CLI - declarative infrastructure reconciliation.
"""

import asyncio
import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel

from . import __version__
from .core import EscapementCore
from .errors import EscapementError
from .formatters import TerraformStyleFormatter
from .intake.parser import HCL_SUFFIXES, JSON_SUFFIXES
from .models import ActionOutcome, ActionStatus, Plan
from .settings import get_settings

# Setup
app = typer.Typer(
    name="escapement",
    help="Declarative infrastructure reconciliation engine",
    add_completion=False,
)
state_app = typer.Typer(help="Inspect the state document", add_completion=False)
app.add_typer(state_app, name="state")

console = Console()
formatter = TerraformStyleFormatter(console)


def configure_logging():
    """Configure logging based on settings."""
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


# Configure logging on module import
configure_logging()


# Helper functions to reduce duplication across commands
def _get_resource_dir() -> Path:
    """Check the current directory for resource definition files.

    Returns:
        Path to the current directory

    Raises:
        SystemExit: If no *.hcl or *.hcl.json file is found
    """
    resource_dir = Path.cwd()
    suffixes = HCL_SUFFIXES + JSON_SUFFIXES
    if not any(p.name.endswith(suffixes) for p in resource_dir.iterdir() if p.is_file()):
        console.print(
            "[bold red]✗ Error:[/bold red] No resource definitions (*.hcl, *.hcl.json) found in current directory"
        )
        console.print(
            "[dim]Hint: cd into your project directory that contains your .hcl files[/dim]"
        )
        raise typer.Exit(code=1)
    return resource_dir


def _create_command_panel(title: str, color: str) -> Panel:
    """Create a Rich Panel for command display.

    Args:
        title: Command title (e.g., "Escapement Apply")
        color: Border color (e.g., "blue", "cyan", "red")

    Returns:
        Formatted Rich Panel
    """
    settings = get_settings()
    return Panel.fit(
        f"[bold {color}]{title}[/bold {color}]\n"
        f"Directory: {Path.cwd().name}\n"
        f"State: {settings.state_file}",
        border_style=color,
    )


def _handle_command_error(e: Exception, command_type: str) -> None:
    """Handle command errors with appropriate formatting.

    Raises:
        SystemExit: Always exits with code 1
    """
    console.print(f"\n[bold red]✗ {command_type.capitalize()} failed:[/bold red] {e}")
    raise typer.Exit(code=1)


def _run_command(command_name: str, panel_title: str, panel_color: str, core_method: str, *args, **kwargs):
    """Execute an EscapementCore method with common setup and error handling.

    Args:
        command_name: Command name for error messages (e.g., "apply", "plan")
        panel_title: Title for the command panel (e.g., "Escapement Apply")
        panel_color: Border color for the panel (e.g., "blue", "cyan")
        core_method: Name of the EscapementCore method to call (e.g., "apply")
        *args, **kwargs: Arguments passed to the core method

    Returns:
        Whatever the core method returned
    """
    console.print(_create_command_panel(panel_title, panel_color))

    try:
        core = EscapementCore()
        method = getattr(core, core_method)

        # Check if method is async and run accordingly
        if asyncio.iscoroutinefunction(method):
            return asyncio.run(method(*args, **kwargs))
        return method(*args, **kwargs)
    except EscapementError as e:
        _handle_command_error(e, command_name)
    except OSError as e:
        _handle_command_error(e, command_name)


def _approver(auto_approve: bool):
    def approve(plan: Plan) -> bool:
        console.print(formatter.format_plan(plan))
        if auto_approve:
            return True
        return typer.confirm("Do you want to perform these actions?", default=False)

    return approve


def _print_transition(outcome: ActionOutcome) -> None:
    if outcome.status in (ActionStatus.RUNNING, ActionStatus.SUCCEEDED, ActionStatus.FAILED):
        console.print(formatter.format_transition(outcome))


def _finish_apply(report) -> None:
    console.print(formatter.format_apply_report(report))
    if report.has_failures:
        raise typer.Exit(code=1)


@app.command()
def plan(
    out: Path = typer.Option(None, "--out", "-o", help="Save the plan to this file for a later apply"),
):
    """Show the changes an apply would make."""
    resource_dir = _get_resource_dir()
    result = _run_command("plan", "Escapement Plan", "cyan", "plan", resource_dir)

    console.print(formatter.format_plan(result))
    if out is not None:
        result.save(out)
        console.print(f"\n[dim]Saved the plan to: {out}[/dim]")
        console.print(f"[dim]To perform exactly these actions, run: escapement apply --plan {out}[/dim]")


@app.command()
def apply(
    plan_file: Path = typer.Option(None, "--plan", "-p", help="Apply a plan saved with 'plan --out'"),
    auto_approve: bool = typer.Option(False, "--auto-approve", help="Skip interactive approval"),
):
    """Converge infrastructure to the resource definitions."""
    if plan_file is not None:
        if not plan_file.exists():
            console.print(f"[bold red]✗ Error:[/bold red] Plan file not found: {plan_file}")
            raise typer.Exit(code=1)
        try:
            source = Plan.load(plan_file)
        except ValueError as e:
            _handle_command_error(e, "apply")
        # A saved plan was already reviewed
        auto_approve = True
    else:
        source = _get_resource_dir()

    report = _run_command(
        "apply", "Escapement Apply", "blue", "apply", source,
        approve=_approver(auto_approve),
        on_transition=_print_transition,
    )
    _finish_apply(report)


@app.command()
def destroy(
    auto_approve: bool = typer.Option(False, "--auto-approve", help="Skip interactive approval"),
):
    """Destroy every resource recorded in state."""
    report = _run_command(
        "destroy", "Escapement Destroy", "red", "destroy",
        approve=_approver(auto_approve),
        on_transition=_print_transition,
    )
    _finish_apply(report)


@app.command()
def refresh():
    """Compare state with the real infrastructure and record drift."""
    findings = _run_command("refresh", "Escapement Refresh", "yellow", "refresh")
    console.print(formatter.format_drift(findings))


@app.command("force-unlock")
def force_unlock(
    force: bool = typer.Option(False, "--force", "-f", help="Do not ask for confirmation"),
):
    """Remove the state lock left behind by a crashed run."""
    if not force and not typer.confirm("Remove the state lock regardless of its owner?", default=False):
        raise typer.Exit(code=1)

    record = _run_command("force-unlock", "Escapement Force Unlock", "red", "force_unlock")
    if record is None:
        console.print("[dim]State was not locked.[/dim]")
    else:
        console.print(f"[bold green]✓ Removed lock held by '{record.owner_id}'[/bold green]")


@state_app.command("list")
def state_list():
    """List resources recorded in state."""
    records = _run_command("state list", "Escapement State", "cyan", "state_records")
    console.print(formatter.format_state(records))


@app.command()
def version():
    """Show version information."""
    console.print(f"[bold]Escapement[/bold] version {__version__}")


def main():
    """Entry point for CLI."""
    app()


if __name__ == "__main__":
    main()

"""Main Typer application — registers all CLI commands.

Entry point: ``harborline`` (configured via pyproject.toml scripts).

Commands: run, status, verify, runs, targets.
"""

from __future__ import annotations

import subprocess

import typer
from rich.console import Console
from rich.markup import escape

from harborline.cli.commands._common import EXIT_REJECTED, load_settings
from harborline.cli.commands.run_cmd import run_cmd
from harborline.cli.commands.status_cmd import status_cmd, verify_cmd

app = typer.Typer(
    name="harborline",
    help="Harborline: build-tag-push-deploy pipeline orchestrator.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)

app.command(name="run", help="Run the pipeline for one commit event.")(run_cmd)
app.command(name="status", help="Show the summary of a pipeline run.")(status_cmd)
app.command(name="verify", help="Verify a run's ledger hash chain.")(verify_cmd)


def _open_orchestrator(console: Console):
    """Build an Orchestrator for a read command; exit 2 on bad settings."""
    from harborline.core.orchestrator import Orchestrator
    from harborline.core.production_guard import SettingsError

    settings = load_settings(console)
    try:
        return Orchestrator(settings)
    except SettingsError as exc:
        console.print(f"[bold red]{escape(str(exc))}[/bold red]")
        raise typer.Exit(code=EXIT_REJECTED)


@app.command(name="runs", help="List pipeline runs, newest first.")
def runs_cmd(
    branch: str = typer.Option(None, "--branch", "-b", help="Only runs for this branch."),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum runs to list."),
) -> None:
    """List recorded pipeline runs."""
    from harborline.monitor.renderer import RunSummaryRenderer

    console = Console()
    with _open_orchestrator(console) as orchestrator:
        runs = orchestrator.list_runs(branch, limit)
    if not runs:
        console.print("[dim]No runs recorded.[/dim]")
        return
    console.print(RunSummaryRenderer(console=console).render_runs(runs))


@app.command(name="targets", help="Show deployment targets and confirmed digests.")
def targets_cmd(
    check_running: bool = typer.Option(
        False,
        "--check-running",
        help="Ask the compute layer what each target is actually running.",
    ),
) -> None:
    """Show every configured target with its last confirmed digest."""
    from harborline.monitor.renderer import RunSummaryRenderer

    console = Console()
    with _open_orchestrator(console) as orchestrator:
        targets = orchestrator.targets()
        running: dict[str, str] | None = None
        if check_running:
            running = {}
            for target in targets:
                try:
                    running[target.name] = orchestrator.running_digest(target)
                except (RuntimeError, OSError, subprocess.SubprocessError) as exc:
                    console.print(f"[yellow]{target.name}:[/yellow] {escape(str(exc))}")
                    running[target.name] = ""

    console.print(RunSummaryRenderer(console=console).render_targets(targets, running))


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()

"""Rich terminal renderer for run summaries and target state.

Color scheme
------------
- green     : succeeded / committed
- red       : failed / rolled back
- bold red  : rollback failed (manual intervention)
- dim       : skipped
- yellow    : in progress
"""

from __future__ import annotations

from rich.console import Console, Group
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from harborline.models.runs import PipelineRun, RunState, StepOutcome
from harborline.models.targets import DeploymentTarget

_OUTCOME_ICONS: dict[StepOutcome, str] = {
    StepOutcome.SUCCEEDED: "[green]OK[/green]",
    StepOutcome.FAILED: "[bold red]FAILED[/bold red]",
    StepOutcome.SKIPPED: "[dim]SKIPPED[/dim]",
}

_RUN_STYLES: dict[RunState, str] = {
    RunState.SUCCEEDED: "green",
    RunState.FAILED: "red",
}


def _short(digest: str, width: int = 19) -> str:
    return digest if len(digest) <= width else digest[:width] + "…"


class RunSummaryRenderer:
    """Renders pipeline runs as Rich terminal output.

    Parameters
    ----------
    console:
        Rich Console instance.  A new one is created if not provided.
    """

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    # ------------------------------------------------------------------
    # Single run
    # ------------------------------------------------------------------

    def render_run(self, run: PipelineRun, *, chain_valid: bool | None = None) -> Panel:
        """Render one run: a step table plus a summary footer."""
        table = Table(show_header=True, header_style="bold cyan", expand=True)
        table.add_column("#", style="dim", width=4, justify="right")
        table.add_column("Step", min_width=18)
        table.add_column("Outcome", min_width=9, justify="center")
        table.add_column("Detail", min_width=30)
        table.add_column("Refs", min_width=12)

        for i, step in enumerate(run.step_results, start=1):
            detail = escape(step.detail) if step.detail else "[dim]-[/dim]"
            if step.step.startswith("rollout:") and step.data.get("path"):
                detail += f"\n[dim]{escape(step.data['path'])}[/dim]"
            refs = "\n".join(_short(r) for r in step.refs) or "[dim]-[/dim]"
            table.add_row(
                str(i),
                step.step,
                _OUTCOME_ICONS.get(step.outcome, step.outcome.value),
                detail,
                refs,
            )

        style = _RUN_STYLES.get(run.state, "yellow")
        event = run.commit_event
        summary_parts = [
            f"[bold]Run:[/bold] {run.run_id}",
            f"[bold]Branch:[/bold] {escape(event.branch)}",
            f"[bold]Revision:[/bold] {escape(event.revision)}",
            f"[bold]State:[/bold] [{style}]{run.state.value}[/{style}]",
        ]
        if chain_valid is not None:
            chain = "[green]valid[/green]" if chain_valid else "[bold red]BROKEN[/bold red]"
            summary_parts.append(f"[bold]Chain:[/bold] {chain}")

        body: list = [table, Text(""), Text.from_markup("  |  ".join(summary_parts))]
        if run.state == RunState.FAILED and run.failure_reasons:
            body.append(Text(""))
            for reason in run.failure_reasons:
                body.append(Text(f"- {reason}", style="red"))

        return Panel(
            Group(*body),
            title="[bold]Harborline Run Summary[/bold]",
            subtitle=event.timestamp.strftime("%Y-%m-%d %H:%M:%S UTC"),
            border_style=style,
            padding=(1, 2),
        )

    def print_run(self, run: PipelineRun, *, chain_valid: bool | None = None) -> None:
        self.console.print(self.render_run(run, chain_valid=chain_valid))

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------

    def render_runs(self, runs: list[PipelineRun]) -> Table:
        table = Table(title="Pipeline Runs", header_style="bold cyan")
        table.add_column("Run ID", style="cyan")
        table.add_column("Branch")
        table.add_column("Revision")
        table.add_column("State", justify="center")
        table.add_column("Steps", justify="right")
        for run in runs:
            style = _RUN_STYLES.get(run.state, "yellow")
            table.add_row(
                run.run_id,
                escape(run.commit_event.branch),
                escape(run.commit_event.revision[:12]),
                f"[{style}]{run.state.value}[/{style}]",
                str(len(run.step_results)),
            )
        return table

    def render_targets(
        self, targets: list[DeploymentTarget], running: dict[str, str] | None = None
    ) -> Table:
        """Table of targets; *running* adds the platform-reported digest."""
        table = Table(title="Deployment Targets", header_style="bold cyan")
        table.add_column("Target", style="cyan")
        table.add_column("Environment")
        table.add_column("Confirmed digest")
        table.add_column("Health endpoint", style="dim")
        if running is not None:
            table.add_column("Running", justify="center")
        for target in targets:
            row = [
                target.name,
                target.environment.value,
                target.current_digest or "[dim]none[/dim]",
                target.health_endpoint,
            ]
            if running is not None:
                actual = running.get(target.name, "")
                if not actual:
                    row.append("[dim]unknown[/dim]")
                elif actual == target.current_digest:
                    row.append("[green]matches[/green]")
                else:
                    row.append(f"[yellow]drift: {_short(actual)}[/yellow]")
            table.add_row(*row)
        return table

    def print_chain_verification(self, run_id: str, valid: bool) -> None:
        if valid:
            self.console.print(f"[green]Hash chain for run {run_id} is valid.[/green]")
        else:
            self.console.print(f"[bold red]Hash chain for run {run_id} is BROKEN![/bold red]")

"""``harborline status RUN_ID`` / ``harborline verify RUN_ID``.

Both are read-only projections over the run ledger.
"""

from __future__ import annotations

import typer
from rich.console import Console

from harborline.cli.commands._common import EXIT_FAILED, load_settings
from harborline.core.run_ledger import LedgerIntegrityError, RunLedger
from harborline.core.run_machine import RunStateMachine, UnknownRunError
from harborline.monitor.renderer import RunSummaryRenderer

console = Console()


def _open_ledger() -> RunLedger:
    settings = load_settings(console)
    if not settings.state_db_path.exists():
        console.print(f"[bold red]State database not found:[/bold red] {settings.state_db_path}")
        raise typer.Exit(code=EXIT_FAILED)
    return RunLedger(settings.state_db_path)


def status_cmd(
    run_id: str = typer.Argument(..., help="The pipeline run ID to show."),
    verify_chain: bool = typer.Option(
        False,
        "--verify-chain",
        "-V",
        help="Verify the hash chain integrity before displaying.",
    ),
) -> None:
    """Show the summary of a pipeline run."""
    ledger = _open_ledger()
    try:
        run = RunStateMachine(ledger).get_run(run_id)
    except UnknownRunError:
        console.print(f"[bold red]Run not found:[/bold red] {run_id}")
        all_runs = ledger.get_all_run_ids()
        if all_runs:
            console.print("\n[bold]Available runs:[/bold]")
            for rid in all_runs[:10]:
                console.print(f"  [cyan]{rid}[/cyan]")
            if len(all_runs) > 10:
                console.print(f"  [dim]... and {len(all_runs) - 10} more[/dim]")
        raise typer.Exit(code=EXIT_FAILED)

    chain_valid = None
    if verify_chain:
        try:
            chain_valid = ledger.verify_chain(run_id)
        except LedgerIntegrityError:
            chain_valid = False
    RunSummaryRenderer(console=console).print_run(run, chain_valid=chain_valid)


def verify_cmd(
    run_id: str = typer.Argument(..., help="The pipeline run ID to verify."),
) -> None:
    """Verify the hash chain of a run's ledger entries."""
    ledger = _open_ledger()
    renderer = RunSummaryRenderer(console=console)
    if not ledger.get_run_entries(run_id):
        console.print(f"[bold red]Run not found:[/bold red] {run_id}")
        raise typer.Exit(code=EXIT_FAILED)
    try:
        ledger.verify_chain(run_id)
    except LedgerIntegrityError as exc:
        renderer.print_chain_verification(run_id, False)
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=EXIT_FAILED)
    renderer.print_chain_verification(run_id, True)

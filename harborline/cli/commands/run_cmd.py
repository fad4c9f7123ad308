"""``harborline run`` — execute the pipeline for one commit event.

The CI job calls this once per commit.  The event comes from
``--branch``/``--revision`` (or ``HARBORLINE_BRANCH``/``HARBORLINE_REVISION``)
or from a JSON ``--event-file``.  Exit code 0 means the run succeeded, 1
that it failed, 2 that it was rejected (run already in progress, invalid
input or settings).
"""

from __future__ import annotations

from pathlib import Path

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape

from harborline.cli.commands._common import (
    EXIT_FAILED,
    EXIT_REJECTED,
    EXIT_SUCCEEDED,
    load_settings,
)
from harborline.core.orchestrator import Orchestrator, RunInProgressError
from harborline.core.production_guard import SettingsError
from harborline.models.events import CommitEvent
from harborline.monitor.renderer import RunSummaryRenderer

console = Console()


def _read_event(
    branch: str | None, revision: str | None, event_file: Path | None
) -> CommitEvent:
    if event_file is not None:
        return CommitEvent.model_validate_json(event_file.read_text(encoding="utf-8"))
    if not branch or not revision:
        raise ValueError("both --branch and --revision are required without --event-file")
    return CommitEvent(branch=branch, revision=revision)


def run_cmd(
    branch: str = typer.Option(
        None,
        "--branch",
        "-b",
        envvar="HARBORLINE_BRANCH",
        help="Branch the commit landed on.",
    ),
    revision: str = typer.Option(
        None,
        "--revision",
        "-r",
        envvar="HARBORLINE_REVISION",
        help="Commit hash (or any ref the source tree resolves).",
    ),
    event_file: Path = typer.Option(
        None,
        "--event-file",
        "-e",
        exists=True,
        dir_okay=False,
        help="JSON commit event: {branch, revision, timestamp?}.",
    ),
) -> None:
    """Build, publish and deploy one commit."""
    try:
        event = _read_event(branch, revision, event_file)
    except (ValueError, ValidationError) as exc:
        console.print(f"[bold red]Invalid commit event:[/bold red] {escape(str(exc))}")
        raise typer.Exit(code=EXIT_REJECTED)

    settings = load_settings(console)
    try:
        orchestrator = Orchestrator(settings)
    except SettingsError as exc:
        console.print(f"[bold red]{escape(str(exc))}[/bold red]")
        raise typer.Exit(code=EXIT_REJECTED)

    with orchestrator:
        try:
            run = orchestrator.run(event)
        except RunInProgressError as exc:
            console.print(f"[bold yellow]Rejected:[/bold yellow] {escape(str(exc))}")
            raise typer.Exit(code=EXIT_REJECTED)
        chain_valid = orchestrator.verify_chain(run.run_id)

    RunSummaryRenderer(console=console).print_run(run, chain_valid=chain_valid)
    raise typer.Exit(code=EXIT_SUCCEEDED if run.succeeded else EXIT_FAILED)

"""Helpers shared by the CLI commands: settings loading and logging setup."""

from __future__ import annotations

import logging

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler

from harborline.config import PipelineSettings

# Exit codes returned to the CI job.
EXIT_SUCCEEDED = 0
EXIT_FAILED = 1
EXIT_REJECTED = 2


def configure_logging(level: str, console: Console | None = None) -> None:
    """Route the root logger through Rich at *level*."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def load_settings(console: Console) -> PipelineSettings:
    """Read settings from the environment, exiting 2 when they are invalid."""
    try:
        settings = PipelineSettings()
    except ValidationError as exc:
        console.print(f"[bold red]Invalid settings:[/bold red]\n{exc}")
        raise typer.Exit(code=EXIT_REJECTED)
    configure_logging(settings.log_level, Console(stderr=True))
    return settings

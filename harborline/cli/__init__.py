"""Harborline command-line interface (Typer)."""

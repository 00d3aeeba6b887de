"""
Utility functions for CLI commands.

This module provides helpers for printing results, rendering tables and
turning service responses into exit codes.
"""

import json
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.status import Status
from rich.table import Table

from gallery_sync.cli.decorators import EXIT_CODES
from gallery_sync.service import ServiceResponse

console = Console()


def echo_success(message: str) -> None:
    """Print success message in green."""
    click.secho(f"✓ {message}", fg="green")


def echo_error(message: str) -> None:
    """Print error message in red."""
    click.secho(f"✗ {message}", fg="red", err=True)


def echo_warning(message: str) -> None:
    """Print warning message in yellow."""
    click.secho(f"⚠ {message}", fg="yellow")


def echo_info(message: str) -> None:
    """Print info message in blue."""
    click.secho(f"ℹ {message}", fg="blue")


@contextmanager
def step_progress(message: str) -> Generator[None, None, None]:
    """Show a spinner while a step runs, then ✓ or ✗."""
    status = Status(f"[cyan]{message}...[/cyan]", spinner="dots", console=console)
    status.start()

    try:
        yield
        status.stop()
        console.print(f"[green]✓[/green] {message}")
    except Exception:
        status.stop()
        console.print(f"[red]✗[/red] {message}")
        raise


def format_count(count: int) -> str:
    """Format large numbers with thousands separator."""
    return f"{count:,}"


def print_table(
    title: str,
    columns: list[str],
    rows: list[list[Any]],
    show_header: bool = True,
) -> None:
    """
    Print a formatted table using rich.

    Args:
        title: Table title
        columns: Column headers
        rows: List of row data
        show_header: Whether to show header row
    """
    table = Table(title=title, show_header=show_header)

    for col in columns:
        table.add_column(col)

    for row in rows:
        table.add_row(*[str(cell) for cell in row])

    console.print(table)


def print_stats(stats: dict[str, Any], title: str = "Statistics") -> None:
    """Print flat statistics as a two-column table; nested values are skipped."""
    rows = [
        [key.replace("_", " ").title(), format_count(value) if isinstance(value, int) else value]
        for key, value in stats.items()
        if not isinstance(value, (dict, list))
    ]
    print_table(title, ["Metric", "Value"], rows)


def print_messages(messages: list[str], warning: bool = False, limit: int = 20) -> None:
    """Print a bounded list of errors or warnings."""
    echo = echo_warning if warning else echo_error
    for message in messages[:limit]:
        echo(message)
    if len(messages) > limit:
        echo_info(f"... and {len(messages) - limit} more")


def check_response(response: ServiceResponse, success_message: str | None = None) -> Any:
    """Print a service response and exit with its code when it failed.

    Returns:
        The response data on success

    Raises:
        click.exceptions.Exit: With the exit code for the response's error code
    """
    if not response.success:
        echo_error(response.message or "Operation failed")
        raise click.exceptions.Exit(EXIT_CODES.get(response.error_code or "", 1))

    echo_success(success_message or response.message or "Done")
    return response.data


def load_json(path: Path) -> Any:
    """Load a JSON document, raising click.BadParameter when it is not valid JSON."""
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except ValueError as e:
        raise click.BadParameter(f"{path} is not valid JSON: {e}") from e


def confirm_overwrite(path: Path, force: bool = False) -> bool:
    """Confirm overwrite of an existing file."""
    if not path.exists() or force:
        return True
    return click.confirm(f"File {path} already exists. Overwrite?")

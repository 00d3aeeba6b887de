"""
Validation commands.

This module provides the integrity check of the content store, the
migration validation for a mode, and the explicit repair step.
"""

import asyncio
import json
from pathlib import Path

import click

from gallery_sync.cli.context import SyncContext
from gallery_sync.cli.decorators import confirm_action, handle_errors, pass_context, requires_config
from gallery_sync.cli.utils import (
    check_response,
    confirm_overwrite,
    echo_error,
    echo_info,
    echo_success,
    print_messages,
    print_stats,
    print_table,
)
from gallery_sync.migration.validator import MODE_API, MODE_LOCAL
from gallery_sync.utils.logging import get_logger

logger = get_logger(__name__)


@click.group(name="validate")
def validate() -> None:
    """Content validation commands."""
    pass


@validate.command(name="check")
@click.option(
    "--mode",
    type=click.Choice([MODE_LOCAL, MODE_API]),
    default=None,
    help="Mode to validate against (defaults to the current mode)",
)
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    help="Write the full report as JSON",
)
@pass_context
@requires_config
@handle_errors
def check(ctx: SyncContext, mode: str | None, output: Path | None) -> None:
    """Check data integrity and validate the store for a mode.

    Exits with code 6 when errors are found; warnings alone pass.

    Examples:

        gallery-sync validate check

        gallery-sync validate check --mode local --output report.json
    """

    async def run():
        async with ctx.service as service:
            return await service.validate(mode)

    response = asyncio.run(run())
    if response.data is None:
        check_response(response)
        return

    report = response.data
    integrity = report["integrity_check"]
    migration = report["migration_validation"]

    rows = [
        [
            name.title(),
            "pass" if result["valid"] else "FAIL",
            len(result["errors"]),
            len(result["warnings"]),
        ]
        for name, result in integrity["checks"].items()
    ]
    print_table("Integrity Checks", ["Check", "Result", "Errors", "Warnings"], rows)

    for result in integrity["checks"].values():
        print_messages(result["errors"])
        print_messages(result["warnings"], warning=True)

    click.echo()
    print_stats(migration["stats"], f"Migration Validation ({report['mode']})")
    print_messages(migration["errors"])
    print_messages(migration["warnings"], warning=True)

    if output is not None and confirm_overwrite(output):
        output.parent.mkdir(parents=True, exist_ok=True)
        with open(output, "w", encoding="utf-8") as f:
            json.dump(report, f, indent=2, default=str)
        echo_info(f"Report written to {output}")

    click.echo()
    if integrity["overall_valid"] and migration["valid"]:
        echo_success("Validation passed")
    else:
        echo_error("Validation found errors")
        raise click.exceptions.Exit(6)


@validate.command(name="fix")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt")
@pass_context
@requires_config
@confirm_action("Repair missing case IDs, duplicate slugs and broken JSON metadata?")
@handle_errors
def fix(ctx: SyncContext, yes: bool) -> None:
    """Repair the issues that can be fixed automatically."""

    async def run():
        async with ctx.service as service:
            return await service.fix()

    results = check_response(asyncio.run(run()))
    for message in results["messages"]:
        click.echo(f"  {message}")
    if results["failed"]:
        echo_error(f"{results['failed']} issue(s) could not be fixed")
        raise click.exceptions.Exit(1)

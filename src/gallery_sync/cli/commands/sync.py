"""
Sync pipeline commands.

This module provides commands for running the sync stages, following and
stopping a running sync, and managing the artifacts stages hand to each
other.
"""

import asyncio

import click

from gallery_sync.cli.context import SyncContext
from gallery_sync.cli.decorators import confirm_action, handle_errors, pass_context, requires_config
from gallery_sync.cli.utils import (
    check_response,
    echo_info,
    echo_warning,
    print_messages,
    print_stats,
    print_table,
)
from gallery_sync.migration.artifacts import ARTIFACT_KINDS
from gallery_sync.utils.logging import get_logger

logger = get_logger(__name__)


@click.group(name="sync")
def sync() -> None:
    """Sync pipeline commands.

    Stage 1 imports categories, Stage 2 builds the case manifest, Stage 3
    materializes cases. Each stage can run on its own.
    """
    pass


@sync.command(name="stage")
@click.argument("number", type=click.IntRange(1, 3))
@pass_context
@requires_config
@handle_errors
def stage(ctx: SyncContext, number: int) -> None:
    """Run a single sync stage (1, 2 or 3).

    Examples:

        gallery-sync sync stage 1

        gallery-sync sync stage 3 --config config.yaml
    """
    echo_info(f"Running stage {number}...")

    async def run():
        async with ctx.service as service:
            return await service.start_stage(number)

    result = check_response(asyncio.run(run()))
    _print_stage_result(number, result)


@sync.command(name="full")
@pass_context
@requires_config
@handle_errors
def full(ctx: SyncContext) -> None:
    """Run stages 1, 2 and 3 in sequence.

    A stop request (``gallery-sync sync stop``) is honored before the next
    stage starts; artifacts of completed stages are kept.
    """
    echo_info("Running full sync...")

    async def run():
        async with ctx.service as service:
            return await service.run_full_sync()

    result = check_response(asyncio.run(run()))
    for name, stage_result in result["stages"].items():
        _print_stage_result(int(name.rsplit("_", 1)[1]), stage_result)
    if result["status"] == "stopped":
        echo_warning("Sync stopped before all stages ran")


def _print_stage_result(number: int, result: dict) -> None:
    print_stats(result, f"Stage {number}")
    if result.get("errors"):
        click.echo()
        print_messages(result["errors"])


@sync.command(name="progress")
@pass_context
@requires_config
@handle_errors
def progress(ctx: SyncContext) -> None:
    """Show the shared progress slot of the current or last sync."""

    async def run():
        async with ctx.service as service:
            return await service.get_progress()

    data = asyncio.run(run()).data or {}
    rows = [
        ["Active", "yes" if data.get("active") else "no"],
        ["Percentage", f"{data.get('percentage', 0):.1f}%"],
        ["Stage", data.get("stage") or "-"],
        ["State", data.get("state") or "idle"],
        ["Message", data.get("message") or "-"],
        ["Updated", data.get("timestamp") or "-"],
    ]
    print_table("Sync Progress", ["Field", "Value"], rows)


@sync.command(name="stop")
@pass_context
@requires_config
@handle_errors
def stop(ctx: SyncContext) -> None:
    """Ask a running full sync to stop at the next stage boundary."""

    async def run():
        async with ctx.service as service:
            return await service.stop()

    check_response(asyncio.run(run()))


@sync.command(name="delete-artifact")
@click.argument("kind", type=click.Choice(list(ARTIFACT_KINDS)))
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt")
@pass_context
@requires_config
@confirm_action("The stage that produced this artifact will run again from scratch. Continue?")
@handle_errors
def delete_artifact(ctx: SyncContext, kind: str, yes: bool) -> None:
    """Delete the sync_data or manifest artifact."""

    async def run():
        async with ctx.service as service:
            return await service.delete_artifact(kind)

    check_response(asyncio.run(run()))


@sync.command(name="logs")
@click.option("--limit", "-n", type=click.IntRange(1, 1000), default=20, help="Rows to show")
@pass_context
@requires_config
@handle_errors
def logs(ctx: SyncContext, limit: int) -> None:
    """Show recent sync log entries and aggregate statistics."""
    store = ctx.service.store
    entries = store.recent_sync_logs(limit)

    if not entries:
        echo_info("No sync operations recorded")
    else:
        rows = [
            [
                entry["id"],
                entry["sync_type"],
                entry["sync_status"],
                entry["sync_source"],
                entry["items_processed"],
                entry["items_failed"],
                entry["started_at"] or "-",
            ]
            for entry in entries
        ]
        print_table(
            "Sync Log",
            ["ID", "Type", "Status", "Source", "Processed", "Failed", "Started"],
            rows,
        )

    click.echo()
    print_stats(store.sync_stats(), "Sync Statistics")

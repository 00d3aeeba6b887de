"""
Mode migration commands.

This module provides commands for switching between API-driven and
locally stored galleries, checking readiness, and rolling back.
"""

import asyncio

import click

from gallery_sync.cli.context import SyncContext
from gallery_sync.cli.decorators import confirm_action, handle_errors, pass_context, requires_config
from gallery_sync.cli.utils import (
    check_response,
    echo_error,
    echo_info,
    echo_success,
    print_table,
)
from gallery_sync.migration.state import MIGRATION_TO_API, MIGRATION_TO_LOCAL
from gallery_sync.migration.validator import MODE_API, MODE_LOCAL
from gallery_sync.utils.logging import get_logger

logger = get_logger(__name__)


@click.group(name="migrate")
def migrate() -> None:
    """Mode migration commands.

    A migration takes a backup first, so ``gallery-sync migrate rollback``
    can restore the previous settings and entity statuses.
    """
    pass


@migrate.command(name="to-local")
@click.option(
    "--preserve-settings/--no-preserve-settings",
    default=True,
    help="Keep a copy of the API-mode settings",
)
@click.option("--import-images/--no-import-images", default=True, help="Download case images")
@click.option("--cleanup-after", is_flag=True, help="Clear API-mode caches afterwards")
@click.option(
    "--batch-size",
    type=click.IntRange(1, 1000),
    default=20,
    show_default=True,
    help="Cases per batch while materializing",
)
@pass_context
@requires_config
@handle_errors
def to_local(
    ctx: SyncContext,
    preserve_settings: bool,
    import_images: bool,
    cleanup_after: bool,
    batch_size: int,
) -> None:
    """Migrate to locally stored content.

    Runs a full sync from the gallery API, validates the result, and
    switches the installation to local mode.

    Examples:

        gallery-sync migrate to-local --config config.yaml

        gallery-sync migrate to-local --no-import-images --batch-size 50
    """
    options = {
        "preserve_settings": preserve_settings,
        "import_images": import_images,
        "cleanup_after": cleanup_after,
        "batch_size": batch_size,
    }
    _run_migration(ctx, MIGRATION_TO_LOCAL, options)


@migrate.command(name="to-api")
@click.option(
    "--preserve-data/--delete-data",
    default=True,
    help="Keep local entities (hidden or archived) or delete them",
)
@click.option("--archive-posts", is_flag=True, help="Unpublish local entities (requires --preserve-data)")
@click.option(
    "--keep-images/--delete-images",
    default=True,
    help="When deleting data, detach images instead of deleting their files",
)
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt")
@pass_context
@requires_config
@confirm_action("This switches the gallery back to API mode. Continue?")
@handle_errors
def to_api(
    ctx: SyncContext,
    preserve_data: bool,
    archive_posts: bool,
    keep_images: bool,
    yes: bool,
) -> None:
    """Migrate back to API-driven mode.

    Examples:

        gallery-sync migrate to-api --archive-posts

        gallery-sync migrate to-api --delete-data --keep-images --yes
    """
    options = {
        "preserve_data": preserve_data,
        "archive_posts": archive_posts,
        "keep_images": keep_images,
    }
    _run_migration(ctx, MIGRATION_TO_API, options)


def _run_migration(ctx: SyncContext, direction: str, options: dict) -> None:
    echo_info(f"Starting migration {direction}...")

    async def run():
        async with ctx.service as service:
            return await service.migrate(direction, options)

    status = check_response(asyncio.run(run()))
    _print_status(status)


def _print_status(status: dict) -> None:
    rows = [
        ["Type", status.get("type") or "-"],
        ["Status", status.get("status") or "idle"],
        ["Message", status.get("message") or "-"],
        ["Updated", status.get("timestamp") or "-"],
        ["Lease holder", status.get("lease_holder") or "-"],
        ["Backup available", "yes" if status.get("has_backup") else "no"],
    ]
    print_table("Migration Status", ["Field", "Value"], rows)


@migrate.command(name="status")
@pass_context
@requires_config
@handle_errors
def status(ctx: SyncContext) -> None:
    """Show the current migration status."""

    async def run():
        async with ctx.service as service:
            return await service.status()

    data = asyncio.run(run()).data or {}
    _print_status(data.get("migration", {}))


@migrate.command(name="rollback")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt")
@pass_context
@requires_config
@confirm_action("Restore settings and entity statuses from the last backup?")
@handle_errors
def rollback(ctx: SyncContext, yes: bool) -> None:
    """Restore the backup taken before the last migration."""

    async def run():
        async with ctx.service as service:
            return await service.rollback()

    check_response(asyncio.run(run()))


@migrate.command(name="preflight")
@click.option(
    "--target",
    type=click.Choice([MODE_LOCAL, MODE_API]),
    default=MODE_LOCAL,
    show_default=True,
    help="Mode to check readiness for",
)
@pass_context
@requires_config
@handle_errors
def preflight(ctx: SyncContext, target: str) -> None:
    """Run the pre-flight checks without migrating."""

    async def run():
        async with ctx.service as service:
            return await service.coordinator.preflight_checks(target)

    checks = asyncio.run(run())
    rows = [[name.replace("_", " ").title(), "pass" if ok else "FAIL"] for name, ok in checks.items()]
    print_table(f"Pre-flight Checks ({target})", ["Check", "Result"], rows)

    if all(checks.values()):
        echo_success("All pre-flight checks passed")
    else:
        echo_error("Some pre-flight checks failed")
        raise click.exceptions.Exit(6)

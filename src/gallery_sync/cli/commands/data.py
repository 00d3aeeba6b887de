"""
Export and import commands.

This module provides commands for writing the local gallery to a JSON
document and loading such a document back into the content store.
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
    echo_info,
    load_json,
    print_stats,
)
from gallery_sync.migration.exporter import write_export
from gallery_sync.utils.logging import get_logger

logger = get_logger(__name__)


@click.group(name="data")
def data() -> None:
    """Export and import of gallery data."""
    pass


@data.command(name="export")
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    help="Output file (defaults to a timestamped file in storage.export_dir)",
)
@click.option("--force", is_flag=True, help="Overwrite the output file without asking")
@pass_context
@requires_config
@handle_errors
def export(ctx: SyncContext, output: Path | None, force: bool) -> None:
    """Export entities, labels, settings and sync history as JSON.

    Examples:

        gallery-sync data export

        gallery-sync data export --output backup.json
    """

    async def run():
        async with ctx.service as service:
            return await service.export()

    document = check_response(asyncio.run(run()))

    if output is None:
        path = write_export(document, ctx.config.storage.export_dir)
    else:
        if not confirm_overwrite(output, force):
            echo_info("Export cancelled")
            return
        output.parent.mkdir(parents=True, exist_ok=True)
        with open(output, "w", encoding="utf-8") as f:
            json.dump(document, f, indent=2)
        path = output

    print_stats(
        {
            "entities": len(document["entities"]),
            "labels": sum(len(items) for items in document["labels"].values()),
            "settings": len(document["settings"]),
        },
        "Exported",
    )
    echo_info(f"Written to {path}")


@data.command(name="import")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt")
@pass_context
@requires_config
@confirm_action("Existing entities and labels with matching identifiers will be updated. Continue?")
@handle_errors
def import_cmd(ctx: SyncContext, file: Path, yes: bool) -> None:
    """Import an export document.

    The document is validated first; a rejected document changes nothing.

    Examples:

        gallery-sync data import backup.json --yes
    """
    document = load_json(file)

    async def run():
        async with ctx.service as service:
            return await service.import_(document)

    counts = check_response(asyncio.run(run()))
    print_stats(counts, "Imported")

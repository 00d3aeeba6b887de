"""
Configuration management commands.

This module provides commands for validating, showing and generating
Gallery Sync configuration.
"""

import asyncio
import shutil
from pathlib import Path

import click

from gallery_sync.cli.context import SyncContext
from gallery_sync.cli.decorators import handle_errors, pass_context, requires_config
from gallery_sync.cli.utils import (
    confirm_overwrite,
    echo_error,
    echo_info,
    echo_success,
    echo_warning,
    print_table,
    step_progress,
)
from gallery_sync.config import SyncConfig, save_config_to_yaml
from gallery_sync.utils.logging import get_logger

logger = get_logger(__name__)


@click.group(name="config")
def config() -> None:
    """Configuration management commands."""
    pass


@config.command(name="validate")
@click.option(
    "--check-connectivity",
    is_flag=True,
    help="Test the connection to the gallery API",
)
@pass_context
@requires_config
@handle_errors
def validate(ctx: SyncContext, check_connectivity: bool) -> None:
    """Validate configuration.

    Checks that the gallery API settings are present and that the storage
    and database directories exist or can be created.

    Examples:

        gallery-sync config validate --config config.yaml

        gallery-sync config validate --check-connectivity
    """
    echo_info(f"Validating configuration: {ctx.config_path or 'environment'}")
    config = ctx.config

    click.echo()
    _display_config_summary(config)

    click.echo()
    echo_info("Validating paths...")
    _validate_paths(config)

    echo_info("Validating settings...")
    _validate_settings(config)

    if check_connectivity:
        click.echo()
        echo_info("Testing connectivity...")
        _test_connectivity(ctx)

    click.echo()
    echo_success("Configuration is valid!")


def _display_config_summary(config: SyncConfig) -> None:
    rows = [
        ["Gallery URL", config.gallery.url or "(not set)"],
        ["Property ID", config.gallery.property_id or "(not set)"],
        ["Database", config.state.db_path],
        ["Sync Directory", config.storage.sync_dir],
        ["Upload Directory", config.storage.upload_dir],
        ["Stage 3 Batch Size", config.sync.batch_size],
        ["Download Images", config.sync.download_images],
        ["Rate Limit (req/s)", config.gallery.rate_limit],
    ]
    print_table("Configuration Summary", ["Setting", "Value"], rows)


def _validate_paths(config: SyncConfig) -> None:
    directories = [
        config.storage.sync_dir,
        config.storage.upload_dir,
        config.storage.export_dir,
    ]
    if "://" not in config.state.db_path:
        directories.append(str(Path(config.state.db_path).parent))

    for directory in directories:
        path = Path(directory)
        if path.exists() and not path.is_dir():
            echo_error(f"Not a directory: {path}")
            raise click.ClickException(f"Invalid directory: {path}")
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            echo_error(f"Cannot create directory: {path}")
            raise click.ClickException(f"Failed to create directory {path}: {e}") from e

    free = shutil.disk_usage(config.storage.upload_dir).free
    if free < config.storage.min_free_bytes:
        echo_warning(
            f"Only {free // (1024 * 1024)} MB free in {config.storage.upload_dir}; "
            "migrating to local storage will fail the pre-flight check"
        )

    echo_success("All paths are valid")


def _validate_settings(config: SyncConfig) -> None:
    if not config.gallery.is_configured:
        missing = [
            name
            for name, value in (
                ("gallery.url", config.gallery.url),
                ("gallery.token", config.gallery.token),
                ("gallery.property_id", config.gallery.property_id),
            )
            if not value
        ]
        echo_error(f"Missing gallery settings: {', '.join(missing)}")
        raise click.ClickException("Gallery API settings are incomplete")

    if config.sync.batch_size > 50:
        echo_warning(f"Large Stage 3 batch size ({config.sync.batch_size}) may hit API limits")

    echo_success("All settings are valid")


def _test_connectivity(ctx: SyncContext) -> None:
    async def run():
        async with ctx.service as service:
            return await service.client.test_connection()

    with step_progress(f"Probing {ctx.config.gallery.url}"):
        reachable = asyncio.run(run())

    if not reachable:
        echo_error(f"Gallery API not reachable: {ctx.config.gallery.url}")
        raise click.exceptions.Exit(4)
    echo_success(f"Gallery API accessible: {ctx.config.gallery.url}")


@config.command(name="show")
@pass_context
@requires_config
@handle_errors
def show(ctx: SyncContext) -> None:
    """Display current configuration with the token masked."""
    config = ctx.config

    _display_config_summary(config)

    click.echo("\nGallery Configuration:")
    click.echo(f"  URL: {config.gallery.url}")
    click.echo(f"  Token: {'*' * 40 if config.gallery.token else '(not set)'}")
    click.echo(f"  Verify SSL: {config.gallery.verify_ssl}")
    click.echo(f"  Timeout: {config.gallery.timeout}s")

    click.echo("\nSync Configuration:")
    click.echo(f"  Max Pages: {config.sync.max_pages}")
    click.echo(f"  Page Delay: {config.sync.page_delay}s")
    click.echo(f"  Error Cap: {config.sync.error_cap}")
    click.echo(f"  Source: {config.sync.source}")

    click.echo("\nMigration Guards:")
    click.echo(f"  Minimum Memory: {config.migration.min_memory_mb} MB")
    click.echo(f"  Lease: {config.migration.lease_seconds}s")

    click.echo("\nState Configuration:")
    click.echo(f"  Database: {config.state.db_path}")


@config.command(name="init")
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    default=Path("config/config.yaml"),
    show_default=True,
    help="Where to write the configuration file",
)
@click.option("--force", is_flag=True, help="Overwrite an existing file")
@handle_errors
def init(output: Path, force: bool) -> None:
    """Write a configuration file with default values.

    The current GALLERY_SYNC_* environment is applied; the token is written
    as ``${GALLERY_API_TOKEN}``.
    """
    if not confirm_overwrite(output, force):
        echo_info("Nothing written")
        return

    save_config_to_yaml(SyncConfig(), output)
    echo_success(f"Configuration written to {output}")

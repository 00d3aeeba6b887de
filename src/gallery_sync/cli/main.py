"""
Main CLI entry point for Gallery Sync.

This module provides the command-line interface for syncing a remote case
gallery into the local content store and switching between modes.
"""

import sys
from pathlib import Path

import click
from dotenv import load_dotenv

from gallery_sync import __version__
from gallery_sync.cli.commands import config as config_commands
from gallery_sync.cli.commands import data as data_commands
from gallery_sync.cli.commands import migrate as migrate_commands
from gallery_sync.cli.commands import sync as sync_commands
from gallery_sync.cli.commands import validate as validate_commands
from gallery_sync.cli.context import SyncContext
from gallery_sync.utils.logging import configure_logging, get_logger

# Load environment variables from .env file
load_dotenv()

logger = get_logger(__name__)


@click.group(invoke_without_command=True)
@click.version_option(version=__version__, prog_name="gallery-sync")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file (GALLERY_SYNC_* variables are used without one)",
    envvar="GALLERY_SYNC_CONFIG",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    help="Set console logging level (file logging stays at DEBUG)",
    envvar="GALLERY_SYNC_LOG_LEVEL",
)
@click.option(
    "--log-file",
    type=click.Path(path_type=Path),
    help="Log file (defaults to logs/gallery-sync.log)",
    envvar="GALLERY_SYNC_LOG_FILE",
)
@click.pass_context
def cli(
    ctx: click.Context,
    config: Path | None,
    log_level: str,
    log_file: Path | None,
) -> None:
    """Gallery Sync - Materialize a remote case gallery locally.

    Examples:

        # Run all three sync stages
        gallery-sync sync full --config config.yaml

        # Switch to local content
        gallery-sync migrate to-local --config config.yaml

        # Check the content store
        gallery-sync validate check

        # Export everything to JSON
        gallery-sync data export --output backup.json
    """
    effective_log_file = str(log_file) if log_file else "logs/gallery-sync.log"
    configure_logging(level=log_level, log_file=effective_log_file)

    ctx.obj = SyncContext(
        config_path=config,
        log_level=log_level,
        log_file=log_file,
    )

    logger.debug(
        "cli_initialized",
        config=str(config) if config else None,
        log_level=log_level,
    )

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


# Register command groups
cli.add_command(config_commands.config)
cli.add_command(data_commands.data)
cli.add_command(migrate_commands.migrate)
cli.add_command(sync_commands.sync)
cli.add_command(validate_commands.validate)


def main() -> int:
    """Main entry point for CLI."""
    try:
        # Without standalone mode click returns the code of click.exceptions.Exit
        result = cli(standalone_mode=False)
        return result if isinstance(result, int) else 0
    except click.exceptions.Abort:
        click.echo("Aborted!", err=True)
        return 1
    except click.ClickException as e:
        e.show()
        return e.exit_code
    except Exception as e:
        logger.error("unexpected_error", error=str(e), exc_info=True)
        click.echo(f"Error: {e}", err=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())

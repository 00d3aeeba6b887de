"""
Decorators for CLI commands.

This module provides decorators for error handling, context passing,
and other common CLI patterns.
"""

import functools
from collections.abc import Callable

import click

from gallery_sync.cli.context import SyncContext
from gallery_sync.client.exceptions import (
    APIError,
    AuthenticationError,
    AuthorizationError,
    ConfigurationError,
    ConnectivityError,
    PreconditionError,
    StateError,
    ValidationError,
)
from gallery_sync.utils.logging import get_logger

logger = get_logger(__name__)

# Exit codes for failed service responses, keyed by ServiceResponse.error_code
EXIT_CODES = {
    "configuration": 2,
    "authentication": 3,
    "connectivity": 4,
    "state": 5,
    "precondition": 6,
    "validation": 6,
}


def pass_context(f: Callable) -> Callable:
    """
    Decorator to pass SyncContext to command function.

    Usage:
        @click.command()
        @pass_context
        def my_command(ctx: SyncContext):
            print(ctx.config)
    """

    @click.pass_context
    @functools.wraps(f)
    def wrapper(click_ctx: click.Context, *args, **kwargs):
        sync_ctx: SyncContext = click_ctx.obj
        return f(sync_ctx, *args, **kwargs)

    return wrapper


def handle_errors(f: Callable) -> Callable:
    """
    Decorator to handle common errors in CLI commands.

    Exit codes:
        0: Success
        1: General error
        2: Configuration error
        3: Authentication error
        4: API or connectivity error
        5: State error
        6: Precondition or validation error
    """

    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)

        except click.exceptions.Exit:
            raise

        except ConfigurationError as e:
            logger.error("cli_configuration_error", error=str(e))
            click.echo(f"Configuration Error: {e}", err=True)
            click.echo(
                "\nPlease check your configuration file and ensure all required fields are set.",
                err=True,
            )
            raise click.exceptions.Exit(2) from e

        except (AuthenticationError, AuthorizationError) as e:
            logger.error("cli_authentication_error", error=str(e))
            click.echo(f"Authentication Error: {e}", err=True)
            click.echo("\nPlease verify the gallery API token.", err=True)
            raise click.exceptions.Exit(3) from e

        except ConnectivityError as e:
            logger.error("cli_connectivity_error", error=str(e))
            click.echo(f"API Error: {e}", err=True)
            if isinstance(e, APIError) and e.status_code:
                click.echo(f"\nResponse status: {e.status_code}", err=True)
            raise click.exceptions.Exit(4) from e

        except StateError as e:
            logger.error("cli_state_error", error=str(e))
            click.echo(f"State Error: {e}", err=True)
            click.echo(
                "\nThere was an error accessing the content store. "
                "The database may be corrupted or inaccessible.",
                err=True,
            )
            raise click.exceptions.Exit(5) from e

        except (PreconditionError, ValidationError) as e:
            logger.error("cli_precondition_error", error=str(e))
            click.echo(f"Cannot proceed: {e}", err=True)
            raise click.exceptions.Exit(6) from e

        except Exception as e:
            logger.error("cli_unexpected_error", error=str(e), exc_info=True)
            click.echo(f"Unexpected Error: {e}", err=True)
            click.echo(
                "\nAn unexpected error occurred. Please check the logs for details.",
                err=True,
            )
            raise click.exceptions.Exit(1) from e

    return wrapper


def requires_config(f: Callable) -> Callable:
    """
    Decorator to ensure configuration loads before the command runs.
    """

    @functools.wraps(f)
    def wrapper(ctx: SyncContext, *args, **kwargs):
        try:
            _ = ctx.config
        except Exception as e:
            click.echo(f"Error loading configuration: {e}", err=True)
            raise click.exceptions.Exit(2) from e

        return f(ctx, *args, **kwargs)

    return wrapper


def confirm_action(
    message: str = "Do you want to continue?",
    abort_message: str = "Operation cancelled.",
) -> Callable:
    """
    Decorator to prompt for confirmation before executing a command.

    Skipped when the command was given ``--yes``.

    Args:
        message: Confirmation prompt message
        abort_message: Message to show if user aborts
    """

    def decorator(f: Callable) -> Callable:
        @functools.wraps(f)
        def wrapper(*args, **kwargs):
            ctx = click.get_current_context()
            if ctx.params.get("yes", False):
                return f(*args, **kwargs)

            if not click.confirm(message):
                click.echo(abort_message)
                raise click.exceptions.Exit(0)

            return f(*args, **kwargs)

        return wrapper

    return decorator

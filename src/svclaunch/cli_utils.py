"""Shared helpers for svclaunch CLI commands.

Provides the shared console, message helpers, logging setup, and exit codes.
"""

import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

# Exit codes
EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_CONFIG_ERROR = 2

# Shared console for output
console = Console(highlight=False)


def _info(message: str) -> None:
    console.print(f"[yellow]{escape(message)}[/yellow]")


def _success(message: str) -> None:
    console.print(f"[green]✓[/green] {escape(message)}")


def _warning(message: str) -> None:
    console.print(f"[yellow]Warning:[/yellow] {escape(message)}")


def _error(message: str) -> None:
    console.print(f"[red]✗ {escape(message)}[/red]")


def _setup_logging(verbose: bool = False, quiet: bool = False) -> None:
    """Configure root logging with a rich handler on stderr.

    Args:
        verbose: Log at DEBUG level.
        quiet: Only log errors.

    """
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.ERROR
    else:
        level = logging.WARNING

    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="%H:%M:%S",
        handlers=[
            RichHandler(
                console=Console(stderr=True),
                show_path=verbose,
                rich_tracebacks=True,
            )
        ],
        force=True,
    )


def _validate_workspace_path(workspace: Path) -> Path:
    """Resolve the workspace path and make sure it is a directory.

    Raises:
        typer.Exit: With EXIT_ERROR if the path is not a directory.

    """
    workspace_path = workspace.resolve()
    if not workspace_path.is_dir():
        _error(f"Workspace directory does not exist: {workspace_path}")
        raise typer.Exit(code=EXIT_ERROR)
    return workspace_path

"""svclaunch command line interface.

Commands:
- `svclaunch start`: pick services from the workspace and run them together
- `svclaunch list`: show discovered services and their runnable scripts

Example:
    $ svclaunch start
    $ svclaunch start --select 1,3 --script api=dev --no-db
    $ svclaunch start --all --workspace ~/code/academy
    $ svclaunch list
"""

import logging
import subprocess
from collections.abc import Sequence
from pathlib import Path

import typer
from rich.markup import escape
from rich.prompt import Prompt

from svclaunch.cli_utils import (
    EXIT_CONFIG_ERROR,
    EXIT_ERROR,
    EXIT_SUCCESS,
    _error,
    _info,
    _setup_logging,
    _success,
    _validate_workspace_path,
    _warning,
    console,
)
from svclaunch.core.async_utils import run_async_with_timeout
from svclaunch.core.config import LauncherConfig, load_config
from svclaunch.core.exceptions import ConfigError, WorkspaceNotFoundError
from svclaunch.manager import (
    OutputRelay,
    ProcessSupervisor,
    ResolvedLaunch,
    ScriptResolver,
    ServiceDescriptor,
    ServiceRegistry,
    resolve_selection,
)

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="svclaunch",
    help="Discover, start and supervise the services of a local workspace",
    no_args_is_help=True,
)


def _load_launcher_config(
    workspace_path: Path,
    runner: str | None = None,
    timeout: float | None = None,
) -> LauncherConfig:
    try:
        config = load_config(workspace_path)
    except ConfigError as e:
        _error(str(e))
        raise typer.Exit(code=EXIT_CONFIG_ERROR) from None

    updates: dict[str, object] = {}
    if runner is not None:
        updates["runner"] = tuple(runner.split())
    if timeout is not None:
        updates["shutdown_timeout"] = timeout if timeout > 0 else None
    return config.model_copy(update=updates) if updates else config


def _discover_services(workspace_path: Path, config: LauncherConfig) -> list[ServiceDescriptor]:
    try:
        return list(ServiceRegistry(workspace_path, config).discover())
    except WorkspaceNotFoundError as e:
        _error(str(e))
        raise typer.Exit(code=EXIT_ERROR) from None


def _print_banner() -> None:
    console.print("[bold blue]====================================[/bold blue]")
    console.print("[bold blue]   Workspace Services - Start[/bold blue]")
    console.print("[bold blue]====================================[/bold blue]\n")


def _print_services(services: Sequence[ServiceDescriptor]) -> None:
    """Print the numbered service list the selection prompt refers to."""
    console.print("\n[yellow]Available services:[/yellow]")
    for index, service in enumerate(services, start=1):
        console.print(f"{index}. [bold]{escape(service.name)}[/bold] - {escape(service.description)}")
        if service.is_runnable():
            console.print(
                f"   [green]✓[/green] Available scripts: {escape(', '.join(service.command_names))}"
            )
        else:
            console.print("   [red]✗[/red] No scripts found to run")


def _ask(question: str) -> str | None:
    """Prompt for a line of input. Returns None if input is closed or interrupted."""
    try:
        return Prompt.ask(question, console=console, default="", show_default=False)
    except (EOFError, KeyboardInterrupt):
        console.print()
        return None


def _parse_script_overrides(values: Sequence[str] | None) -> dict[str, str]:
    """Parse repeated ``--script service=command`` options.

    Raises:
        typer.BadParameter: On a value without '='.

    """
    overrides: dict[str, str] = {}
    for value in values or ():
        name, sep, command = value.partition("=")
        if not sep or not name.strip() or not command.strip():
            raise typer.BadParameter(f"expected SERVICE=COMMAND, got {value!r}", param_hint="--script")
        overrides[name.strip()] = command.strip()
    return overrides


def _make_chooser(overrides: dict[str, str]):
    """Build the disambiguation callback for ScriptResolver."""

    def choose(service: ServiceDescriptor, commands: list[str]) -> str | None:
        if service.name in overrides:
            return overrides[service.name]

        console.print(f"\n[yellow]Available scripts for {escape(service.name)}:[/yellow]")
        for index, name in enumerate(commands, start=1):
            console.print(f"{index}. {escape(name)}: {escape(service.runnable_commands[name])}")
        return _ask(f"Select a script for {service.name} (1-{len(commands)})")

    return choose


def _run_precondition(command: str, workspace_path: Path) -> None:
    """Run the database precondition command; failure does not stop the run."""
    _info(f"Running '{command}'...")
    try:
        subprocess.run(command, shell=True, cwd=workspace_path, check=True)
    except (OSError, subprocess.CalledProcessError) as e:
        logger.error("Precondition command failed: %s", e)
        _error(f"Error starting the database: {e}")
        return
    except KeyboardInterrupt:
        logger.error("Precondition command interrupted")
        _error("Error starting the database: interrupted")
        return
    _success("Database started successfully")


def _resolve_launches(
    services: Sequence[ServiceDescriptor],
    overrides: dict[str, str],
) -> list[ResolvedLaunch]:
    resolver = ScriptResolver(chooser=_make_chooser(overrides))
    launches: list[ResolvedLaunch] = []
    for service in services:
        launch = resolver.resolve(service)
        if launch is None:
            _error(f"The service {service.name} was skipped: {resolver.skipped[service.name]}")
            continue
        launches.append(launch)
    return launches


@app.command(name="start")
def start_command(
    workspace: Path = typer.Option(
        Path("."),
        "--workspace",
        "-w",
        help="Workspace root containing the services directory (default: current directory)",
    ),
    select: str | None = typer.Option(
        None,
        "--select",
        help='Services to start: comma-separated numbers or "all" (skips the prompt)',
    ),
    select_all: bool = typer.Option(
        False,
        "--all",
        "-a",
        help="Start every discovered service",
    ),
    script: list[str] | None = typer.Option(
        None,
        "--script",
        "-s",
        help="Script to run for a service with several, as SERVICE=COMMAND (repeatable)",
    ),
    db: bool | None = typer.Option(
        None,
        "--db/--no-db",
        help="Run the database precondition command without asking",
    ),
    runner: str | None = typer.Option(
        None,
        "--runner",
        help='Command runner prefix, e.g. "npm run"; empty string runs scripts through the shell',
    ),
    timeout: float | None = typer.Option(
        None,
        "--timeout",
        "-t",
        help="Seconds to wait for services to stop before killing them (0 waits forever)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only log errors"),
) -> None:
    """Select services from the workspace and run them until Ctrl+C.

    Every selected service runs as its own process; output lines are
    prefixed with the service name. Ctrl+C stops all of them.

    Exit codes:
        0 = services ran and stopped, or nothing was selected
        1 = workspace services directory not found
        2 = invalid launcher configuration
    """
    _setup_logging(verbose=verbose, quiet=quiet)
    overrides = _parse_script_overrides(script)

    workspace_path = _validate_workspace_path(workspace)
    config = _load_launcher_config(workspace_path, runner=runner, timeout=timeout)

    _print_banner()
    services = _discover_services(workspace_path, config)
    if not services:
        _info(f"No services found. Create services in the '{config.services_dir}/' directory.")
        raise typer.Exit(code=EXIT_SUCCESS)

    if config.precondition_command:
        if db is None:
            answer = _ask("Start the database? (y/n)")
            db = answer is not None and answer.strip().lower() in ("y", "yes", "s", "si")
        if db:
            _run_precondition(config.precondition_command, workspace_path)

    _print_services(services)

    if select_all:
        raw_selection: str | None = config.select_all_token
    elif select is not None:
        raw_selection = select
    else:
        raw_selection = _ask(f'\nSelect services to start (numbers separated by comma, or "{config.select_all_token}")')

    selection = resolve_selection(raw_selection, services, wildcard=config.select_all_token)
    if selection.nothing_selected:
        _info("No valid services selected.")
        raise typer.Exit(code=EXIT_SUCCESS)

    launches = _resolve_launches(selection.services, overrides)
    if not launches:
        _info("No services started.")
        raise typer.Exit(code=EXIT_SUCCESS)

    supervisor = ProcessSupervisor.from_config(config, relay=OutputRelay(console))
    state = run_async_with_timeout(supervisor.run(launches))

    for failure in state.failures:
        _warning(f"{failure.service_name} did not start: {failure.reason}")
    for summary in state.to_summary():
        logger.info(
            "Service %s finished: state=%s exit_code=%s",
            summary["service"],
            summary["state"],
            summary["exit_code"],
        )


@app.command(name="list")
def list_command(
    workspace: Path = typer.Option(
        Path("."),
        "--workspace",
        "-w",
        help="Workspace root containing the services directory (default: current directory)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """List discovered services with their runnable and auxiliary scripts."""
    from rich.table import Table

    _setup_logging(verbose=verbose)
    workspace_path = _validate_workspace_path(workspace)
    config = _load_launcher_config(workspace_path)
    services = _discover_services(workspace_path, config)

    if not services:
        _info(f"No services found in '{config.services_dir}/'.")
        raise typer.Exit(code=EXIT_SUCCESS)

    table = Table(title=f"Services in {workspace_path / config.services_dir}")
    table.add_column("#", style="cyan", justify="right")
    table.add_column("Service", style="bold")
    table.add_column("Description")
    table.add_column("Runnable")
    table.add_column("Auxiliary", style="dim")
    for index, service in enumerate(services, start=1):
        table.add_row(
            str(index),
            escape(service.name),
            escape(service.description),
            escape(", ".join(service.command_names)) or "[red]none[/red]",
            escape(", ".join(service.auxiliary_commands)) or "-",
        )
    console.print(table)


def main() -> None:
    """Console script entry point."""
    app()


if __name__ == "__main__":
    main()

"""Pytest configuration and fixtures for svclaunch tests."""

import io
import json
import shlex
import sys
from collections.abc import Callable
from pathlib import Path

import pytest
from rich.console import Console

from svclaunch.manager.output import OutputRelay


def python_command(code: str) -> str:
    """Shell invocation string running ``code`` with the current interpreter."""
    return f"exec {shlex.quote(sys.executable)} -u -c {shlex.quote(code)}"


@pytest.fixture
def make_service(tmp_path: Path) -> Callable[..., Path]:
    """Factory creating ``services/<name>/package.json`` under tmp_path."""

    def _make(
        name: str,
        scripts: dict[str, str] | None = None,
        description: str | None = None,
        manifest: str | None = None,
    ) -> Path:
        service_dir = tmp_path / "services" / name
        service_dir.mkdir(parents=True, exist_ok=True)
        if manifest is not None:
            (service_dir / "package.json").write_text(manifest)
        elif scripts is not None:
            data: dict[str, object] = {"name": name, "scripts": scripts}
            if description is not None:
                data["description"] = description
            (service_dir / "package.json").write_text(json.dumps(data))
        return service_dir

    return _make


@pytest.fixture
def scenario_workspace(tmp_path: Path, make_service: Callable[..., Path]) -> Path:
    """Workspace with alpha {start}, beta {test, serve} and gamma {}."""
    make_service("alpha", {"start": python_command("print('alpha up')")})
    make_service(
        "beta",
        {"test": "pytest", "serve": python_command("print('beta up')")},
        description="Beta API",
    )
    make_service("gamma", {})
    return tmp_path


@pytest.fixture
def console_buffer() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def relay(console_buffer: io.StringIO) -> OutputRelay:
    """OutputRelay writing plain text into console_buffer."""
    console = Console(file=console_buffer, force_terminal=False, color_system=None, width=200)
    return OutputRelay(console)


@pytest.fixture
def python_cmd() -> Callable[[str], str]:
    """Expose python_command() to tests."""
    return python_command

"""Cross-platform command construction for service launches.

This module builds the argv used to start one service command, handling
differences between Windows and POSIX systems.

Key differences between platforms:
- Windows: package runners such as npm are installed as ``.cmd`` shims,
  which CreateProcess only finds under their full name
- POSIX: the runner is found on PATH as-is, and shell-mode commands go
  through ``/bin/sh -c``

The strategy:
1. With a runner prefix: ``[*runner, command_name]``
2. Without one: run the manifest's invocation string through the shell
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Sequence

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"
IS_POSIX = not IS_WINDOWS

# Runners that ship as .cmd shims on Windows
WINDOWS_CMD_SHIMS = frozenset({"npm", "npx", "yarn", "pnpm"})


def resolve_executable(executable: str) -> str:
    """Map a runner executable to its platform-specific name.

    Args:
        executable: Bare executable name, e.g. "npm".

    Returns:
        ``npm.cmd`` and friends on Windows, the input unchanged otherwise.

    Examples:
        >>> resolve_executable("npm")
        'npm'  # on POSIX
        'npm.cmd'  # on Windows

    """
    if IS_WINDOWS and executable.lower() in WINDOWS_CMD_SHIMS:
        return f"{executable}.cmd"
    return executable


def build_launch_command(
    runner: Sequence[str],
    command_name: str,
    invocation: str,
) -> list[str]:
    """Build the argv for one service command.

    Args:
        runner: Runner prefix such as ("npm", "run"). Empty means the
            invocation string is executed by the platform shell.
        command_name: Name of the command in the manifest.
        invocation: The command's invocation string from the manifest.

    Returns:
        Argv list suitable for ``asyncio.create_subprocess_exec``.

    Raises:
        ValueError: If no runner is configured and the invocation is empty.

    """
    if runner:
        executable, *args = runner
        return [resolve_executable(executable), *args, command_name]

    if not invocation.strip():
        raise ValueError(f"Command '{command_name}' has an empty invocation")
    return [*get_shell_command(), invocation]


def get_shell_command() -> list[str]:
    """Get the shell prefix for running a command string.

    Returns:
        ``['/bin/sh', '-c']`` on POSIX, ``[%COMSPEC%, '/c']`` on Windows.

    """
    if IS_WINDOWS:
        return [os.environ.get("COMSPEC", "cmd.exe"), "/c"]
    return ["/bin/sh", "-c"]

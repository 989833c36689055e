"""Exception hierarchy for svclaunch.

Only workspace-level preconditions (missing services directory, broken
launcher config) are fatal for a run. Everything scoped to a single
service is logged and the service is skipped.
"""

from pathlib import Path

__all__ = [
    "ConfigError",
    "ManifestError",
    "SpawnError",
    "SvcLaunchError",
    "WorkspaceNotFoundError",
]


class SvcLaunchError(Exception):
    """Base class for all svclaunch errors."""


class ConfigError(SvcLaunchError):
    """Launcher configuration could not be loaded or validated."""


class WorkspaceNotFoundError(SvcLaunchError):
    """Services directory of the workspace does not exist.

    Attributes:
        path: The directory that was looked up.

    """

    def __init__(self, path: Path) -> None:
        self.path = path
        super().__init__(f"Services directory not found: {path}")


class ManifestError(SvcLaunchError):
    """A service manifest exists but could not be parsed.

    Attributes:
        service_name: Name of the owning service.
        path: Manifest file path.

    """

    def __init__(self, message: str, service_name: str = "", path: Path | None = None) -> None:
        self.service_name = service_name
        self.path = path
        super().__init__(message)


class SpawnError(SvcLaunchError):
    """A child process for one service could not be started.

    Attributes:
        service_name: Name of the service that failed.
        command: Runnable command that was being launched.

    """

    def __init__(self, message: str, service_name: str = "", command: str = "") -> None:
        self.service_name = service_name
        self.command = command
        super().__init__(message)

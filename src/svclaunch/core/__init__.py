"""Core infrastructure: configuration, exceptions and platform helpers."""

from svclaunch.core.config import LauncherConfig, load_config
from svclaunch.core.exceptions import (
    ConfigError,
    ManifestError,
    SpawnError,
    SvcLaunchError,
    WorkspaceNotFoundError,
)

__all__ = [
    "ConfigError",
    "LauncherConfig",
    "ManifestError",
    "SpawnError",
    "SvcLaunchError",
    "WorkspaceNotFoundError",
    "load_config",
]

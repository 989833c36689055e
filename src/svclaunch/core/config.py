"""Launcher configuration.

Settings live in an optional ``svclaunch.yaml`` at the workspace root:

    launcher:
      services_dir: services
      manifest: package.json
      auxiliary_patterns: [test, lint, build, install]
      auxiliary_match: substring
      runner: [npm, run]
      shutdown_timeout: 10

Missing file means defaults. CLI options are applied on top with
``LauncherConfig.model_copy(update=...)``.
"""

import logging
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from svclaunch.core.exceptions import ConfigError

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "svclaunch.yaml"
CONFIG_SECTION = "launcher"

DEFAULT_AUXILIARY_PATTERNS = ("test", "lint", "build", "install")
DEFAULT_RUNNER = ("npm", "run")
DEFAULT_PRECONDITION_COMMAND = "npm run db:up"
DEFAULT_SHUTDOWN_TIMEOUT = 10.0

AuxiliaryMatch = Literal["substring", "prefix", "exact"]


class LauncherConfig(BaseModel):
    """Settings for discovery, selection and supervision.

    Attributes:
        services_dir: Services directory, relative to the workspace root.
        manifest: Per-service manifest file name (JSON or YAML).
        auxiliary_patterns: Command names treated as build/test tooling.
        auxiliary_match: How patterns are compared against command names.
        runner: Command runner prefix; empty runs the manifest string in a shell.
        select_all_token: Selection input that picks every service.
        precondition_command: Shell command offered before launch (empty disables).
        shutdown_timeout: Seconds to wait for children after SIGTERM before
            killing them. None waits indefinitely.
        exit_when_idle: Return once every child has exited on its own.

    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    services_dir: str = "services"
    manifest: str = "package.json"
    auxiliary_patterns: tuple[str, ...] = Field(default=DEFAULT_AUXILIARY_PATTERNS)
    auxiliary_match: AuxiliaryMatch = "substring"
    runner: tuple[str, ...] = Field(default=DEFAULT_RUNNER)
    select_all_token: str = "all"
    precondition_command: str = DEFAULT_PRECONDITION_COMMAND
    shutdown_timeout: float | None = Field(default=DEFAULT_SHUTDOWN_TIMEOUT, gt=0)
    exit_when_idle: bool = True

    @field_validator("auxiliary_patterns", "runner", mode="before")
    @classmethod
    def coerce_none_to_empty(cls, v: Any) -> tuple[str, ...]:
        """YAML parses empty keys as None; a plain string is split on spaces."""
        if v is None:
            return ()
        if isinstance(v, str):
            return tuple(v.split())
        return tuple(v)

    @field_validator("select_all_token")
    @classmethod
    def normalize_token(cls, v: str) -> str:
        token = v.strip().lower()
        if not token:
            raise ValueError("select_all_token must not be empty")
        return token

    @field_validator("precondition_command", mode="before")
    @classmethod
    def coerce_none_precondition(cls, v: Any) -> str:
        return "" if v is None else v


def load_config(workspace_root: Path, filename: str = CONFIG_FILENAME) -> LauncherConfig:
    """Load launcher config from the workspace root.

    Args:
        workspace_root: Directory that may contain the config file.
        filename: Config file name.

    Returns:
        Parsed config, or defaults when the file does not exist.

    Raises:
        ConfigError: If the file is not valid YAML or fails validation.

    """
    config_path = workspace_root / filename
    if not config_path.is_file():
        logger.debug("No %s in %s, using defaults", filename, workspace_root)
        return LauncherConfig()

    try:
        with config_path.open(encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"{config_path}: expected a mapping at top level")

    section = data.get(CONFIG_SECTION) or {}
    try:
        config = LauncherConfig.model_validate(section)
    except ValidationError as e:
        raise ConfigError(f"Invalid launcher config in {config_path}: {e}") from e

    logger.info("Loaded launcher config from %s", config_path)
    return config

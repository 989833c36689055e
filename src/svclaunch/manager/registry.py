"""Service registry: discovery of services under a workspace.

Scans ``<workspace>/<services_dir>`` once per run and yields one
ServiceDescriptor per subdirectory, in directory listing order. The
displayed index of a service must match the index the operator types
later, so results are never re-sorted.

Manifest problems never abort discovery:
- Missing manifest: empty commands, "(no <manifest>)" description
- Unreadable or malformed manifest: empty commands, "(error in <manifest>)"
"""

import json
import logging
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import yaml

from svclaunch.core.config import LauncherConfig
from svclaunch.core.exceptions import ManifestError, WorkspaceNotFoundError

from .service import CommandClassifier, ServiceDescriptor

logger = logging.getLogger(__name__)

YAML_SUFFIXES = (".yaml", ".yml")


class ServiceRegistry:
    """Discovers services in a workspace.

    Attributes:
        workspace_root: Workspace directory (usually the current directory).
        config: Launcher configuration.
        classifier: Auxiliary command predicate.

    """

    def __init__(
        self,
        workspace_root: Path,
        config: LauncherConfig | None = None,
        classifier: CommandClassifier | None = None,
    ) -> None:
        self.workspace_root = workspace_root
        self.config = config or LauncherConfig()
        self.classifier = classifier or CommandClassifier.from_config(self.config)

    @property
    def services_root(self) -> Path:
        return self.workspace_root / self.config.services_dir

    def discover(self) -> Iterator[ServiceDescriptor]:
        """Enumerate services lazily.

        The services directory is checked up front so a missing workspace
        fails before anything is consumed.

        Returns:
            Iterator of descriptors in directory listing order.

        Raises:
            WorkspaceNotFoundError: If the services directory does not exist.

        """
        services_root = self.services_root
        if not services_root.is_dir():
            raise WorkspaceNotFoundError(services_root)
        return self._scan(services_root)

    def _scan(self, services_root: Path) -> Iterator[ServiceDescriptor]:
        for entry in services_root.iterdir():
            if not entry.is_dir():
                continue
            yield self.load_descriptor(entry)

    def load_descriptor(self, service_path: Path) -> ServiceDescriptor:
        """Build the descriptor for one service directory.

        Args:
            service_path: Service directory.

        Returns:
            Descriptor; degraded (no commands) when the manifest is
            missing or malformed.

        """
        name = service_path.name
        manifest_name = self.config.manifest
        manifest_path = service_path / manifest_name

        if not manifest_path.is_file():
            logger.warning("Service %s has no %s", name, manifest_name)
            return ServiceDescriptor(
                name=name,
                path=service_path,
                description=f"Service {name} (no {manifest_name})",
            )

        try:
            commands, description = self._read_manifest(manifest_path, name)
        except ManifestError as e:
            logger.warning("Service %s: %s", name, e)
            return ServiceDescriptor(
                name=name,
                path=service_path,
                description=f"Service {name} (error in {manifest_name})",
            )

        descriptor = ServiceDescriptor(
            name=name,
            path=service_path,
            runnable_commands=self.classifier.runnable(commands),
            description=description or "",
            all_commands=commands,
        )
        logger.debug(
            "Discovered service %s: runnable=%s auxiliary=%s",
            name,
            descriptor.command_names,
            descriptor.auxiliary_commands,
        )
        return descriptor

    def _read_manifest(self, manifest_path: Path, service_name: str) -> tuple[dict[str, str], str | None]:
        """Parse a manifest into (commands, description).

        Raises:
            ManifestError: If the file cannot be read or has the wrong shape.

        """
        try:
            text = manifest_path.read_text(encoding="utf-8")
            if manifest_path.suffix.lower() in YAML_SUFFIXES:
                data: Any = yaml.safe_load(text)
            else:
                data = json.loads(text)
        except (OSError, UnicodeDecodeError, ValueError, yaml.YAMLError) as e:
            raise ManifestError(
                f"cannot parse {manifest_path.name}: {e}",
                service_name=service_name,
                path=manifest_path,
            ) from e

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ManifestError(
                f"{manifest_path.name} is not a mapping",
                service_name=service_name,
                path=manifest_path,
            )

        scripts = data.get("scripts") or {}
        if not isinstance(scripts, dict):
            raise ManifestError(
                f"'scripts' in {manifest_path.name} is not a mapping",
                service_name=service_name,
                path=manifest_path,
            )

        commands = {str(k): "" if v is None else str(v) for k, v in scripts.items()}
        description = data.get("description")
        if not isinstance(description, str):
            description = None
        return commands, description


def discover(workspace_root: Path, config: LauncherConfig | None = None) -> Iterator[ServiceDescriptor]:
    """Shortcut for ``ServiceRegistry(workspace_root, config).discover()``."""
    return ServiceRegistry(workspace_root, config).discover()

"""Service descriptors and command classification.

A service is one subdirectory of the workspace's services directory. Its
manifest declares named commands; the ones that look like tooling
(test, lint, build, install) are auxiliary, the rest are runnable.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from svclaunch.core.config import DEFAULT_AUXILIARY_PATTERNS, AuxiliaryMatch, LauncherConfig


class CommandClassifier:
    """Decides whether a manifest command is auxiliary tooling.

    Match modes:
        substring: pattern appears anywhere in the name ("prebuild" matches "build")
        prefix: name starts with the pattern ("build:prod" matches "build")
        exact: name equals the pattern

    Substring matching can misclassify names like "rebuild-and-serve";
    prefix or exact matching avoids that at the cost of missing
    "prebuild"-style hooks.

    """

    def __init__(
        self,
        patterns: Iterable[str] = DEFAULT_AUXILIARY_PATTERNS,
        match: AuxiliaryMatch = "substring",
    ) -> None:
        self.patterns = tuple(patterns)
        self.match = match

    @classmethod
    def from_config(cls, config: LauncherConfig) -> "CommandClassifier":
        return cls(config.auxiliary_patterns, config.auxiliary_match)

    def is_auxiliary(self, command_name: str) -> bool:
        if self.match == "exact":
            return command_name in self.patterns
        if self.match == "prefix":
            return any(command_name.startswith(p) for p in self.patterns)
        return any(p in command_name for p in self.patterns)

    def runnable(self, commands: Mapping[str, str]) -> dict[str, str]:
        """Filter a command mapping down to runnable commands, keeping order."""
        return {name: inv for name, inv in commands.items() if not self.is_auxiliary(name)}


@dataclass(frozen=True)
class ServiceDescriptor:
    """One discovered service. Read-only after discovery.

    Attributes:
        name: Directory name; unique within one discovery pass.
        path: Service directory.
        runnable_commands: Command name to invocation string, auxiliary
            commands removed, manifest order preserved.
        description: Human-readable label.
        all_commands: Every command declared in the manifest.

    """

    name: str
    path: Path
    runnable_commands: dict[str, str] = field(default_factory=dict)
    description: str = ""
    all_commands: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.description:
            object.__setattr__(self, "description", f"Service {self.name}")

    @property
    def command_names(self) -> list[str]:
        return list(self.runnable_commands)

    @property
    def auxiliary_commands(self) -> list[str]:
        return [name for name in self.all_commands if name not in self.runnable_commands]

    def is_runnable(self) -> bool:
        return bool(self.runnable_commands)

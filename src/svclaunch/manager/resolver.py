"""Script resolution: pick one runnable command per selected service."""

import logging
from collections.abc import Callable
from dataclasses import dataclass

from .service import ServiceDescriptor

logger = logging.getLogger(__name__)

# (service, runnable command names) -> raw choice, or None if cancelled
Chooser = Callable[[ServiceDescriptor, list[str]], str | None]


@dataclass(frozen=True)
class ResolvedLaunch:
    """A service paired with the command to run. Consumed once by the supervisor."""

    service: ServiceDescriptor
    command: str

    @property
    def invocation(self) -> str:
        return self.service.runnable_commands[self.command]


class ScriptResolver:
    """Resolves services to launches.

    A service with one runnable command is resolved without asking. With
    several, the chooser is asked; it may answer with a 1-based index or
    the command name. Services with nothing runnable or an invalid answer
    are skipped.

    Attributes:
        chooser: Disambiguation callback, or None to skip ambiguous services.
        skipped: Names of services skipped so far, with the reason.

    """

    def __init__(self, chooser: Chooser | None = None) -> None:
        self.chooser = chooser
        self.skipped: dict[str, str] = {}

    def resolve(self, service: ServiceDescriptor) -> ResolvedLaunch | None:
        """Resolve one service.

        Args:
            service: Service to resolve.

        Returns:
            ResolvedLaunch, or None when the service should be skipped.

        """
        commands = service.command_names
        if not commands:
            return self._skip(service, "has no executable scripts")

        if len(commands) == 1:
            return ResolvedLaunch(service=service, command=commands[0])

        if self.chooser is None:
            return self._skip(service, f"has several scripts ({', '.join(commands)}) and no choice was given")

        choice = self.chooser(service, commands)
        command = self._match_choice(choice, commands)
        if command is None:
            return self._skip(service, f"invalid script selection {choice!r}")
        return ResolvedLaunch(service=service, command=command)

    def resolve_all(self, services) -> list[ResolvedLaunch]:
        """Resolve every service, dropping the ones that cannot run."""
        launches = []
        for service in services:
            launch = self.resolve(service)
            if launch is not None:
                launches.append(launch)
        return launches

    @staticmethod
    def _match_choice(choice: str | None, commands: list[str]) -> str | None:
        if choice is None:
            return None
        text = choice.strip()
        if text in commands:
            return text
        try:
            index = int(text) - 1
        except ValueError:
            return None
        if 0 <= index < len(commands):
            return commands[index]
        return None

    def _skip(self, service: ServiceDescriptor, reason: str) -> None:
        self.skipped[service.name] = reason
        logger.warning("Skipping service %s: %s", service.name, reason)
        return None

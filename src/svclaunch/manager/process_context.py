"""ManagedProcess: supervisor-side state of one spawned child.

Encapsulates:
- Owning service name (for labeling)
- The OS process handle, owned exclusively by the supervisor
- Lifecycle state machine (SPAWNED, RUNNING, EXITED, KILLED)
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class ProcessState(StrEnum):
    """State machine for one child process.

    Valid transitions:
        SPAWNED → RUNNING (once the handle is registered)
        RUNNING → EXITED (child ended on its own)
        RUNNING → KILLED (supervisor sent a termination request)

    EXITED and KILLED are terminal; there is no restart.
    """

    SPAWNED = "spawned"
    RUNNING = "running"
    EXITED = "exited"
    KILLED = "killed"


TERMINAL_STATES = frozenset({ProcessState.EXITED, ProcessState.KILLED})


class InvalidTransitionError(RuntimeError):
    """Raised when a ManagedProcess is moved out of a terminal state."""


@dataclass
class ManagedProcess:
    """Live record for one spawned child.

    Attributes:
        service_name: Owning service, used for labels only.
        command: Runnable command that was launched.
        handle: asyncio subprocess handle.
        state: Current lifecycle state.
        exit_code: Return code once the OS reported it.
        started_at: Spawn timestamp.
        ended_at: Timestamp of the terminal transition.

    """

    service_name: str
    command: str
    handle: asyncio.subprocess.Process
    state: ProcessState = ProcessState.SPAWNED
    exit_code: int | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    ended_at: datetime | None = None

    @property
    def pid(self) -> int:
        return self.handle.pid

    def is_running(self) -> bool:
        return self.state == ProcessState.RUNNING

    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def set_running(self) -> None:
        """Transition SPAWNED → RUNNING."""
        if self.state != ProcessState.SPAWNED:
            raise InvalidTransitionError(f"{self.service_name}: cannot start from {self.state}")
        self.state = ProcessState.RUNNING
        logger.info("Service %s running (PID %d)", self.service_name, self.pid)

    def set_exited(self, exit_code: int | None) -> None:
        """Transition RUNNING → EXITED after the child ended on its own."""
        self._finish(ProcessState.EXITED)
        self.exit_code = exit_code
        logger.info("Service %s exited with code %s", self.service_name, exit_code)

    def set_killed(self) -> None:
        """Transition RUNNING → KILLED when a termination request was sent."""
        self._finish(ProcessState.KILLED)
        logger.info("Service %s sent termination request (PID %d)", self.service_name, self.pid)

    def record_exit_code(self, exit_code: int | None) -> None:
        """Store the return code of a child that was already killed."""
        self.exit_code = exit_code

    def _finish(self, target: ProcessState) -> None:
        if self.state != ProcessState.RUNNING:
            raise InvalidTransitionError(
                f"{self.service_name}: cannot move from {self.state} to {target}"
            )
        self.state = target
        self.ended_at = datetime.now(UTC)

    def to_summary(self) -> dict[str, Any]:
        return {
            "service": self.service_name,
            "command": self.command,
            "pid": self.pid,
            "state": self.state.value,
            "exit_code": self.exit_code,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
        }

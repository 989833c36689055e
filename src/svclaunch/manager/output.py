"""Labeled console output for supervised services.

Every line a child writes is prefixed with ``[<service>]`` and printed
through one shared rich Console. Writes are serialized by a lock so lines
from different services interleave only at line granularity.
"""

import logging
import threading
from collections import deque
from enum import StrEnum

from rich.console import Console
from rich.text import Text

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_SIZE = 500


class StreamName(StrEnum):
    STDOUT = "stdout"
    STDERR = "stderr"


LABEL_STYLES = {
    StreamName.STDOUT: "cyan",
    StreamName.STDERR: "red",
}


class OutputRelay:
    """Single synchronized writer shared by all reader tasks.

    Attributes:
        console: Destination console.
        history: Ring buffer of (service, stream, line) for inspection.

    """

    def __init__(self, console: Console | None = None, history_size: int = DEFAULT_HISTORY_SIZE) -> None:
        self.console = console or Console(highlight=False)
        self.history: deque[tuple[str, StreamName, str]] = deque(maxlen=history_size)
        self._lock = threading.Lock()

    def write_line(self, service_name: str, stream: StreamName, line: str) -> None:
        """Print one child line with its service label.

        Args:
            service_name: Owning service.
            stream: Which child stream produced the line.
            line: Line content without the trailing newline.

        """
        text = Text.assemble((f"[{service_name}]", LABEL_STYLES[stream]), " ", line)
        with self._lock:
            self.history.append((service_name, stream, line))
            self.console.print(text, soft_wrap=True, highlight=False)

    def notice(self, message: str, style: str = "yellow") -> None:
        """Print a supervisor message (start, exit, stop notices)."""
        with self._lock:
            self.console.print(Text(message, style=style), soft_wrap=True, highlight=False)

    def lines_for(self, service_name: str) -> list[str]:
        """Get the retained lines of one service, oldest first."""
        with self._lock:
            return [line for name, _, line in self.history if name == service_name]

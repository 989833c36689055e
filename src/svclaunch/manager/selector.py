"""Operator selection of services.

Input is either the wildcard token ("all", any case) or a comma-separated
list of 1-based indices. Bad tokens are dropped instead of rejecting the
whole input, duplicates collapse, and the result keeps discovery order.
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from .service import ServiceDescriptor

logger = logging.getLogger(__name__)

DEFAULT_WILDCARD = "all"


@dataclass(frozen=True)
class Selection:
    """Result of resolving operator input against the candidate list.

    Attributes:
        services: Selected services in discovery order.
        rejected: Input tokens that were ignored.

    """

    services: tuple[ServiceDescriptor, ...] = ()
    rejected: tuple[str, ...] = ()

    @property
    def nothing_selected(self) -> bool:
        return not self.services

    def __len__(self) -> int:
        return len(self.services)

    def __iter__(self):
        return iter(self.services)


def parse_indices(raw_input: str, count: int) -> tuple[list[int], list[str]]:
    """Parse comma-separated 1-based indices.

    Args:
        raw_input: Operator input.
        count: Number of candidates.

    Returns:
        Tuple of (valid 0-based indices in input order, rejected tokens).

    """
    indices: list[int] = []
    rejected: list[str] = []
    for token in raw_input.split(","):
        token = token.strip()
        if not token:
            continue
        # int() would also take "1_0" and non-ASCII digits
        if not (token.isascii() and token.isdigit()):
            rejected.append(token)
            continue
        index = int(token) - 1
        if 0 <= index < count:
            indices.append(index)
        else:
            rejected.append(token)
    return indices, rejected


def resolve_selection(
    raw_input: str | None,
    candidates: Sequence[ServiceDescriptor],
    wildcard: str = DEFAULT_WILDCARD,
) -> Selection:
    """Translate operator input into a subset of candidates.

    Args:
        raw_input: Operator input; None means the prompt was cancelled.
        candidates: Services in discovery order.
        wildcard: Token selecting every candidate (case-insensitive).

    Returns:
        Selection. An empty selection is a normal outcome, not an error.

    """
    if raw_input is None:
        return Selection()

    text = raw_input.strip()
    if text.lower() == wildcard.lower():
        return Selection(services=tuple(candidates))

    indices, rejected = parse_indices(text, len(candidates))
    if rejected:
        logger.debug("Ignoring selection tokens: %s", ", ".join(rejected))

    chosen = set(indices)
    services = tuple(svc for i, svc in enumerate(candidates) if i in chosen)
    return Selection(services=services, rejected=tuple(rejected))

"""Bounded "keep the newest N" windows used by the ledger and the backups."""

from dataclasses import dataclass
from typing import Callable, List, Sequence, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class RollingWindow:
    """Keep at most ``capacity`` items per key; older items overflow.

    The Postgres stores prune with ``ORDER BY ... DESC OFFSET capacity`` inside
    the insert transaction, which selects exactly :meth:`overflow`. In-memory
    stores call :meth:`overflow` directly.
    """

    capacity: int

    def __post_init__(self) -> None:
        if self.capacity < 1:
            raise ValueError("capacity must be at least 1")

    def overflow(self, items: Sequence[T], key: Callable[[T], object]) -> List[T]:
        """Items beyond the newest ``capacity`` when ordered by ``key`` descending."""
        ordered = sorted(items, key=key, reverse=True)
        return ordered[self.capacity:]

    def retained(self, items: Sequence[T], key: Callable[[T], object]) -> List[T]:
        ordered = sorted(items, key=key, reverse=True)
        return ordered[: self.capacity]

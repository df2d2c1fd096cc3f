"""Single-threaded deferred work.

Long operations process one chunk per tick and schedule the remainder,
so the host only ever waits for one chunk. There is no cancellation: a
running chunk finishes, and a caller can only stop scheduling the next.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable

logger = logging.getLogger(__name__)


class EngineState(str, Enum):
    """What the engine is busy with. Operations only start from IDLE."""

    IDLE = "idle"
    SCANNING = "scanning"
    MATCHING = "matching"
    SYNCING = "syncing"


@dataclass
class Task:
    name: str
    fn: Callable[[], None]


class TaskQueue:
    """FIFO of deferred callables, consumed one per tick."""

    def __init__(self) -> None:
        self._tasks: deque[Task] = deque()

    def schedule(self, name: str, fn: Callable[[], None]) -> None:
        self._tasks.append(Task(name, fn))

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def names(self) -> list[str]:
        return [t.name for t in self._tasks]

    def tick(self) -> bool:
        """Run the next task. Returns False when there was nothing to run."""
        if not self._tasks:
            return False
        task = self._tasks.popleft()
        logger.debug(f"Running task {task.name}")
        task.fn()
        return True

    def run_until_idle(self, max_ticks: int = 10_000) -> int:
        """Drain the queue, including tasks scheduled while draining. Returns ticks run."""
        ticks = 0
        while ticks < max_ticks and self.tick():
            ticks += 1
        if self._tasks:
            logger.warning(f"Stopped after {ticks} ticks with {len(self._tasks)} tasks left")
        return ticks

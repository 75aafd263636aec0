from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
import logging
import threading

from labpilot.observability import log_event


LOGGER = logging.getLogger("labpilot.issue_locks")


@dataclass
class _KeyQueue:
    next_ticket: int = 0
    serving: int = 0

    @property
    def drained(self) -> bool:
        return self.serving == self.next_ticket


class IssueLockTable:
    """FIFO mutual exclusion per session key.

    Waiters on the same key run strictly in arrival order. A waiter that raises
    still hands the key to the next ticket. Entries are dropped once drained.
    """

    def __init__(self) -> None:
        self._condition = threading.Condition()
        self._queues: dict[str, _KeyQueue] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._condition:
            queue = self._queues.setdefault(key, _KeyQueue())
            ticket = queue.next_ticket
            queue.next_ticket += 1
            if ticket != queue.serving:
                log_event(LOGGER, "issue_lock_waiting", issue_key=key, ahead=ticket - queue.serving)
            while queue.serving != ticket:
                self._condition.wait()
        try:
            yield
        finally:
            with self._condition:
                queue.serving += 1
                if queue.drained:
                    del self._queues[key]
                self._condition.notify_all()

    def active_keys(self) -> tuple[str, ...]:
        with self._condition:
            return tuple(self._queues.keys())

    def waiting(self, key: str) -> int:
        """Number of callers queued behind the current holder of ``key``."""
        with self._condition:
            queue = self._queues.get(key)
            if queue is None:
                return 0
            return queue.next_ticket - queue.serving - 1

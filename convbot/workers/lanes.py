"""
Two bounded FIFO lanes behind one condition variable.
`get` always drains the priority lane before the normal one.
"""
import threading
from collections import deque
from dataclasses import dataclass


@dataclass(frozen=True)
class QueueItem:
    task_id: str
    priority: bool


class LaneClosed(Exception):
    """The lanes were closed while waiting."""


class PriorityLanes:
    def __init__(self, maxsize: int):
        if maxsize <= 0:
            raise ValueError("maxsize must be positive")
        self.maxsize = maxsize
        self._priority: deque[QueueItem] = deque()
        self._normal: deque[QueueItem] = deque()
        self._cond = threading.Condition()
        self._closed = False

    def _lane(self, priority: bool) -> deque:
        return self._priority if priority else self._normal

    def put(self, item: QueueItem, timeout: float | None = None) -> bool:
        """Block while the item's lane is full. False on timeout; LaneClosed once closed."""
        lane = self._lane(item.priority)
        with self._cond:
            if not self._cond.wait_for(lambda: self._closed or len(lane) < self.maxsize, timeout):
                return False
            if self._closed:
                raise LaneClosed()
            lane.append(item)
            self._cond.notify_all()
            return True

    def get(self, timeout: float | None = None) -> QueueItem | None:
        """Next item, priority lane first. None on timeout; LaneClosed once closed."""
        with self._cond:
            if not self._cond.wait_for(lambda: self._closed or self._priority or self._normal, timeout):
                return None
            if self._closed:
                raise LaneClosed()
            item = self._priority.popleft() if self._priority else self._normal.popleft()
            self._cond.notify_all()
            return item

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        return self._closed

    def sizes(self) -> tuple[int, int]:
        with self._cond:
            return len(self._priority), len(self._normal)

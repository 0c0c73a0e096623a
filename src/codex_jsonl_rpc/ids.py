from __future__ import annotations

import threading


class RequestIdAllocator:
    """Strictly increasing request id sequence shared by one or more connections.

    Ids start at `start` (1 by default) and are never reused. `next()` may be
    called from several threads at once.
    """

    def __init__(self, start: int = 1) -> None:
        if start < 1:
            raise ValueError("request ids must start above zero")
        self._lock = threading.Lock()
        self._next = start
        self._last = 0

    def next(self) -> int:
        """Return the next id in the sequence."""
        with self._lock:
            value = self._next
            self._next += 1
            self._last = value
        return value

    @property
    def last(self) -> int:
        """Most recently issued id, or 0 before the first call to `next()`."""
        return self._last

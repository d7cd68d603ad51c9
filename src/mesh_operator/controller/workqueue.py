"""Rate-limited work queue keyed by object name.

Semantics follow the controller work queue used across Kubernetes
controllers:

- a key is held at most once while pending, however often it is added
- a key being processed is never handed to a second worker; adding it
  meanwhile marks it dirty, and it is re-queued when ``done`` is called
- ``add_after`` schedules a key for later
- ``add_rate_limited`` schedules with per-key exponential backoff until
  ``forget`` resets it
"""

from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from collections.abc import Callable


class WorkQueue:
    """Thread-safe deduplicating work queue with delayed and backoff adds."""

    def __init__(
        self,
        name: str,
        *,
        backoff_base: float = 1.0,
        backoff_max: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._clock = clock

        self._cond = threading.Condition()
        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._waiting: list[tuple[float, int, str]] = []
        self._sequence = itertools.count()
        self._failures: dict[str, int] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    # -------------------------------------------------------------------------
    # Adding
    # -------------------------------------------------------------------------

    def add(self, key: str) -> None:
        """Add a key for immediate processing."""
        with self._cond:
            self._add_locked(key)

    def _add_locked(self, key: str) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._cond.notify()

    def add_after(self, key: str, delay: float) -> None:
        """Add a key once ``delay`` seconds have passed."""
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            heapq.heappush(self._waiting, (self._clock() + delay, next(self._sequence), key))
            self._cond.notify()

    def add_rate_limited(self, key: str) -> None:
        """Add a key after its exponential backoff delay."""
        self.add_after(key, self.next_backoff(key))

    def next_backoff(self, key: str) -> float:
        """Record a failure for ``key`` and return the delay to wait."""
        with self._cond:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        return min(self._backoff_base * (2**failures), self._backoff_max)

    def forget(self, key: str) -> None:
        """Reset the backoff of a key."""
        with self._cond:
            self._failures.pop(key, None)

    def num_requeues(self, key: str) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    # -------------------------------------------------------------------------
    # Processing
    # -------------------------------------------------------------------------

    def get(self, timeout: float | None = None) -> str | None:
        """Block until a key is available.

        Returns:
            The key, or None on shutdown or when ``timeout`` expires.
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                self._promote_waiting_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._processing.add(key)
                    self._dirty.discard(key)
                    return key
                if self._shutting_down:
                    return None

                now = self._clock()
                wait: float | None = None
                if self._waiting:
                    wait = max(self._waiting[0][0] - now, 0.0)
                if deadline is not None:
                    remaining = deadline - now
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def done(self, key: str) -> None:
        """Mark a key as processed, re-queueing it if it was added meanwhile."""
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def shut_down(self) -> None:
        """Stop handing out keys and wake every waiting worker."""
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def _promote_waiting_locked(self) -> None:
        now = self._clock()
        while self._waiting and self._waiting[0][0] <= now:
            _, _, key = heapq.heappop(self._waiting)
            self._add_locked(key)

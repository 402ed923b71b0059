from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable, Hashable

from controller.src.metrics import METRICS

MAX_RETRY_DELAY_SECONDS = 30.0


class WorkQueue:
    """Deduplicating, delaying work queue for reconcile keys.

    Guarantees that a key is handed to at most one worker at a time: a key
    added while it is being processed is parked in ``_dirty`` and queued
    again when :meth:`done` is called.  Failed keys are re-added through
    :meth:`add_rate_limited` with bounded exponential backoff (1 s doubling
    up to 30 s) until :meth:`forget` resets them.

    After :meth:`shut_down`, :meth:`get` keeps returning keys that are
    already ready so workers can drain them; delayed keys are dropped.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._queued: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._dirty: set[Hashable] = set()
        self._delayed: dict[Hashable, float] = {}
        self._retries: dict[Hashable, int] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue) + len(self._delayed)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def _update_depth(self) -> None:
        METRICS.queue_depth.set(len(self._queue) + len(self._delayed))

    def _enqueue(self, key: Hashable) -> None:
        if key in self._processing:
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        self._queued.add(key)
        self._queue.append(key)
        self._cond.notify()

    def add(self, key: Hashable) -> None:
        with self._cond:
            if self._shutting_down:
                return
            self._delayed.pop(key, None)
            self._enqueue(key)
            self._update_depth()

    def add_after(self, key: Hashable, delay_seconds: float) -> None:
        if delay_seconds <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            due_at = self._clock() + delay_seconds
            existing = self._delayed.get(key)
            if existing is None or due_at < existing:
                self._delayed[key] = due_at
            self._update_depth()
            self._cond.notify()

    def add_rate_limited(self, key: Hashable) -> float:
        """Re-add *key* after its backoff delay and return that delay."""
        with self._cond:
            attempt = self._retries.get(key, 0) + 1
            self._retries[key] = attempt
        delay_seconds = min(MAX_RETRY_DELAY_SECONDS, float(2 ** (attempt - 1)))
        self.add_after(key, delay_seconds)
        return delay_seconds

    def retries(self, key: Hashable) -> int:
        with self._cond:
            return self._retries.get(key, 0)

    def forget(self, key: Hashable) -> None:
        with self._cond:
            self._retries.pop(key, None)

    def _promote_due(self) -> float | None:
        """Move due delayed keys to the ready queue; return seconds until the next one."""
        if not self._delayed:
            return None
        now = self._clock()
        for key, due_at in list(self._delayed.items()):
            if due_at <= now:
                del self._delayed[key]
                self._enqueue(key)
        if not self._delayed:
            return None
        return max(0.0, min(self._delayed.values()) - now)

    def get(self, timeout: float | None = None) -> Hashable | None:
        """Return the next ready key, or ``None`` on timeout or drained shutdown."""
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                next_due = None if self._shutting_down else self._promote_due()
                if self._queue:
                    key = self._queue.popleft()
                    self._queued.discard(key)
                    self._processing.add(key)
                    self._update_depth()
                    return key
                if self._shutting_down:
                    return None

                wait_for = next_due
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(timeout=wait_for)

    def done(self, key: Hashable) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._dirty.discard(key)
                if not self._shutting_down:
                    self._enqueue(key)
            self._update_depth()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._delayed.clear()
            self._update_depth()
            self._cond.notify_all()

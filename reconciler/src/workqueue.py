from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

from reconciler.src.metrics import MetricsSink, NoopMetricsSink


class _Shutdown:
    def __repr__(self) -> str:
        return "SHUTDOWN"

    def __bool__(self) -> bool:
        return False


SHUTDOWN = _Shutdown()
"""Returned by :meth:`WorkQueue.get` once the queue is shutting down."""


@dataclass(order=True)
class QueueItem:
    """A key waiting out its backoff delay.

    Ordered by ``not_before`` (monotonic seconds); ``seq`` breaks ties so
    items added at the same instant keep insertion order.
    """

    not_before: float
    seq: int
    key: str = field(compare=False)
    retries: int = field(default=0, compare=False)


class ExponentialBackoff:
    """Per-failure delay of ``base_delay * 2**failures``, capped at ``max_delay``."""

    _MAX_EXPONENT = 62

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0) -> None:
        if base_delay <= 0:
            raise ValueError("base_delay must be > 0")
        if max_delay < base_delay:
            raise ValueError("max_delay must be >= base_delay")
        self.base_delay = base_delay
        self.max_delay = max_delay

    def delay(self, failures: int) -> float:
        exponent = min(max(failures, 0), self._MAX_EXPONENT)
        return min(self.max_delay, self.base_delay * (2**exponent))


class WorkQueue:
    """Deduplicating, rate-limited queue of resource keys.

    The queue is a *set* of keys ordered by readiness, not a multiset:

    ``_queue``
        FIFO of keys ready to be handed to a worker.
    ``_dirty``
        Keys that need processing.  A key already in here is not queued
        twice.
    ``_processing``
        Keys currently owned by a worker.  A key added while in flight
        stays in ``_dirty`` only and is put back on ``_queue`` by
        :meth:`done`, so one key is never handed to two workers.
    ``_waiting``
        At most one :class:`QueueItem` per key waiting out a backoff
        delay.  ``_heap`` orders them; superseded heap entries are skipped
        lazily.
    ``_failures``
        Consecutive failure count per key, cleared by :meth:`forget`.

    All state is guarded by a single condition variable; :meth:`get` is
    the only blocking call.
    """

    def __init__(
        self,
        max_retries: int = 3,
        backoff: ExponentialBackoff | None = None,
        metrics: MetricsSink | None = None,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.max_retries = max_retries
        self.backoff = backoff or ExponentialBackoff()
        self.metrics = metrics or NoopMetricsSink()

        self._cond = threading.Condition()
        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._waiting: dict[str, QueueItem] = {}
        self._heap: list[QueueItem] = []
        self._failures: dict[str, int] = {}
        self._seq = itertools.count()
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue) + len(self._waiting)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    @property
    def in_flight(self) -> int:
        with self._cond:
            return len(self._processing)

    def is_in_flight(self, key: str) -> bool:
        with self._cond:
            return key in self._processing

    def is_waiting(self, key: str) -> bool:
        with self._cond:
            return key in self._waiting

    def num_failures(self, key: str) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def _report_locked(self) -> None:
        self.metrics.set_queue_depth(len(self._queue) + len(self._waiting))
        self.metrics.set_in_flight(len(self._processing))

    def _add_locked(self, key: str) -> None:
        self.metrics.inc_queue_adds()
        if key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._report_locked()
        self._cond.notify()

    def add(self, key: str) -> None:
        """Mark *key* as needing processing.  Idempotent while pending or in flight."""
        with self._cond:
            if self._shutting_down:
                return
            # A direct add supersedes any backoff wait for the same key.
            if self._waiting.pop(key, None) is not None:
                self._report_locked()
            self._add_locked(key)

    def requeue(self, key: str) -> bool:
        """Add *key* unless it is waiting out a backoff or is in flight.

        Used for periodic re-enqueues that carry no new information: a
        backoff wait is left to run its course, and a key being processed
        right now is already being reconciled.  Returns ``True`` if the
        key is pending afterwards.
        """
        with self._cond:
            if self._shutting_down or key in self._waiting or key in self._processing:
                return False
            self._add_locked(key)
            return True

    def _add_after_locked(self, key: str, delay: float) -> None:
        if delay <= 0:
            self._waiting.pop(key, None)
            self._add_locked(key)
            return
        if key in self._dirty:
            return

        not_before = time.monotonic() + delay
        existing = self._waiting.get(key)
        if existing is not None and existing.not_before <= not_before:
            return

        item = QueueItem(
            not_before=not_before,
            seq=next(self._seq),
            key=key,
            retries=self._failures.get(key, 0),
        )
        self._waiting[key] = item
        heapq.heappush(self._heap, item)
        self._report_locked()
        # Blocked getters must recompute how long to sleep.
        self._cond.notify_all()

    def add_after(self, key: str, delay: float) -> None:
        """Add *key* once *delay* seconds have passed.

        If the key is already waiting, the earlier of the two deadlines wins.
        """
        with self._cond:
            if self._shutting_down:
                return
            self._add_after_locked(key, delay)

    def add_after_failure(self, key: str) -> bool:
        """Schedule a retry of *key* with exponential backoff.

        Returns ``False`` when the key has already used its retry budget;
        the failure counter is then cleared and nothing is scheduled.
        """
        with self._cond:
            failures = self._failures.get(key, 0)
            if failures >= self.max_retries:
                self._failures.pop(key, None)
                return False
            self._failures[key] = failures + 1
            if not self._shutting_down:
                self._add_after_locked(key, self.backoff.delay(failures))
            return True

    def forget(self, key: str) -> None:
        """Clear the failure history of *key*; does not remove it from the queue."""
        with self._cond:
            self._failures.pop(key, None)

    def _promote_due_locked(self) -> float | None:
        """Move waiting items whose delay elapsed onto the queue.

        Returns seconds until the next waiting item is due, or ``None``
        when nothing is waiting.
        """
        now = time.monotonic()
        while self._heap:
            item = self._heap[0]
            if self._waiting.get(item.key) is not item:
                heapq.heappop(self._heap)
                continue
            if item.not_before > now:
                return item.not_before - now
            heapq.heappop(self._heap)
            del self._waiting[item.key]
            self._add_locked(item.key)
            self._report_locked()
        return None

    def get(self, timeout: float | None = None) -> str | _Shutdown | None:
        """Block until a key is ready and hand it to the caller.

        The caller owns the key until it calls :meth:`done`.  Returns
        :data:`SHUTDOWN` once the queue is shutting down, or ``None`` if
        *timeout* elapses first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                if self._shutting_down:
                    return SHUTDOWN
                wait_for = self._promote_due_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._processing.add(key)
                    self._dirty.discard(key)
                    self._report_locked()
                    return key
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(timeout=wait_for)

    def done(self, key: str) -> None:
        """Release ownership of *key*; re-queue it if it was added while in flight."""
        with self._cond:
            if key not in self._processing:
                raise ValueError(f"{key!r} is not in flight")
            self._processing.remove(key)
            if key in self._dirty:
                if self._shutting_down:
                    self._dirty.discard(key)
                else:
                    self._queue.append(key)
            self._report_locked()
            self._cond.notify_all()

    @contextmanager
    def processing(self, key: str) -> Iterator[str]:
        """Scope the ownership of a key obtained from :meth:`get`; ``done`` fires on every exit."""
        try:
            yield key
        finally:
            self.done(key)

    def shut_down(self) -> None:
        """Stop accepting adds and release blocked getters.

        Pending and waiting keys are discarded.  Keys in flight keep their
        marker until their worker calls :meth:`done`.
        """
        with self._cond:
            self._shutting_down = True
            self._queue.clear()
            self._dirty.clear()
            self._waiting.clear()
            self._heap.clear()
            self._report_locked()
            self._cond.notify_all()

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Wait until no key is in flight.  Returns ``False`` on timeout."""
        with self._cond:
            return self._cond.wait_for(lambda: not self._processing, timeout=timeout)

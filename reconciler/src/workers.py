from __future__ import annotations

import logging
import threading
import time
import weakref
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from reconciler.src.errors import ExhaustedRetryError, TransientHandlerError
from reconciler.src.metrics import MetricsSink, NoopMetricsSink
from reconciler.src.workqueue import SHUTDOWN, WorkQueue


class Context:
    """Cooperative cancellation token handed to every handler invocation.

    A context is cancelled when :meth:`cancel` is called on it or on any
    ancestor, or once its deadline passes.  Handlers that block should
    use :meth:`wait` instead of ``time.sleep`` so shutdown can reach them.
    """

    def __init__(self, parent: Context | None = None, timeout: float | None = None) -> None:
        self._parent = parent
        self._event = threading.Event()
        self._children: weakref.WeakSet[Context] = weakref.WeakSet()
        self._lock = threading.Lock()

        deadline = None if timeout is None else time.monotonic() + timeout
        if parent is not None and parent.deadline is not None:
            deadline = parent.deadline if deadline is None else min(deadline, parent.deadline)
        self.deadline = deadline

        if parent is not None:
            parent._register(self)

    def _register(self, child: Context) -> None:
        with self._lock:
            self._children.add(child)
            cancelled = self._event.is_set()
        if cancelled:
            child.cancel()

    def cancel(self) -> None:
        with self._lock:
            self._event.set()
            children = list(self._children)
        for child in children:
            child.cancel()

    @property
    def timed_out(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    @property
    def cancelled(self) -> bool:
        return self._event.is_set() or self.timed_out

    def wait(self, timeout: float | None = None) -> bool:
        """Sleep up to *timeout* seconds; return ``True`` early if the context is cancelled."""
        if self.deadline is not None:
            remaining = max(0.0, self.deadline - time.monotonic())
            timeout = remaining if timeout is None else min(timeout, remaining)
        self._event.wait(timeout=timeout)
        return self.cancelled

    def child(self, timeout: float | None = None) -> Context:
        return Context(parent=self, timeout=timeout)


class Handler(Protocol):
    """Reconciles one key.  Raising any exception reports a failure.

    *payload* is the latest observed object, or ``None`` when the
    resource has been deleted.  Handlers must be idempotent: the same key
    is redelivered after failures, resyncs and relists.
    """

    def handle(self, ctx: Context, key: str, payload: Any | None) -> None: ...


@dataclass(frozen=True)
class HandlerFuncs:
    """Build a :class:`Handler` from separate add/delete callables.

    ``add(ctx, payload)`` runs for present objects (adds, updates and
    resyncs alike); ``delete(ctx, key)`` runs once the object is gone.
    A missing callable turns that case into a no-op.
    """

    add: Callable[[Context, Any], None] | None = None
    delete: Callable[[Context, str], None] | None = None

    def handle(self, ctx: Context, key: str, payload: Any | None) -> None:
        if payload is None:
            if self.delete is not None:
                self.delete(ctx, key)
            return
        if self.add is not None:
            self.add(ctx, payload)


class WorkerPool:
    """Fixed set of worker threads draining a :class:`WorkQueue`.

    Each worker loops ``get -> handle -> done``.  The queue never hands
    one key to two workers, so invocations for a key are strictly
    sequential while distinct keys run in parallel.  ``done`` is issued
    through :meth:`WorkQueue.processing` so it fires on every exit path.
    """

    def __init__(
        self,
        queue: WorkQueue,
        handler: Handler,
        get_payload: Callable[[str], Any | None],
        workers: int,
        context: Context,
        processing_timeout: float | None = None,
        on_exhausted: Callable[[ExhaustedRetryError], None] | None = None,
        name: str = "controller",
        logger: logging.Logger | None = None,
        metrics: MetricsSink | None = None,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.queue = queue
        self.handler = handler
        self.get_payload = get_payload
        self.workers = workers
        self.context = context
        self.processing_timeout = processing_timeout
        self.on_exhausted = on_exhausted
        self.name = name
        self.logger = logger or logging.getLogger(__name__)
        self.metrics = metrics or NoopMetricsSink()
        self._threads: list[threading.Thread] = []
        self._busy = 0
        self._busy_lock = threading.Lock()

    @property
    def alive(self) -> int:
        return sum(1 for thread in self._threads if thread.is_alive())

    @property
    def busy(self) -> int:
        with self._busy_lock:
            return self._busy

    def start(self) -> None:
        if self._threads:
            raise RuntimeError("worker pool already started")
        for index in range(self.workers):
            thread = threading.Thread(
                target=self._run_worker,
                name=f"{self.name}-worker-{index}",
                daemon=True,
            )
            self._threads.append(thread)
            thread.start()
        self.logger.info("Started %d worker(s) for %s", self.workers, self.name)

    def join(self, timeout: float | None = None) -> bool:
        """Wait for every worker to exit.  Returns ``False`` if some are still running."""
        deadline = None if timeout is None else time.monotonic() + timeout
        for thread in self._threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(timeout=remaining)
        return self.alive == 0

    def _run_worker(self) -> None:
        while True:
            key = self.queue.get()
            if key is SHUTDOWN:
                return
            if key is None:
                continue
            with self.queue.processing(key):
                try:
                    self.process(key)
                except Exception:
                    self.logger.exception("Unexpected error processing %s", key)

    def process(self, key: str) -> None:
        """Invoke the handler for one key the caller already owns.

        The outcome is whatever the handler reports: returning after the
        context deadline passed is still a success.
        """
        payload = self.get_payload(key)
        ctx = self.context.child(timeout=self.processing_timeout)
        with self._busy_lock:
            self._busy += 1
        started = time.monotonic()
        try:
            self.handler.handle(ctx, key, payload)
        except Exception as exc:
            self.metrics.observe_handler(time.monotonic() - started, success=False)
            self._handle_failure(key, exc)
        else:
            self.metrics.observe_handler(time.monotonic() - started, success=True)
            self.queue.forget(key)
        finally:
            with self._busy_lock:
                self._busy -= 1

    def _handle_failure(self, key: str, exc: Exception) -> None:
        if self.queue.add_after_failure(key):
            self.metrics.inc_retries()
            self.logger.warning(
                "Handler failed for %s (%s); scheduling retry %d/%d",
                key,
                exc,
                self.queue.num_failures(key),
                self.queue.max_retries,
                exc_info=None if isinstance(exc, TransientHandlerError) else exc,
            )
            return

        error = ExhaustedRetryError(key, attempts=self.queue.max_retries + 1, cause=exc)
        self.metrics.inc_dropped()
        self.logger.error("%s; dropping key until its next event or resync", error, exc_info=exc)
        if self.on_exhausted is not None:
            try:
                self.on_exhausted(error)
            except Exception:
                self.logger.exception("on_exhausted hook failed for %s", key)

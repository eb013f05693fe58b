from __future__ import annotations

import enum
import logging
import threading
from collections.abc import Callable
from typing import Any

from reconciler.src.config import ControllerConfig
from reconciler.src.errors import ConstructionError, ExhaustedRetryError, SourceFatalError
from reconciler.src.events import Deleted, Event, EventSource, Retriever
from reconciler.src.metrics import MetricsSink, PrometheusMetricsSink
from reconciler.src.resync import ResyncScheduler
from reconciler.src.workers import Context, Handler, WorkerPool
from reconciler.src.workqueue import ExponentialBackoff, WorkQueue


class ControllerRunState(enum.Enum):
    CREATED = "created"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class ObjectStore:
    """Latest observed payload per key, kept only so workers can hand it to the handler."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._objects: dict[str, Any] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._objects)

    def upsert(self, key: str, payload: Any) -> None:
        with self._lock:
            self._objects[key] = payload

    def delete(self, key: str) -> None:
        with self._lock:
            self._objects.pop(key, None)

    def get(self, key: str) -> Any | None:
        with self._lock:
            return self._objects.get(key)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._objects)

    def missing_from(self, listed: set[str]) -> list[str]:
        """Return stored keys absent from a fresh full listing."""
        with self._lock:
            return [key for key in self._objects if key not in listed]


class Controller:
    """Runs one reconciliation pipeline through a single Running period.

    State machine::

        CREATED --start()--> RUNNING --stop() / source failure--> STOPPING --> STOPPED

    ``STOPPED`` is terminal: build a new instance to run again.  Stopping
    halts the event source and resync first, then shuts the queue down,
    then gives in-flight handlers ``shutdown_grace_period`` seconds to
    return before their contexts are cancelled.  Workers still stuck in a
    handler after a second grace period are left behind (they keep their
    key's in-flight marker) and the controller reports ``STOPPED``
    regardless; they cannot pick up new work because the queue is shut
    down.
    """

    def __init__(
        self,
        config: ControllerConfig | None,
        handler: Handler | None,
        retriever: Retriever | None,
        *,
        metrics: MetricsSink | None = None,
        logger: logging.Logger | None = None,
        on_exhausted: Callable[[ExhaustedRetryError], None] | None = None,
        ready: threading.Event | None = None,
    ) -> None:
        if handler is None or not callable(getattr(handler, "handle", None)):
            raise ConstructionError("a handler with a handle(ctx, key, payload) method is required")
        if retriever is None or not all(
            callable(getattr(retriever, attr, None)) for attr in ("list", "watch")
        ):
            raise ConstructionError("a retriever with list() and watch() methods is required")

        self.config = (config or ControllerConfig()).validated()
        self.handler = handler
        self.retriever = retriever
        self.logger = logger or logging.getLogger(__name__)
        self.metrics = metrics or PrometheusMetricsSink(self.config.name)
        self.ready = ready or threading.Event()
        self.ready.clear()

        self._state = ControllerRunState.CREATED
        self._state_lock = threading.Lock()
        self._halt = threading.Event()
        self._fatal = threading.Event()
        self._stopped = threading.Event()
        self._error: SourceFatalError | None = None
        self._threads: list[threading.Thread] = []

        self.store = ObjectStore()
        self.queue = WorkQueue(
            max_retries=self.config.max_retries,
            backoff=ExponentialBackoff(
                base_delay=self.config.retry_base_delay,
                max_delay=self.config.retry_max_delay,
            ),
            metrics=self.metrics,
        )
        self.context = Context()
        self.source = EventSource(
            retriever,
            emit=self._ingest,
            on_listed=self._prune,
            logger=self.logger,
            metrics=self.metrics,
        )
        self.resync: ResyncScheduler | None = None
        if not self.config.disable_resync:
            self.resync = ResyncScheduler(
                interval=self.config.resync_interval,
                list_keys=self.store.keys,
                enqueue=self.queue.requeue,
                logger=self.logger,
                metrics=self.metrics,
            )
        self.pool = WorkerPool(
            queue=self.queue,
            handler=handler,
            get_payload=self.store.get,
            workers=self.config.concurrent_workers,
            context=self.context,
            processing_timeout=self.config.processing_timeout,
            on_exhausted=on_exhausted,
            name=self.config.name,
            logger=self.logger,
            metrics=self.metrics,
        )

    @property
    def state(self) -> ControllerRunState:
        with self._state_lock:
            return self._state

    @property
    def error(self) -> SourceFatalError | None:
        return self._error

    def _ingest(self, event: Event) -> None:
        """Record the latest payload and mark the key for processing.

        A changed payload or a deletion supersedes earlier failures: the
        retry counter is reset and any backoff wait is cut short.  A relist
        re-emitting an unchanged payload is treated like a resync and keeps
        both.
        """
        if isinstance(event, Deleted):
            self.store.delete(event.key)
        else:
            previous = self.store.get(event.key)
            self.store.upsert(event.key, event.payload)
            if previous is not None and previous == event.payload:
                self.queue.requeue(event.key)
                return
        self.queue.forget(event.key)
        self.queue.add(event.key)

    def _prune(self, listed: set[str]) -> None:
        for key in self.store.missing_from(listed):
            self.logger.info("Resource %s disappeared while the watch was down", key)
            self.metrics.inc_events("deleted")
            self._ingest(Deleted(key=key))

    def _run_source(self) -> None:
        try:
            self.source.run(self._halt, listed=self.ready.set)
        except Exception as exc:
            if self._halt.is_set():
                self.logger.debug("Event source exited during shutdown: %s", exc)
                return
            if isinstance(exc, SourceFatalError):
                error = exc
            else:
                error = SourceFatalError(f"event source crashed: {exc}")
                error.__cause__ = exc
            self.logger.error("Event source failed for %s: %s", self.config.name, error)
            self._error = error
            self._fatal.set()

    def _spawn(self, target: Callable[[], None], suffix: str) -> None:
        thread = threading.Thread(target=target, name=f"{self.config.name}-{suffix}", daemon=True)
        self._threads.append(thread)
        thread.start()

    def start(self) -> None:
        """Wire the pipeline together and begin processing; returns immediately."""
        with self._state_lock:
            if self._state is not ControllerRunState.CREATED:
                raise RuntimeError(
                    f"controller {self.config.name} is {self._state.value}; "
                    "create a new instance to run again"
                )
            self._state = ControllerRunState.RUNNING

        self.logger.info(
            "Starting controller %s (workers=%d, resync=%s, max_retries=%d)",
            self.config.name,
            self.config.concurrent_workers,
            "off" if self.resync is None else f"{self.config.resync_interval}s",
            self.config.max_retries,
        )
        try:
            self.pool.start()
            if self.resync is not None:
                resync = self.resync
                self._spawn(lambda: resync.run(self._halt), "resync")
            self._spawn(self._run_source, "source")
        except Exception:
            self.logger.exception("Failed to start controller %s", self.config.name)
            self.stop()
            raise

    def stop(self, cancel_in_flight: bool = False) -> None:
        """Halt the pipeline and block until the controller is ``STOPPED``.

        With *cancel_in_flight* the handler contexts are cancelled right
        away instead of after the grace period.  Safe to call repeatedly
        and from several threads.
        """
        with self._state_lock:
            previous = self._state
            if previous is ControllerRunState.CREATED:
                self._state = ControllerRunState.STOPPED
                self._stopped.set()
                return
            if previous is ControllerRunState.RUNNING:
                self._state = ControllerRunState.STOPPING

        if previous is not ControllerRunState.RUNNING:
            if cancel_in_flight:
                self.context.cancel()
            self._stopped.wait()
            return

        grace = self.config.shutdown_grace_period
        self.logger.info("Stopping controller %s", self.config.name)
        self.ready.clear()
        self._halt.set()
        self.source.stop()
        if cancel_in_flight:
            self.context.cancel()

        for thread in self._threads:
            if thread is not threading.current_thread():
                thread.join(timeout=grace)
        self.queue.shut_down()

        if not self.pool.join(timeout=grace):
            self.logger.warning(
                "%d handler(s) still running after %.1fs; cancelling their contexts",
                self.pool.busy,
                grace,
            )
            self.context.cancel()
            if not self.pool.join(timeout=grace):
                self.logger.error(
                    "%d worker(s) ignored cancellation; stopping without them",
                    self.pool.alive,
                )

        with self._state_lock:
            self._state = ControllerRunState.STOPPED
        self._stopped.set()
        self.logger.info("Controller %s stopped", self.config.name)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until ``STOPPED``; returns ``False`` if *timeout* elapsed first."""
        return self._stopped.wait(timeout=timeout)

    def fatal(self) -> bool:
        return self._fatal.is_set()

    def run(self, stop_event: threading.Event | None = None, poll_interval: float = 0.1) -> None:
        """Start, block until *stop_event* is set or the source fails, then stop.

        Raises :class:`SourceFatalError` when the event source could not
        list resources; returns ``None`` after a requested stop.
        """
        stop = stop_event or threading.Event()
        self.start()
        try:
            while not self._fatal.wait(timeout=poll_interval):
                if stop.is_set() or self._stopped.is_set():
                    break
        finally:
            self.stop()
        if self._error is not None:
            raise self._error


def create(
    config: ControllerConfig | None,
    handler: Handler | None,
    retriever: Retriever | None,
    **kwargs: Any,
) -> Controller:
    """Build a :class:`Controller`; raises :class:`ConstructionError` on invalid input."""
    return Controller(config, handler, retriever, **kwargs)

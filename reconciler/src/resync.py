from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable

from reconciler.src.metrics import MetricsSink, NoopMetricsSink


class ResyncScheduler:
    """Re-enqueues every known key on a fixed interval.

    Watch streams can silently drop events; a periodic resync bounds how
    long a missed notification goes unnoticed.  Resync is just another
    source of adds: wire *enqueue* to :meth:`WorkQueue.requeue` so queue
    deduplication and backoff still apply.  Retry counters are left
    untouched.
    """

    def __init__(
        self,
        interval: float,
        list_keys: Callable[[], Iterable[str]],
        enqueue: Callable[[str], object],
        logger: logging.Logger | None = None,
        metrics: MetricsSink | None = None,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be > 0")
        self.interval = interval
        self.list_keys = list_keys
        self.enqueue = enqueue
        self.logger = logger or logging.getLogger(__name__)
        self.metrics = metrics or NoopMetricsSink()

    def resync_once(self) -> int:
        """Enqueue every currently known key once and return how many were enqueued."""
        keys = list(self.list_keys())
        for key in keys:
            self.enqueue(key)
        self.metrics.inc_resyncs()
        self.logger.debug("Resync enqueued %d key(s)", len(keys))
        return len(keys)

    def run(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(timeout=self.interval):
            try:
                self.resync_once()
            except Exception:
                self.logger.exception("Resync pass failed")

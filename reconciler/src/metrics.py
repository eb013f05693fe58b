from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the engine on ``/metrics``.

    Every per-pipeline collector carries a ``controller`` label so several
    controllers in one process can be told apart.
    """

    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "reconciler_queue_depth",
            "Keys currently pending in the work queue",
            ["controller"],
        )
    )
    queue_adds_total: Counter = field(
        default_factory=lambda: Counter(
            "reconciler_queue_adds_total",
            "Total keys added to the work queue, including deduplicated adds",
            ["controller"],
        )
    )
    in_flight: Gauge = field(
        default_factory=lambda: Gauge(
            "reconciler_in_flight",
            "Keys currently being processed by a worker",
            ["controller"],
        )
    )
    retries_total: Counter = field(
        default_factory=lambda: Counter(
            "reconciler_retries_total",
            "Total retries scheduled after failed handler invocations",
            ["controller"],
        )
    )
    dropped_total: Counter = field(
        default_factory=lambda: Counter(
            "reconciler_dropped_total",
            "Total keys dropped after exhausting their retry budget",
            ["controller"],
        )
    )
    handler_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "reconciler_handler_duration_seconds",
            "Seconds spent in a single handler invocation",
            ["controller", "success"],
            buckets=(0.005, 0.01, 0.05, 0.1, 0.5, 1, 2.5, 5, 10, 30, 60, float("inf")),
        )
    )
    events_total: Counter = field(
        default_factory=lambda: Counter(
            "reconciler_events_total",
            "Total events received from the resource source",
            ["controller", "kind"],
        )
    )
    relists_total: Counter = field(
        default_factory=lambda: Counter(
            "reconciler_relists_total",
            "Total full lists performed after the initial one",
            ["controller"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "reconciler_watch_errors_total",
            "Total watch streams that ended with an error",
            ["controller"],
        )
    )
    resyncs_total: Counter = field(
        default_factory=lambda: Counter(
            "reconciler_resyncs_total",
            "Total periodic resync passes",
            ["controller"],
        )
    )
    leader_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "reconciler_leader_transitions_total",
            "Total leadership state transitions",
            ["transition"],
        )
    )
    leader_state: Gauge = field(
        default_factory=lambda: Gauge(
            "reconciler_leader_state",
            "Whether this replica is currently leader (1=yes, 0=no)",
        )
    )
    leader_acquire_latency_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "reconciler_leader_acquire_latency_seconds",
            "Seconds spent waiting to acquire leadership",
            buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, float("inf")),
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "reconciler",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()


class MetricsSink(Protocol):
    """Observational hooks called by the pipeline; implementations must not raise."""

    def set_queue_depth(self, depth: int) -> None: ...

    def set_in_flight(self, count: int) -> None: ...

    def inc_queue_adds(self) -> None: ...

    def inc_retries(self) -> None: ...

    def inc_dropped(self) -> None: ...

    def observe_handler(self, seconds: float, success: bool) -> None: ...

    def inc_events(self, kind: str) -> None: ...

    def inc_relists(self) -> None: ...

    def inc_watch_errors(self) -> None: ...

    def inc_resyncs(self) -> None: ...


class NoopMetricsSink:
    def set_queue_depth(self, depth: int) -> None:
        pass

    def set_in_flight(self, count: int) -> None:
        pass

    def inc_queue_adds(self) -> None:
        pass

    def inc_retries(self) -> None:
        pass

    def inc_dropped(self) -> None:
        pass

    def observe_handler(self, seconds: float, success: bool) -> None:
        pass

    def inc_events(self, kind: str) -> None:
        pass

    def inc_relists(self) -> None:
        pass

    def inc_watch_errors(self) -> None:
        pass

    def inc_resyncs(self) -> None:
        pass


class PrometheusMetricsSink:
    """:class:`MetricsSink` that records into the process-wide :data:`METRICS` collectors."""

    def __init__(self, controller: str, metrics: ControllerMetrics = METRICS) -> None:
        self.controller = controller
        self.metrics = metrics

    def set_queue_depth(self, depth: int) -> None:
        self.metrics.queue_depth.labels(controller=self.controller).set(depth)

    def set_in_flight(self, count: int) -> None:
        self.metrics.in_flight.labels(controller=self.controller).set(count)

    def inc_queue_adds(self) -> None:
        self.metrics.queue_adds_total.labels(controller=self.controller).inc()

    def inc_retries(self) -> None:
        self.metrics.retries_total.labels(controller=self.controller).inc()

    def inc_dropped(self) -> None:
        self.metrics.dropped_total.labels(controller=self.controller).inc()

    def observe_handler(self, seconds: float, success: bool) -> None:
        self.metrics.handler_duration_seconds.labels(
            controller=self.controller, success="true" if success else "false"
        ).observe(seconds)

    def inc_events(self, kind: str) -> None:
        self.metrics.events_total.labels(controller=self.controller, kind=kind).inc()

    def inc_relists(self) -> None:
        self.metrics.relists_total.labels(controller=self.controller).inc()

    def inc_watch_errors(self) -> None:
        self.metrics.watch_errors_total.labels(controller=self.controller).inc()

    def inc_resyncs(self) -> None:
        self.metrics.resyncs_total.labels(controller=self.controller).inc()

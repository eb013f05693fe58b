from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from typing import Any, Protocol, TypeAlias

from reconciler.src.errors import SourceFatalError
from reconciler.src.metrics import MetricsSink, NoopMetricsSink


@dataclass(frozen=True)
class Added:
    key: str
    payload: Any


@dataclass(frozen=True)
class Updated:
    key: str
    payload: Any


@dataclass(frozen=True)
class Deleted:
    """The resource is gone; only its key survives."""

    key: str


Event: TypeAlias = Added | Updated | Deleted


def event_kind(event: Event) -> str:
    return type(event).__name__.lower()


def meta_namespace_key(obj: Any) -> str:
    """Return the conventional ``namespace/name`` key for an object with ``metadata``.

    Cluster-scoped objects (no namespace) are keyed by name alone.
    """
    metadata = getattr(obj, "metadata", None)
    name = getattr(metadata, "name", None)
    if not name:
        raise ValueError("object has no metadata.name")
    namespace = getattr(metadata, "namespace", None)
    if namespace:
        return f"{namespace}/{name}"
    return name


def split_key(key: str) -> tuple[str | None, str]:
    """Split a ``namespace/name`` key; the namespace is ``None`` for cluster-scoped keys."""
    namespace, separator, name = key.partition("/")
    if not separator:
        return None, key
    return namespace, name


class Retriever(Protocol):
    """List+watch capability supplied by the caller.

    ``watch`` returns a lazy, finite-until-closed iterator; it may end at
    any time (server timeout, expired version, network failure) and is
    restarted from a fresh ``list``.  Implementations may also expose a
    ``stop()`` method that interrupts a blocked ``watch`` from another
    thread.
    """

    def list(self) -> tuple[Iterable[tuple[str, Any]], str | None]: ...

    def watch(self, resource_version: str | None) -> Iterator[Event]: ...


class EventSource:
    """Turns a :class:`Retriever` into one normalized event stream.

    The loop:

    1. ``list`` the resources, emit :class:`Added` for every item and
       report the listed keys through ``on_listed`` so the caller can
       synthesize deletions for keys that disappeared meanwhile.
    2. ``watch`` from the listed ``resourceVersion`` and emit every event.
    3. When the watch ends, relist.  A watch that raised, or that closed
       within ``min_watch_seconds`` of opening, is followed by a jittered
       exponential backoff (1 s doubling up to 30 s) so a broken stream
       does not hammer the remote side.

    A failing ``list`` is not retried here; it raises
    :class:`SourceFatalError` and the owner decides what to do.  The only
    state kept is the last-seen resource version.
    """

    def __init__(
        self,
        retriever: Retriever,
        emit: Callable[[Event], None],
        on_listed: Callable[[set[str]], None] | None = None,
        logger: logging.Logger | None = None,
        metrics: MetricsSink | None = None,
        max_backoff_seconds: float = 30.0,
        min_watch_seconds: float = 1.0,
    ) -> None:
        self.retriever = retriever
        self.emit = emit
        self.on_listed = on_listed
        self.logger = logger or logging.getLogger(__name__)
        self.metrics = metrics or NoopMetricsSink()
        self.max_backoff_seconds = max_backoff_seconds
        self.min_watch_seconds = min_watch_seconds
        self._resource_version: str | None = None
        self._stop = threading.Event()

    @property
    def resource_version(self) -> str | None:
        return self._resource_version

    def stop(self) -> None:
        """Request a cooperative stop and interrupt an open watch when the retriever allows it."""
        self._stop.set()
        stop_watch = getattr(self.retriever, "stop", None)
        if callable(stop_watch):
            try:
                stop_watch()
            except Exception:
                self.logger.warning("Failed to interrupt active watch", exc_info=True)

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._stop.is_set()

    def _list(self) -> None:
        try:
            items, resource_version = self.retriever.list()
            listed: list[tuple[str, Any]] = list(items)
        except Exception as exc:
            raise SourceFatalError(f"listing resources failed: {exc}") from exc

        self._resource_version = resource_version
        keys: set[str] = set()
        for key, payload in listed:
            keys.add(key)
            self._emit(Added(key=key, payload=payload))
        if self.on_listed is not None:
            self.on_listed(keys)
        self.logger.info(
            "Listed %d resource(s) at resourceVersion %s", len(keys), resource_version
        )

    def _emit(self, event: Event) -> None:
        self.metrics.inc_events(event_kind(event))
        self.emit(event)

    def run(self, stop_event: threading.Event, listed: Callable[[], None] | None = None) -> None:
        """List then watch until *stop_event* is set.

        *listed* is called once, after the first successful list has been
        emitted.
        """
        self._stop.clear()
        self._list()
        if listed is not None:
            listed()

        backoff_seconds = 1.0
        while not self._should_stop(stop_event):
            self.logger.debug("Starting watch from resourceVersion %s", self._resource_version)
            started = time.monotonic()
            failed = False
            try:
                for event in self.retriever.watch(self._resource_version):
                    if self._should_stop(stop_event):
                        break
                    self._emit(event)
            except Exception:
                if self._should_stop(stop_event):
                    break
                failed = True
                self.logger.exception("Watch stream failed")
                self.metrics.inc_watch_errors()

            if self._should_stop(stop_event):
                break
            # Streams that fail, or close as soon as they open, back off before relisting.
            if failed or time.monotonic() - started < self.min_watch_seconds:
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop_event.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, self.max_backoff_seconds)
            else:
                backoff_seconds = 1.0

            if self._should_stop(stop_event):
                break
            self.logger.warning("Watch stream ended, re-listing")
            self.metrics.inc_relists()
            self._list()

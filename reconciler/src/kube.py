from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from typing import Any

from kubernetes import client, config, watch
from kubernetes.client import ApiException, CoordinationV1Api, CoreV1Api
from kubernetes.config.config_exception import ConfigException

from reconciler.src.events import Added, Deleted, Event, Updated, meta_namespace_key

LOGGER = logging.getLogger(__name__)


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, CoordinationV1Api]:
    """Return CoreV1 and CoordinationV1 API clients using the active kube configuration."""
    return client.CoreV1Api(), client.CoordinationV1Api()


class KubeRetriever:
    """List+watch retriever over any ``list_*`` method of a generated Kubernetes API client.

    ``list_func`` must be the bound client method itself (for example
    ``core_api.list_namespaced_pod``): ``kubernetes.watch.Watch`` reads
    its docstring to deserialize watch objects, so wrappers such as
    ``functools.partial`` do not work.  Extra keyword arguments
    (``namespace``, ``label_selector``...) are passed to both list and
    watch calls.

    A ``410 Gone`` (compacted resource version) ends the watch quietly so
    the event source relists; any other API error propagates.
    """

    def __init__(
        self,
        list_func: Callable[..., Any],
        key_func: Callable[[Any], str] = meta_namespace_key,
        watch_timeout_seconds: int = 300,
        **list_kwargs: Any,
    ) -> None:
        self.list_func = list_func
        self.key_func = key_func
        self.watch_timeout_seconds = watch_timeout_seconds
        self.list_kwargs = list_kwargs
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def list(self) -> tuple[list[tuple[str, Any]], str | None]:
        result = self.list_func(**self.list_kwargs)
        items = getattr(result, "items", None) or []
        resource_version = getattr(getattr(result, "metadata", None), "resource_version", None)
        return [(self.key_func(item), item) for item in items], resource_version

    def _to_event(self, event_type: str, obj: Any) -> Event | None:
        key = self.key_func(obj)
        if event_type == "ADDED":
            return Added(key=key, payload=obj)
        if event_type == "MODIFIED":
            return Updated(key=key, payload=obj)
        if event_type == "DELETED":
            return Deleted(key=key)
        return None

    def watch(self, resource_version: str | None) -> Iterator[Event]:
        watcher = watch.Watch()
        with self._watcher_lock:
            self._active_watcher = watcher
        try:
            stream = watcher.stream(
                self.list_func,
                resource_version=resource_version,
                timeout_seconds=self.watch_timeout_seconds,
                **self.list_kwargs,
            )
            for raw in stream:
                event_type = str(raw.get("type", ""))
                if event_type == "ERROR":
                    LOGGER.warning("Watch returned an error event: %s", raw.get("raw_object"))
                    return
                obj = raw.get("object")
                if obj is None:
                    continue
                event = self._to_event(event_type, obj)
                if event is not None:
                    yield event
        except ApiException as exc:
            # 410 Gone: the server compacted past our resourceVersion.
            if exc.status == 410:
                LOGGER.warning("Watch resource version %s expired", resource_version)
                return
            raise
        finally:
            watcher.stop()
            with self._watcher_lock:
                if self._active_watcher is watcher:
                    self._active_watcher = None

    def stop(self) -> None:
        """Interrupt the open watch stream, if any, from another thread."""
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

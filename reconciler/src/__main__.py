from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading
from typing import Any

from reconciler.src.config import ControllerConfig, env_int, load_config, parse_bool
from reconciler.src.controller import Controller, create
from reconciler.src.errors import SourceFatalError
from reconciler.src.health import start_health_server
from reconciler.src.kube import KubeRetriever, build_clients, load_kube_configuration
from reconciler.src.metrics import METRICS
from reconciler.src.workers import Context, HandlerFuncs

RUNTIME_VERSION = "0.1.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level_name: str) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, level_name.upper(), logging.INFO))


def build_pod_handler(sleep_seconds: float, logger: logging.Logger) -> HandlerFuncs:
    """Handler that logs every pod it sees, pausing *sleep_seconds* to simulate work."""

    def on_pod(ctx: Context, pod: Any) -> None:
        if ctx.wait(sleep_seconds):
            return
        metadata = pod.metadata
        logger.info("Pod added: %s/%s", metadata.namespace, metadata.name)

    def on_pod_deleted(ctx: Context, key: str) -> None:
        if ctx.wait(sleep_seconds):
            return
        logger.info("Pod deleted: %s", key)

    return HandlerFuncs(add=on_pod, delete=on_pod_deleted)


def build_pod_retriever(core_api: Any, namespace: str) -> KubeRetriever:
    if namespace:
        return KubeRetriever(core_api.list_namespaced_pod, namespace=namespace)
    return KubeRetriever(core_api.list_pod_for_all_namespaces)


def main() -> None:
    """Entrypoint: configure logging, build the pod controller and run it, optionally behind leader election."""
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))
    logger = logging.getLogger(__name__)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    config: ControllerConfig = load_config()
    sleep_seconds = env_int("HANDLER_SLEEP_MS", 25, minimum=0) / 1000
    namespace = os.getenv("WATCH_NAMESPACE", "")

    load_kube_configuration()
    core_api, coordination_api = build_clients()
    handler = build_pod_handler(sleep_seconds, logging.getLogger("reconciler.pods"))

    ready = threading.Event()

    def controller_factory() -> Controller:
        return create(
            config,
            handler,
            build_pod_retriever(core_api, namespace),
            ready=ready,
        )

    leader_election_enabled = parse_bool(os.getenv("LEADER_ELECTION_ENABLED"), default=True)
    leader_ready = threading.Event() if leader_election_enabled else None
    health_port = env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535)
    health_server = start_health_server(ready=ready, port=health_port, leader=leader_ready)

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    exit_code = 0
    try:
        if leader_election_enabled:
            from reconciler.src.leader import LeadershipGate, LeaseLeaderElector, default_identity

            retry_period_seconds = env_int("LEADER_ELECTION_RETRY_PERIOD_SECONDS", 2, minimum=1)
            elector = LeaseLeaderElector(
                coordination_api=coordination_api,
                namespace=os.getenv("LEADER_ELECTION_NAMESPACE", namespace or "default"),
                lease_name=os.getenv("LEADER_ELECTION_LEASE_NAME", f"{config.name}-leader"),
                identity=os.getenv("LEADER_ELECTION_IDENTITY", default_identity()),
                lease_duration_seconds=env_int(
                    "LEADER_ELECTION_LEASE_DURATION_SECONDS", 15, minimum=1
                ),
                renew_deadline_seconds=env_int(
                    "LEADER_ELECTION_RENEW_DEADLINE_SECONDS", 10, minimum=1
                ),
                retry_period_seconds=retry_period_seconds,
            )
            gate = LeadershipGate(
                elector,
                controller_factory,
                retry_period=retry_period_seconds,
                leader_event=leader_ready,
            )
            gate.run(shutdown_event)
        else:
            controller_factory().run(shutdown_event)
    except SourceFatalError:
        logger.exception("Controller stopped after a fatal resource source error")
        exit_code = 1
    finally:
        health_server.shutdown()

    logger.info("Controller stopped")
    if exit_code:
        raise SystemExit(exit_code)


if __name__ == "__main__":
    main()

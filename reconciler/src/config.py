from __future__ import annotations

import dataclasses
import os
from collections.abc import Mapping
from dataclasses import dataclass

from reconciler.src.errors import ConfigError

DEFAULT_CONCURRENT_WORKERS = 3
DEFAULT_RESYNC_INTERVAL_SECONDS = 180.0
DEFAULT_MAX_RETRIES = 3


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration passed at construction time.

    Attributes:
        name:                  Controller name, used as the metrics label and in logs.
        concurrent_workers:    Number of worker threads draining the queue.
        resync_interval:       Seconds between full re-enqueues of every known key.
        max_retries:           Failed attempts retried per key before it is dropped.
        processing_timeout:    Optional per-invocation deadline on the handler context.
                               Cooperative only: the context is cancelled when it
                               passes, but a handler that still returns normally
                               counts as a success.
        retry_base_delay:      First backoff delay in seconds after a failure.
        retry_max_delay:       Upper bound for the per-key backoff delay.
        shutdown_grace_period: Seconds ``stop()`` waits for workers before cancelling them.
        disable_resync:        Turn the periodic resync off entirely.
    """

    name: str = "controller"
    concurrent_workers: int = DEFAULT_CONCURRENT_WORKERS
    resync_interval: float = DEFAULT_RESYNC_INTERVAL_SECONDS
    max_retries: int = DEFAULT_MAX_RETRIES
    processing_timeout: float | None = None
    retry_base_delay: float = 0.005
    retry_max_delay: float = 1000.0
    shutdown_grace_period: float = 30.0
    disable_resync: bool = False

    def validated(self) -> ControllerConfig:
        """Return a copy with coercions applied, or raise :class:`ConfigError`.

        ``concurrent_workers`` below one is coerced to one rather than
        rejected; every other out-of-range value is an error.
        """
        if not self.name.strip():
            raise ConfigError("name must be a non-empty string")
        if self.max_retries < 0:
            raise ConfigError(f"max_retries must be >= 0, got: {self.max_retries}")
        if self.resync_interval <= 0:
            raise ConfigError(f"resync_interval must be > 0, got: {self.resync_interval}")
        if self.processing_timeout is not None and self.processing_timeout <= 0:
            raise ConfigError(
                f"processing_timeout must be > 0 when set, got: {self.processing_timeout}"
            )
        if self.retry_base_delay <= 0:
            raise ConfigError(f"retry_base_delay must be > 0, got: {self.retry_base_delay}")
        if self.retry_max_delay < self.retry_base_delay:
            raise ConfigError("retry_max_delay must be >= retry_base_delay")
        if self.shutdown_grace_period < 0:
            raise ConfigError(
                f"shutdown_grace_period must be >= 0, got: {self.shutdown_grace_period}"
            )
        if self.concurrent_workers < 1:
            return dataclasses.replace(self, concurrent_workers=1)
        return self


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def env_float(
    name: str,
    default: float | None,
    *,
    minimum: float | None = None,
    env: Mapping[str, str] | None = None,
) -> float | None:
    """Read a float (seconds) from the environment; an empty value means ``default``."""
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number") from exc
    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    return value


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Build a validated :class:`ControllerConfig` from environment variables.

    Environment variables (with defaults):
        ``CONTROLLER_NAME``               metrics/log name (``controller``).
        ``CONCURRENT_WORKERS``            worker threads (``3``).
        ``RESYNC_INTERVAL_SECONDS``       full resync period (``180``).
        ``MAX_RETRIES``                   retries per key (``3``).
        ``PROCESSING_TIMEOUT_SECONDS``    handler deadline (unset).
        ``RETRY_BASE_DELAY_SECONDS``      first backoff delay (``0.005``).
        ``RETRY_MAX_DELAY_SECONDS``       backoff cap (``1000``).
        ``SHUTDOWN_GRACE_PERIOD_SECONDS`` drain window on stop (``30``).
        ``DISABLE_RESYNC``                turn resync off (``false``).
    """
    values = env if env is not None else os.environ
    defaults = ControllerConfig()

    config = ControllerConfig(
        name=values.get("CONTROLLER_NAME", defaults.name),
        concurrent_workers=env_int(
            "CONCURRENT_WORKERS", defaults.concurrent_workers, env=values
        ),
        resync_interval=env_float(
            "RESYNC_INTERVAL_SECONDS", defaults.resync_interval, env=values
        ),
        max_retries=env_int("MAX_RETRIES", defaults.max_retries, minimum=0, env=values),
        processing_timeout=env_float("PROCESSING_TIMEOUT_SECONDS", None, env=values),
        retry_base_delay=env_float(
            "RETRY_BASE_DELAY_SECONDS", defaults.retry_base_delay, env=values
        ),
        retry_max_delay=env_float(
            "RETRY_MAX_DELAY_SECONDS", defaults.retry_max_delay, env=values
        ),
        shutdown_grace_period=env_float(
            "SHUTDOWN_GRACE_PERIOD_SECONDS", defaults.shutdown_grace_period, minimum=0, env=values
        ),
        disable_resync=parse_bool(values.get("DISABLE_RESYNC")),
    )
    return config.validated()

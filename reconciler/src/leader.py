from __future__ import annotations

import enum
import logging
import os
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Protocol

from kubernetes.client import CoordinationV1Api, V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from reconciler.src.metrics import METRICS

if TYPE_CHECKING:
    from reconciler.src.controller import Controller

LOGGER = logging.getLogger(__name__)


class LeaderElector(Protocol):
    """External election primitive consumed by :class:`LeadershipGate`."""

    def try_acquire(self) -> bool: ...

    def on_loss(self, callback: Callable[[], None]) -> None: ...

    def release(self) -> None: ...


class LeaseLeaderElector:
    """Lease-based leader election using the ``coordination.k8s.io/v1`` Lease API.

    The acquire algorithm (one cycle per :meth:`try_acquire` call):

    1. Read the Lease.  If it does not exist, create it and become leader.
    2. If *we* are the holder, renew it (update ``renewTime``).
    3. If another identity holds it, take over only once
       ``renewTime + leaseDurationSeconds`` has passed.
    4. On ``409 Conflict`` (concurrent update) give up for this cycle.

    Once acquired, a background thread renews the Lease every
    ``retry_period_seconds``.  If renewal keeps failing for
    ``renew_deadline_seconds`` the loss callbacks fire so the pipeline can
    be torn down before another replica's takeover window opens.

    All timestamps use UTC to avoid timezone ambiguity across nodes.
    """

    def __init__(
        self,
        coordination_api: CoordinationV1Api,
        namespace: str,
        lease_name: str,
        identity: str,
        lease_duration_seconds: int = 15,
        renew_deadline_seconds: int = 10,
        retry_period_seconds: int = 2,
    ) -> None:
        if lease_duration_seconds < 1:
            raise ValueError("lease_duration_seconds must be >= 1")
        if renew_deadline_seconds < 1:
            raise ValueError("renew_deadline_seconds must be >= 1")
        if retry_period_seconds < 0:
            raise ValueError("retry_period_seconds must be >= 0")
        if renew_deadline_seconds >= lease_duration_seconds:
            raise ValueError("renew_deadline_seconds must be smaller than lease_duration_seconds")
        if retry_period_seconds >= renew_deadline_seconds:
            raise ValueError("retry_period_seconds must be smaller than renew_deadline_seconds")

        self.coordination_api = coordination_api
        self.namespace = namespace
        self.lease_name = lease_name
        self.identity = identity
        self.lease_duration_seconds = lease_duration_seconds
        self.renew_deadline_seconds = renew_deadline_seconds
        self.retry_period_seconds = retry_period_seconds
        self._is_leader = False
        self._lock = threading.Lock()
        self._loss_callbacks: list[Callable[[], None]] = []
        self._renew_stop = threading.Event()
        self._renew_thread: threading.Thread | None = None
        self._acquire_wait_started = time.monotonic()
        METRICS.leader_state.set(0)

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    def _now_utc(self) -> datetime:
        return datetime.now(UTC)

    def _try_acquire_or_renew(self) -> bool:
        """Attempt a single acquire-or-renew cycle.  Returns True on success."""
        now = self._now_utc()
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name,
                namespace=self.namespace,
            )
        except ApiException as exc:
            if exc.status == 404:
                return self._create_lease(now)
            LOGGER.warning("Failed to read lease %s: %s", self.lease_name, exc.reason)
            return False

        spec = lease.spec
        if spec is None:
            return self._update_lease(lease, now)

        if spec.holder_identity == self.identity:
            return self._update_lease(lease, now)

        renew_time = spec.renew_time
        duration = spec.lease_duration_seconds or self.lease_duration_seconds
        if spec.holder_identity and renew_time is not None:
            renew_aware = renew_time if renew_time.tzinfo else renew_time.replace(tzinfo=UTC)
            if (now - renew_aware).total_seconds() < duration:
                return False

        return self._update_lease(lease, now)

    def _create_lease(self, now: datetime) -> bool:
        lease = V1Lease(
            metadata=V1ObjectMeta(name=self.lease_name, namespace=self.namespace),
            spec=V1LeaseSpec(
                holder_identity=self.identity,
                lease_duration_seconds=self.lease_duration_seconds,
                acquire_time=now,
                renew_time=now,
            ),
        )
        try:
            self.coordination_api.create_namespaced_lease(namespace=self.namespace, body=lease)
            return True
        except ApiException as exc:
            if exc.status == 409:
                LOGGER.debug("Lease %s already exists, will retry", self.lease_name)
                return False
            LOGGER.warning("Failed to create lease %s: %s", self.lease_name, exc.reason)
            return False

    def _update_lease(self, lease: V1Lease, now: datetime) -> bool:
        """Renew our Lease or take it over; ``acquireTime`` moves only on takeover."""
        if lease.spec is None:
            lease.spec = V1LeaseSpec()
        previous_holder = lease.spec.holder_identity
        lease.spec.holder_identity = self.identity
        lease.spec.renew_time = now
        lease.spec.lease_duration_seconds = self.lease_duration_seconds
        if lease.spec.acquire_time is None or previous_holder != self.identity:
            lease.spec.acquire_time = now
        try:
            self.coordination_api.replace_namespaced_lease(
                name=self.lease_name,
                namespace=self.namespace,
                body=lease,
            )
            return True
        except ApiException as exc:
            if exc.status == 409:
                LOGGER.debug("Lease %s update conflict, will retry", self.lease_name)
                return False
            LOGGER.warning("Failed to update lease %s: %s", self.lease_name, exc.reason)
            return False

    def _release_lease(self) -> None:
        """Clear holderIdentity on the Lease to allow immediate takeover."""
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name, namespace=self.namespace
            )
            if lease.spec and lease.spec.holder_identity == self.identity:
                lease.spec.holder_identity = None
                self.coordination_api.replace_namespaced_lease(
                    name=self.lease_name, namespace=self.namespace, body=lease
                )
                LOGGER.info("Released leader lease %s", self.lease_name)
        except Exception:
            LOGGER.warning("Failed to release leader lease %s", self.lease_name, exc_info=True)

    def on_loss(self, callback: Callable[[], None]) -> None:
        with self._lock:
            self._loss_callbacks.append(callback)

    def try_acquire(self) -> bool:
        """Run one acquire cycle; on success start renewing in the background."""
        with self._lock:
            if self._is_leader:
                return True
            try:
                acquired = self._try_acquire_or_renew()
            except Exception:
                LOGGER.exception("Unexpected error acquiring lease %s", self.lease_name)
                acquired = False
            if not acquired:
                return False

            self._is_leader = True
            acquired_at = time.monotonic()
            LOGGER.info("Became leader for lease %s (identity=%s)", self.lease_name, self.identity)
            METRICS.leader_state.set(1)
            METRICS.leader_transitions_total.labels(transition="acquired").inc()
            METRICS.leader_acquire_latency_seconds.observe(
                acquired_at - self._acquire_wait_started
            )

            self._renew_stop = threading.Event()
            self._renew_thread = threading.Thread(
                target=self._renew_loop,
                args=(self._renew_stop, acquired_at),
                name=f"lease-renew-{self.lease_name}",
                daemon=True,
            )
            self._renew_thread.start()
            return True

    def _renew_loop(self, stop: threading.Event, last_renew_success: float) -> None:
        while not stop.wait(timeout=self.retry_period_seconds):
            try:
                renewed = self._try_acquire_or_renew()
            except Exception:
                LOGGER.exception("Unexpected error renewing lease %s", self.lease_name)
                renewed = False
            if renewed:
                last_renew_success = time.monotonic()
                continue

            elapsed = time.monotonic() - last_renew_success
            if elapsed < self.renew_deadline_seconds:
                LOGGER.warning(
                    "Lease renewal failed; holding leadership for up to %ss (elapsed %.2fs)",
                    self.renew_deadline_seconds,
                    elapsed,
                )
                continue

            with self._lock:
                if stop.is_set() or not self._is_leader:
                    return
                self._mark_lost()
                callbacks = list(self._loss_callbacks)
            LOGGER.warning("Lost leader lease after %.2fs without successful renewal", elapsed)
            for callback in callbacks:
                try:
                    callback()
                except Exception:
                    LOGGER.exception("Leadership loss callback failed")
            return

    def _mark_lost(self) -> None:
        self._is_leader = False
        self._acquire_wait_started = time.monotonic()
        METRICS.leader_state.set(0)
        METRICS.leader_transitions_total.labels(transition="lost").inc()

    def release(self) -> None:
        """Stop renewing and, if still holding the Lease, hand it back."""
        with self._lock:
            self._renew_stop.set()
            renew_thread = self._renew_thread
            self._renew_thread = None
            was_leader = self._is_leader
            if was_leader:
                self._mark_lost()
        if renew_thread is not None and renew_thread is not threading.current_thread():
            renew_thread.join(timeout=self.renew_deadline_seconds)
        if was_leader:
            self._release_lease()


def default_identity() -> str:
    """Return a unique identity for this replica, defaulting to the pod name.

    In Kubernetes the ``HOSTNAME`` env var is set to the pod name by the
    downward API, giving each replica a stable identity for lease ownership.
    """
    return os.getenv("HOSTNAME", os.getenv("POD_NAME", "unknown"))


class LeadershipState(enum.Enum):
    UNKNOWN = "unknown"
    LEADER = "leader"
    FOLLOWER = "follower"


class LeadershipGate:
    """Runs a controller only while this process holds leadership.

    Every acquisition starts a fresh :class:`Controller` from
    *controller_factory* (a stopped controller cannot be restarted).  On
    loss the controller is stopped with in-flight cancellation and waited
    for, and only then is the election primitive released, so the next
    leader never overlaps with this one.
    """

    def __init__(
        self,
        elector: LeaderElector,
        controller_factory: Callable[[], Controller],
        retry_period: float = 2.0,
        reacquire: bool = True,
        leader_event: threading.Event | None = None,
        poll_interval: float = 0.1,
        logger: logging.Logger | None = None,
    ) -> None:
        self.elector = elector
        self.controller_factory = controller_factory
        self.retry_period = retry_period
        self.reacquire = reacquire
        self.leader_event = leader_event
        self.poll_interval = poll_interval
        self.logger = logger or LOGGER
        self._state = LeadershipState.UNKNOWN
        self._lost = threading.Event()
        self._controller: Controller | None = None
        self.terms = 0
        elector.on_loss(self._on_loss)

    @property
    def state(self) -> LeadershipState:
        return self._state

    @property
    def controller(self) -> Controller | None:
        return self._controller

    def _on_loss(self) -> None:
        self.logger.warning("Leadership lost; stopping the running controller")
        self._lost.set()

    def _set_state(self, state: LeadershipState) -> None:
        if state is not self._state:
            self.logger.info("Leadership state %s -> %s", self._state.value, state.value)
        self._state = state
        if self.leader_event is not None:
            if state is LeadershipState.LEADER:
                self.leader_event.set()
            else:
                self.leader_event.clear()

    def _lead(self, stop_event: threading.Event) -> bool:
        """Run one Running period; returns ``True`` if it ended because leadership was lost."""
        controller = self.controller_factory()
        self._controller = controller
        self.terms += 1
        lost = False
        controller.start()
        try:
            while True:
                if self._lost.wait(timeout=self.poll_interval):
                    lost = True
                    break
                if stop_event.is_set() or controller.fatal() or controller.wait(timeout=0):
                    break
        finally:
            controller.stop(cancel_in_flight=lost)
        if controller.error is not None:
            raise controller.error
        return lost

    def run(self, stop_event: threading.Event) -> None:
        """Campaign for leadership and run the controller while leading, until *stop_event*.

        Raises the controller's :class:`SourceFatalError` after releasing
        leadership if a Running period fails.
        """
        while not stop_event.is_set():
            self._lost.clear()
            if not self.elector.try_acquire():
                self._set_state(LeadershipState.FOLLOWER)
                stop_event.wait(timeout=self.retry_period)
                continue

            self._set_state(LeadershipState.LEADER)
            try:
                lost = self._lead(stop_event)
            finally:
                self._set_state(LeadershipState.FOLLOWER)
                self.elector.release()
            if not lost or not self.reacquire:
                break

from __future__ import annotations

import random
import threading
import time
from collections import Counter
from unittest.mock import MagicMock

import pytest

from reconciler.src.workqueue import SHUTDOWN, ExponentialBackoff, QueueItem, WorkQueue


def _fast_queue(max_retries: int = 3, delay: float = 0.001) -> WorkQueue:
    return WorkQueue(max_retries=max_retries, backoff=ExponentialBackoff(delay, delay))


# ---------------------------------------------------------------------------
# Deduplication
# ---------------------------------------------------------------------------


def test_repeated_adds_of_pending_key_leave_one_entry() -> None:
    queue = WorkQueue()

    for _ in range(5):
        queue.add("default/a")

    assert len(queue) == 1
    assert queue.get(timeout=0.1) == "default/a"
    assert queue.get(timeout=0.05) is None


def test_key_added_while_in_flight_is_not_handed_out_twice() -> None:
    queue = WorkQueue()
    queue.add("default/a")
    key = queue.get(timeout=0.1)

    queue.add("default/a")
    queue.add("default/a")

    assert queue.get(timeout=0.05) is None
    queue.done(key)
    assert queue.get(timeout=0.5) == "default/a"
    queue.done("default/a")
    assert queue.get(timeout=0.05) is None


def test_done_without_new_add_does_not_requeue() -> None:
    queue = WorkQueue()
    queue.add("default/a")
    queue.done(queue.get(timeout=0.1))

    assert len(queue) == 0
    assert queue.in_flight == 0


def test_distinct_keys_are_served_in_fifo_order() -> None:
    queue = WorkQueue()
    for key in ("a", "b", "c", "a"):
        queue.add(key)

    assert [queue.get(timeout=0.1) for _ in range(3)] == ["a", "b", "c"]


def test_done_rejects_key_that_is_not_in_flight() -> None:
    queue = WorkQueue()

    with pytest.raises(ValueError, match="not in flight"):
        queue.done("default/a")


def test_processing_scope_calls_done_on_error() -> None:
    queue = WorkQueue()
    queue.add("default/a")
    key = queue.get(timeout=0.1)

    with pytest.raises(RuntimeError), queue.processing(key):
        assert queue.is_in_flight("default/a")
        raise RuntimeError("handler blew up")

    assert queue.in_flight == 0
    queue.add("default/a")
    assert queue.get(timeout=0.1) == "default/a"


# ---------------------------------------------------------------------------
# Backoff and retries
# ---------------------------------------------------------------------------


def test_exponential_backoff_doubles_and_caps() -> None:
    backoff = ExponentialBackoff(base_delay=0.01, max_delay=1.0)

    assert backoff.delay(0) == pytest.approx(0.01)
    assert backoff.delay(1) == pytest.approx(0.02)
    assert backoff.delay(3) == pytest.approx(0.08)
    assert backoff.delay(20) == 1.0
    assert backoff.delay(10_000) == 1.0


def test_exponential_backoff_rejects_invalid_bounds() -> None:
    with pytest.raises(ValueError):
        ExponentialBackoff(base_delay=0)
    with pytest.raises(ValueError):
        ExponentialBackoff(base_delay=2.0, max_delay=1.0)


def test_add_after_failure_respects_retry_budget() -> None:
    queue = _fast_queue(max_retries=2)
    queue.add("default/a")
    key = queue.get(timeout=0.1)

    assert queue.add_after_failure(key) is True
    assert queue.num_failures(key) == 1
    assert queue.add_after_failure(key) is True
    assert queue.num_failures(key) == 2
    assert queue.add_after_failure(key) is False
    assert queue.num_failures(key) == 0


def test_zero_retries_drops_on_first_failure() -> None:
    queue = _fast_queue(max_retries=0)

    assert queue.add_after_failure("default/a") is False
    assert len(queue) == 0


def test_failed_key_becomes_ready_after_backoff() -> None:
    queue = WorkQueue(max_retries=3, backoff=ExponentialBackoff(0.1, 0.1))
    queue.add("default/a")
    key = queue.get(timeout=0.1)
    queue.add_after_failure(key)
    queue.done(key)

    assert queue.is_waiting("default/a")
    assert queue.get(timeout=0.02) is None
    assert queue.get(timeout=1.0) == "default/a"


def test_forget_clears_failure_history() -> None:
    queue = _fast_queue()
    queue.add_after_failure("default/a")

    queue.forget("default/a")

    assert queue.num_failures("default/a") == 0


def test_add_after_delays_key() -> None:
    queue = WorkQueue()
    started = time.monotonic()
    queue.add_after("default/a", 0.15)

    assert queue.get(timeout=1.0) == "default/a"
    assert time.monotonic() - started >= 0.14


def test_add_after_keeps_earliest_deadline() -> None:
    queue = WorkQueue()
    queue.add_after("default/a", 10)
    queue.add_after("default/a", 0.05)
    queue.add_after("default/a", 20)

    assert len(queue) == 1
    assert queue.get(timeout=1.0) == "default/a"


def test_direct_add_supersedes_waiting_item() -> None:
    queue = WorkQueue()
    queue.add_after("default/a", 10)

    queue.add("default/a")

    assert not queue.is_waiting("default/a")
    assert queue.get(timeout=0.1) == "default/a"
    queue.done("default/a")
    assert len(queue) == 0
    assert queue.get(timeout=0.05) is None


def test_add_after_is_noop_for_pending_key() -> None:
    queue = WorkQueue()
    queue.add("default/a")

    queue.add_after("default/a", 10)

    assert not queue.is_waiting("default/a")
    assert len(queue) == 1


def test_non_positive_delay_adds_immediately() -> None:
    queue = WorkQueue()

    queue.add_after("default/a", 0)

    assert queue.get(timeout=0.05) == "default/a"


def test_queue_items_order_by_readiness() -> None:
    later = QueueItem(not_before=2.0, seq=0, key="b")
    sooner = QueueItem(not_before=1.0, seq=1, key="a")
    tie = QueueItem(not_before=1.0, seq=2, key="c")

    assert sorted([later, tie, sooner]) == [sooner, tie, later]


# ---------------------------------------------------------------------------
# Shutdown
# ---------------------------------------------------------------------------


def test_shutdown_releases_blocked_getters() -> None:
    queue = WorkQueue()
    results: list[object] = []

    def consumer() -> None:
        results.append(queue.get())

    threads = [threading.Thread(target=consumer) for _ in range(3)]
    for thread in threads:
        thread.start()
    time.sleep(0.05)

    queue.shut_down()
    for thread in threads:
        thread.join(timeout=2)

    assert results == [SHUTDOWN, SHUTDOWN, SHUTDOWN]
    assert not SHUTDOWN


def test_shutdown_discards_pending_and_rejects_new_adds() -> None:
    queue = WorkQueue()
    queue.add("default/a")
    queue.add_after("default/b", 10)

    queue.shut_down()
    queue.add("default/c")
    queue.add_after("default/d", 0.01)

    assert queue.shutting_down
    assert len(queue) == 0
    assert queue.get(timeout=0.05) is SHUTDOWN


def test_in_flight_marker_survives_shutdown_until_done() -> None:
    queue = WorkQueue()
    queue.add("default/a")
    key = queue.get(timeout=0.1)
    queue.add("default/a")

    queue.shut_down()

    assert queue.is_in_flight("default/a")
    assert queue.wait_idle(timeout=0.01) is False
    queue.done(key)
    assert queue.in_flight == 0
    assert queue.wait_idle(timeout=0.01) is True
    assert queue.get() is SHUTDOWN


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


def test_no_key_is_held_by_two_consumers_at_once() -> None:
    queue = _fast_queue()
    keys = [f"default/item-{i}" for i in range(5)]
    lock = threading.Lock()
    active: Counter[str] = Counter()
    max_seen: Counter[str] = Counter()
    processed = 0

    def consumer() -> None:
        nonlocal processed
        while True:
            key = queue.get()
            if key is SHUTDOWN:
                return
            with queue.processing(key):
                with lock:
                    active[key] += 1
                    max_seen[key] = max(max_seen[key], active[key])
                time.sleep(random.uniform(0, 0.002))  # noqa: S311
                with lock:
                    active[key] -= 1
                    processed += 1

    consumers = [threading.Thread(target=consumer) for _ in range(4)]
    for thread in consumers:
        thread.start()

    for _ in range(400):
        queue.add(random.choice(keys))  # noqa: S311
        if random.random() < 0.3:  # noqa: S311
            time.sleep(0.0005)

    deadline = time.monotonic() + 5
    while (len(queue) or queue.in_flight) and time.monotonic() < deadline:
        time.sleep(0.01)
    queue.shut_down()
    for thread in consumers:
        thread.join(timeout=2)

    assert processed > 0
    assert all(count == 1 for count in max_seen.values())


def test_reports_depth_to_metrics_sink() -> None:
    sink = MagicMock()
    queue = WorkQueue(metrics=sink)

    queue.add("default/a")
    queue.add("default/a")

    assert sink.inc_queue_adds.call_count == 2
    sink.set_queue_depth.assert_called_with(1)


def test_requeue_adds_idle_key_once() -> None:
    queue = WorkQueue()

    assert queue.requeue("default/a") is True
    assert queue.requeue("default/a") is True
    assert len(queue) == 1


def test_requeue_leaves_waiting_and_in_flight_keys_alone() -> None:
    queue = WorkQueue()
    queue.add_after("default/waiting", 10)
    queue.add("default/busy")
    busy = queue.get(timeout=0.1)

    assert queue.requeue("default/waiting") is False
    assert queue.requeue("default/busy") is False
    assert queue.is_waiting("default/waiting")
    queue.done(busy)
    assert queue.get(timeout=0.05) is None


def test_depth_metric_counts_keys_waiting_out_backoff() -> None:
    sink = MagicMock()
    queue = WorkQueue(metrics=sink)
    queue.add("default/ready")

    queue.add_after("default/later", 10)

    sink.set_queue_depth.assert_called_with(2)
    assert len(queue) == 2


def test_depth_metric_drops_superseded_wait_for_in_flight_key() -> None:
    sink = MagicMock()
    queue = WorkQueue(metrics=sink, backoff=ExponentialBackoff(10.0, 10.0))
    queue.add("default/a")
    key = queue.get(timeout=0.1)
    queue.add_after_failure(key)
    sink.set_queue_depth.assert_called_with(1)

    queue.add(key)

    sink.set_queue_depth.assert_called_with(0)
    assert len(queue) == 0
    queue.done(key)
    assert queue.get(timeout=0.1) == "default/a"

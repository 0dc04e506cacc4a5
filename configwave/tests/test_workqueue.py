from __future__ import annotations

import threading

import pytest

from configwave.src.workqueue import WorkQueue


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def test_duplicate_adds_collapse_into_one_entry() -> None:
    queue: WorkQueue[str] = WorkQueue()

    queue.add("a")
    queue.add("a")
    queue.add("b")

    assert len(queue) == 2
    assert queue.get(timeout=0) == "a"
    assert queue.get(timeout=0) == "b"
    assert queue.get(timeout=0) is None


def test_key_being_processed_is_not_handed_out_twice() -> None:
    queue: WorkQueue[str] = WorkQueue()
    queue.add("a")
    assert queue.get(timeout=0) == "a"

    queue.add("a")

    assert len(queue) == 0
    assert queue.get(timeout=0) is None


def test_add_during_processing_is_replayed_on_done() -> None:
    queue: WorkQueue[str] = WorkQueue()
    queue.add("a")
    key = queue.get(timeout=0)
    queue.add("a")

    queue.done(key)

    assert queue.get(timeout=0) == "a"


def test_done_without_new_add_does_not_requeue() -> None:
    queue: WorkQueue[str] = WorkQueue()
    queue.add("a")
    queue.done(queue.get(timeout=0))

    assert queue.get(timeout=0) is None


def test_rate_limited_delay_doubles_and_caps() -> None:
    clock = FakeClock()
    queue: WorkQueue[str] = WorkQueue(base_delay=1.0, max_delay=5.0, clock=clock)

    delays = [queue.add_rate_limited("a") for _ in range(5)]

    assert delays == [1.0, 2.0, 4.0, 5.0, 5.0]
    assert queue.num_requeues("a") == 5

    queue.forget("a")
    assert queue.num_requeues("a") == 0
    assert queue.add_rate_limited("a") == 1.0


def test_delayed_key_is_released_once_due() -> None:
    clock = FakeClock()
    queue: WorkQueue[str] = WorkQueue(clock=clock)

    queue.add_after("a", 3.0)
    assert queue.get(timeout=0) is None

    clock.advance(3.0)
    assert queue.get(timeout=0) == "a"


def test_non_positive_delay_adds_immediately() -> None:
    queue: WorkQueue[str] = WorkQueue()

    queue.add_after("a", 0)

    assert queue.get(timeout=0) == "a"


def test_shutdown_wakes_blocked_getters() -> None:
    queue: WorkQueue[str] = WorkQueue()
    results: list[str | None] = []
    worker = threading.Thread(target=lambda: results.append(queue.get()))
    worker.start()

    queue.shutdown()
    worker.join(timeout=2)

    assert not worker.is_alive()
    assert results == [None]
    assert queue.shutting_down is True


def test_adds_after_shutdown_are_dropped() -> None:
    queue: WorkQueue[str] = WorkQueue()
    queue.shutdown()

    queue.add("a")
    queue.add_after("b", 1.0)

    assert len(queue) == 0
    assert queue.get(timeout=0) is None


def test_queued_keys_drain_before_shutdown_returns_none() -> None:
    queue: WorkQueue[str] = WorkQueue()
    queue.add("a")
    queue.shutdown()

    assert queue.get(timeout=0) == "a"
    assert queue.get(timeout=0) is None


@pytest.mark.parametrize(("base", "maximum"), [(0, 1), (2, 1)])
def test_invalid_delays_are_rejected(base: float, maximum: float) -> None:
    with pytest.raises(ValueError):
        WorkQueue(base_delay=base, max_delay=maximum)

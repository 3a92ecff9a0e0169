from __future__ import annotations

import threading

from runners.listing_delivery.runs.queue import JobQueue


class Ticker:
    def __init__(self) -> None:
        self.t = 100.0

    def __call__(self) -> float:
        return self.t


def test_fifo_and_dedup() -> None:
    q = JobQueue(clock=Ticker())

    assert q.enqueue("a")
    assert q.enqueue("b")
    assert not q.enqueue("a")
    assert q.depth() == 2

    lease = q.dequeue(timeout=0)
    assert lease.run_id == "a"
    assert lease.attempt == 1
    # Leased jobs still block duplicates.
    assert not q.enqueue("a")
    assert q.active() == 1

    assert q.complete(lease)
    assert not q.contains("a")
    assert q.enqueue("a")


def test_dequeue_times_out_when_empty() -> None:
    assert JobQueue().dequeue(timeout=0.05) is None


def test_stalled_lease_requeued_with_backoff() -> None:
    clock = Ticker()
    q = JobQueue(lease_seconds=10, max_attempts=2, backoff_base=5, clock=clock)
    q.enqueue("a")
    first = q.dequeue(timeout=0)

    clock.t += 11
    requeued, exhausted = q.reap_stalled()
    assert requeued == ["a"]
    assert exhausted == []

    # Backoff: not available for 5 s.
    assert q.dequeue(timeout=0) is None
    clock.t += 5
    second = q.dequeue(timeout=0)
    assert second.attempt == 2

    # The stalled worker's lease no longer owns the job.
    assert not q.heartbeat(first)
    assert not q.complete(first)
    assert q.heartbeat(second)

    clock.t += 11
    requeued, exhausted = q.reap_stalled()
    assert requeued == []
    assert exhausted == ["a"]
    assert not q.contains("a")


def test_heartbeat_extends_lease() -> None:
    clock = Ticker()
    q = JobQueue(lease_seconds=10, clock=clock)
    q.enqueue("a")
    lease = q.dequeue(timeout=0)

    clock.t += 8
    assert q.heartbeat(lease)
    clock.t += 8
    assert q.reap_stalled() == ([], [])


def test_fail_drops_job() -> None:
    q = JobQueue()
    q.enqueue("a")
    lease = q.dequeue(timeout=0)

    assert q.fail(lease, "boom")
    assert not q.contains("a")


def test_close_wakes_waiters() -> None:
    q = JobQueue()
    results: list[object] = []
    t = threading.Thread(target=lambda: results.append(q.dequeue()))
    t.start()
    q.close()
    t.join(timeout=2)

    assert not t.is_alive()
    assert results == [None]
    assert q.closed

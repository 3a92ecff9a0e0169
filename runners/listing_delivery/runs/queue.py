"""In-process job queue with leases.

A dequeued job is leased to one worker for `lease_seconds`; the worker
heartbeats while it runs. `reap_stalled()` returns expired leases to the
queue (with exponential backoff) until `max_attempts` is reached. Lease
tokens fence out a stalled worker that wakes up after its job was reaped.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field

logger = logging.getLogger("delivery.queue")

PENDING = "pending"
ACTIVE = "active"


@dataclass
class Job:
    run_id: str
    attempts: int = 0
    state: str = PENDING
    available_at: float = 0.0
    token: str | None = None
    lease_expires: float = 0.0
    history: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class Lease:
    run_id: str
    token: str
    attempt: int


class JobQueue:
    def __init__(
        self,
        *,
        lease_seconds: float = 300.0,
        max_attempts: int = 3,
        backoff_base: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.lease_seconds = float(lease_seconds)
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_base = float(backoff_base)
        self._clock = clock
        self._jobs: dict[str, Job] = {}
        self._order: list[str] = []
        self._cond = threading.Condition()
        self._closed = False

    def enqueue(self, run_id: str) -> bool:
        """Queue `run_id`; a run already pending or leased is not queued twice."""
        with self._cond:
            if run_id in self._jobs:
                logger.info("enqueue_duplicate run_id=%s state=%s", run_id, self._jobs[run_id].state)
                return False
            self._jobs[run_id] = Job(run_id=run_id, available_at=self._clock())
            self._order.append(run_id)
            self._cond.notify()
            logger.info("enqueued run_id=%s depth=%d", run_id, len(self._order))
            return True

    def _next_ready(self) -> Job | None:
        now = self._clock()
        for run_id in self._order:
            job = self._jobs[run_id]
            if job.state == PENDING and job.available_at <= now:
                return job
        return None

    def dequeue(self, timeout: float | None = None) -> Lease | None:
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while not self._closed:
                job = self._next_ready()
                if job is not None:
                    self._order.remove(job.run_id)
                    job.state = ACTIVE
                    job.attempts += 1
                    job.token = uuid.uuid4().hex
                    job.lease_expires = self._clock() + self.lease_seconds
                    logger.info("dequeued run_id=%s attempt=%d", job.run_id, job.attempts)
                    return Lease(run_id=job.run_id, token=job.token, attempt=job.attempts)
                wait = 0.5
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None
                    wait = min(wait, remaining)
                self._cond.wait(wait)
            return None

    def _owned(self, lease: Lease) -> Job | None:
        job = self._jobs.get(lease.run_id)
        if job is None or job.state != ACTIVE or job.token != lease.token:
            return None
        return job

    def heartbeat(self, lease: Lease) -> bool:
        with self._cond:
            job = self._owned(lease)
            if job is None:
                return False
            job.lease_expires = self._clock() + self.lease_seconds
            return True

    def complete(self, lease: Lease) -> bool:
        """Drop the job. A stale lease (job reaped and re-leased) is ignored."""
        with self._cond:
            job = self._owned(lease)
            if job is None:
                logger.warning("complete_stale_lease run_id=%s", lease.run_id)
                return False
            del self._jobs[lease.run_id]
            return True

    def fail(self, lease: Lease, reason: str = "") -> bool:
        """Terminal failure for the job: it is dropped without requeue."""
        with self._cond:
            job = self._owned(lease)
            if job is None:
                return False
            job.history.append(reason)
            del self._jobs[lease.run_id]
            logger.info("job_failed run_id=%s attempts=%d reason=%s", lease.run_id, job.attempts, reason)
            return True

    def reap_stalled(self) -> tuple[list[str], list[str]]:
        """Requeue expired leases.

        Returns (requeued, exhausted) run ids; exhausted jobs are dropped and the
        caller is expected to fail their runs.
        """
        requeued: list[str] = []
        exhausted: list[str] = []
        with self._cond:
            now = self._clock()
            for run_id, job in list(self._jobs.items()):
                if job.state != ACTIVE or job.lease_expires > now:
                    continue
                job.history.append("lease expired")
                if job.attempts >= self.max_attempts:
                    del self._jobs[run_id]
                    exhausted.append(run_id)
                    logger.warning("job_exhausted run_id=%s attempts=%d", run_id, job.attempts)
                    continue
                delay = self.backoff_base * (2 ** (job.attempts - 1))
                job.state = PENDING
                job.token = None
                job.available_at = now + delay
                self._order.append(run_id)
                requeued.append(run_id)
                logger.warning("job_requeued run_id=%s attempts=%d delay=%.1f", run_id, job.attempts, delay)
            if requeued:
                self._cond.notify_all()
        return requeued, exhausted

    def depth(self) -> int:
        with self._cond:
            return len(self._order)

    def active(self) -> int:
        with self._cond:
            return sum(1 for j in self._jobs.values() if j.state == ACTIVE)

    def contains(self, run_id: str) -> bool:
        with self._cond:
            return run_id in self._jobs

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        return self._closed


__all__ = ["Job", "JobQueue", "Lease"]

"""Delivery worker threads and the stall monitor."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from contextlib import AbstractContextManager
from typing import Any

from . import errors
from .clock import SYSTEM_CLOCK, Clock
from .errors import DeliveryError, InvalidManifest
from .evidence import EvidenceStore, RunReporter
from .manifest import Manifest
from .runs.models import FAILED, RUNNING, SUCCEEDED, InvalidTransition
from .runs.orchestrator import RunOrchestrator
from .runs.queue import Lease
from .runs.store import RunNotFound
from .validate_urls import UrlValidator
from .workflow.context import WorkflowTimeouts
from .workflow.driver import WorkflowDriver

logger = logging.getLogger("delivery.worker")

SessionFactory = Callable[[], AbstractContextManager[Any]]


class Worker:
    def __init__(
        self,
        orchestrator: RunOrchestrator,
        *,
        session_factory: SessionFactory,
        validator: UrlValidator,
        evidence: EvidenceStore | None,
        timeouts: WorkflowTimeouts | None = None,
        clock: Clock = SYSTEM_CLOCK,
        name: str = "worker-1",
        heartbeat_interval: float = 30.0,
    ) -> None:
        self.orchestrator = orchestrator
        self.queue = orchestrator.queue
        self.session_factory = session_factory
        self.validator = validator
        self.evidence = evidence
        self.timeouts = timeouts or WorkflowTimeouts()
        self.clock = clock
        self.name = name
        self.heartbeat_interval = heartbeat_interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    # Lifecycle

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name=self.name, daemon=True)
        self._thread.start()
        logger.info("worker_started name=%s", self.name)

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
        logger.info("worker_stopped name=%s", self.name)

    def run_forever(self) -> None:
        while not self._stop.is_set() and not self.queue.closed:
            lease = self.queue.dequeue(timeout=1.0)
            if lease is None:
                continue
            try:
                self.process(lease)
            except Exception:  # noqa: BLE001
                # Keep the loop alive; the run itself was already marked failed where possible.
                logger.exception("worker_process_crashed name=%s run_id=%s", self.name, lease.run_id)

    # Job processing

    def _heartbeat_loop(self, lease: Lease, done: threading.Event) -> None:
        while not done.wait(self.heartbeat_interval):
            if not self.queue.heartbeat(lease):
                return

    def _finish(self, lease: Lease, status: str, **patch: Any) -> None:
        if not self.queue.heartbeat(lease):
            # Lease was reaped and possibly re-leased; the newer attempt owns the run.
            logger.warning("lease_lost run_id=%s status=%s", lease.run_id, status)
            return
        try:
            self.orchestrator.update_status(lease.run_id, status, **patch)
        except (InvalidTransition, RunNotFound) as exc:
            logger.warning("finish_skipped run_id=%s status=%s error=%s", lease.run_id, status, exc)

    def process(self, lease: Lease) -> None:
        run_id = lease.run_id
        run = self.orchestrator.get_status(run_id)
        if run is None or run.is_terminal:
            logger.info("job_skipped run_id=%s reason=%s", run_id, "missing" if run is None else run.status)
            self.queue.complete(lease)
            return

        try:
            manifest = Manifest.from_dict(run.manifest)
        except InvalidManifest as exc:
            logger.warning("run_failed run_id=%s error=%s", run_id, exc)
            self._finish(lease, FAILED, current_step="failed", error=exc.to_dict())
            self.queue.fail(lease, exc.code)
            return
        self.orchestrator.update_status(run_id, RUNNING, current_step="initializing", current_step_detail=None)
        reporter = RunReporter(run_id, self.evidence, sink=self.orchestrator.update_progress)

        done = threading.Event()
        beat = threading.Thread(target=self._heartbeat_loop, args=(lease, done), name=f"{self.name}-hb", daemon=True)
        beat.start()
        failure: str | None = None
        try:
            self.orchestrator.update_status(run_id, RUNNING, current_step="validating_urls")
            counts = self.validator.validate(
                list(manifest.sources.floorplan_urls),
                list(manifest.sources.rms_urls),
                manifest.sources.tour_3d_url,
                run_id=run_id,
            )
            self.orchestrator.update_status(run_id, RUNNING, current_step="running_automation", assets_found=counts)

            with self.session_factory() as page:
                driver = WorkflowDriver(page, manifest, reporter=reporter, clock=self.clock, timeouts=self.timeouts)
                result = driver.run()
        except DeliveryError as exc:
            logger.warning("run_failed run_id=%s error=%s", run_id, exc)
            failure = exc.code
            self._finish(lease, FAILED, current_step="failed", error=exc.to_dict())
        except Exception as exc:  # noqa: BLE001
            logger.exception("run_crashed run_id=%s", run_id)
            error = DeliveryError(errors.INTERNAL_ERROR, f"{type(exc).__name__}: {exc}", True)
            failure = error.code
            self._finish(lease, FAILED, current_step="failed", error=error.to_dict())
        else:
            actions = result.actions.to_dict()
            if result.success:
                logger.info("run_succeeded run_id=%s actions=%s", run_id, actions)
                self._finish(lease, SUCCEEDED, current_step="completed", actions_performed=actions, error=None)
            else:
                failure = result.error.code if result.error else result.final_state
                error = result.error.to_dict() if result.error else None
                logger.warning("run_failed run_id=%s state=%s error=%s", run_id, result.final_state, error)
                self._finish(lease, FAILED, current_step="failed", actions_performed=actions, error=error)
        finally:
            done.set()
            if failure is None:
                self.queue.complete(lease)
            else:
                self.queue.fail(lease, failure)


class StallMonitor:
    """Reaps expired leases and purges expired runs on an interval."""

    def __init__(self, orchestrator: RunOrchestrator, *, interval: float = 60.0) -> None:
        self.orchestrator = orchestrator
        self.interval = interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def tick(self) -> None:
        requeued, exhausted = self.orchestrator.queue.reap_stalled()
        for run_id in exhausted:
            error = DeliveryError(errors.TIMEOUT, "job stalled: lease expired on every attempt", True)
            try:
                self.orchestrator.update_status(run_id, FAILED, current_step="failed", error=error.to_dict())
            except (InvalidTransition, RunNotFound) as exc:
                logger.warning("stalled_fail_skipped run_id=%s error=%s", run_id, exc)
        if requeued or exhausted:
            logger.info("stall_reaped requeued=%d exhausted=%d", len(requeued), len(exhausted))
        self.orchestrator.store.purge_expired()

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.tick()
            except Exception:  # noqa: BLE001
                logger.exception("stall_monitor_tick_failed")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="stall-monitor", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)


__all__ = ["StallMonitor", "Worker"]

"""Application context: wires config, store, queue, orchestrator and workers."""

from __future__ import annotations

import logging
from typing import Any

from .clock import SYSTEM_CLOCK, Clock
from .config import DeliveryConfig
from .evidence import EvidenceStore
from .runs.callbacks import CallbackNotifier
from .runs.orchestrator import RunOrchestrator
from .runs.queue import JobQueue
from .runs.store import RunStore
from .session_manager import SessionManager, storage_state_status
from .validate_urls import UrlValidator
from .worker import SessionFactory, StallMonitor, Worker
from .workflow.context import WorkflowTimeouts

logger = logging.getLogger("delivery.app")

VERSION = "1.0.0"


class AppContext:
    def __init__(
        self,
        config: DeliveryConfig,
        *,
        session_factory: SessionFactory | None = None,
        validator: UrlValidator | None = None,
        notifier: CallbackNotifier | None = None,
        clock: Clock = SYSTEM_CLOCK,
        timeouts: WorkflowTimeouts | None = None,
        stall_interval: float = 60.0,
    ) -> None:
        self.config = config
        self.store = RunStore(config.runs_dir)
        self.evidence = EvidenceStore(config.evidence_dir)
        self.queue = JobQueue(lease_seconds=config.job_timeout, max_attempts=config.max_retries)
        self.orchestrator = RunOrchestrator(
            self.store,
            self.queue,
            notifier=notifier or CallbackNotifier(timeout=config.callback_timeout),
            ttl_seconds=config.run_ttl_seconds,
        )
        self.sessions = SessionManager(config)
        self.validator = validator or UrlValidator(timeout=config.http_timeout, is_host_allowed=config.is_host_allowed)
        factory = session_factory or self.sessions.open
        self.workers = [
            Worker(
                self.orchestrator,
                session_factory=factory,
                validator=self.validator,
                evidence=self.evidence,
                timeouts=timeouts or WorkflowTimeouts.from_env(),
                clock=clock,
                name=f"worker-{i + 1}",
            )
            for i in range(max(1, config.workers))
        ]
        self.monitor = StallMonitor(self.orchestrator, interval=stall_interval)
        self.started = False

    def start(self, *, workers: bool = True) -> None:
        if self.started:
            return
        recovered = self.orchestrator.recover()
        if workers:
            for worker in self.workers:
                worker.start()
        self.monitor.start()
        self.started = True
        logger.info("app_started workers=%d recovered=%d", len(self.workers) if workers else 0, recovered)

    def shutdown(self) -> None:
        if not self.started:
            return
        self.queue.close()
        for worker in self.workers:
            worker.stop()
        self.monitor.stop()
        self.started = False
        logger.info("app_stopped")

    def readiness(self) -> dict[str, Any]:
        auth = storage_state_status(self.config.storage_state_path)
        checks = {
            "store": self.store.healthy(),
            "storage_state": bool(auth.get("valid")),
            "queue": not self.queue.closed,
        }
        if not checks["store"] or not checks["queue"]:
            status = "unhealthy"
        elif not checks["storage_state"]:
            status = "degraded"
        else:
            status = "ok"
        return {
            "status": status,
            "checks": checks,
            "queue": {"depth": self.queue.depth(), "active": self.queue.active()},
        }


__all__ = ["VERSION", "AppContext"]

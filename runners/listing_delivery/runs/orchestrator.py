"""Run orchestration: idempotent submission, status/progress updates, callbacks."""

from __future__ import annotations

import logging
import threading
from typing import Any

from ..manifest import Manifest, derive_idempotency_key
from .callbacks import CallbackNotifier
from .models import QUEUED, RUNNING, SUCCEEDED, TERMINAL_STATUSES, Run, RunRef, check_transition, to_iso, utc_now
from .queue import JobQueue
from .store import RunNotFound, RunStore

logger = logging.getLogger("delivery.orchestrator")

MSG_QUEUED = "Run queued"
MSG_IN_PROGRESS = "Already in progress"
MSG_COMPLETED = "Already completed successfully"

_PATCHABLE = frozenset(
    {"error", "current_step", "current_step_detail", "progress", "assets_found", "actions_performed", "evidence"}
)


class RunOrchestrator:
    def __init__(
        self,
        store: RunStore,
        queue: JobQueue,
        *,
        notifier: CallbackNotifier | None = None,
        ttl_seconds: float = 7 * 24 * 3600,
    ) -> None:
        self.store = store
        self.queue = queue
        self.notifier = notifier
        self.ttl_seconds = ttl_seconds
        # Serializes lookup+create so two submissions cannot both miss the active run.
        self._submit_lock = threading.Lock()

    def submit(self, manifest: Manifest) -> RunRef:
        key = derive_idempotency_key(manifest)
        with self._submit_lock:
            runs = self.store.find_by_key(key)
            active = next((r for r in reversed(runs) if r.status not in TERMINAL_STATUSES), None)
            if active is not None:
                logger.info("submit_deduplicated run_id=%s key=%s status=%s", active.run_id, key, active.status)
                # Re-offer the job in case it was lost (e.g. restart between create and enqueue).
                if active.status == QUEUED:
                    self.queue.enqueue(active.run_id)
                return RunRef(active.run_id, active.status, False, MSG_IN_PROGRESS)

            done = next((r for r in reversed(runs) if r.status == SUCCEEDED), None)
            if done is not None:
                logger.info("submit_already_succeeded run_id=%s key=%s", done.run_id, key)
                return RunRef(done.run_id, done.status, False, MSG_COMPLETED)

            run = Run.new(key, manifest.to_dict(), ttl_seconds=self.ttl_seconds)
            self.store.create(run)
            self.queue.enqueue(run.run_id)
            logger.info(
                "run_created run_id=%s key=%s previous_failed=%d", run.run_id, key, sum(1 for r in runs if r.is_terminal)
            )
            return RunRef(run.run_id, run.status, True, MSG_QUEUED)

    def get_status(self, run_id: str) -> Run | None:
        return self.store.get(run_id)

    def update_status(self, run_id: str, status: str, **patch: Any) -> Run:
        unknown = set(patch) - _PATCHABLE
        if unknown:
            raise ValueError(f"unsupported run fields: {sorted(unknown)}")
        entered_terminal = False

        def apply(run: Run) -> None:
            nonlocal entered_terminal
            check_transition(run.run_id, run.status, status)
            now = to_iso(utc_now())
            entered_terminal = status in TERMINAL_STATUSES and run.status not in TERMINAL_STATUSES
            run.status = status
            if status == RUNNING and not run.started_at:
                run.started_at = now
            if entered_terminal:
                run.completed_at = now
                run.progress = None
            for name, value in patch.items():
                setattr(run, name, value)

        run = self.store.mutate(run_id, apply)
        logger.info("run_status run_id=%s status=%s step=%s version=%d", run_id, run.status, run.current_step, run.version)
        if entered_terminal and self.notifier is not None:
            self.notifier.send(run)
        return run

    def update_progress(
        self,
        run_id: str,
        step: str,
        detail: str | None = None,
        progress: dict[str, Any] | None = None,
        evidence: dict[str, Any] | None = None,
    ) -> Run | None:
        """Record the current step; ignored for unknown or finished runs."""

        def apply(run: Run) -> None:
            if run.status in TERMINAL_STATUSES:
                return
            run.current_step = step
            run.current_step_detail = detail
            if progress is not None:
                run.progress = progress
            if evidence:
                run.evidence.append(evidence)

        try:
            return self.store.mutate(run_id, apply)
        except RunNotFound:
            logger.warning("progress_unknown_run run_id=%s step=%s", run_id, step)
            return None

    def recover(self) -> int:
        """Re-enqueue runs left queued or running by a previous process."""
        pending = self.store.list_runs({QUEUED, RUNNING})
        count = sum(1 for run in pending if self.queue.enqueue(run.run_id))
        if count:
            logger.info("runs_recovered count=%d", count)
        return count


__all__ = ["MSG_COMPLETED", "MSG_IN_PROGRESS", "MSG_QUEUED", "RunOrchestrator"]

"""Run bookkeeping: models, disk store, job queue, callbacks and the orchestrator."""

from .callbacks import CallbackNotifier, verify_signature
from .models import FAILED, QUEUED, RUNNING, SUCCEEDED, Run, RunRef
from .orchestrator import RunOrchestrator
from .queue import JobQueue, Lease
from .store import ConcurrentModification, RunNotFound, RunStore

__all__ = [
    "FAILED",
    "QUEUED",
    "RUNNING",
    "SUCCEEDED",
    "CallbackNotifier",
    "ConcurrentModification",
    "JobQueue",
    "Lease",
    "Run",
    "RunNotFound",
    "RunOrchestrator",
    "RunRef",
    "RunStore",
    "verify_signature",
]

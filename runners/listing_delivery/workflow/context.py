from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from ..clock import SYSTEM_CLOCK, Clock
from ..evidence import RunReporter
from ..ui.observer import UIStateObserver


@dataclass(frozen=True)
class WorkflowTimeouts:
    """Upper bounds (seconds) for every wait in the workflow."""

    poll_interval: float = 0.25
    stable_polls: int = 3
    element_visible: float = 10.0
    logged_in: float = 10.0
    page_ready: float = 30.0
    loading_clear: float = 30.0
    readiness: float = 90.0
    modal_close: float = 45.0
    verify: float = 45.0
    verify_after_reload: float = 30.0
    idle_confirm: float = 30.0
    add_content_enabled: float = 10.0
    save_banner: float = 10.0
    deliver_banner: float = 15.0
    backoff_initial: float = 0.5
    backoff_max: float = 5.0
    retry_delay: float = 2.0
    between_assets: float = 1.0
    max_attempts: int = 3

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> WorkflowTimeouts:
        """Allow slow tenants to stretch the long waits (`WORKFLOW_<FIELD>` in seconds)."""
        env = os.environ if env is None else env
        overrides: dict[str, Any] = {}
        for name in ("readiness", "modal_close", "verify", "verify_after_reload", "logged_in", "page_ready", "retry_delay"):
            raw = env.get(f"WORKFLOW_{name.upper()}")
            if raw is None or not str(raw).strip():
                continue
            try:
                overrides[name] = max(0.0, float(raw))
            except ValueError:
                continue
        return cls(**overrides)


@dataclass
class StepContext:
    """Everything a workflow step needs; one per run."""

    page: Any
    reporter: RunReporter
    clock: Clock = SYSTEM_CLOCK
    timeouts: WorkflowTimeouts = field(default_factory=WorkflowTimeouts)
    observer: UIStateObserver = field(init=False)

    def __post_init__(self) -> None:
        self.observer = UIStateObserver(
            self.page,
            self.clock,
            poll_interval=self.timeouts.poll_interval,
            stable_polls=self.timeouts.stable_polls,
        )

    @property
    def run_id(self) -> str:
        return self.reporter.run_id

    def wait_present(self, check: Any, timeout: float) -> bool:
        return self.observer.wait_for(
            check, timeout, initial=self.timeouts.backoff_initial, max_interval=self.timeouts.backoff_max
        )

    def close_modals(self) -> None:
        """Escape twice: the URL source panel sits inside the uploader modal."""
        for _ in range(2):
            self.page.press_key("Escape")
            self.clock.sleep(0.3)
        self.observer.wait_modal_closed(min(5.0, self.timeouts.modal_close))


__all__ = ["StepContext", "WorkflowTimeouts"]

"""UI state observer.

Reduces the page's observable signals to a `UIState` snapshot and offers
bounded, clock-driven waits over it. Waits never raise; they return an outcome
the workflow can branch on.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from ..clock import SYSTEM_CLOCK, Clock
from .locators import COMMIT_BUTTON, Locator

logger = logging.getLogger("delivery.observer")

READY = "ready"
ERROR_BANNER = "error_banner"
TIMEOUT_IN_PROGRESS = "timeout_in_progress"
TIMEOUT_NOT_READY = "timeout_not_ready"

BANNER_SUCCESS = "success"
BANNER_ERROR = "error"
BANNER_NONE = "none"


class PageLike(Protocol):
    def ui_signals(self, commit: Locator) -> dict[str, Any]: ...

    def probe(self, locator: Locator, row: str | None = None, *, scroll: bool = False) -> dict[str, Any] | None: ...


@dataclass(frozen=True)
class UIState:
    progress_active: bool = False
    progress_percent: float | None = None
    has_skeleton_loader: bool = False
    has_modal_spinner: bool = False
    has_staged_item: bool = False
    has_real_filename: bool = False
    commit_enabled: bool = False
    commit_visible: bool = False
    has_error_banner: bool = False
    error_text: str | None = None
    has_success_banner: bool = False
    success_text: str | None = None
    modal_open: bool = False
    page_loading: bool = False

    @classmethod
    def from_signals(cls, raw: dict[str, Any] | None) -> UIState:
        raw = raw or {}
        pct = raw.get("progressPercent")
        return cls(
            progress_active=bool(raw.get("progressActive")),
            progress_percent=float(pct) if isinstance(pct, (int, float)) else None,
            has_skeleton_loader=bool(raw.get("hasSkeletonLoader")),
            has_modal_spinner=bool(raw.get("hasModalSpinner")),
            has_staged_item=bool(raw.get("hasStagedItem")),
            has_real_filename=bool(raw.get("hasRealFilename")),
            commit_enabled=bool(raw.get("commitEnabled")),
            commit_visible=bool(raw.get("commitVisible")),
            has_error_banner=bool(raw.get("hasErrorBanner")),
            error_text=raw.get("errorText") or None,
            has_success_banner=bool(raw.get("hasSuccessBanner")),
            success_text=raw.get("successText") or None,
            modal_open=bool(raw.get("modalOpen")),
            page_loading=bool(raw.get("pageLoading")),
        )

    @property
    def progress_incomplete(self) -> bool:
        if not self.progress_active:
            return False
        return self.progress_percent is None or self.progress_percent < 100

    @property
    def in_progress(self) -> bool:
        if self.progress_incomplete or self.has_skeleton_loader or self.has_modal_spinner:
            return True
        if self.has_staged_item and not self.has_real_filename:
            return True
        return self.commit_visible and not self.commit_enabled

    @property
    def ready_for_commit(self) -> bool:
        return (
            not self.has_error_banner
            and not self.progress_incomplete
            and not self.has_skeleton_loader
            and not self.has_modal_spinner
            and (not self.has_staged_item or self.has_real_filename)
            and self.commit_visible
            and self.commit_enabled
        )

    def summary(self) -> dict[str, Any]:
        return {
            "in_progress": self.in_progress,
            "ready_for_commit": self.ready_for_commit,
            "progress": self.progress_percent,
            "staged": self.has_staged_item,
            "real_filename": self.has_real_filename,
            "commit": "enabled" if self.commit_enabled else ("disabled" if self.commit_visible else "hidden"),
            "error": self.error_text,
        }


@dataclass(frozen=True)
class Readiness:
    status: str
    state: UIState
    polls: int = 0

    @property
    def ready(self) -> bool:
        return self.status == READY


@dataclass(frozen=True)
class Banner:
    kind: str
    text: str | None = None


class UIStateObserver:
    def __init__(
        self,
        page: PageLike,
        clock: Clock = SYSTEM_CLOCK,
        *,
        poll_interval: float = 0.25,
        stable_polls: int = 3,
    ) -> None:
        self.page = page
        self.clock = clock
        self.poll_interval = poll_interval
        self.stable_polls = max(1, int(stable_polls))

    def snapshot(self, commit: Locator = COMMIT_BUTTON) -> UIState:
        return UIState.from_signals(self.page.ui_signals(commit))

    def _poll(self, timeout: float, check: Callable[[UIState], bool], commit: Locator = COMMIT_BUTTON) -> tuple[bool, UIState]:
        deadline = self.clock.now() + max(0.0, timeout)
        while True:
            state = self.snapshot(commit)
            if check(state):
                return True, state
            if self.clock.now() >= deadline:
                return False, state
            self.clock.sleep(self.poll_interval)

    def wait_ready_for_commit(self, timeout: float, commit: Locator = COMMIT_BUTTON) -> Readiness:
        """Debounced readiness: `ready_for_commit` must hold for N consecutive polls."""
        deadline = self.clock.now() + max(0.0, timeout)
        stable = 0
        polls = 0
        while True:
            state = self.snapshot(commit)
            polls += 1
            if state.has_error_banner:
                logger.warning("readiness_error_banner text=%r", state.error_text)
                return Readiness(ERROR_BANNER, state, polls)
            stable = stable + 1 if state.ready_for_commit else 0
            if stable >= self.stable_polls:
                return Readiness(READY, state, polls)
            if self.clock.now() >= deadline:
                status = TIMEOUT_IN_PROGRESS if state.in_progress else TIMEOUT_NOT_READY
                logger.warning("readiness_timeout status=%s state=%s", status, state.summary())
                return Readiness(status, state, polls)
            self.clock.sleep(self.poll_interval)

    def wait_modal_closed(self, timeout: float) -> bool:
        closed, _ = self._poll(timeout, lambda s: not s.modal_open)
        return closed

    def wait_loading_cleared(self, timeout: float) -> bool:
        cleared, _ = self._poll(
            timeout, lambda s: not s.page_loading and not s.has_skeleton_loader and not s.has_modal_spinner
        )
        return cleared

    def wait_idle(self, timeout: float) -> bool:
        idle, _ = self._poll(timeout, lambda s: not s.in_progress and not s.page_loading)
        return idle

    def wait_banner(self, timeout: float) -> Banner:
        _, state = self._poll(timeout, lambda s: s.has_error_banner or s.has_success_banner)
        if state.has_error_banner:
            return Banner(BANNER_ERROR, state.error_text)
        if state.has_success_banner:
            return Banner(BANNER_SUCCESS, state.success_text)
        return Banner(BANNER_NONE)

    def wait_visible(self, locator: Locator, timeout: float, row: str | None = None) -> bool:
        deadline = self.clock.now() + max(0.0, timeout)
        while True:
            if self.page.probe(locator, row) is not None:
                return True
            if self.clock.now() >= deadline:
                return False
            self.clock.sleep(self.poll_interval)

    def wait_enabled(self, locator: Locator, timeout: float, row: str | None = None) -> bool:
        deadline = self.clock.now() + max(0.0, timeout)
        while True:
            res = self.page.probe(locator, row)
            if res is not None and res.get("enabled", True):
                return True
            if self.clock.now() >= deadline:
                return False
            self.clock.sleep(self.poll_interval)

    def wait_for(
        self,
        check: Callable[[], bool],
        timeout: float,
        *,
        initial: float = 0.5,
        factor: float = 2.0,
        max_interval: float = 5.0,
    ) -> bool:
        """Poll `check` with exponential backoff until it holds or `timeout` elapses."""
        deadline = self.clock.now() + max(0.0, timeout)
        interval = max(self.poll_interval, initial)
        while True:
            if check():
                return True
            remaining = deadline - self.clock.now()
            if remaining <= 0:
                return False
            self.clock.sleep(min(interval, remaining))
            interval = min(max_interval, interval * factor)


__all__ = [
    "BANNER_ERROR",
    "BANNER_NONE",
    "BANNER_SUCCESS",
    "ERROR_BANNER",
    "READY",
    "TIMEOUT_IN_PROGRESS",
    "TIMEOUT_NOT_READY",
    "Banner",
    "Readiness",
    "UIState",
    "UIStateObserver",
]

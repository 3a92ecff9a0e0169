"""Listing delivery state machine.

Nav -> Baseline -> ImportFloorplans -> ImportFiles -> Add3D -> Save -> (Deliver) -> Done | Failed

Each handler returns a StepOutcome; UI outcomes never raise out of `run()`.
Action flags are only set from postcondition checks performed inside the steps.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from .. import errors
from ..clock import SYSTEM_CLOCK, Clock
from ..dedup import dedupe_asset_urls
from ..errors import AuthRequired, DeliveryError
from ..evidence import RunReporter
from ..ui import locators as L
from .commit import deliver_listing, save_listing
from .context import StepContext, WorkflowTimeouts
from .importer import AssetImporter
from .results import (
    ADD_3D,
    BASELINE,
    DELIVER,
    DONE,
    FAILED,
    IMPORT_FILES,
    IMPORT_FLOORPLANS,
    NAV,
    SAVE,
    ActionsPerformed,
    StepOutcome,
    WorkflowResult,
)
from .tour import TourAdder

logger = logging.getLogger("delivery.workflow")

_ORDER = (NAV, BASELINE, IMPORT_FLOORPLANS, IMPORT_FILES, ADD_3D, SAVE, DELIVER, DONE)

SECTION_FLOORPLANS = "floorplans"
SECTION_RMS = "rms"


class WorkflowDriver:
    def __init__(
        self,
        page: Any,
        manifest: Any,
        *,
        reporter: RunReporter,
        clock: Clock = SYSTEM_CLOCK,
        timeouts: WorkflowTimeouts | None = None,
        deliver: bool | None = None,
    ) -> None:
        self.page = page
        self.manifest = manifest
        self.reporter = reporter
        self.ctx = StepContext(page=page, reporter=reporter, clock=clock, timeouts=timeouts or WorkflowTimeouts())
        self.deliver = bool(manifest.rules.deliver_after_attach if deliver is None else deliver)
        self.actions = ActionsPerformed()
        self.baseline: dict[str, int | None] = {}
        self.history: list[dict[str, Any]] = []
        self._handlers: dict[str, Callable[[], StepOutcome]] = {
            NAV: self._nav,
            BASELINE: self._baseline,
            IMPORT_FLOORPLANS: self._import_floorplans,
            IMPORT_FILES: self._import_files,
            ADD_3D: self._add_3d,
            SAVE: self._save,
            DELIVER: self._deliver,
        }

    @property
    def run_id(self) -> str:
        return self.reporter.run_id

    def run(self) -> WorkflowResult:
        state = NAV
        try:
            while state != DONE:
                self.reporter.step(state)
                outcome = self._handlers[state]()
                self._record(state, outcome)
                if not outcome.ok:
                    return self._fail(state, outcome.error)
                state = _ORDER[_ORDER.index(state) + 1]
        except DeliveryError as exc:
            self._record(state, StepOutcome(ok=False))
            return self._fail(state, exc)
        except Exception as exc:  # noqa: BLE001
            logger.exception("workflow_crashed run_id=%s state=%s", self.run_id, state)
            self._record(state, StepOutcome(ok=False))
            return self._fail(state, DeliveryError(errors.INTERNAL_ERROR, f"{type(exc).__name__}: {exc}", True))

        self.reporter.step(DONE, "workflow complete")
        logger.info("workflow_done run_id=%s actions=%s", self.run_id, self.actions.to_dict())
        return WorkflowResult(success=True, actions=self.actions, final_state=DONE, history=self.history)

    def _record(self, state: str, outcome: StepOutcome) -> None:
        entry: dict[str, Any] = {"state": state, "ok": outcome.ok, "attempts": outcome.attempts}
        if outcome.skipped:
            entry["skipped"] = True
        if outcome.detail:
            entry["detail"] = outcome.detail
        self.history.append(entry)

    def _fail(self, state: str, error: DeliveryError | None) -> WorkflowResult:
        if error is None:
            error = DeliveryError(errors.INTERNAL_ERROR, f"step {state} failed without an error", True)
        error.details.setdefault("step", state)
        logger.warning("workflow_failed run_id=%s state=%s error=%s", self.run_id, state, error)
        try:
            self.reporter.evidence(f"{state}_failed", self.page, error.message)
        except Exception:  # noqa: BLE001
            logger.exception("failure_evidence_failed run_id=%s state=%s", self.run_id, state)
        self.reporter.step(FAILED, error.message)
        return WorkflowResult(
            success=False, actions=self.actions, final_state=FAILED, error=error, history=self.history
        )

    # Steps

    def _logged_in(self) -> bool:
        """Wait for the user menu. A login URL or password field ends the wait early."""
        page = self.page
        t = self.ctx.timeouts

        def settled() -> bool:
            return page.on_login_page() or page.is_visible(L.LOGGED_IN_INDICATOR) or page.is_visible(L.LOGIN_FORM)

        self.ctx.wait_present(settled, t.logged_in)
        return not page.on_login_page() and page.is_visible(L.LOGGED_IN_INDICATOR)

    def _nav(self) -> StepOutcome:
        page = self.page
        observer = self.ctx.observer
        t = self.ctx.timeouts
        url = self.manifest.target.listing_edit_url
        reason = "not attempted"

        for attempt in range(1, t.max_attempts + 1):
            nav = page.navigate(url)
            if nav.ok:
                if not self._logged_in():
                    raise AuthRequired("not logged in after navigation; storage state expired", url=page.current_url())
                observer.wait_loading_cleared(t.loading_clear)
                if observer.wait_visible(L.ROW_ADD_BUTTON, t.page_ready, row=L.ROW_FLOORPLANS):
                    return StepOutcome(ok=True, attempts=attempt)
                reason = f"{L.ROW_FLOORPLANS} row not visible after {t.page_ready:.0f}s"
            else:
                reason = nav.reason or "navigation failed"

            logger.warning("nav_attempt_failed run_id=%s attempt=%d reason=%s", self.run_id, attempt, reason)
            self.reporter.evidence(f"{NAV}_attempt{attempt}", page, reason)
            if attempt < t.max_attempts:
                self.ctx.clock.sleep(t.retry_delay)

        error = DeliveryError(
            errors.NAVIGATION_FAILED, f"listing page not ready after {t.max_attempts} attempts: {reason}", True, {"url": url}
        )
        return StepOutcome(ok=False, attempts=t.max_attempts, error=error)

    def _baseline(self) -> StepOutcome:
        self.baseline = {row: self.page.row_count(row) for row in (L.ROW_FLOORPLANS, L.ROW_FILES, L.ROW_TOUR_3D)}
        logger.info("baseline run_id=%s counts=%s", self.run_id, self.baseline)
        return StepOutcome(ok=True, attempts=1, detail={"counts": dict(self.baseline)})

    def _import(self, step: str, section: str, row: str, urls: list[str], *, set_titles: bool) -> tuple[StepOutcome, bool]:
        if not urls:
            return StepOutcome(ok=True, skipped=True), False
        deduped = dedupe_asset_urls(list(urls), section, run_id=self.run_id)
        importer = AssetImporter(self.ctx, step=step, section=section, row=row, set_titles=set_titles)
        batch = importer.import_all(deduped.urls)
        detail = {
            "total": batch.total,
            "imported": batch.imported,
            "skipped": batch.skipped,
            "duplicates_removed": deduped.duplicates_removed,
            "assets": [a.to_dict() for a in batch.assets],
        }
        attempts = sum(a.attempts for a in batch.assets)
        if batch.error is not None:
            return StepOutcome(ok=False, attempts=attempts, error=batch.error, detail=detail), False
        return StepOutcome(ok=True, attempts=attempts, detail=detail), batch.verified

    def _import_floorplans(self) -> StepOutcome:
        outcome, verified = self._import(
            IMPORT_FLOORPLANS,
            SECTION_FLOORPLANS,
            L.ROW_FLOORPLANS,
            list(self.manifest.sources.floorplan_urls),
            set_titles=True,
        )
        self.actions.imported_floorplans = verified
        return outcome

    def _import_files(self) -> StepOutcome:
        outcome, verified = self._import(
            IMPORT_FILES,
            SECTION_RMS,
            L.ROW_FILES,
            list(self.manifest.sources.rms_urls),
            set_titles=False,
        )
        self.actions.imported_rms = verified
        return outcome

    def _add_3d(self) -> StepOutcome:
        tour_url = self.manifest.sources.tour_3d_url
        if not tour_url:
            return StepOutcome(ok=True, skipped=True)
        outcome = TourAdder(self.ctx, tour_url, baseline_count=self.baseline.get(L.ROW_TOUR_3D)).run()
        self.actions.added_3d_content = outcome.ok
        return outcome

    def _save(self) -> StepOutcome:
        outcome = save_listing(self.ctx)
        self.actions.saved = outcome.ok
        return outcome

    def _deliver(self) -> StepOutcome:
        if not self.deliver:
            logger.info("deliver_skipped run_id=%s", self.run_id)
            return StepOutcome(ok=True, skipped=True)
        outcome = deliver_listing(self.ctx)
        self.actions.delivered = outcome.ok
        return outcome


__all__ = ["SECTION_FLOORPLANS", "SECTION_RMS", "WorkflowDriver"]

"""Add the 3D tour link to the listing's 3D Content row."""

from __future__ import annotations

import logging

from .. import errors
from ..errors import DeliveryError
from ..ui import locators as L
from .context import StepContext
from .results import ADD_3D, StepOutcome

logger = logging.getLogger("delivery.tour")


class TourAdder:
    def __init__(self, ctx: StepContext, tour_url: str, *, baseline_count: int | None = None) -> None:
        self.ctx = ctx
        self.tour_url = tour_url
        self.baseline_count = baseline_count

    def _title_present(self) -> bool:
        return self.ctx.page.row_contains(L.ROW_TOUR_3D, [L.TOUR_TITLE])

    def _count_increased(self) -> bool:
        if self.baseline_count is None:
            return False
        count = self.ctx.page.row_count(L.ROW_TOUR_3D)
        return count is not None and count > self.baseline_count

    def _verified(self) -> bool:
        return self._title_present() or self._count_increased()

    def _apply_text(self, locator: L.Locator, value: str) -> bool:
        page = self.ctx.page
        if (page.read_value(locator) or "").strip() == value:
            return True
        page.fill(locator, value)
        if (page.read_value(locator) or "").strip() == value:
            return True
        page.fill(locator, value, slow=True)
        return (page.read_value(locator) or "").strip() == value

    def _apply_display_type(self) -> bool:
        page = self.ctx.page
        if not page.is_visible(L.TOUR_DISPLAY_SELECT):
            # Older modal variants have no display selector.
            return True
        if (page.read_value(L.TOUR_DISPLAY_SELECT) or "").lower() == L.TOUR_DISPLAY_VALUE:
            return True
        page.set_value(L.TOUR_DISPLAY_SELECT, L.TOUR_DISPLAY_VALUE, label=L.TOUR_DISPLAY_LABEL)
        return (page.read_value(L.TOUR_DISPLAY_SELECT) or "").lower() == L.TOUR_DISPLAY_VALUE

    def _apply_fields(self) -> str | None:
        """Write and assert every field; return the name of the first field that will not stick."""
        if not self._apply_text(L.TOUR_TITLE_INPUT, L.TOUR_TITLE):
            return "title"
        if not self._apply_text(L.TOUR_LINK_INPUT, self.tour_url):
            return "link"
        if not self._apply_display_type():
            return "display_type"
        return None

    def _attempt(self) -> tuple[bool, str]:
        page = self.ctx.page
        observer = self.ctx.observer
        t = self.ctx.timeouts

        if not observer.wait_visible(L.ROW_ADD_BUTTON, t.element_visible, row=L.ROW_TOUR_3D):
            return False, "3D Content add button not visible"
        if not page.click(L.ROW_ADD_BUTTON, row=L.ROW_TOUR_3D).ok:
            return False, "3D Content add button click failed"
        if not observer.wait_visible(L.TOUR_TITLE_INPUT, t.element_visible):
            return False, "3D content modal did not open"

        bad = self._apply_fields()
        if bad:
            return False, f"field {bad} did not keep its value"

        if not observer.wait_enabled(L.ADD_CONTENT_BUTTON, t.add_content_enabled):
            return False, "Add Content button not enabled"

        # Re-renders can silently reset fields; re-validate right before committing.
        bad = self._apply_fields()
        if bad:
            return False, f"field {bad} was reset before commit"

        clicked = page.click(L.ADD_CONTENT_BUTTON)
        if not clicked.ok:
            return False, f"Add Content click failed: {clicked.reason}"
        if not observer.wait_modal_closed(t.modal_close):
            logger.warning("tour_modal_not_closed run_id=%s", self.ctx.run_id)

        if self.ctx.wait_present(self._verified, t.verify):
            return True, ""
        return False, "3D content not present after add"

    def run(self) -> StepOutcome:
        max_attempts = self.ctx.timeouts.max_attempts
        reason = "not attempted"
        for attempt in range(1, max_attempts + 1):
            self.ctx.reporter.step(ADD_3D, f"attempt {attempt}/{max_attempts}")
            if self._title_present():
                logger.info("tour_skip_existing run_id=%s", self.ctx.run_id)
                return StepOutcome(ok=True, attempts=attempt - 1, skipped=True)

            ok, reason = self._attempt()
            if ok:
                return StepOutcome(ok=True, attempts=attempt)

            logger.warning("tour_attempt_failed run_id=%s attempt=%d reason=%s", self.ctx.run_id, attempt, reason)
            self.ctx.reporter.evidence(f"{ADD_3D}_attempt{attempt}", self.ctx.page, reason)
            self.ctx.close_modals()
            if attempt < max_attempts:
                self.ctx.clock.sleep(self.ctx.timeouts.retry_delay)

        error = DeliveryError(
            errors.ACTION_FAILED, f"3D content add failed after {max_attempts} attempts: {reason}", True
        )
        return StepOutcome(ok=False, attempts=max_attempts, error=error)


__all__ = ["TourAdder"]

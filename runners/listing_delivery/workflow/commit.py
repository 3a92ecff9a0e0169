"""Save and Deliver steps.

Both click an action, wait for loading to clear, then look for a toast. No
toast within the window counts as success: the platform does not always
render one.
"""

from __future__ import annotations

import logging

from .. import errors
from ..errors import DeliveryError, is_transient_error
from ..ui import locators as L
from ..ui.observer import BANNER_ERROR
from .context import StepContext
from .results import DELIVER, SAVE, StepOutcome

logger = logging.getLogger("delivery.commit")


def _run_with_retries(ctx: StepContext, step: str, attempt_fn) -> StepOutcome:  # noqa: ANN001
    max_attempts = ctx.timeouts.max_attempts
    reason = "not attempted"
    for attempt in range(1, max_attempts + 1):
        ctx.reporter.step(step, f"attempt {attempt}/{max_attempts}")
        ok, reason, banner = attempt_fn()
        if ok:
            return StepOutcome(ok=True, attempts=attempt, detail={"banner": banner})
        logger.warning("%s_attempt_failed run_id=%s attempt=%d reason=%s", step, ctx.run_id, attempt, reason)
        ctx.reporter.evidence(f"{step}_attempt{attempt}", ctx.page, reason)
        if attempt < max_attempts:
            ctx.clock.sleep(ctx.timeouts.retry_delay)

    error = DeliveryError(
        errors.ACTION_FAILED,
        f"{step} failed after {max_attempts} attempts: {reason}",
        is_transient_error(reason),
    )
    return StepOutcome(ok=False, attempts=max_attempts, error=error)


def save_listing(ctx: StepContext) -> StepOutcome:
    page = ctx.page
    observer = ctx.observer
    t = ctx.timeouts

    def attempt() -> tuple[bool, str, str | None]:
        if not observer.wait_visible(L.SAVE_BUTTON, t.element_visible):
            return False, "save button not visible", None
        clicked = page.click(L.SAVE_BUTTON)
        if not clicked.ok:
            return False, f"save click failed: {clicked.reason}", None
        if not observer.wait_loading_cleared(t.loading_clear):
            return False, f"page still loading after save (timeout {t.loading_clear:.0f}s)", None
        banner = observer.wait_banner(t.save_banner)
        if banner.kind == BANNER_ERROR:
            return False, banner.text or "save error", banner.kind
        return True, "", banner.kind

    return _run_with_retries(ctx, SAVE, attempt)


def deliver_listing(ctx: StepContext) -> StepOutcome:
    page = ctx.page
    observer = ctx.observer
    t = ctx.timeouts

    def attempt() -> tuple[bool, str, str | None]:
        if not observer.wait_visible(L.DELIVER_BUTTON, t.element_visible):
            return False, "deliver button not visible", None
        clicked = page.click(L.DELIVER_BUTTON)
        if not clicked.ok:
            return False, f"deliver click failed: {clicked.reason}", None
        if not observer.wait_visible(L.DELIVER_CONFIRM_BUTTON, t.element_visible):
            return False, "deliver confirmation dialog not shown", None
        confirmed = page.click(L.DELIVER_CONFIRM_BUTTON)
        if not confirmed.ok:
            return False, f"deliver confirm click failed: {confirmed.reason}", None
        if not observer.wait_loading_cleared(t.loading_clear):
            return False, f"page still loading after deliver (timeout {t.loading_clear:.0f}s)", None
        banner = observer.wait_banner(t.deliver_banner)
        if banner.kind == BANNER_ERROR:
            return False, banner.text or "deliver error", banner.kind
        return True, "", banner.kind

    return _run_with_retries(ctx, DELIVER, attempt)


__all__ = ["deliver_listing", "save_listing"]

"""Import-from-link sub-protocol for the Floor Plans and Files rows.

Per asset, up to `max_attempts` attempts of:
preflight -> open "From link" -> fill + read back -> (titles toggle) -> Import
-> debounced readiness -> commit -> modal close -> verify (reload once).

Preflight runs before every attempt, so a retry after a partial failure never
attaches the same file twice.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .. import errors
from ..dedup import extract_decoded_filename, url_fragment
from ..errors import DeliveryError
from ..ui import locators as L
from ..ui.observer import ERROR_BANNER, READY, TIMEOUT_IN_PROGRESS
from .context import StepContext
from .results import ASSET_FAILED, IMPORTED, SKIPPED, AssetOutcome, BatchOutcome

logger = logging.getLogger("delivery.import")

PHASE_PREFLIGHT = "preflight_check"
PHASE_SKIPPED = "skipped_exists"
PHASE_MODAL_OPEN = "modal_open"
PHASE_IMPORT_CLICKED = "import_clicked"
PHASE_ADD_ENABLED = "add_enabled"
PHASE_ADD_CLICKED = "add_clicked"
PHASE_VERIFY = "verify"

_MIN_FRAGMENT_LEN = 8


@dataclass(frozen=True)
class _Attempt:
    status: str
    code: str = ""
    reason: str = ""

    @classmethod
    def ok(cls) -> _Attempt:
        return cls(IMPORTED)

    @classmethod
    def retry(cls, code: str, reason: str) -> _Attempt:
        return cls("retry", code, reason)

    @classmethod
    def fatal(cls, code: str, reason: str) -> _Attempt:
        return cls("fatal", code, reason)


def asset_needles(url: str) -> list[str]:
    """Strings whose presence in the row proves the asset is attached."""
    needles: list[str] = []
    filename = extract_decoded_filename(url).strip()
    if filename:
        needles.append(filename)
    fragment = url_fragment(url).strip()
    # Short stems ("a", "plan") would match unrelated items.
    if len(fragment) >= _MIN_FRAGMENT_LEN and fragment not in needles:
        needles.append(fragment)
    return needles or [url]


class AssetImporter:
    def __init__(self, ctx: StepContext, *, step: str, section: str, row: str, set_titles: bool = False) -> None:
        self.ctx = ctx
        self.step = step
        self.section = section
        self.row = row
        self.set_titles = set_titles

    def _present(self, needles: list[str]) -> bool:
        return self.ctx.page.row_contains(self.row, needles)

    def _progress(self, index: int, total: int, phase: str, filename: str) -> None:
        self.ctx.reporter.progress(
            self.step, section=self.section, index=index, total=total, phase=phase, filename=filename
        )

    def import_all(self, urls: list[str]) -> BatchOutcome:
        batch = BatchOutcome(section=self.section, total=len(urls))
        for index, url in enumerate(urls, start=1):
            outcome = self.import_one(url, index, len(urls))
            batch.assets.append(outcome)
            if outcome.status == ASSET_FAILED:
                batch.error = outcome.error
                break
            if index < len(urls):
                self.ctx.clock.sleep(self.ctx.timeouts.between_assets)
        logger.info(
            "import_batch run_id=%s section=%s total=%d imported=%d skipped=%d failed=%s",
            self.ctx.run_id,
            self.section,
            batch.total,
            batch.imported,
            batch.skipped,
            batch.error is not None,
        )
        return batch

    def import_one(self, url: str, index: int, total: int) -> AssetOutcome:
        filename = extract_decoded_filename(url) or url
        needles = asset_needles(url)
        max_attempts = self.ctx.timeouts.max_attempts
        last = _Attempt.retry(errors.ACTION_FAILED, "not attempted")

        for attempt in range(1, max_attempts + 1):
            self._progress(index, total, PHASE_PREFLIGHT, filename)
            if self._present(needles):
                self._progress(index, total, PHASE_SKIPPED, filename)
                logger.info("import_skip_existing run_id=%s file=%s attempt=%d", self.ctx.run_id, filename, attempt)
                return AssetOutcome(url=url, filename=filename, status=SKIPPED, attempts=attempt - 1)

            last = self._attempt(url, index, total, filename, needles)
            if last.status == IMPORTED:
                logger.info("import_verified run_id=%s file=%s attempt=%d", self.ctx.run_id, filename, attempt)
                return AssetOutcome(url=url, filename=filename, status=IMPORTED, attempts=attempt)

            logger.warning(
                "import_attempt_failed run_id=%s file=%s attempt=%d/%d code=%s reason=%s",
                self.ctx.run_id,
                filename,
                attempt,
                max_attempts,
                last.code,
                last.reason,
            )
            self.ctx.reporter.evidence(f"{self.step}_{index}_attempt{attempt}", self.ctx.page, last.reason)
            self.ctx.close_modals()

            if last.status == "fatal":
                error = DeliveryError(last.code, f"{filename}: {last.reason}", details={"url": url, "attempt": attempt})
                return AssetOutcome(url=url, filename=filename, status=ASSET_FAILED, attempts=attempt, error=error)
            if attempt < max_attempts:
                self.ctx.clock.sleep(self.ctx.timeouts.retry_delay)

        error = DeliveryError(
            errors.ACTION_FAILED,
            f"{self.section} import failed for {filename} after {max_attempts} attempts: {last.reason}",
            True,
            {"url": url, "last_code": last.code},
        )
        return AssetOutcome(url=url, filename=filename, status=ASSET_FAILED, attempts=max_attempts, error=error)

    def _fill_checked(self, url: str) -> bool:
        page = self.ctx.page
        if not page.fill(L.URL_INPUT, url).ok:
            return False
        if (page.read_value(L.URL_INPUT) or "").strip() == url:
            return True
        logger.info("url_readback_mismatch run_id=%s retyping slowly", self.ctx.run_id)
        if not page.fill(L.URL_INPUT, url, slow=True).ok:
            return False
        return (page.read_value(L.URL_INPUT) or "").strip() == url

    def _set_titles(self) -> _Attempt | None:
        page = self.ctx.page
        if not page.is_visible(L.SET_TITLES_TOGGLE):
            logger.warning("titles_toggle_missing run_id=%s", self.ctx.run_id)
            return None
        page.set_checked(L.SET_TITLES_TOGGLE, True)
        if page.is_checked(L.SET_TITLES_TOGGLE) is not True:
            return _Attempt.retry(errors.ACTION_FAILED, "titles toggle did not stay checked")
        return None

    def _attempt(self, url: str, index: int, total: int, filename: str, needles: list[str]) -> _Attempt:
        page = self.ctx.page
        observer = self.ctx.observer
        t = self.ctx.timeouts

        if not observer.wait_visible(L.ROW_ADD_BUTTON, t.element_visible, row=self.row):
            return _Attempt.retry(errors.ACTION_FAILED, f"add button for row {self.row!r} not visible")
        clicked = page.click(L.ROW_ADD_BUTTON, row=self.row)
        if not clicked.ok:
            return _Attempt.retry(errors.ACTION_FAILED, f"add button click failed: {clicked.reason}")
        self._progress(index, total, PHASE_MODAL_OPEN, filename)

        if not observer.wait_visible(L.FROM_LINK_BUTTON, t.element_visible):
            return _Attempt.retry(errors.ACTION_FAILED, "'From link' source not visible")
        if not page.click(L.FROM_LINK_BUTTON).ok:
            return _Attempt.retry(errors.ACTION_FAILED, "'From link' click failed")
        if not observer.wait_visible(L.URL_INPUT, t.element_visible):
            return _Attempt.retry(errors.ACTION_FAILED, "URL input not visible")

        if not self._fill_checked(url):
            return _Attempt.retry(errors.ACTION_FAILED, "URL input read-back mismatch")

        if self.set_titles:
            toggle_failure = self._set_titles()
            if toggle_failure is not None:
                return toggle_failure

        if not page.click(L.IMPORT_BUTTON).ok:
            return _Attempt.retry(errors.ACTION_FAILED, "import button click failed")
        self._progress(index, total, PHASE_IMPORT_CLICKED, filename)

        readiness = observer.wait_ready_for_commit(t.readiness)
        if readiness.status == ERROR_BANNER:
            return _Attempt.fatal(errors.CONTENT_REJECTED, readiness.state.error_text or "upload rejected")
        if readiness.status == TIMEOUT_IN_PROGRESS:
            return _Attempt.retry(errors.TIMEOUT, f"upload still in progress after {t.readiness:.0f}s")
        if readiness.status != READY:
            return _Attempt.retry(errors.ACTION_FAILED, f"commit control not ready ({readiness.state.summary()})")
        self._progress(index, total, PHASE_ADD_ENABLED, filename)

        committed = page.click(L.COMMIT_BUTTON)
        if not committed.ok:
            return _Attempt.retry(errors.ACTION_FAILED, f"commit click failed: {committed.reason}")
        self._progress(index, total, PHASE_ADD_CLICKED, filename)
        if not observer.wait_modal_closed(t.modal_close):
            logger.warning("modal_not_closed run_id=%s file=%s", self.ctx.run_id, filename)

        self._progress(index, total, PHASE_VERIFY, filename)
        if self.ctx.wait_present(lambda: self._present(needles), t.verify):
            return _Attempt.ok()

        logger.info("verify_reload run_id=%s file=%s", self.ctx.run_id, filename)
        page.reload()
        observer.wait_loading_cleared(t.loading_clear)
        if self.ctx.wait_present(lambda: self._present(needles), t.verify_after_reload):
            return _Attempt.ok()

        if not observer.wait_idle(t.idle_confirm):
            return _Attempt.retry(errors.TIMEOUT, "UI still busy; presence unconfirmed")
        if self._present(needles):
            return _Attempt.ok()
        return _Attempt.retry(errors.ACTION_FAILED, "asset not present after import (UI idle)")


__all__ = ["AssetImporter", "asset_needles"]

"""Listing edit page adapter.

Every UI call returns an explicit outcome (`ActionResult`, value or None)
instead of raising; the workflow branches on those outcomes. CDP transport
errors are folded into failed results so bounded waits keep polling.
"""

from __future__ import annotations

import base64
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from ..browser_session import BrowserSession
from ..http_client import HttpClientError
from .dom import build_script
from .locators import LOGIN_URL_MARKERS, ROW_ITEM_SELECTOR, Locator

logger = logging.getLogger("delivery.page")

# A needle only counts when it stands as a whole path segment or name: "1.png"
# must not be found inside "plan11.png".
_NAME_BEFORE = r"""(?:^|[\s/\\'"(=>])"""
_NAME_AFTER = r"""(?:$|[\s?#.'")&<,;])"""


def match_names(names: list[str], needles: list[str]) -> list[str]:
    """Needles that appear in any of `names` with filename boundaries (case-insensitive)."""
    lowered = [n.lower() for n in names if n]
    found: list[str] = []
    for needle in needles:
        key = str(needle or "").strip().lower()
        if not key:
            continue
        pattern = re.compile(_NAME_BEFORE + re.escape(key) + _NAME_AFTER)
        if any(pattern.search(name) for name in lowered):
            found.append(needle)
    return found


@dataclass(frozen=True)
class ActionResult:
    ok: bool
    reason: str = ""
    detail: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, **detail: Any) -> ActionResult:
        return cls(True, "", dict(detail))

    @classmethod
    def failure(cls, reason: str, **detail: Any) -> ActionResult:
        return cls(False, reason, dict(detail))


_SIGNALS_BODY = r"""
const visible = (sel) => __dlQueryAllDeep(sel, 300).filter(__dlIsVisible);

let progressActive = false;
let progressPercent = null;
for (const el of visible('uc-progress-bar, [role=progressbar], .uc-progress-bar')) {
  let pct = null;
  const now = el.getAttribute('aria-valuenow') || el.getAttribute('value');
  if (now !== null && now !== '' && !isNaN(Number(now))) pct = Number(now);
  if (pct === null) {
    const bar = el.querySelector ? (el.querySelector('[style*="width"]') || el) : el;
    const m = String((bar.style && bar.style.width) || '').match(/([\d.]+)%/);
    if (m) pct = Number(m[1]);
  }
  progressPercent = pct === null ? progressPercent : (progressPercent === null ? pct : Math.min(progressPercent, pct));
  if (pct === null || pct < 100) progressActive = true;
}

const hasSkeletonLoader = visible(
  '[class*="skeleton"], uc-file-item[data-state="uploading"], uc-file-item[data-state="processing"]'
).length > 0;

let hasModalSpinner = visible('uc-activity-icon, uc-spinner').length > 0;
for (const dlg of visible('uc-file-uploader-inline, [role=dialog], dialog[open]')) {
  if (__dlQueryAllDeep('[class*="spinner"], [class*="animate-spin"]', 50, dlg).some(__dlIsVisible)) hasModalSpinner = true;
}

const staged = visible('uc-file-item');
const realName = (item) => {
  const state = String(item.getAttribute('data-state') || '').toLowerCase();
  if (state === 'idle' || state === 'done' || state === 'finished' || state === 'success') return true;
  const nameEl = __dlQueryAllDeep('.uc-file-name', 5, item)[0];
  const name = __dlText(nameEl);
  if (name && !/^https?:/i.test(name) && !/^loading/i.test(name) && !/\.\.\.$/.test(name)) return true;
  return __dlQueryAllDeep('img[src], .uc-thumb[style*="url"]', 5, item).length > 0;
};
const hasStagedItem = staged.length > 0;
const hasRealFilename = hasStagedItem && staged.every(realName);

const commit = __dlResolve(commitCandidates, null);
const commitVisible = !!commit;
const commitEnabled = commitVisible && __dlEnabled(commit.el);

const bannerTexts = visible('[role=alert], [class*="toast"], [class*="notification"], [class*="alert"]')
  .map(__dlText)
  .filter(Boolean);
const errorText = bannerTexts.find((t) => /error|failed|invalid/i.test(t)) || null;
const successText = bannerTexts.find((t) => /success|saved|imported|added|delivered|updated/i.test(t)) || null;

const modalOpen = visible('uc-file-uploader-inline, uc-modal[open], [role=dialog], dialog[open]').length > 0;
const pageLoading = document.readyState !== 'complete'
  || visible('[class*="animate-pulse"], [aria-busy="true"]').length > 0
  || hasSkeletonLoader;

return {
  progressActive, progressPercent, hasSkeletonLoader, hasModalSpinner,
  hasStagedItem, hasRealFilename, commitVisible, commitEnabled,
  hasErrorBanner: !!errorText, errorText, hasSuccessBanner: !!successText, successText,
  modalOpen, pageLoading, stagedCount: staged.length,
};
"""

_PROBE_BODY = r"""
const hit = __dlResolve(candidates, rowLabel);
if (hit && scroll) {
  try { hit.el.scrollIntoView({ block: 'center', inline: 'center' }); } catch (e) {}
}
return __dlDescribe(hit);
"""

_FOCUS_CLEAR_BODY = r"""
const hit = __dlResolve(candidates, rowLabel);
if (!hit) return { found: false };
const el = hit.el;
el.scrollIntoView({ block: 'center' });
el.focus();
const proto = el.tagName === 'TEXTAREA' ? HTMLTextAreaElement.prototype : HTMLInputElement.prototype;
const setter = Object.getOwnPropertyDescriptor(proto, 'value').set;
setter.call(el, '');
el.dispatchEvent(new Event('input', { bubbles: true }));
return { found: true, enabled: __dlEnabled(el) };
"""

_SET_VALUE_BODY = r"""
const hit = __dlResolve(candidates, rowLabel);
if (!hit) return { found: false };
const el = hit.el;
if (el.tagName === 'SELECT') {
  const opts = Array.from(el.options || []);
  const want = String(value).toLowerCase();
  const wantLabel = String(label || '').toLowerCase();
  const opt = opts.find((o) => String(o.value).toLowerCase() === want)
    || opts.find((o) => wantLabel && __dlText(o).toLowerCase() === wantLabel)
    || opts.find((o) => __dlText(o).toLowerCase().includes(want));
  if (!opt) return { found: true, matched: false, options: opts.map((o) => o.value) };
  const setter = Object.getOwnPropertyDescriptor(HTMLSelectElement.prototype, 'value').set;
  setter.call(el, opt.value);
} else {
  const proto = el.tagName === 'TEXTAREA' ? HTMLTextAreaElement.prototype : HTMLInputElement.prototype;
  Object.getOwnPropertyDescriptor(proto, 'value').set.call(el, String(value));
}
el.dispatchEvent(new Event('input', { bubbles: true }));
el.dispatchEvent(new Event('change', { bubbles: true }));
return { found: true, matched: true, value: el.value };
"""

_ROW_BODY = r"""
const row = __dlRowRoot(rowLabel);
if (!row) return { found: false, count: 0, names: [] };
const items = __dlQueryAllDeep(itemSelector, 2000, row).filter(__dlIsVisible);
const names = new Set();
const add = (v) => {
  if (!v) return;
  const s = String(v).trim();
  if (!s) return;
  names.add(s);
  try { names.add(decodeURIComponent(s)); } catch (e) {}
};
if (wantNames) {
  for (const el of __dlQueryAllDeep('*', 4000, row)) {
    for (const attr of ['alt', 'title', 'src', 'href', 'data-filename', 'aria-label']) {
      add(el.getAttribute && el.getAttribute(attr));
    }
  }
  for (const item of items) add(__dlText(item));
  for (const line of __dlText(row).split('\n')) add(line);
}
return { found: true, count: items.length, names: Array.from(names).slice(0, 5000) };
"""


class ListingPage:
    def __init__(self, session: BrowserSession, *, timeout: float = 60.0) -> None:
        self.session = session
        self.timeout = float(timeout)

    def _eval(self, body: str, **args: Any) -> Any:
        try:
            return self.session.eval_js(build_script(body, **args))
        except HttpClientError as exc:
            logger.debug("page_eval_failed error=%s", exc)
            return None

    # Navigation

    def navigate(self, url: str) -> ActionResult:
        try:
            self.session.navigate(url, wait_load=True, timeout=self.timeout)
        except HttpClientError as exc:
            return ActionResult.failure(f"navigation error: {exc}")
        return ActionResult.success(url=url)

    def reload(self) -> ActionResult:
        try:
            loaded = self.session.reload(timeout=self.timeout)
        except HttpClientError as exc:
            return ActionResult.failure(f"reload error: {exc}")
        return ActionResult.success(loaded=loaded)

    def current_url(self) -> str:
        try:
            return self.session.get_url()
        except HttpClientError:
            return ""

    def on_login_page(self) -> bool:
        url = self.current_url().lower()
        return any(marker in url for marker in LOGIN_URL_MARKERS)

    # Probes

    def probe(self, locator: Locator, row: str | None = None, *, scroll: bool = False) -> dict[str, Any] | None:
        res = self._eval(_PROBE_BODY, candidates=locator.to_js(), rowLabel=row, scroll=scroll)
        if not isinstance(res, dict) or not res.get("found"):
            return None
        return res

    def is_visible(self, locator: Locator, row: str | None = None) -> bool:
        return self.probe(locator, row) is not None

    def read_value(self, locator: Locator) -> str | None:
        res = self.probe(locator)
        return None if res is None else res.get("value")

    def is_checked(self, locator: Locator) -> bool | None:
        res = self.probe(locator)
        return None if res is None else res.get("checked")

    def ui_signals(self, commit: Locator) -> dict[str, Any]:
        res = self._eval(_SIGNALS_BODY, commitCandidates=commit.to_js())
        return res if isinstance(res, dict) else {}

    def row_state(self, row: str, needles: list[str] | None = None) -> dict[str, Any]:
        needles = [n for n in needles or [] if n]
        res = self._eval(_ROW_BODY, rowLabel=row, itemSelector=ROW_ITEM_SELECTOR, wantNames=bool(needles))
        if not isinstance(res, dict) or not res.get("found"):
            return {"found": False, "count": 0, "matches": []}
        names = [str(v) for v in res.get("names") or []]
        return {"found": True, "count": int(res.get("count") or 0), "matches": match_names(names, needles)}

    def row_count(self, row: str) -> int | None:
        state = self.row_state(row)
        return int(state.get("count") or 0) if state.get("found") else None

    def row_contains(self, row: str, needles: list[str]) -> bool:
        state = self.row_state(row, needles)
        return bool(state.get("matches"))

    # Actions

    def click(self, locator: Locator, row: str | None = None) -> ActionResult:
        res = self.probe(locator, row, scroll=True)
        if res is None:
            return ActionResult.failure("not_found", locator=locator.name)
        if not res.get("enabled", True):
            return ActionResult.failure("disabled", locator=locator.name)
        try:
            self.session.click(float(res["x"]), float(res["y"]))
        except (HttpClientError, KeyError, TypeError, ValueError) as exc:
            return ActionResult.failure(f"click error: {exc}", locator=locator.name)
        return ActionResult.success(locator=locator.name, candidate=res.get("candidate"))

    def fill(self, locator: Locator, text: str, *, slow: bool = False) -> ActionResult:
        """Clear the field, then type `text` (bulk insert, or per-character when slow)."""
        res = self._eval(_FOCUS_CLEAR_BODY, candidates=locator.to_js(), rowLabel=None)
        if not isinstance(res, dict) or not res.get("found"):
            return ActionResult.failure("not_found", locator=locator.name)
        try:
            if slow:
                self.session.type_text_slowly(text)
            else:
                self.session.type_text(text)
        except HttpClientError as exc:
            return ActionResult.failure(f"type error: {exc}", locator=locator.name)
        return ActionResult.success(locator=locator.name)

    def set_value(self, locator: Locator, value: str, *, label: str | None = None) -> ActionResult:
        """Set value through the native setter (works for selects and React-controlled inputs)."""
        res = self._eval(_SET_VALUE_BODY, candidates=locator.to_js(), rowLabel=None, value=value, label=label)
        if not isinstance(res, dict) or not res.get("found"):
            return ActionResult.failure("not_found", locator=locator.name)
        if not res.get("matched"):
            return ActionResult.failure("option_not_found", locator=locator.name, options=res.get("options"))
        return ActionResult.success(locator=locator.name, value=res.get("value"))

    def set_checked(self, locator: Locator, checked: bool = True) -> ActionResult:
        current = self.is_checked(locator)
        if current is None and not self.is_visible(locator):
            return ActionResult.failure("not_found", locator=locator.name)
        if current == checked:
            return ActionResult.success(locator=locator.name, changed=False)
        clicked = self.click(locator)
        if not clicked.ok:
            return clicked
        return ActionResult.success(locator=locator.name, changed=True)

    def press_key(self, key: str) -> ActionResult:
        try:
            self.session.press_key(key)
        except HttpClientError as exc:
            return ActionResult.failure(f"key error: {exc}")
        return ActionResult.success(key=key)

    def screenshot_png(self) -> bytes | None:
        try:
            data = self.session.screenshot("png")
        except HttpClientError as exc:
            logger.warning("screenshot_failed error=%s", exc)
            return None
        return base64.b64decode(data) if data else None


__all__ = ["ActionResult", "ListingPage"]

"""Shared JavaScript helpers evaluated in the listing page.

The uploader widget is assembled from `uc-*` custom elements, so every query
walks *open* shadow roots and same-origin iframes. Cross-origin frames are
skipped (access throws).
"""

from __future__ import annotations

import json
from typing import Any

from .locators import ROW_CONTAINER_SELECTORS, ROW_HEADING_SELECTOR

DEEP_QUERY_JS = r"""
const __dlCollectRoots = (start) => {
  const roots = [];
  const queue = [{ root: start, depth: 0 }];
  const MAX_ROOTS = 60;
  const MAX_DEPTH = 6;
  const MAX_SCAN = 6000;

  while (queue.length && roots.length < MAX_ROOTS) {
    const item = queue.shift();
    const root = item.root;
    if (!root || roots.includes(root)) continue;
    roots.push(root);
    if (item.depth >= MAX_DEPTH || !root.querySelectorAll) continue;

    let scanned = 0;
    for (const el of root.querySelectorAll('*')) {
      scanned += 1;
      if (scanned > MAX_SCAN) break;
      if (el.shadowRoot) queue.push({ root: el.shadowRoot, depth: item.depth + 1 });
      if (el.tagName === 'IFRAME' || el.tagName === 'FRAME') {
        try {
          const doc = el.contentDocument;
          if (doc) queue.push({ root: doc, depth: item.depth + 1 });
        } catch (e) {
          // cross-origin
        }
      }
    }
  }
  return roots;
};

const __dlIsVisible = (el) => {
  try {
    if (!el || !el.getBoundingClientRect) return false;
    const r = el.getBoundingClientRect();
    if (r.width <= 0 || r.height <= 0) return false;
    const style = globalThis.getComputedStyle ? globalThis.getComputedStyle(el) : null;
    if (!style) return true;
    if (style.display === 'none' || style.visibility === 'hidden') return false;
    if (Number(style.opacity || '1') === 0) return false;
    return true;
  } catch (e) {
    return false;
  }
};

const __dlQueryAllDeep = (selector, maxTotal, start) => {
  const roots = __dlCollectRoots(start || document);
  const out = [];
  const cap = typeof maxTotal === 'number' && maxTotal > 0 ? maxTotal : 1000;
  for (const r of roots) {
    try {
      out.push(...Array.from(r.querySelectorAll(selector)));
      if (out.length >= cap) break;
    } catch (e) {
      // invalid selector for this root
    }
  }
  return out.slice(0, cap);
};

const __dlText = (el) => ((el && (el.innerText || el.textContent || el.value)) || '').trim();

const __dlEnabled = (el) => {
  if (!el) return false;
  if (el.disabled) return false;
  const aria = el.getAttribute && el.getAttribute('aria-disabled');
  return aria !== 'true';
};
"""

ROW_JS = (
    r"""
const __dlRowHeadingSelector = """
    + json.dumps(ROW_HEADING_SELECTOR)
    + r""";
const __dlRowContainers = """
    + json.dumps(list(ROW_CONTAINER_SELECTORS))
    + r""";

const __dlRowRoot = (label) => {
  const want = String(label || '').trim().toLowerCase();
  if (!want) return null;
  for (const h of __dlQueryAllDeep(__dlRowHeadingSelector, 2000)) {
    if (__dlText(h).toLowerCase() !== want) continue;
    for (const sel of __dlRowContainers) {
      const row = h.closest(sel);
      if (row) return row;
    }
    if (h.parentElement) return h.parentElement;
  }
  return null;
};

const __dlResolve = (candidates, label) => {
  const scope = label ? __dlRowRoot(label) : null;
  for (let i = 0; i < candidates.length; i++) {
    const c = candidates[i];
    if (c.row && !scope) continue;
    const els = c.row ? __dlQueryAllDeep(c.selector, 500, scope) : __dlQueryAllDeep(c.selector, 500);
    const re = c.text ? new RegExp(c.text, 'i') : null;
    for (const el of els) {
      if (!__dlIsVisible(el)) continue;
      if (re && !re.test(__dlText(el))) continue;
      return { el, index: i };
    }
  }
  return null;
};

const __dlCheckbox = (el) => {
  if (!el) return null;
  if (el.type === 'checkbox') return el;
  const inner = el.querySelector && el.querySelector('input[type=checkbox]');
  if (inner) return inner;
  if (el.htmlFor) {
    const target = document.getElementById(el.htmlFor);
    if (target && target.type === 'checkbox') return target;
  }
  return null;
};

const __dlDescribe = (hit) => {
  if (!hit) return { found: false };
  const el = hit.el;
  const box = __dlCheckbox(el);
  let checked = null;
  if (box) checked = !!box.checked;
  else if (el.getAttribute && el.getAttribute('aria-checked') !== null) checked = el.getAttribute('aria-checked') === 'true';
  const r = el.getBoundingClientRect();
  return {
    found: true,
    candidate: hit.index,
    tag: String(el.tagName || '').toLowerCase(),
    text: __dlText(el).slice(0, 200),
    value: typeof el.value === 'string' ? el.value : null,
    enabled: __dlEnabled(el),
    checked,
    x: r.left + r.width / 2,
    y: r.top + r.height / 2,
  };
};
"""
)


def build_script(body: str, **args: Any) -> str:
    """Wrap `body` in an IIFE with helpers and JSON-encoded args bound as consts."""
    bindings = "\n".join(f"const {name} = {json.dumps(value)};" for name, value in args.items())
    return "(() => {\n" + DEEP_QUERY_JS + ROW_JS + bindings + "\n" + body + "\n})()"


__all__ = ["DEEP_QUERY_JS", "ROW_JS", "build_script"]

from __future__ import annotations

import time
from typing import Any

from .http_client import HttpClientError
from .session_cdp import CdpConnection

_KEY_CODES = {
    "Enter": 13,
    "Tab": 9,
    "Escape": 27,
    "Backspace": 8,
    "Delete": 46,
    "End": 35,
    "Home": 36,
}


class BrowserSession:
    """
    One listing tab driven over CDP.

    Wraps CdpConnection with the handful of operations the delivery workflow needs.
    """

    def __init__(self, connection: CdpConnection, tab_id: str, tab_url: str = ""):
        self.conn = connection
        self.tab_id = tab_id
        self.tab_url = tab_url
        self._enabled: set[str] = set()

    def close(self) -> None:
        self.conn.close()

    def set_default_timeout(self, timeout: float) -> None:
        """Bound every subsequent CDP command by `timeout` seconds."""
        self.conn.timeout = max(0.5, float(timeout))

    def enable_domains(self, *domains: str) -> None:
        """Enable CDP domains once per session (Page, Runtime, Network, ...)."""
        for domain in domains:
            if domain in self._enabled:
                continue
            self.conn.send(f"{domain}.enable", {})
            self._enabled.add(domain)

    def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        return self.conn.send(method, params)

    # Navigation

    def navigate(self, url: str, wait_load: bool = True, timeout: float = 30.0) -> str:
        """Navigate the tab; a CDP `errorText` (DNS, TLS, refused) raises HttpClientError."""
        self.enable_domains("Page")
        self.conn.clear_events("Page.loadEventFired")
        result = self.conn.send("Page.navigate", {"url": url})
        error_text = result.get("errorText") if isinstance(result, dict) else None
        if error_text:
            raise HttpClientError(f"navigation failed: {error_text}")
        if wait_load:
            self.wait_load(timeout)
        self.tab_url = url
        return url

    def wait_load(self, timeout: float = 30.0) -> bool:
        """True once `Page.loadEventFired` arrives within `timeout`."""
        return self.conn.wait_for_event("Page.loadEventFired", timeout) is not None

    def reload(self, ignore_cache: bool = False, timeout: float = 30.0) -> bool:
        self.enable_domains("Page")
        self.conn.clear_events("Page.loadEventFired")
        self.conn.send("Page.reload", {"ignoreCache": ignore_cache})
        return self.wait_load(timeout)

    # JavaScript

    def eval_js(self, expression: str) -> Any:
        """Evaluate JavaScript and return the JSON-serializable result."""
        self.enable_domains("Runtime")
        result = self.conn.send(
            "Runtime.evaluate",
            {
                "expression": expression,
                "returnByValue": True,
                "awaitPromise": True,
            },
        )
        if result.get("exceptionDetails"):
            details = result["exceptionDetails"]
            text = details.get("exception", {}).get("description") or details.get("text") or "exception"
            raise HttpClientError(f"Runtime.evaluate failed: {text}")
        value = result.get("result")
        if not isinstance(value, dict):
            return None
        # CDP reports undefined/null without a "value" field.
        if value.get("type") == "undefined" or value.get("subtype") == "null":
            return None
        return value.get("value")

    def get_url(self) -> str:
        return self.eval_js("window.location.href") or ""

    # Input

    def click(self, x: float, y: float, button: str = "left", click_count: int = 1) -> None:
        """Press and release at viewport coordinates (CSS pixels)."""
        for event_type in ("mousePressed", "mouseReleased"):
            self.conn.send(
                "Input.dispatchMouseEvent",
                {"type": event_type, "x": x, "y": y, "button": button, "clickCount": click_count},
            )

    def press_key(self, key: str, modifiers: int = 0) -> None:
        key_code = _KEY_CODES.get(key, ord(key[0].upper()) if len(key) == 1 else 0)
        for event_type in ("keyDown", "keyUp"):
            self.conn.send(
                "Input.dispatchKeyEvent",
                {
                    "type": event_type,
                    "key": key,
                    "code": f"Key{key.upper()}" if len(key) == 1 else key,
                    "windowsVirtualKeyCode": key_code,
                    "modifiers": modifiers,
                },
            )

    def type_text(self, text: str) -> None:
        """Insert text into the focused element in one command."""
        if text:
            self.conn.send("Input.insertText", {"text": str(text)})

    def type_text_slowly(self, text: str, delay: float = 0.05) -> None:
        """Type character by character; some inputs drop bulk insertText."""
        for char in text or "":
            self.conn.send("Input.dispatchKeyEvent", {"type": "char", "text": char})
            if delay > 0:
                time.sleep(delay)

    # Network / capture

    def set_cookies(self, cookies: list[dict[str, Any]]) -> None:
        self.enable_domains("Network")
        if cookies:
            self.conn.send("Network.setCookies", {"cookies": cookies})

    def screenshot(self, format: str = "png") -> str:
        """Viewport capture as base64; ListingPage decodes it for evidence."""
        result = self.conn.send("Page.captureScreenshot", {"format": format, "fromSurface": True})
        return result.get("data", "")


__all__ = ["BrowserSession"]

"""Authenticated browser sessions for delivery runs.

One `open()` == one isolated tab in a Chrome the manager launched (or attached
to), pre-seeded with the persisted cookie jar. Teardown always runs: tab,
websocket and launcher-owned Chrome are released on every exit path.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Generator
from contextlib import contextmanager, suppress
from pathlib import Path
from typing import Any
from urllib.error import URLError
from urllib.request import urlopen

from . import errors
from .browser_session import BrowserSession
from .config import DeliveryConfig
from .errors import DeliveryError, with_retry
from .http_client import HttpClientError
from .launcher import BrowserLauncher
from .session_cdp import CdpConnection
from .storage_state import load_storage_state, summarize_storage_state, to_cdp_cookies
from .ui.page import ListingPage

logger = logging.getLogger("delivery.session")


def _http_get_json(url: str, timeout: float = 2.0) -> Any:
    """GET one of Chrome's `/json/*` discovery endpoints."""
    try:
        with urlopen(url, timeout=timeout) as resp:
            return json.loads(resp.read().decode())
    except (URLError, OSError, ValueError) as e:
        raise HttpClientError(f"CDP discovery failed for {url}: {e}") from e


class SessionManager:
    def __init__(
        self,
        config: DeliveryConfig,
        *,
        launcher_factory: Callable[[DeliveryConfig], BrowserLauncher] = BrowserLauncher,
        connection_factory: Callable[..., CdpConnection] = CdpConnection,
    ) -> None:
        self.config = config
        self._launcher_factory = launcher_factory
        self._connection_factory = connection_factory

    def _get_targets(self, port: int) -> list:
        """Get list of browser targets."""
        try:
            return _http_get_json(f"http://127.0.0.1:{port}/json/list") or []
        except (HttpClientError, ValueError):
            return []

    @with_retry(max_attempts=3, delay=0.3)
    def _get_browser_ws(self, port: int) -> str:
        """Get browser-level WebSocket URL."""
        version = _http_get_json(f"http://127.0.0.1:{port}/json/version")
        ws_url = version.get("webSocketDebuggerUrl") if isinstance(version, dict) else None
        if not ws_url:
            raise HttpClientError("CDP browser WebSocket URL not found")
        return ws_url

    def _create_tab(self, port: int, url: str = "about:blank") -> str:
        """Create a new browser tab, return tab ID."""
        conn = self._connection_factory(self._get_browser_ws(port), timeout=5.0)
        try:
            result = conn.send("Target.createTarget", {"url": url})
            tab_id = result.get("targetId")
            if not tab_id:
                raise HttpClientError("Failed to create browser tab")
            return tab_id
        finally:
            conn.close()

    def _close_tab(self, port: int, tab_id: str) -> None:
        conn = self._connection_factory(self._get_browser_ws(port), timeout=5.0)
        try:
            conn.send("Target.closeTarget", {"targetId": tab_id})
        finally:
            conn.close()

    def _get_tab_ws_url(self, port: int, tab_id: str) -> str | None:
        """Get WebSocket URL for specific tab."""
        for target in self._get_targets(port):
            if target.get("id") == tab_id:
                return target.get("webSocketDebuggerUrl")
        return None

    def check_credentials(self, storage_state_path: str | Path | None = None) -> dict[str, Any]:
        """Load and validate the credential artifact (raises AuthRequired)."""
        return load_storage_state(storage_state_path or self.config.storage_state_path)

    @contextmanager
    def open(self, storage_state_path: str | Path | None = None) -> Generator[ListingPage, None, None]:
        """Yield an authenticated page; always tears down on exit."""
        state = self.check_credentials(storage_state_path)

        launcher = self._launcher_factory(self.config)
        session: BrowserSession | None = None
        tab_id: str | None = None
        try:
            launched = launcher.ensure_running()
            if not launcher.cdp_ready():
                raise DeliveryError(errors.INTERNAL_ERROR, f"Browser unavailable: {launched.message}", True)

            tab_id = self._create_tab(launcher.port)
            ws_url = self._get_tab_ws_url(launcher.port, tab_id)
            if not ws_url:
                raise DeliveryError(errors.INTERNAL_ERROR, "Tab WebSocket URL not found", True)

            conn = self._connection_factory(ws_url, timeout=self.config.browser_timeout)
            session = BrowserSession(conn, tab_id)
            session.set_default_timeout(self.config.browser_timeout)
            session.enable_domains("Page", "Runtime", "Network")
            session.set_cookies(to_cdp_cookies(state))
            logger.info(
                "session_opened tab=%s port=%s cookies=%d", tab_id, launcher.port, len(state.get("cookies") or [])
            )
            yield ListingPage(session, timeout=self.config.browser_timeout)
        except HttpClientError as exc:
            raise DeliveryError(errors.INTERNAL_ERROR, f"Browser session failed: {exc}", True) from exc
        finally:
            if session is not None:
                with suppress(Exception):
                    session.close()
            if tab_id is not None and not launcher.process:
                # Attached browsers outlive us; close our tab explicitly.
                with suppress(Exception):
                    self._close_tab(launcher.port, tab_id)
            launcher.stop()
            logger.info("session_closed tab=%s", tab_id)


def storage_state_status(path: str | Path) -> dict[str, Any]:
    """Summary used by readiness/auth endpoints; never raises."""
    p = Path(path)
    if not p.exists():
        return {"exists": False, "valid": False, "path": str(p)}
    try:
        state = load_storage_state(p)
    except DeliveryError as exc:
        return {"exists": True, "valid": False, "path": str(p), "error": exc.message}
    return {"exists": True, "valid": True, "path": str(p), **summarize_storage_state(state)}


__all__ = ["SessionManager", "storage_state_status"]

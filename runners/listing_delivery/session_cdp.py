"""Synchronous CDP transport over one websocket (page or browser target)."""

from __future__ import annotations

import json
import socket
import time
from collections import deque
from collections.abc import Callable
from contextlib import suppress
from typing import Any

import websocket

from .http_client import HttpClientError

_EVENT_BUFFER = 500


class CdpConnection:
    """One CDP websocket. Commands block until their response arrives.

    Events that arrive while a command is in flight are buffered (bounded) so a
    later `wait_for_event` still sees them.
    """

    def __init__(self, ws_url: str, timeout: float = 5.0):
        self.ws_url = ws_url
        self.timeout = timeout
        self.ws = websocket.create_connection(ws_url, timeout=timeout)
        self._ids = 0
        self._events: deque[dict[str, Any]] = deque(maxlen=_EVENT_BUFFER)

    def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        self._ids += 1
        msg_id = self._ids
        frame: dict[str, Any] = {"id": msg_id, "method": method}
        if params:
            frame["params"] = params
        try:
            self.ws.settimeout(max(0.5, float(self.timeout)))
            self.ws.send(json.dumps(frame))
        except (websocket.WebSocketException, OSError) as exc:
            raise HttpClientError(f"{method}: {exc}") from exc

        reply = self._read_until(lambda m: m.get("id") == msg_id, self.timeout)
        if reply is None:
            raise HttpClientError(f"CDP response timed out ({method})")
        if "error" in reply:
            raise HttpClientError(f"{method}: {reply['error']}")
        return reply.get("result") or {}

    def wait_for_event(self, event_name: str, timeout: float = 10.0) -> dict | None:
        """Return the params of the next `event_name` event, or None on timeout."""
        for event in list(self._events):
            if event.get("method") == event_name:
                self._events.remove(event)
                return event.get("params") or {}
        event = self._read_until(lambda m: m.get("method") == event_name, timeout)
        return None if event is None else (event.get("params") or {})

    def clear_events(self, event_name: str) -> None:
        kept = [e for e in self._events if e.get("method") != event_name]
        self._events.clear()
        self._events.extend(kept)

    def _read_until(self, match: Callable[[dict[str, Any]], bool], timeout: float) -> dict[str, Any] | None:
        deadline = time.monotonic() + max(0.0, timeout)
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            message = self._recv(remaining)
            if message is None:
                continue
            if match(message):
                return message
            if "id" not in message and isinstance(message.get("method"), str):
                self._events.append(message)

    def _recv(self, remaining: float) -> dict[str, Any] | None:
        try:
            self.ws.settimeout(min(0.5, remaining))
            raw = self.ws.recv()
        except (websocket.WebSocketTimeoutException, TimeoutError):
            return None
        except (websocket.WebSocketException, OSError) as exc:
            raise HttpClientError(f"CDP socket error: {exc}") from exc
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            return None
        return message if isinstance(message, dict) else None

    def close(self) -> None:
        # websocket-client's close handshake can block on a dead peer; drop the socket instead.
        sock = getattr(self.ws, "sock", None)
        if sock is None:
            return
        with suppress(OSError):
            sock.shutdown(socket.SHUT_RDWR)
        with suppress(OSError):
            sock.close()


__all__ = ["CdpConnection"]

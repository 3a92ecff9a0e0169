"""Signed terminal-status callbacks.

Signature: hex(HMAC-SHA256(secret, f"{timestamp}.{raw_body}")), timestamp in
unix milliseconds. The body is serialized once and sent byte-for-byte as
signed.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from collections.abc import Callable
from typing import Any

from ..http_client import HttpClientError, http_post_json
from .models import Run

logger = logging.getLogger("delivery.callback")

TIMESTAMP_HEADER = "X-Delivery-Timestamp"
SIGNATURE_HEADER = "X-Delivery-Signature"


def sign(timestamp: str, raw_body: str, secret: str) -> str:
    mac = hmac.new(secret.encode("utf-8"), f"{timestamp}.{raw_body}".encode(), hashlib.sha256)
    return mac.hexdigest()


def signed_headers(raw_body: str, secret: str, *, now_ms: int | None = None) -> dict[str, str]:
    timestamp = str(int(time.time() * 1000) if now_ms is None else now_ms)
    return {
        "Content-Type": "application/json",
        TIMESTAMP_HEADER: timestamp,
        SIGNATURE_HEADER: sign(timestamp, raw_body, secret),
    }


def verify_signature(
    timestamp: str,
    raw_body: str,
    signature: str,
    secret: str,
    *,
    max_age_seconds: float | None = None,
    now_ms: int | None = None,
) -> bool:
    """Constant-time check; optionally reject timestamps older than `max_age_seconds`."""
    if max_age_seconds is not None:
        try:
            ts = int(timestamp)
        except (TypeError, ValueError):
            return False
        now = int(time.time() * 1000) if now_ms is None else now_ms
        if abs(now - ts) > max_age_seconds * 1000:
            return False
    expected = sign(timestamp, raw_body, secret)
    return hmac.compare_digest(expected, (signature or "").strip().lower())


def callback_body(run: Run) -> dict[str, Any]:
    body: dict[str, Any] = {
        "run_id": run.run_id,
        "idempotency_key": run.idempotency_key,
        "status": run.status,
        "assets_found": run.assets_found,
        "actions_performed": run.actions_performed,
        "evidence": run.evidence,
        "completed_at": run.completed_at,
    }
    if run.error:
        body["error"] = run.error
    return body


class CallbackNotifier:
    def __init__(self, *, timeout: float = 30.0, post: Callable[..., dict[str, Any]] = http_post_json) -> None:
        self.timeout = timeout
        self._post = post

    def send(self, run: Run) -> bool:
        """POST the terminal status. Failures are logged, never raised."""
        callbacks = (run.manifest or {}).get("callbacks") or {}
        url = callbacks.get("status_webhook_url")
        secret = callbacks.get("status_webhook_secret")
        if not url or not secret:
            logger.debug("callback_skipped run_id=%s reason=not_configured", run.run_id)
            return False

        raw = json.dumps(callback_body(run), separators=(",", ":"), ensure_ascii=False)
        headers = signed_headers(raw, secret)
        try:
            res = self._post(url, raw, headers=headers, timeout=self.timeout)
        except HttpClientError as exc:
            logger.error("callback_failed run_id=%s url=%s error=%s", run.run_id, url, exc)
            return False
        status = int(res.get("status") or 0)
        if not 200 <= status < 300:
            logger.warning("callback_rejected run_id=%s url=%s status=%d", run.run_id, url, status)
            return False
        logger.info("callback_sent run_id=%s status=%s", run.run_id, run.status)
        return True


__all__ = [
    "SIGNATURE_HEADER",
    "TIMESTAMP_HEADER",
    "CallbackNotifier",
    "callback_body",
    "sign",
    "signed_headers",
    "verify_signature",
]

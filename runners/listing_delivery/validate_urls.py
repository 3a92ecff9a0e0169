"""Pre-flight reachability and content-type checks for asset URLs.

Runs before any browser work so a dead CDN link fails fast with a clear code
instead of surfacing as an opaque import timeout.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any

from . import errors
from .errors import DeliveryError
from .http_client import HttpClientError, http_probe

logger = logging.getLogger("delivery.validate")

FLOORPLAN_CONTENT_TYPES = ("image/jpeg", "image/png", "image/jpg")
RMS_CONTENT_TYPES = ("application/pdf",)

MAX_ATTEMPTS = 2
RETRY_DELAY = 1.0
MAX_WORKERS = 8

KIND_FLOORPLAN = "floorplan"
KIND_RMS = "rms"
KIND_TOUR = "tour"

Probe = Callable[..., dict[str, Any]]


@dataclass(frozen=True)
class UrlCheck:
    url: str
    kind: str
    valid: bool
    content_type: str | None = None
    error: str | None = None
    type_mismatch: bool = False

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"url": self.url, "kind": self.kind, "valid": self.valid}
        if self.content_type:
            out["content_type"] = self.content_type
        if self.error:
            out["error"] = self.error
        return out


def _base_content_type(headers: dict[str, Any]) -> str:
    for key, value in headers.items():
        if str(key).lower() == "content-type":
            return str(value).split(";")[0].strip().lower()
    return ""


class UrlValidator:
    def __init__(
        self,
        *,
        timeout: float = 10.0,
        is_host_allowed: Callable[[str], bool] | None = None,
        probe: Probe = http_probe,
        sleep: Callable[[float], None] = time.sleep,
        retry_delay: float = RETRY_DELAY,
    ) -> None:
        self.timeout = timeout
        self.is_host_allowed = is_host_allowed
        self.probe = probe
        self.sleep = sleep
        self.retry_delay = retry_delay

    def _fetch(self, url: str) -> dict[str, Any]:
        res = self.probe(url, method="HEAD", timeout=self.timeout, is_host_allowed=self.is_host_allowed)
        if res.get("status") in (405, 501):
            # Some origins refuse HEAD; ask for a single byte instead.
            res = self.probe(
                url,
                method="GET",
                timeout=self.timeout,
                headers={"Range": "bytes=0-0"},
                is_host_allowed=self.is_host_allowed,
            )
        return res

    def check(self, url: str, kind: str) -> UrlCheck:
        expected = {KIND_FLOORPLAN: FLOORPLAN_CONTENT_TYPES, KIND_RMS: RMS_CONTENT_TYPES}.get(kind)
        last_error = "not attempted"
        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                res = self._fetch(url)
            except HttpClientError as exc:
                last_error = str(exc)
            else:
                status = int(res.get("status") or 0)
                content_type = _base_content_type(res.get("headers") or {})
                if 200 <= status < 400 and expected is None:
                    return UrlCheck(url, kind, True, content_type or None)
                if 200 <= status < 300:
                    if any(t in content_type for t in expected or ()):
                        return UrlCheck(url, kind, True, content_type)
                    logger.warning("content_type_mismatch url=%s kind=%s content_type=%s", url, kind, content_type)
                    return UrlCheck(
                        url,
                        kind,
                        False,
                        content_type or None,
                        f"expected content type {' or '.join(expected or ())}, got {content_type or 'none'}",
                        type_mismatch=True,
                    )
                last_error = f"HTTP {status}"
            logger.warning("url_check_failed url=%s kind=%s attempt=%d error=%s", url, kind, attempt, last_error)
            if attempt < MAX_ATTEMPTS:
                self.sleep(self.retry_delay)
        return UrlCheck(url, kind, False, error=f"unreachable after {MAX_ATTEMPTS} attempts: {last_error}")

    def validate(
        self,
        floorplan_urls: list[str],
        rms_urls: list[str],
        tour_url: str | None = None,
        *,
        run_id: str | None = None,
    ) -> dict[str, int]:
        """Check every URL concurrently; raise DeliveryError listing all failures.

        Returns the asset counts recorded on the run as `assets_found`.
        """
        jobs = [(u, KIND_FLOORPLAN) for u in floorplan_urls] + [(u, KIND_RMS) for u in rms_urls]
        if tour_url:
            jobs.append((tour_url, KIND_TOUR))
        logger.info(
            "validate_urls run_id=%s floorplans=%d rms=%d tour=%s", run_id, len(floorplan_urls), len(rms_urls), bool(tour_url)
        )
        results: list[UrlCheck] = []
        if jobs:
            with ThreadPoolExecutor(max_workers=min(MAX_WORKERS, len(jobs))) as pool:
                results = list(pool.map(lambda job: self.check(*job), jobs))

        failed = [r for r in results if not r.valid]
        if failed:
            mismatch = any(r.type_mismatch for r in failed)
            message = "; ".join(f"{r.url}: {r.error}" for r in failed)
            logger.error("validate_urls_failed run_id=%s failed=%d mismatch=%s", run_id, len(failed), mismatch)
            raise DeliveryError(
                errors.ASSET_TYPE_MISMATCH if mismatch else errors.ASSET_VALIDATION_FAILED,
                f"URL validation failed: {message}",
                not mismatch,
                {"failed": [r.to_dict() for r in failed]},
            )
        return {"floorplans": len(floorplan_urls), "rms": len(rms_urls), "tour_3d": 1 if tour_url else 0}


__all__ = [
    "FLOORPLAN_CONTENT_TYPES",
    "RMS_CONTENT_TYPES",
    "UrlCheck",
    "UrlValidator",
]

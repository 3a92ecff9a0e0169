from __future__ import annotations

from typing import Any

import pytest

from runners.listing_delivery import errors
from runners.listing_delivery.errors import DeliveryError
from runners.listing_delivery.http_client import HttpClientError
from runners.listing_delivery.validate_urls import UrlValidator


class FakeProbe:
    def __init__(self, responses: dict[str, list[Any]]) -> None:
        self.responses = responses
        self.calls: list[tuple[str, str, dict[str, str] | None]] = []

    def __call__(self, url: str, *, method: str = "HEAD", timeout: float = 10.0, headers=None, is_host_allowed=None):  # noqa: ANN001, ANN204
        self.calls.append((url, method, headers))
        queue = self.responses[f"{method} {url}"]
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        status, content_type = item
        return {"status": status, "headers": {"Content-Type": content_type}, "body": b""}


def _validator(probe: FakeProbe) -> tuple[UrlValidator, list[float]]:
    sleeps: list[float] = []
    return UrlValidator(probe=probe, sleep=sleeps.append, retry_delay=1.0), sleeps


def test_all_valid_returns_counts() -> None:
    probe = FakeProbe(
        {
            "HEAD https://cdn.test/fp.jpg": [(200, "image/jpeg")],
            "HEAD https://cdn.test/r.pdf": [(200, "application/pdf; charset=binary")],
            "HEAD https://tour.test/t": [(302, "text/html")],
        }
    )
    validator, sleeps = _validator(probe)

    counts = validator.validate(["https://cdn.test/fp.jpg"], ["https://cdn.test/r.pdf"], "https://tour.test/t", run_id="r1")

    assert counts == {"floorplans": 1, "rms": 1, "tour_3d": 1}
    assert sleeps == []


def test_head_not_allowed_falls_back_to_ranged_get() -> None:
    probe = FakeProbe(
        {
            "HEAD https://cdn.test/fp.png": [(405, "")],
            "GET https://cdn.test/fp.png": [(206, "image/png")],
        }
    )
    validator, _ = _validator(probe)

    check = validator.check("https://cdn.test/fp.png", "floorplan")

    assert check.valid
    assert probe.calls[1] == ("https://cdn.test/fp.png", "GET", {"Range": "bytes=0-0"})


def test_wrong_content_type_is_not_retried() -> None:
    probe = FakeProbe({"HEAD https://cdn.test/r.pdf": [(200, "text/html")]})
    validator, sleeps = _validator(probe)

    with pytest.raises(DeliveryError) as exc_info:
        validator.validate([], ["https://cdn.test/r.pdf"])

    err = exc_info.value
    assert err.code == errors.ASSET_TYPE_MISMATCH
    assert err.retryable is False
    assert err.details["failed"][0]["content_type"] == "text/html"
    assert len(probe.calls) == 1
    assert sleeps == []


def test_unreachable_retried_once_then_fails_retryable() -> None:
    probe = FakeProbe(
        {
            "HEAD https://cdn.test/gone.jpg": [(404, "text/html")],
            "HEAD https://cdn.test/ok.jpg": [(200, "image/jpeg")],
        }
    )
    validator, sleeps = _validator(probe)

    with pytest.raises(DeliveryError) as exc_info:
        validator.validate(["https://cdn.test/gone.jpg", "https://cdn.test/ok.jpg"], [])

    err = exc_info.value
    assert err.code == errors.ASSET_VALIDATION_FAILED
    assert err.retryable is True
    assert [f["url"] for f in err.details["failed"]] == ["https://cdn.test/gone.jpg"]
    assert "HTTP 404" in err.message
    assert sleeps == [1.0]


def test_transport_error_then_success() -> None:
    probe = FakeProbe({"HEAD https://cdn.test/fp.jpg": [HttpClientError("reset"), (200, "image/jpeg")]})
    validator, sleeps = _validator(probe)

    assert validator.check("https://cdn.test/fp.jpg", "floorplan").valid
    assert sleeps == [1.0]

from __future__ import annotations

import random

import pytest

from runners.listing_delivery.dedup import (
    DUPLICATE_FILENAME,
    DUPLICATE_URL,
    dedupe_asset_urls,
    extract_decoded_filename,
    normalize_asset_url,
    url_fragment,
)


def test_normalize_strips_query_and_collapses_slashes() -> None:
    assert normalize_asset_url("HTTPS://CDN.Example.com//a///b/plan.pdf?sig=1#x") == "https://cdn.example.com/a/b/plan.pdf"


@pytest.mark.parametrize("bad", ["", "   ", "not a url", "/relative/path.pdf", "http://[::1"])
def test_normalize_rejects_malformed(bad: str) -> None:
    with pytest.raises(ValueError):
        normalize_asset_url(bad)


def test_decoded_filename_handles_percent_encoding() -> None:
    assert extract_decoded_filename("https://x.test/a/Floor%20Plan%20%231.pdf?v=2") == "Floor Plan #1.pdf"
    assert extract_decoded_filename("https://x.test/") == ""
    assert url_fragment("https://x.test/a/FloorPlan_Level1.pdf") == "FloorPlan_Level1"
    assert url_fragment("https://x.test/a/README") == "README"


def test_same_url_different_query_is_duplicate_url() -> None:
    res = dedupe_asset_urls(["https://x.test/a/plan.pdf?sig=1", "https://x.test/a/plan.pdf?sig=2"])

    assert res.urls == ["https://x.test/a/plan.pdf?sig=1"]
    assert res.duplicates_removed == 1
    assert res.dropped[0].reason == DUPLICATE_URL
    assert res.dropped[0].kept_url == "https://x.test/a/plan.pdf?sig=1"


def test_filename_match_is_case_insensitive() -> None:
    res = dedupe_asset_urls(["https://x.test/a.pdf", "https://x.test/A.pdf?x=1"])

    assert res.urls == ["https://x.test/a.pdf"]
    assert res.duplicates_removed == 1
    dropped = res.dropped[0]
    assert dropped.reason == DUPLICATE_FILENAME
    assert dropped.dropped_url == "https://x.test/A.pdf?x=1"
    assert dropped.filename == "A.pdf"


def test_same_filename_on_other_host_is_dropped() -> None:
    res = dedupe_asset_urls(["https://one.test/x/plan.pdf", "https://two.test/y/PLAN.pdf"])

    assert res.urls == ["https://one.test/x/plan.pdf"]
    assert res.dropped[0].reason == DUPLICATE_FILENAME


def test_order_preserved_and_malformed_kept() -> None:
    urls = ["https://x.test/c.pdf", "garbage", "https://x.test/a.pdf", "https://x.test/b.pdf", "https://x.test//a.pdf"]
    res = dedupe_asset_urls(urls)

    assert res.urls == ["https://x.test/c.pdf", "garbage", "https://x.test/a.pdf", "https://x.test/b.pdf"]
    assert [a.decoded_filename for a in res.assets] == ["c.pdf", "a.pdf", "b.pdf"]
    assert res.duplicates_removed == 1


def test_empty_input() -> None:
    res = dedupe_asset_urls([])

    assert res.urls == []
    assert res.duplicates_removed == 0
    assert res.dropped == []


MIXED = [
    "https://cdn.test/jobs/1/Plan.pdf?sig=a",
    "https://cdn.test//jobs/1/Plan.pdf?sig=b",
    "https://other.test/x/PLAN.pdf",
    "https://cdn.test/jobs/1/Site%20Photo.jpg",
    "https://cdn.test/jobs/2/site photo.jpg",
    "https://cdn.test/jobs/1/Report.pdf",
    "not a url",
]


def test_dedupe_is_idempotent() -> None:
    first = dedupe_asset_urls(list(MIXED))
    second = dedupe_asset_urls(first.urls)

    assert first.duplicates_removed == 3
    assert second.urls == first.urls
    assert second.duplicates_removed == 0
    assert second.dropped == []


@pytest.mark.parametrize("seed", [0, 1, 7, 42])
def test_shuffled_duplicates_keep_first_of_each_group(seed: int) -> None:
    urls = list(MIXED)
    random.Random(seed).shuffle(urls)

    result = dedupe_asset_urls(urls)

    assert result.urls == dedupe_asset_urls(list(urls)).urls
    assert len(result.urls) == 4
    assert result.duplicates_removed == 3
    lowered = {extract_decoded_filename(u).lower() for u in result.urls if u != "not a url"}
    assert lowered == {"plan.pdf", "site photo.jpg", "report.pdf"}
    # Survivors keep their relative input order.
    assert result.urls == [u for u in urls if u in result.urls]

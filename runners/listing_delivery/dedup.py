"""Asset URL normalization and deduplication.

Duplicates are detected by canonical URL (origin + slash-collapsed path, no
query/fragment) or, failing that, by decoded filename compared
case-insensitively. First occurrence wins and input order is preserved.
Unparseable URLs are kept as-is so that later validation reports them.
"""

from __future__ import annotations

import logging
import re
import urllib.parse
from dataclasses import dataclass, field

logger = logging.getLogger("delivery.dedup")

_MULTI_SLASH_RE = re.compile(r"/{2,}")
_FALLBACK_FILENAME_RE = re.compile(r"/([^/?#]+)(?:[?#]|$)")

DUPLICATE_URL = "duplicate_url"
DUPLICATE_FILENAME = "duplicate_filename"


@dataclass(frozen=True)
class NormalizedAsset:
    original_url: str
    canonical_url: str
    decoded_filename: str
    match_key: str


@dataclass(frozen=True)
class DroppedAsset:
    dropped_url: str
    reason: str
    kept_url: str
    filename: str | None = None

    def to_dict(self) -> dict[str, str]:
        out = {"dropped_url": self.dropped_url, "reason": self.reason, "kept_url": self.kept_url}
        if self.filename:
            out["filename"] = self.filename
        return out


@dataclass
class DedupeResult:
    urls: list[str] = field(default_factory=list)
    assets: list[NormalizedAsset] = field(default_factory=list)
    duplicates_removed: int = 0
    dropped: list[DroppedAsset] = field(default_factory=list)


def _parse(url: str) -> urllib.parse.SplitResult:
    if not isinstance(url, str) or not url.strip():
        raise ValueError("empty url")
    parts = urllib.parse.urlsplit(url.strip())
    if not parts.scheme or not parts.netloc:
        raise ValueError(f"not an absolute url: {url!r}")
    # Accessing .port validates the netloc (raises ValueError on garbage).
    _ = parts.port
    return parts


def normalize_asset_url(url: str) -> str:
    """Return origin + slash-collapsed path. Raises ValueError for malformed input."""
    parts = _parse(url)
    path = _MULTI_SLASH_RE.sub("/", parts.path or "")
    origin = f"{parts.scheme.lower()}://{parts.netloc.lower()}"
    return origin + path


def extract_decoded_filename(url: str) -> str:
    try:
        parts = _parse(url)
    except ValueError:
        match = _FALLBACK_FILENAME_RE.search(url or "")
        return urllib.parse.unquote(match.group(1)) if match else ""
    path = _MULTI_SLASH_RE.sub("/", parts.path or "")
    segments = [seg for seg in path.split("/") if seg]
    if not segments:
        return ""
    return urllib.parse.unquote(segments[-1])


def url_fragment(url: str) -> str:
    """Filename stem used as a secondary presence key (the UI may rename items)."""
    name = extract_decoded_filename(url)
    stem, dot, _ext = name.rpartition(".")
    return stem if dot and stem else name


def create_normalized_asset(url: str) -> NormalizedAsset:
    canonical = normalize_asset_url(url)
    filename = extract_decoded_filename(url)
    return NormalizedAsset(
        original_url=url,
        canonical_url=canonical,
        decoded_filename=filename,
        match_key=filename.strip().lower(),
    )


def dedupe_asset_urls(urls: list[str], batch: str = "assets", *, run_id: str | None = None) -> DedupeResult:
    result = DedupeResult()
    seen_urls: dict[str, str] = {}
    seen_names: dict[str, str] = {}

    for url in urls or []:
        try:
            asset = create_normalized_asset(url)
        except ValueError as exc:
            logger.warning("dedup_malformed_url run_id=%s batch=%s url=%r error=%s", run_id, batch, url, exc)
            result.urls.append(url)
            continue

        kept = seen_urls.get(asset.canonical_url)
        if kept is not None:
            result.duplicates_removed += 1
            result.dropped.append(DroppedAsset(dropped_url=url, reason=DUPLICATE_URL, kept_url=kept))
            logger.warning("dedup_drop run_id=%s batch=%s reason=%s url=%s kept=%s", run_id, batch, DUPLICATE_URL, url, kept)
            continue

        if asset.match_key:
            kept = seen_names.get(asset.match_key)
            if kept is not None:
                result.duplicates_removed += 1
                result.dropped.append(
                    DroppedAsset(
                        dropped_url=url,
                        reason=DUPLICATE_FILENAME,
                        kept_url=kept,
                        filename=asset.decoded_filename,
                    )
                )
                logger.warning(
                    "dedup_drop run_id=%s batch=%s reason=%s url=%s kept=%s", run_id, batch, DUPLICATE_FILENAME, url, kept
                )
                continue
            seen_names[asset.match_key] = url

        seen_urls[asset.canonical_url] = url
        result.urls.append(url)
        result.assets.append(asset)

    if result.duplicates_removed:
        logger.info(
            "dedup_summary run_id=%s batch=%s input=%d kept=%d removed=%d",
            run_id,
            batch,
            len(urls or []),
            len(result.urls),
            result.duplicates_removed,
        )
    return result


__all__ = [
    "DUPLICATE_FILENAME",
    "DUPLICATE_URL",
    "DedupeResult",
    "DroppedAsset",
    "NormalizedAsset",
    "create_normalized_asset",
    "dedupe_asset_urls",
    "extract_decoded_filename",
    "normalize_asset_url",
    "url_fragment",
]

"""Request payload normalization.

Accepted shapes:
- simple: {"floor-plans": [...], "rms": [...], "virtual-tour": url, "listing": edit_url}
  (optionally wrapped in a one-item list)
- internal: {run_id?, idempotency_key?, target|aryeo: {...}, sources: {...}, callbacks?, rules?}

Legacy zip-based manifests are rejected.
"""

from __future__ import annotations

import logging
import re
import time
import urllib.parse
from collections.abc import Callable
from typing import Annotated, Any

from pydantic import (
    AfterValidator,
    AliasChoices,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from . import errors
from .errors import DeliveryError, InvalidManifest

logger = logging.getLogger("delivery.manifest")

_LISTING_ID_RE = re.compile(r"/listings/([^/?#]+)")
_SIMPLE_KEYS = ("floor-plans", "rms", "virtual-tour", "listing")


def _now_iso() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def extract_listing_id(listing_url: str) -> str:
    """`/listings/<id>`, else the path segment before `edit`, else `unknown`."""
    match = _LISTING_ID_RE.search(listing_url or "")
    if match:
        return match.group(1)
    parts = [p for p in urllib.parse.urlsplit(listing_url or "").path.split("/") if p]
    if "edit" in parts:
        idx = parts.index("edit")
        if idx > 0:
            return parts[idx - 1]
    return "unknown"


def _http_url(value: str) -> str:
    value = value.strip()
    parts = urllib.parse.urlsplit(value)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ValueError("must be an http(s) URL")
    return value


def _blank_to_none(value: Any) -> Any:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return value


def _as_list(value: Any) -> Any:
    """A lone URL string counts as a one-item list."""
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, (list, tuple)):
        raise ValueError("must be a list of URLs")
    return value


def _optional_key(value: Any) -> str | None:
    if not value:
        return None
    return str(value).strip() or None


WebUrl = Annotated[str, AfterValidator(_http_url)]
OptionalWebUrl = Annotated[WebUrl | None, BeforeValidator(_blank_to_none)]
WebUrlList = Annotated[tuple[WebUrl, ...], BeforeValidator(_as_list)]
IdempotencyKey = Annotated[str | None, BeforeValidator(_optional_key)]


class Target(BaseModel):
    model_config = ConfigDict(frozen=True)

    listing_edit_url: WebUrl
    listing_id: str = ""

    @model_validator(mode="before")
    @classmethod
    def _derive_listing_id(cls, data: Any) -> Any:
        if isinstance(data, dict) and not str(data.get("listing_id") or "").strip():
            data = {**data, "listing_id": extract_listing_id(str(data.get("listing_edit_url") or ""))}
        return data


class Sources(BaseModel):
    model_config = ConfigDict(frozen=True)

    floorplan_urls: WebUrlList = ()
    rms_urls: WebUrlList = ()
    tour_3d_url: OptionalWebUrl = None

    def all_urls(self) -> list[str]:
        urls = [*self.floorplan_urls, *self.rms_urls]
        if self.tour_3d_url:
            urls.append(self.tour_3d_url)
        return urls


class Rules(BaseModel):
    model_config = ConfigDict(frozen=True)

    deliver_after_attach: bool = False


class Callbacks(BaseModel):
    model_config = ConfigDict(frozen=True)

    status_webhook_url: WebUrl
    status_webhook_secret: str = Field(min_length=1, repr=False)


class Manifest(BaseModel):
    model_config = ConfigDict(frozen=True)

    target: Target
    sources: Sources
    rules: Rules = Field(default_factory=Rules)
    callbacks: Callbacks | None = None
    idempotency_key: IdempotencyKey = None
    submitted_at: str = Field(default_factory=_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Manifest:
        """Rebuild a persisted manifest; InvalidManifest if it no longer validates."""
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            message, loc = _validation_message(exc)
            raise InvalidManifest(message, field=loc or None) from exc

    def with_deliver(self, deliver: bool) -> Manifest:
        return self.model_copy(update={"rules": Rules(deliver_after_attach=deliver)})


class SimplePayload(BaseModel):
    """`{"listing", "floor-plans", "rms", "virtual-tour"}` as posted by the job board."""

    listing: WebUrl
    floor_plans: WebUrlList = Field(default=(), alias="floor-plans")
    rms: WebUrlList = ()
    virtual_tour: OptionalWebUrl = Field(default=None, alias="virtual-tour")
    idempotency_key: IdempotencyKey = None

    def to_manifest(self) -> Manifest:
        return Manifest(
            target=Target(listing_edit_url=self.listing),
            sources=Sources(floorplan_urls=self.floor_plans, rms_urls=self.rms, tour_3d_url=self.virtual_tour),
            idempotency_key=self.idempotency_key,
        )


class InternalPayload(BaseModel):
    target: Target = Field(validation_alias=AliasChoices("target", "aryeo"))
    sources: Sources
    rules: Rules = Field(default_factory=Rules)
    callbacks: Callbacks | None = None
    idempotency_key: IdempotencyKey = None
    submitted_at: str | None = None

    @field_validator("sources", mode="before")
    @classmethod
    def _reject_zip_sources(cls, value: Any) -> Any:
        if isinstance(value, dict) and (value.get("floorplans_zip_url") or value.get("rms_zip_url")):
            if not (value.get("floorplan_urls") or value.get("rms_urls")):
                raise ValueError("ZIP URL format is no longer supported; provide direct file URLs")
        return value

    @field_validator("rules", mode="before")
    @classmethod
    def _rules_object(cls, value: Any) -> Any:
        return value if isinstance(value, dict) else {}

    @field_validator("callbacks", mode="before")
    @classmethod
    def _callbacks_need_url(cls, value: Any) -> Any:
        if isinstance(value, dict) and value.get("status_webhook_url"):
            return value
        return None

    def to_manifest(self) -> Manifest:
        return Manifest(
            target=self.target,
            sources=self.sources,
            rules=self.rules,
            callbacks=self.callbacks,
            idempotency_key=self.idempotency_key,
            submitted_at=self.submitted_at or _now_iso(),
        )


def _validation_message(exc: ValidationError) -> tuple[str, str]:
    first = exc.errors()[0]
    loc = ".".join(str(part) for part in first.get("loc", ()))
    msg = str(first.get("msg", "invalid value")).removeprefix("Value error, ")
    return (f"{loc}: {msg}" if loc else msg), loc


def _parse(model: type[SimplePayload] | type[InternalPayload], payload: dict[str, Any]) -> Manifest:
    try:
        return model.model_validate(payload).to_manifest()
    except ValidationError as exc:
        message, loc = _validation_message(exc)
        raise InvalidManifest(message, field=loc or None, errors=exc.error_count()) from exc


def derive_idempotency_key(manifest: Manifest) -> str:
    if manifest.idempotency_key:
        return manifest.idempotency_key
    return f"listing:{manifest.target.listing_id}"


def normalize_payload(raw: Any, *, deliver: bool = False, safe_mode: bool = False) -> Manifest:
    """Normalize any accepted request shape into a Manifest.

    `deliver` is the caller's explicit opt-in (`?deliver=true`); without it, or
    in safe mode, `deliver_after_attach` is forced off.
    """
    if not raw:
        raise InvalidManifest("payload is empty")
    payload = raw
    if isinstance(payload, list):
        if len(payload) > 1:
            logger.warning("payload_array_multiple count=%d using_first=1", len(payload))
        payload = payload[0]
    if not isinstance(payload, dict):
        raise InvalidManifest(f"invalid payload type: {type(payload).__name__}")

    if any(k in payload for k in _SIMPLE_KEYS):
        manifest = _parse(SimplePayload, payload)
        shape = "simple"
    elif "target" in payload or "aryeo" in payload or "sources" in payload:
        manifest = _parse(InternalPayload, payload)
        shape = "internal"
    else:
        keys = ", ".join(sorted(str(k) for k in payload)) or "(none)"
        raise InvalidManifest(
            f"payload does not match any known format; expected keys {', '.join(_SIMPLE_KEYS)}; received {keys}"
        )

    if not manifest.sources.all_urls():
        raise InvalidManifest("no assets to deliver", field="sources")

    if safe_mode and deliver:
        logger.warning("safe_mode_forcing_no_deliver listing_id=%s", manifest.target.listing_id)
    # Simple payloads carry no rules; the query flag alone decides.
    wanted = shape == "simple" or manifest.rules.deliver_after_attach
    manifest = manifest.with_deliver(bool(deliver and not safe_mode and wanted))
    logger.info(
        "payload_normalized shape=%s listing_id=%s floorplans=%d rms=%d tour=%s deliver=%s",
        shape,
        manifest.target.listing_id,
        len(manifest.sources.floorplan_urls),
        len(manifest.sources.rms_urls),
        bool(manifest.sources.tour_3d_url),
        manifest.rules.deliver_after_attach,
    )
    return manifest


def validate_hosts(manifest: Manifest, is_host_allowed: Callable[[str], bool]) -> None:
    """Raise HostNotAllowed for the first URL outside the allowlist."""
    urls = [manifest.target.listing_edit_url, *manifest.sources.all_urls()]
    for url in urls:
        host = urllib.parse.urlsplit(url).hostname or ""
        if not host or not is_host_allowed(host):
            raise DeliveryError(errors.HOST_NOT_ALLOWED, f"host not allowed: {host or url}", False, {"url": url})


__all__ = [
    "Callbacks",
    "InternalPayload",
    "Manifest",
    "Rules",
    "SimplePayload",
    "Sources",
    "Target",
    "derive_idempotency_key",
    "extract_listing_id",
    "normalize_payload",
    "validate_hosts",
]

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

QUEUED = "queued"
RUNNING = "running"
SUCCEEDED = "succeeded"
FAILED = "failed"

STATUSES = (QUEUED, RUNNING, SUCCEEDED, FAILED)
TERMINAL_STATUSES = frozenset({SUCCEEDED, FAILED})

_ALLOWED: dict[str, frozenset[str]] = {
    QUEUED: frozenset({QUEUED, RUNNING, FAILED}),
    # running -> running: a reaped job restarts the workflow from the top.
    RUNNING: frozenset({RUNNING, SUCCEEDED, FAILED}),
    SUCCEEDED: frozenset(),
    FAILED: frozenset(),
}

_ISO_FMT = "%Y-%m-%dT%H:%M:%S.%fZ"


class InvalidTransition(ValueError):
    def __init__(self, run_id: str, current: str, new: str) -> None:
        super().__init__(f"run {run_id}: status {current} -> {new} is not allowed")
        self.run_id = run_id
        self.current = current
        self.new = new


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime(_ISO_FMT)


def parse_iso(raw: str | None) -> datetime | None:
    if not raw:
        return None
    for fmt in (_ISO_FMT, "%Y-%m-%dT%H:%M:%SZ"):
        try:
            return datetime.strptime(raw, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None


def check_transition(run_id: str, current: str, new: str) -> None:
    if new not in STATUSES:
        raise ValueError(f"unknown run status: {new!r}")
    if new not in _ALLOWED.get(current, frozenset()):
        raise InvalidTransition(run_id, current, new)


def _empty_actions() -> dict[str, bool]:
    return {
        "imported_floorplans": False,
        "imported_rms": False,
        "added_3d_content": False,
        "saved": False,
        "delivered": False,
    }


@dataclass
class Run:
    run_id: str
    idempotency_key: str
    manifest: dict[str, Any]
    status: str = QUEUED
    created_at: str = ""
    updated_at: str = ""
    started_at: str | None = None
    completed_at: str | None = None
    current_step: str = QUEUED
    current_step_detail: str | None = None
    progress: dict[str, Any] | None = None
    error: dict[str, Any] | None = None
    assets_found: dict[str, int] = field(default_factory=lambda: {"floorplans": 0, "rms": 0, "tour_3d": 0})
    actions_performed: dict[str, bool] = field(default_factory=_empty_actions)
    evidence: list[dict[str, Any]] = field(default_factory=list)
    version: int = 0
    expires_at: str = ""

    @classmethod
    def new(cls, idempotency_key: str, manifest: dict[str, Any], *, ttl_seconds: float) -> Run:
        now = utc_now()
        return cls(
            run_id=str(uuid.uuid4()),
            idempotency_key=idempotency_key,
            manifest=manifest,
            created_at=to_iso(now),
            updated_at=to_iso(now),
            expires_at=to_iso(now + timedelta(seconds=ttl_seconds)),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def expired(self, now: datetime | None = None) -> bool:
        expires = parse_iso(self.expires_at)
        return expires is not None and (now or utc_now()) >= expires

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def public_dict(self) -> dict[str, Any]:
        """Status projection for API clients (webhook secret redacted)."""
        out = self.to_dict()
        callbacks = (out.get("manifest") or {}).get("callbacks")
        if isinstance(callbacks, dict) and "status_webhook_secret" in callbacks:
            callbacks["status_webhook_secret"] = "***"
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Run:
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass(frozen=True)
class RunRef:
    run_id: str
    status: str
    created: bool
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"run_id": self.run_id, "status": self.status, "message": self.message}


__all__ = [
    "FAILED",
    "QUEUED",
    "RUNNING",
    "STATUSES",
    "SUCCEEDED",
    "TERMINAL_STATUSES",
    "InvalidTransition",
    "Run",
    "RunRef",
    "check_transition",
    "parse_iso",
    "to_iso",
    "utc_now",
]

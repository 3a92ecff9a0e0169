"""Evidence and progress reporting for runs.

Screenshots are stored per run under `data/evidence/<run_id>/` with a small
`.meta.json` sidecar; progress events are forwarded to a sink (normally the
run orchestrator) so status queries show the current step.
"""

from __future__ import annotations

import io
import json
import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger("delivery.evidence")

_ID_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]{0,127}$")
_MAX_SIDE = 2400

ProgressSink = Callable[..., Any]


def _now_iso() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def _safe_name(raw: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_-]+", "_", raw or "step").strip("_")[:60] or "step"


@dataclass(frozen=True)
class EvidenceItem:
    step: str
    path: str
    timestamp: str

    def to_dict(self) -> dict[str, str]:
        return {"step": self.step, "path": self.path, "timestamp": self.timestamp}


def normalize_png(raw: bytes, *, max_side: int = _MAX_SIDE) -> bytes:
    """Re-encode a screenshot as optimized PNG, downscaling oversized captures."""
    from PIL import Image

    with Image.open(io.BytesIO(raw)) as img:
        img.load()
        if img.mode not in ("RGB", "RGBA"):
            img = img.convert("RGB")
        if max(img.size) > max_side:
            img.thumbnail((max_side, max_side))
        out = io.BytesIO()
        img.save(out, format="PNG", optimize=True)
        return out.getvalue()


class EvidenceStore:
    def __init__(self, base_dir: Path) -> None:
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _run_dir(self, run_id: str) -> Path:
        if not _ID_RE.match(run_id or ""):
            raise ValueError("invalid run id")
        return self.base_dir / run_id

    def put_png(self, run_id: str, step: str, raw: bytes, *, metadata: dict[str, Any] | None = None) -> EvidenceItem:
        run_dir = self._run_dir(run_id)
        run_dir.mkdir(parents=True, exist_ok=True)
        try:
            data = normalize_png(raw)
        except (OSError, ValueError) as exc:
            # Undecodable capture: keep the original bytes rather than losing evidence.
            logger.warning("evidence_normalize_failed run_id=%s step=%s error=%s", run_id, step, exc)
            data = raw
        filename = f"{int(time.time() * 1000)}_{_safe_name(step)}.png"
        path = run_dir / filename
        path.write_bytes(data)
        item = EvidenceItem(step=step, path=str(path), timestamp=_now_iso())
        meta = {**item.to_dict(), "bytes": len(data), **({"meta": metadata} if metadata else {})}
        path.with_suffix(".meta.json").write_text(json.dumps(meta, ensure_ascii=False, indent=2), encoding="utf-8")
        return item

    def resolve(self, run_id: str, filename: str) -> Path | None:
        """Return the evidence file path, or None if absent or outside the run dir."""
        try:
            run_dir = self._run_dir(run_id).resolve()
        except ValueError:
            return None
        if not filename or "/" in filename or "\\" in filename or filename.startswith("."):
            return None
        candidate = (run_dir / filename).resolve()
        if candidate.parent != run_dir or not candidate.is_file():
            return None
        return candidate


class RunReporter:
    """Run-scoped reporter handed to the workflow driver."""

    def __init__(self, run_id: str, store: EvidenceStore | None, sink: ProgressSink | None = None) -> None:
        self.run_id = run_id
        self.store = store
        self.sink = sink

    def _emit(self, step: str, **kwargs: Any) -> None:
        if self.sink is None:
            return
        try:
            self.sink(self.run_id, step, **kwargs)
        except Exception:  # noqa: BLE001
            # Progress is advisory; the workflow must not die on a status write.
            logger.exception("progress_sink_failed run_id=%s step=%s", self.run_id, step)

    def step(self, step: str, detail: str | None = None) -> None:
        logger.info("step run_id=%s step=%s detail=%s", self.run_id, step, detail)
        self._emit(step, detail=detail)

    def progress(
        self,
        step: str,
        *,
        section: str,
        index: int,
        total: int,
        phase: str,
        filename: str | None = None,
    ) -> None:
        progress = {"section": section, "index": index, "total": total, "phase": phase, "filename": filename}
        self._emit(step, detail=f"{section} {index}/{total} {phase}", progress=progress)

    def evidence(self, step: str, page: Any, reason: str | None = None) -> EvidenceItem | None:
        """Capture a screenshot and emit it with a progress event."""
        item: EvidenceItem | None = None
        raw = page.screenshot_png() if page is not None else None
        if raw and self.store is not None:
            try:
                item = self.store.put_png(self.run_id, step, raw, metadata={"reason": reason} if reason else None)
            except OSError as exc:
                logger.warning("evidence_write_failed run_id=%s step=%s error=%s", self.run_id, step, exc)
        logger.info("evidence run_id=%s step=%s reason=%s path=%s", self.run_id, step, reason, item.path if item else None)
        self._emit(step, detail=reason, evidence=item.to_dict() if item else None)
        return item


__all__ = ["EvidenceItem", "EvidenceStore", "RunReporter", "normalize_png"]

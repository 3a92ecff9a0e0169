from __future__ import annotations

import io
import json
from pathlib import Path

import pytest


def _png(size: tuple[int, int] = (40, 30)) -> bytes:
    from PIL import Image

    buf = io.BytesIO()
    Image.new("RGB", size, (200, 10, 10)).save(buf, format="PNG")
    return buf.getvalue()


def test_put_png_writes_image_and_sidecar(tmp_path: Path) -> None:
    from runners.listing_delivery.evidence import EvidenceStore

    store = EvidenceStore(tmp_path)
    item = store.put_png("run-1", "import floorplans/1", _png(), metadata={"reason": "timeout"})

    path = Path(item.path)
    assert path.parent == tmp_path / "run-1"
    assert path.name.endswith("_import_floorplans_1.png")
    meta = json.loads(path.with_suffix(".meta.json").read_text(encoding="utf-8"))
    assert meta["step"] == "import floorplans/1"
    assert meta["meta"] == {"reason": "timeout"}
    assert store.resolve("run-1", path.name) == path.resolve()


def test_oversized_capture_is_downscaled(tmp_path: Path) -> None:
    from PIL import Image

    from runners.listing_delivery.evidence import normalize_png

    out = normalize_png(_png((3000, 1000)), max_side=1200)
    with Image.open(io.BytesIO(out)) as img:
        assert img.size == (1200, 400)


def test_undecodable_capture_kept_raw(tmp_path: Path) -> None:
    from runners.listing_delivery.evidence import EvidenceStore

    store = EvidenceStore(tmp_path)
    item = store.put_png("run-1", "nav", b"not an image")

    assert Path(item.path).read_bytes() == b"not an image"


@pytest.mark.parametrize("run_id,filename", [("run-1", "../x.png"), ("../etc", "a.png"), ("run-1", ".hidden.png"), ("run-1", "nope.png")])
def test_resolve_refuses_escapes(tmp_path: Path, run_id: str, filename: str) -> None:
    from runners.listing_delivery.evidence import EvidenceStore

    store = EvidenceStore(tmp_path)
    store.put_png("run-1", "nav", _png())

    assert store.resolve(run_id, filename) is None
    with pytest.raises(ValueError):
        store.put_png("../etc", "nav", _png())


def test_reporter_emits_evidence_event(tmp_path: Path) -> None:
    from runners.listing_delivery.evidence import EvidenceStore, RunReporter

    events: list[tuple[str, str, dict]] = []

    class Page:
        def screenshot_png(self) -> bytes:
            return _png()

    def sink(run_id: str, step: str, **kwargs) -> None:  # noqa: ANN003
        events.append((run_id, step, kwargs))

    reporter = RunReporter("run-9", EvidenceStore(tmp_path), sink=sink)
    item = reporter.evidence("save_attempt1", Page(), "save error")

    assert item is not None
    assert events[0][0:2] == ("run-9", "save_attempt1")
    assert events[0][2]["evidence"]["path"] == item.path
    assert events[0][2]["detail"] == "save error"


def test_reporter_survives_broken_sink() -> None:
    from runners.listing_delivery.evidence import RunReporter

    def sink(run_id: str, step: str, **kwargs) -> None:  # noqa: ANN003
        raise RuntimeError("store down")

    RunReporter("run-1", None, sink=sink).step("nav")

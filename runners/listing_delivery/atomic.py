"""Atomic JSON file writes: temp file, best-effort .bak copy, replace, 0600."""

from __future__ import annotations

import json
import os
import shutil
from contextlib import suppress
from pathlib import Path
from typing import Any


def write_json_atomic(path: str | Path, obj: Any, *, backup: bool = True) -> Path:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    text = json.dumps(obj, ensure_ascii=True, indent=2, sort_keys=True)

    tmp = p.with_suffix(p.suffix + ".tmp")
    if backup and p.exists() and p.is_file():
        with suppress(OSError):
            shutil.copyfile(p, p.with_suffix(p.suffix + ".bak"))

    tmp.write_text(text, encoding="utf-8")
    with suppress(OSError):
        os.chmod(tmp, 0o600)
    tmp.replace(p)
    with suppress(OSError):
        os.chmod(p, 0o600)
    return p


def read_json(path: str | Path) -> Any | None:
    """Load JSON, falling back to the .bak copy; None when neither is readable."""
    p = Path(path)
    for candidate in (p, p.with_suffix(p.suffix + ".bak")):
        try:
            if not candidate.is_file():
                continue
            return json.loads(candidate.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError):
            continue
    return None


__all__ = ["read_json", "write_json_atomic"]

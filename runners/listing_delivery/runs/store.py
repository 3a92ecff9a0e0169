"""Disk-backed run store.

Layout under `data/runs/`:
- `<run_id>.json`  one file per run
- `_index.json`    idempotency_key -> [run_id, ...] (oldest first)
- `.lock`          inter-process lock file

Every write goes through `mutate()` (read-modify-write under the lock) and
bumps `version`. There is no compare-and-swap: the lock serialises writers,
and worker fencing comes from queue lease tokens.
"""

from __future__ import annotations

import contextlib
import copy
import logging
import re
import sys
import threading
from collections.abc import Callable, Generator
from datetime import datetime
from pathlib import Path
from typing import Any

from ..atomic import read_json, write_json_atomic
from .models import TERMINAL_STATUSES, Run, to_iso, utc_now

logger = logging.getLogger("delivery.store")

_RUN_ID_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_-]{0,127}$")
_INDEX_FILE = "_index.json"


class ConcurrentModification(Exception):
    def __init__(self, run_id: str, expected: int, actual: int) -> None:
        super().__init__(f"run {run_id}: expected version {expected}, found {actual}")
        self.run_id = run_id
        self.expected = expected
        self.actual = actual


class RunNotFound(KeyError):
    pass


class RunStore:
    def __init__(self, base_dir: str | Path) -> None:
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._lock_path = self.base_dir / ".lock"

    @contextlib.contextmanager
    def _locked(self) -> Generator[None, None, None]:
        with self._lock:
            fp = open(self._lock_path, "a+", encoding="utf-8")  # noqa: SIM115
            try:
                if sys.platform != "win32":
                    import fcntl

                    fcntl.flock(fp.fileno(), fcntl.LOCK_EX)
                yield
            finally:
                if sys.platform != "win32":
                    import fcntl

                    with contextlib.suppress(OSError):
                        fcntl.flock(fp.fileno(), fcntl.LOCK_UN)
                fp.close()

    def _path(self, run_id: str) -> Path:
        if not _RUN_ID_RE.match(run_id or ""):
            raise RunNotFound(run_id)
        return self.base_dir / f"{run_id}.json"

    def _read(self, run_id: str) -> Run | None:
        try:
            path = self._path(run_id)
        except RunNotFound:
            return None
        data = read_json(path)
        if not isinstance(data, dict):
            return None
        try:
            return Run.from_dict(data)
        except TypeError:
            logger.warning("run_file_corrupt run_id=%s", run_id)
            return None

    def _write(self, run: Run) -> None:
        write_json_atomic(self._path(run.run_id), run.to_dict())

    # Index

    def _load_index(self) -> dict[str, list[str]]:
        data = read_json(self.base_dir / _INDEX_FILE)
        if isinstance(data, dict):
            return {str(k): [str(x) for x in v] for k, v in data.items() if isinstance(v, list)}
        return self._rebuild_index()

    def _rebuild_index(self) -> dict[str, list[str]]:
        runs = sorted(self._iter_runs(), key=lambda r: r.created_at)
        index: dict[str, list[str]] = {}
        for run in runs:
            index.setdefault(run.idempotency_key, []).append(run.run_id)
        if runs:
            logger.info("run_index_rebuilt keys=%d runs=%d", len(index), len(runs))
        return index

    def _save_index(self, index: dict[str, list[str]]) -> None:
        write_json_atomic(self.base_dir / _INDEX_FILE, index, backup=False)

    def _iter_runs(self) -> list[Run]:
        out: list[Run] = []
        for path in self.base_dir.glob("*.json"):
            if path.name.startswith("_"):
                continue
            run = self._read(path.stem)
            if run is not None:
                out.append(run)
        return out

    # Public API

    def create(self, run: Run) -> Run:
        with self._locked():
            existing = self._read(run.run_id)
            if existing is not None:
                raise ConcurrentModification(run.run_id, 0, existing.version)
            run.version = 1
            self._write(run)
            index = self._load_index()
            index.setdefault(run.idempotency_key, []).append(run.run_id)
            self._save_index(index)
            return copy.deepcopy(run)

    def get(self, run_id: str) -> Run | None:
        with self._locked():
            return self._read(run_id)

    def mutate(self, run_id: str, fn: Callable[[Run], Any]) -> Run:
        """Apply `fn` to the stored run under the lock and persist the result."""
        with self._locked():
            run = self._read(run_id)
            if run is None:
                raise RunNotFound(run_id)
            fn(run)
            run.version += 1
            run.updated_at = to_iso(utc_now())
            self._write(run)
            return copy.deepcopy(run)

    def find_by_key(self, idempotency_key: str) -> list[Run]:
        with self._locked():
            ids = self._load_index().get(idempotency_key, [])
            runs = [self._read(run_id) for run_id in ids]
            return [r for r in runs if r is not None]

    def list_runs(self, statuses: set[str] | frozenset[str] | None = None) -> list[Run]:
        with self._locked():
            runs = self._iter_runs()
        if statuses is not None:
            runs = [r for r in runs if r.status in statuses]
        return sorted(runs, key=lambda r: r.created_at)

    def purge_expired(self, now: datetime | None = None) -> int:
        """Delete terminal runs past `expires_at`; active runs are never purged."""
        now = now or utc_now()
        removed = 0
        with self._locked():
            index = self._load_index()
            for run in self._iter_runs():
                if run.status not in TERMINAL_STATUSES or not run.expired(now):
                    continue
                path = self._path(run.run_id)
                for p in (path, path.with_suffix(".json.bak")):
                    with contextlib.suppress(FileNotFoundError):
                        p.unlink()
                ids = index.get(run.idempotency_key, [])
                if run.run_id in ids:
                    ids.remove(run.run_id)
                if not ids:
                    index.pop(run.idempotency_key, None)
                removed += 1
            if removed:
                self._save_index(index)
                logger.info("runs_purged count=%d", removed)
        return removed

    def healthy(self) -> bool:
        try:
            probe = self.base_dir / ".health"
            probe.write_text("ok", encoding="utf-8")
            probe.unlink()
        except OSError as exc:
            logger.warning("store_unhealthy error=%s", exc)
            return False
        return True


__all__ = ["ConcurrentModification", "RunNotFound", "RunStore"]

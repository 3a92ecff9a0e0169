from __future__ import annotations

import json
import threading
from datetime import timedelta
from pathlib import Path

import pytest

from runners.listing_delivery.runs.models import (
    FAILED,
    QUEUED,
    RUNNING,
    SUCCEEDED,
    InvalidTransition,
    Run,
    check_transition,
    utc_now,
)
from runners.listing_delivery.runs.store import ConcurrentModification, RunNotFound, RunStore


def _run(key: str = "listing:1", *, ttl: float = 3600) -> Run:
    return Run.new(key, {"target": {"listing_id": "1"}}, ttl_seconds=ttl)


def test_transitions() -> None:
    check_transition("r", QUEUED, RUNNING)
    check_transition("r", RUNNING, RUNNING)
    check_transition("r", RUNNING, SUCCEEDED)
    check_transition("r", QUEUED, FAILED)
    for current, new in [(SUCCEEDED, RUNNING), (FAILED, QUEUED), (RUNNING, QUEUED), (QUEUED, SUCCEEDED)]:
        with pytest.raises(InvalidTransition):
            check_transition("r", current, new)
    with pytest.raises(ValueError):
        check_transition("r", QUEUED, "paused")


def test_create_get_and_index(tmp_path: Path) -> None:
    store = RunStore(tmp_path)
    first = store.create(_run())
    second = store.create(_run())

    assert first.version == 1
    assert store.get(first.run_id).run_id == first.run_id
    assert [r.run_id for r in store.find_by_key("listing:1")] == [first.run_id, second.run_id]
    assert store.find_by_key("listing:2") == []
    assert store.get("../../etc/passwd") is None
    assert store.get("missing") is None


def test_index_rebuilt_when_lost(tmp_path: Path) -> None:
    store = RunStore(tmp_path)
    run = store.create(_run("job-7"))
    (tmp_path / "_index.json").unlink()

    assert [r.run_id for r in RunStore(tmp_path).find_by_key("job-7")] == [run.run_id]


def test_create_refuses_existing_run_id(tmp_path: Path) -> None:
    store = RunStore(tmp_path)
    run = store.create(_run())
    store.mutate(run.run_id, lambda r: setattr(r, "current_step", "nav"))

    with pytest.raises(ConcurrentModification) as exc_info:
        store.create(run)
    assert exc_info.value.actual == 2
    assert store.get(run.run_id).current_step == "nav"


def test_mutate_serializes_writers(tmp_path: Path) -> None:
    store = RunStore(tmp_path)
    run = store.create(_run())

    def bump() -> None:
        for _ in range(10):
            store.mutate(run.run_id, lambda r: r.evidence.append({"n": len(r.evidence)}))

    threads = [threading.Thread(target=bump) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    final = store.get(run.run_id)
    assert len(final.evidence) == 40
    assert final.version == 41
    assert [e["n"] for e in final.evidence] == list(range(40))


def test_mutate_missing_run(tmp_path: Path) -> None:
    with pytest.raises(RunNotFound):
        RunStore(tmp_path).mutate("nope", lambda r: None)


def test_purge_only_terminal_expired(tmp_path: Path) -> None:
    store = RunStore(tmp_path)
    done = store.create(_run("a", ttl=60))
    active = store.create(_run("b", ttl=60))
    fresh = store.create(_run("c", ttl=3600))
    store.mutate(done.run_id, lambda r: setattr(r, "status", SUCCEEDED))
    store.mutate(fresh.run_id, lambda r: setattr(r, "status", FAILED))

    removed = store.purge_expired(utc_now() + timedelta(seconds=120))

    assert removed == 1
    assert store.get(done.run_id) is None
    assert store.get(active.run_id) is not None
    assert store.get(fresh.run_id) is not None
    index = json.loads((tmp_path / "_index.json").read_text(encoding="utf-8"))
    assert "a" not in index


def test_list_runs_filters_status(tmp_path: Path) -> None:
    store = RunStore(tmp_path)
    a = store.create(_run("a"))
    store.create(_run("b"))
    store.mutate(a.run_id, lambda r: setattr(r, "status", RUNNING))

    assert [r.run_id for r in store.list_runs({RUNNING})] == [a.run_id]
    assert len(store.list_runs()) == 2
    assert store.healthy()


def test_public_dict_redacts_secret() -> None:
    run = Run.new("k", {"callbacks": {"status_webhook_url": "https://h.test", "status_webhook_secret": "s"}}, ttl_seconds=1)

    assert run.public_dict()["manifest"]["callbacks"]["status_webhook_secret"] == "***"
    assert run.manifest["callbacks"]["status_webhook_secret"] == "s"

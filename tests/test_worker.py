from __future__ import annotations

import logging
from contextlib import contextmanager, nullcontext
from pathlib import Path
from typing import Any

from runners.listing_delivery import errors
from runners.listing_delivery.errors import AuthRequired, DeliveryError
from runners.listing_delivery.manifest import normalize_payload
from runners.listing_delivery.runs import FAILED, RUNNING, SUCCEEDED, JobQueue, RunOrchestrator, RunStore
from runners.listing_delivery.ui import locators as L
from runners.listing_delivery.worker import StallMonitor, Worker

PAYLOAD = {
    "floor-plans": ["https://cdn.virtualxposure.com/fp/Plan_Main_Level.jpg"],
    "rms": ["https://cdn.virtualxposure.com/rms/Measurements.pdf"],
    "listing": "https://app.aryeo.com/admin/listings/L9/edit",
}


class FakeValidator:
    def __init__(self, error: DeliveryError | None = None) -> None:
        self.error = error
        self.calls: list[tuple[list[str], list[str], str | None]] = []

    def validate(self, floorplans: list[str], rms: list[str], tour: str | None = None, *, run_id: str | None = None) -> dict[str, int]:
        self.calls.append((floorplans, rms, tour))
        if self.error is not None:
            raise self.error
        return {"floorplans": len(floorplans), "rms": len(rms), "tour_3d": 1 if tour else 0}


def _setup(tmp_path: Path, page: Any, clock: Any, *, validator: FakeValidator | None = None, factory: Any = None):  # noqa: ANN202
    orch = RunOrchestrator(RunStore(tmp_path), JobQueue())
    ref = orch.submit(normalize_payload(PAYLOAD))
    worker = Worker(
        orch,
        session_factory=factory or (lambda: nullcontext(page)),
        validator=validator or FakeValidator(),
        evidence=None,
        clock=clock,
        heartbeat_interval=60,
    )
    lease = orch.queue.dequeue(timeout=0)
    return orch, ref, worker, lease


def test_successful_run(tmp_path: Path, page, clock) -> None:  # noqa: ANN001
    orch, ref, worker, lease = _setup(tmp_path, page, clock)

    worker.process(lease)

    run = orch.get_status(ref.run_id)
    assert run.status == SUCCEEDED
    assert run.current_step == "completed"
    assert run.assets_found == {"floorplans": 1, "rms": 1, "tour_3d": 0}
    assert run.actions_performed == {
        "imported_floorplans": True,
        "imported_rms": True,
        "added_3d_content": False,
        "saved": True,
        "delivered": False,
    }
    assert run.error is None
    assert run.started_at and run.completed_at
    assert not orch.queue.contains(ref.run_id)
    assert page.rows[L.ROW_FLOORPLANS] == ["Plan_Main_Level.jpg"]


def test_validation_failure_never_opens_browser(tmp_path: Path, page, clock) -> None:  # noqa: ANN001
    opened: list[bool] = []

    def factory():  # noqa: ANN202
        opened.append(True)
        return nullcontext(page)

    error = DeliveryError(errors.ASSET_TYPE_MISMATCH, "URL validation failed: wrong type", False)
    orch, ref, worker, lease = _setup(tmp_path, page, clock, validator=FakeValidator(error), factory=factory)

    worker.process(lease)

    run = orch.get_status(ref.run_id)
    assert run.status == FAILED
    assert run.error["code"] == errors.ASSET_TYPE_MISMATCH
    assert opened == []


def test_missing_credentials_fail_run(tmp_path: Path, page, clock) -> None:  # noqa: ANN001
    @contextmanager
    def factory():  # noqa: ANN202
        raise AuthRequired("Credential artifact not found at /nope", path="/nope")
        yield page

    orch, ref, worker, lease = _setup(tmp_path, page, clock, factory=factory)

    worker.process(lease)

    run = orch.get_status(ref.run_id)
    assert run.status == FAILED
    assert run.error["code"] == errors.AUTH_REQUIRED
    assert run.error["retryable"] is False


def test_workflow_failure_keeps_partial_actions(tmp_path: Path, page, clock) -> None:  # noqa: ANN001
    page.hidden.add(L.SAVE_BUTTON.name)
    orch, ref, worker, lease = _setup(tmp_path, page, clock)

    worker.process(lease)

    run = orch.get_status(ref.run_id)
    assert run.status == FAILED
    assert run.error["details"]["step"] == "save"
    assert run.actions_performed["imported_floorplans"] is True
    assert run.actions_performed["saved"] is False


def test_crash_inside_session_becomes_internal_error(tmp_path: Path, page, clock) -> None:  # noqa: ANN001
    def factory():  # noqa: ANN202
        raise OSError("chrome binary missing")

    orch, ref, worker, lease = _setup(tmp_path, page, clock, factory=factory)

    worker.process(lease)

    run = orch.get_status(ref.run_id)
    assert run.error["code"] == errors.INTERNAL_ERROR
    assert run.error["retryable"] is True


def test_terminal_run_is_skipped(tmp_path: Path, page, clock) -> None:  # noqa: ANN001
    orch, ref, worker, lease = _setup(tmp_path, page, clock)
    orch.update_status(ref.run_id, FAILED)

    worker.process(lease)

    assert page.calls == []
    assert not orch.queue.contains(ref.run_id)


def test_progress_visible_while_running(tmp_path: Path, page, clock) -> None:  # noqa: ANN001
    seen: list[tuple[str, str]] = []
    orch, ref, worker, lease = _setup(tmp_path, page, clock)
    original = page.click

    def click(locator, row=None):  # noqa: ANN001, ANN202
        run = orch.get_status(ref.run_id)
        seen.append((run.status, run.current_step))
        return original(locator, row)

    page.click = click

    worker.process(lease)

    assert seen
    assert all(status == RUNNING for status, _ in seen)
    assert ("running", "import_floorplans") in seen


def test_stall_monitor_fails_exhausted_runs(tmp_path: Path) -> None:
    now = [0.0]
    orch = RunOrchestrator(RunStore(tmp_path), JobQueue(lease_seconds=10, max_attempts=1, clock=lambda: now[0]))
    ref = orch.submit(normalize_payload(PAYLOAD))
    orch.queue.dequeue(timeout=0)
    orch.update_status(ref.run_id, RUNNING)

    now[0] = 11.0
    StallMonitor(orch).tick()

    run = orch.get_status(ref.run_id)
    assert run.status == FAILED
    assert run.error["code"] == errors.TIMEOUT


def test_failed_run_drops_job_as_failed(tmp_path: Path, page, clock, caplog) -> None:  # noqa: ANN001
    caplog.set_level(logging.INFO, logger="delivery.queue")
    page.hidden.add(L.SAVE_BUTTON.name)
    orch, ref, worker, lease = _setup(tmp_path, page, clock)

    worker.process(lease)

    assert not orch.queue.contains(ref.run_id)
    assert f"job_failed run_id={ref.run_id}" in caplog.text
    assert f"reason={orch.get_status(ref.run_id).error['code']}" in caplog.text


def test_unreadable_manifest_fails_run(tmp_path: Path, page, clock) -> None:  # noqa: ANN001
    orch, ref, worker, lease = _setup(tmp_path, page, clock)
    orch.store.mutate(ref.run_id, lambda r: r.manifest["sources"].update(floorplan_urls=["ftp://cdn.test/a.pdf"]))

    worker.process(lease)

    run = orch.get_status(ref.run_id)
    assert run.status == FAILED
    assert run.error["code"] == errors.INVALID_MANIFEST
    assert not orch.queue.contains(ref.run_id)
    assert page.calls == []

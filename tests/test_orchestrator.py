from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from runners.listing_delivery.http_client import HttpClientError
from runners.listing_delivery.manifest import normalize_payload
from runners.listing_delivery.runs import (
    FAILED,
    QUEUED,
    RUNNING,
    SUCCEEDED,
    JobQueue,
    RunOrchestrator,
    RunStore,
)
from runners.listing_delivery.runs.callbacks import (
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    CallbackNotifier,
    sign,
    signed_headers,
    verify_signature,
)
from runners.listing_delivery.runs.models import InvalidTransition

LISTING = "https://app.aryeo.com/admin/listings/L1/edit"


class RecordingPost:
    def __init__(self, status: int = 200, error: Exception | None = None) -> None:
        self.status = status
        self.error = error
        self.calls: list[tuple[str, str, dict[str, str]]] = []

    def __call__(self, url: str, body: str, *, headers: dict[str, str], timeout: float) -> dict[str, Any]:
        self.calls.append((url, body, headers))
        if self.error is not None:
            raise self.error
        return {"status": self.status, "headers": {}, "body": ""}


def _manifest(key: str | None = None, *, callbacks: bool = True):  # noqa: ANN202
    payload: dict[str, Any] = {
        "target": {"listing_edit_url": LISTING},
        "sources": {"floorplan_urls": ["https://cdn.virtualxposure.com/a.jpg"]},
    }
    if key:
        payload["idempotency_key"] = key
    if callbacks:
        payload["callbacks"] = {"status_webhook_url": "https://hooks.test/cb", "status_webhook_secret": "s3cret"}
    return normalize_payload(payload)


@pytest.fixture
def post() -> RecordingPost:
    return RecordingPost()


@pytest.fixture
def orch(tmp_path: Path, post: RecordingPost) -> RunOrchestrator:
    return RunOrchestrator(RunStore(tmp_path / "runs"), JobQueue(), notifier=CallbackNotifier(post=post))


def test_submit_creates_and_enqueues(orch: RunOrchestrator) -> None:
    ref = orch.submit(_manifest())

    assert ref.created
    assert ref.status == QUEUED
    assert ref.message == "Run queued"
    run = orch.get_status(ref.run_id)
    assert run.idempotency_key == "listing:L1"
    assert run.manifest["target"]["listing_edit_url"] == LISTING
    assert orch.queue.contains(ref.run_id)


def test_resubmit_while_running_returns_same_run(orch: RunOrchestrator) -> None:
    ref = orch.submit(_manifest())
    lease = orch.queue.dequeue(timeout=0)
    orch.update_status(ref.run_id, RUNNING, current_step="nav")

    again = orch.submit(_manifest())

    assert again.run_id == ref.run_id
    assert again.status == RUNNING
    assert not again.created
    assert again.message == "Already in progress"
    assert orch.queue.depth() == 0
    assert orch.queue.complete(lease)


def test_resubmit_while_queued_does_not_double_enqueue(orch: RunOrchestrator) -> None:
    ref = orch.submit(_manifest())
    again = orch.submit(_manifest())

    assert again.run_id == ref.run_id
    assert orch.queue.depth() == 1


def test_resubmit_after_success_and_after_failure(orch: RunOrchestrator) -> None:
    ok = orch.submit(_manifest("job-1"))
    orch.update_status(ok.run_id, RUNNING)
    orch.update_status(ok.run_id, SUCCEEDED)

    again = orch.submit(_manifest("job-1"))
    assert again.run_id == ok.run_id
    assert again.message == "Already completed successfully"

    bad = orch.submit(_manifest("job-2"))
    orch.update_status(bad.run_id, FAILED, error={"code": "Timeout", "message": "x", "retryable": True})
    retry = orch.submit(_manifest("job-2"))
    assert retry.created
    assert retry.run_id != bad.run_id
    assert orch.get_status(bad.run_id).status == FAILED


def test_terminal_status_is_final_and_notifies_once(orch: RunOrchestrator, post: RecordingPost) -> None:
    ref = orch.submit(_manifest())
    orch.update_status(ref.run_id, RUNNING)
    orch.update_progress(ref.run_id, "save", "attempt 1/3", progress={"phase": "x"})
    done = orch.update_status(
        ref.run_id,
        SUCCEEDED,
        current_step="done",
        actions_performed={"imported_floorplans": True, "imported_rms": False, "added_3d_content": False, "saved": True, "delivered": False},
    )

    assert done.completed_at is not None
    assert done.started_at is not None
    assert done.progress is None
    with pytest.raises(InvalidTransition):
        orch.update_status(ref.run_id, RUNNING)
    with pytest.raises(InvalidTransition):
        orch.update_status(ref.run_id, FAILED)

    # Progress for a finished run is ignored.
    orch.update_progress(ref.run_id, "late", "ignored")
    assert orch.get_status(ref.run_id).current_step == "done"

    assert len(post.calls) == 1
    url, body, headers = post.calls[0]
    assert url == "https://hooks.test/cb"
    payload = json.loads(body)
    assert payload["status"] == SUCCEEDED
    assert payload["run_id"] == ref.run_id
    assert payload["actions_performed"]["saved"] is True
    assert "error" not in payload
    assert verify_signature(headers[TIMESTAMP_HEADER], body, headers[SIGNATURE_HEADER], "s3cret")


def test_update_status_rejects_unknown_fields(orch: RunOrchestrator) -> None:
    ref = orch.submit(_manifest())
    with pytest.raises(ValueError):
        orch.update_status(ref.run_id, RUNNING, version=99)


def test_progress_records_evidence(orch: RunOrchestrator) -> None:
    ref = orch.submit(_manifest())
    orch.update_status(ref.run_id, RUNNING)
    orch.update_progress(ref.run_id, "nav", "shot", evidence={"step": "nav", "path": "/x.png", "timestamp": "t"})

    run = orch.get_status(ref.run_id)
    assert run.current_step == "nav"
    assert run.evidence == [{"step": "nav", "path": "/x.png", "timestamp": "t"}]
    assert orch.update_progress("missing", "nav") is None


def test_recover_requeues_unfinished(tmp_path: Path) -> None:
    store = RunStore(tmp_path)
    first = RunOrchestrator(store, JobQueue())
    a = first.submit(_manifest("a"))
    b = first.submit(_manifest("b"))
    first.update_status(b.run_id, RUNNING)
    c = first.submit(_manifest("c"))
    first.update_status(c.run_id, FAILED)

    restarted = RunOrchestrator(store, JobQueue())
    assert restarted.recover() == 2
    assert restarted.queue.contains(a.run_id)
    assert restarted.queue.contains(b.run_id)
    assert not restarted.queue.contains(c.run_id)


def test_callback_failures_never_raise(tmp_path: Path) -> None:
    post = RecordingPost(error=HttpClientError("connection refused"))
    orch = RunOrchestrator(RunStore(tmp_path), JobQueue(), notifier=CallbackNotifier(post=post))
    ref = orch.submit(_manifest())

    run = orch.update_status(ref.run_id, FAILED, error={"code": "AuthRequired", "message": "login", "retryable": False})

    assert run.status == FAILED
    assert len(post.calls) == 1
    assert json.loads(post.calls[0][1])["error"]["code"] == "AuthRequired"
    assert CallbackNotifier(post=RecordingPost(status=500)).send(run) is False


def test_callback_skipped_without_configuration(tmp_path: Path, post: RecordingPost) -> None:
    orch = RunOrchestrator(RunStore(tmp_path), JobQueue(), notifier=CallbackNotifier(post=post))
    ref = orch.submit(_manifest(callbacks=False))
    orch.update_status(ref.run_id, FAILED)

    assert post.calls == []


def test_signature_scheme() -> None:
    headers = signed_headers('{"a":1}', "k", now_ms=1700000000000)

    assert headers[TIMESTAMP_HEADER] == "1700000000000"
    assert headers[SIGNATURE_HEADER] == sign("1700000000000", '{"a":1}', "k")
    assert verify_signature("1700000000000", '{"a":1}', headers[SIGNATURE_HEADER], "k")
    assert not verify_signature("1700000000000", '{"a":2}', headers[SIGNATURE_HEADER], "k")
    assert not verify_signature("1700000000000", '{"a":1}', headers[SIGNATURE_HEADER], "other")
    assert not verify_signature(
        "1700000000000", '{"a":1}', headers[SIGNATURE_HEADER], "k", max_age_seconds=300, now_ms=1700000400000
    )

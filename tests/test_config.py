from __future__ import annotations

import json
from pathlib import Path

import pytest

from runners.listing_delivery.config import DeliveryConfig
from runners.listing_delivery.server.ratelimit import SlidingWindowLimiter
from runners.listing_delivery.workflow.context import WorkflowTimeouts


def test_from_env_reads_runner_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DATA_DIR", str(tmp_path))
    monkeypatch.setenv("RUNNER_PORT", "9090")
    monkeypatch.setenv("RUNNER_AUTH_TOKEN", "tok")
    monkeypatch.setenv("ALLOWED_HOSTS", "Example.com, *, cdn.test")
    monkeypatch.setenv("SAFE_MODE", "yes")
    monkeypatch.setenv("RATE_LIMIT_WINDOW_MS", "30000")
    monkeypatch.setenv("JOB_TIMEOUT_MS", "not-a-number")
    monkeypatch.setenv("BROWSER_MODE", "connect")
    monkeypatch.setenv("PUBLIC_BASE_URL", "https://runner.test/")
    monkeypatch.delenv("STORAGE_STATE_PATH", raising=False)

    cfg = DeliveryConfig.from_env()

    assert cfg.port == 9090
    assert cfg.allowed_hosts == ["example.com", "cdn.test"]
    assert cfg.safe_mode is True
    assert cfg.rate_limit_window == 30.0
    assert cfg.job_timeout == 300.0
    assert cfg.browser_mode == "attach"
    assert cfg.public_base_url == "https://runner.test"
    assert cfg.storage_state_path == str(tmp_path / "auth" / "storage-state.json")
    assert cfg.runs_dir == tmp_path / "runs"
    cfg.validate_for_serve()


def test_serve_requires_token(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="RUNNER_AUTH_TOKEN"):
        DeliveryConfig(data_dir=str(tmp_path)).validate_for_serve()


def test_host_allowlist_matches_subdomains(tmp_path: Path) -> None:
    cfg = DeliveryConfig(data_dir=str(tmp_path), allowed_hosts=["youriguide.com"])

    assert cfg.is_host_allowed("youriguide.com")
    assert cfg.is_host_allowed("www.YourIGuide.com.")
    assert not cfg.is_host_allowed("evilyouriguide.com")
    assert not cfg.is_host_allowed("")
    assert DeliveryConfig(data_dir=str(tmp_path), allowed_hosts=[]).is_host_allowed("anything.test")


def test_workflow_timeouts_from_env() -> None:
    t = WorkflowTimeouts.from_env({"WORKFLOW_READINESS": "120", "WORKFLOW_VERIFY": "bogus", "WORKFLOW_PAGE_READY": "-3"})

    assert t.readiness == 120.0
    assert t.verify == 45.0
    assert t.page_ready == 0.0


def test_sliding_window_limiter() -> None:
    now = [0.0]
    limiter = SlidingWindowLimiter(2, 10, clock=lambda: now[0])

    assert limiter.check("a").remaining == 1
    assert limiter.check("a").remaining == 0
    denied = limiter.check("a")
    assert not denied.allowed
    assert denied.reset_seconds == 10
    assert limiter.check("b").allowed

    now[0] = 10.5
    assert limiter.check("a").allowed


def test_import_cookies_command(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    from runners.listing_delivery.main import main

    monkeypatch.setenv("DATA_DIR", str(tmp_path))
    out = tmp_path / "state.json"

    assert main(["import-cookies", "a=1; b=2", "app.aryeo.com", "--out", str(out)]) == 0
    assert json.loads(capsys.readouterr().out)["cookie_count"] == 2
    assert [c["name"] for c in json.loads(out.read_text(encoding="utf-8"))["cookies"]] == ["a", "b"]

    assert main(["import-cookies", "garbage", "app.aryeo.com", "--out", str(out)]) == 1


def test_serve_without_token_exits_2(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    from runners.listing_delivery.main import main

    monkeypatch.setenv("DATA_DIR", str(tmp_path))
    monkeypatch.delenv("RUNNER_AUTH_TOKEN", raising=False)

    assert main(["serve"]) == 2

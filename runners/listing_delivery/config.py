from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_BINARY_CANDIDATES: list[str] = [
    "/usr/bin/chromium",
    "/usr/bin/chromium-browser",
    "/usr/local/bin/chromium",
    "/opt/chromium/chromium",
    "/Applications/Chromium.app/Contents/MacOS/Chromium",
    "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
    "/usr/bin/google-chrome",
    "/usr/bin/google-chrome-stable",
    "/opt/google/chrome/chrome",
    "C:\\Program Files\\Google\\Chrome\\Application\\chrome.exe",
    # Snap builds ignore --user-data-dir; last resort only.
    "/snap/bin/chromium",
]

DEFAULT_ALLOWED_HOSTS: list[str] = ["cdn.virtualxposure.com", "youriguide.com", "app.aryeo.com"]


def expand_path(raw: str) -> str:
    return str(Path(raw).expanduser())


def _bool_env(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    return default


def _int_env(name: str, default: int, *, minimum: int | None = None) -> int:
    raw = os.environ.get(name)
    try:
        value = int(str(raw).strip()) if raw is not None and str(raw).strip() else default
    except ValueError:
        value = default
    if minimum is not None:
        value = max(minimum, value)
    return value


def _ms_env(name: str, default_ms: int) -> float:
    return _int_env(name, default_ms, minimum=0) / 1000.0


def _list_env(name: str, default: list[str]) -> list[str]:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return list(default)
    return [item.strip().lower() for item in raw.split(",") if item.strip()]


@dataclass
class DeliveryConfig:
    data_dir: str
    binary_path: str = "google-chrome"
    storage_state_path: str = ""
    port: int = 8080
    host: str = "0.0.0.0"
    auth_token: str = ""
    allowed_hosts: list[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_HOSTS))
    browser_mode: str = "launch"
    cdp_port: int = 9222
    headless: bool = True
    extra_flags: list[str] = field(default_factory=list)
    browser_timeout: float = 60.0
    callback_timeout: float = 30.0
    job_timeout: float = 300.0
    max_retries: int = 3
    rate_limit_window: float = 60.0
    rate_limit_max_requests: int = 30
    safe_mode: bool = False
    trust_proxy: bool = False
    run_ttl_days: int = 7
    workers: int = 1
    public_base_url: str | None = None
    http_timeout: float = 10.0

    def __post_init__(self) -> None:
        if not self.storage_state_path:
            self.storage_state_path = str(Path(self.data_dir) / "auth" / "storage-state.json")

    @property
    def runs_dir(self) -> Path:
        return Path(self.data_dir) / "runs"

    @property
    def evidence_dir(self) -> Path:
        return Path(self.data_dir) / "evidence"

    @property
    def profiles_dir(self) -> Path:
        return Path(self.data_dir) / "profiles"

    @property
    def run_ttl_seconds(self) -> float:
        return float(self.run_ttl_days) * 24 * 3600

    @staticmethod
    def normalize_mode(raw: str | None) -> str:
        mode = (raw or "").strip().lower()
        if mode in {"attach", "connect", "external"}:
            return "attach"
        return "launch"

    @classmethod
    def detect_binary(cls) -> str:
        env_path = os.environ.get("BROWSER_BINARY")
        if env_path:
            return expand_path(env_path)
        for candidate in DEFAULT_BINARY_CANDIDATES:
            path = Path(candidate)
            if path.exists() and os.access(str(path), os.X_OK):
                return str(path)
        # Rely on PATH lookup
        return "google-chrome"

    @classmethod
    def from_env(cls) -> DeliveryConfig:
        data_dir = expand_path(os.environ.get("DATA_DIR", "./data"))
        flags_raw = os.environ.get("BROWSER_FLAGS", "")
        allowed = [h for h in _list_env("ALLOWED_HOSTS", DEFAULT_ALLOWED_HOSTS) if h != "*"]
        state_raw = (os.environ.get("STORAGE_STATE_PATH") or "").strip()
        return cls(
            data_dir=data_dir,
            binary_path=cls.detect_binary(),
            storage_state_path=expand_path(state_raw) if state_raw else "",
            port=_int_env("RUNNER_PORT", 8080, minimum=1),
            host=os.environ.get("RUNNER_HOST", "0.0.0.0"),
            auth_token=os.environ.get("RUNNER_AUTH_TOKEN", ""),
            allowed_hosts=allowed,
            browser_mode=cls.normalize_mode(os.environ.get("BROWSER_MODE")),
            cdp_port=_int_env("BROWSER_CDP_PORT", 9222, minimum=1),
            headless=_bool_env("BROWSER_HEADLESS", True),
            extra_flags=[flag.strip() for flag in flags_raw.split(",") if flag.strip()],
            browser_timeout=_ms_env("BROWSER_TIMEOUT_MS", 60000),
            callback_timeout=_ms_env("CALLBACK_TIMEOUT_MS", 30000),
            job_timeout=_ms_env("JOB_TIMEOUT_MS", 300000),
            max_retries=_int_env("MAX_RETRIES", 3, minimum=1),
            rate_limit_window=_ms_env("RATE_LIMIT_WINDOW_MS", 60000),
            rate_limit_max_requests=_int_env("RATE_LIMIT_MAX_REQUESTS", 30, minimum=1),
            safe_mode=_bool_env("SAFE_MODE", False),
            trust_proxy=_bool_env("TRUST_PROXY", False),
            run_ttl_days=_int_env("RUN_TTL_DAYS", 7, minimum=1),
            workers=_int_env("DELIVERY_WORKERS", 1, minimum=1),
            public_base_url=(os.environ.get("PUBLIC_BASE_URL") or "").rstrip("/") or None,
            http_timeout=float(os.environ.get("HTTP_TIMEOUT", "10")),
        )

    def validate_for_serve(self) -> None:
        if not self.auth_token:
            raise ValueError("RUNNER_AUTH_TOKEN is required to serve the HTTP API")

    def is_host_allowed(self, host: str) -> bool:
        host = (host or "").strip().lower().rstrip(".")
        if not self.allowed_hosts:
            return True
        for raw_allowed in self.allowed_hosts:
            allowed = (raw_allowed or "").strip().lower().lstrip(".").rstrip(".")
            if not allowed:
                continue
            if host == allowed:
                return True
            if host.endswith("." + allowed):
                return True
        return False

from __future__ import annotations

import contextlib
import logging
import shutil
import socket
import subprocess
import tempfile
import time
from dataclasses import dataclass
from urllib.error import URLError
from urllib.request import urlopen

from .config import DeliveryConfig

logger = logging.getLogger("delivery.launcher")


@dataclass
class LaunchResult:
    command: list[str]
    started: bool
    message: str
    port: int = 0


class BrowserLauncher:
    """Owns one Chrome process with a throwaway profile (or attaches to an existing one)."""

    def __init__(self, config: DeliveryConfig) -> None:
        self.config = config
        self.process: subprocess.Popen | None = None
        self.port = int(config.cdp_port)
        self.profile_dir: str | None = None

    @property
    def attach_mode(self) -> bool:
        return self.config.browser_mode == "attach"

    @staticmethod
    def find_free_port() -> int:
        with contextlib.closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as s:
            s.bind(("127.0.0.1", 0))
            return s.getsockname()[1]

    def cdp_ready(self, timeout: float = 0.4) -> bool:
        """Return True if the CDP HTTP endpoint responds."""
        endpoint = f"http://127.0.0.1:{self.port}/json/version"
        try:
            with urlopen(endpoint, timeout=timeout) as resp:
                return resp.status == 200
        except (OSError, TimeoutError, URLError):
            return False

    def build_launch_command(self) -> list[str]:
        flags = [
            f"--remote-debugging-port={self.port}",
            f"--user-data-dir={self.profile_dir}",
            "--remote-allow-origins=*",
            "--no-first-run",
            "--no-default-browser-check",
            "--disable-dev-shm-usage",
            "--window-size=1440,1000",
        ]
        if self.config.headless:
            flags.append("--headless=new")
        flags.extend(self.config.extra_flags)
        return [self.config.binary_path, *flags]

    def ensure_running(self, timeout: float = 15.0) -> LaunchResult:
        if self.attach_mode:
            if self.cdp_ready():
                return LaunchResult([], False, "Attached to existing Chrome on CDP port", self.port)
            return LaunchResult(
                [], False, f"Attach mode: no Chrome listening on CDP port {self.port}", self.port
            )

        if self.process is not None and self.process.poll() is None and self.cdp_ready():
            return LaunchResult([], False, "Chrome already running", self.port)

        self.port = self.find_free_port()
        self.config.profiles_dir.mkdir(parents=True, exist_ok=True)
        self.profile_dir = tempfile.mkdtemp(prefix="run-", dir=str(self.config.profiles_dir))
        cmd = self.build_launch_command()
        try:
            self.process = subprocess.Popen(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        except OSError as exc:
            return LaunchResult(cmd, False, str(exc), self.port)

        deadline = time.time() + timeout
        while time.time() < deadline:
            if self.cdp_ready():
                logger.info("chrome_launched port=%d headless=%s", self.port, self.config.headless)
                return LaunchResult(cmd, True, "Chrome launched", self.port)
            if self.process.poll() is not None:
                return LaunchResult(cmd, False, f"Chrome exited with code {self.process.returncode}", self.port)
            time.sleep(0.1)
        return LaunchResult(cmd, False, "Chrome launch timed out", self.port)

    def stop(self, *, timeout: float = 3.0) -> bool:
        """Stop the launcher-owned Chrome and remove its profile."""
        proc = self.process
        self.process = None
        stopped = False
        if proc is not None:
            if proc.poll() is None:
                with contextlib.suppress(OSError):
                    proc.terminate()
                try:
                    proc.wait(timeout=max(0.1, float(timeout)))
                except subprocess.TimeoutExpired:
                    with contextlib.suppress(OSError):
                        proc.kill()
            stopped = True
        if self.profile_dir:
            shutil.rmtree(self.profile_dir, ignore_errors=True)
            self.profile_dir = None
        return stopped

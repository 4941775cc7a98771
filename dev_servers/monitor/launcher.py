from __future__ import annotations

import contextlib
import logging
import subprocess
import time
import urllib.parse
from dataclasses import dataclass
from pathlib import Path

from .config import SessionConfig, expand_path
from .http_client import HttpClientError, http_get_json
from .ports import find_free_port, port_in_use

_LOGGER = logging.getLogger("dev.monitor.launcher")


@dataclass
class LaunchResult:
    command: list[str]
    started: bool
    message: str
    log_path: str | None = None
    log_tail: str | None = None


def _tail_text(path: str | None, max_chars: int = 4000) -> str | None:
    if not path:
        return None
    try:
        raw = Path(path).read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None
    return raw if len(raw) <= max_chars else raw[-max_chars:]


class BrowserLauncher:
    """Launch and own one Chromium instance with remote debugging enabled."""

    def __init__(self, config: SessionConfig, log_path: str | None = None) -> None:
        self.config = config
        self.binary_path = config.browser_binary or SessionConfig.detect_binary()
        self.cdp_port = int(config.cdp_port)
        self.log_path = log_path
        self.process: subprocess.Popen | None = None

    @property
    def endpoint(self) -> str:
        return f"http://127.0.0.1:{self.cdp_port}"

    def build_launch_command(self, extra: list[str] | None = None) -> list[str]:
        flags = [
            f"--remote-debugging-port={self.cdp_port}",
            f"--user-data-dir={expand_path(self.config.profile_dir)}",
            "--remote-allow-origins=*",
            "--no-first-run",
            "--no-default-browser-check",
            "--disable-fre",
            "--disable-background-timer-throttling",
            "--disable-renderer-backgrounding",
        ]
        if self.config.headless:
            flags.append("--headless=new")
        else:
            flags.append("--window-size=1280,900")
        flags.extend(self.config.browser_flags)
        if extra:
            flags.extend(extra)
        # The first page target is the one the session drives.
        return [self.binary_path, *flags, "about:blank"]

    def cdp_ready(self, timeout: float = 0.4) -> bool:
        try:
            http_get_json(f"{self.endpoint}/json/version", timeout=timeout)
        except HttpClientError:
            return False
        return True

    def ensure_running(self, timeout: float = 10.0) -> LaunchResult:
        if port_in_use(self.cdp_port):
            # Someone else (often a stale Chrome) owns the default port: launch on a free one.
            old_port = self.cdp_port
            self.cdp_port = find_free_port()
            _LOGGER.info("cdp_port_busy port=%s fallback=%s", old_port, self.cdp_port)

        Path(expand_path(self.config.profile_dir)).mkdir(parents=True, exist_ok=True)
        cmd = self.build_launch_command()
        try:
            if self.log_path:
                with open(self.log_path, "ab") as log_fh:
                    self.process = subprocess.Popen(
                        cmd, stdout=log_fh, stderr=log_fh, stdin=subprocess.DEVNULL, start_new_session=True
                    )
            else:
                self.process = subprocess.Popen(
                    cmd,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                    stdin=subprocess.DEVNULL,
                    start_new_session=True,
                )
        except OSError as exc:
            return LaunchResult(cmd, False, str(exc), log_path=self.log_path)

        deadline = time.time() + timeout
        while time.time() < deadline:
            if self.cdp_ready():
                return LaunchResult(cmd, True, "Chrome launched", log_path=self.log_path)
            if self.process.poll() is not None:
                return LaunchResult(
                    cmd,
                    False,
                    f"Chrome exited with code {self.process.returncode}",
                    log_path=self.log_path,
                    log_tail=_tail_text(self.log_path),
                )
            time.sleep(0.1)
        return LaunchResult(
            cmd, False, "Chrome launch timed out", log_path=self.log_path, log_tail=_tail_text(self.log_path)
        )

    def list_targets(self) -> list[dict]:
        try:
            payload = http_get_json(f"{self.endpoint}/json/list", timeout=0.5)
        except HttpClientError:
            return []
        return payload if isinstance(payload, list) else []

    def page_websocket_url(self) -> str | None:
        for target in self.list_targets():
            if isinstance(target, dict) and target.get("type") == "page" and target.get("webSocketDebuggerUrl"):
                return str(target["webSocketDebuggerUrl"])
        try:
            # Chrome only accepts PUT on /json/new since M111.
            created = http_get_json(f"{self.endpoint}/json/new?{urllib.parse.quote('about:blank')}", method="PUT")
        except HttpClientError:
            return None
        if isinstance(created, dict) and created.get("webSocketDebuggerUrl"):
            return str(created["webSocketDebuggerUrl"])
        return None

    def stop(self, *, timeout: float = 2.0) -> bool:
        """Best-effort stop of the launcher-owned Chrome process."""
        proc = self.process
        if proc is None:
            return False
        if proc.poll() is not None:
            return True

        with contextlib.suppress(OSError):
            proc.terminate()

        deadline = time.time() + max(0.1, float(timeout))
        while time.time() < deadline:
            if proc.poll() is not None:
                return True
            time.sleep(0.05)

        # Escalate to kill.
        with contextlib.suppress(OSError):
            proc.kill()
        return True


__all__ = ["BrowserLauncher", "LaunchResult"]

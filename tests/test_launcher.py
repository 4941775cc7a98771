from __future__ import annotations

from pathlib import Path

import pytest

from dev_servers.monitor import launcher as launcher_module
from dev_servers.monitor.config import SessionConfig
from dev_servers.monitor.launcher import BrowserLauncher


def _config(tmp_path: Path, **overrides: object) -> SessionConfig:
    values: dict[str, object] = {
        "server_command": "npm run dev",
        "profile_dir": str(tmp_path / "profile"),
        "browser_binary": "/opt/chromium/chromium",
        "cdp_port": 9333,
    }
    values.update(overrides)
    return SessionConfig(**values)  # type: ignore[arg-type]


def test_launch_command_uses_dedicated_profile_and_port(tmp_path: Path) -> None:
    cmd = BrowserLauncher(_config(tmp_path)).build_launch_command()
    assert cmd[0] == "/opt/chromium/chromium"
    assert "--remote-debugging-port=9333" in cmd
    assert f"--user-data-dir={tmp_path / 'profile'}" in cmd
    assert "--headless=new" in cmd
    assert cmd[-1] == "about:blank"


def test_headful_launch_and_extra_flags(tmp_path: Path) -> None:
    cfg = _config(tmp_path, headless=False, browser_flags=["--lang=en-US"])
    cmd = BrowserLauncher(cfg).build_launch_command(extra=["--mute-audio"])
    assert "--headless=new" not in cmd
    assert "--lang=en-US" in cmd and "--mute-audio" in cmd


def test_binary_from_env_when_not_configured(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DEV_MONITOR_BROWSER_BINARY", "/custom/chrome")
    assert BrowserLauncher(_config(tmp_path, browser_binary="")).binary_path == "/custom/chrome"


def test_busy_cdp_port_falls_back_to_a_free_one(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(launcher_module, "port_in_use", lambda port: port == 9333)
    monkeypatch.setattr(launcher_module, "find_free_port", lambda: 45678)
    launched: list[list[str]] = []

    class FakePopen:
        returncode = None

        def __init__(self, cmd: list[str], **_: object) -> None:
            launched.append(cmd)

        def poll(self) -> None:
            return None

    monkeypatch.setattr(launcher_module.subprocess, "Popen", FakePopen)
    monkeypatch.setattr(BrowserLauncher, "cdp_ready", lambda self, timeout=0.4: True)

    launcher = BrowserLauncher(_config(tmp_path))
    result = launcher.ensure_running(timeout=1.0)

    assert result.started
    assert launcher.cdp_port == 45678
    assert "--remote-debugging-port=45678" in launched[0]
    assert (tmp_path / "profile").is_dir()


def test_launch_failure_is_reported(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(launcher_module, "port_in_use", lambda port: False)
    launcher = BrowserLauncher(_config(tmp_path, browser_binary=str(tmp_path / "no-such-browser")))
    result = launcher.ensure_running(timeout=0.5)
    assert not result.started
    assert launcher.stop() is False


def test_page_websocket_url_prefers_existing_page(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    targets = [
        {"type": "service_worker", "webSocketDebuggerUrl": "ws://sw"},
        {"type": "page", "webSocketDebuggerUrl": "ws://127.0.0.1:9333/devtools/page/1"},
    ]
    monkeypatch.setattr(BrowserLauncher, "list_targets", lambda self: targets)
    assert BrowserLauncher(_config(tmp_path)).page_websocket_url() == "ws://127.0.0.1:9333/devtools/page/1"


def test_page_websocket_url_opens_a_page_when_none_exist(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    requests: list[tuple[str, str]] = []

    def fake_get_json(url: str, timeout: float = 2.0, method: str = "GET") -> object:
        requests.append((method, url))
        return {"webSocketDebuggerUrl": "ws://127.0.0.1:9333/devtools/page/new"}

    monkeypatch.setattr(BrowserLauncher, "list_targets", lambda self: [])
    monkeypatch.setattr(launcher_module, "http_get_json", fake_get_json)
    assert BrowserLauncher(_config(tmp_path)).page_websocket_url() == "ws://127.0.0.1:9333/devtools/page/new"
    assert requests[0][0] == "PUT"
    assert requests[0][1].startswith("http://127.0.0.1:9333/json/new")


def test_crashed_launch_reports_browser_output(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(launcher_module, "port_in_use", lambda port: False)
    monkeypatch.setattr(BrowserLauncher, "cdp_ready", lambda self, timeout=0.4: False)
    log_path = tmp_path / "dev-monitor-browser.log"

    class CrashingPopen:
        returncode = 21

        def __init__(self, cmd: list[str], stdout: object = None, **_: object) -> None:
            stdout.write(b"[ERROR:zygote_host_impl_linux.cc] No usable sandbox!\n")  # type: ignore[attr-defined]

        def poll(self) -> int:
            return self.returncode

    monkeypatch.setattr(launcher_module.subprocess, "Popen", CrashingPopen)
    result = BrowserLauncher(_config(tmp_path), log_path=str(log_path)).ensure_running(timeout=1.0)

    assert not result.started
    assert result.message == "Chrome exited with code 21"
    assert result.log_path == str(log_path)
    assert "No usable sandbox" in (result.log_tail or "")

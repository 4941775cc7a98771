from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_APP_PORT = 3000
DEFAULT_COMPANION_PORT = 3684
DEFAULT_CDP_PORT = 9222

PROCESS_MANAGERS = ("standard", "foreman", "docker-compose", "pm2")
FRAMEWORKS = ("default", "rails", "nextjs", "django", "express")

DEFAULT_BINARY_CANDIDATES: list[str] = [
    # Prefer Chromium; snap builds ignore --user-data-dir so they go last.
    "/usr/bin/chromium",
    "/usr/bin/chromium-browser",
    "/usr/local/bin/chromium",
    "/opt/chromium/chromium",
    "/Applications/Chromium.app/Contents/MacOS/Chromium",
    "C:\\Program Files\\Chromium\\Application\\chrome.exe",
    "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
    "/usr/bin/google-chrome",
    "/usr/bin/google-chrome-stable",
    "/opt/google/chrome/chrome",
    "C:\\Program Files\\Google\\Chrome\\Application\\chrome.exe",
    "C:\\Program Files (x86)\\Google\\Chrome\\Application\\chrome.exe",
    "/snap/bin/chromium",
]


def expand_path(raw: str) -> str:
    return str(Path(raw).expanduser())


def _env_flag(name: str, default: str = "0") -> bool:
    return str(os.environ.get(name, default)).strip().lower() in {"1", "true", "yes", "on"}


def _package_dir() -> Path:
    return Path(__file__).resolve().parent


@dataclass
class SessionConfig:
    server_command: str
    port: int = DEFAULT_APP_PORT
    companion_port: int = DEFAULT_COMPANION_PORT
    profile_dir: str = field(default_factory=lambda: str(Path(tempfile.gettempdir()) / "dev-monitor-chrome-profile"))
    cwd: str = field(default_factory=os.getcwd)
    log_file: str = ""
    screenshot_dir: str = ""
    framework: str = "auto"
    process_manager: str = "auto"
    debug: bool = False

    # Companion service.
    companion_command: str | None = None
    companion_dir: str = field(default_factory=lambda: str(_package_dir()))
    companion_setup_command: str | None = None
    companion_setup_timeout: float = 180.0

    # Browser instrumentation.
    browser_binary: str = ""
    cdp_port: int = DEFAULT_CDP_PORT
    headless: bool = True
    browser_flags: list[str] = field(default_factory=list)

    # Health checks.
    health_max_attempts: int = 30
    health_interval: float = 1.0
    health_timeout: float = 2.0

    @staticmethod
    def normalize_process_manager(raw: str | None) -> str:
        value = (raw or "").strip().lower()
        if value in {"", "auto"}:
            return "auto"
        if value in {"foreman", "overmind", "hivemind"}:
            return "foreman"
        if value in {"docker-compose", "docker_compose", "compose", "docker"}:
            return "docker-compose"
        if value in {"pm2", "standard"}:
            return value
        raise ValueError(f"Unsupported process manager: {raw}")

    @staticmethod
    def normalize_framework(raw: str | None) -> str:
        value = (raw or "").strip().lower()
        if value in {"", "auto"}:
            return "auto"
        if value in {"next", "next.js", "nextjs"}:
            return "nextjs"
        if value in {"node", "express"}:
            return "express"
        if value in {"none", "generic", "default"}:
            return "default"
        if value in {"rails", "django"}:
            return value
        raise ValueError(f"Unsupported framework: {raw}")

    @classmethod
    def detect_binary(cls) -> str:
        env_path = os.environ.get("DEV_MONITOR_BROWSER_BINARY")
        if env_path:
            return expand_path(env_path)
        for candidate in DEFAULT_BINARY_CANDIDATES:
            path = Path(candidate)
            if path.exists() and os.access(str(path), os.X_OK):
                return str(path)
        # Last resort: rely on PATH lookup
        return "google-chrome"

    @classmethod
    def from_env(cls, server_command: str, **overrides: object) -> SessionConfig:
        flags_raw = os.environ.get("DEV_MONITOR_BROWSER_FLAGS", "")
        values: dict[str, object] = {
            "server_command": server_command,
            "port": int(os.environ.get("DEV_MONITOR_PORT", str(DEFAULT_APP_PORT))),
            "companion_port": int(os.environ.get("DEV_MONITOR_COMPANION_PORT", str(DEFAULT_COMPANION_PORT))),
            "framework": cls.normalize_framework(os.environ.get("DEV_MONITOR_FRAMEWORK")),
            "process_manager": cls.normalize_process_manager(os.environ.get("DEV_MONITOR_PROCESS_MANAGER")),
            "debug": _env_flag("DEV_MONITOR_DEBUG"),
            "companion_command": os.environ.get("DEV_MONITOR_COMPANION_COMMAND") or None,
            "companion_setup_command": os.environ.get("DEV_MONITOR_COMPANION_SETUP") or None,
            "companion_setup_timeout": float(os.environ.get("DEV_MONITOR_COMPANION_SETUP_TIMEOUT", "180")),
            "browser_binary": cls.detect_binary(),
            "cdp_port": int(os.environ.get("DEV_MONITOR_CDP_PORT", str(DEFAULT_CDP_PORT))),
            "headless": _env_flag("DEV_MONITOR_HEADLESS", "1"),
            "browser_flags": [flag for flag in flags_raw.split(",") if flag.strip()],
        }
        if companion_dir := os.environ.get("DEV_MONITOR_COMPANION_DIR"):
            values["companion_dir"] = expand_path(companion_dir)
        if profile := os.environ.get("DEV_MONITOR_PROFILE_DIR"):
            values["profile_dir"] = expand_path(profile)
        values.update({k: v for k, v in overrides.items() if v is not None})
        values["framework"] = cls.normalize_framework(str(values["framework"]))
        values["process_manager"] = cls.normalize_process_manager(str(values["process_manager"]))
        config = cls(**values)  # type: ignore[arg-type]
        if not config.screenshot_dir and config.log_file:
            config.screenshot_dir = str(Path(config.log_file).parent / "screenshots")
        return config

    @property
    def app_url(self) -> str:
        return f"http://localhost:{self.port}"

    @property
    def companion_url(self) -> str:
        return f"http://localhost:{self.companion_port}"

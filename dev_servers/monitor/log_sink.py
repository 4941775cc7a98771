"""Unified session log: one append-only file shared by server and browser output."""

from __future__ import annotations

import contextlib
import logging
import os
import re
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path

from .parsers.output_processor import LogEntry

_LOGGER = logging.getLogger("dev.monitor.log_sink")

LOG_PREFIX = "dev-monitor"
DEFAULT_LOG_DIR = Path("/var/log") / LOG_PREFIX
DEFAULT_KEEP = 10

_SAFE_NAME_RE = re.compile(r"[^a-zA-Z0-9_-]")


def iso_timestamp(now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def default_alias_path() -> Path:
    raw = os.environ.get("DEV_MONITOR_LOG_ALIAS")
    if raw and raw.strip():
        return Path(raw.strip()).expanduser()
    return Path(tempfile.gettempdir()) / f"{LOG_PREFIX}.log"


def project_identity(cwd: str | Path) -> str:
    return _SAFE_NAME_RE.sub("_", Path(cwd).resolve().name) or "root"


def _writable_log_dir(base_dir: str | Path | None) -> Path:
    if base_dir is None:
        raw = os.environ.get("DEV_MONITOR_LOG_DIR")
        base_dir = Path(raw).expanduser() if raw and raw.strip() else DEFAULT_LOG_DIR
    path = Path(base_dir)
    try:
        path.mkdir(parents=True, exist_ok=True)
        if os.access(path, os.W_OK):
            return path
    except OSError:
        pass
    # /var/log is usually not writable for a regular user.
    fallback = Path(tempfile.gettempdir()) / f"{LOG_PREFIX}-logs"
    fallback.mkdir(parents=True, exist_ok=True)
    return fallback


def prune_old_logs(log_dir: Path, identity: str, keep: int = DEFAULT_KEEP) -> list[Path]:
    """Delete this project's oldest logs so a new file brings the total to ``keep``."""
    prefix = f"{LOG_PREFIX}-{identity}-"
    try:
        candidates = [p for p in log_dir.iterdir() if p.name.startswith(prefix) and p.suffix == ".log"]
        candidates.sort(key=lambda p: p.stat().st_mtime, reverse=True)
    except OSError as exc:
        _LOGGER.warning("log_prune_failed dir=%s error=%s", log_dir, exc)
        return []

    removed: list[Path] = []
    for path in candidates[max(0, keep - 1) :]:
        try:
            path.unlink()
            removed.append(path)
        except OSError:
            continue
    return removed


def point_alias(alias: Path, target: Path) -> bool:
    try:
        if alias.is_symlink() or alias.exists():
            alias.unlink()
        alias.symlink_to(target)
        return True
    except OSError as exc:
        _LOGGER.warning("Could not create symlink %s: %s", alias, exc)
        return False


def create_persistent_log_file(
    base_dir: str | Path | None = None,
    cwd: str | Path | None = None,
    keep: int = DEFAULT_KEEP,
    alias_path: str | Path | None = None,
) -> Path:
    log_dir = _writable_log_dir(base_dir)
    identity = project_identity(cwd if cwd is not None else Path.cwd())
    stamp = re.sub(r"[:.]", "-", iso_timestamp())

    prune_old_logs(log_dir, identity, keep=keep)

    path = log_dir / f"{LOG_PREFIX}-{identity}-{stamp}.log"
    path.write_text("", encoding="utf-8")

    alias = Path(alias_path) if alias_path is not None else default_alias_path()
    point_alias(alias, path)
    return path


class LogSink:
    """Single writer for the session log.

    Every line is written with one ``write`` call while holding the lock, so
    entries coming from the server streams and the browser callback never
    interleave their bytes.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text("", encoding="utf-8")
        self._lock = threading.Lock()

    def log(self, origin: str, message: str) -> None:
        line = f"[{iso_timestamp()}] [{origin.upper()}] {message}\n"
        with self._lock, open(self.path, "a", encoding="utf-8") as fp:
            fp.write(line)

    def append(self, entry: LogEntry) -> None:
        self.log(entry.origin, entry.display)

    def read_lines(self) -> list[str]:
        with contextlib.suppress(FileNotFoundError):
            return self.path.read_text(encoding="utf-8").splitlines()
        return []


__all__ = [
    "LOG_PREFIX",
    "LogSink",
    "create_persistent_log_file",
    "default_alias_path",
    "iso_timestamp",
    "point_alias",
    "project_identity",
    "prune_old_logs",
]

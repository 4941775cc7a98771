from __future__ import annotations

import os
import re
import threading
import time
from datetime import datetime, timezone
from pathlib import Path

import pytest

from dev_servers.monitor.log_sink import (
    LogSink,
    create_persistent_log_file,
    iso_timestamp,
    project_identity,
    prune_old_logs,
)
from dev_servers.monitor.parsers.output_processor import BROWSER, LogEntry

LINE_RE = re.compile(r"^\[\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z\] \[(SERVER|BROWSER)\] (.*)$")


def test_iso_timestamp_is_utc_with_milliseconds() -> None:
    stamp = iso_timestamp(datetime(2024, 1, 15, 10, 23, 45, 123456, tzinfo=timezone.utc))
    assert stamp == "2024-01-15T10:23:45.123Z"


def test_sink_truncates_and_formats_lines(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "session.log"
    path.parent.mkdir()
    path.write_text("stale content\n", encoding="utf-8")

    sink = LogSink(path)
    sink.append(LogEntry(display="Server ready"))
    sink.append(LogEntry(display="[CONSOLE LOG] hi", origin=BROWSER))

    lines = sink.read_lines()
    assert len(lines) == 2
    assert [LINE_RE.match(line).groups() for line in lines] == [  # type: ignore[union-attr]
        ("SERVER", "Server ready"),
        ("BROWSER", "[CONSOLE LOG] hi"),
    ]


def test_concurrent_appends_never_interleave(tmp_path: Path) -> None:
    sink = LogSink(tmp_path / "session.log")
    payload = "x" * 2000

    def writer(origin: str) -> None:
        for i in range(200):
            sink.log(origin, f"{origin}-{i} {payload}")

    threads = [threading.Thread(target=writer, args=(origin,)) for origin in ("server", "browser")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    lines = sink.read_lines()
    assert len(lines) == 400
    assert all(LINE_RE.match(line) and line.endswith(payload) for line in lines)
    server_order = [line.split("] ", 2)[2].split(" ")[0] for line in lines if "[SERVER]" in line]
    assert server_order == [f"server-{i}" for i in range(200)]


def test_project_identity_is_sanitised(tmp_path: Path) -> None:
    project = tmp_path / "my app.v2"
    project.mkdir()
    assert project_identity(project) == "my_app_v2"


def test_prune_keeps_room_for_the_new_file(tmp_path: Path) -> None:
    for i in range(5):
        p = tmp_path / f"dev-monitor-app-{i}.log"
        p.write_text("", encoding="utf-8")
        os.utime(p, (1_700_000_000 + i, 1_700_000_000 + i))
    other = tmp_path / "dev-monitor-other-0.log"
    other.write_text("", encoding="utf-8")

    removed = prune_old_logs(tmp_path, "app", keep=3)

    assert sorted(p.name for p in removed) == [f"dev-monitor-app-{i}.log" for i in range(3)]
    assert sorted(p.name for p in tmp_path.iterdir()) == [
        "dev-monitor-app-3.log",
        "dev-monitor-app-4.log",
        "dev-monitor-other-0.log",
    ]


def test_persistent_log_rotation_and_alias(tmp_path: Path) -> None:
    log_dir = tmp_path / "logs"
    project = tmp_path / "shop"
    project.mkdir()
    alias = tmp_path / "dev-monitor.log"

    created = []
    for _ in range(4):
        created.append(create_persistent_log_file(base_dir=log_dir, cwd=project, keep=2, alias_path=alias))
        time.sleep(0.01)

    remaining = sorted(p for p in log_dir.iterdir() if p.name.startswith("dev-monitor-shop-"))
    assert len(remaining) == 2
    assert created[-1] in remaining
    assert alias.is_symlink()
    assert alias.resolve() == created[-1].resolve()


def test_log_dir_env_override(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DEV_MONITOR_LOG_DIR", str(tmp_path / "from-env"))
    path = create_persistent_log_file(cwd=tmp_path, alias_path=tmp_path / "alias.log")
    assert path.parent == tmp_path / "from-env"
    assert path.name.startswith(f"dev-monitor-{project_identity(tmp_path)}-")


def test_alias_failure_is_not_fatal(tmp_path: Path) -> None:
    blocked = tmp_path / "not-a-dir"
    blocked.write_text("", encoding="utf-8")
    path = create_persistent_log_file(base_dir=tmp_path / "logs", cwd=tmp_path, alias_path=blocked / "alias.log")
    assert path.exists()

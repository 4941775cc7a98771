from __future__ import annotations

import asyncio
import shlex
import socket
import sys
import time
from collections.abc import Callable
from contextlib import closing
from pathlib import Path
from typing import Any

import pytest

from dev_servers.monitor import orchestrator, ports
from dev_servers.monitor.config import SessionConfig
from dev_servers.monitor.errors import InstrumentationStartupError, NavigationError
from dev_servers.monitor.log_sink import LogSink
from dev_servers.monitor.orchestrator import RUNNING, TERMINATED, DevEnvironment, Session
from dev_servers.monitor.parsers import ClassificationConfig
from dev_servers.monitor.supervisor import ProcessSupervisor


class FakeSupervisor:
    def __init__(
        self,
        sink: LogSink,
        processor: Any,
        *,
        is_terminating: Callable[[], bool],
        on_fatal_exit: Callable[[str], None],
    ) -> None:
        self.sink = sink
        self.processor = processor
        self.is_terminating = is_terminating
        self.on_fatal_exit = on_fatal_exit
        self.calls: list[tuple[str, Any]] = []
        self.ready: dict[str, bool] = {}

    async def start_app(self, command: str, env: dict[str, str] | None = None, cwd: str | None = None) -> None:
        self.calls.append(("start_app", command))

    async def run_setup(self, command: str, cwd: str, timeout: float = 180.0) -> None:
        self.calls.append(("run_setup", command))

    async def start_companion(self, command: str, env: dict[str, str] | None = None, cwd: str | None = None) -> None:
        self.calls.append(("start_companion", env))

    async def wait_until_ready(self, url: str, **_: Any) -> bool:
        self.calls.append(("wait_until_ready", url))
        await asyncio.sleep(0)
        return self.ready.get(url, True)

    async def terminate_all(self, timeout: float = 2.0) -> None:
        self.calls.append(("terminate_all", None))
        await asyncio.sleep(0)

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]


class FakeInstrumentation:
    def __init__(self, *, start_error: Exception | None = None, navigate_error: Exception | None = None) -> None:
        self.start_error = start_error
        self.navigate_error = navigate_error
        self.started = 0
        self.navigated: list[int] = []
        self.shutdowns = 0
        self.on_event: Callable[[str, str], None] | None = None

    async def start(self) -> None:
        self.started += 1
        if self.start_error is not None:
            raise self.start_error

    async def navigate_to_app(self, port: int) -> None:
        if self.navigate_error is not None:
            raise self.navigate_error
        self.navigated.append(port)

    async def shutdown(self) -> None:
        self.shutdowns += 1


@pytest.fixture()
def released(monkeypatch: pytest.MonkeyPatch) -> list[int]:
    calls: list[int] = []

    async def fake_release(port: int, name: str = "process") -> bool:
        calls.append(port)
        await asyncio.sleep(0)
        return False

    monkeypatch.setattr(orchestrator, "release_port", fake_release)
    monkeypatch.setattr(orchestrator, "port_in_use", lambda port: False)
    return calls


def _env(
    tmp_path: Path,
    instr: FakeInstrumentation,
    command: str = "npm run dev",
    *,
    supervisor_factory: Callable[..., Any] = FakeSupervisor,
    **overrides: Any,
) -> DevEnvironment:
    values: dict[str, Any] = {
        "server_command": command,
        "port": 4100,
        "companion_port": 4101,
        "cwd": str(tmp_path),
        "log_file": str(tmp_path / "session.log"),
        "health_interval": 0.0,
    }
    values.update(overrides)
    config = SessionConfig(**values)

    def factory(cfg: SessionConfig, on_event: Callable[[str, str], None]) -> FakeInstrumentation:
        instr.on_event = on_event
        return instr

    return DevEnvironment(
        config,
        sink=LogSink(tmp_path / "session.log"),
        instrumentation_factory=factory,
        supervisor_factory=supervisor_factory,
        version="1.2.3",
        pid_file=tmp_path / "dev-monitor.pid",
    )


async def _until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


def _log_messages(env: DevEnvironment) -> list[str]:
    return [line.split("] ", 1)[1] for line in env.sink.read_lines()]


def test_session_termination_flag_flips_once() -> None:
    classification = ClassificationConfig(process_manager="standard", framework="default")
    session = Session(4100, 4101, "npm run dev", "/tmp/p", "/tmp", "/tmp/x.log", classification)
    assert session.begin_termination() is True
    assert session.begin_termination() is False
    assert session.terminating


def test_busy_port_aborts_before_spawning(tmp_path: Path, released: list[int], monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(orchestrator, "port_in_use", lambda port: port == 4101)
    instr = FakeInstrumentation()
    env = _env(tmp_path, instr)

    assert asyncio.run(env.run()) == 1
    assert env.state == TERMINATED
    assert env.supervisor.calls == []
    assert released == []
    assert instr.started == 0 and instr.shutdowns == 0
    assert not (tmp_path / "dev-monitor.pid").exists()


def test_full_startup_then_interrupt(tmp_path: Path, released: list[int]) -> None:
    instr = FakeInstrumentation()
    env = _env(tmp_path, instr)
    pid_seen: list[bool] = []

    async def scenario() -> int:
        task = asyncio.create_task(env.run())
        await _until(lambda: bool(instr.navigated))
        assert env.state == RUNNING
        pid_seen.append((tmp_path / "dev-monitor.pid").exists())
        env.request_shutdown(0, "interrupted")
        return await asyncio.wait_for(task, timeout=5)

    assert asyncio.run(scenario()) == 0
    assert pid_seen == [True]
    assert not (tmp_path / "dev-monitor.pid").exists()
    assert env.supervisor.names() == [
        "start_app",
        "start_companion",
        "wait_until_ready",
        "wait_until_ready",
        "terminate_all",
    ]
    assert released == [4100, 4101]
    assert instr.started == 1 and instr.navigated == [4100] and instr.shutdowns == 1
    messages = _log_messages(env)
    assert any(m.startswith("[BROWSER] [CDP] Browser launched") for m in messages)
    assert "[BROWSER] [CDP] Navigated to http://localhost:4100" in messages
    assert env.state == TERMINATED


def test_companion_receives_log_path_and_version(tmp_path: Path, released: list[int]) -> None:
    env = _env(tmp_path, FakeInstrumentation(), companion_setup_command="npm install")

    async def scenario() -> None:
        await env.start()
        await env.shutdown(0, "done")

    asyncio.run(scenario())
    calls = dict(env.supervisor.calls)
    assert calls["run_setup"] == "npm install"
    assert env.supervisor.names().index("run_setup") < env.supervisor.names().index("start_companion")
    companion_env = calls["start_companion"]
    assert companion_env["PORT"] == "4101"
    assert companion_env["LOG_FILE_PATH"] == str(tmp_path / "session.log")
    assert companion_env["DEV_MONITOR_VERSION"] == "1.2.3"


def test_concurrent_shutdowns_run_once(tmp_path: Path, released: list[int]) -> None:
    instr = FakeInstrumentation()
    env = _env(tmp_path, instr)

    async def scenario() -> None:
        await env.start()
        await _until(lambda: bool(instr.navigated))
        await asyncio.gather(env.shutdown(1, "server crashed"), env.shutdown(0, "interrupted"))

    asyncio.run(scenario())
    assert env.supervisor.names().count("terminate_all") == 1
    assert released == [4100, 4101]
    assert instr.shutdowns == 1
    assert env.session.exit_code == 1


def test_fatal_process_exit_and_interrupt_race(tmp_path: Path, released: list[int]) -> None:
    instr = FakeInstrumentation()
    env = _env(tmp_path, instr)

    async def scenario() -> int:
        task = asyncio.create_task(env.run())
        await _until(lambda: bool(instr.navigated))
        env.supervisor.on_fatal_exit("server process exited with code 2")
        env.request_shutdown(0, "interrupted")
        return await asyncio.wait_for(task, timeout=5)

    assert asyncio.run(scenario()) == 1
    assert released == [4100, 4101]
    assert env.supervisor.names().count("terminate_all") == 1


@pytest.mark.parametrize(
    "instr",
    [
        FakeInstrumentation(start_error=InstrumentationStartupError("no chrome")),
        FakeInstrumentation(navigate_error=NavigationError("net::ERR_CONNECTION_REFUSED")),
    ],
)
def test_instrumentation_failure_is_fatal(tmp_path: Path, released: list[int], instr: FakeInstrumentation) -> None:
    env = _env(tmp_path, instr)

    assert asyncio.run(asyncio.wait_for(env.run(), timeout=5)) == 1
    assert instr.shutdowns == 1
    assert released == [4100, 4101]
    assert any(m.startswith("[BROWSER] [CDP ERROR]") for m in _log_messages(env))


def test_companion_not_ready_fails_the_session(tmp_path: Path, released: list[int]) -> None:
    instr = FakeInstrumentation()
    env = _env(tmp_path, instr)
    env.supervisor.ready["http://localhost:4101"] = False

    assert asyncio.run(asyncio.wait_for(env.run(), timeout=5)) == 1
    assert instr.started == 0
    assert instr.shutdowns == 0
    assert "terminate_all" in env.supervisor.names()
    assert released == [4100, 4101]


def test_app_not_ready_continues_degraded(tmp_path: Path, released: list[int]) -> None:
    instr = FakeInstrumentation()
    env = _env(tmp_path, instr)
    env.supervisor.ready["http://localhost:4100"] = False

    async def scenario() -> None:
        await env.start()
        assert env.state == RUNNING
        await _until(lambda: bool(instr.navigated))
        await env.shutdown(0, "done")

    asyncio.run(scenario())
    assert any("did not respond" in m for m in _log_messages(env))


def test_browser_events_are_logged_as_browser_entries(tmp_path: Path, released: list[int]) -> None:
    instr = FakeInstrumentation()
    env = _env(tmp_path, instr)
    assert instr.on_event is not None
    instr.on_event("browser", "[CONSOLE ERROR] Error: listen EADDRINUSE")
    assert _log_messages(env) == ["[BROWSER] [CONSOLE ERROR] Error: listen EADDRINUSE"]


def test_bin_dev_in_rails_project_is_classified_without_flags(tmp_path: Path, released: list[int]) -> None:
    (tmp_path / "Gemfile").write_text("gem 'rails'\n", encoding="utf-8")
    env = _env(tmp_path, FakeInstrumentation(), command="bin/dev")

    assert env.session.classification.process_manager == "foreman"
    assert env.session.classification.framework == "rails"
    processor = env.supervisor.processor
    [entry] = processor.process("10:00:00 web.1 | ActiveRecord::NoDatabaseError: missing", is_error=True)
    assert entry.display == "ERROR: [WEB] ActiveRecord::NoDatabaseError: missing"
    assert entry.is_critical


def _sleeper(tmp_path: Path, name: str) -> str:
    path = tmp_path / name
    path.write_text("import time\ntime.sleep(30)\n", encoding="utf-8")
    return f"{shlex.quote(sys.executable)} {shlex.quote(str(path))}"


class SlowSpawnSupervisor(ProcessSupervisor):
    """Holds every spawn after the first one open long enough for the app to die."""

    spawn_delay = 1.0

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.spawned = 0

    async def _spawn(self, command: str, env: dict[str, str] | None, cwd: str | None) -> Any:
        process = await super()._spawn(command, env, cwd)
        self.spawned += 1
        if self.spawned > 1:
            await asyncio.sleep(self.spawn_delay)
        return process


def test_companion_spawned_while_shutting_down_is_terminated(tmp_path: Path, released: list[int]) -> None:
    instr = FakeInstrumentation()
    env = _env(
        tmp_path,
        instr,
        command="exit 7",
        supervisor_factory=SlowSpawnSupervisor,
        companion_command=_sleeper(tmp_path, "companion.py"),
        companion_dir=str(tmp_path),
    )

    assert asyncio.run(asyncio.wait_for(env.run(), timeout=20)) == 1
    companion = env.supervisor.companion
    assert companion is not None
    assert not companion.running
    assert env.state == TERMINATED
    assert instr.started == 0


def test_interrupted_setup_is_killed_and_run_returns(tmp_path: Path, released: list[int]) -> None:
    instr = FakeInstrumentation()
    env = _env(
        tmp_path,
        instr,
        command="exit 7",
        supervisor_factory=ProcessSupervisor,
        companion_setup_command=_sleeper(tmp_path, "install.py"),
        companion_setup_timeout=60.0,
        companion_dir=str(tmp_path),
    )

    started = time.monotonic()
    assert asyncio.run(asyncio.wait_for(env.run(), timeout=20)) == 1
    assert time.monotonic() - started < 15
    assert env.supervisor.setup is None
    assert env.supervisor.companion is None
    assert env.state == TERMINATED


def test_real_port_check_sees_ipv6_only_listener(
    tmp_path: Path, released: list[int], monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(orchestrator, "port_in_use", ports.port_in_use)
    try:
        listener = socket.socket(socket.AF_INET6, socket.SOCK_STREAM)
    except OSError:
        pytest.skip("IPv6 unavailable")
    with closing(listener):
        listener.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 1)
        try:
            listener.bind(("::1", 0))
        except OSError:
            pytest.skip("no IPv6 loopback")
        listener.listen(1)
        port = int(listener.getsockname()[1])
        instr = FakeInstrumentation()
        env = _env(tmp_path, instr, port=port, companion_port=ports.find_free_port())

        assert asyncio.run(env.run()) == 1

    assert env.supervisor.calls == []
    assert released == []
    assert instr.started == 0

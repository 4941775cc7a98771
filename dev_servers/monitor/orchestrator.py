"""Session orchestration: port checks, startup sequencing and the single shutdown path.

Every fatal condition (a process exiting badly, the companion never becoming
healthy, browser instrumentation failing, an interrupt) ends up in
``DevEnvironment.shutdown``. The first caller wins; later calls return at once.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shlex
import signal
import sys
import tempfile
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from .cdp_monitor import CdpMonitor
from .config import SessionConfig
from .errors import CompanionStartupError, PortInUseError, SessionError
from .instrumentation import EventCallback, InstrumentationCollaborator
from .log_sink import LogSink, create_persistent_log_file
from .parsers.output_processor import BROWSER, SERVER, LogEntry
from .parsers.project_detector import ClassificationConfig, create_output_processor, resolve_classification
from .ports import port_in_use, release_port
from .supervisor import ProcessSupervisor

_LOGGER = logging.getLogger("dev.monitor.orchestrator")

IDLE = "idle"
CHECKING_PORTS = "checking_ports"
STARTING_APP = "starting_app"
STARTING_COMPANION = "starting_companion"
AWAITING_APP_READY = "awaiting_app_ready"
AWAITING_COMPANION_READY = "awaiting_companion_ready"
STARTING_INSTRUMENTATION = "starting_instrumentation"
RUNNING = "running"
SHUTTING_DOWN = "shutting_down"
TERMINATED = "terminated"


def default_pid_file() -> Path:
    return Path(tempfile.gettempdir()) / "dev-monitor.pid"


@dataclass
class Session:
    app_port: int
    companion_port: int
    server_command: str
    profile_dir: str
    cwd: str
    log_file: str
    classification: ClassificationConfig
    terminating: bool = False
    exit_code: int | None = None

    def begin_termination(self) -> bool:
        """Flip ``terminating`` once. Only the first caller gets True."""
        if self.terminating:
            return False
        self.terminating = True
        return True


InstrumentationFactory = Callable[[SessionConfig, EventCallback], InstrumentationCollaborator]


def _cdp_factory(config: SessionConfig, on_event: EventCallback) -> InstrumentationCollaborator:
    return CdpMonitor(config, on_event)


class DevEnvironment:
    def __init__(
        self,
        config: SessionConfig,
        *,
        sink: LogSink | None = None,
        instrumentation_factory: InstrumentationFactory | None = None,
        supervisor_factory: Callable[..., ProcessSupervisor] = ProcessSupervisor,
        version: str = "0.0.0",
        pid_file: str | Path | None = None,
    ) -> None:
        self.config = config
        self.version = version
        self.pid_file = Path(pid_file) if pid_file else default_pid_file()

        classification = resolve_classification(
            config.server_command, config.process_manager, config.framework, cwd=config.cwd
        )
        if sink is None:
            sink = LogSink(config.log_file or create_persistent_log_file(cwd=config.cwd))
        self.sink = sink
        if not config.screenshot_dir:
            config.screenshot_dir = str(sink.path.parent / "screenshots")

        self.session = Session(
            app_port=int(config.port),
            companion_port=int(config.companion_port),
            server_command=config.server_command,
            profile_dir=config.profile_dir,
            cwd=config.cwd,
            log_file=str(sink.path),
            classification=classification,
        )
        self.supervisor = supervisor_factory(
            sink,
            create_output_processor(classification),
            is_terminating=lambda: self.session.terminating,
            on_fatal_exit=self._on_fatal_exit,
        )
        self.instrumentation = (instrumentation_factory or _cdp_factory)(config, self.on_browser_event)

        self.state = IDLE
        self._instrumentation_started = False
        self._instrumentation_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()
        self._finished = asyncio.Event()

    # ─────────────────────────────────────────────────────────────────────────
    # Startup
    # ─────────────────────────────────────────────────────────────────────────

    def companion_command(self) -> str:
        if self.config.companion_command:
            return self.config.companion_command
        return f"{shlex.quote(sys.executable)} -m dev_servers.monitor.companion"

    def companion_env(self) -> dict[str, str]:
        return {
            "PORT": str(self.session.companion_port),
            "LOG_FILE_PATH": self.session.log_file,
            "DEV_MONITOR_VERSION": self.version,
            "SCREENSHOT_DIR": self.config.screenshot_dir,
        }

    async def start(self) -> None:
        session = self.session
        self.state = CHECKING_PORTS
        for port in (session.app_port, session.companion_port):
            if await asyncio.to_thread(port_in_use, port):
                raise PortInUseError(port)
        if session.terminating:
            return

        self._write_pid_file()
        _LOGGER.info(
            "Starting session: command=%r process_manager=%s framework=%s",
            session.server_command,
            session.classification.process_manager,
            session.classification.framework,
        )
        _LOGGER.info("Logs: %s", session.log_file)

        self.state = STARTING_APP
        await self.supervisor.start_app(session.server_command, cwd=session.cwd)
        if session.terminating:
            return

        self.state = STARTING_COMPANION
        if self.config.companion_setup_command:
            _LOGGER.info("Running companion setup: %s", self.config.companion_setup_command)
            await self.supervisor.run_setup(
                self.config.companion_setup_command,
                self.config.companion_dir,
                timeout=self.config.companion_setup_timeout,
            )
            if session.terminating:
                return
        await self.supervisor.start_companion(
            self.companion_command(), env=self.companion_env(), cwd=self.config.companion_dir
        )
        if session.terminating:
            return

        self.state = AWAITING_APP_READY
        app_ready = await self.supervisor.wait_until_ready(
            self.config.app_url,
            max_attempts=self.config.health_max_attempts,
            interval=self.config.health_interval,
            timeout=self.config.health_timeout,
        )
        if session.terminating:
            return
        if not app_ready:
            _LOGGER.warning("Server at %s did not become ready; continuing anyway", self.config.app_url)
            self.sink.log(SERVER, f"Server did not respond at {self.config.app_url}; continuing")

        self.state = AWAITING_COMPANION_READY
        companion_ready = await self.supervisor.wait_until_ready(
            self.config.companion_url,
            max_attempts=self.config.health_max_attempts,
            interval=self.config.health_interval,
            timeout=self.config.health_timeout,
        )
        if session.terminating:
            return
        if not companion_ready:
            raise CompanionStartupError(f"Companion service did not become ready at {self.config.companion_url}")

        self.state = STARTING_INSTRUMENTATION
        self._instrumentation_task = asyncio.create_task(self._run_instrumentation(), name="instrumentation")
        self.state = RUNNING
        _LOGGER.info("App: %s  Companion: %s", self.config.app_url, self.config.companion_url)

    async def _run_instrumentation(self) -> None:
        self._instrumentation_started = True
        try:
            await self.instrumentation.start()
            if self.session.terminating:
                return
            self.sink.log(BROWSER, f"[CDP] Browser launched with profile {self.session.profile_dir}")
            await self.instrumentation.navigate_to_app(self.session.app_port)
            if self.session.terminating:
                return
            self.sink.log(BROWSER, f"[CDP] Navigated to {self.config.app_url}")
        except Exception as exc:  # noqa: BLE001
            if self.session.terminating:
                return
            self.sink.log(BROWSER, f"[CDP ERROR] {exc}")
            _LOGGER.error("Browser instrumentation failed: %s", exc)
            self.request_shutdown(1, "browser instrumentation failed")

    # ─────────────────────────────────────────────────────────────────────────
    # Event callbacks
    # ─────────────────────────────────────────────────────────────────────────

    def on_browser_event(self, origin: str, message: str) -> None:
        # Browser events are never classified.
        self.sink.append(LogEntry(display=message, origin=BROWSER))

    def _on_fatal_exit(self, reason: str) -> None:
        self.request_shutdown(1, reason)

    # ─────────────────────────────────────────────────────────────────────────
    # Shutdown
    # ─────────────────────────────────────────────────────────────────────────

    def request_shutdown(self, exit_code: int, reason: str) -> None:
        if self.session.terminating:
            return
        task = asyncio.get_running_loop().create_task(self.shutdown(exit_code, reason))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def shutdown(self, exit_code: int = 0, reason: str = "") -> None:
        if not self.session.begin_termination():
            return
        self.session.exit_code = exit_code
        self.state = SHUTTING_DOWN
        _LOGGER.info("Shutting down%s", f" ({reason})" if reason else "")

        await self.supervisor.terminate_all()
        # Whatever still listens (a grandchild that left the process group, a
        # server that outlived its launcher) is killed too.
        await release_port(self.session.app_port, "app server")
        await release_port(self.session.companion_port, "companion service")

        task = self._instrumentation_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self._instrumentation_started:
            try:
                await self.instrumentation.shutdown()
            except Exception as exc:  # noqa: BLE001
                _LOGGER.warning("Browser shutdown failed: %s", exc)

        self._remove_pid_file()
        self.state = TERMINATED
        self._finished.set()

    async def run(self) -> int:
        loop = asyncio.get_running_loop()
        installed = self._install_signal_handlers(loop)
        try:
            try:
                await self.start()
            except PortInUseError as exc:
                _LOGGER.error("%s", exc)
                _LOGGER.info("%s", exc.suggestion)
                # Nothing was spawned and nothing is ours to kill.
                self.session.begin_termination()
                self.session.exit_code = 1
                self.state = TERMINATED
                return 1
            except SessionError as exc:
                _LOGGER.error("Session failed to start: %s", exc)
                await self.shutdown(1, str(exc))
            await self._finished.wait()
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)
        return self.session.exit_code or 0

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> list[int]:
        installed: list[int] = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(sig, self.request_shutdown, 0, "interrupted")
                installed.append(sig)
        return installed

    def _write_pid_file(self) -> None:
        try:
            self.pid_file.write_text(str(os.getpid()), encoding="utf-8")
        except OSError as exc:
            _LOGGER.warning("pid_file_write_failed path=%s error=%s", self.pid_file, exc)

    def _remove_pid_file(self) -> None:
        with contextlib.suppress(OSError):
            self.pid_file.unlink()


__all__ = [
    "AWAITING_APP_READY",
    "AWAITING_COMPANION_READY",
    "CHECKING_PORTS",
    "IDLE",
    "RUNNING",
    "SHUTTING_DOWN",
    "STARTING_APP",
    "STARTING_COMPANION",
    "STARTING_INSTRUMENTATION",
    "TERMINATED",
    "DevEnvironment",
    "Session",
    "default_pid_file",
]

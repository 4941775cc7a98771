"""Lifecycle of the two child processes: the app server and the companion service.

Both are spawned through the shell in their own process group so that the whole
tree (package manager -> framework CLI -> server) can be signalled at once.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
import os
import signal
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path

from .errors import CompanionStartupError, ProcessSpawnError
from .http_client import HttpClientError, is_alive_status, probe
from .log_sink import LogSink, iso_timestamp
from .parsers.output_processor import SERVER, OutputProcessor

_LOGGER = logging.getLogger("dev.monitor.supervisor")

_READ_CHUNK = 64 * 1024

# Many dev servers exit 1 on a recoverable build error and get restarted by
# their own watcher; 130/143 are SIGINT/SIGTERM seen through a shell.
TRANSIENT_EXIT_CODES = frozenset({1, 130, 143})

EXPECTED = "expected"
CLEAN = "clean"
TRANSIENT = "transient"
FATAL = "fatal"


def normalize_returncode(code: int | None) -> int | None:
    """asyncio reports death-by-signal as ``-signum``; treat it like a null exit code."""
    if code is None or code < 0:
        return None
    return code


def classify_exit(code: int | None, terminating: bool) -> str:
    if terminating:
        return EXPECTED
    if code is None or code == 0:
        return CLEAN
    if code in TRANSIENT_EXIT_CODES:
        return TRANSIENT
    return FATAL


class _LineAssembler:
    """Hold back a trailing partial line until the rest of it arrives."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, data: bytes) -> str:
        text = self._pending + self._decoder.decode(data)
        cut = text.rfind("\n")
        if cut < 0:
            self._pending = text
            return ""
        self._pending = text[cut + 1 :]
        return text[: cut + 1]

    def flush(self) -> str:
        text = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        return text


@dataclass
class ProcessHandle:
    name: str
    command: str
    process: asyncio.subprocess.Process
    readers: list[asyncio.Task] = field(default_factory=list)
    watcher: asyncio.Task | None = None
    expected_exit: bool = False
    exit_code: int | None = None

    @property
    def pid(self) -> int:
        return int(self.process.pid)

    @property
    def running(self) -> bool:
        return self.process.returncode is None


OutputHandler = Callable[[str, bool], None]
ExitHandler = Callable[[ProcessHandle, int | None], None]


class ProcessSupervisor:
    def __init__(
        self,
        sink: LogSink,
        processor: OutputProcessor,
        *,
        is_terminating: Callable[[], bool],
        on_fatal_exit: Callable[[str], None],
        companion_log: str | Path | None = None,
    ) -> None:
        self.sink = sink
        self.processor = processor
        self._is_terminating = is_terminating
        self._on_fatal_exit = on_fatal_exit
        self.companion_log = Path(companion_log) if companion_log else sink.path.parent / "dev-monitor-companion.log"
        self.app: ProcessHandle | None = None
        self.companion: ProcessHandle | None = None
        self.setup: asyncio.subprocess.Process | None = None

    # ─────────────────────────────────────────────────────────────────────────
    # Spawning
    # ─────────────────────────────────────────────────────────────────────────

    async def _spawn(self, command: str, env: dict[str, str] | None, cwd: str | None) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_shell(
                command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env={**os.environ, **(env or {})},
                start_new_session=True,
            )
        except OSError as exc:
            raise ProcessSpawnError(f"Failed to start '{command}': {exc}") from exc

    async def _launch(
        self,
        name: str,
        command: str,
        env: dict[str, str] | None,
        cwd: str | None,
        on_output: OutputHandler,
        on_exit: ExitHandler,
    ) -> ProcessHandle:
        process = await self._spawn(command, env, cwd)
        handle = ProcessHandle(name=name, command=command, process=process)
        handle.readers = [
            asyncio.create_task(self._pump(process.stdout, False, on_output), name=f"{name}-stdout"),
            asyncio.create_task(self._pump(process.stderr, True, on_output), name=f"{name}-stderr"),
        ]
        handle.watcher = asyncio.create_task(self._watch(handle, on_exit), name=f"{name}-exit")
        _LOGGER.debug("spawned name=%s pid=%s command=%s", name, handle.pid, command)
        if self._is_terminating():
            # Shutdown ran while the spawn was in flight and could not see this handle.
            _LOGGER.debug("spawned_during_shutdown name=%s pid=%s", name, handle.pid)
            await self.terminate(handle)
        return handle

    async def start_app(self, command: str, env: dict[str, str] | None = None, cwd: str | None = None) -> ProcessHandle:
        self.app = await self._launch("app", command, env, cwd, self._handle_app_output, self._on_app_exit)
        return self.app

    async def start_companion(
        self, command: str, env: dict[str, str] | None = None, cwd: str | None = None
    ) -> ProcessHandle:
        self.companion_log.parent.mkdir(parents=True, exist_ok=True)
        self.companion_log.write_text("", encoding="utf-8")
        self.companion = await self._launch(
            "companion", command, env, cwd, self._handle_companion_output, self._on_companion_exit
        )
        return self.companion

    # ─────────────────────────────────────────────────────────────────────────
    # Output
    # ─────────────────────────────────────────────────────────────────────────

    async def _pump(self, stream: asyncio.StreamReader | None, is_error: bool, on_output: OutputHandler) -> None:
        if stream is None:
            return
        assembler = _LineAssembler()
        while True:
            data = await stream.read(_READ_CHUNK)
            if not data:
                break
            text = assembler.feed(data)
            if text:
                on_output(text, is_error)
        tail = assembler.flush()
        if tail.strip():
            on_output(tail, is_error)

    def _handle_app_output(self, text: str, is_error: bool) -> None:
        for entry in self.processor.process(text, is_error):
            self.sink.append(entry)
            if entry.is_critical and entry.raw_message:
                _LOGGER.error("[CRITICAL ERROR] %s", entry.raw_message)

    def _handle_companion_output(self, text: str, is_error: bool) -> None:
        message = text.strip()
        if not message:
            return
        tag = "COMPANION-STDERR" if is_error else "COMPANION-STDOUT"
        with open(self.companion_log, "a", encoding="utf-8") as fp:
            fp.write(f"[{iso_timestamp()}] [{tag}] {message}\n")
        if is_error and ("FATAL" in message or "Error:" in message):
            _LOGGER.error("[COMPANION ERROR] %s", message)

    # ─────────────────────────────────────────────────────────────────────────
    # Exit handling
    # ─────────────────────────────────────────────────────────────────────────

    async def _watch(self, handle: ProcessHandle, on_exit: ExitHandler) -> None:
        raw = await handle.process.wait()
        # Give the readers a moment to flush what the process wrote last. A
        # grandchild may keep the pipes open, so do not wait for EOF.
        pending = [t for t in handle.readers if not t.done()]
        if pending:
            await asyncio.wait(pending, timeout=0.5)
        handle.exit_code = normalize_returncode(raw)
        handle.expected_exit = self._is_terminating()
        on_exit(handle, handle.exit_code)

    def _on_app_exit(self, handle: ProcessHandle, code: int | None) -> None:
        disposition = classify_exit(code, handle.expected_exit)
        _LOGGER.debug("app_exit code=%s disposition=%s", code, disposition)
        if disposition in (EXPECTED, CLEAN):
            return
        self.sink.log(SERVER, f"Server process exited with code {code}")
        if disposition == TRANSIENT:
            _LOGGER.info("Server process exited with code %s, waiting for it to restart...", code)
            return
        _LOGGER.error("Server process fatally exited with code %s", code)
        _LOGGER.warning("Check your server command and logs for details")
        self._on_fatal_exit(f"server process exited with code {code}")

    def _on_companion_exit(self, handle: ProcessHandle, code: int | None) -> None:
        if handle.expected_exit:
            return
        # The companion is meant to run for the whole session: any exit is fatal.
        self.sink.log(SERVER, f"Companion service process exited with code {code}")
        _LOGGER.error("Companion service exited unexpectedly with code %s", code)
        self._on_fatal_exit(f"companion service exited with code {code}")

    # ─────────────────────────────────────────────────────────────────────────
    # Health checks and setup
    # ─────────────────────────────────────────────────────────────────────────

    async def wait_until_ready(
        self,
        url: str,
        max_attempts: int = 30,
        interval: float = 1.0,
        timeout: float = 2.0,
        probe_fn: Callable[[str, float], int] | None = None,
    ) -> bool:
        check = probe_fn or probe
        for attempt in range(1, max(1, int(max_attempts)) + 1):
            try:
                status = await asyncio.to_thread(check, url, timeout)
                _LOGGER.debug("health_check url=%s attempt=%s status=%s", url, attempt, status)
                if is_alive_status(status):
                    return True
            except HttpClientError as exc:
                _LOGGER.debug("health_check_pending url=%s attempt=%s error=%s", url, attempt, exc)
            if attempt < max_attempts:
                await asyncio.sleep(interval)
        return False

    async def run_setup(self, command: str, cwd: str, timeout: float = 180.0) -> None:
        """Run a dependency-installation style command with a hard wall-clock timeout."""
        if not Path(cwd).is_dir():
            raise CompanionStartupError(f"Companion service directory not found at {cwd}")
        try:
            proc = await asyncio.create_subprocess_shell(
                command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                cwd=cwd,
                start_new_session=True,
            )
        except OSError as exc:
            raise CompanionStartupError(f"Failed to start companion setup: {exc}") from exc

        self.setup = proc
        try:
            if self._is_terminating():
                _kill_group(proc.pid, _SIGKILL)
            code = await asyncio.wait_for(proc.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            _kill_group(proc.pid, _SIGKILL)
            await proc.wait()
            raise CompanionStartupError(f"Companion setup timed out after {timeout:g} seconds") from None
        finally:
            self.setup = None
        if self._is_terminating():
            return
        if code != 0:
            raise CompanionStartupError(f"Companion setup failed with exit code {code}")

    # ─────────────────────────────────────────────────────────────────────────
    # Termination
    # ─────────────────────────────────────────────────────────────────────────

    def handles(self) -> list[ProcessHandle]:
        return [h for h in (self.app, self.companion) if h is not None]

    async def terminate(self, handle: ProcessHandle, timeout: float = 2.0) -> None:
        if handle.running:
            _kill_group(handle.pid, signal.SIGTERM)
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(handle.process.wait(), timeout=timeout)
        if handle.running:
            _kill_group(handle.pid, _SIGKILL)
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(handle.process.wait(), timeout=timeout)
        for task in handle.readers:
            task.cancel()

    async def terminate_all(self, timeout: float = 2.0) -> None:
        setup = self.setup
        if setup is not None and setup.returncode is None:
            # run_setup is still waiting on it and reaps it.
            _kill_group(setup.pid, _SIGKILL)
        await _gather_quietly([self.terminate(h, timeout) for h in self.handles()])


_SIGKILL = getattr(signal, "SIGKILL", signal.SIGTERM)


def _kill_group(pid: int, sig: int) -> None:
    killpg = getattr(os, "killpg", None)
    try:
        if killpg is not None:
            killpg(pid, sig)
        else:
            os.kill(pid, sig)
    except (ProcessLookupError, PermissionError):
        pass


async def _gather_quietly(aws: list[Awaitable[object]]) -> None:
    for result in await asyncio.gather(*aws, return_exceptions=True):
        if isinstance(result, Exception):
            _LOGGER.warning("terminate_failed error=%s", result)


__all__ = [
    "CLEAN",
    "EXPECTED",
    "FATAL",
    "TRANSIENT",
    "TRANSIENT_EXIT_CODES",
    "ProcessHandle",
    "ProcessSupervisor",
    "classify_exit",
    "normalize_returncode",
]

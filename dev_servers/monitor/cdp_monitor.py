"""Browser instrumentation over the Chrome DevTools Protocol.

A launcher-owned Chromium is driven through one page target. Every CDP event
that ``EventFormatter`` recognises becomes exactly one browser log entry;
screenshots are taken after each main-frame load.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import contextlib
import itertools
import json
import logging
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .config import SessionConfig
from .errors import InstrumentationError, InstrumentationShutdownError, InstrumentationStartupError, NavigationError
from .instrumentation import EventCallback
from .launcher import BrowserLauncher
from .parsers.output_processor import BROWSER
from .telemetry import EventFormatter

_LOGGER = logging.getLogger("dev.monitor.cdp")

ENABLED_DOMAINS = ("Runtime", "Log", "Network", "Page")


class CdpMonitor:
    def __init__(
        self,
        config: SessionConfig,
        on_event: EventCallback,
        *,
        screenshot_dir: str | Path | None = None,
        launcher: BrowserLauncher | None = None,
        command_timeout: float = 10.0,
    ) -> None:
        self.config = config
        self.on_event = on_event
        self.screenshot_dir = Path(screenshot_dir or config.screenshot_dir or _default_screenshot_dir())
        self.launcher = launcher or BrowserLauncher(config, log_path=browser_log_path(config))
        self.command_timeout = command_timeout
        self.formatter = EventFormatter()

        self._ws: Any = None
        self._launch: asyncio.Future | None = None
        self._reader: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()
        self._pending: dict[int, asyncio.Future] = {}
        self._ids = itertools.count(1)
        self._closing = False

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    async def start(self) -> None:
        # The launch thread cannot be cancelled; shutdown waits for it instead.
        self._launch = asyncio.ensure_future(asyncio.to_thread(self.launcher.ensure_running))
        result = await asyncio.shield(self._launch)
        if self._closing:
            raise InstrumentationStartupError("Browser launch interrupted by shutdown")
        if not result.started:
            detail = f"\n{result.log_tail}" if result.log_tail else ""
            raise InstrumentationStartupError(f"Failed to launch browser: {result.message}{detail}")
        _LOGGER.debug("browser_launched command=%s", " ".join(result.command))

        ws_url = await asyncio.to_thread(self.launcher.page_websocket_url)
        if not ws_url:
            raise InstrumentationStartupError("No page target available on the browser")

        try:
            self._ws = await websockets.connect(ws_url, max_size=None, ping_interval=None, open_timeout=5)
        except (OSError, WebSocketException, asyncio.TimeoutError) as exc:
            raise InstrumentationStartupError(f"Could not connect to {ws_url}: {exc}") from exc
        self._reader = asyncio.create_task(self._read_loop(), name="cdp-reader")

        for domain in ENABLED_DOMAINS:
            try:
                await self.send(f"{domain}.enable")
            except InstrumentationError as exc:
                raise InstrumentationStartupError(str(exc)) from exc

    async def navigate_to_app(self, port: int) -> None:
        url = f"http://localhost:{int(port)}"
        try:
            result = await self.send("Page.navigate", {"url": url})
        except InstrumentationError as exc:
            raise NavigationError(f"Navigation to {url} failed: {exc}") from exc
        error_text = result.get("errorText")
        if error_text:
            raise NavigationError(f"Navigation to {url} failed: {error_text}")

    async def shutdown(self) -> None:
        self._closing = True
        for task in list(self._background):
            task.cancel()
        errors: list[str] = []

        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except Exception as exc:  # noqa: BLE001
                errors.append(f"websocket close: {exc}")
        if self._reader is not None:
            self._reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader
            self._reader = None

        launch = self._launch
        if launch is not None and not launch.done():
            _LOGGER.debug("waiting_for_browser_launch")
            with contextlib.suppress(Exception):
                await launch
        try:
            await asyncio.to_thread(self.launcher.stop)
        except Exception as exc:  # noqa: BLE001
            errors.append(f"browser stop: {exc}")
        if errors:
            raise InstrumentationShutdownError("; ".join(errors))

    # ─────────────────────────────────────────────────────────────────────────
    # Protocol
    # ─────────────────────────────────────────────────────────────────────────

    async def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        ws = self._ws
        if ws is None:
            raise InstrumentationError(f"{method}: not connected")
        msg_id = next(self._ids)
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[msg_id] = future
        try:
            await ws.send(json.dumps({"id": msg_id, "method": method, "params": params or {}}))
            response = await asyncio.wait_for(future, timeout=self.command_timeout)
        except ConnectionClosed as exc:
            raise InstrumentationError(f"{method}: connection closed") from exc
        except asyncio.TimeoutError as exc:
            raise InstrumentationError(f"{method}: timed out after {self.command_timeout:g}s") from exc
        finally:
            self._pending.pop(msg_id, None)

        if "error" in response:
            err = response.get("error") or {}
            message = err.get("message") if isinstance(err, dict) else err
            raise InstrumentationError(f"{method}: {message}")
        result = response.get("result")
        return result if isinstance(result, dict) else {}

    async def _read_loop(self) -> None:
        ws = self._ws
        try:
            async for raw in ws:
                try:
                    msg = json.loads(raw)
                except (TypeError, ValueError):
                    continue
                if not isinstance(msg, dict):
                    continue
                if "id" in msg:
                    future = self._pending.get(msg.get("id"))
                    if future is not None and not future.done():
                        future.set_result(msg)
                    continue
                self._handle_event(msg)
        except ConnectionClosed:
            pass
        finally:
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(InstrumentationError("browser connection closed"))
        if not self._closing:
            self.on_event(BROWSER, "[CDP] Browser connection closed")
            _LOGGER.warning("cdp_connection_closed")

    def _handle_event(self, event: dict[str, Any]) -> None:
        text = self.formatter.describe(event)
        if text:
            self.on_event(BROWSER, text)
        if event.get("method") == "Page.loadEventFired" and not self._closing:
            task = asyncio.create_task(self._capture_screenshot("load"))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    async def _capture_screenshot(self, reason: str) -> Path | None:
        try:
            result = await self.send("Page.captureScreenshot", {"format": "png"})
            data = base64.b64decode(result.get("data") or "", validate=True)
        except (InstrumentationError, binascii.Error) as exc:
            _LOGGER.debug("screenshot_failed reason=%s error=%s", reason, exc)
            return None
        if not data:
            return None

        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
        path = self.screenshot_dir / f"{stamp}-{reason}.png"
        try:
            await asyncio.to_thread(_write_bytes, path, data)
        except OSError as exc:
            _LOGGER.warning("screenshot_write_failed path=%s error=%s", path, exc)
            return None
        self.on_event(BROWSER, f"[SCREENSHOT] {path}")
        return path


def _default_screenshot_dir() -> Path:
    return Path(tempfile.gettempdir()) / "dev-monitor-screenshots"


def browser_log_path(config: SessionConfig) -> str | None:
    """Chrome's own stdout/stderr go next to the session log."""
    if not config.log_file:
        return None
    return str(Path(config.log_file).parent / "dev-monitor-browser.log")


def _write_bytes(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)


__all__ = ["ENABLED_DOMAINS", "CdpMonitor", "browser_log_path"]

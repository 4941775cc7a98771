"""Default companion service: a small HTTP view over the unified session log.

Run as ``python -m dev_servers.monitor.companion``. Configuration comes from
the environment the orchestrator injects (``PORT``, ``LOG_FILE_PATH``,
``DEV_MONITOR_VERSION``, ``SCREENSHOT_DIR``).
"""

from __future__ import annotations

import json
import logging
import os
import re
import urllib.parse
from dataclasses import dataclass
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any

from .config import DEFAULT_COMPANION_PORT, _env_flag

_LOGGER = logging.getLogger("dev.monitor.companion")

DEFAULT_LINES = 100
MAX_LINES = 5000

_LINE_SOURCE_RE = re.compile(r"^\[[^\]]+\]\s+\[(SERVER|BROWSER)\]")
_SCREENSHOT_NAME_RE = re.compile(r"^[\w.-]+\.png$")


@dataclass
class CompanionSettings:
    port: int = DEFAULT_COMPANION_PORT
    log_file: str = ""
    version: str = "0.0.0"
    screenshot_dir: str = ""

    @classmethod
    def from_env(cls) -> CompanionSettings:
        return cls(
            port=int(os.environ.get("PORT", str(DEFAULT_COMPANION_PORT))),
            log_file=os.environ.get("LOG_FILE_PATH", ""),
            version=os.environ.get("DEV_MONITOR_VERSION", "0.0.0"),
            screenshot_dir=os.environ.get("SCREENSHOT_DIR", ""),
        )


def read_log_lines(path: str | Path) -> list[str]:
    try:
        return Path(path).read_text(encoding="utf-8", errors="replace").splitlines()
    except OSError:
        return []


def line_source(line: str) -> str | None:
    m = _LINE_SOURCE_RE.match(line)
    return m.group(1).lower() if m else None


def filter_lines(
    lines: list[str], *, source: str | None = None, query: str | None = None, limit: int = DEFAULT_LINES
) -> list[str]:
    """Tail of ``lines`` restricted to one origin and/or a case-insensitive substring."""
    wanted = (source or "").strip().lower() or None
    needle = (query or "").strip().lower() or None
    selected = [
        line
        for line in lines
        if (wanted is None or line_source(line) == wanted) and (needle is None or needle in line.lower())
    ]
    limit = max(1, min(int(limit), MAX_LINES))
    return selected[-limit:]


def _parse_limit(raw: str | None) -> int:
    try:
        return int(raw) if raw else DEFAULT_LINES
    except ValueError:
        return DEFAULT_LINES


def make_handler(settings: CompanionSettings) -> type[BaseHTTPRequestHandler]:
    class Handler(BaseHTTPRequestHandler):
        server_version = "dev-monitor-companion"

        def do_HEAD(self) -> None:  # noqa: N802
            self._dispatch(head_only=True)

        def do_GET(self) -> None:  # noqa: N802
            self._dispatch(head_only=False)

        def log_message(self, format: str, *args: object) -> None:  # noqa: A002
            _LOGGER.debug("request %s", format % args)

        def _dispatch(self, *, head_only: bool) -> None:
            parsed = urllib.parse.urlparse(self.path)
            query = urllib.parse.parse_qs(parsed.query)
            path = parsed.path.rstrip("/") or "/"

            if path == "/":
                body = (
                    f"dev-monitor companion {settings.version}\n"
                    f"log file: {settings.log_file or '-'}\n"
                    "endpoints: /logs /api/logs /screenshots/<name>\n"
                )
                self._send(HTTPStatus.OK, body.encode(), "text/plain; charset=utf-8", head_only)
                return

            if path in ("/logs", "/api/logs"):
                lines = filter_lines(
                    read_log_lines(settings.log_file),
                    source=_first(query, "source"),
                    query=_first(query, "q"),
                    limit=_parse_limit(_first(query, "lines")),
                )
                if path == "/logs":
                    body = ("\n".join(lines) + ("\n" if lines else "")).encode()
                    self._send(HTTPStatus.OK, body, "text/plain; charset=utf-8", head_only)
                else:
                    payload: dict[str, Any] = {"logFile": settings.log_file, "total": len(lines), "lines": lines}
                    self._send(HTTPStatus.OK, json.dumps(payload).encode(), "application/json", head_only)
                return

            if path.startswith("/screenshots/") and settings.screenshot_dir:
                name = path[len("/screenshots/") :]
                target = Path(settings.screenshot_dir) / name
                if _SCREENSHOT_NAME_RE.match(name) and target.is_file():
                    self._send(HTTPStatus.OK, target.read_bytes(), "image/png", head_only)
                    return

            self._send(HTTPStatus.NOT_FOUND, b"not found\n", "text/plain; charset=utf-8", head_only)

        def _send(self, status: HTTPStatus, body: bytes, content_type: str, head_only: bool) -> None:
            self.send_response(status)
            self.send_header("Content-Type", content_type)
            self.send_header("Content-Length", str(len(body)))
            self.send_header("Cache-Control", "no-store")
            self.end_headers()
            if not head_only:
                self.wfile.write(body)

    return Handler


def _first(query: dict[str, list[str]], key: str) -> str | None:
    values = query.get(key)
    return values[0] if values else None


def create_server(settings: CompanionSettings, host: str = "127.0.0.1") -> ThreadingHTTPServer:
    server = ThreadingHTTPServer((host, int(settings.port)), make_handler(settings))
    server.daemon_threads = True
    return server


def main() -> None:
    logging.basicConfig(
        level=logging.DEBUG if _env_flag("DEV_MONITOR_DEBUG") else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )
    settings = CompanionSettings.from_env()
    server = create_server(settings, host=os.environ.get("HOST", "127.0.0.1"))
    _LOGGER.info("Companion listening on http://127.0.0.1:%s (log=%s)", settings.port, settings.log_file)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.server_close()


if __name__ == "__main__":
    main()

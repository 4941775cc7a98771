"""Format parsers for process-manager output.

A format parser only understands the *shape* of a line (timestamps, process
prefixes); whether a line is an error is decided separately by an error
detector. Every parser degrades to passthrough for lines it cannot match, so
no line is ever dropped.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(frozen=True, slots=True)
class ParsedLine:
    display: str
    message: str
    process_name: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class FormatParser(Protocol):
    kind: str

    def parse(self, text: str) -> list[ParsedLine]: ...


def split_lines(text: str) -> list[str]:
    if not text or not text.strip():
        return []
    lines = (line.rstrip("\r") for line in text.strip().split("\n"))
    return [line for line in lines if line.strip()]


def _passthrough(line: str) -> ParsedLine:
    return ParsedLine(display=line, message=line)


class StandardFormatParser:
    """Direct passthrough, used for plain npm/yarn/pnpm scripts and simple commands."""

    kind = "standard"

    def parse(self, text: str) -> list[ParsedLine]:
        return [_passthrough(line) for line in split_lines(text)]


class ForemanFormatParser:
    """Foreman/Overmind/Hivemind: ``HH:MM:SS[.mmm] process.N | message``."""

    kind = "foreman"

    _LINE_RE = re.compile(r"^(\d{2}:\d{2}:\d{2}(?:\.\d{3})?)\s+([\w-]+)\.(\d+)\s+\|\s*(.*)$")

    def parse(self, text: str) -> list[ParsedLine]:
        return [self._parse_line(line) for line in split_lines(text)]

    def _parse_line(self, line: str) -> ParsedLine:
        match = self._LINE_RE.match(line)
        if not match:
            # Startup banners and stack traces arrive without a process prefix.
            return _passthrough(line)
        timestamp, process, instance, message = match.groups()
        message = message.strip()
        return ParsedLine(
            display=f"[{process.upper()}] {message}",
            message=message,
            process_name=process,
            metadata={"timestamp": timestamp, "instance": int(instance)},
        )


class DockerComposeFormatParser:
    """Docker Compose: ``container_name | message``."""

    kind = "docker-compose"

    _LINE_RE = re.compile(r"^(\S+)\s+\|\s+(.*)$")
    _REPLICA_SUFFIX_RE = re.compile(r"[_-]\d+$")

    def parse(self, text: str) -> list[ParsedLine]:
        return [self._parse_line(line) for line in split_lines(text)]

    def _parse_line(self, line: str) -> ParsedLine:
        match = self._LINE_RE.match(line)
        if not match:
            return _passthrough(line)
        container, message = match.groups()
        message = message.strip()
        name = self._REPLICA_SUFFIX_RE.sub("", container).upper()
        return ParsedLine(
            display=f"[{name}] {message}",
            message=message,
            process_name=container,
            metadata={"container": container},
        )


class PM2FormatParser:
    """PM2: ``YYYY-MM-DD HH:MM:SS | app-0 | message``."""

    kind = "pm2"

    _LINE_RE = re.compile(r"^(\d{4}-\d{2}-\d{2}\s+\d{2}:\d{2}:\d{2})\s+\|\s+([^|]+?)\s+\|\s+(.*)$")
    _INSTANCE_SUFFIX_RE = re.compile(r"-\d+$")

    def parse(self, text: str) -> list[ParsedLine]:
        return [self._parse_line(line) for line in split_lines(text)]

    def _parse_line(self, line: str) -> ParsedLine:
        match = self._LINE_RE.match(line)
        if not match:
            return _passthrough(line)
        timestamp, process, message = match.groups()
        process = process.strip()
        message = message.strip()
        name = self._INSTANCE_SUFFIX_RE.sub("", process).upper()
        return ParsedLine(
            display=f"[{name}] {message}",
            message=message,
            process_name=process,
            metadata={"timestamp": timestamp},
        )


_PARSERS: dict[str, type[FormatParser]] = {
    "standard": StandardFormatParser,
    "foreman": ForemanFormatParser,
    "docker-compose": DockerComposeFormatParser,
    "pm2": PM2FormatParser,
}


def create_format_parser(kind: str) -> FormatParser:
    try:
        parser_cls = _PARSERS[kind]
    except KeyError:
        raise ValueError(f"Unsupported process manager: {kind}") from None
    return parser_cls()


__all__ = [
    "DockerComposeFormatParser",
    "ForemanFormatParser",
    "FormatParser",
    "PM2FormatParser",
    "ParsedLine",
    "StandardFormatParser",
    "create_format_parser",
    "split_lines",
]

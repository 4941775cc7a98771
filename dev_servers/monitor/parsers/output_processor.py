from __future__ import annotations

from dataclasses import dataclass

from .error_detectors import ErrorDetector
from .format_parsers import FormatParser

SERVER = "server"
BROWSER = "browser"


@dataclass(frozen=True, slots=True)
class LogEntry:
    display: str
    origin: str = SERVER
    is_critical: bool = False
    raw_message: str | None = None


class OutputProcessor:
    """Compose one format parser with one error detector.

    The detector only runs for stderr chunks: stdout never produces critical
    entries, whatever the detector would say about the text.
    """

    def __init__(self, format_parser: FormatParser, error_detector: ErrorDetector) -> None:
        self.format_parser = format_parser
        self.error_detector = error_detector

    def process(self, text: str, is_error: bool = False) -> list[LogEntry]:
        entries: list[LogEntry] = []
        for line in self.format_parser.parse(text):
            if not is_error:
                entries.append(LogEntry(display=line.display))
                continue
            display = f"ERROR: {line.display}"
            if self.error_detector.is_critical(line.message):
                entries.append(LogEntry(display=display, is_critical=True, raw_message=line.message))
            else:
                entries.append(LogEntry(display=display))
        return entries


__all__ = ["BROWSER", "SERVER", "LogEntry", "OutputProcessor"]

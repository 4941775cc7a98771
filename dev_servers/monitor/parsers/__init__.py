"""Turn raw server output into framework-aware log entries."""

from .error_detectors import ErrorDetector, ErrorProfile, create_error_detector, is_base_critical
from .format_parsers import FormatParser, ParsedLine, create_format_parser
from .output_processor import BROWSER, SERVER, LogEntry, OutputProcessor
from .project_detector import ClassificationConfig, ProjectDetector, create_output_processor, resolve_classification

__all__ = [
    "BROWSER",
    "SERVER",
    "ClassificationConfig",
    "ErrorDetector",
    "ErrorProfile",
    "FormatParser",
    "LogEntry",
    "OutputProcessor",
    "ParsedLine",
    "ProjectDetector",
    "create_error_detector",
    "create_format_parser",
    "create_output_processor",
    "is_base_critical",
    "resolve_classification",
]

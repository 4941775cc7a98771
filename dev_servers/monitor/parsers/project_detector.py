"""Detect the process manager and framework of the project being supervised.

The two detections are independent: a process-manager idiom such as
``bin/dev`` says nothing about which framework's errors to look for.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path

from .error_detectors import create_error_detector
from .format_parsers import create_format_parser
from .output_processor import OutputProcessor

_LOGGER = logging.getLogger("dev.monitor.detect")

_FOREMAN_MARKERS = ("bin/dev", "foreman", "overmind", "hivemind")
_COMPOSE_MARKERS = ("docker-compose", "docker compose")

_RAILS_COMMAND_RE = re.compile(r"(?:^|[\s/])rails\b")
_DJANGO_COMMAND_RE = re.compile(r"manage\.py|\brunserver\b|\bdjango")
_NEXT_COMMAND_RE = re.compile(r"(?:^|[\s/])next(?:\s|$)")
_EXPRESS_COMMAND_RE = re.compile(r"\bnodemon\b|\bexpress\b|(?:^|\s)node\s")

_RAILS_MARKERS = ("Gemfile", "config/application.rb", "bin/rails")
_NEXTJS_MARKERS = ("next.config.js", "next.config.mjs", "next.config.ts", "next-env.d.ts", ".next")
_DJANGO_MARKERS = ("manage.py",)


@dataclass(frozen=True, slots=True)
class ClassificationConfig:
    process_manager: str
    framework: str


class ProjectDetector:
    @staticmethod
    def detect_process_manager(server_command: str) -> str:
        command = (server_command or "").lower()
        if any(marker in command for marker in _FOREMAN_MARKERS):
            return "foreman"
        if any(marker in command for marker in _COMPOSE_MARKERS):
            return "docker-compose"
        if "pm2" in command:
            return "pm2"
        return "standard"

    @staticmethod
    def framework_from_command(server_command: str) -> str | None:
        command = (server_command or "").lower()
        if _RAILS_COMMAND_RE.search(command):
            return "rails"
        if _DJANGO_COMMAND_RE.search(command):
            return "django"
        if _NEXT_COMMAND_RE.search(command):
            return "nextjs"
        if _EXPRESS_COMMAND_RE.search(command):
            return "express"
        return None

    @staticmethod
    def framework_from_files(cwd: str | Path) -> str | None:
        root = Path(cwd)
        if any((root / marker).exists() for marker in _RAILS_MARKERS):
            return "rails"
        if any((root / marker).exists() for marker in _NEXTJS_MARKERS):
            return "nextjs"
        if any((root / marker).exists() for marker in _DJANGO_MARKERS):
            return "django"
        if _declares_dependency(root / "package.json", "express"):
            return "express"
        return None

    @classmethod
    def detect_framework(cls, server_command: str, cwd: str | Path | None = None) -> str | None:
        detected = cls.framework_from_command(server_command)
        if detected is None:
            detected = cls.framework_from_files(cwd if cwd is not None else Path.cwd())
        return detected


def _declares_dependency(manifest: Path, name: str) -> bool:
    try:
        data = json.loads(manifest.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return False
    if not isinstance(data, dict):
        return False
    for section in ("dependencies", "devDependencies"):
        deps = data.get(section)
        if isinstance(deps, dict) and name in deps:
            return True
    return False


def resolve_classification(
    server_command: str,
    process_manager: str = "auto",
    framework: str = "auto",
    cwd: str | Path | None = None,
) -> ClassificationConfig:
    if process_manager == "auto":
        process_manager = ProjectDetector.detect_process_manager(server_command)
    if framework == "auto":
        framework = ProjectDetector.detect_framework(server_command, cwd) or "default"
    _LOGGER.debug("classification process_manager=%s framework=%s", process_manager, framework)
    return ClassificationConfig(process_manager=process_manager, framework=framework)


def create_output_processor(config: ClassificationConfig) -> OutputProcessor:
    return OutputProcessor(create_format_parser(config.process_manager), create_error_detector(config.framework))


__all__ = ["ClassificationConfig", "ProjectDetector", "create_output_processor", "resolve_classification"]

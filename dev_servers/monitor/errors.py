"""Typed failures raised across the session lifecycle."""

from __future__ import annotations


class SessionError(Exception):
    """Base class for failures that abort a monitoring session."""


class PortInUseError(SessionError):
    def __init__(self, port: int) -> None:
        super().__init__(f"Port {port} is already in use. Please free the port and try again.")
        self.port = port

    @property
    def suggestion(self) -> str:
        return f"To free up port {self.port}, run: lsof -ti:{self.port} | xargs kill -9"


class ProcessSpawnError(SessionError):
    pass


class CompanionStartupError(SessionError):
    pass


class InstrumentationError(SessionError):
    pass


class InstrumentationStartupError(InstrumentationError):
    pass


class NavigationError(InstrumentationError):
    pass


class InstrumentationShutdownError(InstrumentationError):
    pass


__all__ = [
    "CompanionStartupError",
    "InstrumentationError",
    "InstrumentationShutdownError",
    "InstrumentationStartupError",
    "NavigationError",
    "PortInUseError",
    "ProcessSpawnError",
    "SessionError",
]

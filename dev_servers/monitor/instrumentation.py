"""Boundary between the session and the browser instrumentation.

The orchestrator only relies on this protocol; ``CdpMonitor`` is the shipped
implementation and tests substitute their own.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol

from .errors import InstrumentationShutdownError, InstrumentationStartupError, NavigationError

EventCallback = Callable[[str, str], None]


class InstrumentationCollaborator(Protocol):
    async def start(self) -> None:
        """Acquire a browser and its automation session. Called at most once per session.

        Raises ``InstrumentationStartupError``.
        """

    async def navigate_to_app(self, port: int) -> None:
        """Point the browser at ``http://localhost:<port>``. Raises ``NavigationError``."""

    async def shutdown(self) -> None:
        """Release every browser resource; safe even if ``start`` never completed.

        Raises ``InstrumentationShutdownError``.
        """


__all__ = [
    "EventCallback",
    "InstrumentationCollaborator",
    "InstrumentationShutdownError",
    "InstrumentationStartupError",
    "NavigationError",
]

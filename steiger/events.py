"""Structured progress events.

Builders, the registry client and the orchestrator report progress as
ProgressEvent values delivered to a ProgressSink. The sink decides how to
render them: the CLI prints them with rich, library callers get logging.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from rich.console import Console
from rich.markup import escape

logger = logging.getLogger(__name__)


class EventLevel(str, Enum):
    """Severity of a progress event."""

    INFO = "info"
    SUCCESS = "success"
    FAILURE = "failure"
    OUTPUT = "output"


@dataclass(frozen=True)
class ProgressEvent:
    """A single progress message for one service.

    Attributes:
        service: Service the event belongs to ("meta" for run-level events).
        level: Event severity.
        message: Human-readable text.
        stage: Optional sub-step, e.g. "docker" or "push".
    """

    service: str
    level: EventLevel
    message: str
    stage: str | None = None


class ProgressSink(Protocol):
    """Receiver of progress events. Must be safe to call from any thread."""

    def emit(self, event: ProgressEvent) -> None: ...


_LOG_LEVELS = {
    EventLevel.INFO: logging.INFO,
    EventLevel.SUCCESS: logging.INFO,
    EventLevel.FAILURE: logging.ERROR,
    EventLevel.OUTPUT: logging.DEBUG,
}


class LoggingSink:
    """Forward events to the standard logging module."""

    def emit(self, event: ProgressEvent) -> None:
        prefix = event.service if event.stage is None else f"{event.service} › {event.stage}"
        logger.log(_LOG_LEVELS[event.level], "[%s] %s", prefix, event.message)


class NullSink:
    """Discard all events."""

    def emit(self, event: ProgressEvent) -> None:
        return None


class RecordingSink:
    """Keep every event in memory."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.events: list[ProgressEvent] = []

    def emit(self, event: ProgressEvent) -> None:
        with self._lock:
            self.events.append(event)

    def messages(self, service: str, level: EventLevel | None = None) -> list[str]:
        """Return messages recorded for a service, optionally by level."""
        with self._lock:
            return [
                e.message
                for e in self.events
                if e.service == service and (level is None or e.level == level)
            ]


_STYLES = {
    EventLevel.INFO: "blue",
    EventLevel.SUCCESS: "green",
    EventLevel.FAILURE: "red",
    EventLevel.OUTPUT: "dim",
}


class ConsoleSink:
    """Print events to a rich console, one line per event."""

    def __init__(self, console: Console, show_output: bool = False) -> None:
        self.console = console
        self.show_output = show_output
        self._lock = threading.Lock()

    def emit(self, event: ProgressEvent) -> None:
        if event.level == EventLevel.OUTPUT and not self.show_output:
            return
        prefix = event.service if event.stage is None else f"{event.service} › {event.stage}"
        style = _STYLES[event.level]
        with self._lock:
            self.console.print(
                f"[bold]{escape(prefix)}[/bold] [{style}]{escape(event.message)}[/{style}]",
                highlight=False,
            )


class ServiceProgress:
    """Progress reporter bound to one service (and optionally a stage)."""

    def __init__(
        self, sink: ProgressSink, service: str, stage: str | None = None
    ) -> None:
        self.sink = sink
        self.service = service
        self.stage = stage

    def child(self, stage: str) -> ServiceProgress:
        """Return a reporter for a sub-step of the same service."""
        return ServiceProgress(self.sink, self.service, stage)

    def _emit(self, level: EventLevel, message: str) -> None:
        self.sink.emit(ProgressEvent(self.service, level, message, self.stage))

    def info(self, message: str) -> None:
        self._emit(EventLevel.INFO, message)

    def success(self, message: str) -> None:
        self._emit(EventLevel.SUCCESS, message)

    def failure(self, message: str) -> None:
        self._emit(EventLevel.FAILURE, message)

    def output(self, stream: str, line: str) -> None:
        """Report a line of tool output; matches exec.LineCallback."""
        if line.strip():
            self._emit(EventLevel.OUTPUT, line)


__all__ = [
    "ConsoleSink",
    "EventLevel",
    "LoggingSink",
    "NullSink",
    "ProgressEvent",
    "ProgressSink",
    "RecordingSink",
    "ServiceProgress",
]

"""Ordered progress notifications from a transcription run to its observers.

A ProgressChannel has one writer (the orchestrator) and any number of
readers. Readers are either plain listeners (called synchronously, in
subscription order) or asyncio queues. Delivery is fire-and-forget: a
listener that raises is logged and skipped, and nobody listening is fine.

Within one run percentages never go backwards. The single exception is the
terminal ``failed`` event, which is delivered with whatever percentage the
writer chose (0 by convention, to signal a reset).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Literal, Protocol

logger = logging.getLogger(__name__)

ProgressStatus = Literal["processing", "completed", "failed"]

# Signature of the caller-facing push callback: (percentage, message)
ProgressCallback = Callable[[float, str | None], None]


@dataclass(frozen=True)
class ProgressEvent:
    """A single progress notification."""

    percentage: float
    message: str | None = None
    status: ProgressStatus = "processing"
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status != "processing"


class ProgressListener(Protocol):
    """Anything callable with a ProgressEvent."""

    def __call__(self, event: ProgressEvent) -> None: ...


def _clamp(percentage: float) -> float:
    return max(0.0, min(100.0, float(percentage)))


class ProgressChannel:
    """Single-writer, multi-reader progress stream for one run."""

    def __init__(self) -> None:
        self._listeners: list[ProgressListener] = []
        self._last_percentage = 0.0
        self._terminal: ProgressEvent | None = None
        self._history: list[ProgressEvent] = []

    @property
    def last_percentage(self) -> float:
        return self._last_percentage

    @property
    def terminal_event(self) -> ProgressEvent | None:
        return self._terminal

    @property
    def events(self) -> list[ProgressEvent]:
        """Events delivered so far, in order."""
        return list(self._history)

    def subscribe(self, listener: ProgressListener) -> Callable[[], None]:
        """Register a listener and return a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def subscribe_callback(self, callback: ProgressCallback) -> Callable[[], None]:
        """Register a ``(percentage, message)`` push callback."""

        def listener(event: ProgressEvent) -> None:
            callback(event.percentage, event.message)

        return self.subscribe(listener)

    def subscribe_queue(self, maxsize: int = 0) -> asyncio.Queue[ProgressEvent]:
        """Return a queue that receives every subsequent event.

        A full queue drops the event for that reader only.
        """
        queue: asyncio.Queue[ProgressEvent] = asyncio.Queue(maxsize=maxsize)

        def listener(event: ProgressEvent) -> None:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.debug("Progress queue full, dropping event at %.1f%%", event.percentage)

        self.subscribe(listener)
        return queue

    def emit(self, percentage: float, message: str | None = None) -> ProgressEvent | None:
        """Publish a non-terminal progress event.

        Percentages are clamped to [0, 100] and never decrease.
        """
        value = max(self._last_percentage, _clamp(percentage))
        return self._publish(ProgressEvent(percentage=value, message=message))

    def complete(self, message: str | None = None) -> ProgressEvent | None:
        """Publish the terminal ``completed`` event at 100%."""
        return self._publish(
            ProgressEvent(percentage=100.0, message=message, status="completed")
        )

    def fail(
        self, error: str, message: str | None = None, percentage: float = 0.0
    ) -> ProgressEvent | None:
        """Publish the terminal ``failed`` event."""
        return self._publish(
            ProgressEvent(
                percentage=_clamp(percentage),
                message=message if message is not None else error,
                status="failed",
                error=error,
            )
        )

    def _publish(self, event: ProgressEvent) -> ProgressEvent | None:
        if self._terminal is not None:
            logger.warning(
                "Dropping progress event after terminal '%s' event: %s",
                self._terminal.status,
                event.message,
            )
            return None

        if event.is_terminal:
            self._terminal = event
        if event.status != "failed":
            self._last_percentage = event.percentage
        self._history.append(event)

        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.warning("Progress listener raised, ignoring", exc_info=True)
        return event


class ProgressRange:
    """Maps a 0..1 fraction of one stage onto a slice of the channel's 0..100 scale."""

    def __init__(self, channel: ProgressChannel, start: float, end: float) -> None:
        self.channel = channel
        self.start = start
        self.end = end

    def at(self, fraction: float) -> float:
        fraction = max(0.0, min(1.0, fraction))
        return self.start + (self.end - self.start) * fraction

    def report(self, fraction: float, message: str | None = None) -> None:
        self.channel.emit(self.at(fraction), message)

    def slice(self, index: int, count: int) -> ProgressRange:
        """Return the ``index``-th of ``count`` equal sub-ranges."""
        width = (self.end - self.start) / max(count, 1)
        return ProgressRange(
            self.channel, self.start + width * index, self.start + width * (index + 1)
        )

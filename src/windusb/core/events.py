"""
WindUSB progress events.

The ordered stream of events is the only thing that crosses from a
running flash job to whatever presents it. Both the pipeline thread and
the progress monitor thread write to the same EventChannel.
"""

from __future__ import annotations

import queue
import threading
from dataclasses import dataclass
from typing import Union

from windusb.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Update:
    """Progress report: a status line and a completion fraction."""

    message: str
    fraction: float

    @property
    def percent(self) -> int:
        return int(self.fraction * 100)


@dataclass(frozen=True)
class Finished:
    """The job completed and the drive may be unplugged."""


@dataclass(frozen=True)
class Error:
    """The job stopped at the first fatal condition."""

    message: str


ProgressEvent = Union[Update, Finished, Error]


def is_terminal(event: ProgressEvent) -> bool:
    return isinstance(event, (Finished, Error))


class EventChannel:
    """
    Single ordered channel of progress events.

    Guarantees:
    - update fractions never go backwards (regressing samples are dropped)
    - at most one Finished/Error is delivered, and nothing after it
    """

    def __init__(self) -> None:
        self._queue: queue.Queue[ProgressEvent] = queue.Queue()
        self._lock = threading.Lock()
        self._closed = False
        self._last_fraction = 0.0
        self._terminal: ProgressEvent | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def last_fraction(self) -> float:
        return self._last_fraction

    @property
    def terminal_event(self) -> ProgressEvent | None:
        return self._terminal

    def update(self, message: str, fraction: float) -> bool:
        """Emit an Update. Returns False if it was dropped."""
        fraction = min(max(fraction, 0.0), 1.0)
        with self._lock:
            if self._closed:
                logger.debug("Dropping update after terminal event", message=message)
                return False
            if fraction < self._last_fraction:
                return False
            self._last_fraction = fraction
            self._queue.put(Update(message=message, fraction=fraction))
        return True

    def finish(self) -> bool:
        """Emit the terminal Finished event."""
        return self._close(Finished())

    def error(self, message: str) -> bool:
        """Emit the terminal Error event."""
        return self._close(Error(message=message))

    def _close(self, event: ProgressEvent) -> bool:
        with self._lock:
            if self._closed:
                logger.warning(
                    "Ignoring second terminal event",
                    event=type(event).__name__,
                    first=type(self._terminal).__name__,
                )
                return False
            self._closed = True
            self._terminal = event
            self._queue.put(event)
        return True

    def get(self, timeout: float | None = None) -> ProgressEvent | None:
        """Block for the next event; None on timeout."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[ProgressEvent]:
        """Return every event currently queued, in emission order."""
        events: list[ProgressEvent] = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events

"""Progress/log channel.

The progress log is an append-only, line-oriented file that every
component writes to and that an external monitor (CLI or UI) tails.
Each line is one of:

- ``progress:<percentage>:<message>`` - a structured progress record
- ``item:<status>:<identifier>`` - a work item status transition
- anything else - a free-text log line

Writes from a single thread keep their order; writes from concurrent
workers interleave arbitrarily, line by line.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import IO

logger = logging.getLogger(__name__)

PROGRESS_PREFIX = "progress:"
ITEM_PREFIX = "item:"

# Default interval for tailing the log (seconds)
DEFAULT_MONITOR_INTERVAL = 0.5


@dataclass(frozen=True)
class LogLine:
    """A free-text line."""

    text: str


@dataclass(frozen=True)
class ProgressRecord:
    """A structured ``(percentage, message)`` event."""

    percentage: int
    message: str


@dataclass(frozen=True)
class ItemStatusRecord:
    """A work item status transition."""

    identifier: str
    status: str


ProgressEvent = LogLine | ProgressRecord | ItemStatusRecord


def _one_line(text: str) -> str:
    """Collapse a message onto a single line."""
    return " ".join(str(text).splitlines()).strip()


def format_progress(percentage: int, message: str) -> str:
    """Format a structured progress record line."""
    pct = max(0, min(100, int(percentage)))
    return f"{PROGRESS_PREFIX}{pct}:{_one_line(message)}"


def format_item_status(identifier: str, status: str) -> str:
    """Format a work item status line."""
    return f"{ITEM_PREFIX}{status}:{_one_line(identifier)}"


def parse_progress_line(line: str) -> ProgressEvent:
    """Parse one line of the progress log.

    Lines that look structured but do not parse (e.g. a non-numeric
    percentage) are returned as free text.

    Args:
        line: A single line, with or without trailing newline.

    Returns:
        The parsed event.
    """
    text = line.rstrip("\r\n")

    if text.startswith(PROGRESS_PREFIX):
        parts = text[len(PROGRESS_PREFIX) :].split(":", 1)
        if len(parts) == 2 and parts[0].strip().lstrip("-").isdigit():
            return ProgressRecord(percentage=int(parts[0]), message=parts[1])

    if text.startswith(ITEM_PREFIX):
        parts = text[len(ITEM_PREFIX) :].split(":", 1)
        if len(parts) == 2 and parts[0] and parts[1]:
            return ItemStatusRecord(identifier=parts[1], status=parts[0])

    return LogLine(text=text)


class ProgressChannel:
    """Append-only writer for the progress log.

    Thread-safe: a lock serialises whole lines so concurrent writers never
    interleave within a line. Every line is also mirrored to the module
    logger.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._handle: IO[str] | None = None

    def _write(self, line: str) -> None:
        with self._lock:
            if self._handle is None:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                self._handle = self.path.open("a", encoding="utf-8", buffering=1)
            self._handle.write(line + "\n")
            self._handle.flush()

    def log(self, message: str) -> None:
        """Write a free-text line."""
        text = _one_line(message)
        # Keep free text from being mistaken for a structured record
        if text.startswith((PROGRESS_PREFIX, ITEM_PREFIX)):
            text = " " + text
        logger.info("%s", text.strip())
        self._write(text)

    def progress(self, percentage: int, message: str) -> None:
        """Write a structured progress record."""
        line = format_progress(percentage, message)
        logger.info("[%3d%%] %s", max(0, min(100, int(percentage))), message)
        self._write(line)

    def item_status(self, identifier: str, status: str) -> None:
        """Write a work item status transition."""
        logger.debug("Work item %s -> %s", identifier, status)
        self._write(format_item_status(identifier, status))

    def close(self) -> None:
        """Close the underlying file handle."""
        with self._lock:
            if self._handle is not None:
                self._handle.close()
                self._handle = None

    def __enter__(self) -> ProgressChannel:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


def read_progress_log(path: Path) -> list[ProgressEvent]:
    """Read and parse every line of a progress log.

    Args:
        path: Progress log path.

    Returns:
        Parsed events in file order (empty if the log does not exist).
    """
    if not path.exists():
        return []
    with path.open(encoding="utf-8") as f:
        return [parse_progress_line(line) for line in f]


class ProgressMonitor:
    """Tails the progress log on a timer and hands events to a callback.

    ``stop()`` halts the polling timer; ``close()`` releases the file
    handle. Both are idempotent.
    """

    def __init__(
        self,
        path: Path,
        callback: Callable[[ProgressEvent], None],
        interval: float = DEFAULT_MONITOR_INTERVAL,
        from_start: bool = False,
    ) -> None:
        self.path = path
        self.callback = callback
        self.interval = interval
        self.from_start = from_start
        # Tail mode skips what the log held when the monitor was created
        self._offset = 0
        if not from_start and path.exists():
            self._offset = path.stat().st_size
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._handle: IO[str] | None = None
        self._pending = ""
        self._closed = False
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        """Whether the polling timer is active."""
        return self._thread is not None and self._thread.is_alive()

    def _open(self) -> IO[str] | None:
        if self._handle is None and self.path.exists():
            self._handle = self.path.open(encoding="utf-8")
            if self._offset:
                self._handle.seek(self._offset)
        return self._handle

    def poll(self) -> int:
        """Read any new complete lines and dispatch them.

        A closed monitor dispatches nothing.

        Returns:
            Number of events dispatched.
        """
        with self._lock:
            if self._closed:
                return 0
            handle = self._open()
            if handle is None:
                return 0
            chunk = handle.read()
            if not chunk:
                return 0
            data = self._pending + chunk
            lines = data.split("\n")
            self._pending = lines.pop()

        for line in lines:
            self.callback(parse_progress_line(line))
        return len(lines)

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.poll()
            except (OSError, ValueError) as e:
                logger.warning("Progress monitor read failed: %s", e)

    def start(self) -> None:
        """Start the polling timer thread."""
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, name="progress-monitor", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        """Stop the polling timer; no further events are dispatched."""
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=max(self.interval * 4, 1.0))
        self._thread = None

    def close(self) -> None:
        """Release the log file handle; later polls do nothing."""
        with self._lock:
            self._closed = True
            if self._handle is not None:
                self._handle.close()
                self._handle = None
            self._pending = ""


__all__ = [
    "DEFAULT_MONITOR_INTERVAL",
    "ITEM_PREFIX",
    "PROGRESS_PREFIX",
    "ItemStatusRecord",
    "LogLine",
    "ProgressChannel",
    "ProgressEvent",
    "ProgressMonitor",
    "ProgressRecord",
    "format_item_status",
    "format_progress",
    "parse_progress_line",
    "read_progress_log",
]

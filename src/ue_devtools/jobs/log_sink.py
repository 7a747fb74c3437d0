"""Bounded, ordered buffer of job log entries."""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from ue_devtools.jobs.lines import split_lines
from ue_devtools.jobs.models import LogEntry, LogSeverity, utc_now

logger = logging.getLogger(__name__)

DEFAULT_LOG_CAPACITY = 1000
LOG_FILE_PREFIX = "ue-devtools"

LogListener = Callable[[LogEntry], None]


@dataclass(slots=True, frozen=True)
class LogMatch:
    """Filtered entry with its position in the current buffer."""

    index: int
    entry: LogEntry


@dataclass(slots=True)
class FilteredLog:
    """Result of a substring search over the buffer."""

    matches: list[LogMatch]
    total: int

    @property
    def entries(self) -> list[LogEntry]:
        return [match.entry for match in self.matches]

    @property
    def label(self) -> str:
        return f"{len(self.matches)} of {self.total} lines"


class LogSink:
    """FIFO ring buffer of log entries shared between one writer and many readers.

    Appends never fail: once `capacity` is reached the oldest entries are
    evicted silently. Readers receive snapshots, so they never hold the lock
    while rendering.
    """

    def __init__(
        self,
        capacity: int = DEFAULT_LOG_CAPACITY,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if capacity <= 0:
            raise ValueError("Log capacity must be a positive integer.")
        self._capacity = capacity
        self._clock = clock
        self._entries: deque[LogEntry] = deque(maxlen=capacity)
        self._evicted = 0
        self._lock = threading.Lock()
        self._listeners: list[LogListener] = []

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def evicted(self) -> int:
        return self._evicted

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def append(self, text: str, severity: LogSeverity = LogSeverity.STDOUT) -> list[LogEntry]:
        """Split `text` into lines and append each non-blank one."""

        timestamp = self._clock()
        entries = [
            LogEntry(text=line, severity=severity, timestamp=timestamp)
            for line in split_lines(text)
        ]
        if not entries:
            return []
        with self._lock:
            overflow = len(self._entries) + len(entries) - self._capacity
            if overflow > 0:
                self._evicted += overflow
            self._entries.extend(entries)
            listeners = list(self._listeners)
        for entry in entries:
            for listener in listeners:
                try:
                    listener(entry)
                except Exception:
                    logger.exception("Log listener failed")
        return entries

    def get_all(self) -> list[LogEntry]:
        with self._lock:
            return list(self._entries)

    def get_filtered(self, substring: str) -> FilteredLog:
        """Case-insensitive substring search preserving buffer order and indices."""

        snapshot = self.get_all()
        needle = substring.lower()
        matches = [
            LogMatch(index=index, entry=entry)
            for index, entry in enumerate(snapshot)
            if needle in entry.text.lower()
        ]
        return FilteredLog(matches=matches, total=len(snapshot))

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def subscribe(self, listener: LogListener) -> Callable[[], None]:
        """Register a push listener; returns a callable that removes it."""

        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def render_lines(self) -> list[str]:
        return [entry.render() for entry in self.get_all()]

    def persist_to_file(self, path: Path) -> Path:
        """Write the current buffer as timestamped, severity-tagged lines.

        A directory (existing, or a path without suffix) receives a file with
        a sortable default name.
        """

        target = Path(path)
        if target.is_dir() or (not target.exists() and not target.suffix):
            target = target / default_log_filename(self._clock())
        target.parent.mkdir(parents=True, exist_ok=True)
        lines = self.render_lines()
        content = "\n".join(lines)
        if lines:
            content += "\n"
        target.write_text(content, "utf-8")
        logger.info("Saved %d log entries to %s", len(lines), target)
        return target


def default_log_filename(now: datetime) -> str:
    """Sortable log file name, e.g. `ue-devtools-2026-02-18T12-00-00-000000Z.log`."""

    return f"{LOG_FILE_PREFIX}-{now.strftime('%Y-%m-%dT%H-%M-%S-%f')}Z.log"

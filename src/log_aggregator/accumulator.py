"""Shared, thread-safe sink for lines produced by poll loops and event watchers."""

import threading
from typing import Iterable, List, Optional

from models import LogLine

from .timeutil import sort_key


class DiagnosticLog:
    """Recoverable errors seen during a run, kept for the empty-result case.

    Identical messages are stored once and the log is bounded, since a
    failing poll loop reports the same error on every tick.
    """

    def __init__(self, max_entries: int = 50):
        self.max_entries = max_entries
        self._entries: List[str] = []
        self._lock = threading.Lock()

    def record(self, message: str) -> None:
        with self._lock:
            if message in self._entries or len(self._entries) >= self.max_entries:
                return
            self._entries.append(message)

    def entries(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class LineAccumulator:
    """Append-only collection of LogLines, optionally capped at ``max_lines``.

    Once the cap is reached further appends are dropped and counted. After
    ``finalize()`` the accumulator is sealed: late appends from in-flight
    fetches are discarded without being counted.
    """

    def __init__(self, max_lines: Optional[int] = None):
        self.max_lines = max_lines if max_lines and max_lines > 0 else None
        self._lines: List[LogLine] = []
        self._dropped = 0
        self._sealed = False
        self._lock = threading.Lock()

    def append(self, line: LogLine) -> bool:
        with self._lock:
            if self._sealed:
                return False
            if self.max_lines is not None and len(self._lines) >= self.max_lines:
                self._dropped += 1
                return False
            self._lines.append(line)
            return True

    def extend(self, lines: Iterable[LogLine]) -> int:
        return sum(1 for line in lines if self.append(line))

    def __len__(self) -> int:
        with self._lock:
            return len(self._lines)

    @property
    def dropped(self) -> int:
        with self._lock:
            return self._dropped

    @property
    def sealed(self) -> bool:
        return self._sealed

    def is_full(self) -> bool:
        with self._lock:
            return self.max_lines is not None and len(self._lines) >= self.max_lines

    def finalize(self) -> List[LogLine]:
        """Seal the accumulator and return its lines sorted by timestamp ascending."""
        with self._lock:
            self._sealed = True
            lines = list(self._lines)
        lines.sort(key=lambda line: sort_key(line.timestamp))
        return lines

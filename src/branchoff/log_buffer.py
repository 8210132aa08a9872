"""In-memory log capture served by ``GET /logs``.

``RingBufferHandler`` is attached to the root logger by the server and
keeps the last N records in a bounded deque; ``LogBuffer.query`` filters
them by level and logger name, newest first. Nothing is written to disk.
"""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime, timezone


def _record_to_dict(record: logging.LogRecord) -> dict:
    """Convert a stdlib LogRecord into a JSON-serializable dict."""
    entry = {
        "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
        "level": record.levelname,
        "name": record.name,
        "message": record.getMessage(),
    }
    if record.exc_info and record.exc_info[1] is not None:
        entry["error"] = repr(record.exc_info[1])
    return entry


def _level_number(name: str) -> int:
    value = logging.getLevelName(name.upper())
    return value if isinstance(value, int) else 0


class RingBufferHandler(logging.Handler):
    """A logging.Handler that pushes records into a LogBuffer.

    Attach this to the root logger after ``logging.basicConfig()``::

        logging.getLogger().addHandler(RingBufferHandler(log_buffer))
    """

    def __init__(self, log_buffer: LogBuffer, level: int = logging.DEBUG) -> None:
        super().__init__(level)
        self._buffer = log_buffer

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self._buffer.push(_record_to_dict(record))
        except Exception:
            self.handleError(record)


class LogBuffer:
    """Bounded ring buffer of log entries with a query interface."""

    def __init__(self, maxlen: int = 20_000) -> None:
        self._buffer: deque[dict] = deque(maxlen=maxlen)

    def push(self, entry: dict) -> None:
        self._buffer.append(entry)

    def query(
        self,
        *,
        level: str | None = None,
        name: str | None = None,
        limit: int = 500,
    ) -> list[dict]:
        """Return matching entries, newest first.

        ``level`` is a minimum level (``"WARNING"`` returns warnings and
        above); ``name`` is a logger-name prefix such as ``"branchoff.deferred"``.
        """
        level_num = _level_number(level) if level else None

        results: list[dict] = []
        for entry in reversed(self._buffer):
            if level_num is not None and _level_number(entry["level"]) < level_num:
                continue
            if name is not None and not entry["name"].startswith(name):
                continue
            results.append(entry)
            if len(results) >= limit:
                break
        return results

    @property
    def size(self) -> int:
        return len(self._buffer)

    @property
    def maxlen(self) -> int:
        return self._buffer.maxlen or 0

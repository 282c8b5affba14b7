"""Best-effort in-memory error sink fed by the logging system."""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime
from threading import Lock
from typing import Optional


class ErrorChannel:
    """Ring buffer of component failures; reporting never raises."""

    def __init__(self, max_entries: int = 500) -> None:
        self._entries = deque(maxlen=max(1, int(max_entries)))
        self._lock = Lock()
        self._total = 0

    def report(
        self,
        *,
        component: str,
        message: str,
        level: str = "ERROR",
        exc_type: Optional[str] = None,
    ) -> None:
        entry = {
            "timestamp": datetime.now().isoformat(),
            "level": level,
            "component": component,
            "message": message,
            "exc_type": exc_type,
        }
        with self._lock:
            self._entries.append(entry)
            self._total += 1

    def list_entries(
        self,
        *,
        limit: int = 100,
        component: Optional[str] = None,
        level: Optional[str] = None,
    ) -> list[dict]:
        max_items = max(1, min(int(limit), 1000))
        component_filter = (component or "").strip().lower()
        level_filter = (level or "").strip().upper()
        with self._lock:
            items = list(self._entries)
        if component_filter:
            items = [item for item in items if component_filter in item["component"].lower()]
        if level_filter:
            items = [item for item in items if item["level"] == level_filter]
        return items[-max_items:]

    @property
    def total_reported(self) -> int:
        with self._lock:
            return self._total

    def count(self) -> int:
        with self._lock:
            return len(self._entries)

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            return count


class ErrorChannelHandler(logging.Handler):
    def __init__(self, channel: ErrorChannel, level: int = logging.WARNING) -> None:
        super().__init__(level=level)
        self._channel = channel

    def emit(self, record: logging.LogRecord) -> None:
        try:
            exc_type = None
            if record.exc_info and record.exc_info[0] is not None:
                exc_type = record.exc_info[0].__name__
            self._channel.report(
                component=record.name,
                message=record.getMessage(),
                level=record.levelname,
                exc_type=exc_type,
            )
        except Exception:
            self.handleError(record)

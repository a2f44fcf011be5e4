"""
Activity log.

A bounded, append-only trace of human-readable pipeline events, newest
first. Every entry is mirrored to the ``rewriteflow.activity`` logger.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterator

from rewriteflow.models import ActivityLevel

activity_logger = logging.getLogger("rewriteflow.activity")

DEFAULT_ACTIVITY_LIMIT = 200

_LOG_LEVELS = {
    ActivityLevel.INFO: logging.INFO,
    ActivityLevel.SUCCESS: logging.INFO,
    ActivityLevel.WARN: logging.WARNING,
    ActivityLevel.ERROR: logging.ERROR,
}


@dataclass(frozen=True)
class ActivityEntry:
    """One line of the activity log."""

    level: ActivityLevel
    message: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "level": self.level.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }


class ActivityLog:
    """Bounded activity trace, newest entry first.

    Args:
        limit: Maximum number of entries kept
    """

    def __init__(self, limit: int = DEFAULT_ACTIVITY_LIMIT) -> None:
        self._entries: deque[ActivityEntry] = deque(maxlen=limit)

    @property
    def limit(self) -> int:
        return self._entries.maxlen or DEFAULT_ACTIVITY_LIMIT

    def push(self, level: ActivityLevel | str, message: str) -> ActivityEntry:
        """Record an entry and mirror it to the activity logger."""
        level = ActivityLevel(level)
        entry = ActivityEntry(level=level, message=message)
        self._entries.appendleft(entry)
        activity_logger.log(_LOG_LEVELS[level], message, extra={"activity_level": level.value})
        return entry

    def info(self, message: str) -> ActivityEntry:
        return self.push(ActivityLevel.INFO, message)

    def success(self, message: str) -> ActivityEntry:
        return self.push(ActivityLevel.SUCCESS, message)

    def warn(self, message: str) -> ActivityEntry:
        return self.push(ActivityLevel.WARN, message)

    def error(self, message: str) -> ActivityEntry:
        return self.push(ActivityLevel.ERROR, message)

    def clear(self) -> None:
        self._entries.clear()

    @property
    def entries(self) -> list[ActivityEntry]:
        """Entries, newest first."""
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[ActivityEntry]:
        return iter(self._entries)

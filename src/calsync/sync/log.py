"""
In-memory sync log: a bounded buffer of recent sync activity.

Every entry is also written through stdlib logging, so the buffer is an
additional query surface, not a replacement.
"""

import logging
from collections import deque
from dataclasses import dataclass
from dataclasses import field
from datetime import UTC
from datetime import datetime
from typing import Any

from calsync.models import Provider

MAX_LOG_ENTRIES = 1000


@dataclass
class SyncLogEntry:
    timestamp: datetime
    level: str
    operation: str
    message: str
    provider: Provider | None = None
    user_id: int | None = None
    event_id: int | None = None
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class SyncLog:
    """Keeps the newest MAX_LOG_ENTRIES entries; older ones are dropped."""

    def __init__(self, max_entries: int = MAX_LOG_ENTRIES, logger: logging.Logger | None = None):
        self.entries: deque[SyncLogEntry] = deque(maxlen=max_entries)
        self.logger = logger or logging.getLogger(__name__)

    def _record(
        self,
        level: int,
        operation: str,
        message: str,
        provider: Provider | None = None,
        user_id: int | None = None,
        event_id: int | None = None,
        error: BaseException | str | None = None,
        **metadata,
    ) -> SyncLogEntry:
        entry = SyncLogEntry(
            timestamp=datetime.now(UTC),
            level=logging.getLevelName(level),
            operation=operation,
            message=message,
            provider=provider,
            user_id=user_id,
            event_id=event_id,
            error=str(error) if error is not None else None,
            metadata=metadata,
        )
        self.entries.append(entry)

        prefix = f"[{operation}]"
        if provider is not None:
            prefix += f" [{provider.value}]"
        text = f"{prefix} {message}"
        if entry.error:
            text += f": {entry.error}"
        self.logger.log(level, text)
        return entry

    def info(self, operation: str, message: str, **kwargs) -> SyncLogEntry:
        return self._record(logging.INFO, operation, message, **kwargs)

    def warning(self, operation: str, message: str, **kwargs) -> SyncLogEntry:
        return self._record(logging.WARNING, operation, message, **kwargs)

    def error(self, operation: str, message: str, **kwargs) -> SyncLogEntry:
        return self._record(logging.ERROR, operation, message, **kwargs)

    def get_logs(
        self,
        provider: Provider | None = None,
        user_id: int | None = None,
        event_id: int | None = None,
        limit: int = 100,
    ) -> list[SyncLogEntry]:
        """Newest-last entries matching the filters, at most ``limit`` of them."""
        matching = [
            entry
            for entry in self.entries
            if (provider is None or entry.provider is provider)
            and (user_id is None or entry.user_id == user_id)
            and (event_id is None or entry.event_id == event_id)
        ]
        if limit <= 0:
            return []
        return matching[-limit:]

    def clear(self):
        self.entries.clear()

"""Activity feed and audit trail.

The activity feed is what the notification panel shows: newest first,
bounded, with a read flag. Eviction is purely by recency; read state and
risk level never protect an item.

The audit trail is the compliance record: newest first, unbounded, and
entries are never modified once written.
"""

from __future__ import annotations

from collections import deque
from dataclasses import replace

import structlog

from keystone.core.models import (
    ActivityDraft,
    ActivityItem,
    AuditDraft,
    AuditLog,
    draft_values,
)
from keystone.core.stamps import Stamper

logger = structlog.get_logger()

DEFAULT_FEED_LIMIT = 50


class ActivityFeed:
    """Bounded, newest-first activity log."""

    def __init__(self, stamper: Stamper, limit: int = DEFAULT_FEED_LIMIT) -> None:
        if limit < 1:
            raise ValueError("activity feed limit must be at least 1")
        self._stamper = stamper
        self._items: deque[ActivityItem] = deque(maxlen=limit)

    @property
    def limit(self) -> int:
        return self._items.maxlen or DEFAULT_FEED_LIMIT

    def add(self, draft: ActivityDraft) -> ActivityItem:
        item = ActivityItem(
            id=self._stamper.new_id("activity"),
            timestamp=self._stamper.now(),
            **draft_values(draft),
        )
        evicted = self._items[-1] if len(self._items) == self.limit else None
        # appendleft on a full deque drops the rightmost (oldest) item
        self._items.appendleft(item)
        if evicted is not None:
            logger.debug("activity_evicted", activity_id=evicted.id)
        return item

    def items(self) -> list[ActivityItem]:
        return list(self._items)

    def get(self, activity_id: str) -> ActivityItem | None:
        return next((i for i in self._items if i.id == activity_id), None)

    def mark_read(self, activity_id: str) -> bool:
        for idx, item in enumerate(self._items):
            if item.id == activity_id:
                if not item.is_read:
                    self._items[idx] = replace(item, is_read=True)
                return True
        return False

    def mark_all_read(self) -> int:
        changed = 0
        for idx, item in enumerate(self._items):
            if not item.is_read:
                self._items[idx] = replace(item, is_read=True)
                changed += 1
        return changed

    @property
    def unread_count(self) -> int:
        return sum(1 for i in self._items if not i.is_read)

    def __len__(self) -> int:
        return len(self._items)


class AuditTrail:
    """Unbounded, append-only audit log (newest first)."""

    def __init__(self, stamper: Stamper) -> None:
        self._stamper = stamper
        self._entries: deque[AuditLog] = deque()

    def append(self, draft: AuditDraft) -> AuditLog:
        entry = AuditLog(
            id=self._stamper.new_id("audit"),
            timestamp=self._stamper.now(),
            **draft_values(draft),
        )
        self._entries.appendleft(entry)
        return entry

    def entries(self) -> list[AuditLog]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

"""Id and timestamp issuance shared by the store and the feed."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Callable

from keystone.core.models import utcnow

Clock = Callable[[], datetime]


class Stamper:
    """Issues store-unique ids and non-decreasing UTC timestamps.

    The wall clock can step backwards (NTP, tests with fixed clocks); ``now``
    never returns a value earlier than the previous one, so created_at /
    updated_at ordering holds across successive mutations.
    """

    def __init__(self, clock: Clock = utcnow) -> None:
        self._clock = clock
        self._last: datetime | None = None
        self._issued: set[str] = set()

    def now(self) -> datetime:
        current = self._clock()
        if self._last is not None and current < self._last:
            current = self._last
        self._last = current
        return current

    def new_id(self, prefix: str) -> str:
        while True:
            candidate = f"{prefix}-{uuid.uuid4().hex[:12]}"
            if candidate not in self._issued:
                self._issued.add(candidate)
                return candidate

    def reserve(self, entity_id: str) -> None:
        """Mark an externally assigned id (e.g. from the backend) as taken."""
        self._issued.add(entity_id)

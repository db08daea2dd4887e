"""Dashboard aggregate metrics.

Computed from the live entity set, never stored on an entity:

  - total / active project counts
  - agent-completed tasks and the automation rate
  - pending-review and total agent-action counts

``compute_dashboard_stats`` is pure. ``MetricsEngine`` keeps a snapshot
current by recomputing on every store change event.
"""

from __future__ import annotations

import math
import threading
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any, Iterable

import structlog

from keystone.core.models import (
    AgentAction,
    AgentActionStatus,
    Project,
    ProjectStatus,
    Task,
    TaskStatus,
)

if TYPE_CHECKING:
    from keystone.core.store import EntityStore, StoreEvent

logger = structlog.get_logger()


@dataclass(frozen=True)
class DashboardStats:
    total_projects: int = 0
    active_projects: int = 0
    tasks_completed: int = 0
    automation_rate: int = 0
    pending_reviews: int = 0
    agent_actions: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def round_half_up(value: float) -> int:
    """Round .5 away from zero for non-negative values (50.5 → 51)."""
    return int(math.floor(value + 0.5))


def compute_dashboard_stats(
    projects: Iterable[Project],
    tasks: Iterable[Task],
    agent_actions: Iterable[AgentAction],
) -> DashboardStats:
    projects = list(projects)
    tasks = list(tasks)
    agent_actions = list(agent_actions)

    completed = sum(
        1 for t in tasks
        if t.status == TaskStatus.COMPLETED and t.is_agent_assigned
    )
    return DashboardStats(
        total_projects=len(projects),
        active_projects=sum(1 for p in projects if p.status == ProjectStatus.IN_PROGRESS),
        tasks_completed=completed,
        automation_rate=round_half_up(100 * completed / max(1, len(tasks))),
        pending_reviews=sum(1 for a in agent_actions if a.status == AgentActionStatus.PENDING),
        agent_actions=len(agent_actions),
    )


class MetricsEngine:
    """Keeps ``stats`` in step with the store.

    Recomputation is eager: the listener runs synchronously inside the
    mutation that triggered it, so a reader never sees a stale snapshot
    after a mutation returns.
    """

    def __init__(self, store: EntityStore) -> None:
        self._store = store
        self._lock = threading.Lock()
        self._stats = self._compute()
        self._unsubscribe = store.subscribe(self._on_change)

    @property
    def stats(self) -> DashboardStats:
        return self._stats

    def _compute(self) -> DashboardStats:
        return compute_dashboard_stats(
            self._store.projects,
            self._store.tasks,
            self._store.agent_actions,
        )

    def _on_change(self, event: StoreEvent) -> None:
        with self._lock:
            previous = self._stats
            self._stats = self._compute()
        if self._stats != previous:
            logger.debug(
                "dashboard_stats_changed",
                trigger=event.kind.value,
                **self._stats.to_dict(),
            )

    def close(self) -> None:
        """Stop following the store. The last snapshot stays readable."""
        self._unsubscribe()

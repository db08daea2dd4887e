"""Background activity generator.

Keeps the dashboard feeling live between real events. Every interval it:

1. touches last_activity on every in-progress project
2. now and then posts a low-risk "completed a task" activity for a random agent

The tick runs entirely under the store lock, so it never interleaves with a
user-initiated mutation.
"""

from __future__ import annotations

import random
from typing import Any

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from keystone.config import settings
from keystone.core.models import ActivityDraft, ActivityType, ProjectStatus, RiskLevel
from keystone.core.store import EntityStore

logger = structlog.get_logger()

_JOB_ID = "_global:activity_simulator"


class ActivitySimulator:
    """APScheduler-driven tick with an explicit start/stop lifecycle."""

    def __init__(
        self,
        store: EntityStore,
        *,
        interval_s: float | None = None,
        emit_probability: float | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._store = store
        self.interval_s = interval_s or settings.simulator_interval_s
        self.emit_probability = (
            settings.simulator_emit_probability if emit_probability is None else emit_probability
        )
        self._rng = rng or random.Random()
        self._confidence_range = (settings.simulator_confidence_min, settings.simulator_confidence_max)
        self.scheduler: AsyncIOScheduler | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Schedule the tick. Must be called with an event loop running."""
        if self._running:
            return
        self.scheduler = AsyncIOScheduler(
            job_defaults={"coalesce": True, "max_instances": 1}
        )
        self.scheduler.add_job(
            self._run_tick,
            trigger=IntervalTrigger(seconds=self.interval_s),
            id=_JOB_ID,
            name="Activity simulator",
            replace_existing=True,
        )
        self.scheduler.start()
        self._running = True
        logger.info("activity_simulator_started", interval_s=self.interval_s)

    def stop(self) -> None:
        if self._running and self.scheduler is not None:
            self.scheduler.shutdown(wait=False)
            self._running = False
            logger.info("activity_simulator_stopped")

    async def _run_tick(self) -> None:
        try:
            self.tick()
        except Exception as e:
            logger.warning("activity_simulator_tick_failed", error=str(e))

    def tick(self) -> dict[str, Any]:
        """Run one simulation step. Returns what it did, for logging and tests."""
        store = self._store
        with store.locked():
            touched = 0
            for project in store.projects:
                if project.status == ProjectStatus.IN_PROGRESS:
                    store.update_project(project.id)
                    touched += 1

            emitted = None
            agents = store.agents
            if agents and self._rng.random() < self.emit_probability:
                agent = self._rng.choice(agents)
                low, high = self._confidence_range
                confidence = self._rng.randint(low, high)
                emitted = store.add_activity(ActivityDraft(
                    type=ActivityType.AGENT_DECISION,
                    title=f"{agent.name} completed a task",
                    description=f"Automated task processing with {confidence}% confidence",
                    risk_level=RiskLevel.LOW,
                    agent_id=agent.id,
                ))

        logger.debug(
            "activity_simulator_tick",
            projects_touched=touched,
            activity_id=emitted.id if emitted else None,
        )
        return {"projects_touched": touched, "activity": emitted}

"""Keystone application entry point.

Wires the entity store to its collaborators:

    KeystoneApiClient ─▶ RemoteSyncAdapter ─┐
    RequirementPipeline ────────────────────┼─▶ EntityStore ─▶ MetricsEngine
    ActivitySimulator (APScheduler) ────────┘

``Dashboard`` owns one of each for the lifetime of a session.
"""

from __future__ import annotations

import asyncio
import logging
import random

import structlog

from keystone.config import settings
from keystone.core.metrics import DashboardStats, MetricsEngine
from keystone.core.store import EntityStore
from keystone.crons.simulator import ActivitySimulator
from keystone.integrations.api_client import KeystoneApiClient
from keystone.integrations.sync import HealthStatus, RemoteSyncAdapter
from keystone.pipeline.analysis import RequirementPipeline
from keystone.pipeline.analyzer import Analyzer

logger = structlog.get_logger()


def configure_logging() -> None:
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer()
            if settings.env == "production"
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
    )


# ═══════════════════════════════════════════════════════════════════════════════
# DASHBOARD
# ═══════════════════════════════════════════════════════════════════════════════

class Dashboard:
    """Composition root: one store shared by every consumer."""

    def __init__(
        self,
        *,
        store: EntityStore | None = None,
        client: KeystoneApiClient | None = None,
        analyzer: Analyzer | None = None,
        rng: random.Random | None = None,
        simulate: bool | None = None,
    ) -> None:
        self.store = store or EntityStore()
        self._owns_client = client is None
        self.client = client or KeystoneApiClient()
        self.sync = RemoteSyncAdapter(self.store, self.client)
        self.metrics = MetricsEngine(self.store)
        self.requirements = RequirementPipeline(self.store, analyzer)
        self.simulator = ActivitySimulator(self.store, rng=rng)
        self._simulate = settings.simulator_enabled if simulate is None else simulate
        self.health: HealthStatus | None = None
        self._started = False

    @property
    def stats(self) -> DashboardStats:
        return self.metrics.stats

    async def start(self) -> None:
        """Probe the backend, load projects and agents, start the simulator."""
        if self._started:
            return
        logger.info("dashboard_starting", env=settings.env, base_url=settings.api_base_url)

        self.health = await self.sync.check_health()
        projects = await self.sync.load()
        agents = await self.sync.load_agents()

        if self._simulate:
            self.simulator.start()
        self._started = True

        logger.info(
            "dashboard_started",
            backend_ok=self.health.ok,
            projects=projects.count,
            projects_ok=projects.ok,
            agents=agents.count,
            agents_ok=agents.ok,
        )

    async def stop(self) -> None:
        self.simulator.stop()
        self.metrics.close()
        if self._owns_client:
            await self.client.close()
        self._started = False
        logger.info("dashboard_stopped")


def main() -> None:
    configure_logging()

    async def _run() -> None:
        dashboard = Dashboard()
        await dashboard.start()
        try:
            while True:
                await asyncio.sleep(settings.simulator_interval_s)
                logger.info("dashboard_stats", **dashboard.stats.to_dict())
        finally:
            await dashboard.stop()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        logger.info("dashboard_interrupted")


if __name__ == "__main__":
    main()

"""End-to-end dashboard tests against a faked backend.

Exercises the whole flow: startup sync, requirement analysis and
acceptance, local edits, and the metrics that follow from them.

Run with: pytest tests/integration/test_dashboard.py -v
"""

from __future__ import annotations

import random

import httpx
import pytest
import pytest_asyncio

from keystone.app import Dashboard
from keystone.core.metrics import round_half_up
from keystone.core.models import ProjectDraft, ProjectStatus, TaskStatus
from keystone.pipeline.analysis import RequirementPipeline

PROJECTS = [
    {"id": "p1", "name": "Portal", "status": "in_progress", "created_at": "2025-01-10T08:00:00Z"},
    {"id": "p2", "name": "Billing", "status": "planning", "created_at": "2025-01-12T08:00:00Z"},
    {"id": "p3", "name": "Legacy", "status": "completed", "created_at": "2024-11-02T08:00:00Z"},
]
AGENTS = [
    {"id": "agent-1", "name": "Requirements Parser", "agent_type": "parser", "capabilities": ["nlp"]},
]


def _backend(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path == "/health":
        return httpx.Response(200, json={"status": "healthy"})
    if path == "/api/v1/projects/" and request.method == "GET":
        return httpx.Response(200, json={"projects": PROJECTS})
    if path == "/api/v1/projects/" and request.method == "POST":
        return httpx.Response(201, json={"id": "p4", "name": "New", "status": "planning"})
    if path == "/api/v1/agents":
        return httpx.Response(200, json={"items": AGENTS})
    return httpx.Response(404)


@pytest_asyncio.fixture
async def dashboard(store, make_client, no_sleep):
    board = Dashboard(store=store, client=make_client(_backend), rng=random.Random(1), simulate=False)
    board.requirements = RequirementPipeline(store, sleep=no_sleep, default_agent_id="agent-1")
    await board.start()
    yield board
    await board.stop()


class TestDashboardFlow:
    """Startup sync through accepted breakdown."""

    @pytest.mark.asyncio
    async def test_startup_loads_backend_state(self, dashboard, store):
        assert dashboard.health.ok
        assert [p.id for p in store.projects] == ["p1", "p2", "p3"]
        assert store.get_agent("agent-1") is not None
        assert dashboard.stats.total_projects == 3
        assert dashboard.stats.active_projects == 1
        assert not dashboard.simulator.running

    @pytest.mark.asyncio
    async def test_accepted_breakdown_feeds_metrics(self, dashboard, store):
        analysis = await dashboard.requirements.analyze(
            "Users should be able to log in with SSO. Export monthly reports as CSV.", "p1",
        )
        result = dashboard.requirements.accept(analysis.id)
        assert result.tasks
        assert dashboard.stats.tasks_completed == 0
        assert dashboard.stats.automation_rate == 0

        first = result.tasks[0]
        store.update_task(first.id, status=TaskStatus.COMPLETED)
        expected = round_half_up(100 / len(store.tasks))
        assert dashboard.stats.tasks_completed == 1
        assert dashboard.stats.automation_rate == expected

    @pytest.mark.asyncio
    async def test_delete_project_updates_counts(self, dashboard, store):
        store.delete_project("p1")
        assert dashboard.stats.total_projects == 2
        assert dashboard.stats.active_projects == 0

    @pytest.mark.asyncio
    async def test_create_project_prepends(self, dashboard, store):
        project = await dashboard.sync.create_project(ProjectDraft(name="New"))
        assert store.projects[0] == project
        assert project.status == ProjectStatus.PENDING
        assert dashboard.stats.total_projects == 4


class TestDegradedBackend:
    @pytest.mark.asyncio
    async def test_start_survives_outage(self, store, make_client):
        board = Dashboard(
            store=store,
            client=make_client(lambda r: httpx.Response(503), retry_attempts=1),
            simulate=False,
        )
        await board.start()
        try:
            assert board.health.ok is False
            assert store.projects == []
            assert board.stats.total_projects == 0
        finally:
            await board.stop()

    @pytest.mark.asyncio
    async def test_start_survives_garbage_records(self, store, make_client):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/api/v1/agents":
                return httpx.Response(200, json={"items": [7]})
            return httpx.Response(200, json={"projects": ["garbage", None], "status": "healthy"})

        board = Dashboard(store=store, client=make_client(handler), simulate=False)
        await board.start()
        try:
            assert board.health.ok
            assert store.projects == []
            assert store.agents == []
        finally:
            await board.stop()

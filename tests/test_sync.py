"""Remote sync adapter and API client tests.

The backend is an httpx.MockTransport handler; nothing leaves the process.
"""

from __future__ import annotations

import json
from datetime import date

import httpx
import pytest

from keystone.core.errors import RemoteUnavailable
from keystone.core.models import (
    AgentStatus,
    AuditActionType,
    ProjectDraft,
    ProjectStatus,
    RiskLevel,
)
from keystone.infra.circuit_breaker import CircuitBreaker, CircuitOpenError
from keystone.integrations.sync import RemoteSyncAdapter, map_remote_status


def _remote_project(pid: str, status: str = "planning", **extra) -> dict:
    return {
        "id": pid,
        "name": f"Project {pid}",
        "description": "from backend",
        "status": status,
        "created_at": "2025-02-01T10:00:00Z",
        "updated_at": "2025-02-03T12:30:00Z",
        **extra,
    }


class FakeBackend:
    """Routes requests by (method, path); records every request seen."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.projects: list[dict] = []
        self.agents: list[dict] = []
        self.fail_with: int | None = None
        self.created: dict | None = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with:
            return httpx.Response(self.fail_with, json={"detail": "boom"})
        path = request.url.path
        if request.method == "GET" and path == "/api/v1/projects/":
            return httpx.Response(200, json={"projects": self.projects})
        if request.method == "POST" and path == "/api/v1/projects/":
            body = json.loads(request.content)
            self.created = {**body, "id": "remote-42", "created_at": "2025-03-01T09:00:00Z"}
            return httpx.Response(201, json=self.created)
        if request.method == "GET" and path == "/api/v1/agents":
            return httpx.Response(200, json={"items": self.agents})
        if request.method == "GET" and path == "/health":
            return httpx.Response(200, json={"status": "healthy"})
        return httpx.Response(404)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def adapter(store, backend, make_client) -> RemoteSyncAdapter:
    return RemoteSyncAdapter(store, make_client(backend))


# ─────────────────────────────────────────────────────────────────────────────
# Status mapping
# ─────────────────────────────────────────────────────────────────────────────

class TestMapRemoteStatus:
    def test_known(self):
        assert map_remote_status("planning") == ProjectStatus.PENDING
        assert map_remote_status("in_progress") == ProjectStatus.IN_PROGRESS
        assert map_remote_status("completed") == ProjectStatus.COMPLETED

    def test_unknown_is_blocked(self):
        assert map_remote_status("on_hold") == ProjectStatus.BLOCKED
        assert map_remote_status("in-progress") == ProjectStatus.BLOCKED
        assert map_remote_status(None) == ProjectStatus.BLOCKED
        assert map_remote_status(["planning"]) == ProjectStatus.BLOCKED


# ─────────────────────────────────────────────────────────────────────────────
# load / refresh
# ─────────────────────────────────────────────────────────────────────────────

class TestLoad:
    @pytest.mark.asyncio
    async def test_replaces_collection(self, adapter, backend, store):
        store.create_project(ProjectDraft(name="Local only"))
        backend.projects = [
            _remote_project("p1", "planning"),
            _remote_project("p2", "archived", budget=2500, start_date="2025-02-01"),
        ]
        result = await adapter.load()

        assert result.ok and result.count == 2
        assert [p.id for p in store.projects] == ["p1", "p2"]
        p1, p2 = store.projects
        assert p1.status == ProjectStatus.PENDING
        assert p2.status == ProjectStatus.BLOCKED
        assert p2.budget == 2500.0
        assert p2.start_date == date(2025, 2, 1)
        assert p1.last_activity > p1.created_at

    @pytest.mark.asyncio
    async def test_request_shape(self, adapter, backend):
        await adapter.load()
        request = backend.requests[0]
        assert request.url.params["limit"] == "50"
        assert request.headers["Authorization"] == "Bearer test-token"

    @pytest.mark.asyncio
    async def test_failure_empties_collection(self, adapter, backend, store):
        store.create_project(ProjectDraft(name="Stale"))
        backend.fail_with = 503
        result = await adapter.load()
        assert result.ok is False
        assert isinstance(result.error, RemoteUnavailable)
        assert result.error.status_code == 503
        assert store.projects == []

    @pytest.mark.asyncio
    async def test_retries_transient_errors(self, adapter, backend):
        backend.fail_with = 502
        await adapter.load()
        assert len(backend.requests) == 3

    @pytest.mark.asyncio
    async def test_client_errors_not_retried(self, adapter, backend):
        backend.fail_with = 401
        result = await adapter.load()
        assert result.error.status_code == 401
        assert len(backend.requests) == 1

    @pytest.mark.asyncio
    async def test_malformed_records_skipped(self, adapter, backend, store):
        backend.projects = [_remote_project("p1"), {"name": "no id"}, _remote_project("p3", created_at="yesterday")]
        result = await adapter.load()
        assert result.ok
        assert result.skipped == 2
        assert [p.id for p in store.projects] == ["p1"]

    @pytest.mark.asyncio
    async def test_non_object_records_skipped(self, adapter, backend, store):
        backend.projects = [{"id": "p1", "name": "ok"}, "garbage", None, 7]
        result = await adapter.load()
        assert result.ok
        assert (result.count, result.skipped) == (1, 3)
        assert [p.id for p in store.projects] == ["p1"]

    @pytest.mark.asyncio
    async def test_malformed_page(self, store, make_client):
        adapter = RemoteSyncAdapter(store, make_client(lambda r: httpx.Response(200, json=[1, 2])))
        result = await adapter.load()
        assert result.ok is False
        assert store.projects == []

    @pytest.mark.asyncio
    async def test_refresh_reloads(self, adapter, backend, store):
        backend.projects = [_remote_project("p1")]
        await adapter.load()
        backend.projects = [_remote_project("p2"), _remote_project("p3")]
        await adapter.refresh()
        assert [p.id for p in store.projects] == ["p2", "p3"]

    @pytest.mark.asyncio
    async def test_network_error(self, store, make_client):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        adapter = RemoteSyncAdapter(store, make_client(handler, retry_attempts=2))
        result = await adapter.load()
        assert result.ok is False
        assert result.error.service == "projects"


# ─────────────────────────────────────────────────────────────────────────────
# create_project
# ─────────────────────────────────────────────────────────────────────────────

class TestCreateProject:
    @pytest.mark.asyncio
    async def test_payload_defaults(self, adapter, backend):
        await adapter.create_project(ProjectDraft(name="Atlas", description="New CRM"))
        body = json.loads(backend.requests[0].content)
        assert body == {
            "name": "Atlas",
            "description": "New CRM",
            "priority": "medium",
            "status": "planning",
            "start_date": "2025-03-01",
            "end_date": "2025-05-30",
            "budget": 10000,
        }

    @pytest.mark.asyncio
    async def test_prepends_and_records(self, adapter, store):
        existing = store.create_project(ProjectDraft(name="Old"))
        project = await adapter.create_project(ProjectDraft(name="Atlas", owner="lead@test"))

        assert [p.id for p in store.projects] == ["remote-42", existing.id]
        assert project.status == ProjectStatus.PENDING
        assert project.owner == "lead@test"
        assert store.activities[0].title == "New project created"
        assert store.activities[0].risk_level == RiskLevel.LOW
        assert store.activities[0].project_id == "remote-42"
        audit = store.audit_logs[0]
        assert audit.action_type == AuditActionType.CREATE
        assert audit.actor == "pm@test.local"

    @pytest.mark.asyncio
    async def test_failure_leaves_store_untouched(self, adapter, backend, store):
        existing = store.create_project(ProjectDraft(name="Old"))
        before = list(store.projects)
        backend.fail_with = 500
        with pytest.raises(RemoteUnavailable):
            await adapter.create_project(ProjectDraft(name="Atlas"))
        assert store.projects == before == [existing]
        assert store.activities == []
        assert store.audit_logs == []

    @pytest.mark.asyncio
    async def test_malformed_response_leaves_store_untouched(self, store, make_client):
        adapter = RemoteSyncAdapter(store, make_client(lambda r: httpx.Response(201, json={"name": "no id"})))
        with pytest.raises(RemoteUnavailable):
            await adapter.create_project(ProjectDraft(name="Atlas"))
        assert store.projects == []


# ─────────────────────────────────────────────────────────────────────────────
# Agents & health
# ─────────────────────────────────────────────────────────────────────────────

class TestAgentsAndHealth:
    @pytest.mark.asyncio
    async def test_load_agents(self, adapter, backend, store):
        backend.agents = [
            {"id": "a1", "name": "Requirements Parser", "agent_type": "parser", "capabilities": ["nlp"]},
            {"id": "a2", "name": "Task Planner", "agent_type": "planner", "capabilities": [],
             "status": "busy", "success_rate": 88},
        ]
        result = await adapter.load_agents()
        assert result.ok and result.count == 2
        a1 = store.get_agent("a1")
        assert a1.status == AgentStatus.ACTIVE
        assert a1.success_rate == 95.0
        assert a1.total_tasks == 0
        assert a1.capabilities == ("nlp",)
        assert store.get_agent("a2").success_rate == 88.0
        assert store.get_agent("a2").status == AgentStatus.BUSY

    @pytest.mark.asyncio
    async def test_non_object_agents_skipped(self, adapter, backend, store):
        backend.agents = [{"id": "a1", "name": "Parser", "agent_type": "parser"}, 7, "x"]
        result = await adapter.load_agents()
        assert result.ok
        assert (result.count, result.skipped) == (1, 2)
        assert [a.id for a in store.agents] == ["a1"]

    @pytest.mark.asyncio
    async def test_agent_configuration_frozen(self, adapter, backend, store):
        backend.agents = [{"id": "a1", "name": "Parser", "configuration": {"model": "small"}}]
        await adapter.load_agents()
        with pytest.raises(TypeError):
            store.get_agent("a1").configuration["model"] = "large"

    @pytest.mark.asyncio
    async def test_load_agents_fail_safe(self, adapter, backend, store):
        backend.agents = [{"id": "a1", "name": "Parser", "agent_type": "parser"}]
        await adapter.load_agents()
        backend.fail_with = 503
        result = await adapter.load_agents()
        assert result.ok is False
        assert store.agents == []

    @pytest.mark.asyncio
    async def test_health_ok(self, adapter):
        health = await adapter.check_health()
        assert health.ok is True
        assert health.message == "healthy"

    @pytest.mark.asyncio
    async def test_health_never_raises(self, adapter, backend):
        backend.fail_with = 503
        health = await adapter.check_health()
        assert health.ok is False
        assert "503" in health.message
        assert len(backend.requests) == 1


# ─────────────────────────────────────────────────────────────────────────────
# Circuit breaking through the client
# ─────────────────────────────────────────────────────────────────────────────

class TestClientBreaker:
    @pytest.mark.asyncio
    async def test_open_circuit_fast_fails(self, store, backend, make_client):
        backend.fail_with = 503
        breaker = CircuitBreaker("test_api", failure_threshold=2, cooldown_seconds=600)
        adapter = RemoteSyncAdapter(store, make_client(backend, retry_attempts=1, breaker=breaker))

        await adapter.load()
        await adapter.load()
        calls = len(backend.requests)
        result = await adapter.load()

        assert isinstance(result.error, CircuitOpenError)
        assert len(backend.requests) == calls

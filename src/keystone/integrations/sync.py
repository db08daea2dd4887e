"""Remote sync: keep the store's projects and agents in step with the backend.

The backend is the system of record. ``load`` / ``refresh`` pull one page
and replace the local collection wholesale. The mapped page is applied in a
single locked step after the network call returns, so readers see either
the old page or the new one, never a mix.

Failure policy:
    load / refresh / load_agents  fail-safe: collection emptied, SyncResult(ok=False)
    create_project                store untouched, RemoteUnavailable propagates
    check_health                  never raises
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any

import structlog

from keystone.config import settings
from keystone.core.errors import RemoteUnavailable
from keystone.core.models import (
    ActivityDraft,
    ActivityType,
    Agent,
    AgentStatus,
    AuditActionType,
    AuditDraft,
    Project,
    ProjectDraft,
    ProjectStatus,
    RiskLevel,
)
from keystone.core.store import EntityStore
from keystone.integrations.api_client import KeystoneApiClient

logger = structlog.get_logger()

_REMOTE_STATUS_MAP: dict[str, ProjectStatus] = {
    "planning": ProjectStatus.PENDING,
    "in_progress": ProjectStatus.IN_PROGRESS,
    "completed": ProjectStatus.COMPLETED,
}


def map_remote_status(remote: Any) -> ProjectStatus:
    """Backend project status → internal status. Unknown values map to BLOCKED."""
    if not isinstance(remote, str):
        return ProjectStatus.BLOCKED
    return _REMOTE_STATUS_MAP.get(remote, ProjectStatus.BLOCKED)


@dataclass(frozen=True)
class SyncResult:
    ok: bool
    count: int = 0
    skipped: int = 0
    error: RemoteUnavailable | None = None


@dataclass(frozen=True)
class HealthStatus:
    ok: bool
    message: str


def _agent_status(value: Any) -> AgentStatus:
    try:
        return AgentStatus(value)
    except ValueError:
        return AgentStatus.ACTIVE


def _parse_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _parse_date(value: Any) -> date | None:
    if not value:
        return None
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


class RemoteSyncAdapter:
    """Bridges ``KeystoneApiClient`` and ``EntityStore``."""

    def __init__(self, store: EntityStore, client: KeystoneApiClient) -> None:
        self._store = store
        self._client = client

    # ── Mapping ──────────────────────────────────────────────

    def _to_project(self, raw: dict[str, Any], draft: ProjectDraft | None = None) -> Project:
        if not isinstance(raw, dict):
            raise TypeError(f"project record is {type(raw).__name__}, not an object")
        now = self._store.now()
        created_at = _parse_datetime(raw.get("created_at")) or now
        budget = raw.get("budget")
        return Project(
            id=str(raw["id"]),
            name=str(raw["name"]),
            description=raw.get("description") or "",
            status=map_remote_status(raw.get("status")),
            created_at=created_at,
            last_activity=_parse_datetime(raw.get("updated_at")) or created_at,
            owner=(draft.owner if draft and draft.owner else raw.get("owner") or self._store.current_user),
            repository=draft.repository if draft else raw.get("repository"),
            integrations=draft.integrations if draft else frozenset(),
            assigned_agents=draft.assigned_agents if draft else frozenset(),
            priority=raw.get("priority"),
            budget=float(budget) if budget is not None else None,
            start_date=_parse_date(raw.get("start_date")),
            end_date=_parse_date(raw.get("end_date")),
        )

    @staticmethod
    def _to_agent(raw: dict[str, Any]) -> Agent:
        if not isinstance(raw, dict):
            raise TypeError(f"agent record is {type(raw).__name__}, not an object")
        success_rate = raw.get("success_rate")
        name = str(raw["name"])
        return Agent(
            id=str(raw["id"]),
            name=name,
            type=str(raw.get("agent_type") or raw.get("type") or "general"),
            status=_agent_status(raw.get("status")),
            capabilities=tuple(raw.get("capabilities") or ()),
            success_rate=(
                settings.default_agent_success_rate if success_rate is None else float(success_rate)
            ),
            total_tasks=0,
            configuration=dict(raw.get("configuration") or {}),
            description=raw.get("description") or f"{name} - AI Agent",
            last_activity=_parse_datetime(raw.get("updated_at")),
        )

    def build_create_payload(self, draft: ProjectDraft) -> dict[str, Any]:
        today = self._store.now().date()
        start = draft.start_date or today
        end = draft.end_date or today + timedelta(days=settings.default_project_window_days)
        return {
            "name": draft.name,
            "description": draft.description,
            "priority": draft.priority or settings.default_project_priority,
            "status": "planning",
            "start_date": start.isoformat(),
            "end_date": end.isoformat(),
            "budget": draft.budget if draft.budget is not None else settings.default_project_budget,
        }

    # ── Projects ─────────────────────────────────────────────

    async def load(self) -> SyncResult:
        """Fetch one page of projects and replace the local collection."""
        try:
            records = await self._client.list_projects(settings.project_page_limit)
        except RemoteUnavailable as e:
            self._store.replace_projects([])
            logger.warning("project_sync_failed", error=str(e), status_code=e.status_code)
            return SyncResult(ok=False, error=e)

        projects: list[Project] = []
        skipped = 0
        for raw in records:
            try:
                projects.append(self._to_project(raw))
            except (KeyError, TypeError, ValueError) as e:
                skipped += 1
                logger.warning("project_record_skipped", error=str(e))

        self._store.replace_projects(projects)
        logger.info("project_sync_complete", count=len(projects), skipped=skipped)
        return SyncResult(ok=True, count=len(projects), skipped=skipped)

    async def refresh(self) -> SyncResult:
        logger.info("project_sync_refresh")
        return await self.load()

    async def create_project(self, draft: ProjectDraft) -> Project:
        """Create on the backend, then prepend locally. Raises RemoteUnavailable."""
        payload = self.build_create_payload(draft)
        raw = await self._client.create_project(payload)
        try:
            project = self._to_project(raw, draft=draft)
        except (KeyError, TypeError, ValueError) as e:
            raise RemoteUnavailable("projects", f"malformed project record: {e}") from e

        store = self._store
        with store.locked():
            store.add_project(project)
            store.add_activity(ActivityDraft(
                type=ActivityType.AGENT_DECISION,
                title="New project created",
                description=(
                    f'Project "{project.name}" has been created successfully '
                    "and is ready for requirements input"
                ),
                risk_level=RiskLevel.LOW,
                project_id=project.id,
            ))
            store.add_audit_log(AuditDraft(
                actor=store.current_user,
                action=f"Created project {project.name}",
                action_type=AuditActionType.CREATE,
                details=f"Budget {payload['budget']}, due {payload['end_date']}",
                project_id=project.id,
            ))

        logger.info("remote_project_created", project_id=project.id, name=project.name)
        return project

    # ── Agents ───────────────────────────────────────────────

    async def load_agents(self) -> SyncResult:
        try:
            records = await self._client.list_agents(settings.agent_page_limit)
        except RemoteUnavailable as e:
            self._store.replace_agents([])
            logger.warning("agent_sync_failed", error=str(e), status_code=e.status_code)
            return SyncResult(ok=False, error=e)

        agents: list[Agent] = []
        skipped = 0
        for raw in records:
            try:
                agents.append(self._to_agent(raw))
            except (KeyError, TypeError, ValueError) as e:
                skipped += 1
                logger.warning("agent_record_skipped", error=str(e))

        self._store.replace_agents(agents)
        return SyncResult(ok=True, count=len(agents), skipped=skipped)

    # ── Health ───────────────────────────────────────────────

    async def check_health(self) -> HealthStatus:
        try:
            data = await self._client.health_check()
        except RemoteUnavailable as e:
            logger.warning("backend_health_check_failed", error=str(e))
            return HealthStatus(ok=False, message=str(e))
        return HealthStatus(ok=True, message=str(data.get("status") or "ok"))

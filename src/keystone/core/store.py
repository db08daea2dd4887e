"""In-memory entity store for the dashboard.

One ``EntityStore`` instance owns every entity for the session. It is passed
explicitly to whatever needs it (sync adapter, pipeline, simulator, metrics);
there is no module-level store.

Contract:
    create_*   stamps id + timestamps, inserts at the head (newest first)
    update_*   merges fields, re-stamps, returns False for unknown ids
    delete_project  removes a project and everything that hangs off it
    replace_*  full overwrite, used by remote sync

Every mutation runs under one re-entrant lock and, once committed,
notifies subscribers with a ``StoreEvent``. Nothing here awaits: the only
suspension points in the system live in the sync adapter and the
requirement pipeline.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, fields, replace
from enum import Enum
from typing import Any, Callable, Generic, Iterable, Iterator, TypeVar

import structlog

from keystone.config import settings
from keystone.core.errors import ValidationFailure
from keystone.core.feed import ActivityFeed, AuditTrail
from keystone.core.models import (
    ActivityDraft,
    ActivityItem,
    ActivityType,
    Agent,
    AgentAction,
    AgentActionDraft,
    AgentActionStatus,
    AuditActionType,
    AuditDraft,
    AuditLog,
    DeploymentPipeline,
    Epic,
    EpicDraft,
    Integration,
    IntegrationDraft,
    PipelineDraft,
    Project,
    ProjectDraft,
    RequirementAnalysis,
    RiskLevel,
    Story,
    StoryDraft,
    Task,
    TaskDraft,
    draft_values,
    utcnow,
)
from keystone.core.stamps import Clock, Stamper

logger = structlog.get_logger()

T = TypeVar("T")

_IMMUTABLE_FIELDS = frozenset({"id", "created_at"})


class EntityKind(str, Enum):
    PROJECT = "project"
    EPIC = "epic"
    STORY = "story"
    TASK = "task"
    AGENT = "agent"
    AGENT_ACTION = "agent_action"
    ACTIVITY = "activity"
    AUDIT_LOG = "audit_log"
    INTEGRATION = "integration"
    PIPELINE = "pipeline"
    REQUIREMENT_ANALYSIS = "requirement_analysis"


class ChangeAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    REPLACED = "replaced"


@dataclass(frozen=True)
class StoreEvent:
    """Emitted after a mutation commits. ``entity_id`` is None for bulk replaces."""

    kind: EntityKind
    action: ChangeAction
    entity_id: str | None = None


Listener = Callable[[StoreEvent], None]


@dataclass(frozen=True)
class DeletionResult:
    project_id: str
    found: bool
    epics_removed: int = 0
    stories_removed: int = 0
    tasks_removed: int = 0


class Collection(Generic[T]):
    """id → record mapping for one entity kind, listed newest first.

    Backed by an insertion-ordered dict (oldest first); swapping a record in
    place keeps its position.
    """

    def __init__(self) -> None:
        self._records: dict[str, T] = {}

    def insert(self, entity_id: str, record: T) -> None:
        self._records.pop(entity_id, None)
        self._records[entity_id] = record

    def get(self, entity_id: str) -> T | None:
        return self._records.get(entity_id)

    def swap(self, entity_id: str, record: T) -> None:
        self._records[entity_id] = record

    def remove(self, entity_id: str) -> T | None:
        return self._records.pop(entity_id, None)

    def replace_all(self, records: Iterable[tuple[str, T]]) -> None:
        """Overwrite with ``records`` given newest first."""
        ordered = list(records)
        self._records = {}
        for entity_id, record in reversed(ordered):
            self._records[entity_id] = record

    def values(self) -> list[T]:
        return list(reversed(self._records.values()))

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._records

    def __len__(self) -> int:
        return len(self._records)


class EntityStore:
    """Single-writer owner of every dashboard entity."""

    def __init__(
        self,
        *,
        clock: Clock = utcnow,
        current_user: str | None = None,
        feed_limit: int | None = None,
    ) -> None:
        self._stamper = Stamper(clock)
        self._lock = threading.RLock()
        self._listeners: list[Listener] = []
        self.current_user = current_user or settings.current_user

        self._projects: Collection[Project] = Collection()
        self._epics: Collection[Epic] = Collection()
        self._stories: Collection[Story] = Collection()
        self._tasks: Collection[Task] = Collection()
        self._agents: Collection[Agent] = Collection()
        self._agent_actions: Collection[AgentAction] = Collection()
        self._integrations: Collection[Integration] = Collection()
        self._pipelines: Collection[DeploymentPipeline] = Collection()
        self._analyses: Collection[RequirementAnalysis] = Collection()

        self.feed = ActivityFeed(self._stamper, feed_limit or settings.activity_feed_limit)
        self.audit = AuditTrail(self._stamper)

    # ── Plumbing ─────────────────────────────────────────────────────

    @contextmanager
    def locked(self) -> Iterator[EntityStore]:
        """Hold the writer lock across a compound operation."""
        with self._lock:
            yield self

    def now(self):
        return self._stamper.now()

    def new_id(self, prefix: str) -> str:
        return self._stamper.new_id(prefix)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener. Returns a callable that unsubscribes."""
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def _emit(self, kind: EntityKind, action: ChangeAction, entity_id: str | None = None) -> None:
        event = StoreEvent(kind, action, entity_id)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(
                    "store_listener_failed",
                    kind=kind.value,
                    action=action.value,
                    error=str(e),
                )

    def _update(
        self,
        kind: EntityKind,
        collection: Collection[Any],
        entity_id: str,
        changes: dict[str, Any],
        stamp_field: str | None = None,
    ) -> bool:
        with self._lock:
            current = collection.get(entity_id)
            if current is None:
                logger.debug("update_target_missing", kind=kind.value, entity_id=entity_id)
                return False

            allowed = {f.name for f in fields(current)} - _IMMUTABLE_FIELDS
            ignored = sorted(set(changes) - allowed)
            if ignored:
                logger.warning(
                    "update_fields_ignored",
                    kind=kind.value,
                    entity_id=entity_id,
                    fields=ignored,
                )
            values = {k: v for k, v in changes.items() if k in allowed}
            if stamp_field:
                values[stamp_field] = self._stamper.now()

            try:
                updated = replace(current, **values)
            except (TypeError, ValueError) as e:
                logger.warning(
                    "update_rejected",
                    kind=kind.value,
                    entity_id=entity_id,
                    error=str(e),
                )
                return False

            collection.swap(entity_id, updated)
            self._emit(kind, ChangeAction.UPDATED, entity_id)
            return True

    # ── Projects ─────────────────────────────────────────────────────

    @property
    def projects(self) -> list[Project]:
        return self._projects.values()

    def get_project(self, project_id: str) -> Project | None:
        return self._projects.get(project_id)

    def create_project(self, draft: ProjectDraft) -> Project:
        with self._lock:
            now = self._stamper.now()
            project = Project(
                id=self._stamper.new_id("project"),
                created_at=now,
                last_activity=now,
                owner=draft.owner or self.current_user,
                **draft_values(draft, "owner"),
            )
            self._projects.insert(project.id, project)
            self._emit(EntityKind.PROJECT, ChangeAction.CREATED, project.id)
        logger.info("project_created", project_id=project.id, name=project.name)
        return project

    def add_project(self, project: Project) -> Project:
        """Insert an already-built record (e.g. returned by the backend) at the head."""
        with self._lock:
            self._stamper.reserve(project.id)
            self._projects.insert(project.id, project)
            self._emit(EntityKind.PROJECT, ChangeAction.CREATED, project.id)
        return project

    def replace_projects(self, projects: Iterable[Project]) -> None:
        with self._lock:
            records = list(projects)
            for p in records:
                self._stamper.reserve(p.id)
            self._projects.replace_all((p.id, p) for p in records)
            self._emit(EntityKind.PROJECT, ChangeAction.REPLACED)
        logger.info("projects_replaced", count=len(records))

    def update_project(self, project_id: str, **changes: Any) -> bool:
        """Merge ``changes`` and re-stamp last_activity. False if unknown."""
        return self._update(
            EntityKind.PROJECT, self._projects, project_id, changes, "last_activity",
        )

    def delete_project(self, project_id: str) -> DeletionResult:
        """Remove a project together with its epics, their stories, and its tasks."""
        with self._lock:
            if self._projects.remove(project_id) is None:
                return DeletionResult(project_id=project_id, found=False)

            epic_ids = {e.id for e in self._epics.values() if e.project_id == project_id}
            story_ids = {s.id for s in self._stories.values() if s.epic_id in epic_ids}
            task_ids = {
                t.id for t in self._tasks.values()
                if t.project_id == project_id or t.story_id in story_ids
            }

            removed = [
                (kind, entity_id)
                for kind, collection, ids in (
                    (EntityKind.TASK, self._tasks, task_ids),
                    (EntityKind.STORY, self._stories, story_ids),
                    (EntityKind.EPIC, self._epics, epic_ids),
                )
                for entity_id in ids
                if collection.remove(entity_id) is not None
            ]

            # listeners only run once every collection is consistent
            self._emit(EntityKind.PROJECT, ChangeAction.DELETED, project_id)
            for kind, entity_id in removed:
                self._emit(kind, ChangeAction.DELETED, entity_id)

        result = DeletionResult(
            project_id=project_id,
            found=True,
            epics_removed=len(epic_ids),
            stories_removed=len(story_ids),
            tasks_removed=len(task_ids),
        )
        logger.info(
            "project_deleted",
            project_id=project_id,
            epics=result.epics_removed,
            stories=result.stories_removed,
            tasks=result.tasks_removed,
        )
        return result

    # ── Epics / Stories / Tasks ──────────────────────────────────────

    @property
    def epics(self) -> list[Epic]:
        return self._epics.values()

    @property
    def stories(self) -> list[Story]:
        return self._stories.values()

    @property
    def tasks(self) -> list[Task]:
        return self._tasks.values()

    def get_epic(self, epic_id: str) -> Epic | None:
        return self._epics.get(epic_id)

    def get_story(self, story_id: str) -> Story | None:
        return self._stories.get(story_id)

    def get_task(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def epics_for_project(self, project_id: str) -> list[Epic]:
        return [e for e in self._epics.values() if e.project_id == project_id]

    def stories_for_epic(self, epic_id: str) -> list[Story]:
        return [s for s in self._stories.values() if s.epic_id == epic_id]

    def tasks_for_story(self, story_id: str) -> list[Task]:
        return [t for t in self._tasks.values() if t.story_id == story_id]

    def tasks_for_project(self, project_id: str) -> list[Task]:
        return [t for t in self._tasks.values() if t.project_id == project_id]

    def create_epic(
        self,
        draft: EpicDraft,
        *,
        project_id: str,
        generated_by: str | None = None,
    ) -> Epic:
        """Create one epic. Nested story drafts are NOT created here."""
        with self._lock:
            if project_id not in self._projects:
                raise ValidationFailure("project_id", f"unknown project '{project_id}'")
            epic = Epic(
                id=self._stamper.new_id("epic"),
                project_id=project_id,
                created_at=self._stamper.now(),
                generated_by=generated_by,
                **draft_values(draft, "stories"),
            )
            self._epics.insert(epic.id, epic)
            self._emit(EntityKind.EPIC, ChangeAction.CREATED, epic.id)
        return epic

    def create_story(
        self,
        draft: StoryDraft,
        *,
        epic_id: str,
        generated_by: str | None = None,
    ) -> Story:
        """Create one story. Nested task drafts are NOT created here."""
        with self._lock:
            if epic_id not in self._epics:
                raise ValidationFailure("epic_id", f"unknown epic '{epic_id}'")
            story = Story(
                id=self._stamper.new_id("story"),
                epic_id=epic_id,
                created_at=self._stamper.now(),
                generated_by=generated_by,
                **draft_values(draft, "tasks"),
            )
            self._stories.insert(story.id, story)
            self._emit(EntityKind.STORY, ChangeAction.CREATED, story.id)
        return story

    def create_task(self, draft: TaskDraft, *, announce: bool = True) -> Task:
        """Create a task. With ``announce`` a low-risk activity is posted too."""
        if not draft.project_id:
            raise ValidationFailure("project_id", "a task needs a project")
        with self._lock:
            now = self._stamper.now()
            task = Task(
                id=self._stamper.new_id("task"),
                created_at=now,
                updated_at=now,
                created_by=draft.created_by or self.current_user,
                **draft_values(draft, "created_by"),
            )
            self._tasks.insert(task.id, task)
            self._emit(EntityKind.TASK, ChangeAction.CREATED, task.id)

            if announce:
                assignee = f" and assigned to {task.assigned_to}" if task.assigned_to else ""
                self.add_activity(ActivityDraft(
                    type=ActivityType.AGENT_DECISION,
                    title="New task created",
                    description=f'Task "{task.title}" has been created{assignee}',
                    risk_level=RiskLevel.LOW,
                    agent_id=task.generated_by,
                    project_id=task.project_id,
                ))
        return task

    def update_task(self, task_id: str, **changes: Any) -> bool:
        """Merge ``changes`` and re-stamp updated_at. False if unknown."""
        return self._update(EntityKind.TASK, self._tasks, task_id, changes, "updated_at")

    # ── Agents & agent actions ───────────────────────────────────────

    @property
    def agents(self) -> list[Agent]:
        return self._agents.values()

    def get_agent(self, agent_id: str) -> Agent | None:
        return self._agents.get(agent_id)

    def replace_agents(self, agents: Iterable[Agent]) -> None:
        with self._lock:
            records = list(agents)
            self._agents.replace_all((a.id, a) for a in records)
            self._emit(EntityKind.AGENT, ChangeAction.REPLACED)
        logger.info("agents_replaced", count=len(records))

    @property
    def agent_actions(self) -> list[AgentAction]:
        return self._agent_actions.values()

    def get_agent_action(self, action_id: str) -> AgentAction | None:
        return self._agent_actions.get(action_id)

    def create_agent_action(self, draft: AgentActionDraft) -> AgentAction:
        with self._lock:
            action = AgentAction(
                id=self._stamper.new_id("action"),
                timestamp=self._stamper.now(),
                **draft_values(draft),
            )
            self._agent_actions.insert(action.id, action)
            self._emit(EntityKind.AGENT_ACTION, ChangeAction.CREATED, action.id)
        return action

    def update_agent_action(self, action_id: str, **changes: Any) -> bool:
        return self._update(EntityKind.AGENT_ACTION, self._agent_actions, action_id, changes)

    def review_agent_action(
        self,
        action_id: str,
        *,
        approved: bool,
        reviewer: str | None = None,
        comments: str = "",
    ) -> AgentAction | None:
        """Approve or reject a pending agent action and audit the decision.

        Returns the updated action, or None if the id is unknown.
        """
        status = AgentActionStatus.APPROVED if approved else AgentActionStatus.REJECTED
        with self._lock:
            if not self.update_agent_action(action_id, status=status):
                return None
            action = self._agent_actions.get(action_id)
            verb = "Approved" if approved else "Rejected"
            self.add_audit_log(AuditDraft(
                actor=reviewer or self.current_user,
                action=f"{verb} agent action: {action.action}",
                action_type=AuditActionType.APPROVE if approved else AuditActionType.REJECT,
                details=comments or f"{verb} action proposed by {action.agent_name}",
                risk_level=action.risk_level,
                project_id=action.related_project_id,
                task_id=action.related_task_id,
                communication_trace=(action.communication_id,) if action.communication_id else (),
            ))
        logger.info("agent_action_reviewed", action_id=action_id, status=status.value)
        return action

    # ── Activity & audit ─────────────────────────────────────────────

    @property
    def activities(self) -> list[ActivityItem]:
        return self.feed.items()

    @property
    def audit_logs(self) -> list[AuditLog]:
        return self.audit.entries()

    @property
    def unread_activity_count(self) -> int:
        return self.feed.unread_count

    def add_activity(self, draft: ActivityDraft) -> ActivityItem:
        with self._lock:
            item = self.feed.add(draft)
            self._emit(EntityKind.ACTIVITY, ChangeAction.CREATED, item.id)
        return item

    def add_audit_log(self, draft: AuditDraft) -> AuditLog:
        with self._lock:
            entry = self.audit.append(draft)
            self._emit(EntityKind.AUDIT_LOG, ChangeAction.CREATED, entry.id)
        return entry

    def mark_activity_read(self, activity_id: str) -> bool:
        with self._lock:
            found = self.feed.mark_read(activity_id)
            if found:
                self._emit(EntityKind.ACTIVITY, ChangeAction.UPDATED, activity_id)
        return found

    def mark_all_activities_read(self) -> int:
        with self._lock:
            changed = self.feed.mark_all_read()
            if changed:
                self._emit(EntityKind.ACTIVITY, ChangeAction.UPDATED)
        return changed

    # ── Integrations & deployment pipelines ──────────────────────────

    @property
    def integrations(self) -> list[Integration]:
        return self._integrations.values()

    @property
    def pipelines(self) -> list[DeploymentPipeline]:
        return self._pipelines.values()

    def get_integration(self, integration_id: str) -> Integration | None:
        return self._integrations.get(integration_id)

    def get_pipeline(self, pipeline_id: str) -> DeploymentPipeline | None:
        return self._pipelines.get(pipeline_id)

    def create_integration(self, draft: IntegrationDraft) -> Integration:
        with self._lock:
            integration = Integration(
                id=self._stamper.new_id("integration"),
                last_sync=self._stamper.now(),
                **draft_values(draft),
            )
            self._integrations.insert(integration.id, integration)
            self._emit(EntityKind.INTEGRATION, ChangeAction.CREATED, integration.id)
        return integration

    def update_integration(self, integration_id: str, **changes: Any) -> bool:
        return self._update(
            EntityKind.INTEGRATION, self._integrations, integration_id, changes, "last_sync",
        )

    def create_pipeline(self, draft: PipelineDraft) -> DeploymentPipeline:
        with self._lock:
            pipeline = DeploymentPipeline(
                id=self._stamper.new_id("pipeline"),
                created_at=self._stamper.now(),
                **draft_values(draft),
            )
            self._pipelines.insert(pipeline.id, pipeline)
            self._emit(EntityKind.PIPELINE, ChangeAction.CREATED, pipeline.id)
        return pipeline

    def update_pipeline(self, pipeline_id: str, **changes: Any) -> bool:
        return self._update(EntityKind.PIPELINE, self._pipelines, pipeline_id, changes)

    # ── Requirement analysis history ─────────────────────────────────

    @property
    def requirement_analyses(self) -> list[RequirementAnalysis]:
        return self._analyses.values()

    def get_requirement_analysis(self, analysis_id: str) -> RequirementAnalysis | None:
        return self._analyses.get(analysis_id)

    def record_analysis(self, analysis: RequirementAnalysis) -> bool:
        """Append a decided analysis to history. History is append-only."""
        with self._lock:
            if analysis.id in self._analyses:
                logger.warning("analysis_already_recorded", analysis_id=analysis.id)
                return False
            self._analyses.insert(analysis.id, analysis)
            self._emit(EntityKind.REQUIREMENT_ANALYSIS, ChangeAction.CREATED, analysis.id)
        return True

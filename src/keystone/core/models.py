"""Keystone domain models: the work-breakdown entity graph.

Design principles:
- Records are frozen dataclasses. The store swaps in a new instance on
  update, so a record someone already holds never changes under them.
- Drafts are the same shapes minus system-assigned id/timestamps.
- Numeric ranges (progress, confidence, success rate, hours) are clamped
  on construction rather than rejected.
- Foreign keys are plain id strings; containment is never used.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import date, datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any


# ═══════════════════════════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════════════════════════

class ProjectStatus(str, Enum):
    """Project lifecycle states (internal vocabulary)."""
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"


class WorkStatus(str, Enum):
    """Epic / Story states: project states plus review."""
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    REVIEW = "review"


class TaskStatus(str, Enum):
    """Task lifecycle states (backend vocabulary, underscores)."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class TaskType(str, Enum):
    DEVELOPMENT = "development"
    TESTING = "testing"
    DOCUMENTATION = "documentation"
    DESIGN = "design"
    REVIEW = "review"
    DEPLOYMENT = "deployment"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AgentStatus(str, Enum):
    ACTIVE = "active"
    IDLE = "idle"
    BUSY = "busy"
    ERROR = "error"
    OFFLINE = "offline"


class IntegrationType(str, Enum):
    GITHUB = "github"
    JIRA = "jira"
    JENKINS = "jenkins"
    GCP = "gcp"
    FIREBASE = "firebase"
    SLACK = "slack"


class IntegrationStatus(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class AgentActionStatus(str, Enum):
    """Human review state of an agent action."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    ESCALATED = "escalated"


class ActivityType(str, Enum):
    AGENT_DECISION = "agent_decision"
    ESCALATION = "escalation"
    FLAGGED_TASK = "flagged_task"
    HUMAN_OVERRIDE = "human_override"


class AuditActionType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    APPROVE = "approve"
    REJECT = "reject"


class AuditOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    PENDING = "pending"


class ActorType(str, Enum):
    AGENT = "agent"
    USER = "user"


class AnalysisState(str, Enum):
    """Requirement analysis workflow: DRAFT → SCORED → ACCEPTED | REJECTED."""
    DRAFT = "draft"
    SCORED = "scored"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class AnalysisFeedback(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    MODIFIED = "modified"


class PipelineStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class StageType(str, Enum):
    BUILD = "build"
    TEST = "test"
    DEPLOY = "deploy"
    VALIDATE = "validate"


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


# ═══════════════════════════════════════════════════════════════════════════════
# HELPERS
# ═══════════════════════════════════════════════════════════════════════════════

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def clamp_confidence(value: float) -> float:
    """Confidence scores live in [0, 1]; anything else is pulled back in."""
    return float(clamp(float(value), 0.0, 1.0))


def _non_negative(value: float | None) -> float | None:
    if value is None:
        return None
    return max(0.0, float(value))


def freeze(value: Any) -> Any:
    """Read-only deep copy: mappings become proxies, lists and tuples become tuples."""
    if isinstance(value, Mapping):
        return MappingProxyType({k: freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(v) for v in value)
    if isinstance(value, (set, frozenset)):
        return frozenset(freeze(v) for v in value)
    return value


def _jsonable(value: Any) -> Any:
    """Convert model values into JSON-serializable primitives."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        return sorted(_jsonable(v) for v in value)
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, Mapping):
        return {k: _jsonable(v) for k, v in value.items()}
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: _jsonable(getattr(value, f.name)) for f in fields(value)}
    return value


class _Serializable:
    """Mixin giving every model a ``to_dict`` for API / UI consumption."""

    def to_dict(self) -> dict[str, Any]:
        return _jsonable(self)


def _set(obj: object, name: str, value: Any) -> None:
    object.__setattr__(obj, name, value)


# ═══════════════════════════════════════════════════════════════════════════════
# PROJECTS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ProjectDraft(_Serializable):
    name: str
    description: str = ""
    status: ProjectStatus = ProjectStatus.PENDING
    progress: int = 0
    risk_flags: int = 0
    owner: str = ""
    repository: str | None = None
    integrations: frozenset[IntegrationType] = frozenset()
    assigned_agents: frozenset[str] = frozenset()
    priority: str | None = None
    budget: float | None = None
    start_date: date | None = None
    end_date: date | None = None


@dataclass(frozen=True)
class Project(_Serializable):
    id: str
    name: str
    description: str
    status: ProjectStatus
    created_at: datetime
    last_activity: datetime
    owner: str
    progress: int = 0
    risk_flags: int = 0
    repository: str | None = None
    integrations: frozenset[IntegrationType] = frozenset()
    assigned_agents: frozenset[str] = frozenset()
    # Carried through from the project service when present
    priority: str | None = None
    budget: float | None = None
    start_date: date | None = None
    end_date: date | None = None

    def __post_init__(self) -> None:
        _set(self, "status", ProjectStatus(self.status))
        _set(self, "progress", int(clamp(int(self.progress), 0, 100)))
        _set(self, "risk_flags", max(0, int(self.risk_flags)))
        _set(self, "integrations", frozenset(IntegrationType(i) for i in self.integrations))
        _set(self, "assigned_agents", frozenset(self.assigned_agents))
        if self.last_activity < self.created_at:
            _set(self, "last_activity", self.created_at)


# ═══════════════════════════════════════════════════════════════════════════════
# WORK BREAKDOWN: EPIC → STORY → TASK
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class TaskDraft(_Serializable):
    title: str
    description: str = ""
    project_id: str | None = None
    priority: Priority = Priority.MEDIUM
    status: TaskStatus = TaskStatus.PENDING
    task_type: TaskType = TaskType.DEVELOPMENT
    requirement_id: str | None = None
    story_id: str | None = None
    assigned_to: str | None = None
    is_agent_assigned: bool = False
    generated_by: str | None = None
    estimated_hours: float | None = None
    actual_hours: float | None = None
    due_date: date | None = None
    created_by: str = ""


@dataclass(frozen=True)
class StoryDraft(_Serializable):
    title: str
    description: str = ""
    priority: Priority = Priority.MEDIUM
    status: WorkStatus = WorkStatus.PENDING
    confidence: float = 0.0
    acceptance_criteria: tuple[str, ...] = ()
    tasks: tuple[TaskDraft, ...] = ()

    def __post_init__(self) -> None:
        _set(self, "confidence", clamp_confidence(self.confidence))
        _set(self, "acceptance_criteria", tuple(self.acceptance_criteria))
        _set(self, "tasks", tuple(self.tasks))


@dataclass(frozen=True)
class EpicDraft(_Serializable):
    title: str
    description: str = ""
    priority: Priority = Priority.MEDIUM
    status: WorkStatus = WorkStatus.PENDING
    confidence: float = 0.0
    stories: tuple[StoryDraft, ...] = ()

    def __post_init__(self) -> None:
        _set(self, "confidence", clamp_confidence(self.confidence))
        _set(self, "stories", tuple(self.stories))


@dataclass(frozen=True)
class Epic(_Serializable):
    id: str
    title: str
    description: str
    project_id: str
    priority: Priority
    status: WorkStatus
    created_at: datetime
    confidence: float = 0.0
    generated_by: str | None = None

    def __post_init__(self) -> None:
        _set(self, "priority", Priority(self.priority))
        _set(self, "status", WorkStatus(self.status))
        _set(self, "confidence", clamp_confidence(self.confidence))


@dataclass(frozen=True)
class Story(_Serializable):
    id: str
    title: str
    description: str
    epic_id: str
    priority: Priority
    status: WorkStatus
    created_at: datetime
    confidence: float = 0.0
    acceptance_criteria: tuple[str, ...] = ()
    generated_by: str | None = None

    def __post_init__(self) -> None:
        _set(self, "priority", Priority(self.priority))
        _set(self, "status", WorkStatus(self.status))
        _set(self, "confidence", clamp_confidence(self.confidence))
        _set(self, "acceptance_criteria", tuple(self.acceptance_criteria))


@dataclass(frozen=True)
class Task(_Serializable):
    id: str
    title: str
    description: str
    project_id: str
    priority: Priority
    status: TaskStatus
    task_type: TaskType
    created_at: datetime
    updated_at: datetime
    created_by: str
    requirement_id: str | None = None
    story_id: str | None = None
    assigned_to: str | None = None
    is_agent_assigned: bool = False
    generated_by: str | None = None
    estimated_hours: float | None = None
    actual_hours: float | None = None
    due_date: date | None = None

    def __post_init__(self) -> None:
        _set(self, "priority", Priority(self.priority))
        _set(self, "status", TaskStatus(self.status))
        _set(self, "task_type", TaskType(self.task_type))
        _set(self, "estimated_hours", _non_negative(self.estimated_hours))
        _set(self, "actual_hours", _non_negative(self.actual_hours))
        if self.updated_at < self.created_at:
            _set(self, "updated_at", self.created_at)


# ═══════════════════════════════════════════════════════════════════════════════
# REQUIREMENT ANALYSIS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RequirementAnalysis(_Serializable):
    """One pass of the requirement-analysis workflow.

    Frozen: every state transition produces a new instance, and once
    ``feedback`` is set the record is final.
    """

    id: str
    original_text: str
    project_id: str
    agent_id: str
    timestamp: datetime
    state: AnalysisState = AnalysisState.DRAFT
    parsed_intent: str = ""
    extracted_entities: Mapping[str, Any] = field(default_factory=dict)
    suggested_epics: tuple[EpicDraft, ...] = ()
    confidence: float = 0.0
    feedback: AnalysisFeedback | None = None

    def __post_init__(self) -> None:
        _set(self, "state", AnalysisState(self.state))
        _set(self, "confidence", clamp_confidence(self.confidence))
        _set(self, "suggested_epics", tuple(self.suggested_epics))
        _set(self, "extracted_entities", freeze(self.extracted_entities))
        if self.feedback is not None:
            _set(self, "feedback", AnalysisFeedback(self.feedback))

    @property
    def is_terminal(self) -> bool:
        return self.state in (AnalysisState.ACCEPTED, AnalysisState.REJECTED)


# ═══════════════════════════════════════════════════════════════════════════════
# AGENTS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Agent(_Serializable):
    id: str
    name: str
    type: str
    status: AgentStatus = AgentStatus.ACTIVE
    capabilities: tuple[str, ...] = ()
    success_rate: float = 0.0
    total_tasks: int = 0
    configuration: Mapping[str, Any] = field(default_factory=dict)
    integrations: frozenset[IntegrationType] = frozenset()
    description: str = ""
    current_task: str | None = None
    last_activity: datetime | None = None

    def __post_init__(self) -> None:
        _set(self, "status", AgentStatus(self.status))
        _set(self, "capabilities", tuple(self.capabilities))
        _set(self, "success_rate", float(clamp(float(self.success_rate), 0.0, 100.0)))
        _set(self, "total_tasks", max(0, int(self.total_tasks)))
        _set(self, "configuration", freeze(self.configuration))
        _set(self, "integrations", frozenset(IntegrationType(i) for i in self.integrations))


@dataclass(frozen=True)
class AgentActionDraft(_Serializable):
    agent_name: str
    action: str
    risk_level: RiskLevel = RiskLevel.LOW
    status: AgentActionStatus = AgentActionStatus.PENDING
    description: str = ""
    impact_description: str = ""
    data_touched: str = ""
    related_task_id: str | None = None
    related_project_id: str | None = None
    communication_id: str | None = None


@dataclass(frozen=True)
class AgentAction(_Serializable):
    id: str
    agent_name: str
    action: str
    timestamp: datetime
    risk_level: RiskLevel = RiskLevel.LOW
    status: AgentActionStatus = AgentActionStatus.PENDING
    description: str = ""
    impact_description: str = ""
    data_touched: str = ""
    related_task_id: str | None = None
    related_project_id: str | None = None
    communication_id: str | None = None

    def __post_init__(self) -> None:
        _set(self, "risk_level", RiskLevel(self.risk_level))
        _set(self, "status", AgentActionStatus(self.status))


# ═══════════════════════════════════════════════════════════════════════════════
# ACTIVITY & AUDIT
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ActivityDraft(_Serializable):
    type: ActivityType
    title: str
    description: str = ""
    risk_level: RiskLevel = RiskLevel.LOW
    is_read: bool = False
    agent_id: str | None = None
    project_id: str | None = None


@dataclass(frozen=True)
class ActivityItem(_Serializable):
    id: str
    type: ActivityType
    title: str
    description: str
    timestamp: datetime
    risk_level: RiskLevel = RiskLevel.LOW
    is_read: bool = False
    agent_id: str | None = None
    project_id: str | None = None

    def __post_init__(self) -> None:
        _set(self, "type", ActivityType(self.type))
        _set(self, "risk_level", RiskLevel(self.risk_level))


@dataclass(frozen=True)
class AuditDraft(_Serializable):
    actor: str
    action: str
    action_type: AuditActionType
    outcome: AuditOutcome = AuditOutcome.SUCCESS
    details: str = ""
    risk_level: RiskLevel = RiskLevel.LOW
    actor_type: ActorType = ActorType.USER
    project_id: str | None = None
    task_id: str | None = None
    communication_trace: tuple[str, ...] = ()


@dataclass(frozen=True)
class AuditLog(_Serializable):
    id: str
    actor: str
    action: str
    action_type: AuditActionType
    outcome: AuditOutcome
    timestamp: datetime
    details: str = ""
    risk_level: RiskLevel = RiskLevel.LOW
    actor_type: ActorType = ActorType.USER
    project_id: str | None = None
    task_id: str | None = None
    communication_trace: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        _set(self, "action_type", AuditActionType(self.action_type))
        _set(self, "outcome", AuditOutcome(self.outcome))
        _set(self, "risk_level", RiskLevel(self.risk_level))
        _set(self, "actor_type", ActorType(self.actor_type))
        _set(self, "communication_trace", tuple(self.communication_trace))


# ═══════════════════════════════════════════════════════════════════════════════
# INTEGRATIONS & DEPLOYMENT PIPELINES
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class IntegrationDraft(_Serializable):
    type: IntegrationType
    name: str
    status: IntegrationStatus = IntegrationStatus.DISCONNECTED
    configuration: Mapping[str, Any] = field(default_factory=dict)
    project_id: str | None = None


@dataclass(frozen=True)
class Integration(_Serializable):
    id: str
    type: IntegrationType
    name: str
    status: IntegrationStatus
    last_sync: datetime
    configuration: Mapping[str, Any] = field(default_factory=dict)
    project_id: str | None = None

    def __post_init__(self) -> None:
        _set(self, "type", IntegrationType(self.type))
        _set(self, "status", IntegrationStatus(self.status))
        _set(self, "configuration", freeze(self.configuration))


@dataclass(frozen=True)
class DeploymentStage(_Serializable):
    name: str
    type: StageType
    status: StageStatus = StageStatus.PENDING
    logs: tuple[str, ...] = ()
    duration: float | None = None

    def __post_init__(self) -> None:
        _set(self, "type", StageType(self.type))
        _set(self, "status", StageStatus(self.status))
        _set(self, "logs", tuple(self.logs))
        _set(self, "duration", _non_negative(self.duration))


@dataclass(frozen=True)
class PipelineDraft(_Serializable):
    project_id: str
    name: str
    stages: tuple[DeploymentStage, ...] = ()
    status: PipelineStatus = PipelineStatus.IDLE
    agent_id: str | None = None


@dataclass(frozen=True)
class DeploymentPipeline(_Serializable):
    id: str
    project_id: str
    name: str
    status: PipelineStatus
    created_at: datetime
    stages: tuple[DeploymentStage, ...] = ()
    last_run: datetime | None = None
    agent_id: str | None = None

    def __post_init__(self) -> None:
        _set(self, "status", PipelineStatus(self.status))
        _set(self, "stages", tuple(self.stages))


def draft_values(draft: Any, *exclude: str) -> dict[str, Any]:
    """Field values of a draft as keyword arguments for its record type."""
    return {f.name: getattr(draft, f.name) for f in fields(draft) if f.name not in exclude}

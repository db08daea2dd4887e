"""Keystone core: entity store, activity feed, and dashboard metrics."""

from keystone.core.errors import (
    AnalysisNotFound,
    KeystoneError,
    RemoteUnavailable,
    ValidationFailure,
)
from keystone.core.feed import ActivityFeed, AuditTrail
from keystone.core.metrics import DashboardStats, MetricsEngine, compute_dashboard_stats
from keystone.core.store import (
    ChangeAction,
    DeletionResult,
    EntityKind,
    EntityStore,
    StoreEvent,
)

__all__ = [
    "ActivityFeed",
    "AnalysisNotFound",
    "AuditTrail",
    "ChangeAction",
    "DashboardStats",
    "DeletionResult",
    "EntityKind",
    "EntityStore",
    "KeystoneError",
    "MetricsEngine",
    "RemoteUnavailable",
    "StoreEvent",
    "ValidationFailure",
    "compute_dashboard_stats",
]

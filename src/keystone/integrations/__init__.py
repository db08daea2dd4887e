"""Integration layer: backend HTTP client and store synchronization."""

from keystone.integrations.api_client import (
    KeystoneApiClient,
    close_api_client,
    get_api_client,
)
from keystone.integrations.sync import (
    HealthStatus,
    RemoteSyncAdapter,
    SyncResult,
    map_remote_status,
)

__all__ = [
    "HealthStatus",
    "KeystoneApiClient",
    "RemoteSyncAdapter",
    "SyncResult",
    "close_api_client",
    "get_api_client",
    "map_remote_status",
]

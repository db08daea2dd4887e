"""Centralized configuration via Pydantic Settings.

All values loaded from environment variables prefixed with KEYSTONE_.
The API token can also be loaded from keys.json.
"""

from __future__ import annotations

import json
from pathlib import Path

import structlog
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = structlog.get_logger()


def _load_keys_json() -> dict:
    """Load credentials from keys.json if available."""
    keys_path = Path(__file__).parent.parent.parent / "keys.json"
    if keys_path.exists():
        try:
            with open(keys_path) as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("keys_json_load_failed", error=str(e))
    return {}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="KEYSTONE_", env_file=".env", extra="ignore")

    # Backend API (project / agent / health services)
    api_base_url: str = "http://localhost:8000"
    api_prefix: str = "/api/v1"
    api_token: str = ""
    api_timeout_s: float = 30.0
    health_timeout_s: float = 5.0
    api_retry_attempts: int = 3

    # ── Remote sync ───────────────────────────────────────────
    project_page_limit: int = 50
    agent_page_limit: int = 50
    default_project_priority: str = "medium"
    default_project_budget: float = 10_000
    default_project_window_days: int = 90
    default_agent_success_rate: float = 95.0

    # Identity is resolved upstream; the dashboard acts as this user.
    current_user: str = "pm@keystone.local"

    # ── Activity feed ─────────────────────────────────────────
    activity_feed_limit: int = 50

    # ── Background activity simulator ─────────────────────────
    simulator_enabled: bool = True
    simulator_interval_s: float = 30.0
    simulator_emit_probability: float = 0.3
    simulator_confidence_min: int = 80
    simulator_confidence_max: int = 99

    # ── Requirement analysis ──────────────────────────────────
    analysis_delay_s: float = 2.0
    analysis_agent_id: str = "agent-1"
    analysis_cache_limit: int = 100

    # ── Circuit breaker for the backend API ───────────────────
    api_breaker_failure_threshold: int = 5
    api_breaker_cooldown_s: float = 60.0

    # Application
    log_level: str = "INFO"
    env: str = "development"

    def model_post_init(self, __context: object) -> None:
        """Post-initialization: load from keys.json if env vars not set."""
        if not self.api_token:
            token = _load_keys_json().get("keystone_api", {}).get("token")
            if token:
                self.api_token = token

        self.api_base_url = self.api_base_url.rstrip("/")
        if self.simulator_confidence_min > self.simulator_confidence_max:
            self.simulator_confidence_min, self.simulator_confidence_max = (
                self.simulator_confidence_max,
                self.simulator_confidence_min,
            )


settings = Settings()  # type: ignore[call-arg]

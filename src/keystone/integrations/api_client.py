"""Keystone backend HTTP client.

Thin async wrapper over the project / agent / health endpoints:

    GET  {prefix}/projects/?limit=N   → {"projects": [...]}
    POST {prefix}/projects/           → created project record
    GET  {prefix}/agents?limit=N      → {"items": [...]}
    GET  /health                      → 2xx when reachable

Returns raw JSON dicts; mapping into domain records lives in
``keystone.integrations.sync``. Every failure surfaces as
``RemoteUnavailable``.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from keystone.config import settings
from keystone.core.errors import RemoteUnavailable
from keystone.infra.circuit_breaker import CircuitBreaker, CircuitOpenError, api_breaker

logger = structlog.get_logger()

_RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, CircuitOpenError) or not isinstance(exc, RemoteUnavailable):
        return False
    if exc.status_code in _RETRYABLE_STATUS_CODES:
        return True
    return isinstance(exc.__cause__, httpx.TimeoutException | httpx.ConnectError)


class KeystoneApiClient:
    """Async client for the Keystone project / agent service."""

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        *,
        prefix: str | None = None,
        timeout_s: float | None = None,
        retry_attempts: int | None = None,
        backoff_max_s: float = 4.0,
        breaker: CircuitBreaker | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        base_url = (base_url or settings.api_base_url).rstrip("/")
        token = settings.api_token if token is None else token

        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout_s or settings.api_timeout_s, connect=10.0),
            transport=transport,
        )
        self._base_url = base_url
        self._prefix = (settings.api_prefix if prefix is None else prefix).rstrip("/")
        self._attempts = max(1, retry_attempts or settings.api_retry_attempts)
        self._backoff_max_s = backoff_max_s
        self.breaker = breaker or api_breaker()
        logger.info(
            "keystone_api_client_initialized",
            base_url=base_url,
            authenticated=bool(token),
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        service: str,
        **kwargs: Any,
    ) -> Any:
        """Send one request with retries and circuit breaking; return parsed JSON."""

        @retry(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self._attempts),
            wait=wait_exponential(
                multiplier=min(1.0, self._backoff_max_s),
                min=0,
                max=self._backoff_max_s,
            ),
            reraise=True,
        )
        async def _do_request() -> Any:
            async with self.breaker:
                try:
                    response = await self._client.request(method, path, **kwargs)
                    response.raise_for_status()
                except httpx.HTTPStatusError as e:
                    status = e.response.status_code
                    logger.error(
                        "keystone_api_http_error",
                        service=service,
                        path=path,
                        status=status,
                        body=e.response.text[:500],
                    )
                    raise RemoteUnavailable(service, f"HTTP {status}", status_code=status) from e
                except httpx.TimeoutException as e:
                    logger.error("keystone_api_timeout", service=service, path=path, error=str(e))
                    raise RemoteUnavailable(service, f"timeout calling {path}") from e
                except httpx.HTTPError as e:
                    logger.error("keystone_api_unreachable", service=service, path=path, error=str(e))
                    raise RemoteUnavailable(service, str(e) or type(e).__name__) from e

                try:
                    return response.json()
                except ValueError as e:
                    raise RemoteUnavailable(service, "response was not valid JSON") from e

        return await _do_request()

    # ── Projects ─────────────────────────────────────────────

    async def list_projects(self, limit: int | None = None) -> list[dict[str, Any]]:
        data = await self._request(
            "GET",
            f"{self._prefix}/projects/",
            service="projects",
            params={"limit": limit or settings.project_page_limit},
        )
        projects = data.get("projects") if isinstance(data, dict) else None
        if not isinstance(projects, list):
            raise RemoteUnavailable("projects", "malformed project page")
        return projects

    async def create_project(self, payload: dict[str, Any]) -> dict[str, Any]:
        data = await self._request(
            "POST",
            f"{self._prefix}/projects/",
            service="projects",
            json=payload,
        )
        if not isinstance(data, dict):
            raise RemoteUnavailable("projects", "malformed create response")
        return data

    # ── Agents ───────────────────────────────────────────────

    async def list_agents(self, limit: int | None = None) -> list[dict[str, Any]]:
        data = await self._request(
            "GET",
            f"{self._prefix}/agents",
            service="agents",
            params={"limit": limit or settings.agent_page_limit},
        )
        items = data.get("items") if isinstance(data, dict) else None
        if not isinstance(items, list):
            raise RemoteUnavailable("agents", "malformed agent page")
        return items

    # ── Health ───────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        """Single unretried probe of /health. Raises RemoteUnavailable when down."""
        try:
            response = await self._client.get("/health", timeout=settings.health_timeout_s)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise RemoteUnavailable("health", f"HTTP {status}", status_code=status) from e
        except httpx.HTTPError as e:
            raise RemoteUnavailable("health", str(e) or type(e).__name__) from e

        try:
            data = response.json()
        except ValueError:
            data = {}
        return data if isinstance(data, dict) else {}


_client: KeystoneApiClient | None = None


def get_api_client() -> KeystoneApiClient:
    global _client
    if _client is None:
        _client = KeystoneApiClient()
    return _client


async def close_api_client() -> None:
    global _client
    if _client is not None:
        await _client.close()
        _client = None

"""Out-of-process backend over HTTP.

The agent process exposes a small JSON API at ``config.metadata["endpoint"]``:

    POST /init           AgentConfig (camelCase)    initialize
    POST /run            RunInput                   one turn, returns RunResult
    GET  /health                                    HealthCheckResult
    POST /stop                                      graceful shutdown
    POST /kill                                      forceful shutdown
    PUT  /model-config   ModelConfig                hot-swap the model

Optional ``metadata["auth_token"]`` is sent as a bearer token and
``metadata["timeout_ms"]`` overrides the per-request timeout.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import ValidationError as PydanticValidationError

from agentos.errors import BackendError
from agentos.models import AgentConfig, ModelConfig, RuntimeStatus
from agentos.runners.base import HealthCheckResult, RunInput, RunResult, WorkloadRunner

logger = logging.getLogger(__name__)

USER_AGENT = "AgentOS-Runtime/1.0"


class HttpRunner(WorkloadRunner):
    """Proxies the runner contract to an agent's HTTP endpoint."""

    def __init__(
        self,
        framework: str = "custom",
        client: httpx.AsyncClient | None = None,
        default_timeout_ms: int = 30_000,
    ):
        super().__init__()
        self.framework = framework
        self.default_timeout_ms = default_timeout_ms
        self._client = client
        self._owns_client = client is None
        self._endpoint: str | None = None
        self._headers: dict[str, str] = {}
        self._timeout: float = default_timeout_ms / 1000

    @property
    def endpoint(self) -> str | None:
        return self._endpoint

    async def init(self, config: AgentConfig) -> None:
        endpoint = config.metadata.get("endpoint")
        if not isinstance(endpoint, str) or not endpoint:
            raise BackendError(
                f"Agent {config.id} has no HTTP endpoint (set metadata.endpoint)"
            )
        self._endpoint = endpoint.rstrip("/")
        self._timeout = float(config.metadata.get("timeout_ms", self.default_timeout_ms)) / 1000
        self._headers = {"User-Agent": USER_AGENT}
        token = config.metadata.get("auth_token")
        if token:
            self._headers["Authorization"] = f"Bearer {token}"
        if self._client is None:
            self._client = httpx.AsyncClient()

        try:
            await self._request(
                "POST", "/init", json=config.model_dump(mode="json", by_alias=True)
            )
        except BackendError:
            await self._close_client()
            raise
        self.config = config
        logger.info("HTTP runner initialized agent %s at %s", config.id, self._endpoint)

    async def run(self, input: RunInput) -> RunResult:
        self._require_init()
        resp = await self._request(
            "POST", "/run", json=input.model_dump(mode="json", by_alias=True)
        )
        try:
            return RunResult.model_validate(resp.json())
        except (ValueError, PydanticValidationError) as exc:
            raise BackendError(f"Invalid /run response from {self._endpoint}: {exc}") from exc

    async def health_check(self) -> HealthCheckResult:
        if self.config is None:
            return HealthCheckResult(healthy=False, status=RuntimeStatus.STOPPED)
        try:
            resp = await self._request("GET", "/health")
            return HealthCheckResult.model_validate(resp.json())
        except (BackendError, ValueError, PydanticValidationError) as exc:
            return HealthCheckResult(healthy=False, status=RuntimeStatus.ERROR, error=str(exc))

    async def stop(self) -> None:
        await self._shutdown("/stop")

    async def kill(self) -> None:
        await self._shutdown("/kill")

    async def update_model_config(self, model_config: ModelConfig) -> bool:
        config = self._require_init()
        try:
            await self._request(
                "PUT", "/model-config", json=model_config.model_dump(mode="json", by_alias=True)
            )
        except BackendError as exc:
            logger.warning("Model hot-swap failed for agent %s: %s", config.id, exc)
            return False
        self.config = config.model_copy(update={"llm": model_config})
        return True

    async def _shutdown(self, path: str) -> None:
        if self.config is None:
            return
        try:
            await self._request("POST", path)
        finally:
            self.config = None
            await self._close_client()

    async def _close_client(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Call the agent endpoint.  Transport errors and HTTP >= 400 become BackendError."""
        if self._client is None or self._endpoint is None:
            raise BackendError("HTTP runner not initialized, call init() first")
        url = f"{self._endpoint}{path}"
        try:
            resp = await self._client.request(
                method, url, headers=self._headers, timeout=self._timeout, **kwargs
            )
        except httpx.TimeoutException as exc:
            raise BackendError(f"{method} {url} timed out") from exc
        except httpx.HTTPError as exc:
            raise BackendError(f"{method} {url} failed: {exc}") from exc
        if resp.status_code >= 400:
            raise BackendError(f"{method} {url} returned HTTP {resp.status_code}: {resp.text[:200]}")
        return resp

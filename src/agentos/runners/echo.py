"""In-process echo backend for development and tests."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone

from agentos.errors import BackendError
from agentos.models import AgentConfig, ModelConfig, RuntimeStatus
from agentos.runners.base import HealthCheckResult, RunInput, RunResult, TokenUsage, WorkloadRunner

logger = logging.getLogger(__name__)


class EchoRunner(WorkloadRunner):
    """Returns every input message unchanged."""

    def __init__(self, framework: str = "custom"):
        super().__init__()
        self.framework = framework
        self._started: float | None = None
        self._last_activity: datetime | None = None
        self._running = False

    async def init(self, config: AgentConfig) -> None:
        self.config = config
        self._started = time.monotonic()
        self._running = True
        logger.info("Echo runner initialized for agent %s (%s)", config.id, config.name)

    async def run(self, input: RunInput) -> RunResult:
        config = self._require_init()
        if not self._running:
            raise BackendError(f"Agent {config.id} is not running")
        started = time.monotonic()
        self._last_activity = datetime.now(timezone.utc)
        words = len(input.message.split())
        return RunResult(
            output=input.message,
            token_usage=TokenUsage(prompt_tokens=words, completion_tokens=words),
            model=f"{config.llm.provider}/{config.llm.model}",
            duration_ms=(time.monotonic() - started) * 1000,
            metadata={"framework": self.framework, "session_id": input.session_id},
        )

    async def health_check(self) -> HealthCheckResult:
        if not self._running or self._started is None:
            return HealthCheckResult(healthy=False, status=RuntimeStatus.STOPPED)
        return HealthCheckResult(
            healthy=True,
            status=RuntimeStatus.RUNNING,
            uptime=time.monotonic() - self._started,
            last_activity=self._last_activity,
        )

    async def stop(self) -> None:
        self._running = False

    async def update_model_config(self, model_config: ModelConfig) -> bool:
        config = self._require_init()
        self.config = config.model_copy(update={"llm": model_config})
        return True

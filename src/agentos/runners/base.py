"""Workload Runner contract.

Every agent backend implements WorkloadRunner.  The lifecycle manager
drives runners only through this interface and never inspects which
framework is underneath:

    1. init(config)          load the backend, configure the model
    2. run(input)            execute a single turn
    3. health_check()        verify the backend is responsive
    4. stop() / kill()       release resources
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from agentos.errors import BackendError
from agentos.models import AgentConfig, ModelConfig, RuntimeStatus


class HistoryMessage(BaseModel):
    role: Literal["user", "assistant", "system", "tool"]
    content: str


class RunInput(BaseModel):
    """Input for a single agent turn."""

    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId")
    message: str
    history: list[HistoryMessage] = Field(default_factory=list)
    context: dict[str, Any] = Field(default_factory=dict)


class TokenUsage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    prompt_tokens: int = Field(default=0, alias="promptTokens")
    completion_tokens: int = Field(default=0, alias="completionTokens")

    @property
    def total(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class ToolCall(BaseModel):
    name: str
    input: dict[str, Any] = Field(default_factory=dict)
    output: Any = None


class RunResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    output: str
    token_usage: TokenUsage = Field(default_factory=TokenUsage, alias="tokenUsage")
    tool_calls: list[ToolCall] = Field(default_factory=list, alias="toolCalls")
    model: str = ""
    duration_ms: float = Field(default=0.0, alias="durationMs")
    metadata: dict[str, Any] = Field(default_factory=dict)


class HealthCheckResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    healthy: bool
    status: RuntimeStatus
    uptime: float | None = None  # seconds
    last_activity: datetime | None = Field(default=None, alias="lastActivity")
    error: str | None = None


class WorkloadRunner(ABC):
    """Framework-agnostic agent backend."""

    framework: str = "custom"

    def __init__(self) -> None:
        self.config: AgentConfig | None = None

    @property
    def initialized(self) -> bool:
        return self.config is not None

    def _require_init(self) -> AgentConfig:
        if self.config is None:
            raise BackendError(f"{type(self).__name__} not initialized, call init() first")
        return self.config

    @abstractmethod
    async def init(self, config: AgentConfig) -> None:
        """Initialize the backend for one agent.  Called once per runner instance."""

    @abstractmethod
    async def run(self, input: RunInput) -> RunResult:
        """Execute one turn.  Raises BackendError if called before init()."""

    @abstractmethod
    async def health_check(self) -> HealthCheckResult: ...

    @abstractmethod
    async def stop(self) -> None:
        """Graceful shutdown."""

    async def kill(self) -> None:
        """Forceful shutdown.  Backends without a faster path just stop()."""
        await self.stop()

    @abstractmethod
    async def update_model_config(self, model_config: ModelConfig) -> bool:
        """Hot-swap the model without a restart.  Returns True on success."""

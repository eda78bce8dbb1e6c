"""Core data models for AgentOS."""

from __future__ import annotations

import enum
import json
import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from agentos.errors import BusDecodeError, ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def parse_timestamp(value: Any) -> datetime:
    """Accept an ISO-8601 date-time string with a UTC offset, or an aware datetime.

    Epoch numbers, date-only strings and naive values are rejected.
    """
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            raise ValueError(f"timestamp must be an ISO-8601 date-time, got {value!r}") from None
    elif not isinstance(value, datetime):
        raise ValueError(f"timestamp must be an ISO-8601 string, got {type(value).__name__}")
    if value.tzinfo is None:
        raise ValueError("timestamp must include a UTC offset")
    return value


def check_uuid(value: str, field: str = "agentId") -> str:
    """Require the canonical hyphenated 8-4-4-4-12 form, in any case."""
    try:
        canonical = str(uuid.UUID(value))
    except ValueError:
        canonical = None
    if canonical != value.lower():
        raise ValueError(f"{field} must be a UUID, got {value!r}")
    return value


# ── Status enums ─────────────────────────────────────────────────────────────


class AgentStatus(str, enum.Enum):
    """Durable agent status, owned by the authority plane."""

    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    ERROR = "error"
    ARCHIVED = "archived"


class SessionStatus(str, enum.Enum):
    ACTIVE = "active"
    IDLE = "idle"
    COMPLETED = "completed"
    EXPIRED = "expired"
    ERROR = "error"


class RuntimeStatus(str, enum.Enum):
    """Execution-plane view of a managed agent."""

    STARTING = "starting"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"
    UNKNOWN = "unknown"


class Framework(str, enum.Enum):
    """Backend selector. Opaque to the lifecycle manager."""

    GOOGLE_ADK = "google_adk"
    LANGGRAPH = "langgraph"
    CREWAI = "crewai"
    AUTOGEN = "autogen"
    OPENAI_SDK = "openai_sdk"
    CUSTOM = "custom"


# ── Agent configuration ──────────────────────────────────────────────────────


class ModelConfig(BaseModel):
    """LLM provider + model selection for an agent."""

    model_config = ConfigDict(populate_by_name=True)

    provider: str
    model: str
    temperature: float | None = None
    max_tokens: int | None = Field(default=None, alias="maxTokens")
    params: dict[str, Any] = Field(default_factory=dict)


class ToolConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=dict, alias="inputSchema")


class AgentConfig(BaseModel):
    """Configuration handed from the authority plane to an execution plane.

    This is the payload of a ``start`` command and the only thing a
    workload runner is initialized from.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str = ""
    framework: str
    llm: ModelConfig = Field(alias="modelConfig")
    system_prompt: str | None = Field(default=None, alias="systemPrompt")
    tools: list[ToolConfig] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class AgentRecord(BaseModel):
    """A durable agent row (authority plane)."""

    id: str = Field(default_factory=new_id)
    name: str
    framework: str
    llm: ModelConfig
    system_prompt: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    status: AgentStatus = AgentStatus.DRAFT
    version: int = 1
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def to_runtime_config(self) -> AgentConfig:
        return AgentConfig(
            id=self.id,
            name=self.name,
            framework=self.framework,
            llm=self.llm,
            system_prompt=self.system_prompt,
            metadata=self.metadata,
        )


class SessionRecord(BaseModel):
    id: str = Field(default_factory=new_id)
    agent_id: str
    status: SessionStatus = SessionStatus.ACTIVE
    turn_count: int = 0
    total_tokens: int = 0
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: datetime | None = None


# ── Bus messages ─────────────────────────────────────────────────────────────


class CommandKind(str, enum.Enum):
    START = "start"
    STOP = "stop"
    PAUSE = "pause"
    RESUME = "resume"
    KILL = "kill"
    UPDATE_MODEL = "update_model"


class AgentCommand(BaseModel):
    """A lifecycle intent on the ``agent:commands`` channel.

    Transient: exists only on the wire.  The wire form uses camelCase
    keys (``agentId``, ``requestId``); Python code uses snake_case.
    """

    model_config = ConfigDict(populate_by_name=True)

    command: CommandKind
    agent_id: str = Field(alias="agentId")
    timestamp: datetime = Field(default_factory=utcnow)
    payload: dict[str, Any] = Field(default_factory=dict)
    request_id: str | None = Field(default=None, alias="requestId")

    @field_validator("agent_id")
    @classmethod
    def _validate_agent_id(cls, v: str) -> str:
        return check_uuid(v)

    @field_validator("timestamp", mode="before")
    @classmethod
    def _validate_timestamp(cls, v: Any) -> datetime:
        return parse_timestamp(v)

    @classmethod
    def build(cls, command: CommandKind | str, agent_id: str, **kwargs: Any) -> AgentCommand:
        """Validate and build a command, raising the AgentOS ValidationError."""
        try:
            return cls.model_validate({"command": command, "agentId": agent_id, **kwargs})
        except PydanticValidationError as exc:
            raise ValidationError.from_pydantic("command", exc) from exc

    def to_wire(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def from_wire(cls, raw: str | bytes) -> AgentCommand:
        """Decode a bus message.  Raises BusDecodeError on anything malformed."""
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise BusDecodeError(f"Unparseable command message: {exc}") from exc
        if not isinstance(data, dict):
            raise BusDecodeError("Command message must be a JSON object")
        try:
            return cls.model_validate(data)
        except PydanticValidationError as exc:
            raise BusDecodeError(f"Invalid command message: {exc.error_count()} error(s)") from exc


class StatusUpdate(BaseModel):
    """Runtime status report on the ``agent:status`` channel (observability only)."""

    model_config = ConfigDict(populate_by_name=True)

    agent_id: str = Field(alias="agentId")
    status: str
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] | None = None

    @field_validator("timestamp", mode="before")
    @classmethod
    def _validate_timestamp(cls, v: Any) -> datetime:
        return parse_timestamp(v)

    def to_wire(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def from_wire(cls, raw: str | bytes) -> StatusUpdate:
        try:
            return cls.model_validate_json(raw)
        except PydanticValidationError as exc:
            raise BusDecodeError(f"Invalid status message: {exc.error_count()} error(s)") from exc


# ── Human-in-the-loop ────────────────────────────────────────────────────────


class TriggerType(str, enum.Enum):
    TOOL_CALL = "tool_call"
    SPENDING = "spending"
    EXTERNAL_API = "external_api"
    DATA_MUTATION = "data_mutation"
    ESCALATION = "escalation"
    CUSTOM = "custom"


class ApprovalStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class HitlPolicy(BaseModel):
    """A declarative gating rule.  Evaluated, never mutated, by the engine.

    ``conditions`` is interpreted per ``trigger_type``:
    tool_call → ``tool_names``, external_api → ``url_patterns``,
    spending → ``threshold_usd``, data_mutation → ``tables`` + ``operations``,
    custom → ``match``.
    """

    id: str = Field(default_factory=new_id)
    agent_id: str
    name: str = ""
    trigger_type: TriggerType
    conditions: dict[str, Any] = Field(default_factory=dict)
    auto_approve: bool = False
    timeout_seconds: int | None = Field(default=None, gt=0)
    is_active: bool = True
    priority: int = 0
    created_at: datetime = Field(default_factory=utcnow)


class ActionContext(BaseModel):
    """An in-flight agent action to evaluate against HITL policies."""

    trigger_type: TriggerType
    action_type: str = Field(description="Tool name, API URL, table name, etc.")
    action_summary: str = ""
    action_details: dict[str, Any] = Field(default_factory=dict)
    session_id: str | None = None


class ApprovalRequest(BaseModel):
    id: str = Field(default_factory=new_id)
    agent_id: str
    session_id: str | None = None
    policy_id: str | None = None
    action_type: str
    action_summary: str = ""
    action_details: dict[str, Any] = Field(default_factory=dict)
    status: ApprovalStatus = ApprovalStatus.PENDING
    expires_at: datetime | None = None
    auto_resolve: bool = False
    reviewer_id: str | None = None
    reviewed_at: datetime | None = None
    response_note: str | None = None
    response_data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_pending(self) -> bool:
        return self.status == ApprovalStatus.PENDING


class GateDecision(BaseModel):
    """Outcome of evaluating a gated action: proceed, or blocked on a request."""

    proceed: bool
    approval_request_id: str | None = None
    policy_id: str | None = None

    @classmethod
    def allow(cls) -> GateDecision:
        return cls(proceed=True)

    @classmethod
    def blocked(cls, approval_request_id: str, policy_id: str | None = None) -> GateDecision:
        return cls(proceed=False, approval_request_id=approval_request_id, policy_id=policy_id)


# ── Webhooks ─────────────────────────────────────────────────────────────────


class WebhookEvent(str, enum.Enum):
    AGENT_CREATED = "agent.created"
    AGENT_UPDATED = "agent.updated"
    AGENT_DELETED = "agent.deleted"
    AGENT_KILLED = "agent.killed"
    SESSION_STARTED = "session.started"
    SESSION_ENDED = "session.ended"
    APPROVAL_REQUESTED = "approval.requested"
    APPROVAL_RESOLVED = "approval.resolved"
    ERROR_OCCURRED = "error.occurred"


class DeliveryStatus(str, enum.Enum):
    PENDING = "pending"
    RETRYING = "retrying"
    SUCCESS = "success"
    FAILED = "failed"


class WebhookSubscription(BaseModel):
    id: str = Field(default_factory=new_id)
    agent_id: str
    name: str = ""
    url: str
    secret: str
    events: set[WebhookEvent] = Field(default_factory=set)
    is_active: bool = True
    max_retries: int = Field(default=3, ge=0, le=10)
    retry_delay_seconds: float = Field(default=30, ge=0)
    timeout_ms: int = Field(default=10_000, gt=0)
    total_deliveries: int = 0
    failed_deliveries: int = 0
    last_error: str | None = None
    last_delivered_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1


class WebhookDelivery(BaseModel):
    """One attempt-sequence of sending a payload to one subscription."""

    id: str = Field(default_factory=new_id)
    webhook_id: str
    agent_id: str
    event: WebhookEvent
    payload: dict[str, Any] = Field(default_factory=dict)
    status: DeliveryStatus = DeliveryStatus.PENDING
    attempt_number: int = 0
    max_attempts: int
    response_status: int | None = None
    response_body: str | None = None
    response_time_ms: float | None = None
    error_message: str | None = None
    next_retry_at: datetime | None = None
    delivered_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)


class DeliveryResult(BaseModel):
    """Outcome of a single HTTP attempt.  Failures are data, not exceptions."""

    success: bool
    response_status: int | None = None
    response_body: str | None = None
    response_time_ms: float = 0.0
    error: str | None = None

"""Tests for AgentOS data models and the command wire format."""

import json
import uuid
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError as PydanticValidationError

from agentos.errors import BusDecodeError, ValidationError
from agentos.models import (
    AgentCommand,
    AgentConfig,
    AgentRecord,
    ApprovalRequest,
    ApprovalStatus,
    CommandKind,
    GateDecision,
    HitlPolicy,
    ModelConfig,
    StatusUpdate,
    TriggerType,
    WebhookSubscription,
)

AGENT_ID = "6f1c2b9e-3a4d-4e5f-8a9b-0c1d2e3f4a5b"


class TestAgentCommand:
    def test_wire_uses_camel_case(self):
        cmd = AgentCommand.build(CommandKind.PAUSE, AGENT_ID, requestId="req-1")
        wire = json.loads(cmd.to_wire())
        assert wire["command"] == "pause"
        assert wire["agentId"] == AGENT_ID
        assert wire["requestId"] == "req-1"
        assert wire["payload"] == {}
        assert "agent_id" not in wire

    def test_wire_omits_missing_request_id(self):
        wire = json.loads(AgentCommand.build("stop", AGENT_ID).to_wire())
        assert "requestId" not in wire

    def test_from_wire(self):
        raw = json.dumps(
            {
                "command": "start",
                "agentId": AGENT_ID,
                "timestamp": "2025-01-01T12:00:00Z",
                "payload": {"framework": "custom"},
            }
        )
        cmd = AgentCommand.from_wire(raw)
        assert cmd.command == CommandKind.START
        assert cmd.agent_id == AGENT_ID
        assert cmd.payload == {"framework": "custom"}
        assert cmd.timestamp == datetime(2025, 1, 1, 12, tzinfo=timezone.utc)

    def test_from_wire_defaults(self):
        cmd = AgentCommand.from_wire(json.dumps({"command": "kill", "agentId": AGENT_ID}))
        assert cmd.payload == {}
        assert cmd.request_id is None
        assert cmd.timestamp.tzinfo is not None

    def test_offset_timestamp_is_kept(self):
        raw = json.dumps(
            {"command": "stop", "agentId": AGENT_ID, "timestamp": "2025-01-01T14:00:00+02:00"}
        )
        cmd = AgentCommand.from_wire(raw)
        assert cmd.timestamp == datetime(2025, 1, 1, 12, tzinfo=timezone.utc)

    def test_naive_datetime_rejected(self):
        with pytest.raises(ValidationError):
            AgentCommand.build("stop", AGENT_ID, timestamp=datetime(2025, 1, 1))

    def test_aware_datetime_accepted(self):
        when = datetime(2025, 1, 1, tzinfo=timezone.utc)
        assert AgentCommand.build("stop", AGENT_ID, timestamp=when).timestamp == when

    @pytest.mark.parametrize(
        "raw",
        [
            "not json",
            "[1, 2]",
            json.dumps({"command": "explode", "agentId": AGENT_ID}),
            json.dumps({"command": "start", "agentId": "not-a-uuid"}),
            json.dumps({"command": "start"}),
        ],
    )
    def test_from_wire_rejects_malformed(self, raw):
        with pytest.raises(BusDecodeError):
            AgentCommand.from_wire(raw)

    @pytest.mark.parametrize(
        "timestamp",
        [0, 1735732800, 1735732800.5, True, "2025-01-01", "2025-01-01T12:00:00", "yesterday", None],
    )
    def test_from_wire_rejects_non_iso_timestamp(self, timestamp):
        raw = json.dumps({"command": "stop", "agentId": AGENT_ID, "timestamp": timestamp})
        with pytest.raises(BusDecodeError):
            AgentCommand.from_wire(raw)

    @pytest.mark.parametrize(
        "agent_id",
        [
            "{" + AGENT_ID + "}",
            "urn:uuid:" + AGENT_ID,
            AGENT_ID.replace("-", ""),
            " " + AGENT_ID,
        ],
    )
    def test_from_wire_rejects_non_canonical_uuid(self, agent_id):
        raw = json.dumps({"command": "stop", "agentId": agent_id})
        with pytest.raises(BusDecodeError):
            AgentCommand.from_wire(raw)

    def test_build_raises_agentos_validation_error(self):
        with pytest.raises(ValidationError) as exc_info:
            AgentCommand.build("start", "agent-1")
        assert "Invalid command" in str(exc_info.value)
        assert exc_info.value.errors

    def test_build_accepts_uuid_in_any_case(self):
        cmd = AgentCommand.build("resume", str(uuid.uuid4()).upper())
        assert cmd.command == CommandKind.RESUME


class TestStatusUpdate:
    def test_round_trip(self):
        update = StatusUpdate(agent_id="a1", status="running", metadata={"killed": True})
        wire = json.loads(update.to_wire())
        assert wire["agentId"] == "a1"
        decoded = StatusUpdate.from_wire(update.to_wire())
        assert decoded.status == "running"
        assert decoded.metadata == {"killed": True}

    def test_malformed(self):
        with pytest.raises(BusDecodeError):
            StatusUpdate.from_wire('{"status": "running"}')

    def test_epoch_timestamp_rejected(self):
        with pytest.raises(BusDecodeError):
            StatusUpdate.from_wire('{"agentId": "a1", "status": "running", "timestamp": 0}')


class TestAgentConfig:
    def test_camel_case_input(self):
        config = AgentConfig.model_validate(
            {
                "id": AGENT_ID,
                "framework": "langgraph",
                "modelConfig": {"provider": "openai", "model": "gpt-4o", "maxTokens": 512},
                "systemPrompt": "Be brief.",
            }
        )
        assert config.llm.max_tokens == 512
        assert config.system_prompt == "Be brief."

    def test_snake_case_input(self):
        config = AgentConfig(
            id=AGENT_ID,
            framework="custom",
            llm=ModelConfig(provider="anthropic", model="claude"),
        )
        dumped = config.model_dump(by_alias=True)
        assert dumped["modelConfig"]["provider"] == "anthropic"

    def test_record_to_runtime_config(self):
        record = AgentRecord(
            name="support",
            framework="crewai",
            llm=ModelConfig(provider="openai", model="gpt-4o"),
            metadata={"endpoint": "http://agent:9000"},
        )
        config = record.to_runtime_config()
        assert config.id == record.id
        assert config.framework == "crewai"
        assert config.metadata == {"endpoint": "http://agent:9000"}


class TestHitlModels:
    def test_policy_timeout_must_be_positive(self):
        with pytest.raises(PydanticValidationError):
            HitlPolicy(agent_id="a1", trigger_type=TriggerType.ESCALATION, timeout_seconds=0)

    def test_approval_is_pending(self):
        request = ApprovalRequest(agent_id="a1", action_type="delete_user")
        assert request.is_pending
        request.status = ApprovalStatus.REJECTED
        assert not request.is_pending

    def test_gate_decision(self):
        assert GateDecision.allow().proceed is True
        blocked = GateDecision.blocked("req-1", "pol-1")
        assert blocked.proceed is False
        assert blocked.approval_request_id == "req-1"
        assert blocked.policy_id == "pol-1"


class TestWebhookSubscription:
    def test_defaults(self):
        sub = WebhookSubscription(agent_id="a1", url="https://example.com/hook", secret="s")
        assert sub.max_retries == 3
        assert sub.max_attempts == 4
        assert sub.timeout_ms == 10_000

    @pytest.mark.parametrize("max_retries", [-1, 11])
    def test_max_retries_bounds(self, max_retries):
        with pytest.raises(PydanticValidationError):
            WebhookSubscription(
                agent_id="a1", url="https://example.com", secret="s", max_retries=max_retries
            )

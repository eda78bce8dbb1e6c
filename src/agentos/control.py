"""Control plane — the authority side of AgentOS.

Owns the durable agent and session records, validates every status change
against the transition graphs, and turns accepted changes into commands
on the bus and webhook events for subscribers.  Agent rows are written
with compare-and-swap on ``version``; losing that race is reported as a
StateConflictError and nothing is published.
"""

from __future__ import annotations

import logging
import secrets
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError as PydanticValidationError

from agentos.errors import NotFoundError, StateConflictError, ValidationError
from agentos.models import (
    ActionContext,
    AgentCommand,
    AgentRecord,
    AgentStatus,
    ApprovalRequest,
    ApprovalStatus,
    CommandKind,
    Framework,
    GateDecision,
    HitlPolicy,
    ModelConfig,
    SessionRecord,
    SessionStatus,
    WebhookDelivery,
    WebhookEvent,
    WebhookSubscription,
    utcnow,
)
from agentos.transitions import (
    AGENT_TRANSITIONS,
    TERMINAL_SESSION_STATUSES,
    check_agent_transition,
    check_session_transition,
)

if TYPE_CHECKING:
    from agentos.bus import CommandBus
    from agentos.hitl import ApprovalEngine
    from agentos.registry import Registry
    from agentos.webhooks import WebhookDispatcher

logger = logging.getLogger(__name__)

KILLABLE_STATUSES = frozenset({AgentStatus.RUNNING, AgentStatus.PAUSED})

# Fields a partial update may touch.  Identity, ownership, secrets and
# delivery counters are fixed after creation.
POLICY_EDITABLE_FIELDS = frozenset(
    {"name", "trigger_type", "conditions", "auto_approve", "timeout_seconds", "is_active", "priority"}
)
WEBHOOK_EDITABLE_FIELDS = frozenset(
    {"name", "url", "events", "is_active", "max_retries", "retry_delay_seconds", "timeout_ms"}
)


class ControlPlane:
    def __init__(
        self,
        registry: Registry,
        bus: CommandBus,
        approvals: ApprovalEngine,
        dispatcher: WebhookDispatcher | None = None,
    ):
        self.registry = registry
        self.bus = bus
        self.approvals = approvals
        self.dispatcher = dispatcher

    # ── Calling-code contract ────────────────────────────────────────────

    async def issue_command(self, command: AgentCommand | dict[str, Any]) -> int:
        """Publish a lifecycle command.  Returns the number of receivers."""
        return await self.bus.publish(command)

    async def evaluate_gate(self, agent_id: str, ctx: ActionContext) -> GateDecision:
        """Decide whether a gated action may proceed.

        No matching policy means proceed.  A match always creates a pending
        approval request and blocks, even for auto-approving policies; the
        caller decides whether to wait for the outcome.

        Raises:
            NotFoundError: Unknown agent.
            StateConflictError: The agent is archived.
        """
        await self._get_live_agent(agent_id, "gate")
        policy = await self.approvals.find_matching_policy(agent_id, ctx)
        if policy is None:
            return GateDecision.allow()
        request = await self.approvals.create_approval_request(agent_id, ctx, policy)
        return GateDecision.blocked(request.id, policy.id)

    async def notify(self, agent_id: str, event: WebhookEvent, payload: dict[str, Any]) -> int:
        """Hand a domain event to the webhook dispatcher.  Returns deliveries started."""
        if self.dispatcher is None:
            return 0
        try:
            return await self.dispatcher.dispatch_event(agent_id, event, payload)
        except Exception:
            logger.exception("Failed to dispatch %s for agent %s", event.value, agent_id)
            return 0

    # ── Agents ───────────────────────────────────────────────────────────

    async def create_agent(
        self,
        name: str,
        framework: str,
        llm: ModelConfig | dict[str, Any],
        system_prompt: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AgentRecord:
        """Register a new agent in ``draft`` status."""
        try:
            Framework(framework)
        except ValueError:
            known = ", ".join(f.value for f in Framework)
            raise ValidationError(f"Unknown framework: {framework}. Available: {known}") from None
        try:
            record = AgentRecord(
                name=name,
                framework=framework,
                llm=llm,
                system_prompt=system_prompt,
                metadata=metadata or {},
            )
        except PydanticValidationError as exc:
            raise ValidationError.from_pydantic("agent", exc) from exc
        await self.registry.create_agent(record)
        await self.notify(
            record.id,
            WebhookEvent.AGENT_CREATED,
            {"name": record.name, "framework": record.framework, "status": record.status.value},
        )
        return record

    async def get_agent(self, agent_id: str) -> AgentRecord:
        record = await self.registry.get_agent(agent_id)
        if record is None:
            raise NotFoundError("Agent", agent_id)
        return record

    async def list_agents(self, status: AgentStatus | str | None = None) -> list[AgentRecord]:
        target = self._parse_agent_status(status) if status is not None else None
        return await self.registry.list_agents(target)

    async def transition_agent(self, agent_id: str, status: AgentStatus | str) -> AgentRecord:
        """Change an agent's durable status and tell the execution planes.

        Raises:
            NotFoundError: Unknown agent.
            ValidationError: ``status`` is not an agent status.
            StateConflictError: The edge is not in the agent graph, or the
                row changed underneath us.
        """
        target = self._parse_agent_status(status)
        record = await self.get_agent(agent_id)
        event = (
            WebhookEvent.AGENT_DELETED if target == AgentStatus.ARCHIVED else WebhookEvent.AGENT_UPDATED
        )
        return await self._apply_transition(record, target, event)

    async def archive_agent(self, agent_id: str) -> AgentRecord:
        """Soft-delete: move the agent to the terminal ``archived`` status."""
        return await self.transition_agent(agent_id, AgentStatus.ARCHIVED)

    async def kill_agent(self, agent_id: str) -> AgentRecord:
        """Force a running or paused agent down and close its active sessions."""
        record = await self.get_agent(agent_id)
        previous = record.status
        if previous not in KILLABLE_STATUSES:
            raise StateConflictError(
                f"Cannot kill agent in '{previous.value}' state. Must be 'running' or 'paused'.",
                current=previous.value,
                requested=AgentStatus.STOPPED.value,
                allowed=sorted(s.value for s in AGENT_TRANSITIONS[previous]),
            )
        record.status = AgentStatus.STOPPED
        await self._compare_and_swap(record, previous)

        await self._publish(AgentCommand.build(CommandKind.KILL, agent_id))
        completed = await self.registry.complete_active_sessions(agent_id, utcnow())
        logger.warning(
            "Agent %s killed (was %s, %d session(s) completed)", agent_id, previous.value, completed
        )
        await self.notify(
            agent_id,
            WebhookEvent.AGENT_KILLED,
            {
                "previous_status": previous.value,
                "version": record.version,
                "sessions_completed": completed,
            },
        )
        return record

    async def update_model_config(
        self, agent_id: str, llm: ModelConfig | dict[str, Any]
    ) -> AgentRecord:
        """Persist a new model config and hot-swap it on running instances.

        Archived agents are read-only and raise StateConflictError.
        """
        try:
            model_config = ModelConfig.model_validate(llm)
        except PydanticValidationError as exc:
            raise ValidationError.from_pydantic("model config", exc) from exc
        record = await self._get_live_agent(agent_id, "update_model")
        record.llm = model_config
        await self._compare_and_swap(record, record.status)

        await self._publish(
            AgentCommand.build(
                CommandKind.UPDATE_MODEL,
                agent_id,
                payload=model_config.model_dump(mode="json", by_alias=True, exclude_none=True),
            )
        )
        await self.notify(
            agent_id,
            WebhookEvent.AGENT_UPDATED,
            {
                "model_config": model_config.model_dump(mode="json", exclude_none=True),
                "version": record.version,
            },
        )
        return record

    # ── Sessions ─────────────────────────────────────────────────────────

    async def start_session(self, agent_id: str) -> SessionRecord:
        record = await self.get_agent(agent_id)
        if record.status != AgentStatus.RUNNING:
            raise StateConflictError(
                f"Cannot start a session for agent in '{record.status.value}' state. "
                "Must be 'running'.",
                current=record.status.value,
                requested=AgentStatus.RUNNING.value,
            )
        session = await self.registry.create_session(SessionRecord(agent_id=agent_id))
        await self.notify(agent_id, WebhookEvent.SESSION_STARTED, {"session_id": session.id})
        return session

    async def get_session(self, session_id: str) -> SessionRecord:
        session = await self.registry.get_session(session_id)
        if session is None:
            raise NotFoundError("Session", session_id)
        return session

    async def list_sessions(
        self, agent_id: str, status: SessionStatus | str | None = None
    ) -> list[SessionRecord]:
        await self.get_agent(agent_id)
        target = self._parse_session_status(status) if status is not None else None
        return await self.registry.list_sessions(agent_id, target)

    async def transition_session(
        self, session_id: str, status: SessionStatus | str
    ) -> SessionRecord:
        target = self._parse_session_status(status)
        session = await self.get_session(session_id)
        check_session_transition(session.status, target)

        ended = target in TERMINAL_SESSION_STATUSES
        updated = await self.registry.update_session_status(
            session_id, session.status, target, ended_at=utcnow() if ended else None
        )
        if not updated:
            raise StateConflictError(
                f"Session {session_id} changed concurrently",
                current=session.status.value,
                requested=target.value,
            )
        session = await self.get_session(session_id)
        if ended:
            await self.notify(
                session.agent_id,
                WebhookEvent.SESSION_ENDED,
                {
                    "session_id": session.id,
                    "status": session.status.value,
                    "turn_count": session.turn_count,
                    "total_tokens": session.total_tokens,
                },
            )
        return session

    async def record_turn(self, session_id: str, tokens: int = 0) -> SessionRecord:
        """Count one turn (and its tokens) against a live session."""
        if tokens < 0:
            raise ValidationError(f"tokens must be >= 0, got {tokens}")
        await self.get_session(session_id)
        if not await self.registry.record_session_turn(session_id, tokens):
            # Only terminal sessions refuse turns
            current = await self.get_session(session_id)
            raise StateConflictError(
                f"Cannot record a turn on session in '{current.status.value}' state",
                current=current.status.value,
                requested=SessionStatus.ACTIVE.value,
            )
        return await self.get_session(session_id)

    # ── Policies and subscriptions ───────────────────────────────────────

    async def create_policy(self, agent_id: str, **fields: Any) -> HitlPolicy:
        await self._get_live_agent(agent_id, "create_policy")
        try:
            policy = HitlPolicy(agent_id=agent_id, **fields)
        except PydanticValidationError as exc:
            raise ValidationError.from_pydantic("HITL policy", exc) from exc
        return await self.registry.create_policy(policy)

    async def list_policies(
        self, agent_id: str, is_active: bool | None = None
    ) -> list[HitlPolicy]:
        """Policies of an agent in evaluation order."""
        await self.get_agent(agent_id)
        return await self.registry.list_policies(agent_id, is_active=is_active)

    async def get_policy(self, policy_id: str) -> HitlPolicy:
        policy = await self.registry.get_policy(policy_id)
        if policy is None:
            raise NotFoundError("HITL policy", policy_id)
        return policy

    async def update_policy(self, policy_id: str, **changes: Any) -> HitlPolicy:
        """Apply a partial update.  The result is validated as a whole policy."""
        policy = await self.get_policy(policy_id)
        updated = self._merge(policy, changes, POLICY_EDITABLE_FIELDS, "HITL policy")
        await self.registry.update_policy(updated)
        logger.info("Updated HITL policy %s (%s)", policy_id, ", ".join(sorted(changes)))
        return updated

    async def delete_policy(self, policy_id: str) -> None:
        """Remove a policy.  Requests it already created keep their ``policy_id``."""
        await self.get_policy(policy_id)
        await self.registry.delete_policy(policy_id)

    # ── Approval requests ────────────────────────────────────────────────

    async def request_approval(self, agent_id: str, ctx: ActionContext) -> ApprovalRequest:
        """File a request explicitly, whether or not a policy covers the action.

        A matching policy is attached, and its timeout and auto-approve
        settings apply.
        """
        await self._get_live_agent(agent_id, "request_approval")
        policy = await self.approvals.find_matching_policy(agent_id, ctx)
        return await self.approvals.create_approval_request(agent_id, ctx, policy)

    async def get_approval(self, request_id: str) -> ApprovalRequest:
        request = await self.registry.get_approval(request_id)
        if request is None:
            raise NotFoundError("Approval request", request_id)
        return request

    async def list_approvals(
        self, agent_id: str, status: ApprovalStatus | str | None = None
    ) -> list[ApprovalRequest]:
        await self.get_agent(agent_id)
        target = None
        if status is not None:
            try:
                target = ApprovalStatus(status)
            except ValueError:
                raise ValidationError(f"Unknown approval status: {status}") from None
        return await self.registry.list_approvals(agent_id, target)

    async def create_webhook(
        self,
        agent_id: str,
        url: str,
        events: list[WebhookEvent | str],
        secret: str | None = None,
        **fields: Any,
    ) -> WebhookSubscription:
        """Subscribe an endpoint to agent events.  A secret is generated if not given."""
        await self._get_live_agent(agent_id, "create_webhook")
        try:
            subscription = WebhookSubscription(
                agent_id=agent_id,
                url=url,
                events=set(events),
                secret=secret or secrets.token_hex(32),
                **fields,
            )
        except PydanticValidationError as exc:
            raise ValidationError.from_pydantic("webhook", exc) from exc
        if not subscription.events:
            raise ValidationError("A webhook must subscribe to at least one event")
        return await self.registry.create_webhook(subscription)

    async def list_webhooks(
        self, agent_id: str, is_active: bool | None = None
    ) -> list[WebhookSubscription]:
        await self.get_agent(agent_id)
        return await self.registry.list_webhooks(agent_id, is_active=is_active)

    async def get_webhook(self, webhook_id: str) -> WebhookSubscription:
        subscription = await self.registry.get_webhook(webhook_id)
        if subscription is None:
            raise NotFoundError("Webhook", webhook_id)
        return subscription

    async def update_webhook(self, webhook_id: str, **changes: Any) -> WebhookSubscription:
        """Apply a partial update.  The secret and delivery counters cannot change."""
        subscription = await self.get_webhook(webhook_id)
        updated = self._merge(subscription, changes, WEBHOOK_EDITABLE_FIELDS, "webhook")
        if not updated.events:
            raise ValidationError("A webhook must subscribe to at least one event")
        await self.registry.update_webhook(updated)
        logger.info("Updated webhook %s (%s)", webhook_id, ", ".join(sorted(changes)))
        return updated

    async def delete_webhook(self, webhook_id: str) -> None:
        """Remove a subscription and its delivery history."""
        await self.get_webhook(webhook_id)
        await self.registry.delete_webhook(webhook_id)

    async def list_deliveries(self, webhook_id: str) -> list[WebhookDelivery]:
        await self.get_webhook(webhook_id)
        return await self.registry.list_deliveries(webhook_id)

    # ── Internal ─────────────────────────────────────────────────────────

    async def _get_live_agent(self, agent_id: str, operation: str) -> AgentRecord:
        """Fetch an agent that may still be changed.  Archived agents are read-only."""
        record = await self.get_agent(agent_id)
        if record.status == AgentStatus.ARCHIVED:
            raise StateConflictError(
                f"Agent {agent_id} is archived, {operation} is not allowed",
                current=record.status.value,
                requested=operation,
            )
        return record

    @staticmethod
    def _merge(model: Any, changes: dict[str, Any], editable: frozenset[str], what: str) -> Any:
        """Validate ``model`` with ``changes`` applied, as a new instance."""
        rejected = set(changes) - editable
        if rejected:
            raise ValidationError(
                f"Cannot update {what} field(s): {', '.join(sorted(rejected))}. "
                f"Editable: {', '.join(sorted(editable))}"
            )
        try:
            return type(model).model_validate({**model.model_dump(), **changes})
        except PydanticValidationError as exc:
            raise ValidationError.from_pydantic(what, exc) from exc

    @staticmethod
    def _parse_agent_status(status: AgentStatus | str) -> AgentStatus:
        try:
            return AgentStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown agent status: {status}") from None

    @staticmethod
    def _parse_session_status(status: SessionStatus | str) -> SessionStatus:
        try:
            return SessionStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown session status: {status}") from None

    async def _apply_transition(
        self, record: AgentRecord, target: AgentStatus, event: WebhookEvent
    ) -> AgentRecord:
        previous = record.status
        check_agent_transition(previous, target)
        record.status = target
        await self._compare_and_swap(record, previous)
        logger.info(
            "Agent %s: %s -> %s (version %d)", record.id, previous.value, target.value, record.version
        )

        command = self._command_for(record, previous, target)
        if command is not None:
            await self._publish(command)
        await self.notify(
            record.id,
            event,
            {"status": target.value, "previous_status": previous.value, "version": record.version},
        )
        return record

    async def _compare_and_swap(self, record: AgentRecord, previous: AgentStatus) -> None:
        if not await self.registry.update_agent(record, expected_version=record.version):
            current = await self.registry.get_agent(record.id)
            raise StateConflictError(
                f"Agent {record.id} was modified concurrently (expected version {record.version})",
                current=(current.status if current else previous).value,
                requested=record.status.value,
            )

    @staticmethod
    def _command_for(
        record: AgentRecord, previous: AgentStatus, target: AgentStatus
    ) -> AgentCommand | None:
        """Command that makes the execution planes follow a status change."""
        if target == AgentStatus.RUNNING:
            if previous == AgentStatus.PAUSED:
                return AgentCommand.build(CommandKind.RESUME, record.id)
            return AgentCommand.build(
                CommandKind.START,
                record.id,
                payload=record.to_runtime_config().model_dump(
                    mode="json", by_alias=True, exclude_none=True
                ),
            )
        if target == AgentStatus.PAUSED:
            return AgentCommand.build(CommandKind.PAUSE, record.id)
        if target == AgentStatus.STOPPED:
            return AgentCommand.build(CommandKind.STOP, record.id)
        return None

    async def _publish(self, command: AgentCommand) -> None:
        """Publish after a durable write.  The write stands even if the bus is down."""
        try:
            await self.bus.publish(command)
        except Exception:
            logger.exception(
                "Failed to publish %s for agent %s", command.command.value, command.agent_id
            )

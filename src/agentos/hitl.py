"""Human-in-the-loop approval engine.

Matches agent actions against declarative HITL policies, creates approval
requests when a policy fires, resolves them on a reviewer's decision and
expires the ones nobody looked at in time.

An approval request leaves ``pending`` exactly once.  Resolution and
expiry both write with ``WHERE status = 'pending'``, so a reviewer racing
the sweeper (or two sweepers racing each other) can never overwrite a
decision that has already been made.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from agentos.errors import NotFoundError, StateConflictError, ValidationError
from agentos.models import (
    ActionContext,
    ApprovalRequest,
    ApprovalStatus,
    HitlPolicy,
    TriggerType,
    WebhookEvent,
    utcnow,
)

if TYPE_CHECKING:
    from agentos.registry import Registry
    from agentos.webhooks import WebhookDispatcher

logger = logging.getLogger(__name__)

AUTO_APPROVED_NOTE = "Auto-approved after timeout"
EXPIRED_NOTE = "Expired without review"

REVIEWER_DECISIONS = frozenset({ApprovalStatus.APPROVED, ApprovalStatus.REJECTED})


# ── Policy matching ──────────────────────────────────────────────────────────


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _pattern_matches(patterns: Any, value: str) -> bool:
    """Exact match, or prefix match for patterns ending in ``*``."""
    if not isinstance(patterns, list):
        return False
    for pattern in patterns:
        if not isinstance(pattern, str):
            continue
        if pattern.endswith("*"):
            if value.startswith(pattern[:-1]):
                return True
        elif value == pattern:
            return True
    return False


def policy_matches(policy: HitlPolicy, ctx: ActionContext) -> bool:
    """Check whether an action matches a single policy's conditions.

    Matching rules by trigger type:
      - tool_call:     action_type matches an entry in conditions.tool_names
      - external_api:  action_type matches an entry in conditions.url_patterns
      - spending:      action_details.amount_usd >= conditions.threshold_usd
      - data_mutation: action_details.table in conditions.tables and
                       action_details.operation in conditions.operations
      - escalation:    always (the agent asked for a human)
      - custom:        every conditions.match key equals the same key in action_details

    Missing or ill-typed condition fields never match.
    """
    if policy.trigger_type != ctx.trigger_type:
        return False

    cond = policy.conditions
    details = ctx.action_details

    match policy.trigger_type:
        case TriggerType.TOOL_CALL:
            return _pattern_matches(cond.get("tool_names"), ctx.action_type)
        case TriggerType.EXTERNAL_API:
            return _pattern_matches(cond.get("url_patterns"), ctx.action_type)
        case TriggerType.SPENDING:
            threshold = cond.get("threshold_usd")
            amount = details.get("amount_usd")
            if not _is_number(threshold) or not _is_number(amount):
                return False
            return amount >= threshold
        case TriggerType.DATA_MUTATION:
            tables = cond.get("tables")
            operations = cond.get("operations")
            if not isinstance(tables, list) or not isinstance(operations, list):
                return False
            return details.get("table") in tables and details.get("operation") in operations
        case TriggerType.ESCALATION:
            return True
        case TriggerType.CUSTOM:
            expected = cond.get("match")
            if not isinstance(expected, dict):
                return False
            return all(key in details and details[key] == value for key, value in expected.items())
    return False


# ── Approval engine ──────────────────────────────────────────────────────────


class ApprovalEngine:
    """Creates, resolves and expires approval requests."""

    def __init__(
        self,
        registry: Registry,
        dispatcher: WebhookDispatcher | None = None,
        clock: Callable[[], datetime] = utcnow,
        poll_interval: float = 1.0,
    ):
        self.registry = registry
        self.dispatcher = dispatcher
        self.clock = clock
        self.poll_interval = poll_interval

    async def find_matching_policy(self, agent_id: str, ctx: ActionContext) -> HitlPolicy | None:
        """First active policy (highest priority) whose conditions match, or None."""
        for policy in await self.registry.list_active_policies(agent_id):
            if policy_matches(policy, ctx):
                return policy
        return None

    async def create_approval_request(
        self, agent_id: str, ctx: ActionContext, policy: HitlPolicy | None
    ) -> ApprovalRequest:
        """Persist a pending request.

        When the policy has a timeout the request expires after it, and is
        auto-approved at that point if the policy says so.  Without a
        timeout the request waits for a reviewer indefinitely.
        """
        now = self.clock()
        expires_at = None
        auto_resolve = False
        if policy is not None and policy.timeout_seconds:
            expires_at = now + timedelta(seconds=policy.timeout_seconds)
            auto_resolve = policy.auto_approve

        request = ApprovalRequest(
            agent_id=agent_id,
            session_id=ctx.session_id,
            policy_id=policy.id if policy else None,
            action_type=ctx.action_type,
            action_summary=ctx.action_summary,
            action_details=ctx.action_details,
            expires_at=expires_at,
            auto_resolve=auto_resolve,
            created_at=now,
        )
        await self.registry.create_approval(request)
        logger.info(
            "Approval request %s created for agent %s (%s, policy=%s, expires=%s)",
            request.id,
            agent_id,
            ctx.action_type,
            request.policy_id,
            expires_at.isoformat() if expires_at else "never",
        )
        await self._notify(
            agent_id,
            WebhookEvent.APPROVAL_REQUESTED,
            {
                "approval_request_id": request.id,
                "policy_id": request.policy_id,
                "action_type": request.action_type,
                "action_summary": request.action_summary,
                "expires_at": expires_at.isoformat() if expires_at else None,
            },
        )
        return request

    async def resolve_approval(
        self,
        request_id: str,
        reviewer_id: str,
        status: ApprovalStatus | str,
        note: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> ApprovalRequest:
        """Approve or reject a pending request.

        Raises:
            ValidationError: ``status`` is not approved/rejected.
            NotFoundError: Unknown request.
            StateConflictError: The request is no longer pending, including
                when a concurrent resolver or the sweeper wins the race.
        """
        decision = self._parse_decision(status)
        existing = await self.registry.get_approval(request_id)
        if existing is None:
            raise NotFoundError("Approval request", request_id)
        if not existing.is_pending:
            raise self._not_pending(existing, decision)

        updated = await self.registry.transition_approval_if_pending(
            request_id,
            decision,
            reviewed_at=self.clock(),
            reviewer_id=reviewer_id,
            note=note,
            data=data,
        )
        resolved = await self.registry.get_approval(request_id)
        if not updated or resolved is None:
            raise self._not_pending(resolved or existing, decision)

        logger.info("Approval request %s %s by %s", request_id, decision.value, reviewer_id)
        await self._notify_resolved(resolved)
        return resolved

    async def cancel_approval(self, request_id: str, reason: str | None = None) -> ApprovalRequest:
        """Withdraw a pending request (e.g. the agent abandoned the action)."""
        existing = await self.registry.get_approval(request_id)
        if existing is None:
            raise NotFoundError("Approval request", request_id)
        updated = await self.registry.transition_approval_if_pending(
            request_id, ApprovalStatus.CANCELLED, reviewed_at=self.clock(), note=reason
        )
        cancelled = await self.registry.get_approval(request_id)
        if not updated or cancelled is None:
            raise self._not_pending(cancelled or existing, ApprovalStatus.CANCELLED)
        logger.info("Approval request %s cancelled", request_id)
        await self._notify_resolved(cancelled)
        return cancelled

    async def expire_timed_out_requests(self, now: datetime | None = None) -> int:
        """Expire pending requests past their deadline.

        Auto-resolving requests become approved, the rest expired.  Only
        rows this call actually changed are counted, so concurrent sweeps
        never double-count.  A failure on one request is logged and the
        sweep carries on.
        """
        now = now or self.clock()
        candidates = await self.registry.list_expired_pending(now)
        count = 0
        for request in candidates:
            if request.auto_resolve:
                status, note = ApprovalStatus.APPROVED, AUTO_APPROVED_NOTE
            else:
                status, note = ApprovalStatus.EXPIRED, EXPIRED_NOTE
            try:
                updated = await self.registry.transition_approval_if_pending(
                    request.id, status, reviewed_at=now, note=note
                )
            except Exception:
                logger.exception("Failed to expire approval request %s", request.id)
                continue
            if not updated:
                continue
            count += 1
            request.status = status
            request.reviewed_at = now
            request.response_note = note
            await self._notify_resolved(request)

        if count:
            logger.info("Expired %d timed-out approval request(s)", count)
        return count

    async def wait_for_resolution(
        self,
        request_id: str,
        poll_interval: float | None = None,
        timeout: float | None = None,
    ) -> ApprovalRequest:
        """Block until the request leaves pending and return it.

        Raises:
            NotFoundError: Unknown request.
            TimeoutError: Still pending after ``timeout`` seconds.
        """
        interval = poll_interval or self.poll_interval

        async def poll() -> ApprovalRequest:
            while True:
                request = await self.registry.get_approval(request_id)
                if request is None:
                    raise NotFoundError("Approval request", request_id)
                if not request.is_pending:
                    return request
                await asyncio.sleep(interval)

        return await asyncio.wait_for(poll(), timeout)

    # ── Internal ─────────────────────────────────────────────────────────

    @staticmethod
    def _parse_decision(status: ApprovalStatus | str) -> ApprovalStatus:
        try:
            decision = ApprovalStatus(status)
        except ValueError:
            decision = None
        if decision not in REVIEWER_DECISIONS:
            raise ValidationError(
                f"Invalid resolution status: {getattr(status, 'value', status)}. "
                "Must be 'approved' or 'rejected'"
            )
        return decision

    @staticmethod
    def _not_pending(request: ApprovalRequest, requested: ApprovalStatus) -> StateConflictError:
        return StateConflictError(
            f"Cannot resolve request in '{request.status.value}' status. "
            "Only 'pending' requests can be resolved.",
            current=request.status.value,
            requested=requested.value,
        )

    async def _notify_resolved(self, request: ApprovalRequest) -> None:
        await self._notify(
            request.agent_id,
            WebhookEvent.APPROVAL_RESOLVED,
            {
                "approval_request_id": request.id,
                "status": request.status.value,
                "reviewer_id": request.reviewer_id,
                "response_note": request.response_note,
                "action_type": request.action_type,
            },
        )

    async def _notify(self, agent_id: str, event: WebhookEvent, data: dict[str, Any]) -> None:
        if self.dispatcher is None:
            return
        try:
            await self.dispatcher.dispatch_event(agent_id, event, data)
        except Exception:
            logger.exception("Failed to dispatch %s for agent %s", event.value, agent_id)


# ── Expiry sweep ─────────────────────────────────────────────────────────────


class ExpirySweeper:
    """Periodic background task expiring timed-out approval requests."""

    def __init__(self, engine: ApprovalEngine, interval: float = 30):
        self.engine = engine
        self.interval = interval
        self._running = False
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="approval-expiry")
        logger.info("Approval expiry sweep started (interval=%ss)", self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Approval expiry sweep stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval)
                await self.engine.expire_timed_out_requests()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Approval expiry sweep error")

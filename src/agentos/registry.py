"""Durable store — SQLite-backed authority-plane state.

Holds agents, sessions, HITL policies, approval requests, webhook
subscriptions and webhook deliveries.  Every write that can race with
another instance is a conditional UPDATE (``WHERE version = ?`` or
``WHERE status = ?``) and reports whether it actually changed a row.

Timestamps are stored as UTC ISO-8601 strings with microsecond precision
so that lexical comparison in SQL matches chronological order.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite

from agentos.models import (
    AgentRecord,
    AgentStatus,
    ApprovalRequest,
    ApprovalStatus,
    DeliveryStatus,
    HitlPolicy,
    ModelConfig,
    SessionRecord,
    SessionStatus,
    TriggerType,
    WebhookDelivery,
    WebhookEvent,
    WebhookSubscription,
    utcnow,
)

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS agents (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    framework TEXT NOT NULL,
    model_config TEXT NOT NULL,
    system_prompt TEXT,
    metadata TEXT NOT NULL DEFAULT '{}',
    status TEXT NOT NULL DEFAULT 'draft',
    version INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    agent_id TEXT NOT NULL REFERENCES agents(id),
    status TEXT NOT NULL DEFAULT 'active',
    turn_count INTEGER NOT NULL DEFAULT 0,
    total_tokens INTEGER NOT NULL DEFAULT 0,
    started_at TEXT NOT NULL,
    ended_at TEXT
);

CREATE TABLE IF NOT EXISTS hitl_policies (
    id TEXT PRIMARY KEY,
    agent_id TEXT NOT NULL,
    name TEXT NOT NULL DEFAULT '',
    trigger_type TEXT NOT NULL,
    conditions TEXT NOT NULL DEFAULT '{}',
    auto_approve INTEGER NOT NULL DEFAULT 0,
    timeout_seconds INTEGER,
    is_active INTEGER NOT NULL DEFAULT 1,
    priority INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS approval_requests (
    id TEXT PRIMARY KEY,
    agent_id TEXT NOT NULL,
    session_id TEXT,
    policy_id TEXT,
    action_type TEXT NOT NULL,
    action_summary TEXT NOT NULL DEFAULT '',
    action_details TEXT NOT NULL DEFAULT '{}',
    status TEXT NOT NULL DEFAULT 'pending',
    expires_at TEXT,
    auto_resolve INTEGER NOT NULL DEFAULT 0,
    reviewer_id TEXT,
    reviewed_at TEXT,
    response_note TEXT,
    response_data TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS webhooks (
    id TEXT PRIMARY KEY,
    agent_id TEXT NOT NULL,
    name TEXT NOT NULL DEFAULT '',
    url TEXT NOT NULL,
    secret TEXT NOT NULL,
    events TEXT NOT NULL DEFAULT '[]',
    is_active INTEGER NOT NULL DEFAULT 1,
    max_retries INTEGER NOT NULL DEFAULT 3,
    retry_delay_seconds REAL NOT NULL DEFAULT 30,
    timeout_ms INTEGER NOT NULL DEFAULT 10000,
    total_deliveries INTEGER NOT NULL DEFAULT 0,
    failed_deliveries INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    last_delivered_at TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS webhook_deliveries (
    id TEXT PRIMARY KEY,
    webhook_id TEXT NOT NULL REFERENCES webhooks(id) ON DELETE CASCADE,
    agent_id TEXT NOT NULL,
    event TEXT NOT NULL,
    payload TEXT NOT NULL DEFAULT '{}',
    status TEXT NOT NULL DEFAULT 'pending',
    attempt_number INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL,
    response_status INTEGER,
    response_body TEXT,
    response_time_ms REAL,
    error_message TEXT,
    next_retry_at TEXT,
    delivered_at TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_agents_status ON agents(status);
CREATE INDEX IF NOT EXISTS idx_sessions_agent ON sessions(agent_id, status);
CREATE INDEX IF NOT EXISTS idx_policies_agent ON hitl_policies(agent_id, is_active);
CREATE INDEX IF NOT EXISTS idx_approvals_pending ON approval_requests(status, expires_at);
CREATE INDEX IF NOT EXISTS idx_webhooks_agent ON webhooks(agent_id, is_active);
CREATE INDEX IF NOT EXISTS idx_deliveries_webhook ON webhook_deliveries(webhook_id);
"""

# Columns update_delivery() is allowed to touch
_DELIVERY_COLUMNS = frozenset(
    {
        "status",
        "attempt_number",
        "response_status",
        "response_body",
        "response_time_ms",
        "error_message",
        "next_retry_at",
        "delivered_at",
    }
)


def _ts(value: datetime | None) -> str | None:
    """Normalize a datetime to the stored UTC string form."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class Registry:
    """SQLite-backed durable store with async access."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open database and create tables."""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA foreign_keys=ON")
        await self._db.executescript(SCHEMA)
        await self._db.commit()
        logger.info("Registry initialized: %s", self.db_path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Registry not initialized, call initialize() first")
        return self._db

    async def _execute_write(self, sql: str, params: tuple[Any, ...]) -> int:
        """Run one write statement, commit and return the affected row count."""
        cursor = await self.db.execute(sql, params)
        await self.db.commit()
        return cursor.rowcount

    # ── Agents ───────────────────────────────────────────────────────────

    async def create_agent(self, record: AgentRecord) -> AgentRecord:
        """Insert a new agent record."""
        now = utcnow()
        record.created_at = now
        record.updated_at = now
        await self.db.execute(
            """INSERT INTO agents
               (id, name, framework, model_config, system_prompt, metadata,
                status, version, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                record.id,
                record.name,
                record.framework,
                record.llm.model_dump_json(),
                record.system_prompt,
                json.dumps(record.metadata),
                record.status.value,
                record.version,
                _ts(now),
                _ts(now),
            ),
        )
        await self.db.commit()
        logger.info("Created agent: %s (%s, framework=%s)", record.id, record.name, record.framework)
        return record

    async def get_agent(self, agent_id: str) -> AgentRecord | None:
        """Get an agent by ID."""
        cursor = await self.db.execute("SELECT * FROM agents WHERE id = ?", (agent_id,))
        row = await cursor.fetchone()
        return self._row_to_agent(row) if row else None

    async def list_agents(self, status: AgentStatus | None = None) -> list[AgentRecord]:
        if status is None:
            cursor = await self.db.execute("SELECT * FROM agents ORDER BY created_at")
        else:
            cursor = await self.db.execute(
                "SELECT * FROM agents WHERE status = ? ORDER BY created_at", (status.value,)
            )
        rows = await cursor.fetchall()
        return [self._row_to_agent(row) for row in rows]

    async def update_agent(self, record: AgentRecord, expected_version: int) -> bool:
        """Compare-and-swap update of an agent row.

        Writes ``record`` only if the stored version still equals
        ``expected_version``.  On success the version is bumped and
        ``record`` is updated in place; on a lost race nothing changes
        and False is returned.
        """
        now = utcnow()
        new_version = expected_version + 1
        updated = await self._execute_write(
            """UPDATE agents SET
               name=?, framework=?, model_config=?, system_prompt=?, metadata=?,
               status=?, version=?, updated_at=?
               WHERE id=? AND version=?""",
            (
                record.name,
                record.framework,
                record.llm.model_dump_json(),
                record.system_prompt,
                json.dumps(record.metadata),
                record.status.value,
                new_version,
                _ts(now),
                record.id,
                expected_version,
            ),
        )
        if updated != 1:
            return False
        record.version = new_version
        record.updated_at = now
        return True

    # ── Sessions ─────────────────────────────────────────────────────────

    async def create_session(self, session: SessionRecord) -> SessionRecord:
        await self.db.execute(
            """INSERT INTO sessions
               (id, agent_id, status, turn_count, total_tokens, started_at, ended_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                session.id,
                session.agent_id,
                session.status.value,
                session.turn_count,
                session.total_tokens,
                _ts(session.started_at),
                _ts(session.ended_at),
            ),
        )
        await self.db.commit()
        logger.info("Started session %s for agent %s", session.id, session.agent_id)
        return session

    async def get_session(self, session_id: str) -> SessionRecord | None:
        cursor = await self.db.execute("SELECT * FROM sessions WHERE id = ?", (session_id,))
        row = await cursor.fetchone()
        return self._row_to_session(row) if row else None

    async def list_sessions(
        self, agent_id: str, status: SessionStatus | None = None
    ) -> list[SessionRecord]:
        query = "SELECT * FROM sessions WHERE agent_id = ?"
        params: list[Any] = [agent_id]
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        cursor = await self.db.execute(query + " ORDER BY started_at", tuple(params))
        rows = await cursor.fetchall()
        return [self._row_to_session(row) for row in rows]

    async def update_session_status(
        self,
        session_id: str,
        expected: SessionStatus,
        status: SessionStatus,
        ended_at: datetime | None = None,
    ) -> bool:
        """Move a session to ``status`` only if it is still in ``expected``."""
        updated = await self._execute_write(
            "UPDATE sessions SET status = ?, ended_at = COALESCE(?, ended_at) "
            "WHERE id = ? AND status = ?",
            (status.value, _ts(ended_at), session_id, expected.value),
        )
        return updated == 1

    async def complete_active_sessions(self, agent_id: str, ended_at: datetime) -> int:
        """Mark every active session of an agent completed.  Returns rows changed."""
        return await self._execute_write(
            "UPDATE sessions SET status = ?, ended_at = ? WHERE agent_id = ? AND status = ?",
            (
                SessionStatus.COMPLETED.value,
                _ts(ended_at),
                agent_id,
                SessionStatus.ACTIVE.value,
            ),
        )

    async def record_session_turn(self, session_id: str, tokens: int) -> bool:
        """Increment turn and token counters of a non-terminal session."""
        updated = await self._execute_write(
            "UPDATE sessions SET turn_count = turn_count + 1, total_tokens = total_tokens + ? "
            "WHERE id = ? AND status IN (?, ?)",
            (tokens, session_id, SessionStatus.ACTIVE.value, SessionStatus.IDLE.value),
        )
        return updated == 1

    # ── HITL Policies ────────────────────────────────────────────────────

    async def create_policy(self, policy: HitlPolicy) -> HitlPolicy:
        await self.db.execute(
            """INSERT INTO hitl_policies
               (id, agent_id, name, trigger_type, conditions, auto_approve,
                timeout_seconds, is_active, priority, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                policy.id,
                policy.agent_id,
                policy.name,
                policy.trigger_type.value,
                json.dumps(policy.conditions),
                int(policy.auto_approve),
                policy.timeout_seconds,
                int(policy.is_active),
                policy.priority,
                _ts(policy.created_at),
            ),
        )
        await self.db.commit()
        logger.info(
            "Created HITL policy %s (%s) for agent %s",
            policy.id,
            policy.trigger_type.value,
            policy.agent_id,
        )
        return policy

    async def get_policy(self, policy_id: str) -> HitlPolicy | None:
        cursor = await self.db.execute("SELECT * FROM hitl_policies WHERE id = ?", (policy_id,))
        row = await cursor.fetchone()
        return self._row_to_policy(row) if row else None

    async def list_active_policies(self, agent_id: str) -> list[HitlPolicy]:
        """Active policies for an agent, highest priority first.

        Ties are broken by creation time, then id, so evaluation order is
        deterministic.
        """
        cursor = await self.db.execute(
            "SELECT * FROM hitl_policies WHERE agent_id = ? AND is_active = 1 "
            "ORDER BY priority DESC, created_at ASC, id ASC",
            (agent_id,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_policy(row) for row in rows]

    async def list_policies(
        self, agent_id: str, is_active: bool | None = None
    ) -> list[HitlPolicy]:
        """All policies of an agent in evaluation order, optionally filtered on is_active."""
        query = "SELECT * FROM hitl_policies WHERE agent_id = ?"
        params: list[Any] = [agent_id]
        if is_active is not None:
            query += " AND is_active = ?"
            params.append(int(is_active))
        cursor = await self.db.execute(
            query + " ORDER BY priority DESC, created_at ASC, id ASC", tuple(params)
        )
        rows = await cursor.fetchall()
        return [self._row_to_policy(row) for row in rows]

    async def update_policy(self, policy: HitlPolicy) -> bool:
        """Rewrite the mutable columns of a policy row."""
        updated = await self._execute_write(
            """UPDATE hitl_policies SET
               name = ?, trigger_type = ?, conditions = ?, auto_approve = ?,
               timeout_seconds = ?, is_active = ?, priority = ?
               WHERE id = ?""",
            (
                policy.name,
                policy.trigger_type.value,
                json.dumps(policy.conditions),
                int(policy.auto_approve),
                policy.timeout_seconds,
                int(policy.is_active),
                policy.priority,
                policy.id,
            ),
        )
        return updated == 1

    async def delete_policy(self, policy_id: str) -> bool:
        deleted = await self._execute_write(
            "DELETE FROM hitl_policies WHERE id = ?", (policy_id,)
        )
        if deleted:
            logger.info("Deleted HITL policy %s", policy_id)
        return deleted == 1

    # ── Approval Requests ────────────────────────────────────────────────

    async def create_approval(self, request: ApprovalRequest) -> ApprovalRequest:
        await self.db.execute(
            """INSERT INTO approval_requests
               (id, agent_id, session_id, policy_id, action_type, action_summary,
                action_details, status, expires_at, auto_resolve, reviewer_id,
                reviewed_at, response_note, response_data, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                request.id,
                request.agent_id,
                request.session_id,
                request.policy_id,
                request.action_type,
                request.action_summary,
                json.dumps(request.action_details),
                request.status.value,
                _ts(request.expires_at),
                int(request.auto_resolve),
                request.reviewer_id,
                _ts(request.reviewed_at),
                request.response_note,
                json.dumps(request.response_data),
                _ts(request.created_at),
            ),
        )
        await self.db.commit()
        return request

    async def get_approval(self, request_id: str) -> ApprovalRequest | None:
        cursor = await self.db.execute(
            "SELECT * FROM approval_requests WHERE id = ?", (request_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_approval(row) if row else None

    async def list_approvals(
        self, agent_id: str, status: ApprovalStatus | None = None
    ) -> list[ApprovalRequest]:
        query = "SELECT * FROM approval_requests WHERE agent_id = ?"
        params: list[Any] = [agent_id]
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        cursor = await self.db.execute(query + " ORDER BY created_at", tuple(params))
        rows = await cursor.fetchall()
        return [self._row_to_approval(row) for row in rows]

    async def list_expired_pending(self, now: datetime) -> list[ApprovalRequest]:
        """Pending requests whose ``expires_at`` is at or before ``now``."""
        cursor = await self.db.execute(
            "SELECT * FROM approval_requests "
            "WHERE status = 'pending' AND expires_at IS NOT NULL AND expires_at <= ? "
            "ORDER BY expires_at",
            (_ts(now),),
        )
        rows = await cursor.fetchall()
        return [self._row_to_approval(row) for row in rows]

    async def transition_approval_if_pending(
        self,
        request_id: str,
        status: ApprovalStatus,
        *,
        reviewed_at: datetime,
        reviewer_id: str | None = None,
        note: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> bool:
        """Move a request out of ``pending``.

        Guarded by ``status = 'pending'``: if another resolver or the expiry
        sweep got there first, nothing is written and False is returned.
        """
        updated = await self._execute_write(
            """UPDATE approval_requests SET
               status = ?, reviewer_id = ?, reviewed_at = ?, response_note = ?,
               response_data = ?
               WHERE id = ? AND status = 'pending'""",
            (
                status.value,
                reviewer_id,
                _ts(reviewed_at),
                note,
                json.dumps(data or {}),
                request_id,
            ),
        )
        return updated == 1

    # ── Webhook Subscriptions ────────────────────────────────────────────

    async def create_webhook(self, subscription: WebhookSubscription) -> WebhookSubscription:
        await self.db.execute(
            """INSERT INTO webhooks
               (id, agent_id, name, url, secret, events, is_active, max_retries,
                retry_delay_seconds, timeout_ms, total_deliveries, failed_deliveries,
                last_error, last_delivered_at, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                subscription.id,
                subscription.agent_id,
                subscription.name,
                subscription.url,
                subscription.secret,
                json.dumps(sorted(e.value for e in subscription.events)),
                int(subscription.is_active),
                subscription.max_retries,
                subscription.retry_delay_seconds,
                subscription.timeout_ms,
                subscription.total_deliveries,
                subscription.failed_deliveries,
                subscription.last_error,
                _ts(subscription.last_delivered_at),
                _ts(subscription.created_at),
            ),
        )
        await self.db.commit()
        logger.info("Created webhook %s -> %s", subscription.id, subscription.url)
        return subscription

    async def get_webhook(self, webhook_id: str) -> WebhookSubscription | None:
        cursor = await self.db.execute("SELECT * FROM webhooks WHERE id = ?", (webhook_id,))
        row = await cursor.fetchone()
        return self._row_to_webhook(row) if row else None

    async def list_webhooks(
        self, agent_id: str, is_active: bool | None = None
    ) -> list[WebhookSubscription]:
        query = "SELECT * FROM webhooks WHERE agent_id = ?"
        params: list[Any] = [agent_id]
        if is_active is not None:
            query += " AND is_active = ?"
            params.append(int(is_active))
        cursor = await self.db.execute(query + " ORDER BY created_at", tuple(params))
        rows = await cursor.fetchall()
        return [self._row_to_webhook(row) for row in rows]

    async def list_active_webhooks_for_event(
        self, agent_id: str, event: WebhookEvent
    ) -> list[WebhookSubscription]:
        cursor = await self.db.execute(
            "SELECT * FROM webhooks WHERE agent_id = ? AND is_active = 1 ORDER BY created_at",
            (agent_id,),
        )
        rows = await cursor.fetchall()
        subscriptions = [self._row_to_webhook(row) for row in rows]
        return [s for s in subscriptions if event in s.events]

    async def update_webhook(self, subscription: WebhookSubscription) -> bool:
        """Rewrite the configuration columns of a subscription.

        Delivery counters are left alone; only the dispatcher moves them.
        """
        updated = await self._execute_write(
            """UPDATE webhooks SET
               name = ?, url = ?, events = ?, is_active = ?, max_retries = ?,
               retry_delay_seconds = ?, timeout_ms = ?
               WHERE id = ?""",
            (
                subscription.name,
                subscription.url,
                json.dumps(sorted(e.value for e in subscription.events)),
                int(subscription.is_active),
                subscription.max_retries,
                subscription.retry_delay_seconds,
                subscription.timeout_ms,
                subscription.id,
            ),
        )
        return updated == 1

    async def delete_webhook(self, webhook_id: str) -> bool:
        deleted = await self._execute_write("DELETE FROM webhooks WHERE id = ?", (webhook_id,))
        if deleted:
            logger.info("Deleted webhook %s", webhook_id)
        return deleted == 1

    async def record_webhook_success(self, webhook_id: str, delivered_at: datetime) -> None:
        await self._execute_write(
            "UPDATE webhooks SET total_deliveries = total_deliveries + 1, "
            "last_error = NULL, last_delivered_at = ? WHERE id = ?",
            (_ts(delivered_at), webhook_id),
        )

    async def record_webhook_failure(self, webhook_id: str, error: str | None) -> None:
        await self._execute_write(
            "UPDATE webhooks SET total_deliveries = total_deliveries + 1, "
            "failed_deliveries = failed_deliveries + 1, last_error = ? WHERE id = ?",
            (error, webhook_id),
        )

    # ── Webhook Deliveries ───────────────────────────────────────────────

    async def create_delivery(self, delivery: WebhookDelivery) -> WebhookDelivery:
        await self.db.execute(
            """INSERT INTO webhook_deliveries
               (id, webhook_id, agent_id, event, payload, status, attempt_number,
                max_attempts, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                delivery.id,
                delivery.webhook_id,
                delivery.agent_id,
                delivery.event.value,
                json.dumps(delivery.payload),
                delivery.status.value,
                delivery.attempt_number,
                delivery.max_attempts,
                _ts(delivery.created_at),
            ),
        )
        await self.db.commit()
        return delivery

    async def get_delivery(self, delivery_id: str) -> WebhookDelivery | None:
        cursor = await self.db.execute(
            "SELECT * FROM webhook_deliveries WHERE id = ?", (delivery_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_delivery(row) if row else None

    async def list_deliveries(self, webhook_id: str) -> list[WebhookDelivery]:
        cursor = await self.db.execute(
            "SELECT * FROM webhook_deliveries WHERE webhook_id = ? ORDER BY created_at",
            (webhook_id,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_delivery(row) for row in rows]

    async def update_delivery(self, delivery_id: str, **fields: Any) -> None:
        """Update a delivery row in place."""
        unknown = set(fields) - _DELIVERY_COLUMNS
        if unknown:
            raise ValueError(f"Unknown delivery columns: {', '.join(sorted(unknown))}")
        if not fields:
            return
        values: list[Any] = []
        for value in fields.values():
            if isinstance(value, datetime):
                value = _ts(value)
            elif isinstance(value, DeliveryStatus):
                value = value.value
            values.append(value)
        assignments = ", ".join(f"{column} = ?" for column in fields)
        await self._execute_write(
            f"UPDATE webhook_deliveries SET {assignments} WHERE id = ?",
            (*values, delivery_id),
        )

    # ── Helpers ──────────────────────────────────────────────────────────

    @staticmethod
    def _row_to_agent(row: aiosqlite.Row) -> AgentRecord:
        return AgentRecord(
            id=row["id"],
            name=row["name"],
            framework=row["framework"],
            llm=ModelConfig.model_validate_json(row["model_config"]),
            system_prompt=row["system_prompt"],
            metadata=json.loads(row["metadata"]),
            status=AgentStatus(row["status"]),
            version=row["version"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    @staticmethod
    def _row_to_session(row: aiosqlite.Row) -> SessionRecord:
        return SessionRecord(
            id=row["id"],
            agent_id=row["agent_id"],
            status=SessionStatus(row["status"]),
            turn_count=row["turn_count"],
            total_tokens=row["total_tokens"],
            started_at=datetime.fromisoformat(row["started_at"]),
            ended_at=_dt(row["ended_at"]),
        )

    @staticmethod
    def _row_to_policy(row: aiosqlite.Row) -> HitlPolicy:
        return HitlPolicy(
            id=row["id"],
            agent_id=row["agent_id"],
            name=row["name"],
            trigger_type=TriggerType(row["trigger_type"]),
            conditions=json.loads(row["conditions"]),
            auto_approve=bool(row["auto_approve"]),
            timeout_seconds=row["timeout_seconds"],
            is_active=bool(row["is_active"]),
            priority=row["priority"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    @staticmethod
    def _row_to_approval(row: aiosqlite.Row) -> ApprovalRequest:
        return ApprovalRequest(
            id=row["id"],
            agent_id=row["agent_id"],
            session_id=row["session_id"],
            policy_id=row["policy_id"],
            action_type=row["action_type"],
            action_summary=row["action_summary"],
            action_details=json.loads(row["action_details"]),
            status=ApprovalStatus(row["status"]),
            expires_at=_dt(row["expires_at"]),
            auto_resolve=bool(row["auto_resolve"]),
            reviewer_id=row["reviewer_id"],
            reviewed_at=_dt(row["reviewed_at"]),
            response_note=row["response_note"],
            response_data=json.loads(row["response_data"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    @staticmethod
    def _row_to_webhook(row: aiosqlite.Row) -> WebhookSubscription:
        return WebhookSubscription(
            id=row["id"],
            agent_id=row["agent_id"],
            name=row["name"],
            url=row["url"],
            secret=row["secret"],
            events={WebhookEvent(e) for e in json.loads(row["events"])},
            is_active=bool(row["is_active"]),
            max_retries=row["max_retries"],
            retry_delay_seconds=row["retry_delay_seconds"],
            timeout_ms=row["timeout_ms"],
            total_deliveries=row["total_deliveries"],
            failed_deliveries=row["failed_deliveries"],
            last_error=row["last_error"],
            last_delivered_at=_dt(row["last_delivered_at"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    @staticmethod
    def _row_to_delivery(row: aiosqlite.Row) -> WebhookDelivery:
        return WebhookDelivery(
            id=row["id"],
            webhook_id=row["webhook_id"],
            agent_id=row["agent_id"],
            event=WebhookEvent(row["event"]),
            payload=json.loads(row["payload"]),
            status=DeliveryStatus(row["status"]),
            attempt_number=row["attempt_number"],
            max_attempts=row["max_attempts"],
            response_status=row["response_status"],
            response_body=row["response_body"],
            response_time_ms=row["response_time_ms"],
            error_message=row["error_message"],
            next_retry_at=_dt(row["next_retry_at"]),
            delivered_at=_dt(row["delivered_at"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

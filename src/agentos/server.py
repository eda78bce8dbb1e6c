"""AgentOS Server — FastAPI application that ties all components together.

Startup sequence:
1. Load agentos.yaml config
2. Initialize the SQLite store (control role)
3. Connect the command bus (local or Redis)
4. Wire the webhook dispatcher, approval engine and control plane (control role)
5. Start the approval expiry sweep (control role)
6. Build the runner registry and lifecycle manager, subscribe to commands (runtime role)

Shutdown:
1. Unsubscribe from the bus
2. Stop every managed agent
3. Stop the expiry sweep
4. Drain in-flight bus handlers and webhook deliveries
5. Close HTTP clients and the store
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from agentos.bus import Broker, CommandBus, LocalBroker, RedisBroker, Subscription
from agentos.config import AgentOSConfig, load_config
from agentos.control import ControlPlane
from agentos.errors import (
    AgentOSError,
    BackendError,
    BusDecodeError,
    DeliveryError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from agentos.hitl import ApprovalEngine, ExpirySweeper
from agentos.lifecycle import LifecycleManager
from agentos.models import ActionContext, AgentCommand, ModelConfig, WebhookSubscription
from agentos.registry import Registry
from agentos.runners import build_runner_registry
from agentos.webhooks import WebhookDispatcher

logger = logging.getLogger(__name__)

VERSION = "0.1.0"

ERROR_STATUS_CODES: dict[type[AgentOSError], int] = {
    ValidationError: 422,
    NotFoundError: 404,
    StateConflictError: 409,
    BackendError: 502,
    DeliveryError: 502,
    BusDecodeError: 400,
}


class AgentOSServer:
    """Encapsulates all server components and lifecycle."""

    def __init__(
        self,
        config: AgentOSConfig,
        force_echo: bool = False,
        broker: Broker | None = None,
    ):
        self.config = config
        self.force_echo = force_echo

        # Components (initialized in start())
        self.registry: Registry | None = None
        self.broker: Broker | None = broker
        self.bus: CommandBus | None = None
        self.dispatcher: WebhookDispatcher | None = None
        self.approvals: ApprovalEngine | None = None
        self.control: ControlPlane | None = None
        self.sweeper: ExpirySweeper | None = None
        self.lifecycle: LifecycleManager | None = None
        self.http_client: httpx.AsyncClient | None = None
        self._subscription: Subscription | None = None

    async def start(self) -> None:
        """Initialize all components and start background loops."""
        cfg = self.config
        logger.info("AgentOS server starting (role=%s)", cfg.service.role)

        # 1. Store
        if cfg.runs_control_plane:
            self.registry = Registry(cfg.store.path)
            await self.registry.initialize()

        # 2. Bus
        if self.broker is None:
            if cfg.bus.backend == "redis":
                self.broker = RedisBroker(cfg.bus.redis_url)
            else:
                if cfg.service.role != "all":
                    logger.warning(
                        "Local bus with role=%s: commands never leave this process",
                        cfg.service.role,
                    )
                self.broker = LocalBroker()
        self.bus = CommandBus(
            self.broker,
            commands_channel=cfg.bus.commands_channel,
            status_channel=cfg.bus.status_channel,
            max_inflight=cfg.bus.max_inflight,
        )

        # 3. Authority plane
        if cfg.runs_control_plane:
            self.dispatcher = WebhookDispatcher(
                self.registry,
                max_concurrent=cfg.webhooks.max_concurrent_deliveries,
                user_agent=cfg.webhooks.user_agent,
                max_backoff_seconds=cfg.webhooks.max_backoff_seconds,
                body_limit=cfg.webhooks.response_body_limit,
            )
            self.approvals = ApprovalEngine(
                self.registry,
                dispatcher=self.dispatcher,
                poll_interval=cfg.hitl.poll_interval_seconds,
            )
            self.control = ControlPlane(self.registry, self.bus, self.approvals, self.dispatcher)
            self.sweeper = ExpirySweeper(self.approvals, interval=cfg.hitl.sweep_interval_seconds)
            await self.sweeper.start()

        # 4. Execution plane
        if cfg.runs_runtime_plane:
            self.http_client = httpx.AsyncClient()
            runners = build_runner_registry(
                cfg.runtime, http_client=self.http_client, force_echo=self.force_echo
            )
            self.lifecycle = LifecycleManager(runners, bus=self.bus)
            self._subscription = await self.bus.subscribe(self.lifecycle.handle_command)

        logger.info("AgentOS server started")

    async def stop(self) -> None:
        """Graceful shutdown — stop all components."""
        logger.info("AgentOS server shutting down")

        if self._subscription:
            await self._subscription.unsubscribe()
        if self.lifecycle:
            await self.lifecycle.shutdown()
        if self.sweeper:
            await self.sweeper.stop()
        if self.bus:
            await self.bus.close()
        if self.dispatcher:
            await self.dispatcher.close()
        if self.http_client:
            await self.http_client.aclose()
        if self.registry:
            await self.registry.close()

        logger.info("AgentOS server stopped")


# ── Request bodies ───────────────────────────────────────────────────────────


class CreateAgentBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    framework: str
    llm: ModelConfig = Field(alias="modelConfig")
    system_prompt: str | None = Field(default=None, alias="systemPrompt")
    metadata: dict[str, Any] = Field(default_factory=dict)


class TransitionBody(BaseModel):
    status: str


class TurnBody(BaseModel):
    tokens: int = 0


class ResolveApprovalBody(BaseModel):
    reviewer_id: str
    status: str
    note: str | None = None
    data: dict[str, Any] | None = None


class CancelApprovalBody(BaseModel):
    reason: str | None = None


class CommandBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    command: str
    payload: dict[str, Any] = Field(default_factory=dict)
    request_id: str | None = Field(default=None, alias="requestId")


# ── FastAPI App ──────────────────────────────────────────────────────────────


def _error_response(exc: AgentOSError) -> JSONResponse:
    status_code = 500
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS_CODES:
            status_code = ERROR_STATUS_CODES[cls]
            break
    body: dict[str, Any] = {"error": type(exc).__name__, "detail": str(exc)}
    if isinstance(exc, StateConflictError):
        body.update(current=exc.current, requested=exc.requested, allowed=exc.allowed)
    return JSONResponse(status_code=status_code, content=body)


def _webhook_view(subscription: WebhookSubscription, **extra: Any) -> dict[str, Any]:
    """Subscription as returned after creation: the secret is masked."""
    data = subscription.model_dump(mode="json")
    data["secret"] = f"{subscription.secret[:8]}..."
    data.update(extra)
    return data


def create_app(
    config_path: str | Path | None = None,
    config: AgentOSConfig | None = None,
    force_echo: bool = False,
) -> FastAPI:
    """Create the FastAPI application."""
    server = AgentOSServer(config or load_config(config_path), force_echo=force_echo)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """FastAPI lifespan — startup and shutdown."""
        await server.start()
        yield
        await server.stop()

    app = FastAPI(
        title="AgentOS",
        version=VERSION,
        description="Lifecycle, approval and webhook core for autonomous-agent workloads",
        lifespan=lifespan,
    )
    app.state.server = server

    @app.exception_handler(AgentOSError)
    async def agentos_error_handler(request: Request, exc: AgentOSError):
        return _error_response(exc)

    def require_control() -> ControlPlane:
        if server.control is None:
            raise HTTPException(status_code=503, detail="Control plane not running on this node")
        return server.control

    def require_lifecycle() -> LifecycleManager:
        if server.lifecycle is None:
            raise HTTPException(status_code=503, detail="Runtime plane not running on this node")
        return server.lifecycle

    @app.get("/health")
    async def health():
        """Health check endpoint with operational metrics."""
        return {
            "status": "ok",
            "service": server.config.service.name,
            "role": server.config.service.role,
            "bus": server.config.bus.backend,
            "managed_agents": len(server.lifecycle) if server.lifecycle else 0,
            "inflight_deliveries": server.dispatcher.inflight if server.dispatcher else 0,
            "inflight_commands": server.bus.inflight if server.bus else 0,
        }

    # ── Runtime (execution plane) ────────────────────────────────────────

    @app.get("/runtime/agents")
    async def list_runtime_agents():
        """Agents managed by this execution plane."""
        return {"agents": require_lifecycle().list_agents()}

    @app.get("/runtime/agents/{agent_id}/status")
    async def runtime_agent_status(agent_id: str):
        lifecycle = require_lifecycle()
        status = await lifecycle.get_status(agent_id)
        return {"agent_id": agent_id, "status": status.value}

    # ── Authority plane ──────────────────────────────────────────────────

    @app.post("/agents", status_code=201)
    async def create_agent(body: CreateAgentBody):
        record = await require_control().create_agent(
            body.name,
            body.framework,
            body.llm,
            system_prompt=body.system_prompt,
            metadata=body.metadata,
        )
        return record.model_dump(mode="json")

    @app.get("/agents")
    async def list_agents(status: str | None = None):
        records = await require_control().list_agents(status)
        return {"agents": [r.model_dump(mode="json") for r in records]}

    @app.get("/agents/{agent_id}")
    async def get_agent(agent_id: str):
        record = await require_control().get_agent(agent_id)
        return record.model_dump(mode="json")

    @app.post("/agents/{agent_id}/status")
    async def transition_agent(agent_id: str, body: TransitionBody):
        record = await require_control().transition_agent(agent_id, body.status)
        return record.model_dump(mode="json")

    @app.post("/agents/{agent_id}/kill")
    async def kill_agent(agent_id: str):
        record = await require_control().kill_agent(agent_id)
        return record.model_dump(mode="json")

    @app.get("/agents/{agent_id}/model-config")
    async def get_model_config(agent_id: str):
        record = await require_control().get_agent(agent_id)
        return {
            "agent_id": record.id,
            "modelConfig": record.llm.model_dump(mode="json", by_alias=True, exclude_none=True),
            "version": record.version,
        }

    @app.put("/agents/{agent_id}/model-config")
    async def update_model_config(agent_id: str, body: ModelConfig):
        record = await require_control().update_model_config(agent_id, body)
        return record.model_dump(mode="json")

    # ── Sessions ─────────────────────────────────────────────────────────

    @app.get("/agents/{agent_id}/sessions")
    async def list_sessions(agent_id: str, status: str | None = None):
        sessions = await require_control().list_sessions(agent_id, status)
        return {"sessions": [s.model_dump(mode="json") for s in sessions]}

    @app.post("/agents/{agent_id}/sessions", status_code=201)
    async def start_session(agent_id: str):
        session = await require_control().start_session(agent_id)
        return session.model_dump(mode="json")

    @app.get("/sessions/{session_id}")
    async def get_session(session_id: str):
        session = await require_control().get_session(session_id)
        return session.model_dump(mode="json")

    @app.post("/sessions/{session_id}/status")
    async def transition_session(session_id: str, body: TransitionBody):
        session = await require_control().transition_session(session_id, body.status)
        return session.model_dump(mode="json")

    @app.post("/sessions/{session_id}/turns")
    async def record_turn(session_id: str, body: TurnBody):
        session = await require_control().record_turn(session_id, tokens=body.tokens)
        return session.model_dump(mode="json")

    # ── HITL policies ────────────────────────────────────────────────────

    @app.post("/agents/{agent_id}/policies", status_code=201)
    async def create_policy(agent_id: str, body: dict[str, Any]):
        fields = {k: v for k, v in body.items() if k != "agent_id"}
        policy = await require_control().create_policy(agent_id, **fields)
        return policy.model_dump(mode="json")

    @app.get("/agents/{agent_id}/policies")
    async def list_policies(agent_id: str, is_active: bool | None = None):
        policies = await require_control().list_policies(agent_id, is_active=is_active)
        return {"policies": [p.model_dump(mode="json") for p in policies]}

    @app.get("/policies/{policy_id}")
    async def get_policy(policy_id: str):
        policy = await require_control().get_policy(policy_id)
        return policy.model_dump(mode="json")

    @app.patch("/policies/{policy_id}")
    async def update_policy(policy_id: str, body: dict[str, Any]):
        policy = await require_control().update_policy(policy_id, **body)
        return policy.model_dump(mode="json")

    @app.delete("/policies/{policy_id}")
    async def delete_policy(policy_id: str):
        await require_control().delete_policy(policy_id)
        return {"deleted": True}

    # ── Webhook subscriptions ────────────────────────────────────────────

    @app.post("/agents/{agent_id}/webhooks", status_code=201)
    async def create_webhook(agent_id: str, body: dict[str, Any]):
        fields = {k: v for k, v in body.items() if k != "agent_id"}
        url = fields.pop("url", None)
        events = fields.pop("events", None)
        if not isinstance(url, str) or not isinstance(events, list):
            raise ValidationError("url (string) and events (list) are required")
        subscription = await require_control().create_webhook(agent_id, url, events, **fields)
        # The only response that carries the full secret
        return subscription.model_dump(mode="json")

    @app.get("/agents/{agent_id}/webhooks")
    async def list_webhooks(agent_id: str, is_active: bool | None = None):
        subscriptions = await require_control().list_webhooks(agent_id, is_active=is_active)
        return {"webhooks": [_webhook_view(s) for s in subscriptions]}

    @app.get("/webhooks/{webhook_id}")
    async def get_webhook(webhook_id: str):
        control = require_control()
        subscription = await control.get_webhook(webhook_id)
        deliveries = await control.list_deliveries(webhook_id)
        return _webhook_view(subscription, delivery_count=len(deliveries))

    @app.patch("/webhooks/{webhook_id}")
    async def update_webhook(webhook_id: str, body: dict[str, Any]):
        subscription = await require_control().update_webhook(webhook_id, **body)
        return _webhook_view(subscription)

    @app.delete("/webhooks/{webhook_id}")
    async def delete_webhook(webhook_id: str):
        await require_control().delete_webhook(webhook_id)
        return {"deleted": True}

    @app.get("/webhooks/{webhook_id}/deliveries")
    async def list_deliveries(webhook_id: str):
        deliveries = await require_control().list_deliveries(webhook_id)
        return {"deliveries": [d.model_dump(mode="json") for d in deliveries]}

    @app.post("/agents/{agent_id}/commands", status_code=202)
    async def issue_command(agent_id: str, body: CommandBody):
        control = require_control()
        command = AgentCommand.build(
            body.command, agent_id, payload=body.payload, requestId=body.request_id
        )
        receivers = await control.issue_command(command)
        return {
            "accepted": True,
            "receivers": receivers,
            "command": command.model_dump(mode="json", by_alias=True, exclude_none=True),
        }

    @app.post("/agents/{agent_id}/gate")
    async def evaluate_gate(agent_id: str, ctx: ActionContext):
        decision = await require_control().evaluate_gate(agent_id, ctx)
        return decision.model_dump(mode="json")

    # ── Approval requests ────────────────────────────────────────────────

    @app.post("/agents/{agent_id}/approvals", status_code=201)
    async def request_approval(agent_id: str, ctx: ActionContext):
        request = await require_control().request_approval(agent_id, ctx)
        return request.model_dump(mode="json")

    @app.get("/agents/{agent_id}/approvals")
    async def list_approvals(agent_id: str, status: str | None = None):
        requests = await require_control().list_approvals(agent_id, status)
        return {"approvals": [r.model_dump(mode="json") for r in requests]}

    @app.get("/approvals/{request_id}")
    async def get_approval(request_id: str):
        request = await require_control().get_approval(request_id)
        return request.model_dump(mode="json")

    @app.post("/approvals/{request_id}/resolve")
    async def resolve_approval(request_id: str, body: ResolveApprovalBody):
        control = require_control()
        request = await control.approvals.resolve_approval(
            request_id, body.reviewer_id, body.status, note=body.note, data=body.data
        )
        return request.model_dump(mode="json")

    @app.post("/approvals/{request_id}/cancel")
    async def cancel_approval(request_id: str, body: CancelApprovalBody | None = None):
        control = require_control()
        request = await control.approvals.cancel_approval(
            request_id, reason=body.reason if body else None
        )
        return request.model_dump(mode="json")

    @app.post("/webhooks/{webhook_id}/test")
    async def test_webhook(webhook_id: str):
        subscription = await require_control().get_webhook(webhook_id)
        delivery = await server.dispatcher.send_test(subscription)
        return delivery.model_dump(mode="json")

    return app

"""Lifecycle Manager — execution-plane owner of running agent workloads.

Agents run as in-process WorkloadRunner instances (remote backends are
reached through HttpRunner).  The manager keeps one entry per agent:

  - start creates a runner from the registry and initializes it
  - pause stops the runner but keeps the config for a quick resume
  - resume builds a fresh runner from the stored config
  - stop/kill shut the runner down and drop the entry

Operations on the same agent id are serialized by a per-agent lock;
different agents proceed independently.  Every replica receives every
command, so start/pause/resume are idempotent.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import ValidationError as PydanticValidationError

from agentos.errors import AgentOSError, BackendError, ValidationError
from agentos.models import (
    AgentCommand,
    AgentConfig,
    CommandKind,
    ModelConfig,
    RuntimeStatus,
    StatusUpdate,
    utcnow,
)

if TYPE_CHECKING:
    from agentos.bus import CommandBus
    from agentos.runners.base import WorkloadRunner
    from agentos.runners.registry import RunnerRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ManagedAgentEntry:
    """Bookkeeping for one agent on this execution plane."""

    config: AgentConfig
    runner: WorkloadRunner
    status: RuntimeStatus
    started_at: datetime


class LifecycleManager:
    def __init__(self, runners: RunnerRegistry, bus: CommandBus | None = None):
        self.runners = runners
        self.bus = bus
        self._agents: dict[str, ManagedAgentEntry] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, agent_id: str) -> asyncio.Lock:
        return self._locks.setdefault(agent_id, asyncio.Lock())

    def __len__(self) -> int:
        return len(self._agents)

    # ── Lifecycle operations ─────────────────────────────────────────────

    async def start_agent(self, config: AgentConfig) -> None:
        """Start an agent.

        A paused agent is resumed; an agent that is already running is left
        alone.  On failure no entry is left behind.
        """
        async with self._lock(config.id):
            existing = self._agents.get(config.id)
            if existing and existing.status == RuntimeStatus.RUNNING:
                logger.info("Agent %s is already running, skipping start", config.id)
                return
            if existing and existing.status == RuntimeStatus.PAUSED:
                logger.info("Resuming paused agent %s", config.id)
                await self._reinitialize(existing)
            else:
                logger.info(
                    "Starting agent %s (%s, framework=%s)", config.id, config.name, config.framework
                )
                if existing is not None:
                    await self._release_runner(existing)
                runner = self.runners.create(config.framework)
                await self._backend_call(config.id, "init", runner.init(config))
                self._agents[config.id] = ManagedAgentEntry(
                    config=config,
                    runner=runner,
                    status=RuntimeStatus.RUNNING,
                    started_at=utcnow(),
                )
                logger.info("Agent %s started", config.id)
        await self._publish_status(config.id, RuntimeStatus.RUNNING)

    async def pause_agent(self, agent_id: str) -> None:
        """Stop the runner but keep the entry so the agent can be resumed."""
        async with self._lock(agent_id):
            entry = self._agents.get(agent_id)
            if entry is None:
                logger.warning("Cannot pause unknown agent %s", agent_id)
                return
            if entry.status == RuntimeStatus.PAUSED:
                return
            if entry.status != RuntimeStatus.RUNNING:
                logger.warning("Cannot pause agent %s in status %s", agent_id, entry.status.value)
                return
            logger.info("Pausing agent %s", agent_id)
            try:
                await self._backend_call(agent_id, "stop", entry.runner.stop())
            except BackendError:
                entry.status = RuntimeStatus.ERROR
                raise
            entry.status = RuntimeStatus.PAUSED
        await self._publish_status(agent_id, RuntimeStatus.PAUSED)

    async def resume_agent(self, agent_id: str) -> None:
        """Re-initialize a fresh runner from the stored config."""
        async with self._lock(agent_id):
            entry = self._agents.get(agent_id)
            if entry is None:
                logger.warning("Cannot resume unknown agent %s", agent_id)
                return
            if entry.status == RuntimeStatus.RUNNING:
                return
            logger.info("Resuming agent %s", agent_id)
            await self._reinitialize(entry)
        await self._publish_status(agent_id, RuntimeStatus.RUNNING)

    async def stop_agent(self, agent_id: str) -> None:
        """Gracefully stop an agent and remove it from the managed set."""
        async with self._lock(agent_id):
            entry = self._agents.get(agent_id)
            if entry is None:
                logger.warning("Cannot stop unknown agent %s", agent_id)
                return
            logger.info("Stopping agent %s", agent_id)
            if entry.status == RuntimeStatus.RUNNING:
                entry.status = RuntimeStatus.STOPPING
                try:
                    await self._backend_call(agent_id, "stop", entry.runner.stop())
                except BackendError:
                    entry.status = RuntimeStatus.ERROR
                    raise
            del self._agents[agent_id]
        await self._publish_status(agent_id, RuntimeStatus.STOPPED)

    async def kill_agent(self, agent_id: str) -> None:
        """Force an agent down.  The entry is removed even if the backend fails."""
        async with self._lock(agent_id):
            entry = self._agents.pop(agent_id, None)
            if entry is None:
                logger.warning("Cannot kill unknown agent %s", agent_id)
                return
            logger.info("Killing agent %s", agent_id)
            try:
                if entry.status == RuntimeStatus.RUNNING:
                    await self._backend_call(agent_id, "kill", entry.runner.kill())
            finally:
                await self._publish_status(agent_id, RuntimeStatus.STOPPED, {"killed": True})

    async def update_model_config(self, agent_id: str, model_config: ModelConfig) -> bool:
        """Hot-swap the model of a running agent.  False if it is not running."""
        async with self._lock(agent_id):
            entry = self._agents.get(agent_id)
            if entry is None or entry.status != RuntimeStatus.RUNNING:
                return False
            swapped = await self._backend_call(
                agent_id, "update_model_config", entry.runner.update_model_config(model_config)
            )
            if swapped:
                # Later resumes pick up the new model
                entry.config = entry.config.model_copy(update={"llm": model_config})
                logger.info(
                    "Agent %s switched to %s/%s", agent_id, model_config.provider, model_config.model
                )
            return bool(swapped)

    async def shutdown(self) -> None:
        """Stop every managed agent (process exit)."""
        for agent_id in list(self._agents):
            try:
                await self.stop_agent(agent_id)
            except AgentOSError:
                logger.exception("Failed to stop agent %s during shutdown", agent_id)

    # ── Introspection ────────────────────────────────────────────────────

    async def get_status(self, agent_id: str) -> RuntimeStatus:
        """Runtime status of an agent.

        Unknown agents are reported as stopped.  A running agent whose
        health probe fails or reports unhealthy is reported as error; the
        stored status is not changed.
        """
        entry = self._agents.get(agent_id)
        if entry is None:
            return RuntimeStatus.STOPPED
        if entry.status == RuntimeStatus.RUNNING:
            try:
                health = await entry.runner.health_check()
            except Exception:
                logger.warning("Health probe failed for agent %s", agent_id, exc_info=True)
                return RuntimeStatus.ERROR
            if not health.healthy:
                return RuntimeStatus.ERROR
        return entry.status

    def list_agents(self) -> list[dict[str, Any]]:
        return [
            {
                "agent_id": agent_id,
                "name": entry.config.name,
                "framework": entry.config.framework,
                "status": entry.status.value,
                "started_at": entry.started_at.isoformat(),
            }
            for agent_id, entry in self._agents.items()
        ]

    def get_runner(self, agent_id: str) -> WorkloadRunner | None:
        """The runner of a running agent, for direct interaction.  None otherwise."""
        entry = self._agents.get(agent_id)
        if entry is None or entry.status != RuntimeStatus.RUNNING:
            return None
        return entry.runner

    def get_entry(self, agent_id: str) -> ManagedAgentEntry | None:
        return self._agents.get(agent_id)

    # ── Bus integration ──────────────────────────────────────────────────

    async def handle_command(self, command: AgentCommand) -> None:
        """Apply one command received from the bus."""
        agent_id = command.agent_id
        logger.info("Handling %s for agent %s", command.command.value, agent_id)
        match command.command:
            case CommandKind.START:
                await self.start_agent(self._config_from_payload(command))
            case CommandKind.STOP:
                await self.stop_agent(agent_id)
            case CommandKind.PAUSE:
                await self.pause_agent(agent_id)
            case CommandKind.RESUME:
                await self.resume_agent(agent_id)
            case CommandKind.KILL:
                await self.kill_agent(agent_id)
            case CommandKind.UPDATE_MODEL:
                try:
                    model_config = ModelConfig.model_validate(command.payload)
                except PydanticValidationError as exc:
                    raise ValidationError.from_pydantic("update_model payload", exc) from exc
                if not await self.update_model_config(agent_id, model_config):
                    logger.warning("Model update ignored: agent %s is not running", agent_id)

    @staticmethod
    def _config_from_payload(command: AgentCommand) -> AgentConfig:
        payload = dict(command.payload)
        payload.setdefault("id", command.agent_id)
        if payload["id"] != command.agent_id:
            raise ValidationError(
                f"start payload id {payload['id']} does not match agentId {command.agent_id}"
            )
        try:
            return AgentConfig.model_validate(payload)
        except PydanticValidationError as exc:
            raise ValidationError.from_pydantic("start payload", exc) from exc

    # ── Internal ─────────────────────────────────────────────────────────

    async def _reinitialize(self, entry: ManagedAgentEntry) -> None:
        """Replace the entry's runner with a freshly initialized one.  Caller holds the lock."""
        if entry.status == RuntimeStatus.ERROR:
            await self._release_runner(entry)
        runner = self.runners.create(entry.config.framework)
        try:
            await self._backend_call(entry.config.id, "init", runner.init(entry.config))
        except BackendError:
            entry.status = RuntimeStatus.ERROR
            raise
        entry.runner = runner
        entry.status = RuntimeStatus.RUNNING
        entry.started_at = utcnow()

    async def _release_runner(self, entry: ManagedAgentEntry) -> None:
        """Best-effort stop of a runner about to be replaced.  Caller holds the lock."""
        agent_id = entry.config.id
        try:
            await self._backend_call(agent_id, "stop", entry.runner.stop())
        except BackendError as exc:
            logger.warning("Previous runner of agent %s did not stop cleanly: %s", agent_id, exc)

    async def _backend_call(self, agent_id: str, action: str, call: Awaitable[T]) -> T:
        try:
            return await call
        except BackendError:
            raise
        except Exception as exc:
            raise BackendError(f"Runner {action} failed for agent {agent_id}: {exc}") from exc

    async def _publish_status(
        self, agent_id: str, status: RuntimeStatus, metadata: dict[str, Any] | None = None
    ) -> None:
        if self.bus is None:
            return
        try:
            await self.bus.publish_status(
                StatusUpdate(agent_id=agent_id, status=status.value, metadata=metadata)
            )
        except Exception:
            logger.exception("Failed to publish status for agent %s", agent_id)

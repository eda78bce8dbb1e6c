"""Command Bus — lifecycle intents from the authority plane to execution planes.

Fan-out broadcast: every subscribed execution plane receives every command
published on the commands channel.  There is no acknowledgement and no
persistence; a command published while nobody listens is lost.  Runtime
status reports travel the other way on the status channel and are purely
informational.

Two transports are provided: ``LocalBroker`` for a single process (and
tests), ``RedisBroker`` for multi-process deployments over Redis pub/sub.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

import redis.asyncio as redis
from pydantic import ValidationError as PydanticValidationError

from agentos.errors import BusDecodeError, ValidationError
from agentos.models import AgentCommand, StatusUpdate

logger = logging.getLogger(__name__)

MessageCallback = Callable[[str], Awaitable[None]]
CommandHandler = Callable[[AgentCommand], Awaitable[Any]]
StatusHandler = Callable[[StatusUpdate], Awaitable[Any]]
Unsubscribe = Callable[[], Awaitable[None]]


# ── Brokers ──────────────────────────────────────────────────────────────────


class Broker(ABC):
    """Raw pub/sub transport carrying string messages on named channels."""

    @abstractmethod
    async def publish(self, channel: str, message: str) -> int:
        """Send a message.  Returns the number of receivers (0 is not an error)."""

    @abstractmethod
    async def subscribe(self, channel: str, callback: MessageCallback) -> Unsubscribe:
        """Register a callback for a channel.  Returns an async unsubscribe function."""

    async def close(self) -> None:
        return None


class LocalBroker(Broker):
    """In-process fan-out broker."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[MessageCallback]] = {}

    async def publish(self, channel: str, message: str) -> int:
        callbacks = list(self._subscribers.get(channel, ()))
        for callback in callbacks:
            try:
                await callback(message)
            except Exception:
                logger.exception("Subscriber callback failed on %s", channel)
        return len(callbacks)

    async def subscribe(self, channel: str, callback: MessageCallback) -> Unsubscribe:
        self._subscribers.setdefault(channel, []).append(callback)

        async def unsubscribe() -> None:
            callbacks = self._subscribers.get(channel, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, ()))

    async def close(self) -> None:
        self._subscribers.clear()


class RedisBroker(Broker):
    """Redis pub/sub broker (``redis.asyncio``)."""

    def __init__(self, url: str, client: Any = None):
        self.url = url
        self._client = client
        self._owns_client = client is None

    @property
    def client(self):
        if self._client is None:
            self._client = redis.from_url(self.url, decode_responses=True)
        return self._client

    async def publish(self, channel: str, message: str) -> int:
        return await self.client.publish(channel, message)

    async def subscribe(self, channel: str, callback: MessageCallback) -> Unsubscribe:
        pubsub = self.client.pubsub()
        await pubsub.subscribe(channel)
        task = asyncio.create_task(
            self._reader(pubsub, channel, callback), name=f"redis-sub:{channel}"
        )
        logger.info("Subscribed to Redis channel %s", channel)

        async def unsubscribe() -> None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()
            logger.info("Unsubscribed from Redis channel %s", channel)

        return unsubscribe

    async def _reader(self, pubsub, channel: str, callback: MessageCallback) -> None:
        async for message in pubsub.listen():
            if message.get("type") != "message":
                continue
            data = message.get("data")
            if isinstance(data, bytes):
                data = data.decode("utf-8", errors="replace")
            try:
                await callback(data)
            except Exception:
                logger.exception("Subscriber callback failed on %s", channel)

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


# ── Command Bus ──────────────────────────────────────────────────────────────


class Subscription:
    """Handle returned by ``CommandBus.subscribe``."""

    def __init__(self, channel: str, unsubscribe: Unsubscribe):
        self.channel = channel
        self._unsubscribe: Unsubscribe | None = unsubscribe

    @property
    def active(self) -> bool:
        return self._unsubscribe is not None

    async def unsubscribe(self) -> None:
        if self._unsubscribe is None:
            return
        unsubscribe, self._unsubscribe = self._unsubscribe, None
        await unsubscribe()


class CommandBus:
    """Validated publish/subscribe of AgentCommand and StatusUpdate messages.

    Handlers run as supervised background tasks, at most ``max_inflight``
    at a time.  Handler exceptions are logged and never stop delivery of
    further messages.
    """

    def __init__(
        self,
        broker: Broker,
        commands_channel: str = "agent:commands",
        status_channel: str = "agent:status",
        max_inflight: int = 64,
    ):
        self.broker = broker
        self.commands_channel = commands_channel
        self.status_channel = status_channel
        self._semaphore = asyncio.Semaphore(max_inflight)
        self._tasks: set[asyncio.Task] = set()
        self._subscriptions: list[Subscription] = []

    @property
    def inflight(self) -> int:
        return len(self._tasks)

    # ── Publishing ───────────────────────────────────────────────────────

    async def publish(self, command: AgentCommand | dict[str, Any]) -> int:
        """Validate, serialize and broadcast a command.

        Raises:
            ValidationError: If ``command`` is not a well-formed command.
        """
        if not isinstance(command, AgentCommand):
            try:
                command = AgentCommand.model_validate(command)
            except PydanticValidationError as exc:
                raise ValidationError.from_pydantic("command", exc) from exc
        receivers = await self.broker.publish(self.commands_channel, command.to_wire())
        logger.info(
            "Published %s for agent %s (receivers=%d)",
            command.command.value,
            command.agent_id,
            receivers,
        )
        return receivers

    async def publish_status(self, update: StatusUpdate) -> int:
        return await self.broker.publish(self.status_channel, update.to_wire())

    # ── Subscribing ──────────────────────────────────────────────────────

    async def subscribe(self, handler: CommandHandler) -> Subscription:
        async def on_message(raw: str) -> None:
            try:
                command = AgentCommand.from_wire(raw)
            except BusDecodeError as exc:
                logger.warning("Dropping malformed command message: %s", exc)
                return
            self._spawn(handler(command), f"command:{command.command.value}:{command.agent_id}")

        return await self._subscribe(self.commands_channel, on_message)

    async def subscribe_status(self, handler: StatusHandler) -> Subscription:
        async def on_message(raw: str) -> None:
            try:
                update = StatusUpdate.from_wire(raw)
            except BusDecodeError as exc:
                logger.warning("Dropping malformed status message: %s", exc)
                return
            self._spawn(handler(update), f"status:{update.agent_id}")

        return await self._subscribe(self.status_channel, on_message)

    async def _subscribe(self, channel: str, callback: MessageCallback) -> Subscription:
        unsubscribe = await self.broker.subscribe(channel, callback)
        subscription = Subscription(channel, unsubscribe)
        self._subscriptions.append(subscription)
        return subscription

    # ── Handler supervision ──────────────────────────────────────────────

    def _spawn(self, coro: Awaitable[Any], name: str) -> None:
        task = asyncio.create_task(self._run_handler(coro, name), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_handler(self, coro: Awaitable[Any], name: str) -> None:
        async with self._semaphore:
            try:
                await coro
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Bus handler failed (%s)", name)

    async def drain(self) -> None:
        """Wait for every in-flight handler to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        for subscription in self._subscriptions:
            await subscription.unsubscribe()
        self._subscriptions.clear()
        await self.drain()
        await self.broker.close()

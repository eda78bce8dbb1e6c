"""Tests for the command bus and its brokers."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from agentos.bus import CommandBus, LocalBroker, RedisBroker
from agentos.errors import ValidationError
from agentos.models import AgentCommand, CommandKind, StatusUpdate

AGENT_ID = "6f1c2b9e-3a4d-4e5f-8a9b-0c1d2e3f4a5b"
OTHER_ID = "0b8f4a52-7d7e-4f0c-9d35-2f6b1a9c3e11"


@pytest.fixture
def broker():
    return LocalBroker()


@pytest.fixture
def bus(broker):
    return CommandBus(broker)


class TestLocalBroker:
    async def test_fan_out(self, broker: LocalBroker):
        received_a, received_b = [], []

        async def a(msg):
            received_a.append(msg)

        async def b(msg):
            received_b.append(msg)

        await broker.subscribe("ch", a)
        await broker.subscribe("ch", b)

        assert await broker.publish("ch", "hello") == 2
        assert received_a == ["hello"]
        assert received_b == ["hello"]

    async def test_no_subscribers(self, broker: LocalBroker):
        assert await broker.publish("empty", "msg") == 0

    async def test_unsubscribe(self, broker: LocalBroker):
        received = []

        async def cb(msg):
            received.append(msg)

        unsubscribe = await broker.subscribe("ch", cb)
        await unsubscribe()
        await unsubscribe()

        assert broker.subscriber_count("ch") == 0
        assert await broker.publish("ch", "msg") == 0
        assert received == []

    async def test_failing_callback_does_not_block_others(self, broker: LocalBroker):
        received = []

        async def bad(msg):
            raise RuntimeError("boom")

        async def good(msg):
            received.append(msg)

        await broker.subscribe("ch", bad)
        await broker.subscribe("ch", good)

        assert await broker.publish("ch", "msg") == 2
        assert received == ["msg"]


class TestCommandBus:
    async def test_publish_and_handle(self, bus: CommandBus):
        handled = []

        async def handler(cmd: AgentCommand):
            handled.append(cmd)

        await bus.subscribe(handler)
        receivers = await bus.publish(
            AgentCommand.build(CommandKind.START, AGENT_ID, payload={"framework": "custom"})
        )
        await bus.drain()

        assert receivers == 1
        assert len(handled) == 1
        assert handled[0].command == CommandKind.START
        assert handled[0].payload == {"framework": "custom"}

    async def test_publish_dict(self, bus: CommandBus):
        handled = []

        async def handler(cmd):
            handled.append(cmd.command)

        await bus.subscribe(handler)
        await bus.publish({"command": "pause", "agentId": AGENT_ID})
        await bus.drain()
        assert handled == [CommandKind.PAUSE]

    async def test_publish_invalid_dict(self, bus: CommandBus, broker: LocalBroker):
        sent = []

        async def raw(msg):
            sent.append(msg)

        await broker.subscribe(bus.commands_channel, raw)
        with pytest.raises(ValidationError):
            await bus.publish({"command": "start", "agentId": "not-a-uuid"})
        with pytest.raises(ValidationError):
            await bus.publish({"command": "stop", "agentId": AGENT_ID, "timestamp": 0})
        with pytest.raises(ValidationError):
            await bus.publish({"command": "stop", "agentId": "{" + AGENT_ID + "}"})
        assert sent == []

    async def test_publish_without_subscribers(self, bus: CommandBus):
        assert await bus.publish(AgentCommand.build("stop", AGENT_ID)) == 0

    async def test_malformed_message_dropped(self, bus: CommandBus, broker: LocalBroker):
        handled = []

        async def handler(cmd):
            handled.append(cmd.agent_id)

        await bus.subscribe(handler)
        await broker.publish(bus.commands_channel, "{not json")
        await broker.publish(
            bus.commands_channel, json.dumps({"command": "start", "agentId": "nope"})
        )
        await broker.publish(
            bus.commands_channel,
            json.dumps({"command": "stop", "agentId": OTHER_ID, "timestamp": 1735732800}),
        )
        await broker.publish(
            bus.commands_channel,
            json.dumps({"command": "stop", "agentId": OTHER_ID.replace("-", "")}),
        )
        await bus.publish(AgentCommand.build("stop", AGENT_ID))
        await bus.drain()

        assert handled == [AGENT_ID]

    async def test_handler_failure_isolated(self, bus: CommandBus):
        handled = []

        async def handler(cmd):
            if cmd.agent_id == AGENT_ID:
                raise RuntimeError("backend exploded")
            handled.append(cmd.agent_id)

        await bus.subscribe(handler)
        await bus.publish(AgentCommand.build("start", AGENT_ID))
        await bus.publish(AgentCommand.build("start", OTHER_ID))
        await bus.drain()

        assert handled == [OTHER_ID]
        assert bus.inflight == 0

    async def test_unsubscribe(self, bus: CommandBus):
        handled = []

        async def handler(cmd):
            handled.append(cmd)

        subscription = await bus.subscribe(handler)
        assert subscription.active
        await subscription.unsubscribe()
        assert not subscription.active

        assert await bus.publish(AgentCommand.build("stop", AGENT_ID)) == 0
        await bus.drain()
        assert handled == []

    async def test_max_inflight_bounds_handlers(self, broker: LocalBroker):
        bus = CommandBus(broker, max_inflight=2)
        running = 0
        peak = 0
        release = asyncio.Event()

        async def handler(cmd):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await release.wait()
            running -= 1

        await bus.subscribe(handler)
        for _ in range(5):
            await bus.publish(AgentCommand.build("stop", AGENT_ID))
        await asyncio.sleep(0.01)

        assert peak == 2
        release.set()
        await bus.drain()
        assert peak == 2
        assert running == 0

    async def test_status_channel(self, bus: CommandBus):
        updates = []

        async def on_status(update: StatusUpdate):
            updates.append(update)

        await bus.subscribe_status(on_status)
        await bus.publish_status(StatusUpdate(agent_id=AGENT_ID, status="running"))
        await bus.drain()

        assert [(u.agent_id, u.status) for u in updates] == [(AGENT_ID, "running")]

    async def test_close_unsubscribes(self, bus: CommandBus, broker: LocalBroker):
        async def handler(cmd):
            pass

        await bus.subscribe(handler)
        await bus.close()
        assert broker.subscriber_count(bus.commands_channel) == 0


class FakePubSub:
    """Minimal stand-in for a redis.asyncio PubSub object."""

    def __init__(self, messages):
        self._messages = messages
        self.subscribed = []
        self.unsubscribed = []
        self.closed = False

    async def subscribe(self, channel):
        self.subscribed.append(channel)

    async def unsubscribe(self, channel):
        self.unsubscribed.append(channel)

    async def aclose(self):
        self.closed = True

    async def listen(self):
        for message in self._messages:
            yield message
        await asyncio.Event().wait()


class TestRedisBroker:
    async def test_publish(self):
        client = MagicMock()
        client.publish = AsyncMock(return_value=3)
        broker = RedisBroker("redis://localhost:6379", client=client)

        assert await broker.publish("agent:commands", "msg") == 3
        client.publish.assert_awaited_once_with("agent:commands", "msg")

    async def test_subscribe_delivers_messages(self):
        pubsub = FakePubSub(
            [
                {"type": "subscribe", "data": 1},
                {"type": "message", "data": "first"},
                {"type": "message", "data": b"second"},
            ]
        )
        client = MagicMock()
        client.pubsub.return_value = pubsub
        broker = RedisBroker("redis://localhost:6379", client=client)
        received = []

        async def cb(msg):
            received.append(msg)

        unsubscribe = await broker.subscribe("agent:commands", cb)
        await asyncio.sleep(0.01)
        await unsubscribe()

        assert received == ["first", "second"]
        assert pubsub.subscribed == ["agent:commands"]
        assert pubsub.unsubscribed == ["agent:commands"]
        assert pubsub.closed

    async def test_close_leaves_injected_client_open(self):
        client = MagicMock()
        client.aclose = AsyncMock()
        broker = RedisBroker("redis://localhost:6379", client=client)

        await broker.close()
        client.aclose.assert_not_awaited()

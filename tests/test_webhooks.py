"""Tests for webhook signing, delivery and retries."""

import json

import httpx
import pytest
import pytest_asyncio
import respx

from agentos.errors import DeliveryError
from agentos.models import DeliveryStatus, WebhookEvent, WebhookSubscription
from agentos.registry import Registry
from agentos.webhooks import (
    TRUNCATION_MARKER,
    WebhookDispatcher,
    deliver_payload,
    sign_payload,
    verify_signature,
)

HOOK_URL = "https://hooks.example.com/agentos"


@pytest_asyncio.fixture
async def registry(tmp_path):
    reg = Registry(str(tmp_path / "test_webhooks.db"))
    await reg.initialize()
    yield reg
    await reg.close()


class SleepRecorder:
    """Stands in for asyncio.sleep so retry tests run instantly."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def sleeps():
    return SleepRecorder()


@pytest_asyncio.fixture
async def dispatcher(registry, sleeps):
    async with httpx.AsyncClient() as client:
        yield WebhookDispatcher(registry, client=client, sleep=sleeps)


async def _subscription(registry: Registry, **kwargs) -> WebhookSubscription:
    kwargs.setdefault("events", {WebhookEvent.AGENT_UPDATED})
    return await registry.create_webhook(
        WebhookSubscription(agent_id="agent-1", url=HOOK_URL, secret="topsecret", **kwargs)
    )


class TestSigning:
    def test_deterministic(self):
        assert sign_payload('{"a":1}', "k") == sign_payload('{"a":1}', "k")
        assert sign_payload('{"a":1}', "k").startswith("sha256=")

    def test_differs_by_payload_and_secret(self):
        base = sign_payload('{"a":1}', "k")
        assert sign_payload('{"a":2}', "k") != base
        assert sign_payload('{"a":1}', "other") != base

    def test_bytes_and_str_agree(self):
        assert sign_payload(b"payload", "k") == sign_payload("payload", "k")

    def test_verify(self):
        signature = sign_payload("body", "k")
        assert verify_signature("body", "k", signature)
        assert not verify_signature("body!", "k", signature)
        assert not verify_signature("body", "k", "sha256=deadbeef")


class TestDeliverPayload:
    @respx.mock
    async def test_success_headers(self):
        route = respx.post(HOOK_URL).mock(return_value=httpx.Response(200, text="ok"))
        async with httpx.AsyncClient() as client:
            result = await deliver_payload(
                client, HOOK_URL, '{"x":1}', "sha256=abc", WebhookEvent.AGENT_CREATED, "d-1", 5000
            )

        assert result.success
        assert result.response_status == 200
        assert result.response_body == "ok"
        assert result.error is None
        headers = route.calls.last.request.headers
        assert headers["X-Webhook-Signature"] == "sha256=abc"
        assert headers["X-Webhook-Event"] == "agent.created"
        assert headers["X-Webhook-Delivery"] == "d-1"
        assert headers["User-Agent"] == "AgentOS-Webhook/1.0"
        assert headers["Content-Type"] == "application/json"
        assert route.calls.last.request.content == b'{"x":1}'

    @respx.mock
    async def test_non_2xx(self):
        respx.post(HOOK_URL).mock(return_value=httpx.Response(502, text="bad gateway"))
        async with httpx.AsyncClient() as client:
            result = await deliver_payload(
                client, HOOK_URL, "{}", "sig", WebhookEvent.AGENT_CREATED, "d-1", 5000
            )
        assert not result.success
        assert result.response_status == 502
        assert result.error == "HTTP 502"

    @respx.mock
    async def test_timeout(self):
        respx.post(HOOK_URL).mock(side_effect=httpx.ReadTimeout("slow"))
        async with httpx.AsyncClient() as client:
            result = await deliver_payload(
                client, HOOK_URL, "{}", "sig", WebhookEvent.AGENT_CREATED, "d-1", 250
            )
        assert not result.success
        assert result.response_status is None
        assert result.error == "Timed out after 250ms"

    @respx.mock
    async def test_network_error(self):
        respx.post(HOOK_URL).mock(side_effect=httpx.ConnectError("connection refused"))
        async with httpx.AsyncClient() as client:
            result = await deliver_payload(
                client, HOOK_URL, "{}", "sig", WebhookEvent.AGENT_CREATED, "d-1", 5000
            )
        assert not result.success
        assert "connection refused" in result.error

    @respx.mock
    async def test_response_body_truncated(self):
        respx.post(HOOK_URL).mock(return_value=httpx.Response(200, text="x" * 5000))
        async with httpx.AsyncClient() as client:
            result = await deliver_payload(
                client, HOOK_URL, "{}", "sig", WebhookEvent.AGENT_CREATED, "d-1", 5000
            )
        assert result.response_body == "x" * 4096 + TRUNCATION_MARKER


class TestDeliverWebhook:
    @respx.mock
    async def test_success_first_attempt(
        self, dispatcher: WebhookDispatcher, registry: Registry, sleeps
    ):
        route = respx.post(HOOK_URL).mock(return_value=httpx.Response(204))
        sub = await _subscription(registry)

        delivery = await dispatcher.deliver_webhook(
            sub, WebhookEvent.AGENT_UPDATED, {"status": "running"}
        )

        assert delivery.status == DeliveryStatus.SUCCESS
        assert delivery.attempt_number == 1
        assert delivery.delivered_at is not None
        assert sleeps.delays == []

        request = route.calls.last.request
        body = json.loads(request.content)
        assert body["event"] == "agent.updated"
        assert body["webhook_id"] == sub.id
        assert body["agent_id"] == "agent-1"
        assert body["data"] == {"status": "running"}
        assert body["timestamp"].endswith("Z")
        assert verify_signature(request.content, "topsecret", request.headers["X-Webhook-Signature"])
        assert request.headers["X-Webhook-Delivery"] == delivery.id

        stored = await registry.get_webhook(sub.id)
        assert stored.total_deliveries == 1
        assert stored.failed_deliveries == 0
        assert stored.last_delivered_at is not None

    @respx.mock
    async def test_always_failing_exhausts_retries(
        self, dispatcher: WebhookDispatcher, registry: Registry, sleeps
    ):
        route = respx.post(HOOK_URL).mock(return_value=httpx.Response(500))
        sub = await _subscription(registry, max_retries=2, retry_delay_seconds=1)

        delivery = await dispatcher.deliver_webhook(sub, WebhookEvent.AGENT_UPDATED, {})

        assert route.call_count == 3
        assert delivery.status == DeliveryStatus.FAILED
        assert delivery.attempt_number == 3
        assert delivery.max_attempts == 3
        assert delivery.error_message == "HTTP 500"
        assert delivery.next_retry_at is None
        assert sleeps.delays == [1, 2]

        stored = await registry.get_webhook(sub.id)
        assert stored.total_deliveries == 1
        assert stored.failed_deliveries == 1
        assert stored.last_error == "HTTP 500"

    @respx.mock
    async def test_same_signature_on_every_attempt(
        self, dispatcher: WebhookDispatcher, registry: Registry
    ):
        route = respx.post(HOOK_URL).mock(return_value=httpx.Response(500))
        sub = await _subscription(registry, max_retries=1)

        await dispatcher.deliver_webhook(sub, WebhookEvent.AGENT_UPDATED, {"n": 1})

        first, second = (call.request for call in route.calls)
        assert first.content == second.content
        assert first.headers["X-Webhook-Signature"] == second.headers["X-Webhook-Signature"]

    @respx.mock
    async def test_success_after_retry(
        self, dispatcher: WebhookDispatcher, registry: Registry, sleeps
    ):
        respx.post(HOOK_URL).mock(
            side_effect=[httpx.Response(503), httpx.Response(200, text="thanks")]
        )
        sub = await _subscription(registry, max_retries=3, retry_delay_seconds=30)

        delivery = await dispatcher.deliver_webhook(sub, WebhookEvent.AGENT_UPDATED, {})

        assert delivery.status == DeliveryStatus.SUCCESS
        assert delivery.attempt_number == 2
        assert delivery.response_body == "thanks"
        assert sleeps.delays == [30]
        stored = await registry.get_webhook(sub.id)
        assert stored.total_deliveries == 1
        assert stored.failed_deliveries == 0

    @respx.mock
    async def test_zero_retries(self, dispatcher: WebhookDispatcher, registry: Registry):
        route = respx.post(HOOK_URL).mock(return_value=httpx.Response(400))
        sub = await _subscription(registry, max_retries=0)

        delivery = await dispatcher.deliver_webhook(sub, WebhookEvent.AGENT_UPDATED, {})
        assert route.call_count == 1
        assert delivery.status == DeliveryStatus.FAILED
        assert delivery.attempt_number == 1

    def test_backoff_is_capped(self, dispatcher: WebhookDispatcher):
        assert dispatcher.backoff_seconds(30, 0) == 30
        assert dispatcher.backoff_seconds(30, 1) == 60
        assert dispatcher.backoff_seconds(30, 5) == 60


class TestDispatchEvent:
    @respx.mock
    async def test_fans_out_to_matching_subscriptions(
        self, dispatcher: WebhookDispatcher, registry: Registry
    ):
        route = respx.post(HOOK_URL).mock(return_value=httpx.Response(200))
        a = await _subscription(registry, events={WebhookEvent.AGENT_KILLED})
        b = await _subscription(
            registry, events={WebhookEvent.AGENT_KILLED, WebhookEvent.AGENT_UPDATED}
        )
        await _subscription(registry, events={WebhookEvent.SESSION_STARTED})
        await _subscription(registry, events={WebhookEvent.AGENT_KILLED}, is_active=False)

        count = await dispatcher.dispatch_event("agent-1", WebhookEvent.AGENT_KILLED, {"x": 1})
        await dispatcher.drain()

        assert count == 2
        assert route.call_count == 2
        assert dispatcher.inflight == 0
        for sub in (a, b):
            deliveries = await registry.list_deliveries(sub.id)
            assert [d.status for d in deliveries] == [DeliveryStatus.SUCCESS]

    async def test_no_subscriptions(self, dispatcher: WebhookDispatcher):
        assert await dispatcher.dispatch_event("nobody", WebhookEvent.AGENT_CREATED, {}) == 0


class TestSendTest:
    @respx.mock
    async def test_success(self, dispatcher: WebhookDispatcher, registry: Registry):
        route = respx.post(HOOK_URL).mock(return_value=httpx.Response(200))
        sub = await _subscription(registry)

        delivery = await dispatcher.send_test(sub)

        assert delivery.status == DeliveryStatus.SUCCESS
        assert json.loads(route.calls.last.request.content)["data"] == {"test": True}

    @respx.mock
    async def test_failure_raises(self, dispatcher: WebhookDispatcher, registry: Registry):
        respx.post(HOOK_URL).mock(return_value=httpx.Response(404))
        sub = await _subscription(registry, max_retries=0)

        with pytest.raises(DeliveryError, match="HTTP 404"):
            await dispatcher.send_test(sub)

"""Webhook dispatcher — signing, delivery with retries, and event fan-out.

Each subscription gets one delivery record per event.  The record is
updated in place as attempts are made; it is never re-created.  A
delivery is attempted ``max_retries + 1`` times with exponential backoff
between attempts, capped at ``max_backoff_seconds``.

Recipients verify a request by computing HMAC-SHA256 over the raw body
with their copy of the shared secret and comparing it to the
``X-Webhook-Signature`` header.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import httpx

from agentos.errors import DeliveryError
from agentos.models import (
    DeliveryResult,
    DeliveryStatus,
    WebhookDelivery,
    WebhookEvent,
    WebhookSubscription,
    utcnow,
)

if TYPE_CHECKING:
    from agentos.registry import Registry

logger = logging.getLogger(__name__)

USER_AGENT = "AgentOS-Webhook/1.0"
RESPONSE_BODY_LIMIT = 4096
TRUNCATION_MARKER = "...[truncated]"
MAX_BACKOFF_SECONDS = 60.0


# ── Signing ──────────────────────────────────────────────────────────────────


def _as_bytes(payload: str | bytes) -> bytes:
    return payload.encode("utf-8") if isinstance(payload, str) else payload


def sign_payload(payload: str | bytes, secret: str) -> str:
    """HMAC-SHA256 of the exact payload bytes, as ``sha256=<hex>``."""
    digest = hmac.new(secret.encode("utf-8"), _as_bytes(payload), hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(payload: str | bytes, secret: str, signature: str) -> bool:
    """Constant-time check of an ``X-Webhook-Signature`` header value."""
    return hmac.compare_digest(sign_payload(payload, secret), signature)


def _iso(dt: datetime) -> str:
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _truncate(body: str, limit: int) -> str:
    return body[:limit] + TRUNCATION_MARKER if len(body) > limit else body


# ── Single attempt ───────────────────────────────────────────────────────────


async def deliver_payload(
    client: httpx.AsyncClient,
    url: str,
    body: str,
    signature: str,
    event: WebhookEvent,
    delivery_id: str,
    timeout_ms: int,
    user_agent: str = USER_AGENT,
    body_limit: int = RESPONSE_BODY_LIMIT,
) -> DeliveryResult:
    """POST one signed payload.

    Never raises for delivery problems: non-2xx responses, timeouts and
    network errors all come back as an unsuccessful DeliveryResult.
    """
    headers = {
        "Content-Type": "application/json",
        "X-Webhook-Signature": signature,
        "X-Webhook-Event": event.value,
        "X-Webhook-Delivery": delivery_id,
        "User-Agent": user_agent,
    }
    start = time.perf_counter()
    try:
        resp = await client.post(
            url, content=body.encode("utf-8"), headers=headers, timeout=timeout_ms / 1000
        )
    except httpx.TimeoutException:
        return DeliveryResult(
            success=False,
            response_time_ms=_elapsed_ms(start),
            error=f"Timed out after {timeout_ms}ms",
        )
    except httpx.HTTPError as exc:
        return DeliveryResult(
            success=False,
            response_time_ms=_elapsed_ms(start),
            error=str(exc) or type(exc).__name__,
        )

    success = 200 <= resp.status_code < 300
    return DeliveryResult(
        success=success,
        response_status=resp.status_code,
        response_body=_truncate(resp.text, body_limit),
        response_time_ms=_elapsed_ms(start),
        error=None if success else f"HTTP {resp.status_code}",
    )


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 2)


# ── Dispatcher ───────────────────────────────────────────────────────────────


class WebhookDispatcher:
    """Delivers events to subscriptions with retries and bookkeeping."""

    def __init__(
        self,
        registry: Registry,
        client: httpx.AsyncClient | None = None,
        max_concurrent: int = 32,
        user_agent: str = USER_AGENT,
        max_backoff_seconds: float = MAX_BACKOFF_SECONDS,
        body_limit: int = RESPONSE_BODY_LIMIT,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.registry = registry
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient()
        self.user_agent = user_agent
        self.max_backoff_seconds = max_backoff_seconds
        self.body_limit = body_limit
        self._sleep = sleep
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._tasks: set[asyncio.Task] = set()

    @property
    def inflight(self) -> int:
        return len(self._tasks)

    def backoff_seconds(self, retry_delay_seconds: float, exponent: int) -> float:
        return min(retry_delay_seconds * 2**exponent, self.max_backoff_seconds)

    async def deliver_webhook(
        self,
        subscription: WebhookSubscription,
        event: WebhookEvent,
        data: dict[str, Any],
    ) -> WebhookDelivery | None:
        """Deliver one event to one subscription, retrying on failure.

        Returns the final delivery record, or None if the record could not
        be created (nothing is sent in that case).
        """
        full_payload = {
            "event": event.value,
            "webhook_id": subscription.id,
            "agent_id": subscription.agent_id,
            "timestamp": _iso(utcnow()),
            "data": data,
        }
        # Serialized once: the signature covers these exact bytes on every attempt
        body = json.dumps(full_payload, separators=(",", ":"), default=str)
        signature = sign_payload(body, subscription.secret)
        max_attempts = subscription.max_attempts

        try:
            delivery = await self.registry.create_delivery(
                WebhookDelivery(
                    webhook_id=subscription.id,
                    agent_id=subscription.agent_id,
                    event=event,
                    payload=full_payload,
                    max_attempts=max_attempts,
                )
            )
        except Exception:
            logger.exception("Failed to create delivery record for webhook %s", subscription.id)
            return None

        result: DeliveryResult | None = None
        for attempt in range(1, max_attempts + 1):
            if attempt > 1:
                await self._sleep(
                    self.backoff_seconds(subscription.retry_delay_seconds, attempt - 2)
                )

            async with self._semaphore:
                result = await deliver_payload(
                    self.client,
                    subscription.url,
                    body,
                    signature,
                    event,
                    delivery.id,
                    subscription.timeout_ms,
                    user_agent=self.user_agent,
                    body_limit=self.body_limit,
                )

            if result.success:
                delivered_at = utcnow()
                await self.registry.update_delivery(
                    delivery.id,
                    status=DeliveryStatus.SUCCESS,
                    response_status=result.response_status,
                    response_body=result.response_body,
                    response_time_ms=result.response_time_ms,
                    attempt_number=attempt,
                    delivered_at=delivered_at,
                    next_retry_at=None,
                )
                await self.registry.record_webhook_success(subscription.id, delivered_at)
                logger.info(
                    "Webhook %s delivered %s (delivery=%s, attempt=%d, %.2fms)",
                    subscription.id,
                    event.value,
                    delivery.id,
                    attempt,
                    result.response_time_ms,
                )
                return await self.registry.get_delivery(delivery.id)

            if attempt < max_attempts:
                next_retry_at = utcnow() + timedelta(
                    seconds=self.backoff_seconds(subscription.retry_delay_seconds, attempt - 1)
                )
                await self.registry.update_delivery(
                    delivery.id,
                    status=DeliveryStatus.RETRYING,
                    attempt_number=attempt,
                    response_status=result.response_status,
                    error_message=result.error,
                    next_retry_at=next_retry_at,
                )
                logger.info(
                    "Webhook %s attempt %d/%d failed: %s",
                    subscription.id,
                    attempt,
                    max_attempts,
                    result.error,
                )

        last_error = (result.error if result else None) or "All delivery attempts failed"
        await self.registry.update_delivery(
            delivery.id,
            status=DeliveryStatus.FAILED,
            attempt_number=max_attempts,
            response_status=result.response_status if result else None,
            response_body=result.response_body if result else None,
            response_time_ms=result.response_time_ms if result else None,
            error_message=last_error,
            next_retry_at=None,
        )
        await self.registry.record_webhook_failure(subscription.id, last_error)
        logger.warning(
            "Webhook %s delivery of %s failed after %d attempt(s): %s",
            subscription.id,
            event.value,
            max_attempts,
            last_error,
        )
        return await self.registry.get_delivery(delivery.id)

    async def dispatch_event(
        self, agent_id: str, event: WebhookEvent, data: dict[str, Any]
    ) -> int:
        """Start background deliveries to every active subscription for the event.

        Returns the number of deliveries initiated.  Never raises for
        delivery problems.
        """
        try:
            subscriptions = await self.registry.list_active_webhooks_for_event(agent_id, event)
        except Exception:
            logger.exception("Failed to fetch webhooks for %s on agent %s", event.value, agent_id)
            return 0

        for subscription in subscriptions:
            task = asyncio.create_task(
                self.deliver_webhook(subscription, event, data),
                name=f"webhook:{subscription.id}:{event.value}",
            )
            self._tasks.add(task)
            task.add_done_callback(self._on_task_done)
        if subscriptions:
            logger.debug(
                "Dispatched %s for agent %s to %d webhook(s)",
                event.value,
                agent_id,
                len(subscriptions),
            )
        return len(subscriptions)

    async def send_test(self, subscription: WebhookSubscription) -> WebhookDelivery:
        """Synchronously deliver a test payload.

        Raises:
            DeliveryError: If the test delivery did not succeed.
        """
        delivery = await self.deliver_webhook(
            subscription, WebhookEvent.AGENT_UPDATED, {"test": True}
        )
        if delivery is None:
            raise DeliveryError(f"Could not record test delivery for webhook {subscription.id}")
        if delivery.status != DeliveryStatus.SUCCESS:
            raise DeliveryError(
                f"Test delivery to {subscription.url} failed: {delivery.error_message}"
            )
        return delivery

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Webhook delivery task %s failed", task.get_name(), exc_info=exc)

    async def drain(self) -> None:
        """Wait for in-flight deliveries to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        if self._owns_client:
            await self.client.aclose()

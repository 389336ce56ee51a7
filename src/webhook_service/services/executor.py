"""Single bounded HTTP attempt for a webhook delivery."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

import structlog
from aiohttp import ClientResponse, ClientSession, ClientTimeout

from webhook_service.core.exceptions import NotFoundError
from webhook_service.domain.enums import DeliveryStatus
from webhook_service.domain.models import WebhookDelivery, WebhookSubscription
from webhook_service.otel import get_tracer
from webhook_service.repositories.deliveries import WebhookDeliveryRepository
from webhook_service.repositories.subscriptions import WebhookSubscriptionRepository
from webhook_service.services.retry import RetryScheduler
from webhook_service.services.signing import encode_payload, sign_bytes

logger = structlog.get_logger(__name__)
tracer = get_tracer(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
EVENT_HEADER = "X-Webhook-Event"
DELIVERY_ID_HEADER = "X-Webhook-Delivery-Id"
TEST_HEADER = "X-Webhook-Test"
RESERVED_HEADERS = ("Content-Type", SIGNATURE_HEADER, EVENT_HEADER, DELIVERY_ID_HEADER)

DEFAULT_RESPONSE_BODY_LIMIT = 10_000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def storable_text(text: str | None, limit: int | None = None) -> str | None:
    """Postgres text cannot hold NUL; replace it and cut to *limit* characters."""
    if text is None:
        return None
    text = text.replace("\x00", "\ufffd")
    return text if limit is None else text[:limit]


async def read_body_prefix(resp: ClientResponse, limit: int) -> str:
    """Decode at most *limit* characters without reading the rest of the body."""
    # utf-8 needs up to 4 bytes per character
    max_bytes = limit * 4
    try:
        raw = await resp.content.readexactly(max_bytes)
    except asyncio.IncompleteReadError as exc:
        raw = exc.partial
    try:
        text = raw.decode(resp.charset or "utf-8", errors="replace")
    except LookupError:
        text = raw.decode("utf-8", errors="replace")
    return text[:limit]


def build_headers(
    subscription: WebhookSubscription,
    delivery: WebhookDelivery,
    body: bytes,
    *,
    user_agent: str | None = None,
) -> dict[str, str]:
    """Custom headers first, then the reserved ones, which always win."""
    reserved = {name.lower() for name in RESERVED_HEADERS}
    headers: dict[str, str] = {}
    if user_agent:
        headers["User-Agent"] = user_agent
    for name, value in subscription.headers.items():
        if name.lower() in reserved:
            continue
        if name.lower() == "user-agent":
            headers.pop("User-Agent", None)
        headers[name] = value
    headers["Content-Type"] = "application/json"
    headers[SIGNATURE_HEADER] = sign_bytes(body, subscription.secret_key)
    headers[EVENT_HEADER] = delivery.event_type.value
    headers[DELIVERY_ID_HEADER] = str(delivery.id)
    return headers


@dataclass
class AttemptOutcome:
    ok: bool
    status_code: int | None = None
    body: str | None = None
    error: str | None = None


class DeliveryExecutor:
    """Performs exactly one attempt and records it on the delivery row.

    Only the executor writes a delivery's status/retry fields. It claims the
    row with a conditional ``pending -> retrying`` update, so a second
    invocation on the same delivery (sweep racing a manual retry, or a
    terminal delivery) is a no-op.
    """

    def __init__(
        self,
        session: ClientSession,
        subscriptions: WebhookSubscriptionRepository,
        deliveries: WebhookDeliveryRepository,
        scheduler: RetryScheduler,
        *,
        response_body_limit: int = DEFAULT_RESPONSE_BODY_LIMIT,
        user_agent: str | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session = session
        self._subscriptions = subscriptions
        self._deliveries = deliveries
        self._scheduler = scheduler
        self._response_body_limit = response_body_limit
        self._user_agent = user_agent
        self._clock = clock

    async def execute(
        self,
        subscription: WebhookSubscription,
        delivery: WebhookDelivery,
        *,
        extra_headers: dict[str, str] | None = None,
    ) -> WebhookDelivery:
        if delivery.status.is_terminal:
            return delivery
        claimed = await self._deliveries.claim(delivery.id)
        if claimed is None:
            return await self._current(delivery)

        body = encode_payload(claimed.outbound_payload)
        headers = build_headers(subscription, claimed, body, user_agent=self._user_agent)
        if extra_headers:
            headers.update(extra_headers)

        with tracer.start_as_current_span("webhook.deliver") as span:
            span.set_attribute("webhook.id", str(subscription.id))
            span.set_attribute("webhook.delivery_id", str(claimed.id))
            span.set_attribute("webhook.event_type", claimed.event_type.value)
            span.set_attribute("webhook.attempt", claimed.retry_count + 1)
            outcome = await self._send(subscription, body, headers)
            if outcome.status_code is not None:
                span.set_attribute("http.status_code", outcome.status_code)

        if outcome.ok:
            return await self._record_success(subscription, claimed, outcome)
        return await self._record_failure(subscription, claimed, outcome)

    async def _current(self, delivery: WebhookDelivery) -> WebhookDelivery:
        """Latest stored state of a delivery we could not claim."""
        try:
            current = await self._deliveries.get(delivery.id)
        except NotFoundError:
            logger.info("webhook_delivery gone before attempt", delivery_id=str(delivery.id))
            return delivery
        logger.info(
            "webhook_delivery skipped",
            delivery_id=str(delivery.id),
            status=current.status.value,
        )
        return current

    async def _send(
        self, subscription: WebhookSubscription, body: bytes, headers: dict[str, str]
    ) -> AttemptOutcome:
        timeout = ClientTimeout(total=subscription.timeout_seconds)
        try:
            async with self._session.post(
                subscription.url,
                data=body,
                headers=headers,
                timeout=timeout,
            ) as resp:
                text = await read_body_prefix(resp, self._response_body_limit)
                ok = 200 <= resp.status < 300
                return AttemptOutcome(
                    ok=ok,
                    status_code=resp.status,
                    body=storable_text(text),
                    error=None if ok else f"HTTP {resp.status}",
                )
        except asyncio.TimeoutError:
            return AttemptOutcome(
                ok=False, error=f"Request timed out after {subscription.timeout_seconds:g}s"
            )
        except Exception as exc:
            return AttemptOutcome(ok=False, error=storable_text(str(exc) or type(exc).__name__))

    async def _complete(self, delivery: WebhookDelivery, **fields: Any) -> WebhookDelivery:
        updated = await self._deliveries.complete(delivery.id, **fields)
        if updated is not None:
            return updated
        try:
            return await self._deliveries.get(delivery.id)
        except NotFoundError:
            # subscription deleted mid-attempt; the row went with it
            logger.info("webhook_delivery gone after attempt", delivery_id=str(delivery.id))
            return delivery.model_copy(update=fields)

    async def _record_success(
        self,
        subscription: WebhookSubscription,
        delivery: WebhookDelivery,
        outcome: AttemptOutcome,
    ) -> WebhookDelivery:
        now = self._clock()
        updated = await self._complete(
            delivery,
            status=DeliveryStatus.SUCCESS,
            retry_count=delivery.retry_count + 1,
            response_status=outcome.status_code,
            response_body=outcome.body,
            error_message=None,
            next_retry_at=None,
            delivered_at=now,
        )
        await self._subscriptions.touch_last_triggered(subscription.id, now)
        logger.info(
            "webhook_delivery succeeded",
            webhook_id=str(subscription.id),
            delivery_id=str(delivery.id),
            status_code=outcome.status_code,
            attempt=delivery.retry_count + 1,
        )
        return updated

    async def _record_failure(
        self,
        subscription: WebhookSubscription,
        delivery: WebhookDelivery,
        outcome: AttemptOutcome,
    ) -> WebhookDelivery:
        now = self._clock()
        retry_count = delivery.retry_count + 1
        next_retry_at = self._scheduler.next_retry_at(subscription, retry_count, now)
        terminal = next_retry_at is None
        updated = await self._complete(
            delivery,
            status=DeliveryStatus.FAILED if terminal else DeliveryStatus.PENDING,
            retry_count=retry_count,
            response_status=outcome.status_code,
            response_body=outcome.body,
            error_message=outcome.error,
            next_retry_at=next_retry_at,
            delivered_at=now if terminal else None,
        )
        if terminal:
            await self._subscriptions.mark_failed(subscription.id)
            logger.warning(
                "webhook_delivery failed",
                webhook_id=str(subscription.id),
                delivery_id=str(delivery.id),
                attempts=retry_count,
                error=outcome.error,
            )
        else:
            logger.info(
                "webhook_delivery retry scheduled",
                webhook_id=str(subscription.id),
                delivery_id=str(delivery.id),
                attempt=retry_count,
                next_retry_at=next_retry_at.isoformat(),
                error=outcome.error,
            )
        return updated

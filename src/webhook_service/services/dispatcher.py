"""Event fan-out to webhook subscriptions."""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Iterable, List
from uuid import UUID

import structlog

from webhook_service.core.exceptions import InvalidStatusTransitionError
from webhook_service.domain.enums import DeliveryStatus, WebhookEventType
from webhook_service.domain.models import WebhookDelivery, WebhookEvent, WebhookSubscription
from webhook_service.repositories.deliveries import WebhookDeliveryRepository
from webhook_service.repositories.subscriptions import WebhookSubscriptionRepository
from webhook_service.services.executor import TEST_HEADER, DeliveryExecutor
from webhook_service.services.transform import PayloadTransformer, SandboxedTransformer, apply_transform

logger = structlog.get_logger(__name__)

TEST_MESSAGE = "This is a test webhook delivery"


async def _settle(coros: Iterable[Awaitable[WebhookDelivery]]) -> List[WebhookDelivery]:
    """Run *coros* concurrently; re-raise the first error once all have finished.

    Delivery errors never reach this point (the executor records them), so
    anything raised here is systemic, e.g. the database being unavailable.
    """
    results = await asyncio.gather(*coros, return_exceptions=True)
    errors = [r for r in results if isinstance(r, BaseException)]
    for error in errors:
        logger.error("webhook_fanout branch failed", error=str(error), error_type=type(error).__name__)
    if errors:
        raise errors[0]
    return [r for r in results if isinstance(r, WebhookDelivery)]


class WebhookDispatcher:
    """Delivers events to every interested subscription, each in isolation."""

    def __init__(
        self,
        subscriptions: WebhookSubscriptionRepository,
        deliveries: WebhookDeliveryRepository,
        executor: DeliveryExecutor,
        *,
        transformer: PayloadTransformer | None = None,
        transform_timeout_seconds: float = 1.0,
        transform_workers: int = 4,
    ):
        self._subscriptions = subscriptions
        self._deliveries = deliveries
        self._executor = executor
        self._owned_sandbox = (
            SandboxedTransformer(max_workers=transform_workers) if transformer is None else None
        )
        self._transformer: PayloadTransformer = transformer or self._owned_sandbox
        self._transform_timeout_seconds = transform_timeout_seconds

    def close(self) -> None:
        """Stop transform workers this dispatcher started."""
        if self._owned_sandbox is not None:
            self._owned_sandbox.close()

    async def dispatch(
        self,
        workspace_id: UUID,
        event_type: WebhookEventType,
        payload: dict[str, Any],
    ) -> List[WebhookDelivery]:
        """Fan *payload* out to the workspace's active subscriptions for *event_type*.

        Returns one delivery per subscription, in its post-attempt state.
        Individual delivery failures are recorded, not raised.
        """
        event = WebhookEvent(workspace_id=workspace_id, event_type=event_type, payload=payload)
        subs = await self._subscriptions.list_active_matching(workspace_id, event.event_type)
        logger.info(
            "webhook_event dispatched",
            workspace_id=str(workspace_id),
            event_type=event.event_type.value,
            subscriptions=len(subs),
        )
        return await _settle(self._deliver_to(sub, event) for sub in subs)

    async def send_test(self, subscription: WebhookSubscription) -> WebhookDelivery:
        """Send a synthetic ``webhook.test`` event through the production path."""
        now = datetime.now(timezone.utc)
        event = WebhookEvent(
            workspace_id=subscription.workspace_id,
            event_type=WebhookEventType.WEBHOOK_TEST,
            payload={"test": True, "message": TEST_MESSAGE, "timestamp": now.isoformat()},
            timestamp=now,
        )
        return await self._deliver_to(subscription, event, extra_headers={TEST_HEADER: "true"})

    async def retry_delivery(
        self, subscription: WebhookSubscription, delivery_id: UUID
    ) -> WebhookDelivery:
        """Manually re-attempt a pending or failed delivery right away."""
        delivery = await self._deliveries.get_for_webhook(subscription.id, delivery_id)
        if delivery.status in (DeliveryStatus.SUCCESS, DeliveryStatus.RETRYING):
            raise InvalidStatusTransitionError(
                f"Delivery is {delivery.status.value} and cannot be retried"
            )
        requeued = await self._deliveries.requeue(delivery.id)
        if requeued is None:
            raise InvalidStatusTransitionError("Delivery changed state and cannot be retried")
        logger.info(
            "webhook_delivery manual retry",
            webhook_id=str(subscription.id),
            delivery_id=str(delivery.id),
            retry_count=requeued.retry_count,
        )
        return await self._executor.execute(subscription, requeued)

    async def process_due_retries(self, now: datetime, *, limit: int = 100) -> int:
        """Re-attempt pending deliveries whose ``next_retry_at`` has passed."""
        due = await self._deliveries.list_due(now, limit=limit)
        if not due:
            return 0
        subs = await self._subscriptions.get_many(list({d.webhook_id for d in due}))
        runnable = [d for d in due if d.webhook_id in subs]
        await _settle(self._executor.execute(subs[d.webhook_id], d) for d in runnable)
        return len(runnable)

    async def _deliver_to(
        self,
        subscription: WebhookSubscription,
        event: WebhookEvent,
        *,
        extra_headers: dict[str, str] | None = None,
    ) -> WebhookDelivery:
        transformed = await self._prepare_payload(subscription, event.payload)
        delivery = await self._deliveries.create(
            webhook_id=subscription.id,
            event_type=event.event_type,
            payload=event.payload,
            transformed_payload=transformed,
        )
        return await self._executor.execute(subscription, delivery, extra_headers=extra_headers)

    async def _prepare_payload(self, subscription: WebhookSubscription, payload: dict[str, Any]) -> Any:
        if not (subscription.transform_enabled and subscription.transform_script):
            return payload
        return await apply_transform(
            self._transformer,
            payload,
            subscription.transform_script,
            timeout_seconds=self._transform_timeout_seconds,
            webhook_id=subscription.id,
        )

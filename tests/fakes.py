"""In-memory stand-ins for the asyncpg repositories.

They mirror the repository method signatures and the conditional status
transitions so the delivery pipeline can be exercised without Postgres.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID

from webhook_service.core.exceptions import NotFoundError
from webhook_service.domain.enums import DeliveryStatus, WebhookEventType, WebhookStatus
from webhook_service.domain.models import WebhookDelivery, WebhookStats, WebhookSubscription


def _now() -> datetime:
    return datetime.now(timezone.utc)


def make_subscription(**overrides: Any) -> WebhookSubscription:
    now = _now()
    data: dict[str, Any] = {
        "id": uuid.uuid4(),
        "workspace_id": uuid.uuid4(),
        "name": "CRM hook",
        "url": "http://127.0.0.1:1/hook",
        "secret_key": "a" * 64,
        "events": [WebhookEventType.LEAD_CREATED],
        "created_at": now,
        "updated_at": now,
    }
    data.update(overrides)
    return WebhookSubscription(**data)


class FakeSubscriptionRepository:
    def __init__(self) -> None:
        self.items: dict[UUID, WebhookSubscription] = {}
        # deliveries of a deleted subscription go with it, like ON DELETE CASCADE
        self.deliveries: dict[UUID, WebhookDelivery] = {}

    def add(self, subscription: WebhookSubscription) -> WebhookSubscription:
        self.items[subscription.id] = subscription
        return subscription

    async def create(self, *, workspace_id: UUID, **fields: Any) -> WebhookSubscription:
        sub = make_subscription(workspace_id=workspace_id, status=WebhookStatus.ACTIVE, **fields)
        return self.add(sub)

    async def get(self, subscription_id: UUID) -> WebhookSubscription:
        try:
            return self.items[subscription_id]
        except KeyError:
            raise NotFoundError("Webhook not found") from None

    async def get_for_workspace(self, workspace_id: UUID, subscription_id: UUID) -> WebhookSubscription:
        sub = self.items.get(subscription_id)
        if sub is None or sub.workspace_id != workspace_id:
            raise NotFoundError("Webhook not found")
        return sub

    async def get_many(self, subscription_ids: list[UUID]) -> dict[UUID, WebhookSubscription]:
        return {i: self.items[i] for i in subscription_ids if i in self.items}

    async def list_by_workspace(
        self, workspace_id: UUID, *, limit: int = 50, offset: int = 0
    ) -> tuple[list[WebhookSubscription], int]:
        matching = [s for s in self.items.values() if s.workspace_id == workspace_id]
        return matching[offset : offset + limit], len(matching)

    async def list_active_matching(
        self, workspace_id: UUID, event_type: WebhookEventType
    ) -> list[WebhookSubscription]:
        return [
            s
            for s in self.items.values()
            if s.workspace_id == workspace_id
            and s.status == WebhookStatus.ACTIVE
            and event_type in s.events
        ]

    async def _replace(self, workspace_id: UUID, subscription_id: UUID, **changes: Any) -> WebhookSubscription:
        sub = await self.get_for_workspace(workspace_id, subscription_id)
        updated = sub.model_copy(update={**changes, "updated_at": _now()})
        self.items[sub.id] = updated
        return updated

    async def update(
        self, workspace_id: UUID, subscription_id: UUID, changes: dict[str, Any]
    ) -> WebhookSubscription:
        return await self._replace(workspace_id, subscription_id, **changes)

    async def set_status(
        self, workspace_id: UUID, subscription_id: UUID, status: WebhookStatus
    ) -> WebhookSubscription:
        return await self._replace(workspace_id, subscription_id, status=WebhookStatus(status))

    async def set_secret(
        self, workspace_id: UUID, subscription_id: UUID, secret_key: str
    ) -> WebhookSubscription:
        return await self._replace(workspace_id, subscription_id, secret_key=secret_key)

    async def mark_failed(self, subscription_id: UUID) -> None:
        sub = self.items.get(subscription_id)
        if sub is None:
            return
        self.items[subscription_id] = sub.model_copy(update={"status": WebhookStatus.FAILED})

    async def touch_last_triggered(self, subscription_id: UUID, triggered_at: datetime) -> None:
        sub = self.items.get(subscription_id)
        if sub is None:
            return
        self.items[subscription_id] = sub.model_copy(update={"last_triggered_at": triggered_at})

    async def delete(self, workspace_id: UUID, subscription_id: UUID) -> None:
        await self.get_for_workspace(workspace_id, subscription_id)
        del self.items[subscription_id]
        gone = [d.id for d in self.deliveries.values() if d.webhook_id == subscription_id]
        for delivery_id in gone:
            del self.deliveries[delivery_id]


class FakeDeliveryRepository:
    def __init__(self, subscriptions: FakeSubscriptionRepository) -> None:
        self.items: dict[UUID, WebhookDelivery] = {}
        self._subscriptions = subscriptions
        subscriptions.deliveries = self.items

    def add(self, delivery: WebhookDelivery) -> WebhookDelivery:
        self.items[delivery.id] = delivery
        return delivery

    def _update(self, delivery: WebhookDelivery, **changes: Any) -> WebhookDelivery:
        updated = delivery.model_copy(update={**changes, "updated_at": _now()})
        self.items[delivery.id] = updated
        return updated

    async def create(
        self,
        *,
        webhook_id: UUID,
        event_type: WebhookEventType,
        payload: Any,
        transformed_payload: Any,
    ) -> WebhookDelivery:
        now = _now()
        return self.add(
            WebhookDelivery(
                id=uuid.uuid4(),
                webhook_id=webhook_id,
                event_type=event_type,
                payload=payload,
                transformed_payload=transformed_payload,
                status=DeliveryStatus.PENDING,
                retry_count=0,
                created_at=now,
                updated_at=now,
            )
        )

    async def get(self, delivery_id: UUID) -> WebhookDelivery:
        try:
            return self.items[delivery_id]
        except KeyError:
            raise NotFoundError("Webhook delivery not found") from None

    async def get_for_webhook(self, webhook_id: UUID, delivery_id: UUID) -> WebhookDelivery:
        delivery = self.items.get(delivery_id)
        if delivery is None or delivery.webhook_id != webhook_id:
            raise NotFoundError("Webhook delivery not found")
        return delivery

    async def list_by_webhook(
        self,
        webhook_id: UUID,
        *,
        status: DeliveryStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[WebhookDelivery], int]:
        matching = [
            d
            for d in self.items.values()
            if d.webhook_id == webhook_id and (status is None or d.status == status)
        ]
        return matching[offset : offset + limit], len(matching)

    async def claim(self, delivery_id: UUID) -> WebhookDelivery | None:
        delivery = self.items.get(delivery_id)
        if delivery is None or delivery.status != DeliveryStatus.PENDING:
            return None
        return self._update(delivery, status=DeliveryStatus.RETRYING)

    async def complete(self, delivery_id: UUID, **fields: Any) -> WebhookDelivery | None:
        for column in ("response_body", "error_message"):
            if "\x00" in (fields.get(column) or ""):
                raise ValueError(f"{column}: text columns cannot contain NUL")
        delivery = self.items.get(delivery_id)
        if delivery is None or delivery.status != DeliveryStatus.RETRYING:
            return None
        return self._update(delivery, **fields)

    async def requeue(self, delivery_id: UUID) -> WebhookDelivery | None:
        delivery = self.items.get(delivery_id)
        if delivery is None or delivery.status not in (DeliveryStatus.PENDING, DeliveryStatus.FAILED):
            return None
        return self._update(
            delivery, status=DeliveryStatus.PENDING, next_retry_at=None, delivered_at=None
        )

    async def list_due(self, now: datetime, *, limit: int = 100) -> list[WebhookDelivery]:
        active = {
            s.id for s in self._subscriptions.items.values() if s.status == WebhookStatus.ACTIVE
        }
        due = [
            d
            for d in self.items.values()
            if d.status == DeliveryStatus.PENDING
            and d.next_retry_at is not None
            and d.next_retry_at <= now
            and d.webhook_id in active
        ]
        due.sort(key=lambda d: d.next_retry_at)
        return due[:limit]

    async def stats(self, webhook_id: UUID) -> WebhookStats:
        mine = [d for d in self.items.values() if d.webhook_id == webhook_id]
        return WebhookStats.from_counts(
            total=len(mine),
            success=sum(d.status == DeliveryStatus.SUCCESS for d in mine),
            failed=sum(d.status == DeliveryStatus.FAILED for d in mine),
            pending=sum(d.status in (DeliveryStatus.PENDING, DeliveryStatus.RETRYING) for d in mine),
        )

    async def reclaim_stuck(self, updated_before: datetime) -> int:
        stuck = [
            d
            for d in self.items.values()
            if d.status == DeliveryStatus.RETRYING and d.updated_at < updated_before
        ]
        for d in stuck:
            self._update(d, status=DeliveryStatus.PENDING, next_retry_at=_now())
        return len(stuck)

    async def delete_old_succeeded(self, created_before: datetime) -> int:
        old = [
            d.id
            for d in self.items.values()
            if d.status == DeliveryStatus.SUCCESS and d.created_at < created_before
        ]
        for delivery_id in old:
            del self.items[delivery_id]
        return len(old)


class FakeClock:
    """Controllable replacement for ``executor.utcnow``."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now

"""Webhook subscription management (CRUD, lifecycle, delivery history)."""
from __future__ import annotations

import secrets
from typing import List
from uuid import UUID

import structlog

from webhook_service.core.exceptions import ConfigurationError
from webhook_service.domain.dto import WebhookCreateDTO, WebhookUpdateDTO
from webhook_service.domain.enums import DeliveryStatus, WebhookStatus
from webhook_service.domain.models import WebhookDelivery, WebhookStats, WebhookSubscription
from webhook_service.repositories.deliveries import WebhookDeliveryRepository
from webhook_service.repositories.subscriptions import WebhookSubscriptionRepository

logger = structlog.get_logger(__name__)


def generate_secret_key() -> str:
    """64 hex characters (32 random bytes)."""
    return secrets.token_hex(32)


class WebhookSubscriptionService:
    def __init__(
        self,
        subscription_repository: WebhookSubscriptionRepository,
        delivery_repository: WebhookDeliveryRepository,
        *,
        default_timeout_seconds: float = 30.0,
    ):
        self._subscriptions = subscription_repository
        self._deliveries = delivery_repository
        self._default_timeout_seconds = default_timeout_seconds

    async def create_subscription(
        self,
        workspace_id: UUID,
        dto: WebhookCreateDTO,
        *,
        created_by: UUID | None = None,
    ) -> WebhookSubscription:
        if dto.transform_enabled and not (dto.transform_script or "").strip():
            raise ConfigurationError("transform_script is required when transform_enabled is true")
        sub = await self._subscriptions.create(
            workspace_id=workspace_id,
            name=dto.name,
            url=str(dto.url),
            secret_key=generate_secret_key(),
            events=dto.events,
            description=dto.description,
            headers=dto.headers,
            transform_enabled=dto.transform_enabled,
            transform_script=dto.transform_script,
            retry_enabled=dto.retry_enabled,
            max_retries=dto.max_retries,
            retry_delay=dto.retry_delay,
            timeout_seconds=dto.timeout_seconds or self._default_timeout_seconds,
            created_by=created_by,
        )
        logger.info("webhook created", webhook_id=str(sub.id), workspace_id=str(workspace_id))
        return sub

    async def get_subscription(self, workspace_id: UUID, subscription_id: UUID) -> WebhookSubscription:
        return await self._subscriptions.get_for_workspace(workspace_id, subscription_id)

    async def list_subscriptions(
        self, workspace_id: UUID, *, limit: int = 50, offset: int = 0
    ) -> tuple[List[WebhookSubscription], int]:
        return await self._subscriptions.list_by_workspace(workspace_id, limit=limit, offset=offset)

    async def update_subscription(
        self, workspace_id: UUID, subscription_id: UUID, dto: WebhookUpdateDTO
    ) -> WebhookSubscription:
        changes = dto.changes()
        if changes.get("transform_enabled"):
            script = changes.get("transform_script")
            if "transform_script" not in changes:
                current = await self._subscriptions.get_for_workspace(workspace_id, subscription_id)
                script = current.transform_script
            if not (script or "").strip():
                raise ConfigurationError("transform_script is required when transform_enabled is true")
        return await self._subscriptions.update(workspace_id, subscription_id, changes)

    async def delete_subscription(self, workspace_id: UUID, subscription_id: UUID) -> None:
        await self._subscriptions.delete(workspace_id, subscription_id)
        logger.info("webhook deleted", webhook_id=str(subscription_id))

    async def enable(self, workspace_id: UUID, subscription_id: UUID) -> WebhookSubscription:
        """Reactivate an inactive or failed subscription; parked retries resume."""
        return await self._subscriptions.set_status(workspace_id, subscription_id, WebhookStatus.ACTIVE)

    async def disable(self, workspace_id: UUID, subscription_id: UUID) -> WebhookSubscription:
        return await self._subscriptions.set_status(workspace_id, subscription_id, WebhookStatus.INACTIVE)

    async def rotate_secret(self, workspace_id: UUID, subscription_id: UUID) -> WebhookSubscription:
        sub = await self._subscriptions.set_secret(workspace_id, subscription_id, generate_secret_key())
        logger.info("webhook secret rotated", webhook_id=str(subscription_id))
        return sub

    async def list_deliveries(
        self,
        workspace_id: UUID,
        subscription_id: UUID,
        *,
        status: DeliveryStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[List[WebhookDelivery], int]:
        sub = await self._subscriptions.get_for_workspace(workspace_id, subscription_id)
        return await self._deliveries.list_by_webhook(sub.id, status=status, limit=limit, offset=offset)

    async def get_delivery(
        self, workspace_id: UUID, subscription_id: UUID, delivery_id: UUID
    ) -> WebhookDelivery:
        sub = await self._subscriptions.get_for_workspace(workspace_id, subscription_id)
        return await self._deliveries.get_for_webhook(sub.id, delivery_id)

    async def stats(self, workspace_id: UUID, subscription_id: UUID) -> WebhookStats:
        sub = await self._subscriptions.get_for_workspace(workspace_id, subscription_id)
        return await self._deliveries.stats(sub.id)

"""Webhook domain models."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from webhook_service.domain.enums import DeliveryStatus, WebhookEventType, WebhookStatus


class WebhookSubscription(BaseModel):
    id: UUID
    workspace_id: UUID
    name: str
    description: str | None = None
    url: str
    status: WebhookStatus = WebhookStatus.ACTIVE
    secret_key: str
    events: list[WebhookEventType] = Field(default_factory=list)
    headers: dict[str, str] = Field(default_factory=dict)
    transform_enabled: bool = False
    transform_script: str | None = None
    retry_enabled: bool = True
    max_retries: int = 3
    retry_delay: int = 5
    timeout_seconds: float = 30.0
    created_by: UUID | None = None
    created_at: datetime
    updated_at: datetime
    last_triggered_at: datetime | None = None

    def public_dump(self) -> dict[str, Any]:
        """JSON representation without the signing secret."""
        return self.model_dump(mode="json", exclude={"secret_key"})


class WebhookDelivery(BaseModel):
    id: UUID
    webhook_id: UUID
    event_type: WebhookEventType
    payload: Any
    transformed_payload: Any = None
    status: DeliveryStatus = DeliveryStatus.PENDING
    response_status: int | None = None
    response_body: str | None = None
    error_message: str | None = None
    retry_count: int = 0
    next_retry_at: datetime | None = None
    delivered_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @property
    def outbound_payload(self) -> Any:
        """Payload actually sent: the transformed one when present."""
        if self.transformed_payload is not None:
            return self.transformed_payload
        return self.payload


class WebhookEvent(BaseModel):
    """Ephemeral domain event; persisted only through the deliveries it spawns."""

    workspace_id: UUID
    event_type: WebhookEventType
    payload: dict[str, Any]
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class WebhookStats(BaseModel):
    total_deliveries: int = 0
    successful_deliveries: int = 0
    failed_deliveries: int = 0
    pending_deliveries: int = 0
    success_rate: float = 0.0

    @classmethod
    def from_counts(cls, *, total: int, success: int, failed: int, pending: int) -> "WebhookStats":
        rate = (success / total) * 100 if total else 0.0
        return cls(
            total_deliveries=total,
            successful_deliveries=success,
            failed_deliveries=failed,
            pending_deliveries=pending,
            success_rate=round(rate, 2),
        )

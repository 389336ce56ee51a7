"""Domain enums for webhook subscriptions and deliveries."""
from __future__ import annotations

from enum import Enum


class WebhookStatus(str, Enum):
    """Subscription lifecycle."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    FAILED = "failed"


class DeliveryStatus(str, Enum):
    """Delivery lifecycle: pending -> retrying -> success | pending | failed."""

    PENDING = "pending"
    RETRYING = "retrying"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (DeliveryStatus.SUCCESS, DeliveryStatus.FAILED)


class WebhookEventType(str, Enum):
    """CRM domain events a subscription can listen to."""

    LEAD_CREATED = "lead.created"
    LEAD_UPDATED = "lead.updated"
    LEAD_DELETED = "lead.deleted"
    LEAD_STATUS_CHANGED = "lead.status_changed"
    APPOINTMENT_CREATED = "appointment.created"
    APPOINTMENT_UPDATED = "appointment.updated"
    APPOINTMENT_CANCELLED = "appointment.cancelled"
    FILE_UPLOADED = "file.uploaded"
    FILE_DELETED = "file.deleted"
    # Reserved for manual test deliveries; cannot be subscribed to.
    WEBHOOK_TEST = "webhook.test"

    @classmethod
    def subscribable(cls) -> list["WebhookEventType"]:
        return [member for member in cls if member is not cls.WEBHOOK_TEST]

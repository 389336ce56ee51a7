"""Repository package exports."""

from webhook_service.repositories.deliveries import WebhookDeliveryRepository
from webhook_service.repositories.subscriptions import WebhookSubscriptionRepository

__all__ = [
    "WebhookDeliveryRepository",
    "WebhookSubscriptionRepository",
]

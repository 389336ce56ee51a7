"""Domain services exports."""

from webhook_service.services.dispatcher import WebhookDispatcher
from webhook_service.services.executor import DeliveryExecutor
from webhook_service.services.retry import RetryScheduler
from webhook_service.services.subscriptions import WebhookSubscriptionService

__all__ = [
    "DeliveryExecutor",
    "RetryScheduler",
    "WebhookDispatcher",
    "WebhookSubscriptionService",
]

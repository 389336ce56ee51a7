"""Exponential backoff for failed webhook deliveries."""
from __future__ import annotations

from datetime import datetime, timedelta

from webhook_service.domain.models import WebhookSubscription


def backoff_delay(retry_count: int, base_delay_seconds: int, *, max_delay_seconds: int | None = None) -> timedelta:
    """``base * 2**retry_count`` seconds.

    *retry_count* is the number of attempts already made, i.e. the count
    after the failed attempt was recorded: the first retry waits
    ``base * 2``, the second ``base * 4``.
    """
    seconds = base_delay_seconds * 2**retry_count
    if max_delay_seconds is not None:
        seconds = min(seconds, max_delay_seconds)
    return timedelta(seconds=seconds)


class RetryScheduler:
    """Decides when (if ever) a failed delivery is attempted again.

    The scheduler never sleeps: it only produces ``next_retry_at``. The
    retry sweep picks up due deliveries later.
    """

    def __init__(self, *, max_delay_seconds: int | None = None):
        self._max_delay_seconds = max_delay_seconds

    def retries_remain(self, subscription: WebhookSubscription, retry_count: int) -> bool:
        return subscription.retry_enabled and retry_count < subscription.max_retries

    def next_retry_at(
        self, subscription: WebhookSubscription, retry_count: int, now: datetime
    ) -> datetime | None:
        """Absolute time of the next attempt, or ``None`` when the delivery is exhausted."""
        if not self.retries_remain(subscription, retry_count):
            return None
        return now + backoff_delay(
            retry_count,
            subscription.retry_delay,
            max_delay_seconds=self._max_delay_seconds,
        )

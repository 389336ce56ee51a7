"""Worker: reclaim stuck webhook deliveries."""
from __future__ import annotations

from datetime import datetime, timedelta

from backend_common.worker import TaskFn
from webhook_service.workers.types import ComponentsProvider


def make_webhook_reclaim(components: ComponentsProvider, *, stuck_minutes: int) -> TaskFn:
    async def webhook_reclaim_stuck(now: datetime) -> str | None:
        """Release deliveries stuck in ``retrying`` longer than *stuck_minutes*."""
        cutoff = now - timedelta(minutes=stuck_minutes)
        reclaimed = await components().deliveries.reclaim_stuck(cutoff)
        return f"reclaimed={reclaimed}" if reclaimed else None

    return webhook_reclaim_stuck

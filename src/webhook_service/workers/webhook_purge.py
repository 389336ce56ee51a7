"""Worker: purge old succeeded webhook deliveries."""
from __future__ import annotations

from datetime import datetime, timedelta

from backend_common.worker import TaskFn
from webhook_service.workers.types import ComponentsProvider


def make_webhook_purge(components: ComponentsProvider, *, retention_days: int) -> TaskFn:
    async def webhook_purge_succeeded(now: datetime) -> str | None:
        cutoff = now - timedelta(days=retention_days)
        purged = await components().deliveries.delete_old_succeeded(cutoff)
        return f"purged={purged}" if purged else None

    return webhook_purge_succeeded

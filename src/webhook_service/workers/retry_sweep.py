"""Worker: re-attempt webhook deliveries whose retry time has come."""
from __future__ import annotations

from datetime import datetime

from backend_common.worker import TaskFn
from webhook_service.workers.types import ComponentsProvider


def make_retry_sweep(components: ComponentsProvider, *, batch_size: int = 100) -> TaskFn:
    async def webhook_retry_sweep(now: datetime) -> str | None:
        processed = await components().dispatcher.process_due_retries(now, limit=batch_size)
        return f"processed={processed}" if processed else None

    return webhook_retry_sweep

"""Background workers for the webhook service.

Each module exports a factory returning an async task function compatible
with :class:`backend_common.worker.WorkerTask`. :func:`create_workers`
groups them into two loops: the fast retry sweep and the slower
maintenance worker.
"""
from __future__ import annotations

from aiohttp import web

from backend_common.worker import BackgroundWorker, WorkerTask
from webhook_service.services.dependencies import get_components
from webhook_service.settings import Settings
from webhook_service.workers.retry_sweep import make_retry_sweep
from webhook_service.workers.webhook_purge import make_webhook_purge
from webhook_service.workers.webhook_reclaim import make_webhook_reclaim

# each maintenance task is a single UPDATE or DELETE
MAINTENANCE_TASK_TIMEOUT_SECONDS = 60.0


def create_workers(app: web.Application, settings: Settings) -> list[BackgroundWorker]:
    def components():
        return get_components(app)

    retry_sweep = BackgroundWorker(
        name="webhook_retry_sweep",
        interval_seconds=settings.webhook_sweep_interval_seconds,
        tasks=[
            WorkerTask(
                name="webhook_retry_sweep",
                fn=make_retry_sweep(components, batch_size=settings.webhook_sweep_batch_size),
            ),
        ],
    )
    maintenance = BackgroundWorker(
        name="webhook_maintenance",
        interval_seconds=settings.worker_interval_seconds,
        # reclaim deliveries orphaned by the previous process right away
        run_on_start=True,
        tasks=[
            WorkerTask(
                name="webhook_reclaim_stuck",
                fn=make_webhook_reclaim(components, stuck_minutes=settings.webhook_stuck_minutes),
                timeout_seconds=MAINTENANCE_TASK_TIMEOUT_SECONDS,
            ),
            WorkerTask(
                name="webhook_purge_succeeded",
                fn=make_webhook_purge(
                    components, retention_days=settings.webhook_succeeded_retention_days
                ),
                timeout_seconds=MAINTENANCE_TASK_TIMEOUT_SECONDS,
            ),
        ],
    )
    return [retry_sweep, maintenance]


__all__ = ["create_workers"]

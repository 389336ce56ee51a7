"""Named periodic background workers bound to an aiohttp app lifecycle.

Usage::

    from backend_common.worker import BackgroundWorker, WorkerTask

    async def sweep_retries(now: datetime) -> str | None:
        processed = await dispatcher.process_due_retries(now)
        return f"processed={processed}" if processed else None

    worker = BackgroundWorker(
        name="webhook_retry_sweep",
        interval_seconds=5.0,
        tasks=[WorkerTask(name="retry_sweep", fn=sweep_retries)],
    )

    app.on_startup.append(worker.start)
    app.on_cleanup.append(worker.stop)
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Sequence

import structlog
from aiohttp import web

logger = structlog.get_logger(__name__)

# Receives the sweep's UTC time; a non-empty return value is logged as the summary.
TaskFn = Callable[[datetime], Awaitable[str | None]]


@dataclass(frozen=True)
class WorkerTask:
    name: str
    fn: TaskFn
    # cancelled and logged when exceeded; None means unbounded
    timeout_seconds: float | None = None


@dataclass
class BackgroundWorker:
    """Asyncio loop that sweeps its tasks every ``interval_seconds``.

    Tasks in a sweep run one after another. A task that raises or times out
    is logged and does not prevent the rest of the sweep. With
    ``run_on_start`` the first sweep happens immediately instead of after
    one interval. Workers sharing an app need distinct names.
    """

    name: str = "background_worker"
    interval_seconds: float = 60.0
    tasks: Sequence[WorkerTask] = field(default_factory=list)
    run_on_start: bool = False

    @property
    def app_key(self) -> str:
        return f"__worker_{self.name}__"

    async def start(self, app: web.Application) -> None:
        app[self.app_key] = asyncio.create_task(self._loop(), name=self.name)

    async def stop(self, app: web.Application) -> None:
        task: asyncio.Task | None = app.get(self.app_key)
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def run_once(self, now: datetime | None = None) -> None:
        now = now or datetime.now(timezone.utc)
        for task in self.tasks:
            await self._run_task(task, now)

    async def _run_task(self, task: WorkerTask, now: datetime) -> None:
        log = logger.bind(worker=self.name, task=task.name)
        try:
            if task.timeout_seconds is None:
                summary = await task.fn(now)
            else:
                summary = await asyncio.wait_for(task.fn(now), timeout=task.timeout_seconds)
        except asyncio.TimeoutError:
            log.warning("background_task timed out", timeout_seconds=task.timeout_seconds)
        except Exception:
            log.exception("background_task failed")
        else:
            if summary:
                log.info("background_task completed", summary=summary)

    async def _loop(self) -> None:
        logger.info(
            "background_worker started",
            worker=self.name,
            interval_seconds=self.interval_seconds,
            tasks=[t.name for t in self.tasks],
        )
        first = True
        while True:
            try:
                if not (first and self.run_on_start):
                    await asyncio.sleep(self.interval_seconds)
                first = False
                await self.run_once()
            except asyncio.CancelledError:
                logger.info("background_worker stopped", worker=self.name)
                raise
            except Exception:
                logger.exception("background_worker sweep failed", worker=self.name)

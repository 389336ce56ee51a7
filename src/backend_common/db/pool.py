"""Asyncpg connection pool owned by the aiohttp application."""
from __future__ import annotations

from typing import Any, Awaitable, Callable, Protocol

import asyncpg  # type: ignore[import-untyped]
from aiohttp import web

POOL_KEY = "db_pool"


class SettingsProtocol(Protocol):
    """Protocol for settings objects with database configuration."""

    database_url: Any
    db_pool_size: int


async def create_pool(settings: SettingsProtocol) -> asyncpg.Pool:
    """Open a new asyncpg pool for the configured database."""
    return await asyncpg.create_pool(
        dsn=str(settings.database_url),
        max_size=settings.db_pool_size,
    )


def get_pool(app: web.Application) -> asyncpg.Pool:
    """Return the pool attached to *app* (raises if startup has not run)."""
    pool = app.get(POOL_KEY)
    if pool is None:
        raise RuntimeError("Database pool not initialized. Register init_pool on startup first.")
    return pool


async def ping_pool(app: web.Application) -> None:
    """Health check: round-trip a trivial query through the pool."""
    async with get_pool(app).acquire() as conn:
        await conn.fetchval("SELECT 1")


def create_pool_hooks(
    settings: SettingsProtocol,
) -> tuple[
    Callable[[web.Application], Awaitable[None]],
    Callable[[web.Application], Awaitable[None]],
]:
    """Create ``on_startup``/``on_cleanup`` hooks that own the app's pool.

    Returns:
        Tuple of (init_pool, close_pool) coroutine functions.
    """

    async def init_pool(app: web.Application) -> None:
        if app.get(POOL_KEY) is None:
            app[POOL_KEY] = await create_pool(settings)

    async def close_pool(app: web.Application) -> None:
        pool = app.get(POOL_KEY)
        if pool is not None:
            await pool.close()
            app[POOL_KEY] = None

    return init_pool, close_pool

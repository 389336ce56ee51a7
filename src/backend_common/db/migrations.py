"""Checksum-tracked SQL migrations applied on service startup."""
from __future__ import annotations

import asyncio
import hashlib
from pathlib import Path
from typing import Any, Awaitable, Callable, Protocol

import asyncpg  # type: ignore[import-untyped]
import structlog
from aiohttp import web

logger = structlog.get_logger(__name__)


class SettingsProtocol(Protocol):
    """Protocol for settings objects with database configuration."""

    database_url: Any


def load_migrations(migrations_dir: Path) -> dict[str, str]:
    """Read ``*.sql`` files ordered by name, keyed by file stem."""
    migrations: dict[str, str] = {}
    for path in sorted(migrations_dir.glob("*.sql")):
        version = path.stem
        if version in migrations:
            raise ValueError(f"Duplicate migration version detected: {version}")
        migrations[version] = path.read_text(encoding="utf-8")
    return migrations


def checksum(sql: str) -> str:
    return hashlib.sha256(sql.encode("utf-8")).hexdigest()


async def apply_migrations(conn: asyncpg.Connection, migrations: dict[str, str]) -> list[str]:
    """Apply pending migrations on *conn*; return applied versions.

    Raises ``RuntimeError`` when an already applied migration was edited.
    """
    await conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version text PRIMARY KEY,
            checksum text NOT NULL,
            applied_at timestamptz NOT NULL DEFAULT now()
        );
        """
    )
    rows = await conn.fetch("SELECT version, checksum FROM schema_migrations")
    applied = {row["version"]: row["checksum"] for row in rows}

    done: list[str] = []
    for version, sql in migrations.items():
        digest = checksum(sql)
        if version in applied:
            if applied[version] != digest:
                raise RuntimeError(
                    f"Checksum mismatch for {version}: {applied[version]} (db) != {digest} (file)"
                )
            continue
        async with conn.transaction():
            await conn.execute(sql)
            await conn.execute(
                "INSERT INTO schema_migrations (version, checksum) VALUES ($1, $2)",
                version,
                digest,
            )
        logger.info("migration applied", version=version)
        done.append(version)
    return done


def create_migration_runner(
    settings: SettingsProtocol,
    migrations_dir: Path,
    *,
    max_retries: int = 5,
    retry_delay: float = 2.0,
) -> Callable[[web.Application], Awaitable[None]]:
    """Create an aiohttp startup hook that applies SQL migrations."""

    async def apply_migrations_on_startup(_app: web.Application) -> None:
        migrations = load_migrations(migrations_dir)
        if not migrations:
            logger.warning("no migrations found", path=str(migrations_dir))
            return

        conn = None
        for attempt in range(1, max_retries + 1):
            try:
                conn = await asyncpg.connect(str(settings.database_url))
                break
            except (OSError, asyncpg.PostgresError) as exc:
                logger.warning(
                    "database connection failed",
                    attempt=attempt,
                    max_retries=max_retries,
                    error=str(exc),
                )
                if attempt == max_retries:
                    raise
                await asyncio.sleep(retry_delay)

        assert conn is not None
        try:
            applied = await apply_migrations(conn, migrations)
        finally:
            await conn.close()
        if applied:
            logger.info("migrations complete", applied=applied)
        else:
            logger.info("no pending migrations")

    return apply_migrations_on_startup

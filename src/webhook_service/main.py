"""aiohttp application entrypoint."""
from __future__ import annotations

from pathlib import Path

from aiohttp import web

from backend_common.aiohttp_app import add_cors_to_routes, add_healthcheck, create_base_app
from backend_common.db.migrations import create_migration_runner
from backend_common.db.pool import create_pool_hooks, ping_pool
from backend_common.logging_config import configure_logging

from webhook_service.api.router import setup_routes
from webhook_service.otel import create_otel_shutdown, setup_otel
from webhook_service.services.dependencies import (
    COMPONENTS_KEY,
    WebhookComponents,
    create_components_hooks,
)
from webhook_service.settings import Settings, settings as default_settings
from webhook_service.workers import create_workers

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"

configure_logging(default_settings.log_level, default_settings.log_format)


def create_app(
    settings: Settings | None = None,
    *,
    components: WebhookComponents | None = None,
) -> web.Application:
    """Build the application.

    Passing *components* skips the database, the outbound HTTP session and
    the background workers; tests use it to run the API over fakes.
    """
    settings = settings or default_settings
    provider = setup_otel(settings) if components is None else None

    app, cors = create_base_app(settings)
    add_healthcheck(app, settings, checks=None if components is not None else {"database": ping_pool})
    setup_routes(app)

    if components is not None:
        app[COMPONENTS_KEY] = components
    else:
        init_pool, close_pool = create_pool_hooks(settings)
        init_components, close_components = create_components_hooks(settings)
        app.on_startup.append(init_pool)
        app.on_startup.append(create_migration_runner(settings, MIGRATIONS_DIR))
        app.on_startup.append(init_components)
        for worker in create_workers(app, settings):
            app.on_startup.append(worker.start)
            app.on_cleanup.append(worker.stop)
        # Cleanup runs in registration order: workers stop before the session and pool close.
        app.on_cleanup.append(close_components)
        app.on_cleanup.append(close_pool)
        if provider is not None:
            app.on_cleanup.append(create_otel_shutdown(provider))

    add_cors_to_routes(app, cors)
    return app


def main() -> None:
    web.run_app(create_app(), host=default_settings.host, port=default_settings.port)


if __name__ == "__main__":
    main()

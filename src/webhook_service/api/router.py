"""API router composition for aiohttp."""
from __future__ import annotations

from aiohttp import web

from webhook_service.api.routes import events, webhooks

# events first: /api/v1/webhooks/trigger must not be captured by /{webhook_id}
ROUTE_MODULES = [
    events,
    webhooks,
]


def setup_routes(app: web.Application) -> None:
    """Attach domain routes to the aiohttp application."""
    for module in ROUTE_MODULES:
        app.add_routes(module.routes)

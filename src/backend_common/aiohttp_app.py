"""aiohttp application scaffolding shared by backend services."""
from __future__ import annotations

from typing import Any, Awaitable, Callable, Literal, Mapping, Protocol

import structlog
from aiohttp import web
from aiohttp_cors import CorsConfig, ResourceOptions, setup as cors_setup

from backend_common.middleware.trace import create_trace_middleware

logger = structlog.get_logger(__name__)

HealthCheck = Callable[[web.Application], Awaitable[None]]

# gateway-injected identity headers plus tracing ids
CORS_ALLOW_HEADERS = (
    "Accept",
    "Accept-Language",
    "Authorization",
    "Content-Language",
    "Content-Type",
    "X-Request-Id",
    "X-Trace-Id",
    "X-User-Id",
    "X-Workspace-Id",
    "X-Workspace-Role",
)
CORS_ALLOW_METHODS = ("GET", "HEAD", "POST", "PATCH", "DELETE", "OPTIONS")
CORS_EXPOSE_HEADERS = ("X-Request-Id", "X-Trace-Id")


class SettingsProtocol(Protocol):
    app_name: str
    env: Literal["development", "staging", "production"]
    cors_allowed_origins: list[str]


def create_base_app(settings: SettingsProtocol) -> tuple[web.Application, CorsConfig]:
    """Application with the trace middleware installed and per-origin CORS defaults."""
    app = web.Application(middlewares=[create_trace_middleware(settings.app_name)])
    options = ResourceOptions(
        allow_credentials=True,
        allow_headers=CORS_ALLOW_HEADERS,
        allow_methods=CORS_ALLOW_METHODS,
        expose_headers=CORS_EXPOSE_HEADERS,
    )
    cors = cors_setup(app, defaults=dict.fromkeys(settings.cors_allowed_origins, options))
    return app, cors


def add_healthcheck(
    app: web.Application,
    settings: SettingsProtocol,
    checks: Mapping[str, HealthCheck] | None = None,
) -> None:
    """Register ``GET /health``.

    Each check is awaited with the app and signals trouble by raising. Any
    failing check turns the response into a 503 with ``status=degraded``.
    """
    checks = dict(checks or {})

    async def healthcheck(request: web.Request) -> web.Response:
        results: dict[str, str] = {}
        for name, check in checks.items():
            try:
                await check(request.app)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Health check failed", check=name, error=str(exc))
                results[name] = "fail"
            else:
                results[name] = "ok"
        healthy = all(v == "ok" for v in results.values())
        body: dict[str, Any] = {
            "status": "ok" if healthy else "degraded",
            "service": settings.app_name,
            "env": settings.env,
        }
        if results:
            body["checks"] = results
        return web.json_response(body, status=200 if healthy else 503)

    app.router.add_get("/health", healthcheck)


def add_cors_to_routes(app: web.Application, cors: CorsConfig) -> None:
    for route in list(app.router.routes()):
        cors.add(route)


async def read_json(request: web.Request) -> dict[str, Any]:
    """Request body as a JSON object; 400 for malformed JSON or a non-object."""
    try:
        data = await request.json()
    except ValueError as exc:
        raise web.HTTPBadRequest(text="Invalid JSON payload") from exc
    if not isinstance(data, dict):
        raise web.HTTPBadRequest(text="JSON body must be an object")
    return data

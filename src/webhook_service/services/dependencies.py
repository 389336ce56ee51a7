"""Shared dependency providers for aiohttp handlers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable
from uuid import UUID

import asyncpg  # type: ignore[import-untyped]
from aiohttp import ClientSession, web

from backend_common.db.pool import get_pool
from webhook_service.repositories import WebhookDeliveryRepository, WebhookSubscriptionRepository
from webhook_service.services.dispatcher import WebhookDispatcher
from webhook_service.services.executor import DeliveryExecutor
from webhook_service.services.retry import RetryScheduler
from webhook_service.services.subscriptions import WebhookSubscriptionService
from webhook_service.settings import Settings

COMPONENTS_KEY = "webhook_components"
HTTP_SESSION_KEY = "webhook_http_session"

USER_ID_HEADER = "X-User-Id"
WORKSPACE_ID_HEADER = "X-Workspace-Id"
WORKSPACE_ROLE_HEADER = "X-Workspace-Role"

MANAGE_ROLES = ("owner", "admin")


@dataclass
class WebhookComponents:
    """Wired delivery pipeline shared by handlers and background workers."""

    subscriptions: WebhookSubscriptionRepository
    deliveries: WebhookDeliveryRepository
    subscription_service: WebhookSubscriptionService
    dispatcher: WebhookDispatcher


def build_components(pool: asyncpg.Pool, session: ClientSession, settings: Settings) -> WebhookComponents:
    subscriptions = WebhookSubscriptionRepository(pool)
    deliveries = WebhookDeliveryRepository(pool)
    executor = DeliveryExecutor(
        session,
        subscriptions,
        deliveries,
        RetryScheduler(max_delay_seconds=settings.webhook_max_retry_delay_seconds),
        response_body_limit=settings.webhook_response_body_limit,
        user_agent=settings.webhook_user_agent,
    )
    return WebhookComponents(
        subscriptions=subscriptions,
        deliveries=deliveries,
        subscription_service=WebhookSubscriptionService(
            subscriptions,
            deliveries,
            default_timeout_seconds=settings.webhook_default_timeout_seconds,
        ),
        dispatcher=WebhookDispatcher(
            subscriptions,
            deliveries,
            executor,
            transform_timeout_seconds=settings.webhook_transform_timeout_seconds,
            transform_workers=settings.webhook_transform_workers,
        ),
    )


def create_components_hooks(
    settings: Settings,
) -> tuple[
    Callable[[web.Application], Awaitable[None]],
    Callable[[web.Application], Awaitable[None]],
]:
    """``on_startup``/``on_cleanup`` hooks owning the outbound HTTP session and transform workers.

    The startup hook must run after the pool hook.
    """

    async def init_components(app: web.Application) -> None:
        session = ClientSession()
        app[HTTP_SESSION_KEY] = session
        app[COMPONENTS_KEY] = build_components(get_pool(app), session, settings)

    async def close_components(app: web.Application) -> None:
        components = app.get(COMPONENTS_KEY)
        if components is not None:
            components.dispatcher.close()
        session = app.get(HTTP_SESSION_KEY)
        if session is not None:
            await session.close()
            app[HTTP_SESSION_KEY] = None

    return init_components, close_components


def get_components(app: web.Application) -> WebhookComponents:
    components = app.get(COMPONENTS_KEY)
    if components is None:
        raise RuntimeError("Webhook components not initialized")
    return components


def get_subscription_service(request: web.Request) -> WebhookSubscriptionService:
    return get_components(request.app).subscription_service


def get_dispatcher(request: web.Request) -> WebhookDispatcher:
    return get_components(request.app).dispatcher


@dataclass
class UserContext:
    user_id: UUID
    workspace_id: UUID | None
    role: str | None


async def require_current_user(request: web.Request) -> UserContext:
    """Identity is asserted by the API gateway through debug headers."""
    user_header = request.headers.get(USER_ID_HEADER)
    if user_header is None:
        raise web.HTTPUnauthorized(reason=f"Header {USER_ID_HEADER} is required")
    try:
        user_id = UUID(user_header)
    except ValueError as exc:
        raise web.HTTPBadRequest(text=f"Invalid {USER_ID_HEADER}") from exc

    workspace_header = request.headers.get(WORKSPACE_ID_HEADER)
    workspace_id: UUID | None = None
    if workspace_header:
        try:
            workspace_id = UUID(workspace_header)
        except ValueError as exc:
            raise web.HTTPBadRequest(text=f"Invalid {WORKSPACE_ID_HEADER}") from exc

    return UserContext(
        user_id=user_id,
        workspace_id=workspace_id,
        role=request.headers.get(WORKSPACE_ROLE_HEADER),
    )


def resolve_workspace_id(
    user: UserContext,
    *,
    require_role: tuple[str, ...] | None = None,
) -> UUID:
    if user.workspace_id is None:
        raise web.HTTPBadRequest(text=f"Header {WORKSPACE_ID_HEADER} is required")
    if user.role is None:
        raise web.HTTPForbidden(reason="User does not belong to workspace")
    if require_role and user.role not in require_role:
        raise web.HTTPForbidden(reason="Insufficient workspace role")
    return user.workspace_id

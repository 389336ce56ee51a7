"""Webhook subscription endpoints."""
from __future__ import annotations

from uuid import UUID

from aiohttp import web
from pydantic import ValidationError

from webhook_service.api.utils import page_response, path_uuid, query_delivery_status, query_page, read_json
from webhook_service.core.exceptions import (
    ConfigurationError,
    InvalidStatusTransitionError,
    NotFoundError,
)
from webhook_service.domain.dto import WebhookCreateDTO, WebhookUpdateDTO
from webhook_service.domain.enums import WebhookEventType
from webhook_service.domain.models import WebhookSubscription
from webhook_service.services.dependencies import (
    MANAGE_ROLES,
    get_dispatcher,
    get_subscription_service,
    require_current_user,
    resolve_workspace_id,
)

routes = web.RouteTableDef()


def _webhook_id(request: web.Request) -> UUID:
    return path_uuid(request, "webhook_id")


async def _load_subscription(request: web.Request, workspace_id: UUID) -> WebhookSubscription:
    service = get_subscription_service(request)
    try:
        return await service.get_subscription(workspace_id, _webhook_id(request))
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc


@routes.get("/api/v1/webhooks/event-types")
async def list_event_types(request: web.Request):
    await require_current_user(request)
    return web.json_response({"event_types": [e.value for e in WebhookEventType.subscribable()]})


@routes.get("/api/v1/webhooks")
async def list_webhooks(request: web.Request):
    user = await require_current_user(request)
    workspace_id = resolve_workspace_id(user)
    service = get_subscription_service(request)
    page = query_page(request)
    items, total = await service.list_subscriptions(workspace_id, limit=page.limit, offset=page.offset)
    return page_response("webhooks", (item.public_dump() for item in items), total=total, page=page)


@routes.post("/api/v1/webhooks")
async def create_webhook(request: web.Request):
    user = await require_current_user(request)
    workspace_id = resolve_workspace_id(user, require_role=MANAGE_ROLES)
    body = await read_json(request)
    try:
        dto = WebhookCreateDTO.model_validate(body)
    except ValidationError as exc:
        raise web.HTTPBadRequest(text=exc.json()) from exc
    service = get_subscription_service(request)
    try:
        sub = await service.create_subscription(workspace_id, dto, created_by=user.user_id)
    except ConfigurationError as exc:
        raise web.HTTPBadRequest(text=str(exc)) from exc
    # The secret is only ever returned here and on rotation.
    return web.json_response(sub.model_dump(mode="json"), status=201)


@routes.get("/api/v1/webhooks/{webhook_id}")
async def get_webhook(request: web.Request):
    user = await require_current_user(request)
    workspace_id = resolve_workspace_id(user)
    sub = await _load_subscription(request, workspace_id)
    return web.json_response(sub.public_dump())


@routes.patch("/api/v1/webhooks/{webhook_id}")
async def update_webhook(request: web.Request):
    user = await require_current_user(request)
    workspace_id = resolve_workspace_id(user, require_role=MANAGE_ROLES)
    webhook_id = _webhook_id(request)
    body = await read_json(request)
    try:
        dto = WebhookUpdateDTO.model_validate(body)
    except ValidationError as exc:
        raise web.HTTPBadRequest(text=exc.json()) from exc
    service = get_subscription_service(request)
    try:
        sub = await service.update_subscription(workspace_id, webhook_id, dto)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    except ConfigurationError as exc:
        raise web.HTTPBadRequest(text=str(exc)) from exc
    return web.json_response(sub.public_dump())


@routes.delete("/api/v1/webhooks/{webhook_id}")
async def delete_webhook(request: web.Request):
    user = await require_current_user(request)
    workspace_id = resolve_workspace_id(user, require_role=MANAGE_ROLES)
    webhook_id = _webhook_id(request)
    service = get_subscription_service(request)
    try:
        await service.delete_subscription(workspace_id, webhook_id)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    return web.Response(status=204)


@routes.post("/api/v1/webhooks/{webhook_id}/enable")
async def enable_webhook(request: web.Request):
    user = await require_current_user(request)
    workspace_id = resolve_workspace_id(user, require_role=MANAGE_ROLES)
    webhook_id = _webhook_id(request)
    service = get_subscription_service(request)
    try:
        sub = await service.enable(workspace_id, webhook_id)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    return web.json_response(sub.public_dump())


@routes.post("/api/v1/webhooks/{webhook_id}/disable")
async def disable_webhook(request: web.Request):
    user = await require_current_user(request)
    workspace_id = resolve_workspace_id(user, require_role=MANAGE_ROLES)
    webhook_id = _webhook_id(request)
    service = get_subscription_service(request)
    try:
        sub = await service.disable(workspace_id, webhook_id)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    return web.json_response(sub.public_dump())


@routes.post("/api/v1/webhooks/{webhook_id}/rotate-secret")
async def rotate_secret(request: web.Request):
    user = await require_current_user(request)
    workspace_id = resolve_workspace_id(user, require_role=MANAGE_ROLES)
    webhook_id = _webhook_id(request)
    service = get_subscription_service(request)
    try:
        sub = await service.rotate_secret(workspace_id, webhook_id)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    return web.json_response({"id": str(sub.id), "secret_key": sub.secret_key})


@routes.post("/api/v1/webhooks/{webhook_id}/test")
async def test_webhook(request: web.Request):
    user = await require_current_user(request)
    workspace_id = resolve_workspace_id(user, require_role=MANAGE_ROLES)
    sub = await _load_subscription(request, workspace_id)
    delivery = await get_dispatcher(request).send_test(sub)
    return web.json_response(delivery.model_dump(mode="json"))


@routes.get("/api/v1/webhooks/{webhook_id}/stats")
async def webhook_stats(request: web.Request):
    user = await require_current_user(request)
    workspace_id = resolve_workspace_id(user)
    webhook_id = _webhook_id(request)
    service = get_subscription_service(request)
    try:
        stats = await service.stats(workspace_id, webhook_id)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    return web.json_response(stats.model_dump(mode="json"))


@routes.get("/api/v1/webhooks/{webhook_id}/deliveries")
async def list_deliveries(request: web.Request):
    user = await require_current_user(request)
    workspace_id = resolve_workspace_id(user)
    webhook_id = _webhook_id(request)
    status = query_delivery_status(request)
    page = query_page(request)
    service = get_subscription_service(request)
    try:
        items, total = await service.list_deliveries(
            workspace_id, webhook_id, status=status, limit=page.limit, offset=page.offset
        )
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    return page_response("deliveries", items, total=total, page=page)


@routes.get("/api/v1/webhooks/{webhook_id}/deliveries/{delivery_id}")
async def get_delivery(request: web.Request):
    user = await require_current_user(request)
    workspace_id = resolve_workspace_id(user)
    webhook_id = _webhook_id(request)
    delivery_id = path_uuid(request, "delivery_id")
    service = get_subscription_service(request)
    try:
        delivery = await service.get_delivery(workspace_id, webhook_id, delivery_id)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    return web.json_response(delivery.model_dump(mode="json"))


@routes.post("/api/v1/webhooks/{webhook_id}/deliveries/{delivery_id}/retry")
async def retry_delivery(request: web.Request):
    user = await require_current_user(request)
    workspace_id = resolve_workspace_id(user, require_role=MANAGE_ROLES)
    sub = await _load_subscription(request, workspace_id)
    delivery_id = path_uuid(request, "delivery_id")
    try:
        delivery = await get_dispatcher(request).retry_delivery(sub, delivery_id)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    except InvalidStatusTransitionError as exc:
        raise web.HTTPConflict(text=str(exc)) from exc
    return web.json_response(delivery.model_dump(mode="json"))

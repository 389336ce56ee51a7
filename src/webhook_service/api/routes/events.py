"""Event trigger endpoint: fans a CRM event out to subscribers."""
from __future__ import annotations

from aiohttp import web
from pydantic import ValidationError

from webhook_service.api.utils import read_json
from webhook_service.domain.dto import TriggerEventDTO
from webhook_service.services.dependencies import (
    MANAGE_ROLES,
    get_dispatcher,
    require_current_user,
    resolve_workspace_id,
)

routes = web.RouteTableDef()


@routes.post("/api/v1/webhooks/trigger")
async def trigger_event(request: web.Request):
    user = await require_current_user(request)
    workspace_id = resolve_workspace_id(user, require_role=MANAGE_ROLES)
    body = await read_json(request)
    try:
        dto = TriggerEventDTO.model_validate(body)
    except ValidationError as exc:
        raise web.HTTPBadRequest(text=exc.json()) from exc
    deliveries = await get_dispatcher(request).dispatch(workspace_id, dto.event_type, dto.payload)
    return web.json_response(
        {
            "event_type": dto.event_type.value,
            "deliveries": [d.model_dump(mode="json") for d in deliveries],
        },
        status=202,
    )

"""Request parsing and response shaping shared by the webhook handlers."""
from __future__ import annotations

from typing import Any, Iterable, NamedTuple
from uuid import UUID

from aiohttp import web
from pydantic import BaseModel

from backend_common.aiohttp_app import read_json as read_json  # noqa: F401
from webhook_service.domain.enums import DeliveryStatus

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100


class Page(NamedTuple):
    limit: int
    offset: int

    @property
    def number(self) -> int:
        return self.offset // self.limit + 1


def path_uuid(request: web.Request, name: str) -> UUID:
    """Read a UUID from the matched route, 400 if it is malformed."""
    raw = request.match_info[name]
    try:
        return UUID(raw)
    except ValueError as exc:
        raise web.HTTPBadRequest(text=f"Invalid {name}: {raw}") from exc


def query_page(request: web.Request) -> Page:
    """``?limit=&offset=``, clamped to ``1..MAX_PAGE_SIZE`` and ``>= 0``."""
    query = request.rel_url.query
    try:
        limit = int(query.get("limit", DEFAULT_PAGE_SIZE))
        offset = int(query.get("offset", 0))
    except ValueError as exc:
        raise web.HTTPBadRequest(text="limit and offset must be integers") from exc
    if limit <= 0:
        limit = DEFAULT_PAGE_SIZE
    return Page(limit=min(limit, MAX_PAGE_SIZE), offset=max(offset, 0))


def query_delivery_status(request: web.Request) -> DeliveryStatus | None:
    raw = request.rel_url.query.get("status")
    if not raw:
        return None
    try:
        return DeliveryStatus(raw)
    except ValueError as exc:
        allowed = ", ".join(s.value for s in DeliveryStatus)
        raise web.HTTPBadRequest(text=f"Invalid status {raw!r}, expected one of: {allowed}") from exc


def page_response(
    key: str,
    items: Iterable[BaseModel | dict[str, Any]],
    *,
    total: int,
    page: Page,
) -> web.Response:
    rendered = [item.model_dump(mode="json") if isinstance(item, BaseModel) else item for item in items]
    return web.json_response(
        {key: rendered, "total": total, "page": page.number, "page_size": page.limit}
    )

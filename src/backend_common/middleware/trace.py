"""Request tracing middleware.

Every request gets a trace id and a request id (taken from the incoming
headers when they are valid UUIDs, generated otherwise). Both, together with
the gateway identity headers, are bound into structlog contextvars for the
duration of the request and echoed back on the response.
"""
from __future__ import annotations

import time
from typing import Any, Mapping
from uuid import UUID, uuid4

import structlog
from aiohttp import web

TRACE_ID_HEADER = "X-Trace-Id"
REQUEST_ID_HEADER = "X-Request-Id"

# gateway header -> log field
CONTEXT_HEADERS = {
    "X-User-Id": "user_id",
    "X-Workspace-Id": "workspace_id",
}

SENSITIVE_HEADERS = frozenset(
    {
        "authorization",
        "cookie",
        "set-cookie",
        "x-api-key",
        "x-auth-token",
        "x-webhook-signature",
    }
)

logger = structlog.get_logger(__name__)


def _uuid_or_none(value: str | None) -> str | None:
    if not value:
        return None
    try:
        return str(UUID(value))
    except ValueError:
        return None


def get_safe_headers(headers: Mapping[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in headers.items() if k.lower() not in SENSITIVE_HEADERS}


def request_context(request: web.Request) -> dict[str, str]:
    """Log fields derived from the gateway headers; malformed ids are skipped."""
    context = {}
    for header, field in CONTEXT_HEADERS.items():
        value = _uuid_or_none(request.headers.get(header))
        if value is not None:
            context[field] = value
    return context


def create_trace_middleware(service_name: str):
    @web.middleware
    async def trace_middleware(request: web.Request, handler):
        started = time.monotonic()
        trace_id = _uuid_or_none(request.headers.get(TRACE_ID_HEADER)) or str(uuid4())
        request_id = _uuid_or_none(request.headers.get(REQUEST_ID_HEADER)) or str(uuid4())
        request["trace_id"] = trace_id
        request["request_id"] = request_id

        def elapsed_ms() -> float:
            return round((time.monotonic() - started) * 1000, 2)

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            trace_id=trace_id,
            request_id=request_id,
            service=service_name,
            method=request.method,
            path=request.path,
            **request_context(request),
        )
        logger.info(
            "Incoming request",
            query_string=request.query_string or None,
            remote=request.remote,
            headers=get_safe_headers(request.headers),
        )
        try:
            try:
                response = await handler(request)
            except web.HTTPException as exc:
                logger.warning(
                    "Request rejected",
                    status_code=exc.status_code,
                    duration_ms=elapsed_ms(),
                    error=exc.text,
                )
                exc.headers[TRACE_ID_HEADER] = trace_id
                exc.headers[REQUEST_ID_HEADER] = request_id
                raise
            except Exception as exc:
                logger.error(
                    "Request crashed",
                    duration_ms=elapsed_ms(),
                    error_type=type(exc).__name__,
                    exc_info=True,
                )
                raise
            (logger.warning if response.status >= 400 else logger.info)(
                "Request completed",
                status_code=response.status,
                duration_ms=elapsed_ms(),
            )
            response.headers[TRACE_ID_HEADER] = trace_id
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            structlog.contextvars.clear_contextvars()

    return trace_middleware

from __future__ import annotations

import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from nexus_api.context import reset_correlation_id, set_correlation_id

HEADER = "x-correlation-id"
_MAX_LENGTH = 128


def resolve_correlation_id(raw: str | None) -> str:
    """Reuse the caller's id when it is usable, otherwise mint one."""
    value = (raw or "").strip()
    if not value or len(value) > _MAX_LENGTH:
        return str(uuid.uuid4())
    return value


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = resolve_correlation_id(request.headers.get(HEADER))
        request.state.correlation_id = correlation_id
        current = trace.get_current_span()
        if current.is_recording():
            current.set_attribute("correlation_id", correlation_id)

        token = set_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)
        response.headers[HEADER] = correlation_id
        return response

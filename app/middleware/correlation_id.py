from __future__ import annotations

import re
import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import reset_correlation_id, reset_organization_id, set_correlation_id, set_organization_id

_MAX_CORRELATION_ID_LENGTH = 128
_CORRELATION_ID_RE = re.compile(r"^[A-Za-z0-9._:\-]+$")


def resolve_correlation_id(raw: str | None) -> str:
    """Reuse the caller's id when it is short and header-safe, otherwise mint a new one."""

    if raw and len(raw) <= _MAX_CORRELATION_ID_LENGTH and _CORRELATION_ID_RE.match(raw):
        return raw
    return str(uuid.uuid4())


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    header_name = "x-correlation-id"

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = resolve_correlation_id(request.headers.get(self.header_name))
        organization_id = request.headers.get("x-organization-id") or None
        request.state.correlation_id = correlation_id

        span = trace.get_current_span()
        if span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
            if organization_id:
                span.set_attribute("organization_id", organization_id)

        correlation_token = set_correlation_id(correlation_id)
        organization_token = set_organization_id(organization_id)
        try:
            response = await call_next(request)
        finally:
            reset_organization_id(organization_token)
            reset_correlation_id(correlation_token)

        response.headers[self.header_name] = correlation_id
        return response

from __future__ import annotations

import re
import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from leadboard.context import reset_correlation_id, set_correlation_id

CORRELATION_HEADERS = ("x-correlation-id", "x-request-id")
_ACCEPTED_ID = re.compile(r"^[A-Za-z0-9._:\-]{1,128}$")


def inbound_correlation_id(request: Request) -> str | None:
    """First caller-supplied id that is safe to echo back and to log."""

    for header in CORRELATION_HEADERS:
        candidate = (request.headers.get(header) or "").strip()
        if candidate and _ACCEPTED_ID.match(candidate):
            return candidate
    return None


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = inbound_correlation_id(request) or str(uuid.uuid4())
        request.state.correlation_id = correlation_id
        token = set_correlation_id(correlation_id)
        span = trace.get_current_span()
        if span is not None and span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)

        response.headers["x-correlation-id"] = correlation_id
        return response

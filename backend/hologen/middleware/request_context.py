from dataclasses import dataclass
from datetime import datetime, timezone
from time import perf_counter
from uuid import uuid4

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from hologen.schemas.envelope import ResponseMeta

REQUEST_ID_HEADER = "X-Request-ID"


@dataclass
class RequestContext:
    request_id: str
    start_time: float
    warnings: list[str]


def create_request_context(request_id: str | None = None) -> RequestContext:
    return RequestContext(
        request_id=request_id or str(uuid4()),
        start_time=perf_counter(),
        warnings=[],
    )


def get_request_context(request: Request) -> RequestContext:
    """FastAPI dependency: the context attached by ``RequestContextMiddleware``."""
    context = getattr(request.state, "context", None)
    if context is None:
        context = create_request_context(request.headers.get(REQUEST_ID_HEADER))
        request.state.context = context
    return context


def build_meta(context: RequestContext, api_version: str = "1.0") -> ResponseMeta:
    processing_time_ms = int((perf_counter() - context.start_time) * 1000)
    return ResponseMeta(
        api_version=api_version,
        processing_time_ms=processing_time_ms,
        timestamp=datetime.now(timezone.utc),
        warnings=context.warnings,
    )


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Attach a request context and echo its id in ``X-Request-ID``."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        context = get_request_context(request)
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = context.request_id
        return response

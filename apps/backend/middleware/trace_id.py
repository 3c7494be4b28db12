"""Single source for request trace_id. Use scope for ASGI, request.scope for Starlette."""
import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

SCOPE_KEY = "trace_id"

logger = logging.getLogger(__name__)


def ensure_trace_id(scope: dict) -> str:
    """Get or set trace_id on ASGI scope. Returns the same trace_id for the request lifecycle."""
    tid = scope.get(SCOPE_KEY)
    if tid and isinstance(tid, str):
        return tid
    tid = str(uuid.uuid4())[:16]
    scope[SCOPE_KEY] = tid
    return tid


class TraceIdMiddleware(BaseHTTPMiddleware):
    """Stamps request.state.trace_id and the X-Trace-Id response header."""

    async def dispatch(self, request: Request, call_next):
        incoming = (request.headers.get("x-trace-id") or "").strip()[:64]
        if incoming:
            request.scope[SCOPE_KEY] = incoming
        trace_id = ensure_trace_id(request.scope)
        request.state.trace_id = trace_id
        start = time.perf_counter()
        response = await call_next(request)
        latency_ms = int((time.perf_counter() - start) * 1000)
        response.headers["X-Trace-Id"] = trace_id
        if request.url.path.startswith("/v1/"):
            logger.info(
                "http_request trace_id=%s method=%s path=%s status=%s latency_ms=%s",
                trace_id, request.method, request.url.path, response.status_code, latency_ms,
            )
        return response

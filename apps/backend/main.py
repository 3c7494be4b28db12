"""FastAPI entry point."""
import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from apps.backend.middleware.trace_id import TraceIdMiddleware
from apps.backend.routers import flows, health, simulator, webhook
from apps.backend.utils.api_errors import error_envelope

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # shutdown


app = FastAPI(
    title="Flowbot",
    description="Conversational flow execution engine",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(TraceIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router, tags=["System"])
app.include_router(webhook.router, prefix="/v1/webhook", tags=["Webhook"])
app.include_router(simulator.router, prefix="/v1/simulator", tags=["Simulator"])
app.include_router(flows.router, prefix="/v1/flows", tags=["Flows"])


def _trace_id(request: Request) -> str:
    return getattr(request.state, "trace_id", None) or str(uuid.uuid4())[:16]


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    trace_id = _trace_id(request)
    detail = exc.detail
    message = detail if isinstance(detail, str) else "Request error"
    payload = error_envelope(
        code="http_error",
        message=message,
        trace_id=trace_id,
        detail=str(detail) if detail and not isinstance(detail, str) else None,
    )
    resp = JSONResponse(content=payload, status_code=exc.status_code)
    resp.headers["X-Trace-Id"] = trace_id
    return resp


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Never return HTML; always the JSON envelope with trace_id."""
    trace_id = _trace_id(request)
    logger.exception("Unhandled exception trace_id=%s path=%s", trace_id, request.url.path)
    detail_safe = str(exc)[:200].replace("'", "")
    payload = error_envelope(
        code="internal_error",
        message="Internal server error",
        trace_id=trace_id,
        detail=detail_safe,
    )
    resp = JSONResponse(content=payload, status_code=500)
    resp.headers["X-Trace-Id"] = trace_id
    return resp

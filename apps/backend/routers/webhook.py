"""WhatsApp webhook endpoints."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.orm import Session

from apps.backend.config import get_settings
from apps.backend.deps import get_db
from apps.backend.services.whatsapp_events import process_whatsapp_payload
from apps.backend.utils.api_errors import error_envelope

router = APIRouter()
logger = logging.getLogger(__name__)


def _trace_id(request: Request) -> str:
    return getattr(request.state, "trace_id", "") or ""


@router.get("/whatsapp")
def whatsapp_verify(request: Request):
    q = request.query_params
    mode = q.get("hub.mode")
    token = q.get("hub.verify_token")
    challenge = q.get("hub.challenge") or ""
    if mode == "subscribe" and token and token == get_settings().whatsapp_verify_token:
        return PlainTextResponse(challenge)
    logger.warning("whatsapp_verify_failed mode=%s", mode)
    return JSONResponse(
        error_envelope(code="forbidden", message="Verification failed", trace_id=_trace_id(request)),
        status_code=403,
    )


@router.post("/whatsapp")
async def whatsapp_webhook(request: Request, db: Session = Depends(get_db)):
    try:
        payload = await request.json()
    except ValueError:
        return JSONResponse(
            error_envelope(code="invalid_json", message="Body must be JSON", trace_id=_trace_id(request)),
            status_code=400,
        )
    if not isinstance(payload, dict):
        return JSONResponse(
            error_envelope(code="invalid_payload", message="Body must be an object", trace_id=_trace_id(request)),
            status_code=400,
        )
    result = process_whatsapp_payload(db, payload)
    # the provider only needs a 200; delivery happens through the outbox
    return JSONResponse({"ok": True, **result})

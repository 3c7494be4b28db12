"""Flow simulator endpoints: run drafts without reaching a channel."""
from __future__ import annotations

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session

from apps.backend.config import get_settings
from apps.backend.deps import get_db
from apps.backend.models.bot import Bot, Flow
from apps.backend.models.message import ExecutionLog, Message
from apps.backend.models.session import ConversationSession
from apps.backend.services.flow_engine import run_inbound_message, simulator_version_id
from apps.backend.services.outbound import SimulatorTransport
from apps.backend.services.sessions import SessionStartError, reset_test_sessions
from apps.backend.services.variable_resolver import get_variable_map
from apps.backend.utils.api_errors import error_envelope

router = APIRouter()
logger = logging.getLogger(__name__)


class SimulatorMessageBody(BaseModel):
    bot_id: int
    flow_id: int | None = None
    user_address: str | None = None
    text: str | None = None
    choice_id: str | None = None


class SimulatorResetBody(BaseModel):
    bot_id: int
    user_address: str | None = None


def _err(request: Request, code: str, message: str, status_code: int, detail: str | None = None):
    return JSONResponse(
        error_envelope(
            code=code,
            message=message,
            trace_id=getattr(request.state, "trace_id", "") or "",
            detail=detail,
        ),
        status_code=status_code,
    )


def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt else None


@router.post("/message")
def simulator_message(data: SimulatorMessageBody, request: Request, db: Session = Depends(get_db)):
    if not db.get(Bot, data.bot_id):
        return _err(request, "bot_not_found", "Bot not found", 404)
    flow_id = data.flow_id
    if flow_id is None:
        flow_id = db.execute(
            select(Flow.id).where(Flow.bot_id == data.bot_id, Flow.is_main_flow.is_(True))
        ).scalars().first()
    if flow_id is None:
        return _err(request, "flow_not_found", "Bot has no main flow", 404)
    version_id = simulator_version_id(db, flow_id)
    if version_id is None:
        return _err(request, "flow_version_not_found", "Flow has no draft or production version", 404)

    address = data.user_address or get_settings().simulator_default_address
    transport = SimulatorTransport()
    try:
        run = run_inbound_message(
            db,
            data.bot_id,
            address,
            data.text,
            data.choice_id,
            is_simulated=True,
            flow_version_id=version_id,
            transport=transport,
        )
    except SessionStartError as e:
        return _err(request, e.code, "Cannot start session", 422)
    session = db.get(ConversationSession, run.session_id)
    out = run.to_dict()
    out["resumeAt"] = _iso(session.resume_at) if session else None
    out["variables"] = get_variable_map(db, data.bot_id, run.session_id)
    return out


@router.post("/reset")
def simulator_reset(data: SimulatorResetBody, db: Session = Depends(get_db)):
    address = data.user_address or get_settings().simulator_default_address
    closed = reset_test_sessions(db, data.bot_id, address)
    logger.info("simulator_reset bot_id=%s closed=%s", data.bot_id, closed)
    return {"ok": True, "closed": closed}


@router.get("/sessions/{session_id}/logs")
def simulator_session_logs(session_id: int, request: Request, db: Session = Depends(get_db)):
    session = db.get(ConversationSession, session_id)
    if not session:
        return _err(request, "session_not_found", "Session not found", 404)
    logs = db.execute(
        select(ExecutionLog).where(ExecutionLog.session_id == session_id).order_by(ExecutionLog.id)
    ).scalars().all()
    return {
        "sessionId": session.id,
        "status": session.status,
        "currentNodeId": session.current_node_id,
        "subflowCallStack": session.subflow_call_stack or [],
        "logs": [
            {
                "nodeId": log.node_id,
                "nodeType": log.node_type,
                "durationMs": log.duration_ms,
                "input": log.input_json,
                "output": log.output_json,
                "nextNodeId": log.next_node_id,
                "error": log.error,
                "executedAt": _iso(log.executed_at),
            }
            for log in logs
        ],
    }


@router.get("/poll")
def simulator_poll(
    session_id: int,
    request: Request,
    since: datetime | None = None,
    db: Session = Depends(get_db),
):
    """Bot messages produced after `since`, e.g. by a resumed delay."""
    session = db.get(ConversationSession, session_id)
    if not session:
        return _err(request, "session_not_found", "Session not found", 404)
    q = select(Message).where(Message.session_id == session_id, Message.sender == "BOT")
    if since:
        q = q.where(Message.sent_at > since)
    rows = db.execute(q.order_by(Message.id)).scalars().all()
    return {
        "sessionId": session.id,
        "status": session.status,
        "resumeAt": _iso(session.resume_at),
        "pendingTimer": session.resume_at is not None,
        "messages": [
            {"type": m.message_type, "content": m.content, "nodeId": m.node_id, "sentAt": _iso(m.sent_at)}
            for m in rows
        ],
    }

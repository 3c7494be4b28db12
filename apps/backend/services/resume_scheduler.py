"""Sweep that resumes sessions whose timed wait has elapsed."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from sqlalchemy import select

from apps.backend.config import get_settings
from apps.backend.database import get_session_factory
from apps.backend.models.session import ConversationSession, SESSION_PAUSED
from apps.backend.services.flow_engine import execute_flow
from apps.backend.services.outbound import OutboxTransport, SimulatorTransport
from apps.backend.services.sessions import claim_paused_session

logger = logging.getLogger(__name__)


def due_session_ids(db, now: datetime, batch_limit: int) -> list[int]:
    return list(db.execute(
        select(ConversationSession.id)
        .where(
            ConversationSession.status == SESSION_PAUSED,
            ConversationSession.resume_at.is_not(None),
            ConversationSession.resume_at <= now,
        )
        .order_by(ConversationSession.resume_at)
        .limit(batch_limit)
    ).scalars().all())


def resume_due_sessions_once(
    now: datetime | None = None,
    batch_limit: int | None = None,
    session_factory: Callable | None = None,
) -> dict:
    """One idempotent tick; returns counters."""
    factory = session_factory or get_session_factory()
    now = now or datetime.utcnow()
    limit = batch_limit or get_settings().resume_scheduler_batch_limit
    result = {"due": 0, "resumed": 0, "skipped": 0, "failed": 0}

    with factory() as db:
        ids = due_session_ids(db, now, limit)
    result["due"] = len(ids)

    for session_id in ids:
        with factory() as db:
            try:
                if not claim_paused_session(db, session_id, now=now):
                    # another sweep or path already took it
                    result["skipped"] += 1
                    continue
                session = db.get(ConversationSession, session_id)
                transport = SimulatorTransport() if session.is_test else OutboxTransport(db, session.bot_id)
                run = execute_flow(db, session, is_simulated=session.is_test, transport=transport, resume_timer=True)
                result["resumed"] += 1
                logger.info(
                    "flow_session_resumed session_id=%s status=%s node_id=%s",
                    session_id, run.status, run.current_node_id,
                )
            except Exception:
                db.rollback()
                result["failed"] += 1
                logger.exception("flow_session_resume_failed session_id=%s", session_id)
    return result

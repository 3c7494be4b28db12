"""Conversation session lifecycle."""
from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from apps.backend.models.bot import Flow, FlowVersion
from apps.backend.models.message import Message
from apps.backend.models.session import (
    ConversationSession,
    LIVE_STATUSES,
    SESSION_ACTIVE,
    SESSION_CLOSED,
    SESSION_PAUSED,
)
from apps.backend.services.flow_graph import FlowGraph

logger = logging.getLogger(__name__)


class SessionStartError(Exception):
    def __init__(self, code: str):
        super().__init__(code)
        self.code = code


def find_live_session(db: Session, bot_id: int, user_address: str) -> ConversationSession | None:
    return db.execute(
        select(ConversationSession)
        .where(
            ConversationSession.bot_id == bot_id,
            ConversationSession.user_address == user_address,
            ConversationSession.status.in_(LIVE_STATUSES),
        )
        .order_by(ConversationSession.created_at.desc())
    ).scalars().first()


def find_or_create_session(
    db: Session,
    bot_id: int,
    user_address: str,
    flow_version_id: int,
    is_test: bool = False,
) -> ConversationSession:
    """Live session for (bot, user) or a new one positioned at the version's START node."""
    existing = find_live_session(db, bot_id, user_address)
    if existing:
        return existing
    version = db.get(FlowVersion, flow_version_id)
    if not version:
        raise SessionStartError("flow_version_not_found")
    start = FlowGraph.from_flow_data(version.flow_data, version_id=version.id).start_node()
    if not start:
        raise SessionStartError("flow_has_no_start_node")
    row = ConversationSession(
        bot_id=bot_id,
        flow_version_id=version.id,
        user_address=user_address,
        current_node_id=start.node_id,
        status=SESSION_ACTIVE,
        waiting=False,
        subflow_call_stack=[],
        node_state={},
        is_test=is_test,
    )
    db.add(row)
    try:
        db.commit()
    except IntegrityError:
        # another request created the live session first
        db.rollback()
        winner = find_live_session(db, bot_id, user_address)
        if winner:
            return winner
        raise
    db.refresh(row)
    logger.info("flow_session_created session_id=%s bot_id=%s is_test=%s", row.id, bot_id, is_test)
    return row


def claim_paused_session(db: Session, session_id: int, now: datetime | None = None) -> bool:
    """Atomic PAUSED -> ACTIVE for a due timer; False when another path already won."""
    now = now or datetime.utcnow()
    res = db.execute(
        update(ConversationSession)
        .where(
            ConversationSession.id == session_id,
            ConversationSession.status == SESSION_PAUSED,
            ConversationSession.resume_at.is_not(None),
            ConversationSession.resume_at <= now,
        )
        .values(
            status=SESSION_ACTIVE,
            resume_at=None,
            updated_at=now,
            revision=ConversationSession.revision + 1,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return res.rowcount == 1


def close_session(db: Session, session: ConversationSession) -> None:
    session.status = SESSION_CLOSED
    session.closed_at = datetime.utcnow()
    session.resume_at = None
    session.waiting = False
    db.commit()


def reset_test_sessions(db: Session, bot_id: int, user_address: str) -> int:
    res = db.execute(
        update(ConversationSession)
        .where(
            ConversationSession.bot_id == bot_id,
            ConversationSession.user_address == user_address,
            ConversationSession.is_test.is_(True),
            ConversationSession.status.in_(LIVE_STATUSES),
        )
        .values(
            status=SESSION_CLOSED,
            closed_at=datetime.utcnow(),
            resume_at=None,
            waiting=False,
            revision=ConversationSession.revision + 1,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return res.rowcount or 0


def get_conversation_history(db: Session, session_id: int, limit: int = 10) -> list[dict[str, str]]:
    """Last `limit` messages as chat turns, oldest first."""
    rows = db.execute(
        select(Message)
        .where(Message.session_id == session_id)
        .order_by(Message.sent_at.desc(), Message.id.desc())
        .limit(limit)
    ).scalars().all()
    return [
        {"role": "user" if m.sender == "USER" else "assistant", "content": m.content or ""}
        for m in reversed(rows)
    ]


def main_flow_production_version(db: Session, bot_id: int) -> FlowVersion | None:
    flow = db.execute(
        select(Flow).where(Flow.bot_id == bot_id, Flow.is_main_flow.is_(True))
    ).scalars().first()
    if not flow:
        return None
    return production_version(db, flow.id)


def production_version(db: Session, flow_id: int) -> FlowVersion | None:
    return db.execute(
        select(FlowVersion).where(FlowVersion.flow_id == flow_id, FlowVersion.is_production.is_(True))
    ).scalars().first()


def latest_draft_version(db: Session, flow_id: int) -> FlowVersion | None:
    return db.execute(
        select(FlowVersion)
        .where(FlowVersion.flow_id == flow_id, FlowVersion.is_draft.is_(True))
        .order_by(FlowVersion.version_number.desc())
    ).scalars().first()

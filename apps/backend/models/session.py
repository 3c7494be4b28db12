"""Conversation sessions driven by the flow engine."""
from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Boolean, Index, text
from sqlalchemy.dialects.postgresql import JSONB

from apps.backend.database import Base

SESSION_ACTIVE = "ACTIVE"
SESSION_PAUSED = "PAUSED"
SESSION_COMPLETED = "COMPLETED"
SESSION_CLOSED = "CLOSED"
SESSION_FAILED = "FAILED"

LIVE_STATUSES = (SESSION_ACTIVE, SESSION_PAUSED)
TERMINAL_STATUSES = (SESSION_COMPLETED, SESSION_CLOSED, SESSION_FAILED)

_LIVE_WHERE = text("status IN ('ACTIVE', 'PAUSED')")


class ConversationSession(Base):
    __tablename__ = "flow_sessions"

    id = Column(Integer, primary_key=True, index=True)
    bot_id = Column(Integer, ForeignKey("bots.id", ondelete="CASCADE"), nullable=False, index=True)
    flow_version_id = Column(Integer, ForeignKey("flow_versions.id"), nullable=True)
    user_address = Column(String(64), nullable=False)  # phone number / chat id
    current_node_id = Column(String(128))
    status = Column(String(16), nullable=False, default=SESSION_ACTIVE)
    waiting = Column(Boolean, nullable=False, default=False)  # current node already ran, awaits input/timer
    subflow_call_stack = Column(JSONB, nullable=False, default=list)  # [{flowVersionId, returnNodeId}]
    node_state = Column(JSONB, nullable=False, default=dict)  # {"retries": {...}, "loops": {...}}
    resume_at = Column(DateTime, nullable=True)
    closed_at = Column(DateTime, nullable=True)
    is_test = Column(Boolean, nullable=False, default=False)
    revision = Column(Integer, nullable=False, default=0)  # bumped on every write; stale writers fail
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index(
            "uq_flow_sessions_live_user",
            "bot_id",
            "user_address",
            unique=True,
            postgresql_where=_LIVE_WHERE,
            sqlite_where=_LIVE_WHERE,
        ),
        Index("ix_flow_sessions_status_resume", "status", "resume_at"),
    )

    __mapper_args__ = {"version_id_col": revision}

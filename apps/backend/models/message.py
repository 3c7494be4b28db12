"""Append-only conversation and execution logs."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, Index
from sqlalchemy.dialects.postgresql import JSONB

from apps.backend.database import Base


class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("flow_sessions.id", ondelete="CASCADE"), nullable=False)
    sender = Column(String(8), nullable=False)  # USER, BOT
    message_type = Column(String(16), nullable=False, default="TEXT")  # TEXT, BUTTON, LIST
    content = Column(Text)
    node_id = Column(String(128))
    delivery_status = Column(String(16))  # simulated, queued, error; NULL for user messages
    sent_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (Index("ix_messages_session_sent", "session_id", "sent_at"),)


class ExecutionLog(Base):
    __tablename__ = "execution_logs"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("flow_sessions.id", ondelete="CASCADE"), nullable=False)
    node_id = Column(String(128), nullable=False)
    node_type = Column(String(32), nullable=False)
    duration_ms = Column(Integer)
    input_json = Column(JSONB, nullable=True)
    output_json = Column(JSONB, nullable=True)
    next_node_id = Column(String(128))
    error = Column(Text)
    executed_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (Index("ix_execution_logs_session_executed", "session_id", "executed_at"),)


class AIApiLog(Base):
    __tablename__ = "ai_api_logs"

    id = Column(Integer, primary_key=True, index=True)
    bot_id = Column(Integer, ForeignKey("bots.id", ondelete="CASCADE"), nullable=False, index=True)
    session_id = Column(Integer, ForeignKey("flow_sessions.id", ondelete="SET NULL"), nullable=True, index=True)
    node_id = Column(String(128), nullable=False)
    node_label = Column(String(256))
    ai_provider_id = Column(Integer, ForeignKey("ai_providers.id", ondelete="SET NULL"), nullable=True)
    provider = Column(String(32))
    model_name = Column(String(128))
    status = Column(String(16), nullable=False)  # SUCCESS, ERROR
    prompt_tokens = Column(Integer, default=0)
    completion_tokens = Column(Integer, default=0)
    total_tokens = Column(Integer, default=0)
    error_message = Column(Text)
    error_code = Column(String(32))
    response_time_ms = Column(Integer)
    created_at = Column(DateTime, default=datetime.utcnow)

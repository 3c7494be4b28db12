"""Bot-level and session-level flow variables."""
from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB

from apps.backend.database import Base

VARIABLE_TYPES = ("STRING", "NUMBER", "BOOLEAN", "OBJECT", "ARRAY")


class BotVariable(Base):
    __tablename__ = "bot_variables"

    id = Column(Integer, primary_key=True, index=True)
    bot_id = Column(Integer, ForeignKey("bots.id", ondelete="CASCADE"), nullable=False, index=True)
    variable_name = Column(String(128), nullable=False)
    variable_value = Column(JSONB, nullable=True)
    variable_type = Column(String(16), nullable=False, default="STRING")
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (UniqueConstraint("bot_id", "variable_name", name="uq_bot_variables_name"),)


class SessionVariable(Base):
    __tablename__ = "session_variables"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("flow_sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    variable_name = Column(String(128), nullable=False)
    variable_value = Column(JSONB, nullable=True)
    variable_type = Column(String(16), nullable=False, default="STRING")
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (UniqueConstraint("session_id", "variable_name", name="uq_session_variables_name"),)

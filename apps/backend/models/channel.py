"""Channel accounts, model providers and the outbound outbox."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, Boolean

from apps.backend.database import Base


class WhatsAppAccount(Base):
    __tablename__ = "whatsapp_accounts"

    id = Column(Integer, primary_key=True, index=True)
    bot_id = Column(Integer, ForeignKey("bots.id", ondelete="CASCADE"), nullable=False, unique=True)
    phone_number_id = Column(String(64), nullable=False, unique=True, index=True)
    phone_number = Column(String(32))
    access_token_encrypted = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)


class AIProvider(Base):
    __tablename__ = "ai_providers"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(128), nullable=False)
    provider = Column(String(32), nullable=False)  # OPENAI, GEMINI, GROQ, MISTRAL, OPENROUTER, CUSTOM
    base_url = Column(String(512))
    api_key_encrypted = Column(Text)
    default_model = Column(String(128), default="")
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class Outbox(Base):
    __tablename__ = "outbox"

    id = Column(Integer, primary_key=True, index=True)
    bot_id = Column(Integer, ForeignKey("bots.id"), nullable=False, index=True)
    message_id = Column(Integer, ForeignKey("messages.id"), index=True)
    status = Column(String(32), default="created")  # created, sent, error
    retry_count = Column(Integer, default=0)
    payload_json = Column(Text)
    error_message = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)
    sent_at = Column(DateTime)

"""SQLAlchemy models."""
from apps.backend.models.bot import Bot, Flow, FlowVersion
from apps.backend.models.session import ConversationSession
from apps.backend.models.variable import BotVariable, SessionVariable
from apps.backend.models.message import Message, ExecutionLog, AIApiLog
from apps.backend.models.channel import WhatsAppAccount, AIProvider, Outbox

__all__ = [
    "Bot",
    "Flow",
    "FlowVersion",
    "ConversationSession",
    "BotVariable",
    "SessionVariable",
    "Message",
    "ExecutionLog",
    "AIApiLog",
    "WhatsAppAccount",
    "AIProvider",
    "Outbox",
]

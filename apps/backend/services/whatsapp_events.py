"""WhatsApp Cloud API inbound events."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from apps.backend.models.channel import WhatsAppAccount
from apps.backend.services.flow_engine import run_inbound_message
from apps.backend.services.sessions import SessionStartError

logger = logging.getLogger(__name__)


@dataclass
class InboundMessage:
    phone_number_id: str
    sender: str
    text: str | None = None
    choice_id: str | None = None
    message_id: str | None = None


def parse_webhook_payload(payload: dict[str, Any]) -> list[InboundMessage]:
    """Text, button_reply and list_reply messages; statuses and media are ignored."""
    out: list[InboundMessage] = []
    for entry in payload.get("entry") or []:
        for change in entry.get("changes") or []:
            value = change.get("value") or {}
            phone_number_id = str((value.get("metadata") or {}).get("phone_number_id") or "")
            for msg in value.get("messages") or []:
                sender = str(msg.get("from") or "")
                if not phone_number_id or not sender:
                    continue
                mtype = msg.get("type")
                item = InboundMessage(phone_number_id=phone_number_id, sender=sender, message_id=msg.get("id"))
                if mtype == "text":
                    item.text = (msg.get("text") or {}).get("body")
                elif mtype == "interactive":
                    interactive = msg.get("interactive") or {}
                    reply = interactive.get(interactive.get("type") or "") or {}
                    item.choice_id = reply.get("id")
                    item.text = reply.get("title")
                elif mtype == "button":
                    # quick-reply button on a template message
                    btn = msg.get("button") or {}
                    item.choice_id = btn.get("payload")
                    item.text = btn.get("text")
                else:
                    logger.info("whatsapp_message_ignored type=%s", mtype)
                    continue
                if item.text or item.choice_id:
                    out.append(item)
    return out


def process_whatsapp_payload(db: Session, payload: dict[str, Any]) -> dict[str, int]:
    result = {"received": 0, "processed": 0, "unknown_account": 0, "no_flow": 0, "rejected": 0}
    for msg in parse_webhook_payload(payload):
        result["received"] += 1
        account = db.execute(
            select(WhatsAppAccount).where(WhatsAppAccount.phone_number_id == msg.phone_number_id)
        ).scalar_one_or_none()
        if not account:
            logger.warning("whatsapp_unknown_account phone_number_id=%s", msg.phone_number_id)
            result["unknown_account"] += 1
            continue
        try:
            run = run_inbound_message(db, account.bot_id, msg.sender, msg.text, msg.choice_id)
        except SessionStartError as e:
            logger.warning(
                "whatsapp_session_start_failed bot_id=%s sender=%s code=%s",
                account.bot_id, msg.sender, e.code,
            )
            result["no_flow"] += 1
            continue
        if run is None:
            result["no_flow"] += 1
            continue
        if run.rejected:
            result["rejected"] += 1
        result["processed"] += 1
        logger.info(
            "whatsapp_message_processed bot_id=%s session_id=%s status=%s",
            account.bot_id, run.session_id, run.status,
        )
    return result

"""Outbound message effects and the transports that deliver them."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from sqlalchemy.orm import Session

from apps.backend.config import get_settings
from apps.backend.models.channel import Outbox

logger = logging.getLogger(__name__)

KIND_TEXT = "text"
KIND_BUTTONS = "buttons"
KIND_LIST = "list"


@dataclass
class OutboundMessage:
    kind: str
    text: str
    options: list[dict[str, str]] = field(default_factory=list)  # [{id, title, section?, description?}]
    button_text: str | None = None
    node_id: str | None = None

    @property
    def message_type(self) -> str:
        return {KIND_BUTTONS: "BUTTON", KIND_LIST: "LIST"}.get(self.kind, "TEXT")

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"type": self.kind, "content": self.text}
        if self.options:
            out["options"] = self.options
        if self.button_text:
            out["buttonText"] = self.button_text
        return out


class OutboundTransport(Protocol):
    delivery_status: str

    def send_text(self, to: str, text: str) -> tuple[bool, str | None]:
        ...

    def send_choice_message(
        self,
        to: str,
        body: str,
        options: list[dict[str, str]],
        button_text: str | None = None,
    ) -> tuple[bool, str | None]:
        ...


def deliver(transport: OutboundTransport, to: str, message: OutboundMessage) -> tuple[bool, str | None]:
    if message.kind == KIND_TEXT:
        return transport.send_text(to, message.text)
    return transport.send_choice_message(to, message.text, message.options, message.button_text)


class SimulatorTransport:
    """Simulated sessions never reach a channel; the run result carries the messages."""

    delivery_status = "simulated"

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []

    def send_text(self, to: str, text: str) -> tuple[bool, str | None]:
        self.sent.append({"to": to, "text": text})
        return True, None

    def send_choice_message(self, to, body, options, button_text=None) -> tuple[bool, str | None]:
        self.sent.append({"to": to, "text": body, "options": options, "button_text": button_text})
        return True, None


class OutboxTransport:
    """Queues delivery through the outbox table and the rq outbox worker."""

    delivery_status = "queued"

    def __init__(self, db: Session, bot_id: int):
        self.db = db
        self.bot_id = bot_id

    def _queue(self, payload: dict[str, Any]) -> tuple[bool, str | None]:
        row = Outbox(
            bot_id=self.bot_id,
            status="created",
            payload_json=json.dumps({"provider": "whatsapp", **payload}, ensure_ascii=False),
        )
        self.db.add(row)
        self.db.commit()
        try:
            from redis import Redis
            from rq import Queue

            s = get_settings()
            r = Redis(host=s.redis_host, port=s.redis_port)
            q = Queue(s.rq_outbox_queue_name or "outbox", connection=r)
            q.enqueue("apps.worker.jobs.process_outbox", row.id)
        except Exception as e:
            logger.exception("outbox_enqueue_failed outbox_id=%s", row.id)
            return False, f"enqueue_failed: {str(e)[:120]}"
        return True, None

    def send_text(self, to: str, text: str) -> tuple[bool, str | None]:
        return self._queue({"kind": KIND_TEXT, "to": to, "body": text})

    def send_choice_message(self, to, body, options, button_text=None) -> tuple[bool, str | None]:
        kind = KIND_LIST if len(options) > 3 or button_text else KIND_BUTTONS
        return self._queue({
            "kind": kind,
            "to": to,
            "body": body,
            "options": options,
            "button_text": button_text,
        })

"""RQ jobs: outbound delivery through the WhatsApp Cloud API."""
import json
import logging
from datetime import datetime

logger = logging.getLogger(__name__)

WHATSAPP_TEXT_LIMIT = 4096


def _split_message(text: str, limit: int = WHATSAPP_TEXT_LIMIT) -> list[str]:
    """Cut text into channel-sized parts on line boundaries; overlong lines are hard-wrapped."""
    body = (text or "").strip()
    if len(body) <= limit:
        return [body] if body else []
    parts: list[str] = []
    current = ""
    for line in body.splitlines():
        line = line.rstrip()
        while len(line) > limit:
            if current:
                parts.append(current)
                current = ""
            parts.append(line[:limit])
            line = line[limit:]
        candidate = f"{current}\n{line}" if current else line
        if len(candidate) > limit:
            parts.append(current)
            current = line
        else:
            current = candidate
    if current.strip():
        parts.append(current)
    return parts


def _send(phone_number_id: str, token: str, payload: dict) -> tuple[bool, str | None]:
    from apps.backend.clients import whatsapp

    to = payload["to"]
    body = payload["body"]
    options = payload.get("options") or []
    kind = payload.get("kind") or "text"
    if kind == "buttons":
        return whatsapp.whatsapp_send_buttons(phone_number_id, token, to, body, options)
    if kind == "list":
        return whatsapp.whatsapp_send_list(phone_number_id, token, to, body, payload.get("button_text") or "", options)
    for part in _split_message(body):
        ok, err = whatsapp.whatsapp_send_text(phone_number_id, token, to, part)
        if not ok:
            return ok, err
    return True, None


def process_outbox(outbox_id: int) -> bool:
    """Deliver one queued message; the row ends as `sent` or `error`."""
    from apps.backend.database import get_session_factory
    from apps.backend.models.channel import Outbox
    from apps.backend.services.credentials import CredentialError, get_whatsapp_credentials

    with get_session_factory()() as db:
        row = db.get(Outbox, outbox_id)
        if not row or row.status != "created":
            return False

        def _fail(error: str, attempted: bool = False) -> bool:
            row.status = "error"
            row.error_message = error[:500]
            if attempted:
                row.retry_count = (row.retry_count or 0) + 1
            db.commit()
            logger.warning("outbox_delivery_failed outbox_id=%s error=%s", outbox_id, row.error_message)
            return False

        payload = json.loads(row.payload_json or "{}")
        if (payload.get("provider") or "whatsapp") != "whatsapp":
            return _fail(f"Unknown provider {payload.get('provider')}")
        if not payload.get("to") or not payload.get("body"):
            return _fail("Missing to or body")
        try:
            phone_number_id, token = get_whatsapp_credentials(db, row.bot_id)
        except CredentialError as e:
            return _fail(e.code)

        ok, err = _send(phone_number_id, token, payload)
        if not ok:
            return _fail(err or "send_failed", attempted=True)
        row.status = "sent"
        row.sent_at = datetime.utcnow()
        row.error_message = None
        db.commit()
        logger.info("outbox_sent outbox_id=%s kind=%s", outbox_id, payload.get("kind"))
        return True

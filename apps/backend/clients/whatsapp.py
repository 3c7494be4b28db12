"""WhatsApp Cloud API client."""
from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from apps.backend.config import get_settings

logger = logging.getLogger(__name__)

DEFAULT_RETRIES = 3
DEFAULT_BACKOFF = 1.0


def _messages_url(phone_number_id: str) -> str:
    base = get_settings().whatsapp_graph_api_base.rstrip("/")
    return f"{base}/{phone_number_id}/messages"


def _post_message(phone_number_id: str, access_token: str, payload: dict[str, Any]) -> tuple[bool, str | None]:
    """POST with bounded exponential backoff; 4xx is not retried."""
    headers = {
        "Authorization": f"Bearer {access_token}",
        "Content-Type": "application/json",
    }
    body = {"messaging_product": "whatsapp", "recipient_type": "individual", **payload}
    last_err = None
    for attempt in range(DEFAULT_RETRIES):
        try:
            r = httpx.post(_messages_url(phone_number_id), json=body, headers=headers, timeout=20)
            if r.status_code < 400:
                return True, None
            data = r.json() if r.content else {}
            err = (data.get("error") or {}).get("message") if isinstance(data, dict) else None
            last_err = f"http_{r.status_code}: {err or ''}".strip(": ")[:200]
            if r.status_code < 500:
                return False, last_err
        except (httpx.RequestError, ValueError) as e:
            last_err = str(e)[:200]
        if attempt < DEFAULT_RETRIES - 1:
            time.sleep(DEFAULT_BACKOFF * (2 ** attempt))
    logger.warning("whatsapp_send_failed phone_number_id=%s error=%s", phone_number_id, last_err)
    return False, last_err


def whatsapp_send_text(phone_number_id: str, access_token: str, to: str, text: str) -> tuple[bool, str | None]:
    payload = {"to": to, "type": "text", "text": {"preview_url": False, "body": text}}
    return _post_message(phone_number_id, access_token, payload)


def whatsapp_send_buttons(
    phone_number_id: str,
    access_token: str,
    to: str,
    body: str,
    options: list[dict[str, str]],
) -> tuple[bool, str | None]:
    buttons = [
        {"type": "reply", "reply": {"id": o["id"], "title": o["title"]}}
        for o in options
    ]
    payload = {
        "to": to,
        "type": "interactive",
        "interactive": {"type": "button", "body": {"text": body}, "action": {"buttons": buttons}},
    }
    return _post_message(phone_number_id, access_token, payload)


def whatsapp_send_list(
    phone_number_id: str,
    access_token: str,
    to: str,
    body: str,
    button_text: str,
    options: list[dict[str, str]],
) -> tuple[bool, str | None]:
    sections: list[dict[str, Any]] = []
    by_title: dict[str, dict[str, Any]] = {}
    for o in options:
        title = o.get("section") or ""
        section = by_title.get(title)
        if section is None:
            section = {"title": title, "rows": []} if title else {"rows": []}
            by_title[title] = section
            sections.append(section)
        row = {"id": o["id"], "title": o["title"]}
        if o.get("description"):
            row["description"] = o["description"]
        section["rows"].append(row)
    payload = {
        "to": to,
        "type": "interactive",
        "interactive": {
            "type": "list",
            "body": {"text": body},
            "action": {"button": button_text or "Options", "sections": sections},
        },
    }
    return _post_message(phone_number_id, access_token, payload)

"""Outbox worker job and the WhatsApp Cloud API client."""
import json

import httpx
import pytest

from apps.backend import database
from apps.backend.clients import whatsapp
from apps.backend.models.bot import Bot
from apps.backend.models.channel import Outbox, WhatsAppAccount
from apps.backend.services.credentials import encrypt_secret
from apps.worker import jobs
from apps.worker.jobs import _split_message, process_outbox


@pytest.fixture
def sent(monkeypatch, session_factory):
    calls = []

    def _text(phone_number_id, token, to, text):
        calls.append(("text", phone_number_id, token, to, text))
        return True, None

    def _buttons(phone_number_id, token, to, body, options):
        calls.append(("buttons", to, body, [o["id"] for o in options]))
        return True, None

    def _list(phone_number_id, token, to, body, button_text, options):
        calls.append(("list", to, body, button_text))
        return False, "http_400: bad list"

    monkeypatch.setattr(whatsapp, "whatsapp_send_text", _text)
    monkeypatch.setattr(whatsapp, "whatsapp_send_buttons", _buttons)
    monkeypatch.setattr(whatsapp, "whatsapp_send_list", _list)
    monkeypatch.setattr(database, "get_session_factory", lambda engine=None: session_factory)
    return calls


def _queued(db, payload, with_account=True):
    bot = Bot(name="bot")
    db.add(bot)
    db.commit()
    if with_account:
        db.add(WhatsAppAccount(bot_id=bot.id, phone_number_id="PN9", access_token_encrypted=encrypt_secret("tok")))
    row = Outbox(bot_id=bot.id, status="created", payload_json=json.dumps({"provider": "whatsapp", **payload}))
    db.add(row)
    db.commit()
    return row.id


@pytest.mark.timeout(10)
def test_text_is_sent_with_decrypted_token(test_db_session, sent):
    outbox_id = _queued(test_db_session, {"kind": "text", "to": "+1", "body": "hello"})

    assert process_outbox(outbox_id) is True

    assert sent == [("text", "PN9", "tok", "+1", "hello")]
    test_db_session.expire_all()
    row = test_db_session.get(Outbox, outbox_id)
    assert row.status == "sent"
    assert row.sent_at is not None
    # already delivered
    assert process_outbox(outbox_id) is False


@pytest.mark.timeout(10)
def test_buttons_payload(test_db_session, sent):
    options = [{"id": "a", "title": "A"}, {"id": "b", "title": "B"}]
    outbox_id = _queued(test_db_session, {"kind": "buttons", "to": "+1", "body": "Pick", "options": options})
    assert process_outbox(outbox_id) is True
    assert sent == [("buttons", "+1", "Pick", ["a", "b"])]


@pytest.mark.timeout(10)
def test_send_failure_is_recorded(test_db_session, sent):
    outbox_id = _queued(test_db_session, {
        "kind": "list", "to": "+1", "body": "Menu", "button_text": "Open", "options": [{"id": "x", "title": "X"}],
    })

    assert process_outbox(outbox_id) is False

    test_db_session.expire_all()
    row = test_db_session.get(Outbox, outbox_id)
    assert (row.status, row.error_message, row.retry_count) == ("error", "http_400: bad list", 1)


@pytest.mark.timeout(10)
def test_missing_account_is_an_error(test_db_session, sent):
    outbox_id = _queued(test_db_session, {"kind": "text", "to": "+1", "body": "hi"}, with_account=False)
    assert process_outbox(outbox_id) is False
    assert sent == []
    test_db_session.expire_all()
    assert test_db_session.get(Outbox, outbox_id).error_message == "whatsapp_account_not_found"


def test_split_message_respects_limit():
    text = "\n".join(["a" * 30] * 5)
    parts = _split_message(text, limit=70)
    assert all(len(p) <= 70 for p in parts)
    assert "".join(parts).replace("\n", "") == "a" * 150
    assert _split_message("   ") == []
    assert jobs._split_message("x" * 10, limit=4) == ["xxxx", "xxxx", "xx"]


class _Resp:
    def __init__(self, status_code, data=None):
        self.status_code = status_code
        self._data = data or {}
        self.content = json.dumps(self._data).encode()

    def json(self):
        return self._data


def test_client_retries_5xx_but_not_4xx(monkeypatch):
    replies = [_Resp(502), _Resp(200, {"messages": [{"id": "wamid.1"}]})]
    posted = []

    def _post(url, json=None, headers=None, timeout=None):
        posted.append((url, json, headers))
        return replies.pop(0)

    monkeypatch.setattr(whatsapp.httpx, "post", _post)
    monkeypatch.setattr(whatsapp.time, "sleep", lambda s: None)

    assert whatsapp.whatsapp_send_text("PN9", "tok", "+1", "hi") == (True, None)
    assert len(posted) == 2
    url, body, headers = posted[0]
    assert url.endswith("/PN9/messages")
    assert body["text"] == {"preview_url": False, "body": "hi"}
    assert headers["Authorization"] == "Bearer tok"

    replies.append(_Resp(400, {"error": {"message": "Invalid parameter"}}))
    ok, err = whatsapp.whatsapp_send_text("PN9", "tok", "+1", "hi")
    assert (ok, err) == (False, "http_400: Invalid parameter")
    assert len(posted) == 3


def test_client_transport_error_exhausts_retries(monkeypatch):
    def _post(url, json=None, headers=None, timeout=None):
        raise httpx.ConnectError("refused")

    monkeypatch.setattr(whatsapp.httpx, "post", _post)
    monkeypatch.setattr(whatsapp.time, "sleep", lambda s: None)
    ok, err = whatsapp.whatsapp_send_text("PN9", "tok", "+1", "hi")
    assert ok is False
    assert "refused" in err


def test_list_groups_rows_by_section(monkeypatch):
    posted = []
    monkeypatch.setattr(whatsapp, "_post_message", lambda pn, tok, payload: posted.append(payload) or (True, None))
    whatsapp.whatsapp_send_list("PN9", "tok", "+1", "Menu", "", [
        {"id": "1", "title": "Tea", "section": "Drinks"},
        {"id": "2", "title": "Cake", "section": "Food", "description": "Chocolate"},
        {"id": "3", "title": "Juice", "section": "Drinks"},
    ])
    action = posted[0]["interactive"]["action"]
    assert action["button"] == "Options"
    assert [(s["title"], [r["id"] for r in s["rows"]]) for s in action["sections"]] == [
        ("Drinks", ["1", "3"]),
        ("Food", ["2"]),
    ]

"""WhatsApp webhook: verification handshake and inbound routing."""
import pytest

from flow_builders import chain, node

from apps.backend.config import get_settings
from apps.backend.models.channel import WhatsAppAccount
from apps.backend.models.message import Message
from apps.backend.services import flow_engine
from apps.backend.services.whatsapp_events import parse_webhook_payload


def _payload(*messages, phone_number_id="PN1"):
    return {
        "object": "whatsapp_business_account",
        "entry": [{
            "id": "WABA",
            "changes": [{
                "field": "messages",
                "value": {
                    "messaging_product": "whatsapp",
                    "metadata": {"display_phone_number": "15550000", "phone_number_id": phone_number_id},
                    "messages": list(messages),
                },
            }],
        }],
    }


def _text(sender, body):
    return {"from": sender, "id": f"wamid.{sender}", "type": "text", "text": {"body": body}}


class _FakeOutbox:
    sent = []
    delivery_status = "queued"

    def __init__(self, db, bot_id):
        self.bot_id = bot_id

    def send_text(self, to, text):
        self.sent.append((to, text))
        return True, None

    def send_choice_message(self, to, body, options, button_text=None):
        self.sent.append((to, body, [o["id"] for o in options]))
        return True, None


@pytest.fixture
def outbox(monkeypatch):
    _FakeOutbox.sent = []
    monkeypatch.setattr(flow_engine, "OutboxTransport", _FakeOutbox)
    return _FakeOutbox


def test_parse_interactive_and_template_replies():
    payload = _payload(
        _text("111", "hello"),
        {"from": "222", "type": "interactive", "interactive": {
            "type": "button_reply", "button_reply": {"id": "yes", "title": "Yes"}}},
        {"from": "333", "type": "interactive", "interactive": {
            "type": "list_reply", "list_reply": {"id": "opt_2", "title": "Second", "description": "x"}}},
        {"from": "444", "type": "button", "button": {"payload": "STOP", "text": "Stop"}},
        {"from": "555", "type": "image", "image": {"id": "media"}},
    )
    parsed = parse_webhook_payload(payload)
    assert [(m.sender, m.text, m.choice_id) for m in parsed] == [
        ("111", "hello", None),
        ("222", "Yes", "yes"),
        ("333", "Second", "opt_2"),
        ("444", "Stop", "STOP"),
    ]
    assert {m.phone_number_id for m in parsed} == {"PN1"}


def test_status_only_payload_has_no_messages():
    payload = _payload()
    payload["entry"][0]["changes"][0]["value"]["statuses"] = [{"id": "wamid.1", "status": "delivered"}]
    assert parse_webhook_payload(payload) == []


def test_verify_handshake(client):
    token = get_settings().whatsapp_verify_token
    ok = client.get("/v1/webhook/whatsapp", params={
        "hub.mode": "subscribe", "hub.verify_token": token, "hub.challenge": "12345",
    })
    assert ok.status_code == 200
    assert ok.text == "12345"

    bad = client.get("/v1/webhook/whatsapp", params={
        "hub.mode": "subscribe", "hub.verify_token": "wrong", "hub.challenge": "12345",
    })
    assert bad.status_code == 403
    assert bad.json()["code"] == "forbidden"


def test_invalid_json_is_rejected(client):
    r = client.post("/v1/webhook/whatsapp", content=b"not json", headers={"Content-Type": "application/json"})
    assert r.status_code == 400
    assert r.json()["code"] == "invalid_json"


@pytest.mark.timeout(10)
def test_inbound_text_runs_main_flow(client, test_db_session, make_flow, outbox):
    nodes = [node("s", "START"), node("m", "MESSAGE", text="Hi {{last_user_message}}"), node("e", "END")]
    bot, _flow, _version = make_flow(nodes, chain("s", "m", "e"))
    test_db_session.add(WhatsAppAccount(bot_id=bot.id, phone_number_id="PN1"))
    test_db_session.commit()

    r = client.post("/v1/webhook/whatsapp", json=_payload(_text("15551234", "there"), _payload_sender_unknown()))

    assert r.status_code == 200
    assert r.json() == {"ok": True, "received": 1, "processed": 1, "unknown_account": 0, "no_flow": 0, "rejected": 0}
    assert outbox.sent == [("15551234", "Hi there")]
    statuses = [m.delivery_status for m in test_db_session.query(Message).filter(Message.sender == "BOT")]
    assert statuses == ["queued"]


def _payload_sender_unknown():
    # no sender: dropped by the parser
    return {"id": "wamid.x", "type": "text", "text": {"body": "ghost"}}


@pytest.mark.timeout(10)
def test_unknown_account_and_missing_flow_are_counted(client, test_db_session, make_flow, outbox):
    from apps.backend.models.bot import Bot

    bot = Bot(name="No flows")
    test_db_session.add(bot)
    test_db_session.commit()
    test_db_session.add(WhatsAppAccount(bot_id=bot.id, phone_number_id="PN-EMPTY"))
    test_db_session.commit()

    unknown = client.post("/v1/webhook/whatsapp", json=_payload(_text("1", "x"), phone_number_id="PN-NOPE")).json()
    assert unknown["unknown_account"] == 1
    no_flow = client.post("/v1/webhook/whatsapp", json=_payload(_text("1", "x"), phone_number_id="PN-EMPTY")).json()
    assert no_flow["no_flow"] == 1
    assert outbox.sent == []


@pytest.mark.timeout(10)
def test_flow_without_start_node_is_counted_and_the_rest_of_the_batch_runs(client, test_db_session, make_flow, outbox):
    bot, _flow, _version = make_flow([node("m", "MESSAGE", text="orphan")])
    test_db_session.add(WhatsAppAccount(bot_id=bot.id, phone_number_id="PN1"))
    test_db_session.commit()

    r = client.post("/v1/webhook/whatsapp", json=_payload(_text("111", "hi"), _text("222", "hello")))

    assert r.status_code == 200
    body = r.json()
    assert body["received"] == 2
    assert body["no_flow"] == 2
    assert body["processed"] == 0
    assert outbox.sent == []
    assert test_db_session.query(Message).count() == 0

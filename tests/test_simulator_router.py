"""Simulator and flow validation endpoints."""
from datetime import datetime, timedelta

import pytest

from flow_builders import chain, edge, node

from apps.backend.models.bot import FlowVersion
from apps.backend.services.resume_scheduler import resume_due_sessions_once


def _buttons_flow():
    nodes = [
        node("s", "START"),
        node("b", "BUTTON", messageText="Tea or coffee?", buttons=[
            {"buttonId": "tea", "label": "Tea", "storeIn": "drink"},
            {"buttonId": "coffee", "label": "Coffee", "storeIn": "drink"},
        ]),
        node("m", "MESSAGE", text="One {{drink}} coming up"),
    ]
    return nodes, chain("s", "b") + [edge("b", "m", "tea"), edge("b", "m", "coffee")]


@pytest.mark.timeout(10)
def test_conversation_through_simulator(client, make_flow):
    bot, _flow, _version = make_flow(*_buttons_flow())

    first = client.post("/v1/simulator/message", json={"bot_id": bot.id, "text": "hi"})
    assert first.status_code == 200
    body = first.json()
    assert body["status"] == "ACTIVE"
    assert body["currentNodeId"] == "b"
    assert body["responses"][0]["options"] == [{"id": "tea", "title": "Tea"}, {"id": "coffee", "title": "Coffee"}]
    assert body["resumeAt"] is None

    second = client.post("/v1/simulator/message", json={"bot_id": bot.id, "choice_id": "coffee"}).json()
    assert second["sessionId"] == body["sessionId"]
    assert [r["content"] for r in second["responses"]] == ["One Coffee coming up"]
    assert second["status"] == "COMPLETED"
    assert second["variables"]["drink"] == "Coffee"


@pytest.mark.timeout(10)
def test_simulator_prefers_latest_draft(client, test_db_session, make_flow):
    bot, flow, _version = make_flow([node("s", "START"), node("m", "MESSAGE", text="production")], chain("s", "m"))
    test_db_session.add(FlowVersion(
        flow_id=flow.id,
        version_number=2,
        flow_data={"nodes": [node("s", "START"), node("m", "MESSAGE", text="draft")], "edges": chain("s", "m")},
        is_draft=True,
        is_production=False,
    ))
    test_db_session.commit()

    body = client.post("/v1/simulator/message", json={"bot_id": bot.id, "flow_id": flow.id}).json()
    assert [r["content"] for r in body["responses"]] == ["draft"]


def test_unknown_bot_is_404(client):
    r = client.post("/v1/simulator/message", json={"bot_id": 999, "text": "hi"})
    assert r.status_code == 404
    assert r.json()["code"] == "bot_not_found"


@pytest.mark.timeout(10)
def test_flow_without_start_cannot_start_session(client, make_flow):
    bot, _flow, _version = make_flow([node("m", "MESSAGE", text="orphan")])
    r = client.post("/v1/simulator/message", json={"bot_id": bot.id, "text": "hi"})
    assert r.status_code == 422
    assert r.json()["code"] == "flow_has_no_start_node"


@pytest.mark.timeout(10)
def test_reset_starts_a_fresh_session(client, make_flow):
    bot, _flow, _version = make_flow(*_buttons_flow())
    first = client.post("/v1/simulator/message", json={"bot_id": bot.id, "user_address": "+7"}).json()

    reset = client.post("/v1/simulator/reset", json={"bot_id": bot.id, "user_address": "+7"}).json()
    assert reset == {"ok": True, "closed": 1}

    again = client.post("/v1/simulator/message", json={"bot_id": bot.id, "user_address": "+7"}).json()
    assert again["sessionId"] != first["sessionId"]
    assert again["currentNodeId"] == "b"


@pytest.mark.timeout(10)
def test_session_logs_list_executed_nodes(client, make_flow):
    bot, _flow, _version = make_flow(*_buttons_flow())
    body = client.post("/v1/simulator/message", json={"bot_id": bot.id}).json()

    logs = client.get(f"/v1/simulator/sessions/{body['sessionId']}/logs").json()
    assert [(entry["nodeId"], entry["nodeType"]) for entry in logs["logs"]] == [("s", "START"), ("b", "BUTTON")]
    assert logs["logs"][1]["output"]["outcome"] == "SUSPEND"
    assert client.get("/v1/simulator/sessions/424242/logs").status_code == 404


@pytest.mark.timeout(10)
def test_poll_picks_up_messages_after_timer(client, session_factory, make_flow):
    nodes = [node("s", "START"), node("d", "DELAY", delaySeconds=5), node("m", "MESSAGE", text="five seconds later")]
    bot, _flow, _version = make_flow(nodes, chain("s", "d", "m"))

    body = client.post("/v1/simulator/message", json={"bot_id": bot.id}).json()
    assert body["status"] == "PAUSED"
    assert body["resumeAt"] is not None

    waiting = client.get("/v1/simulator/poll", params={"session_id": body["sessionId"]}).json()
    assert waiting["pendingTimer"] is True
    assert waiting["messages"] == []

    resume_due_sessions_once(now=datetime.utcnow() + timedelta(minutes=1), session_factory=session_factory)

    done = client.get("/v1/simulator/poll", params={"session_id": body["sessionId"]}).json()
    assert done["status"] == "COMPLETED"
    assert [m["content"] for m in done["messages"]] == ["five seconds later"]


def test_validate_endpoint(client):
    flow_data = {"nodes": [node("s", "START"), node("i", "INPUT", promptText="Name?")], "edges": chain("s", "i")}
    body = client.post("/v1/flows/validate", json={"flowData": flow_data, "flowName": "Signup"}).json()
    assert body["isValid"] is False
    assert body["errors"][0]["message"] == "Variable name is required"
    assert body["errors"][0]["nodeId"] == "i"


@pytest.mark.timeout(10)
def test_validate_stored_version(client, make_flow):
    _bot, _flow, version = make_flow([node("s", "START"), node("e", "END")], chain("s", "e"))
    body = client.get(f"/v1/flows/versions/{version.id}/validate").json()
    assert body["isValid"] is True
    assert client.get("/v1/flows/versions/9999/validate").status_code == 404

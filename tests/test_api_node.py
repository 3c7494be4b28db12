"""API node: request building, retries and response routing."""
from types import SimpleNamespace

import pytest

from flow_builders import chain, edge, node

from apps.backend.config import Settings
from apps.backend.models.variable import BotVariable
from apps.backend.services import api_node
from apps.backend.services.api_node import ApiResponse, build_request
from apps.backend.services.flow_engine import execute_flow
from apps.backend.services.flow_graph import ApiConfig
from apps.backend.services.outbound import SimulatorTransport
from apps.backend.services.sessions import find_or_create_session
from apps.backend.services.variable_resolver import VariableScope


def _api_flow(**api_config):
    config = {
        "method": "GET",
        "url": "https://api.example.com/orders/{{order_id}}",
        "errorVariable": "apiError",
        "statusCodeVariable": "code",
    }
    config.update(api_config)
    nodes = [
        node("s", "START"),
        node("a", "API", **config),
        node("ok", "MESSAGE", text="Status: {{status}} ({{code}})"),
        node("bad", "MESSAGE", text="failed: {{apiError}}"),
    ]
    edges = chain("s", "a") + [edge("a", "ok", "success"), edge("a", "bad", "failure")]
    return nodes, edges


@pytest.fixture
def fake_http(monkeypatch):
    calls = []
    replies = []

    def _perform(request):
        calls.append(request)
        return replies[min(len(calls), len(replies)) - 1]

    monkeypatch.setattr(api_node, "_perform_request", _perform)
    return SimpleNamespace(calls=calls, replies=replies)


def _run_flow(db, make_flow, nodes, edges):
    bot, _flow, version = make_flow(nodes, edges)
    db.add(BotVariable(bot_id=bot.id, variable_name="order_id", variable_value="77", variable_type="STRING"))
    db.commit()
    session = find_or_create_session(db, bot.id, "+1", version.id, is_test=True)
    sleeps = []
    run = execute_flow(db, session, is_simulated=True, transport=SimulatorTransport(), sleep=sleeps.append)
    return run, sleeps


@pytest.mark.timeout(10)
def test_server_errors_are_retried_then_failure_route(test_db_session, make_flow, fake_http):
    fake_http.replies.append(ApiResponse(500, body={"error": "boom"}, error="http_500"))
    nodes, edges = _api_flow(retry={"max": 2, "delay": 250})

    run, sleeps = _run_flow(test_db_session, make_flow, nodes, edges)

    assert len(fake_http.calls) == 3
    assert sleeps == [0.25, 0.25]
    assert [r["content"] for r in run.responses] == ["failed: http_500"]
    assert fake_http.calls[0]["url"] == "https://api.example.com/orders/77"


@pytest.mark.timeout(10)
def test_client_errors_are_not_retried(test_db_session, make_flow, fake_http):
    fake_http.replies.append(ApiResponse(404, error="http_404"))
    nodes, edges = _api_flow(retry={"max": 2, "delay": 0})

    run, _sleeps = _run_flow(test_db_session, make_flow, nodes, edges)

    assert len(fake_http.calls) == 1
    assert [r["content"] for r in run.responses] == ["failed: http_404"]


@pytest.mark.timeout(10)
def test_retry_disabled_makes_one_call(test_db_session, make_flow, fake_http):
    fake_http.replies.append(ApiResponse(None, error="ConnectTimeout"))
    nodes, edges = _api_flow(retryEnabled=False, retry={"max": 5, "delay": 0})
    _run_flow(test_db_session, make_flow, nodes, edges)
    assert len(fake_http.calls) == 1


@pytest.mark.timeout(10)
def test_transient_failure_then_success_maps_response(test_db_session, make_flow, fake_http):
    fake_http.replies.extend([
        ApiResponse(None, error="ConnectError"),
        ApiResponse(200, body={"order": {"status": "shipped", "items": [{"sku": "A1"}]}}),
    ])
    nodes, edges = _api_flow(
        retry={"max": 3, "delay": 0},
        responseMapping=[
            {"jsonPath": "$.order.status", "variableName": "status"},
            {"jsonPath": "order.items[0].sku", "variableName": "sku"},
        ],
    )

    run, _sleeps = _run_flow(test_db_session, make_flow, nodes, edges)

    assert len(fake_http.calls) == 2
    assert [r["content"] for r in run.responses] == ["Status: shipped (200)"]


@pytest.mark.timeout(10)
def test_failure_without_route_fails_session(test_db_session, make_flow, fake_http):
    fake_http.replies.append(ApiResponse(503, error="http_503"))
    nodes = [node("s", "START"), node("a", "API", url="https://api.example.com")]
    run, _sleeps = _run_flow(test_db_session, make_flow, nodes, chain("s", "a"))
    assert run.status == "FAILED"


@pytest.mark.timeout(10)
def test_success_follows_plain_edge(test_db_session, make_flow, fake_http):
    fake_http.replies.append(ApiResponse(200, body={}))
    nodes = [
        node("s", "START"),
        node("a", "API", url="https://api.example.com"),
        node("m", "MESSAGE", text="done"),
    ]
    run, _sleeps = _run_flow(test_db_session, make_flow, nodes, chain("s", "a", "m"))
    assert [r["content"] for r in run.responses] == ["done"]


def _ctx(**variables):
    return SimpleNamespace(scope=VariableScope(session_vars=variables), settings=Settings())


def test_build_request_bearer_headers_and_json_body():
    cfg = ApiConfig.model_validate({
        "method": "post",
        "url": "https://x.test/{{path}}",
        "authType": "BEARER",
        "authConfig": {"bearerToken": "{{token}}"},
        "headers": [{"key": "X-Req", "value": "r-{{n}}"}],
        "body": '{"name": "{{name}}"}',
    })
    req = build_request(cfg, _ctx(path="users", token="t0k", n=1, name="Ann"))
    assert req["method"] == "POST"
    assert req["url"] == "https://x.test/users"
    assert req["headers"] == {"X-Req": "r-1", "Authorization": "Bearer t0k"}
    assert req["json"] == {"name": "Ann"}
    assert req["timeout"] == 10


def test_build_request_api_key_in_query_and_basic_auth():
    cfg = ApiConfig.model_validate({
        "url": "https://x.test",
        "authType": "API_KEY",
        "authConfig": {"apiKeyName": "key", "apiKeyValue": "{{k}}", "apiKeyLocation": "QUERY"},
        "queryParams": [{"key": "page", "value": "2"}],
        "timeout": 3,
    })
    req = build_request(cfg, _ctx(k="secret"))
    assert req["params"] == {"page": "2", "key": "secret"}
    assert req["timeout"] == 3

    basic = ApiConfig.model_validate({
        "url": "https://x.test",
        "authType": "BASIC_AUTH",
        "authConfig": {"basicUsername": "u", "basicPassword": "{{pw}}"},
    })
    assert build_request(basic, _ctx(pw="p"))["auth"] == ("u", "p")


def test_build_request_form_body_and_get_without_body():
    form = ApiConfig.model_validate({
        "method": "PUT",
        "url": "https://x.test",
        "contentType": "FORM_URLENCODED",
        "body": '{"a": "1"}',
    })
    assert build_request(form, _ctx())["data"] == {"a": "1"}

    get = ApiConfig.model_validate({"method": "GET", "url": "https://x.test", "body": "{}"})
    req = build_request(get, _ctx())
    assert "json" not in req and "content" not in req

"""AI node against a stubbed chat completion endpoint."""
import pytest

from flow_builders import chain, edge, node

from apps.backend.clients.ai_chat import ChatCompletionResult
from apps.backend.models.channel import AIProvider
from apps.backend.models.message import AIApiLog
from apps.backend.services import ai_node
from apps.backend.services.credentials import encrypt_secret
from apps.backend.services.flow_engine import execute_flow
from apps.backend.services.outbound import SimulatorTransport
from apps.backend.services.sessions import find_or_create_session
from apps.backend.services.variable_resolver import get_variable_map


@pytest.fixture
def fake_ai(monkeypatch):
    calls = []
    replies = []

    def _chat(base_url, api_key, model, messages, **kw):
        calls.append({"base_url": base_url, "api_key": api_key, "model": model, "messages": messages, **kw})
        return replies[min(len(calls), len(replies)) - 1]

    monkeypatch.setattr(ai_node, "chat_completion", _chat)
    return calls, replies


def _flow(**ai_config):
    config = {
        "customBaseUrl": "https://llm.example.com/v1",
        "customApiKey": "sk-{{tenant}}",
        "model": "small-model",
        "userMessage": "Answer: {{last_user_message}}",
        "responseVariable": "answer",
        "errorVariable": "aiError",
    }
    config.update(ai_config)
    nodes = [
        node("s", "START"),
        node("ai", "AI", **config),
        node("ok", "MESSAGE", text="AI: {{answer}}"),
        node("bad", "MESSAGE", text="AI down: {{aiError}}"),
    ]
    return nodes, chain("s", "ai") + [edge("ai", "ok", "success"), edge("ai", "bad", "failure")]


def _run(db, bot, version, text="What is 2+2?"):
    session = find_or_create_session(db, bot.id, "+1", version.id, is_test=True)
    return session, execute_flow(db, session, text, is_simulated=True, transport=SimulatorTransport(), sleep=lambda s: None)


@pytest.mark.timeout(10)
def test_success_sets_variables_and_logs_usage(test_db_session, make_flow, fake_ai):
    calls, replies = fake_ai
    replies.append(ChatCompletionResult(ok=True, content="4", prompt_tokens=7, completion_tokens=1, total_tokens=8))
    nodes, edges = _flow(
        systemPrompt="You are terse.",
        temperature=0.2,
        storeTokenUsage=True,
        tokenUsageVariable="usage",
    )
    bot, _flow_row, version = make_flow(nodes, edges)

    session, run = _run(test_db_session, bot, version)

    assert [r["content"] for r in run.responses] == ["AI: 4"]
    call = calls[0]
    assert call["base_url"] == "https://llm.example.com/v1"
    assert call["messages"][0] == {"role": "system", "content": "You are terse."}
    assert call["messages"][-1] == {"role": "user", "content": "Answer: What is 2+2?"}
    assert call["temperature"] == 0.2
    assert call["timeout"] == 30
    variables = get_variable_map(test_db_session, bot.id, session.id)
    assert variables["answer"] == "4"
    assert variables["usage"] == {"promptTokens": 7, "completionTokens": 1, "totalTokens": 8}
    log = test_db_session.query(AIApiLog).one()
    assert (log.status, log.total_tokens, log.provider, log.node_id) == ("SUCCESS", 8, "CUSTOM", "ai")


@pytest.mark.timeout(10)
def test_server_errors_retry_and_each_attempt_is_logged(test_db_session, make_flow, fake_ai):
    _calls, replies = fake_ai
    replies.extend([
        ChatCompletionResult(ok=False, error="overloaded", status_code=503),
        ChatCompletionResult(ok=False, error="timeout"),
        ChatCompletionResult(ok=True, content="fine", total_tokens=2),
    ])
    nodes, edges = _flow(retry={"max": 2, "delay": 0})
    bot, _flow_row, version = make_flow(nodes, edges)

    _session, run = _run(test_db_session, bot, version)

    assert [r["content"] for r in run.responses] == ["AI: fine"]
    logs = test_db_session.query(AIApiLog).order_by(AIApiLog.id).all()
    assert [(log.status, log.error_code) for log in logs] == [
        ("ERROR", "503"),
        ("ERROR", "transport"),
        ("SUCCESS", None),
    ]


@pytest.mark.timeout(10)
def test_client_error_is_not_retried_and_takes_failure_route(test_db_session, make_flow, fake_ai):
    calls, replies = fake_ai
    replies.append(ChatCompletionResult(ok=False, error="invalid api key", status_code=401))
    nodes, edges = _flow(retry={"max": 3, "delay": 0})
    bot, _flow_row, version = make_flow(nodes, edges)

    _session, run = _run(test_db_session, bot, version)

    assert len(calls) == 1
    assert [r["content"] for r in run.responses] == ["AI down: invalid api key"]


@pytest.mark.timeout(10)
def test_fallback_message_without_failure_route_ends_flow(test_db_session, make_flow, fake_ai):
    _calls, replies = fake_ai
    replies.append(ChatCompletionResult(ok=False, error="boom", status_code=500))
    nodes = [
        node("s", "START"),
        node("ai", "AI", customBaseUrl="https://llm.example.com/v1", customApiKey="k",
             userMessage="hi", responseVariable="answer", fallbackMessage="Sorry, try later"),
    ]
    bot, _flow_row, version = make_flow(nodes, chain("s", "ai"))

    _session, run = _run(test_db_session, bot, version)

    assert [r["content"] for r in run.responses] == ["Sorry, try later"]
    assert run.status == "COMPLETED"


@pytest.mark.timeout(10)
def test_missing_provider_takes_failure_route(test_db_session, make_flow, fake_ai):
    calls, _replies = fake_ai
    nodes, edges = _flow(customBaseUrl=None, customApiKey=None)
    bot, _flow_row, version = make_flow(nodes, edges)

    _session, run = _run(test_db_session, bot, version)

    assert calls == []
    assert [r["content"] for r in run.responses] == ["AI down: ai_provider_not_configured"]


@pytest.mark.timeout(10)
def test_stored_provider_json_mapping_and_send_to_user(test_db_session, make_flow, fake_ai):
    calls, replies = fake_ai
    replies.append(ChatCompletionResult(ok=True, content='{"intent": "refund", "score": 0.9}'))
    provider = AIProvider(name="main", provider="OPENAI", api_key_encrypted=encrypt_secret("sk-real"), default_model="gpt-x")
    test_db_session.add(provider)
    test_db_session.commit()
    nodes, edges = _flow(
        customBaseUrl=None,
        customApiKey=None,
        model="",
        aiProviderId=provider.id,
        responseFormat="json_object",
        responseMapping=[{"jsonPath": "intent", "variableName": "intent"}],
        sendToUser=True,
    )
    bot, _flow_row, version = make_flow(nodes, edges)

    session, run = _run(test_db_session, bot, version)

    call = calls[0]
    assert call["api_key"] == "sk-real"
    assert call["model"] == "gpt-x"
    assert call["json_mode"] is True
    assert call["base_url"].startswith("https://")
    assert run.responses[0]["content"] == '{"intent": "refund", "score": 0.9}'
    assert get_variable_map(test_db_session, bot.id, session.id)["intent"] == "refund"

"""AI node: chat completion against an OpenAI-compatible provider."""
from __future__ import annotations

import json
import logging

from apps.backend.clients.ai_chat import ChatCompletionResult, chat_completion
from apps.backend.models.message import AIApiLog
from apps.backend.services.credentials import CredentialError, get_ai_provider_credentials
from apps.backend.services.flow_graph import HANDLE_FAILURE, AiConfig, FlowNode
from apps.backend.services.node_runtime import (
    ExecutionContext,
    FlowExecutionError,
    NodeResult,
    UserInput,
    run_with_retry,
    success_target,
)
from apps.backend.services.sessions import get_conversation_history
from apps.backend.services.variable_resolver import get_path, resolve

logger = logging.getLogger(__name__)


def _credentials(ctx: ExecutionContext, cfg: AiConfig) -> tuple[str, str, str, int | None, str]:
    """(base_url, api_key, model, provider_row_id, provider_name)."""
    if cfg.ai_provider_id:
        base_url, api_key, default_model, row = get_ai_provider_credentials(ctx.db, cfg.ai_provider_id)
        return base_url, api_key, cfg.model or default_model, row.id, row.provider or ""
    if cfg.custom_base_url and cfg.custom_api_key:
        return cfg.custom_base_url, resolve(cfg.custom_api_key, ctx.scope), cfg.model, None, "CUSTOM"
    raise CredentialError("ai_provider_not_configured")


def build_messages(ctx: ExecutionContext, cfg: AiConfig) -> list[dict[str, str]]:
    messages: list[dict[str, str]] = []
    if cfg.system_prompt:
        messages.append({"role": "system", "content": resolve(cfg.system_prompt, ctx.scope)})
    if cfg.include_history:
        limit = cfg.history_length or ctx.settings.ai_history_default_length
        messages.extend(get_conversation_history(ctx.db, ctx.session.id, limit))
    messages.append({"role": "user", "content": resolve(cfg.user_message, ctx.scope)})
    return messages


def _log_attempt(ctx: ExecutionContext, node: FlowNode, provider_id, provider, model, res: ChatCompletionResult) -> None:
    ctx.db.add(AIApiLog(
        bot_id=ctx.session.bot_id,
        session_id=ctx.session.id,
        node_id=node.node_id,
        node_label=node.label,
        ai_provider_id=provider_id,
        provider=provider,
        model_name=model,
        status="SUCCESS" if res.ok else "ERROR",
        prompt_tokens=res.prompt_tokens,
        completion_tokens=res.completion_tokens,
        total_tokens=res.total_tokens,
        error_message=res.error,
        error_code=str(res.status_code) if res.status_code else ("transport" if not res.ok else None),
        response_time_ms=res.latency_ms,
    ))


def _fail(ctx: ExecutionContext, node: FlowNode, cfg: AiConfig, error: str, log_input: dict) -> NodeResult:
    nxt = ctx.require_node(ctx.graph.successor(node, cfg.failure_next_node_id, HANDLE_FAILURE), node)
    if not nxt and not cfg.fallback_message:
        raise FlowExecutionError(node.node_id, f"AI request failed: {error}")
    ctx.set_variable(cfg.error_variable, error)
    effects = []
    if cfg.fallback_message:
        effects.append(ctx.text(resolve(cfg.fallback_message, ctx.scope), node))
    return NodeResult.advance(nxt, effects=effects, log_input=log_input, log_output={"error": error})


def execute_ai(ctx: ExecutionContext, node: FlowNode, cfg: AiConfig, resumed: bool, user_input: UserInput | None) -> NodeResult:
    try:
        base_url, api_key, model, provider_id, provider = _credentials(ctx, cfg)
    except CredentialError as e:
        logger.warning("flow_ai_credentials_error session_id=%s node_id=%s code=%s", ctx.session.id, node.node_id, e.code)
        return _fail(ctx, node, cfg, e.code, {})

    messages = build_messages(ctx, cfg)
    log_input = {"model": model, "messages": len(messages)}

    def attempt() -> ChatCompletionResult:
        res = chat_completion(
            base_url,
            api_key,
            model,
            messages,
            temperature=cfg.temperature,
            max_tokens=cfg.max_tokens,
            top_p=cfg.top_p,
            frequency_penalty=cfg.frequency_penalty,
            presence_penalty=cfg.presence_penalty,
            stop=cfg.stop_sequences or None,
            seed=cfg.seed,
            json_mode=(cfg.response_format or "").lower() == "json_object",
            timeout=cfg.timeout or ctx.settings.ai_node_default_timeout_seconds,
        )
        _log_attempt(ctx, node, provider_id, provider, model, res)
        return res

    delay = (cfg.retry.delay if cfg.retry else 1000) / 1000.0
    res, calls = run_with_retry(
        attempt,
        retries=cfg.retry_attempts(),
        delay_seconds=delay,
        should_retry=lambda r: not r.ok and not r.is_client_error,
        sleep=ctx.sleep,
    )
    log_input["attempts"] = calls
    logger.info(
        "flow_ai_call session_id=%s node_id=%s ok=%s attempts=%s tokens=%s",
        ctx.session.id, node.node_id, res.ok, calls, res.total_tokens,
    )
    if not res.ok:
        return _fail(ctx, node, cfg, res.error or "ai_request_failed", log_input)

    ctx.set_variable(cfg.response_variable, res.content)
    if cfg.store_entire_response:
        ctx.set_variable(cfg.store_response_in, res.raw)
    if cfg.response_mapping:
        try:
            parsed = json.loads(res.content)
        except ValueError:
            parsed = res.raw
        for m in cfg.response_mapping:
            ctx.set_variable(m.variable_name, get_path(parsed, m.json_path))
    if cfg.store_token_usage:
        ctx.set_variable(cfg.token_usage_variable or "tokenUsage", res.usage())

    effects = [ctx.text(res.content, node)] if cfg.send_to_user and res.content else []
    nxt = ctx.require_node(success_target(ctx, node, cfg.success_next_node_id), node)
    return NodeResult.advance(nxt, effects=effects, log_input=log_input, log_output={"tokens": res.usage()})

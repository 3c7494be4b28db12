"""API node: templated HTTP call with retry and response mapping."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from apps.backend.services.flow_graph import HANDLE_FAILURE, ApiConfig, FlowNode
from apps.backend.services.node_runtime import (
    ExecutionContext,
    FlowExecutionError,
    NodeResult,
    UserInput,
    run_with_retry,
    success_target,
)
from apps.backend.services.variable_resolver import get_path, resolve

logger = logging.getLogger(__name__)


@dataclass
class ApiResponse:
    status_code: int | None  # None for transport errors / timeouts
    body: Any = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status_code is not None and 200 <= self.status_code < 300

    @property
    def retryable(self) -> bool:
        return self.status_code is None or self.status_code >= 500


def _perform_request(request: dict[str, Any]) -> ApiResponse:
    """Single attempt; never raises for HTTP or transport failures."""
    try:
        r = httpx.request(**request)
    except httpx.RequestError as e:
        return ApiResponse(None, error=(str(e) or e.__class__.__name__)[:200])
    try:
        body = r.json() if r.content else None
    except ValueError:
        body = r.text
    error = None if 200 <= r.status_code < 300 else f"http_{r.status_code}"
    return ApiResponse(r.status_code, body=body, error=error)


def build_request(cfg: ApiConfig, ctx: ExecutionContext) -> dict[str, Any]:
    scope = ctx.scope
    headers = {h.key: resolve(h.value, scope) for h in cfg.headers if h.key}
    params = {q.key: resolve(q.value, scope) for q in cfg.query_params if q.key}
    auth = None

    a = cfg.auth_config
    auth_type = (cfg.auth_type or "NONE").upper()
    if a and auth_type == "BEARER" and a.bearer_token:
        headers["Authorization"] = f"Bearer {resolve(a.bearer_token, scope)}"
    elif a and auth_type == "API_KEY" and a.api_key_name:
        value = resolve(a.api_key_value, scope)
        if (a.api_key_location or "HEADER").upper() == "QUERY":
            params[a.api_key_name] = value
        else:
            headers[a.api_key_name] = value
    elif a and auth_type == "BASIC_AUTH" and a.basic_username:
        auth = (resolve(a.basic_username, scope), resolve(a.basic_password, scope))
    elif a and auth_type == "CUSTOM_HEADER" and a.custom_auth_header:
        headers[a.custom_auth_header] = resolve(a.custom_auth_value, scope)

    request: dict[str, Any] = {
        "method": (cfg.method or "GET").upper(),
        "url": resolve(cfg.url, scope),
        "headers": headers,
        "params": params,
        "timeout": cfg.timeout or ctx.settings.api_node_default_timeout_seconds,
    }
    if auth:
        request["auth"] = auth
    if cfg.body and request["method"] not in ("GET", "DELETE"):
        body = resolve(cfg.body, scope)
        content_type = (cfg.content_type or "JSON").upper()
        if content_type == "JSON":
            try:
                request["json"] = json.loads(body)
            except ValueError:
                headers.setdefault("Content-Type", "application/json")
                request["content"] = body
        elif content_type == "FORM_URLENCODED":
            try:
                form = json.loads(body)
            except ValueError:
                form = None
            if isinstance(form, dict):
                request["data"] = form
            else:
                headers.setdefault("Content-Type", "application/x-www-form-urlencoded")
                request["content"] = body
        else:
            request["content"] = body
    return request


def execute_api(ctx: ExecutionContext, node: FlowNode, cfg: ApiConfig, resumed: bool, user_input: UserInput | None) -> NodeResult:
    request = build_request(cfg, ctx)
    delay = (cfg.retry.delay if cfg.retry else 1000) / 1000.0
    response, calls = run_with_retry(
        lambda: _perform_request(request),
        retries=cfg.retry_attempts(),
        delay_seconds=delay,
        should_retry=lambda r: r.retryable,
        sleep=ctx.sleep,
    )
    log_input = {"method": request["method"], "url": request["url"], "attempts": calls}
    logger.info(
        "flow_api_call session_id=%s node_id=%s status=%s attempts=%s",
        ctx.session.id, node.node_id, response.status_code, calls,
    )

    ctx.set_variable(cfg.status_code_variable, response.status_code)
    if response.ok:
        if cfg.store_entire_response:
            ctx.set_variable(cfg.store_response_in or cfg.response_variable, response.body)
        elif cfg.response_variable:
            ctx.set_variable(cfg.response_variable, response.body)
        for m in cfg.response_mapping:
            ctx.set_variable(m.variable_name, get_path(response.body, m.json_path))
        nxt = ctx.require_node(success_target(ctx, node, cfg.success_next_node_id), node)
        return NodeResult.advance(nxt, log_input=log_input, log_output={"statusCode": response.status_code})

    error = response.error or "request_failed"
    nxt = ctx.require_node(ctx.graph.successor(node, cfg.failure_next_node_id, HANDLE_FAILURE), node)
    if not nxt:
        raise FlowExecutionError(node.node_id, f"API request failed: {error}")
    ctx.set_variable(cfg.error_variable, error)
    return NodeResult.advance(
        nxt,
        log_input=log_input,
        log_output={"statusCode": response.status_code, "error": error},
    )

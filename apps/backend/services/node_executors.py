"""One executor per node type.

Every executor has the same shape::

    executor(ctx, node, cfg, resumed, user_input) -> NodeResult

`resumed` is True when the node already ran once for this visit and the
session was waiting on it (a prompt was sent, or a timer was armed).
"""
from __future__ import annotations

import logging
import re
from datetime import timedelta
from typing import Callable

from apps.backend.models.bot import Flow
from apps.backend.services import ai_node, api_node
from apps.backend.services.flow_conditions import compare, evaluate_expression, keyword_match
from apps.backend.services.flow_graph import (
    HANDLE_DEFAULT,
    HANDLE_ERROR,
    HANDLE_EXIT,
    HANDLE_FAILURE,
    HANDLE_FALLBACK,
    HANDLE_FALSE,
    HANDLE_LOOP_BODY,
    HANDLE_TRUE,
    ButtonConfig,
    ConditionConfig,
    DelayConfig,
    EndConfig,
    Fallback,
    FlowNode,
    GotoSubflowConfig,
    InputConfig,
    ListConfig,
    LoopConfig,
    MessageConfig,
    NodeType,
    StartConfig,
)
from apps.backend.services.node_runtime import (
    ExecutionContext,
    FlowExecutionError,
    NodeResult,
    Outcome,
    UserInput,
    success_target,
)
from apps.backend.services.outbound import KIND_BUTTONS, KIND_LIST, OutboundMessage
from apps.backend.services.sessions import latest_draft_version, production_version
from apps.backend.services.variable_resolver import get_path, resolve, resolve_value

logger = logging.getLogger(__name__)

# an edge drawn without a source handle
HANDLE_PLAIN = ""
DEFAULT_RETRY_MESSAGE = "Invalid input. Please try again."
DEFAULT_INPUT_MAX_RETRIES = 3
_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_PHONE = re.compile(r"^\+?[0-9\s\-()]{7,20}$")


def _next(ctx: ExecutionContext, node: FlowNode, configured: str | None = None, handle: str | None = None) -> str | None:
    return ctx.require_node(ctx.graph.successor(node, configured, handle), node)


def execute_start(ctx: ExecutionContext, node: FlowNode, cfg: StartConfig, resumed: bool, user_input: UserInput | None) -> NodeResult:
    return NodeResult.advance(_next(ctx, node, cfg.next_node_id))


def execute_message(ctx: ExecutionContext, node: FlowNode, cfg: MessageConfig, resumed: bool, user_input: UserInput | None) -> NodeResult:
    text = resolve(cfg.text, ctx.scope)
    effects = [ctx.text(text, node)] if text else []
    return NodeResult.advance(
        _next(ctx, node, cfg.next_node_id),
        effects=effects,
        log_output={"text": text},
    )


# -- choice nodes --------------------------------------------------------

def _match_choice(options: list[dict[str, str]], user_input: UserInput) -> dict[str, str] | None:
    if user_input.choice_id:
        for o in options:
            if o["id"] == user_input.choice_id:
                return o
    text = (user_input.text or "").strip().lower()
    if text:
        for o in options:
            if o["title"].strip().lower() == text or o["id"].lower() == text:
                return o
    return None


def _run_choice(
    ctx: ExecutionContext,
    node: FlowNode,
    prompt: OutboundMessage,
    targets: dict[str, str | None],
    fallback: Fallback | None,
    resumed: bool,
    user_input: UserInput | None,
) -> tuple[NodeResult, dict[str, str] | None]:
    if not resumed:
        return NodeResult.suspend(effects=[prompt], log_output={"prompt": prompt.text}), None
    if user_input is None or user_input.empty:
        return NodeResult.suspend(), None

    chosen = _match_choice(prompt.options, user_input)
    if chosen:
        nxt = _next(ctx, node, targets.get(chosen["id"]), chosen["id"])
        if nxt is None:
            nxt = _next(ctx, node, None, HANDLE_PLAIN)
        return NodeResult.advance(nxt, log_input={"choice": chosen["id"]}), chosen

    effects: list[OutboundMessage] = []
    if fallback and fallback.message:
        effects.append(ctx.text(resolve(fallback.message, ctx.scope), node))
    nxt = _next(ctx, node, fallback.next_node_id if fallback else None, HANDLE_FALLBACK)
    log_input = {"unmatched": user_input.choice_id or user_input.text}
    if nxt:
        return NodeResult.advance(nxt, effects=effects, log_input=log_input), None
    # re-prompt and keep waiting
    return NodeResult.suspend(effects=effects + [prompt], log_input=log_input), None


def execute_button(ctx: ExecutionContext, node: FlowNode, cfg: ButtonConfig, resumed: bool, user_input: UserInput | None) -> NodeResult:
    options = []
    targets: dict[str, str | None] = {}
    stores: dict[str, str | None] = {}
    for idx, b in enumerate(cfg.buttons):
        bid = b.button_id or f"btn_{idx + 1}"
        options.append({"id": bid, "title": resolve(b.label, ctx.scope)})
        targets[bid] = b.next_node_id
        stores[bid] = b.store_in
    prompt = OutboundMessage(
        kind=KIND_BUTTONS,
        text=resolve(cfg.message_text, ctx.scope),
        options=options,
        node_id=node.node_id,
    )
    result, chosen = _run_choice(ctx, node, prompt, targets, cfg.fallback, resumed, user_input)
    if chosen and stores.get(chosen["id"]):
        ctx.set_variable(stores[chosen["id"]], chosen["title"])
    return result


def execute_list(ctx: ExecutionContext, node: FlowNode, cfg: ListConfig, resumed: bool, user_input: UserInput | None) -> NodeResult:
    options = []
    targets: dict[str, str | None] = {}
    for section in cfg.sections:
        for idx, item in enumerate(section.items):
            iid = item.item_id or f"{section.title or 'item'}_{idx + 1}"
            opt = {"id": iid, "title": resolve(item.title, ctx.scope), "section": section.title}
            if item.description:
                opt["description"] = resolve(item.description, ctx.scope)
            options.append(opt)
            targets[iid] = item.next_node_id
    prompt = OutboundMessage(
        kind=KIND_LIST,
        text=resolve(cfg.message_text, ctx.scope),
        options=options,
        button_text=cfg.button_text or None,
        node_id=node.node_id,
    )
    result, _chosen = _run_choice(ctx, node, prompt, targets, cfg.fallback, resumed, user_input)
    return result


# -- input ---------------------------------------------------------------

def _input_is_valid(cfg: InputConfig, text: str) -> bool:
    value = text.strip()
    if not value:
        return False
    kind = (cfg.input_type or "TEXT").upper()
    rules = cfg.validation
    if kind == "NUMBER":
        try:
            float(value)
        except ValueError:
            return False
    elif kind == "EMAIL" and not _EMAIL.match(value):
        return False
    elif kind == "PHONE" and not _PHONE.match(value):
        return False
    elif kind == "CUSTOM_REGEX" and not (rules and rules.regex_pattern):
        return False
    if rules:
        if rules.min_length is not None and len(value) < rules.min_length:
            return False
        if rules.max_length is not None and len(value) > rules.max_length:
            return False
        if rules.regex_pattern:
            try:
                if not re.fullmatch(rules.regex_pattern, value):
                    return False
            except re.error:
                logger.warning("flow_input_bad_regex pattern=%s", rules.regex_pattern[:120])
                return False
    return True


def execute_input(ctx: ExecutionContext, node: FlowNode, cfg: InputConfig, resumed: bool, user_input: UserInput | None) -> NodeResult:
    if not resumed:
        ctx.put_node_state("retries", node, None)
        prompt = resolve(cfg.prompt_text, ctx.scope)
        return NodeResult.suspend(effects=[ctx.text(prompt, node)], log_output={"prompt": prompt})
    if user_input is None or not user_input.text:
        return NodeResult.suspend()

    text = user_input.text
    if _input_is_valid(cfg, text):
        ctx.put_node_state("retries", node, None)
        ctx.set_variable(cfg.variable_name, text)
        nxt = ctx.require_node(success_target(ctx, node, cfg.success_next_node_id), node)
        return NodeResult.advance(nxt, log_input={"text": text}, log_output={cfg.variable_name: text})

    rc = cfg.retry_config
    max_retries = rc.max_retries if rc else DEFAULT_INPUT_MAX_RETRIES
    failures = int(ctx.get_node_state("retries", node) or 0) + 1
    if failures <= max_retries:
        ctx.put_node_state("retries", node, failures)
        message = resolve(rc.retry_message if rc and rc.retry_message else DEFAULT_RETRY_MESSAGE, ctx.scope)
        return NodeResult.suspend(
            effects=[ctx.text(message, node)],
            log_input={"text": text},
            log_output={"invalid": True, "retry": failures},
        )
    ctx.put_node_state("retries", node, None)
    nxt = _next(ctx, node, rc.failure_next_node_id if rc else None, HANDLE_FAILURE)
    if not nxt:
        raise FlowExecutionError(node.node_id, "input retries exhausted and no failure route configured")
    return NodeResult.advance(nxt, log_input={"text": text}, log_output={"invalid": True, "exhausted": True})


# -- condition -----------------------------------------------------------

def execute_condition(ctx: ExecutionContext, node: FlowNode, cfg: ConditionConfig, resumed: bool, user_input: UserInput | None) -> NodeResult:
    ctype = (cfg.condition_type or "VARIABLE_COMPARISON").upper()
    default_id = cfg.default_branch.next_node_id if cfg.default_branch else None

    if ctype == "LOGICAL_EXPRESSION" or (cfg.branches and not cfg.left_operand):
        for idx, branch in enumerate(cfg.branches):
            if evaluate_expression(branch.expression, ctx.scope):
                nxt = _next(ctx, node, branch.next_node_id, f"branch-{idx}")
                return NodeResult.advance(nxt, log_output={"branch": branch.label or idx})
        nxt = _next(ctx, node, default_id, HANDLE_DEFAULT)
        return NodeResult.advance(nxt, log_output={"branch": "default"})

    if ctype == "KEYWORD_MATCH":
        left = resolve(cfg.left_operand, ctx.scope) if cfg.left_operand else ctx.scope.get("last_user_message")
        matched = keyword_match(left, resolve(cfg.right_operand, ctx.scope))
    else:
        left = resolve_value(cfg.left_operand, ctx.scope)
        right = resolve_value(cfg.right_operand, ctx.scope)
        matched = compare(left, cfg.operator, right)

    log_input = {"left": left, "operator": cfg.operator, "right": cfg.right_operand}
    if matched:
        configured = cfg.branches[0].next_node_id if cfg.branches else None
        nxt = _next(ctx, node, configured, HANDLE_TRUE)
    else:
        nxt = _next(ctx, node, default_id, HANDLE_FALSE) or _next(ctx, node, None, HANDLE_DEFAULT)
    return NodeResult.advance(nxt, log_input=log_input, log_output={"matched": matched})


# -- delay ---------------------------------------------------------------

def execute_delay(ctx: ExecutionContext, node: FlowNode, cfg: DelayConfig, resumed: bool, user_input: UserInput | None) -> NodeResult:
    if resumed:
        return NodeResult.advance(_next(ctx, node, cfg.next_node_id))
    if not cfg.delay_seconds or cfg.delay_seconds <= 0:
        raise FlowExecutionError(node.node_id, "delay duration must be greater than 0")
    resume_at = ctx.now() + timedelta(seconds=float(cfg.delay_seconds))
    return NodeResult.suspend(resume_at=resume_at, log_output={"resumeAt": resume_at.isoformat()})


# -- loop ----------------------------------------------------------------

class _LoopSourceError(Exception):
    pass


def _init_loop(ctx: ExecutionContext, cfg: LoopConfig) -> dict:
    loop_type = (cfg.loop_type or "FOR_EACH").upper()
    state: dict = {"index": 0, "results": []}
    if loop_type == "FOR_EACH":
        source = resolve_value(cfg.array_variable or "", ctx.scope)
        if source is None or source == "":
            source = []
        if not isinstance(source, list):
            raise _LoopSourceError(f"loop source {cfg.array_variable} is not an array")
        state["items"] = source
    elif loop_type == "COUNT_BASED":
        raw = resolve_value(cfg.iteration_count, ctx.scope)
        try:
            state["count"] = int(float(raw))
        except (TypeError, ValueError):
            raise _LoopSourceError(f"iteration count {cfg.iteration_count!r} is not a number")
    elif loop_type != "CONDITION_BASED":
        raise _LoopSourceError(f"unknown loop type {cfg.loop_type}")
    return state


def _number(value: float) -> float | int:
    return int(value) if float(value).is_integer() else value


def _finish_loop(ctx: ExecutionContext, node: FlowNode, cfg: LoopConfig, state: dict, forced: bool) -> NodeResult:
    ctx.put_node_state("loops", node, None)
    ctx.set_variable(cfg.count_variable, state["index"])
    if cfg.collect_results:
        ctx.set_variable(cfg.result_variable, state.get("results") or [])
    if forced:
        logger.info("flow_loop_max_iterations session_id=%s node_id=%s max=%s", ctx.session.id, node.node_id, cfg.max_iterations)
    return NodeResult.advance(
        _next(ctx, node, cfg.exit_next_node_id, HANDLE_EXIT),
        log_output={"exit": True, "iterations": state["index"], "forced": forced},
    )


def _loop_error(ctx: ExecutionContext, node: FlowNode, cfg: LoopConfig, message: str) -> NodeResult:
    ctx.put_node_state("loops", node, None)
    nxt = _next(ctx, node, cfg.error_next_node_id, HANDLE_ERROR)
    if not nxt:
        raise FlowExecutionError(node.node_id, message)
    ctx.set_variable(cfg.error_variable, message)
    return NodeResult.advance(nxt, log_output={"error": message})


def execute_loop(ctx: ExecutionContext, node: FlowNode, cfg: LoopConfig, resumed: bool, user_input: UserInput | None) -> NodeResult:
    state = ctx.get_node_state("loops", node)
    if state is None:
        try:
            state = _init_loop(ctx, cfg)
        except _LoopSourceError as e:
            return _loop_error(ctx, node, cfg, str(e))
        if "items" in state and not state["items"]:
            if (cfg.on_empty_array or "SKIP").upper() == "ERROR":
                return _loop_error(ctx, node, cfg, f"loop source {cfg.array_variable} is empty")
            return _finish_loop(ctx, node, cfg, state, forced=False)
    elif cfg.collect_results and state["index"] > 0 and cfg.result_json_path:
        # one body pass just finished
        state["results"].append(resolve_value(cfg.result_json_path, ctx.scope))

    i = state["index"]
    loop_type = (cfg.loop_type or "FOR_EACH").upper()
    if loop_type == "FOR_EACH":
        more = i < len(state["items"])
    elif loop_type == "COUNT_BASED":
        more = i < state["count"]
    else:
        more = evaluate_expression(cfg.continue_condition, ctx.scope)

    if not more or i >= cfg.max_iterations:
        return _finish_loop(ctx, node, cfg, state, forced=more)

    body = _next(ctx, node, cfg.loop_body_next_node_id, HANDLE_LOOP_BODY)
    if not body:
        raise FlowExecutionError(node.node_id, "loop has no body")

    if loop_type == "FOR_EACH":
        item = state["items"][i]
        ctx.set_variable(cfg.item_variable or "item", item)
        ctx.set_variable(cfg.index_variable, i)
        for m in cfg.item_mapping:
            ctx.set_variable(m.variable_name, get_path(item, m.json_path))
    elif loop_type == "COUNT_BASED":
        ctx.set_variable(cfg.counter_variable, _number(cfg.start_value + i * cfg.step))
    ctx.set_variable(cfg.current_iteration_variable, i + 1)

    state["index"] = i + 1
    ctx.put_node_state("loops", node, state)
    return NodeResult.advance(body, loop_iteration=True, log_output={"iteration": i + 1})


# -- end / subflow -------------------------------------------------------

def execute_end(ctx: ExecutionContext, node: FlowNode, cfg: EndConfig, resumed: bool, user_input: UserInput | None) -> NodeResult:
    effects = []
    if cfg.final_message:
        text = resolve(cfg.final_message, ctx.scope)
        if text:
            effects.append(ctx.text(text, node))
    return NodeResult(
        Outcome.TERMINATE,
        effects=effects,
        session_action=(cfg.session_action or "KEEP_ACTIVE").upper(),
        end_type=(cfg.end_type or "NORMAL").upper(),
        log_output={"endType": cfg.end_type, "sessionAction": cfg.session_action},
    )


def execute_goto_subflow(ctx: ExecutionContext, node: FlowNode, cfg: GotoSubflowConfig, resumed: bool, user_input: UserInput | None) -> NodeResult:
    try:
        flow_id = int(cfg.target_flow_id)
    except (TypeError, ValueError):
        raise FlowExecutionError(node.node_id, f"invalid target flow {cfg.target_flow_id!r}")
    flow = ctx.db.get(Flow, flow_id)
    if not flow or flow.bot_id != ctx.session.bot_id:
        raise FlowExecutionError(node.node_id, f"target flow {flow_id} not found")
    version = None
    if ctx.is_simulated:
        version = latest_draft_version(ctx.db, flow_id)
    version = version or production_version(ctx.db, flow_id)
    if not version:
        raise FlowExecutionError(node.node_id, f"target flow {flow_id} has no runnable version")
    return NodeResult(
        Outcome.ENTER_SUBFLOW,
        next_node_id=_next(ctx, node, cfg.next_node_id),
        subflow_version_id=version.id,
        log_output={"subflowVersionId": version.id},
    )


Executor = Callable[..., NodeResult]

EXECUTORS: dict[NodeType, Executor] = {
    NodeType.START: execute_start,
    NodeType.MESSAGE: execute_message,
    NodeType.BUTTON: execute_button,
    NodeType.LIST: execute_list,
    NodeType.INPUT: execute_input,
    NodeType.CONDITION: execute_condition,
    NodeType.DELAY: execute_delay,
    NodeType.API: api_node.execute_api,
    NodeType.AI: ai_node.execute_ai,
    NodeType.LOOP: execute_loop,
    NodeType.END: execute_end,
    NodeType.GOTO_SUBFLOW: execute_goto_subflow,
}

def execute_node(ctx: ExecutionContext, node: FlowNode, resumed: bool, user_input: UserInput | None) -> NodeResult:
    return EXECUTORS[node.node_type](ctx, node, node.config, resumed, user_input)

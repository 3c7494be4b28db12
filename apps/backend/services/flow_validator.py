"""Static checks over a flow version before it is deployed."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from apps.backend.services.flow_graph import (
    AiConfig,
    ApiConfig,
    ButtonConfig,
    ConditionConfig,
    DelayConfig,
    FlowDataError,
    FlowGraph,
    FlowNode,
    GotoSubflowConfig,
    InputConfig,
    ListConfig,
    LoopConfig,
    MessageConfig,
    NodeType,
)

MAX_BUTTONS = 3
MAX_BUTTON_LABEL = 20
MAX_BODY_TEXT = 1024
MAX_LIST_ITEMS = 10
MAX_LIST_ITEM_TITLE = 24
MAX_LIST_ITEM_DESCRIPTION = 72
MAX_LIST_BUTTON_TEXT = 20


@dataclass
class ValidationIssue:
    message: str
    node_id: str | None = None
    node_name: str | None = None
    node_type: str | None = None
    flow_name: str | None = None
    field: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodeId": self.node_id,
            "nodeName": self.node_name,
            "nodeType": self.node_type,
            "flowName": self.flow_name,
            "field": self.field,
            "message": self.message,
        }


@dataclass
class ValidationResult:
    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "isValid": self.is_valid,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
        }


def _blank(value: str | None) -> bool:
    return not value or not str(value).strip()


class _Collector:
    def __init__(self, graph: FlowGraph, flow_name: str | None):
        self.graph = graph
        self.flow_name = flow_name
        self.result = ValidationResult()

    def _issue(self, node: FlowNode | None, field_name: str | None, message: str) -> ValidationIssue:
        return ValidationIssue(
            message=message,
            node_id=node.node_id if node else None,
            node_name=node.name if node else None,
            node_type=node.node_type.value if node else None,
            flow_name=self.flow_name,
            field=field_name,
        )

    def error(self, node: FlowNode | None, field_name: str | None, message: str) -> None:
        self.result.errors.append(self._issue(node, field_name, message))

    def warning(self, node: FlowNode | None, message: str) -> None:
        self.result.warnings.append(self._issue(node, None, message))


def _check_message(c: _Collector, node: FlowNode, cfg: MessageConfig) -> None:
    if _blank(cfg.text):
        c.error(node, "text", "Message content is required")


def _check_body_text(c: _Collector, node: FlowNode, text: str, what: str) -> None:
    if _blank(text):
        c.error(node, "messageText", f"{what} message text is required")
    elif len(text) > MAX_BODY_TEXT:
        c.error(node, "messageText", f"Message text must not exceed {MAX_BODY_TEXT} characters")


def _check_button(c: _Collector, node: FlowNode, cfg: ButtonConfig) -> None:
    _check_body_text(c, node, cfg.message_text, "Button")
    if not cfg.buttons:
        c.error(node, "buttons", "At least one button is required")
        return
    if len(cfg.buttons) > MAX_BUTTONS:
        c.error(node, "buttons", f"Maximum {MAX_BUTTONS} buttons allowed")
    for idx, btn in enumerate(cfg.buttons):
        if _blank(btn.label):
            c.error(node, f"buttons[{idx}]", f"Button {idx + 1}: label is required")
        elif len(btn.label) > MAX_BUTTON_LABEL:
            c.error(node, f"buttons[{idx}]", f"Button {idx + 1}: label must not exceed {MAX_BUTTON_LABEL} characters")


def _check_list(c: _Collector, node: FlowNode, cfg: ListConfig) -> None:
    _check_body_text(c, node, cfg.message_text, "List")
    if _blank(cfg.button_text):
        c.error(node, "buttonText", "List button text is required")
    elif len(cfg.button_text) > MAX_LIST_BUTTON_TEXT:
        c.error(node, "buttonText", f"Button text must not exceed {MAX_LIST_BUTTON_TEXT} characters")
    if not cfg.sections:
        c.error(node, "sections", "At least one section is required")
        return
    total = 0
    for s_idx, section in enumerate(cfg.sections):
        if not section.items:
            c.error(node, f"sections[{s_idx}]", f"Section {s_idx + 1}: at least one item is required")
            continue
        total += len(section.items)
        for i_idx, item in enumerate(section.items):
            where = f"sections[{s_idx}].items[{i_idx}]"
            label = f"Section {s_idx + 1}, Item {i_idx + 1}"
            if _blank(item.title):
                c.error(node, where, f"{label}: title is required")
            elif len(item.title) > MAX_LIST_ITEM_TITLE:
                c.error(node, where, f"{label}: title must not exceed {MAX_LIST_ITEM_TITLE} characters")
            if item.description and len(item.description) > MAX_LIST_ITEM_DESCRIPTION:
                c.error(node, where, f"{label}: description must not exceed {MAX_LIST_ITEM_DESCRIPTION} characters")
    if total > MAX_LIST_ITEMS:
        c.error(node, "sections", f"Total list items ({total}) exceeds maximum of {MAX_LIST_ITEMS}")


def _check_input(c: _Collector, node: FlowNode, cfg: InputConfig) -> None:
    if _blank(cfg.prompt_text):
        c.error(node, "promptText", "Prompt message is required")
    if _blank(cfg.variable_name):
        c.error(node, "variableName", "Variable name is required")


def _check_condition(c: _Collector, node: FlowNode, cfg: ConditionConfig) -> None:
    if cfg.condition_type.upper() == "LOGICAL_EXPRESSION" or (cfg.branches and _blank(cfg.left_operand)):
        if not cfg.branches:
            c.error(node, "branches", "At least one branch is required")
        for idx, branch in enumerate(cfg.branches):
            if _blank(branch.expression):
                c.error(node, f"branches[{idx}]", f"Branch {idx + 1}: expression is required")
        return
    if _blank(cfg.left_operand) and cfg.condition_type.upper() != "KEYWORD_MATCH":
        c.error(node, "leftOperand", "Left operand is required")
    if _blank(cfg.operator) and cfg.condition_type.upper() != "KEYWORD_MATCH":
        c.error(node, "operator", "Operator is required")
    if cfg.condition_type.upper() == "KEYWORD_MATCH" and _blank(cfg.right_operand):
        c.error(node, "rightOperand", "Keywords are required")


def _check_delay(c: _Collector, node: FlowNode, cfg: DelayConfig) -> None:
    if not cfg.delay_seconds or cfg.delay_seconds <= 0:
        c.error(node, "delaySeconds", "Delay duration must be greater than 0")


def _check_api(c: _Collector, node: FlowNode, cfg: ApiConfig) -> None:
    if _blank(cfg.url):
        c.error(node, "url", "API URL is required")


def _check_ai(c: _Collector, node: FlowNode, cfg: AiConfig) -> None:
    if _blank(cfg.user_message):
        c.error(node, "userMessage", "User message template is required")
    if _blank(cfg.response_variable):
        c.error(node, "responseVariable", "Response variable name is required")


def _check_loop(c: _Collector, node: FlowNode, cfg: LoopConfig) -> None:
    loop_type = (cfg.loop_type or "FOR_EACH").upper()
    if loop_type == "FOR_EACH" and _blank(cfg.array_variable):
        c.error(node, "arrayVariable", "Array variable is required for For Each loops")
    if loop_type == "COUNT_BASED":
        count = cfg.iteration_count
        missing = count is None or (isinstance(count, str) and _blank(count))
        if missing or (not isinstance(count, str) and count <= 0):
            c.error(node, "iterationCount", "Iteration count must be a positive number for Count Based loops")
    if loop_type == "CONDITION_BASED" and _blank(cfg.continue_condition):
        c.error(node, "continueCondition", "Continue condition is required for Condition Based loops")
    if cfg.max_iterations <= 0:
        c.error(node, "maxIterations", "Max iterations must be greater than 0")


def _check_goto_subflow(c: _Collector, node: FlowNode, cfg: GotoSubflowConfig) -> None:
    if cfg.target_flow_id is None or _blank(str(cfg.target_flow_id)):
        c.error(node, "targetFlowId", "Target subflow must be selected")


_FIELD_CHECKS = {
    NodeType.MESSAGE: _check_message,
    NodeType.BUTTON: _check_button,
    NodeType.LIST: _check_list,
    NodeType.INPUT: _check_input,
    NodeType.CONDITION: _check_condition,
    NodeType.DELAY: _check_delay,
    NodeType.API: _check_api,
    NodeType.AI: _check_ai,
    NodeType.LOOP: _check_loop,
    NodeType.GOTO_SUBFLOW: _check_goto_subflow,
}


def _reachable_from(graph: FlowGraph, start_id: str) -> set[str]:
    seen: set[str] = set()
    stack = [start_id]
    while stack:
        node_id = stack.pop()
        if node_id in seen:
            continue
        seen.add(node_id)
        node = graph.get(node_id)
        if node is None:
            continue
        for nxt in graph.all_successors(node):
            if nxt not in seen:
                stack.append(nxt)
    return seen


def validate_flow(flow: FlowGraph | dict[str, Any], flow_name: str | None = None) -> ValidationResult:
    """Never mutates `flow`; accepts raw flow data or a parsed graph."""
    if isinstance(flow, FlowGraph):
        graph = flow
    else:
        try:
            graph = FlowGraph.from_flow_data(flow)
        except FlowDataError as e:
            result = ValidationResult()
            result.errors.append(ValidationIssue(message=f"Flow data is malformed: {e}", flow_name=flow_name))
            return result

    c = _Collector(graph, flow_name)

    seen_ids: set[str] = set()
    for node in graph.nodes:
        if node.node_id in seen_ids:
            c.error(node, "nodeId", f"Duplicate node id {node.node_id}")
        seen_ids.add(node.node_id)

    starts = graph.nodes_of_type(NodeType.START)
    if not starts:
        c.error(None, None, "Flow must have exactly one Start node")
    elif len(starts) > 1:
        c.error(None, None, f"Flow has {len(starts)} Start nodes, only one is allowed")

    ends = graph.nodes_of_type(NodeType.END)
    if not ends:
        c.warning(None, "Flow has no End node. Flows should terminate properly.")

    for node in graph.nodes:
        check = _FIELD_CHECKS.get(node.node_type)
        if check:
            check(c, node, node.config)

    for edge in graph.edges:
        label = edge.edge_id or f"{edge.source_node_id}->{edge.target_node_id}"
        if graph.get(edge.source_node_id) is None:
            c.error(None, None, f"Edge {label} references non-existent source node {edge.source_node_id}")
        if graph.get(edge.target_node_id) is None:
            c.error(None, None, f"Edge {label} references non-existent target node {edge.target_node_id}")

    for node in graph.nodes:
        for ref in node.config.config_successors():
            if graph.get(ref) is None:
                c.error(node, None, f"Node references non-existent next node {ref}")

    for end in ends:
        if graph.out_edges(end.node_id):
            c.error(end, None, "End node cannot have outgoing edges")

    if len(starts) == 1:
        reachable = _reachable_from(graph, starts[0].node_id)
        for node in graph.nodes:
            if node.node_id not in reachable:
                c.warning(node, f'Node "{node.name}" is not reachable from Start node')

    return c.result

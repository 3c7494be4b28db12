"""Typed flow graph: node configs, edges and successor resolution.

Flow version data arrives from the editor as camelCase JSON.  It is parsed
once, at load time, into one config model per node type so executors and the
validator work with explicit fields instead of raw dicts.
"""
from __future__ import annotations

import enum
from typing import Any, Iterator

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel


class FlowDataError(ValueError):
    """Flow version data cannot be parsed into a typed graph."""


class NodeType(str, enum.Enum):
    START = "START"
    MESSAGE = "MESSAGE"
    BUTTON = "BUTTON"
    LIST = "LIST"
    INPUT = "INPUT"
    CONDITION = "CONDITION"
    DELAY = "DELAY"
    API = "API"
    AI = "AI"
    LOOP = "LOOP"
    END = "END"
    GOTO_SUBFLOW = "GOTO_SUBFLOW"


# Edge source handles used by multi-output nodes.
HANDLE_SUCCESS = "success"
HANDLE_FAILURE = "failure"
HANDLE_LOOP_BODY = "loop_body"
HANDLE_EXIT = "exit"
HANDLE_ERROR = "error"
HANDLE_DEFAULT = "default"
HANDLE_FALLBACK = "fallback"
HANDLE_TRUE = "true"
HANDLE_FALSE = "false"


class _Config(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        # the editor sends null for cleared fields
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data

    def config_successors(self) -> list[str]:
        """Node ids referenced directly by this config."""
        return []


def _ids(*values: str | None) -> list[str]:
    return [v for v in values if v]


class NextNodeMixin(_Config):
    next_node_id: str | None = None

    def config_successors(self) -> list[str]:
        return _ids(self.next_node_id)


class StartConfig(NextNodeMixin):
    pass


class MessageConfig(NextNodeMixin):
    text: str = ""

    @model_validator(mode="before")
    @classmethod
    def _legacy_text(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("text") and data.get("messageContent"):
            data = {**data, "text": data["messageContent"]}
        return data


class ButtonOption(_Config):
    button_id: str = ""
    label: str = ""
    next_node_id: str | None = None
    store_in: str | None = None


class Fallback(_Config):
    message: str | None = None
    next_node_id: str | None = None


class ButtonConfig(_Config):
    message_text: str = ""
    buttons: list[ButtonOption] = Field(default_factory=list)
    fallback: Fallback | None = None

    def config_successors(self) -> list[str]:
        out = _ids(*(b.next_node_id for b in self.buttons))
        if self.fallback:
            out += _ids(self.fallback.next_node_id)
        return out


class ListItem(_Config):
    item_id: str = ""
    title: str = ""
    description: str | None = None
    next_node_id: str | None = None


class ListSection(_Config):
    title: str = ""
    items: list[ListItem] = Field(default_factory=list)


class ListConfig(_Config):
    message_text: str = ""
    button_text: str = ""
    sections: list[ListSection] = Field(default_factory=list)
    fallback: Fallback | None = None

    def all_items(self) -> list[ListItem]:
        return [item for section in self.sections for item in section.items]

    def config_successors(self) -> list[str]:
        out = _ids(*(i.next_node_id for i in self.all_items()))
        if self.fallback:
            out += _ids(self.fallback.next_node_id)
        return out


class InputValidation(_Config):
    min_length: int | None = None
    max_length: int | None = None
    regex_pattern: str | None = None


class InputRetryConfig(_Config):
    max_retries: int = 3
    retry_message: str | None = None
    failure_next_node_id: str | None = None


class InputConfig(_Config):
    prompt_text: str = ""
    input_type: str = "TEXT"  # TEXT, NUMBER, EMAIL, PHONE, CUSTOM_REGEX
    validation: InputValidation | None = None
    variable_name: str = ""
    retry_config: InputRetryConfig | None = None
    success_next_node_id: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _legacy_prompt(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("promptText") and data.get("promptMessage"):
            data = {**data, "promptText": data["promptMessage"]}
        return data

    def config_successors(self) -> list[str]:
        out = _ids(self.success_next_node_id)
        if self.retry_config:
            out += _ids(self.retry_config.failure_next_node_id)
        return out


class ConditionBranch(_Config):
    label: str = ""
    expression: str = ""
    next_node_id: str | None = None


class DefaultBranch(_Config):
    next_node_id: str | None = None


class ConditionConfig(_Config):
    condition_type: str = "VARIABLE_COMPARISON"  # KEYWORD_MATCH, LOGICAL_EXPRESSION
    left_operand: str = ""
    operator: str = ""
    right_operand: str = ""
    branches: list[ConditionBranch] = Field(default_factory=list)
    default_branch: DefaultBranch | None = None

    def config_successors(self) -> list[str]:
        out = _ids(*(b.next_node_id for b in self.branches))
        if self.default_branch:
            out += _ids(self.default_branch.next_node_id)
        return out


_DELAY_UNITS = {"SECONDS": 1, "MINUTES": 60, "HOURS": 3600}


class DelayConfig(NextNodeMixin):
    delay_seconds: float = 0

    @model_validator(mode="before")
    @classmethod
    def _legacy_duration(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("delaySeconds") and data.get("delayDuration"):
            unit = str(data.get("delayUnit") or "SECONDS").upper()
            seconds = float(data["delayDuration"]) * _DELAY_UNITS.get(unit, 1)
            data = {**data, "delaySeconds": seconds}
        return data


class KeyValue(_Config):
    key: str = ""
    value: str = ""


class JsonPathMapping(_Config):
    json_path: str = ""
    variable_name: str = ""


class RetryPolicy(_Config):
    max: int = 0
    delay: int = 1000  # milliseconds


class ApiAuthConfig(_Config):
    bearer_token: str | None = None
    api_key_name: str | None = None
    api_key_value: str | None = None
    api_key_location: str = "HEADER"  # HEADER, QUERY
    basic_username: str | None = None
    basic_password: str | None = None
    custom_auth_header: str | None = None
    custom_auth_value: str | None = None


class _Routed(_Config):
    success_next_node_id: str | None = None
    failure_next_node_id: str | None = None
    retry_enabled: bool | None = None
    retry: RetryPolicy | None = None
    timeout: float | None = None  # seconds
    error_variable: str | None = None

    def retry_attempts(self) -> int:
        """Extra attempts after the first one."""
        if self.retry_enabled is False or not self.retry:
            return 0
        return max(0, int(self.retry.max or 0))

    def config_successors(self) -> list[str]:
        return _ids(self.success_next_node_id, self.failure_next_node_id)


class ApiConfig(_Routed):
    method: str = "GET"
    url: str = ""
    auth_type: str = "NONE"  # NONE, BEARER, API_KEY, BASIC_AUTH, CUSTOM_HEADER
    auth_config: ApiAuthConfig | None = None
    headers: list[KeyValue] = Field(default_factory=list)
    query_params: list[KeyValue] = Field(default_factory=list)
    content_type: str = "JSON"  # JSON, FORM_URLENCODED, RAW
    body: str | None = None
    status_code_variable: str | None = None
    store_entire_response: bool = False
    store_response_in: str | None = None
    response_mapping: list[JsonPathMapping] = Field(default_factory=list)
    response_variable: str | None = None


class AiConfig(_Routed):
    ai_provider_id: int | None = None
    custom_base_url: str | None = None
    custom_api_key: str | None = None
    model: str = ""
    system_prompt: str | None = None
    user_message: str = ""
    include_history: bool = False
    history_length: int | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    stop_sequences: list[str] = Field(default_factory=list)
    seed: int | None = None
    response_format: str = "text"  # text, json_object
    send_to_user: bool = False
    response_variable: str | None = None
    store_entire_response: bool = False
    store_response_in: str | None = None
    response_mapping: list[JsonPathMapping] = Field(default_factory=list)
    store_token_usage: bool = False
    token_usage_variable: str | None = None
    fallback_message: str | None = None


class LoopConfig(_Config):
    loop_type: str = "FOR_EACH"  # FOR_EACH, COUNT_BASED, CONDITION_BASED
    array_variable: str | None = None
    item_variable: str | None = None
    index_variable: str | None = None
    item_mapping: list[JsonPathMapping] = Field(default_factory=list)
    iteration_count: int | str | None = None
    start_value: float = 0
    step: float = 1
    counter_variable: str | None = None
    continue_condition: str | None = None
    max_iterations: int = 100
    current_iteration_variable: str | None = None
    count_variable: str | None = None
    collect_results: bool = False
    result_variable: str | None = None
    result_json_path: str | None = None
    on_empty_array: str = "SKIP"  # SKIP, ERROR
    error_variable: str | None = None
    loop_body_next_node_id: str | None = None
    exit_next_node_id: str | None = None
    error_next_node_id: str | None = None

    def config_successors(self) -> list[str]:
        return _ids(self.loop_body_next_node_id, self.exit_next_node_id, self.error_next_node_id)


class EndConfig(_Config):
    end_type: str = "NORMAL"  # NORMAL, ERROR
    final_message: str | None = None
    session_action: str = "KEEP_ACTIVE"  # KEEP_ACTIVE, CLOSE_SESSION


class GotoSubflowConfig(NextNodeMixin):
    target_flow_id: int | str | None = None


CONFIG_MODELS: dict[NodeType, type[_Config]] = {
    NodeType.START: StartConfig,
    NodeType.MESSAGE: MessageConfig,
    NodeType.BUTTON: ButtonConfig,
    NodeType.LIST: ListConfig,
    NodeType.INPUT: InputConfig,
    NodeType.CONDITION: ConditionConfig,
    NodeType.DELAY: DelayConfig,
    NodeType.API: ApiConfig,
    NodeType.AI: AiConfig,
    NodeType.LOOP: LoopConfig,
    NodeType.END: EndConfig,
    NodeType.GOTO_SUBFLOW: GotoSubflowConfig,
}

class FlowNode(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    node_id: str
    node_type: NodeType
    position: dict[str, float] = Field(default_factory=dict)
    label: str | None = None
    config: _Config = Field(default_factory=_Config)

    @model_validator(mode="before")
    @classmethod
    def _typed_config(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        raw_type = data.get("nodeType", data.get("node_type"))
        try:
            node_type = NodeType(str(raw_type).upper())
        except ValueError:
            raise ValueError(f"unknown node type {raw_type!r}")
        raw_config = data.get("config") or {}
        if isinstance(raw_config, _Config):
            return data
        return {**data, "nodeType": node_type, "config": CONFIG_MODELS[node_type].model_validate(raw_config)}

    @property
    def name(self) -> str:
        return self.label or self.node_id


class FlowEdge(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    edge_id: str | None = None
    source_node_id: str
    target_node_id: str
    source_handle: str | None = None
    target_handle: str | None = None


class FlowGraph:
    """Read-only view over one flow version's nodes and edges."""

    def __init__(self, nodes: list[FlowNode], edges: list[FlowEdge], version_id: int | None = None):
        self.nodes = nodes
        self.edges = edges
        self.version_id = version_id
        self._by_id: dict[str, FlowNode] = {}
        for n in nodes:
            self._by_id.setdefault(n.node_id, n)

    @classmethod
    def from_flow_data(cls, flow_data: dict[str, Any] | None, version_id: int | None = None) -> "FlowGraph":
        data = flow_data or {}
        try:
            nodes = [FlowNode.model_validate(n) for n in data.get("nodes") or []]
            edges = [FlowEdge.model_validate(e) for e in data.get("edges") or []]
        except ValidationError as e:
            raise FlowDataError(str(e)) from e
        return cls(nodes, edges, version_id=version_id)

    def get(self, node_id: str | None) -> FlowNode | None:
        if not node_id:
            return None
        return self._by_id.get(node_id)

    def nodes_of_type(self, node_type: NodeType) -> list[FlowNode]:
        return [n for n in self.nodes if n.node_type == node_type]

    def start_node(self) -> FlowNode | None:
        starts = self.nodes_of_type(NodeType.START)
        return starts[0] if len(starts) == 1 else None

    def out_edges(self, node_id: str) -> list[FlowEdge]:
        return [e for e in self.edges if e.source_node_id == node_id]

    def edge_target(self, node_id: str, handle: str | None = None) -> str | None:
        """Target of the edge leaving `node_id` through `handle`.

        Without a handle, an edge with no source handle wins over any other.
        """
        edges = self.out_edges(node_id)
        if handle is not None:
            for e in edges:
                if (e.source_handle or "") == handle:
                    return e.target_node_id
            return None
        for e in edges:
            if not e.source_handle:
                return e.target_node_id
        return edges[0].target_node_id if edges else None

    def successor(self, node: FlowNode, configured: str | None = None, handle: str | None = None) -> str | None:
        """One output of a node: config-embedded id first, then the edge for that output."""
        if configured:
            return configured
        if handle is not None:
            return self.edge_target(node.node_id, handle)
        return self.edge_target(node.node_id)

    def all_successors(self, node: FlowNode) -> Iterator[str]:
        """Every node id the node can advance to, via edges or its config."""
        for e in self.out_edges(node.node_id):
            yield e.target_node_id
        yield from node.config.config_successors()

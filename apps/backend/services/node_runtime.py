"""Shared types for node executors and the flow engine."""
from __future__ import annotations

import copy
import enum
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from sqlalchemy.orm import Session

from apps.backend.config import Settings
from apps.backend.models.session import ConversationSession
from apps.backend.services.flow_graph import HANDLE_SUCCESS, FlowGraph, FlowNode
from apps.backend.services.outbound import OutboundMessage, KIND_TEXT
from apps.backend.services.variable_resolver import VariableScope, set_session_variable


class FlowExecutionError(Exception):
    """Unrecoverable run error; the session is marked FAILED."""

    def __init__(self, node_id: str | None, message: str):
        super().__init__(message)
        self.node_id = node_id
        self.message = message


class Outcome(str, enum.Enum):
    ADVANCE = "ADVANCE"
    SUSPEND = "SUSPEND"  # awaiting user input, or a timer when resume_at is set
    TERMINATE = "TERMINATE"  # END reached
    ENTER_SUBFLOW = "ENTER_SUBFLOW"


@dataclass
class UserInput:
    text: str | None = None
    choice_id: str | None = None

    @property
    def empty(self) -> bool:
        return not (self.text or self.choice_id)


@dataclass
class NodeResult:
    outcome: Outcome
    next_node_id: str | None = None
    effects: list[OutboundMessage] = field(default_factory=list)
    resume_at: datetime | None = None
    session_action: str | None = None
    end_type: str | None = None
    subflow_version_id: int | None = None
    loop_iteration: bool = False  # a LOOP node handing control to its body
    log_input: dict[str, Any] = field(default_factory=dict)
    log_output: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def advance(cls, next_node_id: str | None, **kw) -> "NodeResult":
        return cls(Outcome.ADVANCE, next_node_id=next_node_id, **kw)

    @classmethod
    def suspend(cls, **kw) -> "NodeResult":
        return cls(Outcome.SUSPEND, **kw)


@dataclass
class ExecutionContext:
    db: Session
    session: ConversationSession
    graph: FlowGraph
    scope: VariableScope
    settings: Settings
    is_simulated: bool = False
    now: Callable[[], datetime] = datetime.utcnow
    sleep: Callable[[float], None] = time.sleep

    def set_variable(self, name: str | None, value: Any) -> None:
        if not name:
            return
        self.scope.set(name, value)
        set_session_variable(self.db, self.session.id, name, value)

    def text(self, text: str, node: FlowNode) -> OutboundMessage:
        return OutboundMessage(kind=KIND_TEXT, text=text, node_id=node.node_id)

    def _state_key(self, node: FlowNode) -> str:
        return f"{self.graph.version_id}:{node.node_id}"

    def get_node_state(self, section: str, node: FlowNode) -> Any:
        state = self.session.node_state or {}
        return copy.deepcopy((state.get(section) or {}).get(self._state_key(node)))

    def put_node_state(self, section: str, node: FlowNode, value: Any) -> None:
        state = copy.deepcopy(self.session.node_state or {})
        bucket = state.setdefault(section, {})
        if value is None:
            bucket.pop(self._state_key(node), None)
        else:
            bucket[self._state_key(node)] = value
        self.session.node_state = state

    def require_node(self, node_id: str | None, from_node: FlowNode) -> str | None:
        """A configured next node that does not exist aborts the run."""
        if node_id and self.graph.get(node_id) is None:
            raise FlowExecutionError(from_node.node_id, f"next node {node_id} does not exist")
        return node_id


def run_with_retry(
    attempt: Callable[[], Any],
    *,
    retries: int,
    delay_seconds: float,
    should_retry: Callable[[Any], bool],
    sleep: Callable[[float], None],
) -> tuple[Any, int]:
    """Call `attempt` until it succeeds, `should_retry` says stop, or retries run out.

    Returns the last result and the number of calls made.
    """
    calls = 0
    result = None
    for i in range(retries + 1):
        if i > 0 and delay_seconds > 0:
            sleep(delay_seconds)
        calls += 1
        result = attempt()
        if not should_retry(result):
            break
    return result, calls


def success_target(ctx: ExecutionContext, node: FlowNode, configured: str | None) -> str | None:
    """SUCCESS output, falling back to an edge drawn without a handle."""
    return ctx.graph.successor(node, configured, HANDLE_SUCCESS) or ctx.graph.edge_target(node.node_id, "")

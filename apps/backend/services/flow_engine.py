"""Conversation state machine: drives node executors over a persisted session."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified
from sqlalchemy.orm.exc import StaleDataError

from apps.backend.config import get_settings
from apps.backend.models.bot import FlowVersion
from apps.backend.models.message import ExecutionLog, Message
from apps.backend.models.session import (
    ConversationSession,
    SESSION_CLOSED,
    SESSION_COMPLETED,
    SESSION_FAILED,
    SESSION_PAUSED,
    TERMINAL_STATUSES,
)
from apps.backend.services.flow_graph import FlowDataError, FlowGraph, NodeType
from apps.backend.services.node_executors import execute_node
from apps.backend.services.node_runtime import (
    ExecutionContext,
    FlowExecutionError,
    NodeResult,
    Outcome,
    UserInput,
)
from apps.backend.services.outbound import (
    OutboundMessage,
    OutboundTransport,
    OutboxTransport,
    SimulatorTransport,
    deliver,
)
from apps.backend.services.sessions import (
    find_or_create_session,
    latest_draft_version,
    main_flow_production_version,
    production_version,
)
from apps.backend.services.variable_resolver import load_scope, set_session_variable

logger = logging.getLogger(__name__)


@dataclass
class FlowRunResult:
    session_id: int
    status: str
    current_node_id: str | None
    responses: list[dict[str, Any]] = field(default_factory=list)
    rejected: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "status": self.status,
            "currentNodeId": self.current_node_id,
            "responses": self.responses,
            "rejected": self.rejected,
        }


class _GraphCache:
    """Flow versions loaded once per run."""

    def __init__(self, db: Session):
        self.db = db
        self._graphs: dict[int, FlowGraph] = {}

    def get(self, version_id: int | None) -> FlowGraph:
        if version_id is None:
            raise FlowDataError("session has no flow version")
        if version_id not in self._graphs:
            version = self.db.get(FlowVersion, version_id)
            if not version:
                raise FlowDataError(f"flow version {version_id} not found")
            self._graphs[version_id] = FlowGraph.from_flow_data(version.flow_data, version_id=version.id)
        return self._graphs[version_id]


def _record_user_message(db: Session, session: ConversationSession, user_input: UserInput) -> None:
    db.add(Message(
        session_id=session.id,
        sender="USER",
        message_type="BUTTON" if user_input.choice_id else "TEXT",
        content=user_input.text or user_input.choice_id,
        node_id=session.current_node_id,
    ))


def _deliver_effects(
    db: Session,
    session: ConversationSession,
    transport: OutboundTransport,
    effects: list[OutboundMessage],
) -> list[dict[str, Any]]:
    out = []
    for effect in effects:
        ok, err = deliver(transport, session.user_address, effect)
        if not ok:
            logger.warning("flow_delivery_failed session_id=%s node_id=%s error=%s", session.id, effect.node_id, err)
        db.add(Message(
            session_id=session.id,
            sender="BOT",
            message_type=effect.message_type,
            content=effect.text,
            node_id=effect.node_id,
            delivery_status=transport.delivery_status if ok else "error",
        ))
        out.append(effect.to_dict())
    return out


def _log_step(db: Session, session: ConversationSession, node, result: NodeResult, duration_ms: int) -> None:
    output = dict(result.log_output)
    output["outcome"] = result.outcome.value
    db.add(ExecutionLog(
        session_id=session.id,
        node_id=node.node_id,
        node_type=node.node_type.value,
        duration_ms=duration_ms,
        input_json=result.log_input or None,
        output_json=output,
        next_node_id=result.next_node_id,
    ))


def _pop_return_frame(session: ConversationSession) -> dict[str, Any] | None:
    """Unwind the call stack to the nearest caller that has somewhere to return to."""
    stack = list(session.subflow_call_stack or [])
    frame = None
    while stack:
        candidate = stack.pop()
        if candidate.get("returnNodeId"):
            frame = candidate
            break
    session.subflow_call_stack = stack
    return frame


def _finish(session: ConversationSession, result: NodeResult | None, now: datetime) -> None:
    action = result.session_action if result else None
    session.status = SESSION_CLOSED if action == "CLOSE_SESSION" else SESSION_COMPLETED
    if session.status == SESSION_CLOSED:
        session.closed_at = now
    session.resume_at = None
    session.waiting = False


def _mark_failed(db: Session, session: ConversationSession, node_id: str | None, node_type: str | None, error: str) -> None:
    db.rollback()
    session.status = SESSION_FAILED
    session.resume_at = None
    session.waiting = False
    db.add(ExecutionLog(
        session_id=session.id,
        node_id=node_id or "",
        node_type=node_type or "UNKNOWN",
        error=error[:2000],
    ))
    try:
        db.commit()
    except StaleDataError:
        db.rollback()
        logger.info("flow_fail_superseded session_id=%s node_id=%s", session.id, node_id)


class _RunSuperseded(Exception):
    """Another writer moved the session on while this run held it."""


def _check_revision(session: ConversationSession, expected: int) -> None:
    if session.revision != expected:
        raise _RunSuperseded(f"revision {session.revision} != {expected}")


def _flush_step(db: Session, session: ConversationSession, clock: Callable[[], datetime]) -> int:
    """Write the step's session state under the revision check; returns the new revision."""
    session.updated_at = clock()
    flag_modified(session, "updated_at")
    db.flush()
    return session.revision


def _waiting_on_delay(graphs: _GraphCache, session: ConversationSession) -> bool:
    if not session.waiting:
        return False
    try:
        node = graphs.get(session.flow_version_id).get(session.current_node_id)
    except FlowDataError:
        return False
    return node is not None and node.node_type == NodeType.DELAY


def execute_flow(
    db: Session,
    session: ConversationSession,
    user_text: str | None = None,
    choice_id: str | None = None,
    is_simulated: bool = False,
    *,
    transport: OutboundTransport | None = None,
    now: Callable[[], datetime] | None = None,
    sleep: Callable[[float], None] | None = None,
    resume_timer: bool = False,
) -> FlowRunResult:
    """Advance the session until it suspends, terminates or fails.

    A session waiting on a DELAY only moves when the resume scheduler calls
    with `resume_timer=True`; user input arriving meanwhile is stored and the
    run is rejected. Every step writes the session under its revision before
    anything is sent, so a run that lost the session to another writer stops
    instead of replaying nodes.
    """
    settings = get_settings()
    if transport is None:
        transport = SimulatorTransport() if is_simulated else OutboxTransport(db, session.bot_id)
    clock = now or datetime.utcnow
    user_input = UserInput(user_text, choice_id) if (user_text or choice_id) else None

    def _result(responses=None, rejected=False) -> FlowRunResult:
        return FlowRunResult(session.id, session.status, session.current_node_id, responses or [], rejected)

    db.refresh(session)
    if session.status in TERMINAL_STATUSES:
        logger.info("flow_run_skipped_terminal session_id=%s status=%s", session.id, session.status)
        return _result()
    revision = session.revision
    graphs = _GraphCache(db)

    if user_input:
        _record_user_message(db, session, user_input)
    if session.status == SESSION_PAUSED or (not resume_timer and _waiting_on_delay(graphs, session)):
        # timed wait in progress; only the resume scheduler continues it
        db.commit()
        if user_input:
            logger.info("flow_input_rejected_waiting session_id=%s node_id=%s", session.id, session.current_node_id)
        return _result(rejected=bool(user_input))

    scope = load_scope(db, session.bot_id, session.id)
    if user_input and user_input.text:
        scope.set("last_user_message", user_input.text)
        set_session_variable(db, session.id, "last_user_message", user_input.text)
    db.commit()

    responses: list[dict[str, Any]] = []
    node = None
    steps = 0
    try:
        _check_revision(session, revision)
        resumed = bool(session.waiting)
        graph = graphs.get(session.flow_version_id)
        while True:
            steps += 1
            if steps > settings.flow_max_steps_per_run:
                raise FlowExecutionError(session.current_node_id, f"step ceiling {settings.flow_max_steps_per_run} exceeded")
            node = graph.get(session.current_node_id)
            if node is None:
                raise FlowExecutionError(session.current_node_id, f"node {session.current_node_id} does not exist")

            ctx = ExecutionContext(
                db=db,
                session=session,
                graph=graph,
                scope=scope,
                settings=settings,
                is_simulated=is_simulated,
                now=clock,
                sleep=sleep or time.sleep,
            )
            t0 = time.perf_counter()
            result = execute_node(ctx, node, resumed, user_input if resumed else None)
            duration_ms = int((time.perf_counter() - t0) * 1000)
            if resumed:
                user_input = None
            resumed = False
            if result.loop_iteration:
                # the ceiling bounds one loop pass, not the whole loop
                steps = 0

            _log_step(db, session, node, result, duration_ms)

            done = False
            if result.outcome == Outcome.SUSPEND:
                session.waiting = True
                if result.resume_at:
                    session.status = SESSION_PAUSED
                    session.resume_at = result.resume_at
                done = True
            elif result.outcome == Outcome.ENTER_SUBFLOW:
                stack = list(session.subflow_call_stack or [])
                stack.append({"flowVersionId": graph.version_id, "returnNodeId": result.next_node_id})
                graph = graphs.get(result.subflow_version_id)
                start = graph.start_node()
                if start is None:
                    raise FlowExecutionError(node.node_id, f"subflow version {result.subflow_version_id} has no single START node")
                session.subflow_call_stack = stack
                session.flow_version_id = graph.version_id
                session.current_node_id = start.node_id
                session.waiting = False
            elif result.outcome == Outcome.ADVANCE and result.next_node_id:
                session.current_node_id = result.next_node_id
                session.waiting = False
            else:
                # END, or a node with nowhere to go
                frame = _pop_return_frame(session)
                if frame:
                    graph = graphs.get(frame["flowVersionId"])
                    session.flow_version_id = graph.version_id
                    session.current_node_id = frame["returnNodeId"]
                    session.waiting = False
                else:
                    _finish(session, result if result.outcome == Outcome.TERMINATE else None, clock())
                    done = True

            revision = _flush_step(db, session, clock)
            responses.extend(_deliver_effects(db, session, transport, result.effects))
            db.commit()
            _check_revision(session, revision)
            if done:
                if session.status in TERMINAL_STATUSES:
                    logger.info(
                        "flow_run_finished session_id=%s status=%s end_type=%s",
                        session.id, session.status, result.end_type,
                    )
                break
    except (StaleDataError, _RunSuperseded) as e:
        db.rollback()
        logger.info(
            "flow_run_superseded session_id=%s node_id=%s error=%s",
            session.id, node.node_id if node else None, e,
        )
    except (FlowExecutionError, FlowDataError) as e:
        node_id = getattr(e, "node_id", None) or (node.node_id if node else session.current_node_id)
        logger.warning("flow_run_failed session_id=%s node_id=%s error=%s", session.id, node_id, e)
        _mark_failed(db, session, node_id, node.node_type.value if node else None, str(e))
    except Exception as e:
        logger.exception("flow_run_crashed session_id=%s node_id=%s", session.id, node.node_id if node else None)
        _mark_failed(db, session, node.node_id if node else None, node.node_type.value if node else None, repr(e))

    return _result(responses)


def run_inbound_message(
    db: Session,
    bot_id: int,
    user_address: str,
    user_text: str | None = None,
    choice_id: str | None = None,
    *,
    is_simulated: bool = False,
    flow_version_id: int | None = None,
    transport: OutboundTransport | None = None,
) -> FlowRunResult | None:
    """Route one inbound message to the user's live session, starting one if needed.

    Returns None when the bot has no runnable flow version.
    """
    if flow_version_id is None:
        version = main_flow_production_version(db, bot_id)
        flow_version_id = version.id if version else None
    if flow_version_id is None:
        logger.info("flow_no_runnable_version bot_id=%s", bot_id)
        return None
    session = find_or_create_session(db, bot_id, user_address, flow_version_id, is_test=is_simulated)
    return execute_flow(db, session, user_text, choice_id, is_simulated, transport=transport)


def simulator_version_id(db: Session, flow_id: int) -> int | None:
    """Latest draft of a flow, falling back to its production version."""
    version = latest_draft_version(db, flow_id)
    if version:
        return version.id
    version = production_version(db, flow_id)
    return version.id if version else None


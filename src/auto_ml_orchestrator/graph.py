"""LangGraph StateGraph that drives an orchestration session.

One node per runnable workflow state; each node performs exactly one
:meth:`Orchestrator.advance`.  Conditional edges follow the transition
table (plus the retry edges of the review states), and a ``route_start``
dispatcher enters the graph at the session's current state so a resumed
session continues mid-graph.  The session itself is the durable record,
so the graph is compiled without a LangGraph checkpointer.
"""

from __future__ import annotations

import asyncio
import logging

from langgraph.graph import END, START, StateGraph
from typing_extensions import TypedDict

from auto_ml_orchestrator.session import OrchestrationSession
from auto_ml_orchestrator.state import (
    NEXT_STATE,
    RETRY_STATE,
    RUNNABLE_STATES,
    SessionStatus,
    WorkflowState,
    is_terminal,
)

logger = logging.getLogger(__name__)

# Each advance is one graph step; retry loops may revisit stages many times.
RECURSION_LIMIT = 500


class WorkflowGraphState(TypedDict):
    session: OrchestrationSession
    halted: bool


def _is_halted(session: OrchestrationSession) -> bool:
    return session.status != SessionStatus.ACTIVE or is_terminal(session.context.current_state)


def route_next(state: WorkflowGraphState) -> str:
    """Name of the node for the session's current state, or END."""
    session = state["session"]
    if state.get("halted") or _is_halted(session):
        return END
    return session.context.current_state.value


def _successors(s: WorkflowState) -> dict[str, str]:
    targets = {END: END}
    for nxt in (s, NEXT_STATE[s], RETRY_STATE.get(s)):
        if nxt is not None and nxt in RUNNABLE_STATES:
            targets[nxt.value] = nxt.value
    return targets


def build_graph(orchestrator, handler=None, cancel: asyncio.Event | None = None):
    """Build and compile the workflow graph.

    Parameters
    ----------
    orchestrator : Orchestrator
        Supplies ``advance``; the graph holds no other logic.
    handler : callable, optional
        HITL handler passed through to every review state.
    cancel : asyncio.Event, optional
        Cancel signal passed through to every stage.
    """
    graph = StateGraph(WorkflowGraphState)

    # ── Dispatcher for resumed sessions ────────────────────────
    def route_start(state: WorkflowGraphState) -> dict:
        """Pass-through node used as entry point for conditional routing."""
        return {"halted": _is_halted(state["session"])}

    graph.add_node("route_start", route_start)
    graph.add_edge(START, "route_start")
    graph.add_conditional_edges(
        "route_start",
        route_next,
        {END: END, **{s.value: s.value for s in RUNNABLE_STATES}},
    )

    # ── One node per runnable state ────────────────────────────
    def make_node(s: WorkflowState):
        async def node(state: WorkflowGraphState) -> dict:
            session = state["session"]
            _, current = await orchestrator.advance(session, handler=handler, cancel=cancel)
            logger.debug("Node %s finished in state %s", s.value, current.value)
            return {"session": session, "halted": _is_halted(session)}

        node.__name__ = s.value
        return node

    for s in RUNNABLE_STATES:
        graph.add_node(s.value, make_node(s))
        graph.add_conditional_edges(s.value, route_next, _successors(s))

    return graph.compile()

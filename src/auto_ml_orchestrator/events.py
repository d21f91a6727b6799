"""Event stream: typed, immutable notifications pushed onto a per-session channel.

Each event kind is its own frozen dataclass carrying a ``kind`` tag; the
``OrchestrationEvent`` union is what consumers match on.  The state machine
is the single producer for a session, so channel order is session order.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Union

from auto_ml_orchestrator.context import HitlDecision, utcnow
from auto_ml_orchestrator.serde import from_jsonable, to_jsonable
from auto_ml_orchestrator.state import WorkflowState

logger = logging.getLogger(__name__)


def _event_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass(frozen=True)
class HitlOption:
    id: str
    label: str
    description: str = ""
    is_default: bool = False
    shortcut: str = ""


# ── Event variants ─────────────────────────────────────────────────


@dataclass(frozen=True)
class SessionStarted:
    session_id: str
    data_path: str
    resumed: bool = False
    kind: str = field(default="started", init=False)
    event_id: str = field(default_factory=_event_id)
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class StateChanged:
    session_id: str
    from_state: WorkflowState
    to_state: WorkflowState
    reason: str = ""
    kind: str = field(default="state_changed", init=False)
    event_id: str = field(default_factory=_event_id)
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class PhaseStarted:
    session_id: str
    phase_number: int
    phase_name: str
    description: str = ""
    kind: str = field(default="phase_started", init=False)
    event_id: str = field(default_factory=_event_id)
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class PhaseCompleted:
    session_id: str
    phase_number: int
    phase_name: str
    duration: float = 0.0
    summary: dict[str, Any] = field(default_factory=dict)
    kind: str = field(default="phase_completed", init=False)
    event_id: str = field(default_factory=_event_id)
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class HitlRequested:
    session_id: str
    checkpoint_id: str
    checkpoint_name: str
    state: WorkflowState
    question: str
    options: list[HitlOption] = field(default_factory=list)
    context: dict[str, Any] = field(default_factory=dict)
    confidence: float = 0.0
    can_auto_approve: bool = False
    kind: str = field(default="hitl_requested", init=False)
    event_id: str = field(default_factory=_event_id)
    timestamp: datetime = field(default_factory=utcnow)

    def default_option(self) -> str:
        for option in self.options:
            if option.is_default:
                return option.id
        return self.options[0].id if self.options else "approve"


@dataclass(frozen=True)
class HitlResponse:
    session_id: str
    checkpoint_id: str
    option_id: str
    is_auto_approval: bool = False
    comment: str = ""
    response_time: float = 0.0
    kind: str = field(default="hitl_response", init=False)
    event_id: str = field(default_factory=_event_id)
    timestamp: datetime = field(default_factory=utcnow)

    @classmethod
    def from_decision(cls, session_id: str, decision: HitlDecision) -> HitlResponse:
        return cls(
            session_id=session_id,
            checkpoint_id=decision.checkpoint_id,
            option_id=decision.option_id,
            is_auto_approval=decision.is_auto_approval,
            comment=decision.comment,
            response_time=decision.response_time,
        )


@dataclass(frozen=True)
class AgentStarted:
    session_id: str
    agent_name: str
    task: str = ""
    kind: str = field(default="agent_started", init=False)
    event_id: str = field(default_factory=_event_id)
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class AgentCompleted:
    session_id: str
    agent_name: str
    success: bool = True
    duration: float = 0.0
    results: dict[str, Any] = field(default_factory=dict)
    kind: str = field(default="agent_completed", init=False)
    event_id: str = field(default_factory=_event_id)
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class ProgressUpdate:
    session_id: str
    percentage: int
    operation: str = ""
    kind: str = field(default="progress", init=False)
    event_id: str = field(default_factory=_event_id)
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class SessionCompleted:
    session_id: str
    total_duration: float
    final_metrics: dict[str, Any] = field(default_factory=dict)
    artifacts: dict[str, str] = field(default_factory=dict)
    summary: dict[str, Any] = field(default_factory=dict)
    kind: str = field(default="completed", init=False)
    event_id: str = field(default_factory=_event_id)
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class SessionFailed:
    session_id: str
    state: WorkflowState
    error: str
    details: str = ""
    can_resume: bool = True
    kind: str = field(default="failed", init=False)
    event_id: str = field(default_factory=_event_id)
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class SessionCancelled:
    session_id: str
    state: WorkflowState
    reason: str = ""
    can_resume: bool = False
    kind: str = field(default="cancelled", init=False)
    event_id: str = field(default_factory=_event_id)
    timestamp: datetime = field(default_factory=utcnow)


OrchestrationEvent = Union[
    SessionStarted,
    StateChanged,
    PhaseStarted,
    PhaseCompleted,
    HitlRequested,
    HitlResponse,
    AgentStarted,
    AgentCompleted,
    ProgressUpdate,
    SessionCompleted,
    SessionFailed,
    SessionCancelled,
]

EVENT_TYPES: dict[str, type] = {
    cls.__dataclass_fields__["kind"].default: cls
    for cls in OrchestrationEvent.__args__
}

TERMINAL_KINDS = frozenset({"completed", "failed", "cancelled"})


def event_to_dict(event: OrchestrationEvent) -> dict[str, Any]:
    return to_jsonable(event)


def event_from_dict(data: dict[str, Any]) -> OrchestrationEvent:
    """Rebuild an event from its dict form, dispatching on ``kind``."""
    kind = data.get("kind")
    cls = EVENT_TYPES.get(kind)
    if cls is None:
        raise ValueError(f"Unknown event kind: {kind!r}")
    return from_jsonable(cls, data)


# ── Channel ────────────────────────────────────────────────────────

_CLOSED = object()


class EventChannel:
    """Single-producer event queue with an in-memory history.

    The orchestrator calls :meth:`publish`; a consumer iterates with
    ``async for event in channel`` until :meth:`close` is called.
    """

    def __init__(self) -> None:
        self.history: list[OrchestrationEvent] = []
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    def publish(self, event: OrchestrationEvent) -> None:
        if self._closed:
            logger.debug("Dropping %s event on closed channel", event.kind)
            return
        self.history.append(event)
        self._queue.put_nowait(event)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSED)

    @property
    def closed(self) -> bool:
        return self._closed

    async def get(self) -> OrchestrationEvent | None:
        """Next event, or ``None`` once the channel is closed and drained."""
        item = await self._queue.get()
        if item is _CLOSED:
            # keep the sentinel for any other waiter
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    async def __aiter__(self) -> AsyncIterator[OrchestrationEvent]:
        while True:
            event = await self.get()
            if event is None:
                return
            yield event

"""Durable unit of work: a session wraps one context plus its history."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from auto_ml_orchestrator.context import OrchestrationContext, utcnow
from auto_ml_orchestrator.serde import from_jsonable, to_jsonable
from auto_ml_orchestrator.state import (
    SessionStatus,
    WorkflowState,
    display_name,
    is_terminal,
    progress_percentage,
)

logger = logging.getLogger(__name__)

CURRENT_SCHEMA_VERSION = 1


@dataclass
class StateTransition:
    from_state: WorkflowState
    to_state: WorkflowState
    reason: str = ""
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class SessionCheckpoint:
    """Immutable snapshot of the context, taken after a stage completes."""

    checkpoint_id: str
    state: WorkflowState
    label: str
    timestamp: datetime = field(default_factory=utcnow)
    context_snapshot: str = ""
    """JSON text of the full context at snapshot time."""


@dataclass
class SessionSummary:
    session_id: str
    data_path: str
    state: WorkflowState
    status: SessionStatus
    created_at: datetime
    updated_at: datetime
    progress: int
    can_resume: bool
    last_error: str = ""


@dataclass
class OrchestrationSession:
    context: OrchestrationContext
    schema_version: int = CURRENT_SCHEMA_VERSION
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    status: SessionStatus = SessionStatus.ACTIVE
    state_history: list[StateTransition] = field(default_factory=list)
    checkpoints: list[SessionCheckpoint] = field(default_factory=list)
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def session_id(self) -> str:
        return self.context.session_id

    def touch(self) -> None:
        self.updated_at = utcnow()

    # ── History ────────────────────────────────────────────────────

    def record_transition(
        self, from_state: WorkflowState, to_state: WorkflowState, reason: str = ""
    ) -> StateTransition:
        transition = StateTransition(from_state=from_state, to_state=to_state, reason=reason)
        self.state_history.append(transition)
        self.touch()
        return transition

    def create_checkpoint(self, label: str = "") -> SessionCheckpoint:
        now = utcnow()
        checkpoint = SessionCheckpoint(
            checkpoint_id=f"cp-{now:%Y%m%d%H%M%S}-{len(self.checkpoints) + 1:02d}",
            state=self.context.current_state,
            label=label or display_name(self.context.current_state),
            timestamp=now,
            context_snapshot=json.dumps(to_jsonable(self.context)),
        )
        self.checkpoints.append(checkpoint)
        self.touch()
        return checkpoint

    def restore_checkpoint(self, checkpoint_id: str) -> bool:
        """Replace the context with a snapshot. Returns False for unknown ids."""
        for checkpoint in self.checkpoints:
            if checkpoint.checkpoint_id == checkpoint_id and checkpoint.context_snapshot:
                self.context = from_jsonable(
                    OrchestrationContext, json.loads(checkpoint.context_snapshot)
                )
                self.touch()
                logger.info("Session %s restored from checkpoint %s", self.session_id, checkpoint_id)
                return True
        return False

    # ── Status ─────────────────────────────────────────────────────

    def can_resume(self) -> bool:
        return self.status == SessionStatus.PAUSED or (
            self.status == SessionStatus.ACTIVE and not is_terminal(self.context.current_state)
        )

    def can_recover(self) -> bool:
        """A failed session whose last error is recoverable can restart its failed stage."""
        ctx = self.context
        if self.status != SessionStatus.FAILED or ctx.failed_at_state is None:
            return False
        return bool(ctx.errors) and ctx.errors[-1].recoverable

    def mark_paused(self) -> None:
        self.status = SessionStatus.PAUSED
        self.touch()

    def resume(self) -> None:
        if self.status == SessionStatus.PAUSED:
            self.status = SessionStatus.ACTIVE
            self.touch()

    def recover(self) -> None:
        """Re-activate a failed session at the stage that failed."""
        ctx = self.context
        if not self.can_recover():
            return
        self.record_transition(WorkflowState.FAILED, ctx.failed_at_state, reason="recover")
        ctx.current_state = ctx.failed_at_state
        ctx.failed_at_state = None
        ctx.completed_at = None
        self.status = SessionStatus.ACTIVE

    def mark_completed(self) -> None:
        self.status = SessionStatus.COMPLETED
        self.context.current_state = WorkflowState.COMPLETED
        self.context.completed_at = utcnow()
        self.touch()

    def mark_failed(self, error: str) -> None:
        ctx = self.context
        if ctx.current_state not in (WorkflowState.FAILED, WorkflowState.CANCELLED):
            ctx.failed_at_state = ctx.current_state
        self.status = SessionStatus.FAILED
        ctx.current_state = WorkflowState.FAILED
        ctx.last_error = error
        ctx.completed_at = utcnow()
        self.touch()

    def mark_cancelled(self, reason: str = "") -> None:
        self.status = SessionStatus.CANCELLED
        self.context.current_state = WorkflowState.CANCELLED
        self.context.completed_at = utcnow()
        if reason:
            self.metadata["cancellation_reason"] = reason
        self.touch()

    def summary(self) -> SessionSummary:
        return SessionSummary(
            session_id=self.session_id,
            data_path=self.context.data_path,
            state=self.context.current_state,
            status=self.status,
            created_at=self.created_at,
            updated_at=self.updated_at,
            progress=progress_percentage(self.context.current_state),
            can_resume=self.can_resume(),
            last_error=self.context.last_error,
        )

    # ── Serialization ──────────────────────────────────────────────

    def to_dict(self) -> dict[str, Any]:
        return to_jsonable(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OrchestrationSession:
        return from_jsonable(cls, data)

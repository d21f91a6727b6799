"""Workflow state machine definition: states, transition table, predicates."""

from __future__ import annotations

from enum import Enum


class WorkflowState(str, Enum):
    """One stage of an orchestration session.

    Ordering is defined by ``NEXT_STATE`` below, never by declaration order.
    """

    NOT_STARTED = "not_started"
    INITIALIZING = "initializing"

    # ── Phase 1: data analysis ─────────────────────────────────────
    ANALYSIS = "analysis"
    ANALYSIS_REVIEW = "analysis_review"

    # ── Phase 2: model recommendation ──────────────────────────────
    RECOMMENDATION = "recommendation"
    RECOMMENDATION_REVIEW = "recommendation_review"

    # ── Phase 3: preprocessing ─────────────────────────────────────
    PREPROCESSING = "preprocessing"
    PREPROCESSING_REVIEW = "preprocessing_review"

    # ── Phase 4: training & evaluation ─────────────────────────────
    TRAINING = "training"
    TRAINING_REVIEW = "training_review"
    EVALUATION = "evaluation"

    # ── Phase 5: deployment ────────────────────────────────────────
    DEPLOYMENT_REVIEW = "deployment_review"
    DEPLOYMENT = "deployment"

    # ── Terminal / special ─────────────────────────────────────────
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"
    PAUSED = "paused"


class SessionStatus(str, Enum):
    """Lifecycle status of a persisted session."""

    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


S = WorkflowState

NEXT_STATE: dict[WorkflowState, WorkflowState] = {
    S.NOT_STARTED: S.INITIALIZING,
    S.INITIALIZING: S.ANALYSIS,
    S.ANALYSIS: S.ANALYSIS_REVIEW,
    S.ANALYSIS_REVIEW: S.RECOMMENDATION,
    S.RECOMMENDATION: S.RECOMMENDATION_REVIEW,
    S.RECOMMENDATION_REVIEW: S.PREPROCESSING,
    S.PREPROCESSING: S.PREPROCESSING_REVIEW,
    S.PREPROCESSING_REVIEW: S.TRAINING,
    S.TRAINING: S.TRAINING_REVIEW,
    S.TRAINING_REVIEW: S.EVALUATION,
    S.EVALUATION: S.DEPLOYMENT_REVIEW,
    S.DEPLOYMENT_REVIEW: S.DEPLOYMENT,
    S.DEPLOYMENT: S.COMPLETED,
    # Paused is left only through resume
    S.PAUSED: S.PAUSED,
    S.COMPLETED: S.COMPLETED,
    S.CANCELLED: S.CANCELLED,
    S.FAILED: S.FAILED,
}

# Review state -> the stage it reviews; used only for "retry" answers.
RETRY_STATE: dict[WorkflowState, WorkflowState] = {
    S.ANALYSIS_REVIEW: S.ANALYSIS,
    S.RECOMMENDATION_REVIEW: S.RECOMMENDATION,
    S.PREPROCESSING_REVIEW: S.PREPROCESSING,
    S.TRAINING_REVIEW: S.TRAINING,
}

TERMINAL_STATES = frozenset({S.COMPLETED, S.CANCELLED, S.FAILED})

CHECKPOINT_STATES = frozenset({
    S.ANALYSIS_REVIEW,
    S.RECOMMENDATION_REVIEW,
    S.PREPROCESSING_REVIEW,
    S.TRAINING_REVIEW,
    S.DEPLOYMENT_REVIEW,
})

# States that carry an executable action (everything the graph can visit).
RUNNABLE_STATES = tuple(
    s for s in NEXT_STATE if s not in TERMINAL_STATES and s is not S.PAUSED
)

_DISPLAY_NAMES = {
    S.NOT_STARTED: "Not Started",
    S.INITIALIZING: "Initializing",
    S.ANALYSIS: "Analyzing Data",
    S.ANALYSIS_REVIEW: "Reviewing Analysis",
    S.RECOMMENDATION: "Recommending Model",
    S.RECOMMENDATION_REVIEW: "Reviewing Model Selection",
    S.PREPROCESSING: "Preprocessing Data",
    S.PREPROCESSING_REVIEW: "Reviewing Preprocessing",
    S.TRAINING: "Training Model",
    S.TRAINING_REVIEW: "Reviewing Training Results",
    S.EVALUATION: "Evaluating Model",
    S.DEPLOYMENT_REVIEW: "Deployment Approval",
    S.DEPLOYMENT: "Deploying Model",
    S.COMPLETED: "Completed",
    S.CANCELLED: "Cancelled",
    S.FAILED: "Failed",
    S.PAUSED: "Paused",
}

_PROGRESS = {
    S.NOT_STARTED: 0,
    S.INITIALIZING: 5,
    S.ANALYSIS: 10,
    S.ANALYSIS_REVIEW: 15,
    S.RECOMMENDATION: 25,
    S.RECOMMENDATION_REVIEW: 30,
    S.PREPROCESSING: 40,
    S.PREPROCESSING_REVIEW: 50,
    S.TRAINING: 60,
    S.TRAINING_REVIEW: 75,
    S.EVALUATION: 85,
    S.DEPLOYMENT_REVIEW: 90,
    S.DEPLOYMENT: 95,
    S.COMPLETED: 100,
}

_PHASES = {
    S.ANALYSIS: 1,
    S.ANALYSIS_REVIEW: 1,
    S.RECOMMENDATION: 2,
    S.RECOMMENDATION_REVIEW: 2,
    S.PREPROCESSING: 3,
    S.PREPROCESSING_REVIEW: 3,
    S.TRAINING: 4,
    S.TRAINING_REVIEW: 4,
    S.EVALUATION: 4,
    S.DEPLOYMENT_REVIEW: 5,
    S.DEPLOYMENT: 5,
}

PHASE_NAMES = {
    1: "Data Analysis",
    2: "Model Recommendation",
    3: "Preprocessing",
    4: "Training",
    5: "Deployment",
}


def next_state(state: WorkflowState) -> WorkflowState:
    """Return the single successor of *state*; terminal states map to themselves."""
    return NEXT_STATE[state]


def is_terminal(state: WorkflowState) -> bool:
    return state in TERMINAL_STATES


def is_checkpoint(state: WorkflowState) -> bool:
    """True for review states, whose sole purpose is obtaining approval."""
    return state in CHECKPOINT_STATES


def display_name(state: WorkflowState) -> str:
    return _DISPLAY_NAMES[state]


def progress_percentage(state: WorkflowState) -> int:
    return _PROGRESS.get(state, 0)


def phase_number(state: WorkflowState) -> int:
    """Phase 1..5 a state belongs to, or 0 for states outside any phase."""
    return _PHASES.get(state, 0)

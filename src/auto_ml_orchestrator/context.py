"""Session working memory: options, per-stage results, decisions and errors."""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from auto_ml_orchestrator.state import WorkflowState


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_session_id(now: datetime | None = None) -> str:
    """Return an id of the form ``orc-YYYYMMDD-<6 hex>``."""
    now = now or utcnow()
    return f"orc-{now:%Y%m%d}-{secrets.token_hex(3)}"


@dataclass
class OrchestrationOptions:
    """Caller-supplied knobs for one session."""

    target_column: str = ""
    """Prediction target; auto-detected by the analyzer when empty."""

    task_type: str = ""
    """'binary', 'multiclass' or 'regression'; inferred when empty."""

    max_training_time: int = 300
    """Training time budget in seconds."""

    auto_approval_threshold: float = 0.85
    auto_approve_high_confidence: bool = True
    skip_hitl: bool = False

    output_dir: str = ""
    """Where preprocessed data, models and reports are written."""

    use_llm: bool = False
    random_seed: int = 42


# ── Stage results ──────────────────────────────────────────────────


@dataclass
class ColumnInfo:
    name: str
    data_type: str
    missing_count: int = 0
    missing_percentage: float = 0.0
    unique_count: int = 0
    is_categorical: bool = False
    is_numeric: bool = False
    is_target: bool = False


@dataclass
class AnalysisResult:
    row_count: int
    column_count: int
    columns: list[ColumnInfo] = field(default_factory=list)
    recommended_target: str = ""
    inferred_task_type: str = ""
    quality_score: float = 0.0
    missing_percentage: float = 0.0
    quality_issues: list[str] = field(default_factory=list)
    readiness: str = "ready"
    recommendations: list[str] = field(default_factory=list)
    memory_insights: list[str] = field(default_factory=list)
    fingerprint_hash: str = ""
    confidence: float = 0.0


@dataclass
class TrainerRecommendation:
    name: str
    reason: str = ""
    priority: int = 1


@dataclass
class RecommendationResult:
    task_type: str
    primary_metric: str
    trainers: list[TrainerRecommendation] = field(default_factory=list)
    training_time_budget: int = 300
    warnings: list[str] = field(default_factory=list)
    rationale: str = ""
    confidence: float = 0.0


@dataclass
class PreprocessingStep:
    name: str
    description: str = ""
    columns: list[str] = field(default_factory=list)
    parameters: dict[str, Any] = field(default_factory=dict)


@dataclass
class PreprocessingResult:
    output_path: str = ""
    steps: list[PreprocessingStep] = field(default_factory=list)
    rows_before: int = 0
    rows_after: int = 0
    columns_before: int = 0
    columns_after: int = 0
    used_incremental: bool = True
    skipped: bool = False
    rules: list[dict[str, Any]] = field(default_factory=list)
    """Serialized :class:`~auto_ml_orchestrator.rules.models.PreprocessingRule` records."""
    pending_decisions: list[str] = field(default_factory=list)
    """Signatures of rules still waiting for a human decision."""
    converged: bool = False
    exception_report: list[dict[str, Any]] = field(default_factory=list)
    confidence: float = 0.0


@dataclass
class ModelSummary:
    name: str
    score: float
    training_time: float = 0.0
    rank: int = 0


@dataclass
class TrainingResult:
    best_model_name: str
    primary_metric_name: str
    primary_metric_value: float
    metrics: dict[str, float] = field(default_factory=dict)
    training_duration: float = 0.0
    models_evaluated: int = 0
    model_path: str = ""
    top_models: list[ModelSummary] = field(default_factory=list)
    experiment_id: str = ""
    skipped: bool = False
    confidence: float = 0.0


@dataclass
class EvaluationResult:
    test_metrics: dict[str, float] = field(default_factory=dict)
    summary: str = ""
    recommendations: list[str] = field(default_factory=list)
    report_path: str = ""
    confidence: float = 0.0


@dataclass
class DeploymentResult:
    success: bool
    mode: str = "deploy"
    target: str = "local"
    model_version: str = ""
    deployed_at: datetime | None = None
    location: str = ""


# ── Decisions & errors ─────────────────────────────────────────────


@dataclass
class HitlDecision:
    """One answer at one checkpoint (human or automatic)."""

    checkpoint_id: str
    state: WorkflowState
    option_id: str
    is_auto_approval: bool = False
    confidence: float = 0.0
    comment: str = ""
    timestamp: datetime = field(default_factory=utcnow)
    response_time: float = 0.0
    """Seconds between the request and the answer."""


@dataclass
class StageError:
    """An error caught at a stage boundary."""

    state: WorkflowState
    message: str
    details: str = ""
    timestamp: datetime = field(default_factory=utcnow)
    recoverable: bool = True


# ── Context ────────────────────────────────────────────────────────


@dataclass
class OrchestrationContext:
    """Everything the state machine needs to continue a session.

    The machine is fully determined by this object, which is why a session
    loaded from disk resumes exactly like one kept in memory.
    """

    data_path: str
    session_id: str = field(default_factory=generate_session_id)
    options: OrchestrationOptions = field(default_factory=OrchestrationOptions)
    current_state: WorkflowState = WorkflowState.NOT_STARTED
    started_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None

    analysis: AnalysisResult | None = None
    recommendation: RecommendationResult | None = None
    preprocessing: PreprocessingResult | None = None
    training: TrainingResult | None = None
    evaluation: EvaluationResult | None = None
    deployment: DeploymentResult | None = None

    hitl_decisions: list[HitlDecision] = field(default_factory=list)
    errors: list[StageError] = field(default_factory=list)
    artifacts: dict[str, str] = field(default_factory=dict)
    last_error: str = ""
    failed_at_state: WorkflowState | None = None

    def current_confidence(self) -> float:
        """Confidence of the result reviewed at the current checkpoint."""
        result = {
            WorkflowState.ANALYSIS_REVIEW: self.analysis,
            WorkflowState.RECOMMENDATION_REVIEW: self.recommendation,
            WorkflowState.PREPROCESSING_REVIEW: self.preprocessing,
            WorkflowState.TRAINING_REVIEW: self.training,
            WorkflowState.DEPLOYMENT_REVIEW: self.evaluation,
        }.get(self.current_state)
        if result is None:
            return 0.0
        return float(result.confidence)

    def elapsed(self) -> timedelta:
        end = self.completed_at or utcnow()
        return end - self.started_at

    def last_decision(self, state: WorkflowState) -> HitlDecision | None:
        for decision in reversed(self.hitl_decisions):
            if decision.state == state:
                return decision
        return None

    def working_data_path(self) -> str:
        """Dataset the training stage should read: preprocessed output or raw data."""
        prep = self.preprocessing
        if prep and not prep.skipped and prep.output_path:
            return prep.output_path
        return self.data_path

    def target_column(self) -> str:
        if self.options.target_column:
            return self.options.target_column
        if self.analysis:
            return self.analysis.recommended_target
        return ""

    def task_type(self) -> str:
        if self.options.task_type:
            return self.options.task_type
        if self.recommendation:
            return self.recommendation.task_type
        if self.analysis:
            return self.analysis.inferred_task_type
        return ""

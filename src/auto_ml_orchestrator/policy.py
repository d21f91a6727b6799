"""Checkpoint policy: when to ask a human, what to show, how to read the answer.

Each review state has a :class:`CheckpointDefinition` with an auto-approval
threshold (or ``always_explicit``) and a fixed option list.  Thresholds live
in :class:`PolicyConfig` so they can be injected or loaded from YAML.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from auto_ml_orchestrator.context import OrchestrationContext, OrchestrationOptions
from auto_ml_orchestrator.events import HitlOption, HitlRequested
from auto_ml_orchestrator.state import WorkflowState, is_checkpoint

logger = logging.getLogger(__name__)

S = WorkflowState


class HitlAction(str, Enum):
    PROCEED = "proceed"
    MODIFY = "modify"
    RETRY = "retry"
    SKIP = "skip"
    CANCEL = "cancel"
    DEPLOY = "deploy"
    EXPORT = "export"
    SAVE = "save"


@dataclass
class HitlAnswer:
    """What a handler returns for a :class:`HitlRequested` event."""

    option_id: str
    comment: str = ""


@dataclass
class CheckpointDefinition:
    id: str
    name: str
    state: WorkflowState
    question: str
    options: list[HitlOption]
    actions: dict[str, HitlAction]
    auto_approve_threshold: float = 0.85
    always_explicit: bool = False


@dataclass
class PolicyConfig:
    """Per-checkpoint auto-approval thresholds.

    ``None`` marks a checkpoint that always requires an explicit answer.
    """

    thresholds: dict[str, float | None] = field(default_factory=lambda: {
        "data-analysis-review": 0.85,
        "model-selection-review": 0.80,
        "preprocessing-review": 0.75,
        "training-review": None,
        "deployment-review": None,
    })

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> PolicyConfig:
        """Overlay thresholds from a parsed YAML mapping on the defaults."""
        config = cls()
        for key, value in ((data or {}).get("thresholds") or {}).items():
            if key not in config.thresholds:
                logger.warning("Ignoring unknown checkpoint in policy config: %s", key)
                continue
            config.thresholds[key] = None if value is None else float(value)
        return config


def _opt(id: str, label: str, description: str = "", default: bool = False, shortcut: str = "") -> HitlOption:
    return HitlOption(id=id, label=label, description=description, is_default=default, shortcut=shortcut)


def default_checkpoints(config: PolicyConfig) -> dict[WorkflowState, CheckpointDefinition]:
    def threshold(cp_id: str) -> tuple[float, bool]:
        value = config.thresholds.get(cp_id)
        return (1.0, True) if value is None else (value, False)

    definitions = [
        CheckpointDefinition(
            id="data-analysis-review",
            name="Data Analysis Review",
            state=S.ANALYSIS_REVIEW,
            question="Does the data analysis look correct?",
            options=[
                _opt("approve", "Approve", "Continue to model recommendation", True, "a"),
                _opt("modify", "Modify", "Continue; the comment records the requested target or task change", shortcut="m"),
                _opt("reanalyze", "Re-analyze", "Run the analysis again", shortcut="r"),
                _opt("cancel", "Cancel", "Stop the session", shortcut="c"),
            ],
            actions={"approve": HitlAction.PROCEED, "modify": HitlAction.MODIFY,
                     "reanalyze": HitlAction.RETRY},
        ),
        CheckpointDefinition(
            id="model-selection-review",
            name="Model Selection Review",
            state=S.RECOMMENDATION_REVIEW,
            question="Proceed with the recommended model configuration?",
            options=[
                _opt("approve", "Approve", "Continue to preprocessing", True, "a"),
                _opt("modify", "Modify", "Continue; the comment records the requested trainer or budget change", shortcut="m"),
                _opt("skip-training", "Skip training", "Reuse an existing model", shortcut="s"),
                _opt("cancel", "Cancel", "Stop the session", shortcut="c"),
            ],
            actions={"approve": HitlAction.PROCEED, "modify": HitlAction.MODIFY,
                     "skip-training": HitlAction.SKIP},
        ),
        CheckpointDefinition(
            id="preprocessing-review",
            name="Preprocessing Review",
            state=S.PREPROCESSING_REVIEW,
            question="Apply the discovered preprocessing rules?",
            options=[
                _opt("approve", "Approve", "Train on the preprocessed data", True, "a"),
                _opt("modify", "Modify", "Continue; the comment records the requested rule changes", shortcut="m"),
                _opt("skip", "Skip", "Train on the raw data", shortcut="s"),
                _opt("cancel", "Cancel", "Stop the session", shortcut="c"),
            ],
            actions={"approve": HitlAction.PROCEED, "modify": HitlAction.MODIFY,
                     "skip": HitlAction.SKIP},
        ),
        CheckpointDefinition(
            id="training-review",
            name="Training Review",
            state=S.TRAINING_REVIEW,
            question="Accept the trained model?",
            options=[
                _opt("approve", "Approve", "Continue to evaluation", True, "a"),
                _opt("retrain", "Retrain", "Run training again", shortcut="r"),
                _opt("select-other", "Select other", "Continue; the comment records the preferred model", shortcut="o"),
                _opt("cancel", "Cancel", "Stop the session", shortcut="c"),
            ],
            actions={"approve": HitlAction.PROCEED, "retrain": HitlAction.RETRY,
                     "select-other": HitlAction.MODIFY},
        ),
        CheckpointDefinition(
            id="deployment-review",
            name="Deployment Review",
            state=S.DEPLOYMENT_REVIEW,
            question="How should the model be released?",
            options=[
                _opt("deploy", "Deploy", "Promote the model to the local registry", True, "d"),
                _opt("export", "Export", "Write a standalone model file", shortcut="e"),
                _opt("save", "Save", "Keep the model in the experiment directory only", shortcut="s"),
                _opt("cancel", "Cancel", "Stop the session", shortcut="c"),
            ],
            actions={"deploy": HitlAction.DEPLOY, "export": HitlAction.EXPORT,
                     "save": HitlAction.SAVE},
        ),
    ]
    result = {}
    for definition in definitions:
        definition.auto_approve_threshold, definition.always_explicit = threshold(definition.id)
        result[definition.state] = definition
    return result


# ── Review summaries ──────────────────────────────────────────────


def _analysis_summary(ctx: OrchestrationContext) -> tuple[list[str], dict[str, Any]]:
    a = ctx.analysis
    if a is None:
        return ["(no analysis result)"], {}
    lines = [
        f"Rows:            {a.row_count}",
        f"Columns:         {a.column_count}",
        f"Target column:   {ctx.target_column() or 'N/A'}",
        f"Task type:       {a.inferred_task_type or 'N/A'}",
        f"Quality score:   {a.quality_score:.2f} ({a.readiness})",
    ]
    if a.quality_issues:
        lines.append("")
        lines.append("Quality issues:")
        lines.extend(f"  - {issue}" for issue in a.quality_issues)
    if a.memory_insights:
        lines.append("")
        lines.append("From similar datasets:")
        lines.extend(f"  - {insight}" for insight in a.memory_insights)
    data = {
        "row_count": a.row_count,
        "column_count": a.column_count,
        "target_column": ctx.target_column(),
        "task_type": a.inferred_task_type,
        "quality_score": a.quality_score,
    }
    return lines, data


def _recommendation_summary(ctx: OrchestrationContext) -> tuple[list[str], dict[str, Any]]:
    r = ctx.recommendation
    if r is None:
        return ["(no recommendation)"], {}
    lines = [
        f"Task type:       {r.task_type}",
        f"Primary metric:  {r.primary_metric}",
        f"Time budget:     {r.training_time_budget}s",
        "",
        f"Trainers ({len(r.trainers)}):",
    ]
    lines.extend(f"  {t.priority}. {t.name}: {t.reason}" for t in r.trainers)
    if r.warnings:
        lines.append("")
        lines.extend(f"Warning: {w}" for w in r.warnings)
    if r.rationale:
        lines.extend(["", f"Rationale: {r.rationale}"])
    data = {
        "task_type": r.task_type,
        "primary_metric": r.primary_metric,
        "trainers": [t.name for t in r.trainers],
    }
    return lines, data


def _preprocessing_summary(ctx: OrchestrationContext) -> tuple[list[str], dict[str, Any]]:
    p = ctx.preprocessing
    if p is None:
        return ["(no preprocessing result)"], {}
    lines = [
        f"Rows:            {p.rows_before} -> {p.rows_after}",
        f"Columns:         {p.columns_before} -> {p.columns_after}",
        f"Converged:       {'yes' if p.converged else 'no'}",
        "",
        f"Steps ({len(p.steps)}):",
    ]
    lines.extend(f"  {i}. {step.description or step.name}" for i, step in enumerate(p.steps, 1))
    if p.pending_decisions:
        lines.append("")
        lines.append(f"Rules awaiting a decision ({len(p.pending_decisions)}):")
        lines.extend(f"  - {sig}" for sig in p.pending_decisions)
    if p.exception_report:
        lines.append("")
        lines.append(f"Deactivated rules ({len(p.exception_report)}):")
        lines.extend(f"  - {item.get('rule_id')}: {item.get('reason')}" for item in p.exception_report)
    data = {
        "rows_before": p.rows_before,
        "rows_after": p.rows_after,
        "columns_before": p.columns_before,
        "columns_after": p.columns_after,
        "steps": [s.name for s in p.steps],
        "pending_decisions": list(p.pending_decisions),
    }
    return lines, data


def _training_summary(ctx: OrchestrationContext) -> tuple[list[str], dict[str, Any]]:
    t = ctx.training
    if t is None:
        return ["(no training result)"], {}
    lines = [
        f"Best model:      {t.best_model_name}",
        f"{t.primary_metric_name + ':':<17}{t.primary_metric_value:.4f}",
        f"Models tried:    {t.models_evaluated}",
        f"Duration:        {t.training_duration:.1f}s",
    ]
    if t.top_models:
        lines.append("")
        lines.append("Leaderboard:")
        lines.extend(f"  {m.rank}. {m.name}: {m.score:.4f}" for m in t.top_models)
    data = {
        "best_model": t.best_model_name,
        "metric_name": t.primary_metric_name,
        "metric_value": t.primary_metric_value,
    }
    return lines, data


def _deployment_summary(ctx: OrchestrationContext) -> tuple[list[str], dict[str, Any]]:
    t, e = ctx.training, ctx.evaluation
    lines = [f"Model:           {t.best_model_name if t else 'N/A'}"]
    if e is not None:
        lines.extend(["", e.summary or "(no evaluation summary)"])
        for name, value in sorted(e.test_metrics.items()):
            lines.append(f"  {name}: {value:.4f}")
    data = {
        "model": t.best_model_name if t else "",
        "test_metrics": dict(e.test_metrics) if e else {},
    }
    return lines, data


_SUMMARIES = {
    S.ANALYSIS_REVIEW: _analysis_summary,
    S.RECOMMENDATION_REVIEW: _recommendation_summary,
    S.PREPROCESSING_REVIEW: _preprocessing_summary,
    S.TRAINING_REVIEW: _training_summary,
    S.DEPLOYMENT_REVIEW: _deployment_summary,
}


class CheckpointPolicy:
    """Decides auto-approval and builds/reads HITL requests for review states."""

    def __init__(self, config: PolicyConfig | None = None):
        self.config = config or PolicyConfig()
        self.checkpoints = default_checkpoints(self.config)

    def definition(self, state: WorkflowState) -> CheckpointDefinition:
        return self.checkpoints[state]

    def should_trigger_hitl(
        self, state: WorkflowState, confidence: float, options: OrchestrationOptions
    ) -> bool:
        """True when *state* needs an explicit answer rather than auto-approval."""
        if options.skip_hitl:
            return False
        if not is_checkpoint(state):
            return False
        definition = self.checkpoints[state]
        if definition.always_explicit:
            return True
        threshold = min(definition.auto_approve_threshold, options.auto_approval_threshold)
        if options.auto_approve_high_confidence and confidence >= threshold:
            return False
        return True

    def build_request(self, state: WorkflowState, ctx: OrchestrationContext) -> HitlRequested:
        definition = self.checkpoints[state]
        confidence = ctx.current_confidence()
        lines, data = _SUMMARIES[state](ctx)

        parts = [
            "=" * 60,
            definition.name.upper(),
            "=" * 60,
            "",
            *lines,
            "",
            f"Confidence:      {confidence:.0%}",
            "=" * 60,
        ]
        data["summary"] = "\n".join(parts)

        can_auto = not definition.always_explicit and confidence >= min(
            definition.auto_approve_threshold, ctx.options.auto_approval_threshold
        )
        return HitlRequested(
            session_id=ctx.session_id,
            checkpoint_id=definition.id,
            checkpoint_name=definition.name,
            state=state,
            question=definition.question,
            options=list(definition.options),
            context=data,
            confidence=confidence,
            can_auto_approve=can_auto,
        )

    def process_response(self, state: WorkflowState, option_id: str) -> HitlAction:
        """Map an answer to an action; unknown ids proceed, ``cancel`` always cancels."""
        option_id = (option_id or "").strip().lower()
        if option_id == "cancel":
            return HitlAction.CANCEL
        definition = self.checkpoints.get(state)
        if definition is None:
            return HitlAction.PROCEED
        action = definition.actions.get(option_id)
        if action is None:
            logger.info("Unknown option %r at %s; proceeding", option_id, definition.id)
            return HitlAction.PROCEED
        return action

    def auto_option(self, state: WorkflowState) -> str:
        """Option recorded when a checkpoint is auto-approved."""
        for option in self.checkpoints[state].options:
            if option.is_default:
                return option.id
        return "approve"

"""Model recommendation: a rule-of-thumb default and an LLM-backed variant."""

from __future__ import annotations

import json
import logging

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from auto_ml_orchestrator.context import (
    AnalysisResult,
    OrchestrationOptions,
    RecommendationResult,
    TrainerRecommendation,
)
from auto_ml_orchestrator.errors import CollaboratorError
from auto_ml_orchestrator.prompts.recommend import RECOMMEND_SYSTEM, format_recommend_prompt
from auto_ml_orchestrator.utils import strip_code_fences

logger = logging.getLogger(__name__)

TRAINERS = {
    "binary": ("RandomForestClassifier", "GradientBoostingClassifier", "LogisticRegression"),
    "multiclass": ("RandomForestClassifier", "GradientBoostingClassifier", "LogisticRegression"),
    "regression": ("RandomForestRegressor", "GradientBoostingRegressor", "Ridge"),
}

METRICS = {
    "binary": ("f1", "accuracy", "roc_auc"),
    "multiclass": ("macro_f1", "accuracy"),
    "regression": ("r2", "rmse", "mae"),
}

_REASONS = {
    "RandomForestClassifier": "Robust default for tabular data, handles mixed feature scales",
    "GradientBoostingClassifier": "Often the most accurate on structured data",
    "LogisticRegression": "Fast linear baseline, easy to interpret",
    "RandomForestRegressor": "Robust default for tabular data, handles non-linear effects",
    "GradientBoostingRegressor": "Often the most accurate on structured data",
    "Ridge": "Fast regularized linear baseline",
}


def build_chat_model(api_base: str, api_key: str, model: str, temperature: float = 0.2) -> ChatOpenAI:
    """Create the OpenAI-compatible chat model used by :class:`LLMRecommender`."""
    return ChatOpenAI(
        base_url=api_base,
        api_key=api_key,
        model=model,
        temperature=temperature,
        max_tokens=4096,
    )


def describe_analysis(analysis: AnalysisResult) -> str:
    """Text profile of an analysis result, in the shape the LLM prompts expect."""
    lines = [f"Shape: {analysis.row_count} rows × {analysis.column_count} columns", "", "Columns:"]
    for col in analysis.columns:
        flags = []
        if col.is_target:
            flags.append("target")
        if col.is_categorical:
            flags.append("categorical")
        lines.append(
            f"  {col.name}  (dtype={col.data_type}, unique={col.unique_count}, "
            f"missing={col.missing_count}{', ' + ', '.join(flags) if flags else ''})"
        )
    return "\n".join(lines)


class HeuristicRecommender:
    """Pick a metric and a trainer shortlist from the task type and data size."""

    def recommend(self, analysis: AnalysisResult, options: OrchestrationOptions) -> RecommendationResult:
        task_type = options.task_type or analysis.inferred_task_type or "binary"
        if task_type not in TRAINERS:
            raise CollaboratorError(f"Unsupported task type: {task_type!r}")

        warnings = []
        names = list(TRAINERS[task_type])
        if analysis.row_count < 100:
            warnings.append(f"Only {analysis.row_count} rows; metrics will be noisy")
            # boosting overfits tiny data; keep the linear baseline first
            names = [names[2], names[0], names[1]]
        if analysis.quality_score < 0.5:
            warnings.append(f"Low data quality score ({analysis.quality_score:.2f})")
        imbalance = [i for i in analysis.quality_issues if "imbalance" in i.lower()]
        warnings.extend(imbalance)

        metric = METRICS[task_type][0]
        if task_type == "binary" and not imbalance:
            metric = "accuracy"

        confidence = 0.9 if analysis.row_count >= 100 else 0.7
        confidence -= 0.05 * max(0, len(warnings) - 1)
        trainers = [
            TrainerRecommendation(name=n, reason=_REASONS.get(n, ""), priority=i + 1)
            for i, n in enumerate(names)
        ]
        return RecommendationResult(
            task_type=task_type,
            primary_metric=metric,
            trainers=trainers,
            training_time_budget=options.max_training_time,
            warnings=warnings,
            rationale=(
                f"{task_type} task on {analysis.row_count} rows; "
                f"optimizing {metric} with {len(trainers)} candidate estimators"
            ),
            confidence=round(max(0.0, min(1.0, confidence)), 4),
        )


class LLMRecommender:
    """Ask an LLM for the task type, metric and trainers.

    The reply must be JSON in the schema of ``RECOMMEND_SYSTEM``; estimator
    and metric names outside the supported sets are dropped.
    """

    def __init__(self, llm):
        self.llm = llm

    def recommend(self, analysis: AnalysisResult, options: OrchestrationOptions) -> RecommendationResult:
        user_prompt = format_recommend_prompt(
            data_profile=describe_analysis(analysis),
            target_column=options.target_column or analysis.recommended_target,
            task_type=options.task_type or analysis.inferred_task_type,
            quality_score=analysis.quality_score,
            issues=analysis.quality_issues,
            insights=analysis.memory_insights,
        )
        messages = [
            SystemMessage(content=RECOMMEND_SYSTEM),
            HumanMessage(content=user_prompt),
        ]
        response = self.llm.invoke(messages)
        raw = strip_code_fences(response.content)
        logger.info("LLM recommend response: %s", raw[:500])

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise CollaboratorError(f"LLM returned invalid JSON for the recommendation: {e}") from e
        if not isinstance(data, dict):
            raise CollaboratorError("LLM recommendation must be a JSON object")

        task_type = options.task_type or str(data.get("task_type", "")).strip().lower()
        if task_type not in TRAINERS:
            raise CollaboratorError(f"LLM proposed an unsupported task type: {task_type!r}")

        metric = str(data.get("primary_metric", "")).strip().lower()
        if metric not in METRICS[task_type]:
            logger.warning("Ignoring unsupported metric %r for %s", metric, task_type)
            metric = METRICS[task_type][0]

        trainers = []
        for item in data.get("trainers", []):
            name = item.get("name", "") if isinstance(item, dict) else str(item)
            if name not in TRAINERS[task_type]:
                logger.warning("Ignoring unsupported estimator %r", name)
                continue
            reason = item.get("reason", "") if isinstance(item, dict) else ""
            trainers.append(TrainerRecommendation(name=name, reason=reason, priority=len(trainers) + 1))
        if not trainers:
            raise CollaboratorError("LLM recommended no supported estimators")

        try:
            confidence = float(data.get("confidence", 0.7))
        except (TypeError, ValueError):
            confidence = 0.7

        return RecommendationResult(
            task_type=task_type,
            primary_metric=metric,
            trainers=trainers,
            training_time_budget=options.max_training_time,
            warnings=[str(w) for w in data.get("warnings", [])],
            rationale=str(data.get("rationale", "")),
            confidence=round(max(0.0, min(1.0, confidence)), 4),
        )

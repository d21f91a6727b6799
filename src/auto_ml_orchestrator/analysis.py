"""Default analyzer: profile a CSV with pandas and pick a target."""

from __future__ import annotations

import logging
from pathlib import Path

import pandas as pd

from auto_ml_orchestrator.context import AnalysisResult, ColumnInfo, OrchestrationOptions
from auto_ml_orchestrator.errors import CollaboratorError
from auto_ml_orchestrator.memory import DatasetFingerprint, lookup_insights
from auto_ml_orchestrator.utils import read_dataset

logger = logging.getLogger(__name__)

_TARGET_NAMES = (
    "target", "label", "class", "y", "outcome", "result",
    "churn", "price", "score", "survived", "default", "fraud",
)

_REGRESSION_MIN_UNIQUE = 20


def infer_task_type(series: pd.Series) -> str:
    values = series.dropna()
    n_unique = values.nunique()
    if n_unique <= 2:
        return "binary"
    if pd.api.types.is_numeric_dtype(values) and not pd.api.types.is_bool_dtype(values):
        if n_unique > _REGRESSION_MIN_UNIQUE or (values % 1 != 0).any():
            return "regression"
    return "multiclass"


def detect_target(df: pd.DataFrame) -> tuple[str, float]:
    """Return (column, confidence) for the most likely prediction target."""
    lowered = {str(c).lower(): str(c) for c in df.columns}
    for name in _TARGET_NAMES:
        if name in lowered:
            return lowered[name], 0.9
    for lower, original in lowered.items():
        if any(lower.endswith(f"_{name}") or lower.startswith(f"{name}_") for name in _TARGET_NAMES):
            return original, 0.75
    return str(df.columns[-1]), 0.6


class DataAnalyzer:
    """Column profiling, target detection, and a coarse quality score."""

    def __init__(self, memory=None):
        self.memory = memory

    def analyze(self, path: str, options: OrchestrationOptions) -> AnalysisResult:
        df = read_dataset(path)
        if df.empty or len(df.columns) == 0:
            raise CollaboratorError(f"Dataset {Path(path).name} has no rows")
        logger.info("Analyzing %s: %d rows x %d columns", Path(path).name, len(df), len(df.columns))

        if options.target_column:
            if options.target_column not in df.columns:
                raise CollaboratorError(
                    f"Target column '{options.target_column}' not found. "
                    f"Available columns: {', '.join(map(str, df.columns))}"
                )
            target, target_conf = options.target_column, 1.0
        else:
            target, target_conf = detect_target(df)
            logger.info("Detected target column: %s (confidence %.2f)", target, target_conf)

        task_type = options.task_type or infer_task_type(df[target])

        columns = []
        for c in df.columns:
            s = df[c]
            missing = int(s.isna().sum())
            n_unique = int(s.nunique())
            is_numeric = pd.api.types.is_numeric_dtype(s)
            columns.append(ColumnInfo(
                name=str(c),
                data_type=str(s.dtype),
                missing_count=missing,
                missing_percentage=round(missing / len(df), 4),
                unique_count=n_unique,
                is_categorical=not is_numeric and n_unique <= max(20, len(df) // 20),
                is_numeric=is_numeric,
                is_target=str(c) == target,
            ))

        issues = self._quality_issues(df, columns, target, task_type)
        missing_ratio = float(df.isna().sum().sum()) / df.size
        quality = max(0.0, 1.0 - 2 * missing_ratio - 0.05 * len(issues))
        if quality >= 0.8:
            readiness = "ready"
        elif quality >= 0.5:
            readiness = "needs_preprocessing"
        else:
            readiness = "not_ready"

        fingerprint = DatasetFingerprint.from_dataframe(df, target)
        insights, _ = lookup_insights(self.memory, fingerprint)

        recommendations = []
        if missing_ratio > 0:
            recommendations.append("Impute or drop missing values before training")
        if any("constant" in i for i in issues):
            recommendations.append("Drop constant columns")
        if task_type in ("binary", "multiclass") and any("imbalance" in i for i in issues):
            recommendations.append("Use a class-balanced metric such as F1 or AUC")

        return AnalysisResult(
            row_count=len(df),
            column_count=len(df.columns),
            columns=columns,
            recommended_target=target,
            inferred_task_type=task_type,
            quality_score=round(quality, 4),
            missing_percentage=round(missing_ratio, 4),
            quality_issues=issues,
            readiness=readiness,
            recommendations=recommendations,
            memory_insights=insights,
            fingerprint_hash=fingerprint.hash,
            confidence=round(target_conf * (0.5 + 0.5 * quality), 4),
        )

    @staticmethod
    def _quality_issues(df: pd.DataFrame, columns: list[ColumnInfo], target: str, task_type: str) -> list[str]:
        issues = []
        for col in columns:
            if col.missing_percentage > 0.3:
                issues.append(f"Column '{col.name}' is {col.missing_percentage:.0%} missing")
            if col.unique_count <= 1 and not col.is_target:
                issues.append(f"Column '{col.name}' is constant")
            if (
                not col.is_target
                and not col.is_numeric
                and len(df) > 20
                and col.unique_count == len(df)
            ):
                issues.append(f"Column '{col.name}' looks like an identifier")
        dupes = int(df.duplicated().sum())
        if dupes:
            issues.append(f"{dupes} duplicated rows")
        if task_type in ("binary", "multiclass"):
            counts = df[target].value_counts(normalize=True)
            if len(counts) > 1 and counts.iloc[-1] < 0.1:
                issues.append(f"Class imbalance in '{target}' (minority {counts.iloc[-1]:.1%})")
        return issues

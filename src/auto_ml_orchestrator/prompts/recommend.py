"""Prompt templates for the model recommendation stage."""

RECOMMEND_SYSTEM = """\
You are a machine learning expert. Given a profile of a tabular dataset and the
prediction target, you choose how a model should be trained:
1. The task type: binary classification, multiclass classification, or regression
2. The primary evaluation metric
3. Up to three scikit-learn estimators to try, in priority order
4. Warnings about the data that could hurt training

Allowed estimators:
  classification: LogisticRegression, RandomForestClassifier, GradientBoostingClassifier
  regression:     Ridge, RandomForestRegressor, GradientBoostingRegressor

Allowed metrics:
  binary: accuracy, f1, roc_auc
  multiclass: accuracy, macro_f1
  regression: r2, rmse, mae

Respond ONLY with valid JSON (no markdown fences) in this exact schema:
{
  "task_type": "binary | multiclass | regression",
  "primary_metric": "<metric>",
  "trainers": [{"name": "<estimator>", "reason": "<why>"}, ...],
  "warnings": ["<warning>", ...],
  "rationale": "<brief explanation>",
  "confidence": <float between 0 and 1>
}
"""

RECOMMEND_USER = """\
Here is a profile of the dataset:

{data_profile}

Prediction target: '{target_column}'
Detected task type: {task_type}
Data quality score: {quality_score:.2f}
Known issues:
{issues}
{insights}
Recommend a task type, metric and estimators for this dataset.
"""


def format_recommend_prompt(
    data_profile: str,
    target_column: str,
    task_type: str,
    quality_score: float,
    issues: list[str],
    insights: list[str] | None = None,
) -> str:
    """Format the user prompt for the recommendation stage."""
    issue_lines = "\n".join(f"  - {i}" for i in issues) if issues else "  (none)"
    insight_text = ""
    if insights:
        insight_text = "\nPast experience with similar datasets:\n" + "\n".join(f"  - {i}" for i in insights) + "\n"
    return RECOMMEND_USER.format(
        data_profile=data_profile,
        target_column=target_column,
        task_type=task_type or "unknown",
        quality_score=quality_score,
        issues=issue_lines,
        insights=insight_text,
    )

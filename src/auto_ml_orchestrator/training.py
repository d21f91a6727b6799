"""Default training, evaluation and deployment collaborators (scikit-learn)."""

from __future__ import annotations

import json
import logging
import math
import pickle
import shutil
import time
import warnings
from pathlib import Path

import numpy as np
import pandas as pd
from sklearn.ensemble import (
    GradientBoostingClassifier,
    GradientBoostingRegressor,
    RandomForestClassifier,
    RandomForestRegressor,
)
from sklearn.linear_model import LogisticRegression, Ridge
from sklearn.metrics import (
    accuracy_score,
    f1_score,
    mean_absolute_error,
    mean_squared_error,
    r2_score,
    roc_auc_score,
)
from sklearn.model_selection import train_test_split

from auto_ml_orchestrator.context import (
    DeploymentResult,
    EvaluationResult,
    ModelSummary,
    RecommendationResult,
    TrainingResult,
    utcnow,
)
from auto_ml_orchestrator.errors import CollaboratorError
from auto_ml_orchestrator.utils import ensure_dir, read_dataset

logger = logging.getLogger(__name__)

TEST_RATIO = 0.2
MAX_ONE_HOT = 30
LOWER_IS_BETTER = frozenset({"rmse", "mae"})

ESTIMATORS = {
    "LogisticRegression": lambda seed: LogisticRegression(max_iter=1000),
    "RandomForestClassifier": lambda seed: RandomForestClassifier(n_estimators=200, random_state=seed, n_jobs=-1),
    "GradientBoostingClassifier": lambda seed: GradientBoostingClassifier(random_state=seed),
    "Ridge": lambda seed: Ridge(),
    "RandomForestRegressor": lambda seed: RandomForestRegressor(n_estimators=200, random_state=seed, n_jobs=-1),
    "GradientBoostingRegressor": lambda seed: GradientBoostingRegressor(random_state=seed),
}


# ── Feature preparation ───────────────────────────────────────────


def prepare_frame(
    df: pd.DataFrame, target: str, task_type: str, columns: list[str] | None = None
) -> tuple[pd.DataFrame, pd.Series]:
    """Turn a raw DataFrame into a numeric feature matrix and a target.

    Numeric(-looking) columns are median-filled, low-cardinality text columns
    are one-hot encoded and other text columns are dropped.  When *columns*
    is given the matrix is aligned to it (missing dummies become 0).
    """
    if target not in df.columns:
        raise CollaboratorError(f"Target column '{target}' not found in {list(df.columns)}")

    if task_type == "regression":
        y = pd.to_numeric(df[target], errors="coerce")
    else:
        y = df[target]
    keep = y.notna()
    df, y = df[keep], y[keep]
    if task_type != "regression":
        y = y.astype(str)

    parts = []
    for c in df.columns:
        if c == target:
            continue
        s = df[c]
        numeric = s.astype(float) if pd.api.types.is_bool_dtype(s) else pd.to_numeric(s, errors="coerce")
        if s.notna().any() and numeric.notna().sum() >= 0.9 * s.notna().sum():
            fill = numeric.median() if numeric.notna().any() else 0.0
            parts.append(numeric.fillna(fill).rename(str(c)))
        elif s.nunique() <= MAX_ONE_HOT:
            parts.append(pd.get_dummies(s.astype(str), prefix=str(c), dtype=float))
        else:
            logger.debug("Dropping high-cardinality text column %s", c)

    X = pd.concat(parts, axis=1) if parts else pd.DataFrame(index=df.index)
    if columns is not None:
        X = X.reindex(columns=columns, fill_value=0.0)
    if X.shape[1] == 0:
        raise CollaboratorError("No usable feature columns after encoding")
    return X, y


def split_frame(X: pd.DataFrame, y: pd.Series, task_type: str, seed: int):
    """Stratified split for classification, falling back to a random split."""
    if task_type != "regression":
        try:
            return train_test_split(X, y, test_size=TEST_RATIO, random_state=seed, stratify=y)
        except ValueError:
            logger.warning("Stratified split failed, using random split.")
    return train_test_split(X, y, test_size=TEST_RATIO, random_state=seed)


def compute_metrics(model, X: pd.DataFrame, y: pd.Series, task_type: str) -> dict[str, float]:
    pred = model.predict(X)
    if task_type == "regression":
        return {
            "r2": float(r2_score(y, pred)),
            "rmse": float(math.sqrt(mean_squared_error(y, pred))),
            "mae": float(mean_absolute_error(y, pred)),
        }

    metrics = {"accuracy": float(accuracy_score(y, pred))}
    classes = sorted(set(y) | set(pred))
    if task_type == "binary" and len(classes) <= 2:
        pos_label = classes[-1]
        metrics["f1"] = float(f1_score(y, pred, average="binary", pos_label=pos_label, zero_division=0))
        if hasattr(model, "predict_proba") and y.nunique() == 2 and pos_label in list(model.classes_):
            proba = model.predict_proba(X)[:, list(model.classes_).index(pos_label)]
            metrics["roc_auc"] = float(roc_auc_score(y == pos_label, proba))
    else:
        metrics["macro_f1"] = float(f1_score(y, pred, average="macro", zero_division=0))
        metrics["weighted_f1"] = float(f1_score(y, pred, average="weighted", zero_division=0))
    return metrics


def metric_confidence(name: str, value: float) -> float:
    """Map a metric value onto [0, 1] for checkpoint confidence."""
    if name in LOWER_IS_BETTER or math.isnan(value):
        return 0.5
    return max(0.0, min(1.0, value))


def _rank_key(metric: str, score: float) -> float:
    if math.isnan(score):
        return -math.inf
    return -score if metric in LOWER_IS_BETTER else score


def load_bundle(model_path: str) -> dict:
    path = Path(model_path)
    if not path.exists():
        raise CollaboratorError(f"Model file not found: {path}")
    with open(path, "rb") as f:
        return pickle.load(f)


# ── Collaborators ─────────────────────────────────────────────────


class SklearnTrainingRunner:
    """Fit each recommended estimator in priority order within the time budget."""

    def __init__(self, random_seed: int = 42):
        self.random_seed = random_seed

    def train(
        self,
        data_path: str,
        target: str,
        recommendation: RecommendationResult,
        time_budget: int,
        output_dir: str,
    ) -> TrainingResult:
        task_type = recommendation.task_type
        metric = recommendation.primary_metric
        df = read_dataset(data_path)
        X, y = prepare_frame(df, target, task_type)
        if len(X) < 10:
            raise CollaboratorError(f"Need at least 10 labelled rows to train, got {len(X)}")
        X_train, X_test, y_train, y_test = split_frame(X, y, task_type, self.random_seed)

        names = [t.name for t in sorted(recommendation.trainers, key=lambda t: t.priority)]
        unknown = [n for n in names if n not in ESTIMATORS]
        if unknown:
            logger.warning("Skipping unsupported estimators: %s", ", ".join(unknown))
        names = [n for n in names if n in ESTIMATORS]
        if not names:
            raise CollaboratorError("No supported estimators to train")

        started = time.perf_counter()
        fitted = []
        for name in names:
            if fitted and time.perf_counter() - started > time_budget:
                logger.warning("Time budget of %ds exhausted, skipping %s", time_budget, name)
                continue
            model = ESTIMATORS[name](self.random_seed)
            t0 = time.perf_counter()
            with warnings.catch_warnings():
                warnings.simplefilter("ignore")
                model.fit(X_train, y_train)
            fit_time = time.perf_counter() - t0
            metrics = compute_metrics(model, X_test, y_test, task_type)
            score = metrics.get(metric, np.nan)
            logger.info("%s: %s=%.4f (%.1fs)", name, metric, score, fit_time)
            fitted.append((name, model, metrics, score, fit_time))

        fitted.sort(key=lambda item: _rank_key(metric, item[3]), reverse=True)
        best_name, best_model, best_metrics, best_score, _ = fitted[0]

        experiment_id = f"exp-{utcnow():%Y%m%d%H%M%S}"
        out_dir = ensure_dir(output_dir)
        model_path = out_dir / "model.pkl"
        with open(model_path, "wb") as f:
            pickle.dump({
                "model": best_model,
                "model_name": best_name,
                "columns": list(X.columns),
                "target": target,
                "task_type": task_type,
                "primary_metric": metric,
                "random_seed": self.random_seed,
                "experiment_id": experiment_id,
            }, f)
        logger.info("Saved best model (%s) to %s", best_name, model_path)

        return TrainingResult(
            best_model_name=best_name,
            primary_metric_name=metric,
            primary_metric_value=float(best_score),
            metrics=best_metrics,
            training_duration=time.perf_counter() - started,
            models_evaluated=len(fitted),
            model_path=str(model_path),
            top_models=[
                ModelSummary(name=n, score=float(s), training_time=t, rank=i + 1)
                for i, (n, _, _, s, t) in enumerate(fitted)
            ],
            experiment_id=experiment_id,
            confidence=round(metric_confidence(metric, float(best_score)), 4),
        )


class SklearnEvaluator:
    """Re-score the saved model on the held-out split and write a JSON report."""

    def evaluate(self, training: TrainingResult, data_path: str, target: str, task_type: str) -> EvaluationResult:
        bundle = load_bundle(training.model_path)
        df = read_dataset(data_path)
        X, y = prepare_frame(df, target, task_type, columns=bundle["columns"])
        _, X_test, _, y_test = split_frame(X, y, task_type, bundle.get("random_seed", 42))
        metrics = compute_metrics(bundle["model"], X_test, y_test, task_type)

        metric = training.primary_metric_name
        value = metrics.get(metric, float("nan"))
        recommendations = []
        if task_type != "regression" and metrics.get("accuracy", 1.0) < 0.7:
            recommendations.append("Accuracy is below 70%; consider more data or feature engineering")
        if task_type == "regression" and metrics.get("r2", 1.0) < 0.5:
            recommendations.append("R² is below 0.5; the model explains little of the variance")
        train_value = training.metrics.get(metric)
        if train_value is not None and not math.isnan(value) and abs(train_value - value) > 0.1:
            recommendations.append(f"{metric} differs from training by more than 0.1; results may be unstable")

        report_path = Path(training.model_path).parent / "evaluation.json"
        with open(report_path, "w") as f:
            json.dump({"model": training.best_model_name, "test_metrics": metrics}, f, indent=2, default=str)
        logger.info("Saved evaluation results to %s", report_path)

        summary = f"{training.best_model_name}: " + ", ".join(f"{k}={v:.4f}" for k, v in metrics.items())
        return EvaluationResult(
            test_metrics=metrics,
            summary=summary,
            recommendations=recommendations,
            report_path=str(report_path),
            confidence=round(metric_confidence(metric, value), 4),
        )


class LocalDeployer:
    """Copy the model to a versioned location on the local filesystem.

    Modes: ``deploy`` (``deployed/<version>/`` with a manifest), ``export``
    (single portable file under ``export/``) and ``save`` (keep the model
    where training wrote it).
    """

    def deploy(self, training: TrainingResult, mode: str, output_dir: str) -> DeploymentResult:
        source = Path(training.model_path)
        if not source.exists():
            raise CollaboratorError(f"Cannot {mode}: model file not found at {source}")
        version = training.experiment_id or f"v{utcnow():%Y%m%d%H%M%S}"
        base = Path(output_dir)

        if mode == "deploy":
            target_dir = ensure_dir(base / "deployed" / version)
            location = target_dir / source.name
            shutil.copy2(source, location)
            manifest = {
                "model": training.best_model_name,
                "version": version,
                "metric": {training.primary_metric_name: training.primary_metric_value},
                "deployed_at": utcnow().isoformat(),
            }
            with open(target_dir / "manifest.json", "w") as f:
                json.dump(manifest, f, indent=2)
        elif mode == "export":
            location = ensure_dir(base / "export") / f"{training.best_model_name}-{version}.pkl"
            shutil.copy2(source, location)
        elif mode == "save":
            location = source
        else:
            raise CollaboratorError(f"Unknown deployment mode: {mode!r}")

        logger.info("Model %s (%s) -> %s", training.best_model_name, mode, location)
        return DeploymentResult(
            success=True,
            mode=mode,
            target="local",
            model_version=version,
            deployed_at=utcnow(),
            location=str(location),
        )

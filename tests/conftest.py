"""Shared fixtures: small CSV datasets and in-process fake stage collaborators."""

from __future__ import annotations

import time
from pathlib import Path

import numpy as np
import pandas as pd
import pytest


# ---------------------------------------------------------------------------
# Datasets
# ---------------------------------------------------------------------------

@pytest.fixture
def clean_csv(tmp_path) -> str:
    """20 rows, one numeric feature, binary 'label' target; no data-quality issues."""
    df = pd.DataFrame({
        "x": list(range(20)),
        "label": ["yes" if i % 2 else "no" for i in range(20)],
    })
    path = tmp_path / "clean.csv"
    df.to_csv(path, index=False)
    return str(path)


@pytest.fixture
def churn_csv(tmp_path) -> str:
    """200 rows with a few missing values and padded category strings."""
    rng = np.random.default_rng(0)
    x1 = rng.normal(size=200)
    target = (x1 > 0).astype(int)
    x1 = x1.astype(object)
    x1[rng.choice(200, size=10, replace=False)] = None
    df = pd.DataFrame({
        "x1": x1,
        "x2": rng.normal(size=200).round(3),
        "plan": [["basic", "pro", "team "][i % 3] for i in range(200)],
        "target": target,
    })
    path = tmp_path / "churn.csv"
    df.to_csv(path, index=False)
    return str(path)


# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------

class FakeAnalyzer:
    def __init__(self, confidence=0.95, delay=0.0):
        self.confidence = confidence
        self.delay = delay
        self.calls = 0

    def analyze(self, path, options):
        from auto_ml_orchestrator.context import AnalysisResult

        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        return AnalysisResult(
            row_count=20,
            column_count=2,
            recommended_target="label",
            inferred_task_type="binary",
            quality_score=1.0,
            confidence=self.confidence,
        )


class FakeRecommender:
    def __init__(self, confidence=0.95):
        self.confidence = confidence
        self.calls = 0

    def recommend(self, analysis, options):
        from auto_ml_orchestrator.context import RecommendationResult, TrainerRecommendation

        self.calls += 1
        return RecommendationResult(
            task_type="binary",
            primary_metric="accuracy",
            trainers=[TrainerRecommendation(name="RandomForestClassifier", priority=1)],
            confidence=self.confidence,
        )


class FakePreprocessor:
    def __init__(self):
        self.calls = []

    def apply(self, path, rules, output_dir):
        from auto_ml_orchestrator.context import PreprocessingResult

        self.calls.append([r.id for r in rules])
        return PreprocessingResult(output_path=path, rows_before=20, rows_after=20)


class FakeTrainer:
    """Writes a placeholder model file; fails the first *failures* calls."""

    def __init__(self, failures=0):
        self.failures = failures
        self.calls = []

    def train(self, data_path, target, recommendation, time_budget, output_dir):
        from auto_ml_orchestrator.context import TrainingResult
        from auto_ml_orchestrator.errors import CollaboratorError

        self.calls.append(data_path)
        if self.failures:
            self.failures -= 1
            raise CollaboratorError("trainer crashed")
        model_path = Path(output_dir) / "model.pkl"
        model_path.parent.mkdir(parents=True, exist_ok=True)
        model_path.write_bytes(b"model")
        return TrainingResult(
            best_model_name="RandomForestClassifier",
            primary_metric_name="accuracy",
            primary_metric_value=0.9,
            metrics={"accuracy": 0.9},
            models_evaluated=1,
            model_path=str(model_path),
            experiment_id="exp-test",
            confidence=0.9,
        )


class FakeEvaluator:
    def evaluate(self, training, data_path, target, task_type):
        from auto_ml_orchestrator.context import EvaluationResult

        return EvaluationResult(test_metrics={"accuracy": 0.88}, summary="ok", confidence=0.88)


class FakeDeployer:
    def __init__(self):
        self.modes = []

    def deploy(self, training, mode, output_dir):
        from auto_ml_orchestrator.context import DeploymentResult

        self.modes.append(mode)
        return DeploymentResult(success=True, mode=mode, location=str(Path(output_dir) / mode))


@pytest.fixture
def fakes():
    from auto_ml_orchestrator.orchestrator import Collaborators

    return Collaborators(
        analyzer=FakeAnalyzer(),
        recommender=FakeRecommender(),
        preprocessor=FakePreprocessor(),
        trainer=FakeTrainer(),
        evaluator=FakeEvaluator(),
        deployer=FakeDeployer(),
    )


def answering(*answers, default="approve"):
    """Async HITL handler replaying *answers*, then *default*."""
    from auto_ml_orchestrator.policy import HitlAnswer

    queue = list(answers)
    seen = []

    async def handler(request):
        seen.append(request.checkpoint_id)
        option = queue.pop(0) if queue else default
        return HitlAnswer(option_id=option)

    handler.seen = seen
    return handler


@pytest.fixture
def make_handler():
    return answering

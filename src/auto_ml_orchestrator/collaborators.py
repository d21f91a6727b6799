"""Interfaces of the components the orchestrator drives.

All methods are synchronous; the orchestrator runs them in a worker thread.
Default implementations live in ``analysis``, ``recommend``, ``preprocess``,
``training`` and ``memory``.
"""

from __future__ import annotations

from typing import Protocol

from auto_ml_orchestrator.context import (
    AnalysisResult,
    DeploymentResult,
    EvaluationResult,
    OrchestrationOptions,
    PreprocessingResult,
    RecommendationResult,
    TrainingResult,
)
from auto_ml_orchestrator.rules.models import PreprocessingRule


class Analyzer(Protocol):
    def analyze(self, path: str, options: OrchestrationOptions) -> AnalysisResult: ...


class Recommender(Protocol):
    def recommend(self, analysis: AnalysisResult, options: OrchestrationOptions) -> RecommendationResult: ...


class PreprocessingExecutor(Protocol):
    def apply(self, path: str, rules: list[PreprocessingRule], output_dir: str) -> PreprocessingResult: ...


class TrainingRunner(Protocol):
    def train(
        self,
        data_path: str,
        target: str,
        recommendation: RecommendationResult,
        time_budget: int,
        output_dir: str,
    ) -> TrainingResult: ...


class Evaluator(Protocol):
    def evaluate(
        self, training: TrainingResult, data_path: str, target: str, task_type: str
    ) -> EvaluationResult: ...


class Deployer(Protocol):
    def deploy(self, training: TrainingResult, mode: str, output_dir: str) -> DeploymentResult: ...


class PatternMemory(Protocol):
    def find_insights(self, fingerprint) -> list[str]: ...

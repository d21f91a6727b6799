"""Progressive sampling stages and nested sample drawing."""

from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np
import pandas as pd


@dataclass(frozen=True)
class SamplingStage:
    number: int
    name: str
    fraction: float


DEFAULT_STAGES = (
    SamplingStage(1, "Initial Exploration", 0.001),
    SamplingStage(2, "Pattern Expansion", 0.005),
    SamplingStage(3, "HITL Decision", 0.015),
    SamplingStage(4, "Confidence Checkpoint", 0.025),
    SamplingStage(5, "Bulk Processing", 1.0),
)


def stage_size(n_rows: int, stage: SamplingStage, final: bool = False) -> int:
    if n_rows <= 0:
        return 0
    if final:
        return n_rows
    return min(n_rows, max(1, math.ceil(n_rows * stage.fraction)))


class ProgressiveSampler:
    """Draws growing samples from one seeded permutation of the rows.

    Every sample is a prefix of the same permutation, so a later sample
    always contains the earlier ones.
    """

    def __init__(self, df: pd.DataFrame, stages=DEFAULT_STAGES, seed: int = 42):
        self.df = df
        self.stages = tuple(stages)
        self.order = np.random.default_rng(seed).permutation(len(df))

    def plan(self) -> list[tuple[SamplingStage, int]]:
        """Stages that add rows, with their sample sizes."""
        planned = []
        previous = 0
        for i, stage in enumerate(self.stages):
            size = stage_size(len(self.df), stage, final=i == len(self.stages) - 1)
            if size <= previous:
                continue
            planned.append((stage, size))
            previous = size
        return planned

    def sample(self, size: int) -> pd.DataFrame:
        return self.df.iloc[np.sort(self.order[:size])]

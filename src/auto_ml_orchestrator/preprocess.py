"""Default preprocessing executor: apply discovered rules and write a CSV."""

from __future__ import annotations

import logging
from pathlib import Path

from auto_ml_orchestrator.context import PreprocessingResult, PreprocessingStep
from auto_ml_orchestrator.rules.models import PreprocessingRule
from auto_ml_orchestrator.rules.transforms import apply_rule
from auto_ml_orchestrator.utils import ensure_dir, read_dataset

logger = logging.getLogger(__name__)


class RulePreprocessor:
    """Applies rules in order (highest priority first) to the whole dataset."""

    def __init__(self, drop_duplicates: bool = False):
        self.drop_duplicates = drop_duplicates

    def apply(self, path: str, rules: list[PreprocessingRule], output_dir: str) -> PreprocessingResult:
        df = read_dataset(path)
        rows_before, columns_before = df.shape
        steps: list[PreprocessingStep] = []

        for rule in rules:
            df, counts = apply_rule(rule, df)
            logger.info(
                "Applied %s: %d/%d values changed, %d left unchanged",
                rule.id, counts.successes, counts.applicable, counts.exceptions,
            )
            steps.append(PreprocessingStep(
                name=rule.id,
                description=rule.suggested_action or rule.description,
                columns=list(rule.columns),
                parameters={
                    "category": rule.category.value,
                    "changed": counts.successes,
                    "unchanged": counts.exceptions,
                    **{k: v for k, v in rule.parameters.items() if k in ("strategy", "target_format", "kind")},
                },
            ))

        if self.drop_duplicates:
            before = len(df)
            df = df.drop_duplicates().reset_index(drop=True)
            if len(df) != before:
                steps.append(PreprocessingStep(
                    name="drop_duplicates",
                    description=f"Dropped {before - len(df)} duplicated rows",
                ))

        out_dir = ensure_dir(output_dir or Path(path).parent)
        out_path = out_dir / f"{Path(path).stem}_preprocessed.csv"
        df.to_csv(out_path, index=False)
        logger.info("Saved preprocessed data (%d rows) to %s", len(df), out_path)

        return PreprocessingResult(
            output_path=str(out_path),
            steps=steps,
            rows_before=rows_before,
            rows_after=len(df),
            columns_before=columns_before,
            columns_after=len(df.columns),
        )

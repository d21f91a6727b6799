"""Advisory dataset-pattern memory.

Outcomes of past sessions are stored per dataset fingerprint in
``<base>/.mloop/memory/patterns.json``; a new dataset gets ranked hints
from similar past datasets.  Memory never blocks a session: every lookup
goes through :func:`lookup_insights`, which degrades to ``([], False)``.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pandas as pd

from auto_ml_orchestrator.context import utcnow
from auto_ml_orchestrator.serde import from_jsonable, to_jsonable

logger = logging.getLogger(__name__)

# serializes read-modify-write of the patterns file between sessions in one process
_record_lock = threading.Lock()


def size_category(rows: int) -> str:
    if rows < 1_000:
        return "Small"
    if rows < 100_000:
        return "Medium"
    if rows < 1_000_000:
        return "Large"
    return "VeryLarge"


@dataclass
class DatasetFingerprint:
    column_names: list[str] = field(default_factory=list)
    column_types: dict[str, str] = field(default_factory=dict)
    row_count: int = 0
    size_category: str = "Small"
    numeric_ratio: float = 0.0
    categorical_ratio: float = 0.0
    missing_ratio: float = 0.0
    label_column: str = ""
    task_type: str = ""
    hash: str = ""

    @classmethod
    def from_dataframe(cls, df: pd.DataFrame, label_column: str = "") -> DatasetFingerprint:
        columns = [str(c) for c in df.columns]
        types = {str(c): str(df[c].dtype) for c in df.columns}
        numeric = sum(1 for c in df.columns if pd.api.types.is_numeric_dtype(df[c]))
        n_cols = len(columns)
        cells = len(df) * n_cols
        fp = cls(
            column_names=columns,
            column_types=types,
            row_count=len(df),
            size_category=size_category(len(df)),
            numeric_ratio=numeric / n_cols if n_cols else 0.0,
            categorical_ratio=(n_cols - numeric) / n_cols if n_cols else 0.0,
            missing_ratio=float(df.isna().sum().sum()) / cells if cells else 0.0,
            label_column=label_column,
        )
        fp.hash = fp.compute_hash()
        return fp

    def compute_hash(self) -> str:
        """Stable hash of the schema (sorted column name/type pairs)."""
        schema = "|".join(f"{name}:{self.column_types.get(name, '')}" for name in sorted(self.column_names))
        return hashlib.sha256(schema.encode("utf-8")).hexdigest()[:16]

    def describe(self) -> str:
        return (
            f"{len(self.column_names)} columns, {self.row_count} rows ({self.size_category}), "
            f"{self.numeric_ratio:.0%} numeric, {self.missing_ratio:.1%} missing"
        )

    def similarity(self, other: DatasetFingerprint) -> float:
        """Score in [0, 1]: column overlap, shape of the data, and size bucket."""
        if self.hash and self.hash == other.hash:
            return 1.0
        a, b = set(self.column_names), set(other.column_names)
        jaccard = len(a & b) / len(a | b) if a | b else 0.0
        ratio = 1.0 - (abs(self.numeric_ratio - other.numeric_ratio) + abs(self.missing_ratio - other.missing_ratio)) / 2
        same_size = 1.0 if self.size_category == other.size_category else 0.0
        return 0.6 * jaccard + 0.3 * ratio + 0.1 * same_size


@dataclass
class ProcessingOutcome:
    session_id: str
    success: bool
    task_type: str = ""
    best_model: str = ""
    metric_name: str = ""
    metric_value: float = 0.0
    preprocessing_steps: list[str] = field(default_factory=list)
    error: str = ""
    recorded_at: str = ""


@dataclass
class PatternRecord:
    fingerprint: DatasetFingerprint
    outcome: ProcessingOutcome


class JsonPatternMemory:
    """Fingerprint -> outcome records kept in one JSON file."""

    def __init__(self, base_dir: str | os.PathLike = ".", min_similarity: float = 0.5, top_k: int = 3):
        self.path = Path(base_dir) / ".mloop" / "memory" / "patterns.json"
        self.min_similarity = min_similarity
        self.top_k = top_k

    def _load(self) -> list[PatternRecord]:
        if not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ValueError(f"Pattern memory file is corrupted: {self.path}. {e}") from e
        return [from_jsonable(PatternRecord, item) for item in data]

    def record(self, fingerprint: DatasetFingerprint, outcome: ProcessingOutcome) -> None:
        outcome.recorded_at = outcome.recorded_at or utcnow().isoformat()
        with _record_lock:
            records = self._load()
            records.append(PatternRecord(fingerprint=fingerprint, outcome=outcome))
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(to_jsonable(records), f, indent=2)
                os.replace(tmp, self.path)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
        logger.info("Recorded %s outcome for dataset %s", "successful" if outcome.success else "failed", fingerprint.hash)

    def similar(self, fingerprint: DatasetFingerprint) -> list[tuple[float, PatternRecord]]:
        scored = [(fingerprint.similarity(r.fingerprint), r) for r in self._load()]
        scored = [(s, r) for s, r in scored if s >= self.min_similarity]
        scored.sort(key=lambda item: item[0], reverse=True)
        return scored

    def find_insights(self, fingerprint: DatasetFingerprint) -> list[str]:
        insights: list[str] = []
        successes = 0
        for score, record in self.similar(fingerprint):
            o = record.outcome
            if o.success and successes < self.top_k:
                successes += 1
                line = f"Similar dataset ({score:.0%} match) trained {o.best_model or 'a model'}"
                if o.metric_name:
                    line += f" with {o.metric_name}={o.metric_value:.4f}"
                if o.preprocessing_steps:
                    line += f" after {', '.join(o.preprocessing_steps[:3])}"
                insights.append(line)
            elif not o.success and o.error:
                insights.append(f"Warning: a similar dataset ({score:.0%} match) failed: {o.error}")
        return insights


def lookup_insights(memory: Any, fingerprint: DatasetFingerprint) -> tuple[list[str], bool]:
    """Ask *memory* for insights; ``([], False)`` when absent or failing."""
    if memory is None:
        return [], False
    try:
        return list(memory.find_insights(fingerprint)), True
    except Exception as e:
        logger.warning("Pattern memory lookup failed, continuing without it: %s", e)
        return [], False

"""Shared utility functions."""

from __future__ import annotations

from pathlib import Path

import pandas as pd

from auto_ml_orchestrator.errors import CollaboratorError


def read_dataset(path: str) -> pd.DataFrame:
    """Load a CSV file into a DataFrame.

    Raises
    ------
    CollaboratorError
        If the file is missing or cannot be parsed as CSV.
    """
    csv_path = Path(path)
    if not csv_path.exists():
        raise CollaboratorError(f"Dataset not found: {csv_path}")
    try:
        return pd.read_csv(csv_path, low_memory=False)
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
        raise CollaboratorError(
            f"Failed to read CSV file {csv_path.name}: {e}. "
            f"The file may be malformed, use a non-CSV format, or have encoding issues."
        ) from e


def strip_code_fences(raw: str) -> str:
    """Remove a surrounding markdown code fence from an LLM reply."""
    raw = raw.strip()
    if raw.startswith("```"):
        raw = raw.split("\n", 1)[1] if "\n" in raw else ""
        if raw.rstrip().endswith("```"):
            raw = raw[: raw.rfind("```")]
        raw = raw.strip()
    return raw


def ensure_dir(path: str | Path) -> Path:
    directory = Path(path)
    directory.mkdir(parents=True, exist_ok=True)
    return directory

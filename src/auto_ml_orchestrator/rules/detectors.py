"""Column-level data-quality pattern detectors.

Each detector takes a pandas Series and the column name and returns a list
of :class:`DetectedPattern`.  ``detect_patterns`` runs every detector on
every column, logging and skipping a detector that raises.
"""

from __future__ import annotations

import logging
import math
import re
from collections import Counter
from datetime import datetime
from typing import Any, Callable

import numpy as np
import pandas as pd

from auto_ml_orchestrator.rules.models import (
    DetectedPattern,
    PatternType,
    Severity,
    determine_severity,
)

logger = logging.getLogger(__name__)

Detector = Callable[[pd.Series, str], "list[DetectedPattern]"]

MISSING_INDICATORS = frozenset({"", "NULL", "NA", "N/A", "NAN", "NONE", "-", "?"})

MAX_EXAMPLES = 5
MIN_OUTLIER_VALUES = 10
MAX_CATEGORIES = 100
SIMILARITY_THRESHOLD = 0.85

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_US_DATE = re.compile(r"^\d{1,2}/\d{1,2}/\d{2,4}$")
_EU_DATE = re.compile(r"^\d{1,2}\.\d{1,2}\.\d{2,4}$")

_DATE_FORMATS = (
    "%Y-%m-%d",
    "%m/%d/%Y",
    "%m/%d/%y",
    "%d/%m/%Y",
    "%d.%m.%Y",
    "%d.%m.%y",
    "%Y/%m/%d",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
    "%d %b %Y",
    "%d %B %Y",
    "%b %d, %Y",
    "%B %d, %Y",
)

_TRUE_WORDS = frozenset({"TRUE", "YES", "Y", "1", "ON"})
_FALSE_WORDS = frozenset({"FALSE", "NO", "N", "0", "OFF"})

# UTF-8 text decoded as cp1252/latin-1 ("Ã©", "â€™", "Â ")
_MOJIBAKE = re.compile("[\u00c2\u00c3][\u0080-\u00bf\u2018-\u203a]|\u00e2\u20ac")
_NON_ASCII_CLUSTER = re.compile(r"[^\x00-\x7f]{3,}")


# ── Value helpers ──────────────────────────────────────────────────


def is_missing(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().upper() in MISSING_INDICATORS
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def is_string_series(series: pd.Series) -> bool:
    return pd.api.types.is_object_dtype(series) or pd.api.types.is_string_dtype(series)


def is_numeric_series(series: pd.Series) -> bool:
    return pd.api.types.is_numeric_dtype(series) and not pd.api.types.is_bool_dtype(series)


def parse_number(value: str) -> float | None:
    """Parse a number, tolerating thousands separators (``1,234`` / ``1 234``)."""
    cleaned = value.replace(",", "").replace(" ", "").strip()
    if not cleaned:
        return None
    try:
        number = float(cleaned)
    except ValueError:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def parse_date(value: str) -> datetime | None:
    text = value.strip()
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def parse_boolean(value: str) -> bool | None:
    normalized = value.strip().upper()
    if normalized in _TRUE_WORDS:
        return True
    if normalized in _FALSE_WORDS:
        return False
    return None


def value_kind(value: str) -> str:
    """Classify a non-missing string as numeric, datetime, boolean or text."""
    if parse_number(value) is not None:
        return "numeric"
    if parse_date(value) is not None:
        return "datetime"
    if parse_boolean(value) is not None:
        return "boolean"
    return "text"


def infer_column_kind(series: pd.Series) -> str:
    """Majority kind over (up to) 100 evenly spaced values.

    Returns 'typed' for non-string columns, 'unknown' when every value is
    missing, a kind when more than 70% of values share it, 'mixed' when
    numeric or datetime values exceed 30%, otherwise 'text'.
    """
    if not is_string_series(series):
        return "typed"
    n = len(series)
    if n == 0:
        return "unknown"
    step = max(1, n // min(100, n))
    counts: Counter = Counter()
    total = 0
    for value in series.iloc[::step]:
        if is_missing(value):
            continue
        total += 1
        counts[value_kind(str(value))] += 1
    if total == 0:
        return "unknown"
    for kind in ("numeric", "datetime", "boolean"):
        if counts[kind] / total > 0.7:
            return kind
    if counts["numeric"] / total > 0.3 or counts["datetime"] / total > 0.3:
        return "mixed"
    return "text"


def has_whitespace_issue(value: Any) -> bool:
    if not isinstance(value, str) or not value.strip():
        return False
    return (
        value[0].isspace()
        or value[-1].isspace()
        or "  " in value
        or any(ch in value for ch in "\t\n\r")
    )


def has_encoding_issue(value: Any) -> bool:
    if not isinstance(value, str) or not value.strip():
        return False
    if _MOJIBAKE.search(value) or "\ufffd" in value:
        return True
    return _suspicious_cluster(value)


def _suspicious_cluster(value: str) -> bool:
    if not _NON_ASCII_CLUSTER.search(value):
        return False
    try:
        repaired = value.encode("cp1252").decode("utf-8")
    except (UnicodeEncodeError, UnicodeDecodeError):
        return False
    return repaired != value


def levenshtein_similarity(a: str, b: str) -> float:
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        current = [i]
        for j, cb in enumerate(b, 1):
            cost = 0 if ca == cb else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return 1.0 - previous[-1] / longest


def _strings(series: pd.Series):
    for value in series:
        if isinstance(value, str) and value.strip():
            yield value


# ── Detectors ──────────────────────────────────────────────────────


def detect_missing(series: pd.Series, column: str) -> list[DetectedPattern]:
    missing = 0
    examples: list[str] = []
    for value in series:
        if is_missing(value):
            missing += 1
            rep = "[NULL]" if not isinstance(value, str) else value
            if len(examples) < MAX_EXAMPLES and rep not in examples:
                examples.append(rep)
    if missing == 0:
        return []
    affected = missing / len(series)
    severity = determine_severity(affected)
    fixes = {
        Severity.CRITICAL: "Consider dropping column or collecting better data",
        Severity.HIGH: "Impute with median/mode or use predictive model",
        Severity.MEDIUM: "Impute with median/mode or forward/backward fill",
        Severity.LOW: "Impute with median/mode or drop rows",
    }
    return [DetectedPattern(
        pattern_type=PatternType.MISSING_VALUE,
        column=column,
        severity=severity,
        occurrences=missing,
        total_rows=len(series),
        confidence=1.0,
        description="Missing values",
        examples=examples,
        suggested_fix=fixes[severity],
    )]


def detect_whitespace(series: pd.Series, column: str) -> list[DetectedPattern]:
    if not is_string_series(series):
        return []
    kinds = {"leading spaces": 0, "trailing spaces": 0, "multiple spaces": 0, "tabs/newlines": 0}
    affected_rows = 0
    examples: list[str] = []
    for value in _strings(series):
        issue = False
        if value[0].isspace():
            kinds["leading spaces"] += 1
            issue = True
        if value[-1].isspace():
            kinds["trailing spaces"] += 1
            issue = True
        if "  " in value:
            kinds["multiple spaces"] += 1
            issue = True
        if any(ch in value for ch in "\t\n\r"):
            kinds["tabs/newlines"] += 1
            issue = True
        if issue:
            affected_rows += 1
            if len(examples) < MAX_EXAMPLES:
                examples.append(f'"{value}"')
    if affected_rows == 0:
        return []
    affected = affected_rows / len(series)
    present = [name for name, count in kinds.items() if count]
    return [DetectedPattern(
        pattern_type=PatternType.WHITESPACE_ISSUE,
        column=column,
        severity=Severity.MEDIUM if affected >= 0.5 else Severity.LOW,
        occurrences=affected_rows,
        total_rows=len(series),
        confidence=1.0,
        description="Whitespace issues",
        details=present,
        examples=examples,
        suggested_fix="Trim leading/trailing spaces, collapse multiple spaces to single space",
    )]


def outlier_fences(values: np.ndarray) -> tuple[float, float]:
    q1, q3 = np.percentile(values, [25, 75])
    iqr = q3 - q1
    return float(q1 - 1.5 * iqr), float(q3 + 1.5 * iqr)


def detect_outliers(series: pd.Series, column: str) -> list[DetectedPattern]:
    if not is_numeric_series(series):
        return []
    values = series.dropna()
    if len(values) < MIN_OUTLIER_VALUES:
        return []
    arr = values.to_numpy(dtype=float)
    flagged = np.zeros(len(arr), dtype=bool)
    std = arr.std()
    if std > 0:
        flagged |= np.abs((arr - arr.mean()) / std) > 3.0
    lower, upper = outlier_fences(arr)
    flagged |= (arr < lower) | (arr > upper)
    count = int(flagged.sum())
    if count == 0:
        return []
    affected = count / len(series)
    # too few is noise, too many is the distribution itself
    if affected < 0.01 or affected > 0.30:
        return []
    if affected >= 0.20:
        severity = Severity.HIGH
    elif affected >= 0.10:
        severity = Severity.MEDIUM
    else:
        severity = Severity.LOW
    examples = [f"{v:g}" for v in arr[flagged][:MAX_EXAMPLES]]
    fixes = {
        Severity.HIGH: "Review data collection process, consider capping or removing extreme values",
        Severity.MEDIUM: "Investigate outliers, consider using robust statistical methods",
        Severity.LOW: "Document outliers, consider keeping if legitimate data points",
    }
    return [DetectedPattern(
        pattern_type=PatternType.OUTLIER_ANOMALY,
        column=column,
        severity=severity,
        occurrences=count,
        total_rows=len(series),
        confidence=0.85,
        description="Statistical outliers",
        examples=examples,
        suggested_fix=fixes[severity],
    )]


def detect_type_inconsistency(series: pd.Series, column: str) -> list[DetectedPattern]:
    if infer_column_kind(series) != "mixed":
        return []
    counts: Counter = Counter()
    examples: dict[str, list[str]] = {}
    for value in series:
        if is_missing(value):
            continue
        text = str(value)
        kind = value_kind(text)
        counts[kind] += 1
        bucket = examples.setdefault(kind, [])
        if len(bucket) < 3:
            bucket.append(text)
    if len(counts) < 2:
        return []
    total = sum(counts.values())
    minority = min(counts.values())
    if minority / total <= 0.05:
        return []
    majority = counts.most_common(1)[0][0]
    fixes = {
        "numeric": "Convert to numeric, handle non-numeric as NULL or default",
        "datetime": "Convert to datetime, standardize format",
        "boolean": "Convert to boolean, map text values",
        "text": "Keep as text, validate and normalize values",
    }
    order = ("numeric", "datetime", "boolean", "text")
    affected = minority / len(series)
    return [DetectedPattern(
        pattern_type=PatternType.TYPE_INCONSISTENCY,
        column=column,
        severity=determine_severity(affected),
        occurrences=minority,
        total_rows=len(series),
        confidence=0.95,
        description="Mixed types",
        details=[k for k in order if counts[k]],
        examples=[e for k in order for e in examples.get(k, [])][:MAX_EXAMPLES],
        suggested_fix=fixes[majority],
    )]


def _date_format(value: str) -> str | None:
    if _ISO_DATE.match(value):
        return "ISO-8601"
    if _US_DATE.match(value):
        return "US"
    if _EU_DATE.match(value):
        return "EU"
    if parse_date(value) is not None:
        return "Other"
    return None


def detect_format_variation(series: pd.Series, column: str) -> list[DetectedPattern]:
    if not is_string_series(series):
        return []
    kind = infer_column_kind(series)
    n = len(series)

    if kind == "datetime":
        formats: Counter = Counter()
        examples: list[str] = []
        for value in _strings(series):
            fmt = _date_format(value.strip())
            if fmt is None:
                continue
            formats[fmt] += 1
            if len(examples) < 2:
                examples.append(f"{fmt}: {value}")
        if len(formats) <= 1:
            return []
        occurrences = sum(formats.values()) - max(formats.values())
        return [DetectedPattern(
            pattern_type=PatternType.FORMAT_VARIATION,
            column=column,
            severity=Severity.MEDIUM,
            occurrences=occurrences,
            total_rows=n,
            confidence=0.90,
            description="Date format variations",
            examples=examples,
            suggested_fix="Convert all dates to ISO-8601 (YYYY-MM-DD) format",
            kind="date",
        )]

    if kind == "numeric":
        thousands = spaces = comma_decimal = 0
        examples = []
        for value in _strings(series):
            value = value.strip()
            if "," in value and "." in value:
                if value.rfind(",") > value.rfind("."):
                    comma_decimal += 1
                    label = "Comma decimal"
                else:
                    thousands += 1
                    label = "Comma separator"
            elif "," in value:
                if value.count(",") == 1 and value.find(",") > len(value) - 4:
                    comma_decimal += 1
                    label = "Comma decimal"
                else:
                    thousands += 1
                    label = "Comma separator"
            elif " " in value:
                spaces += 1
                label = "Space separator"
            else:
                continue
            if len(examples) < 3:
                examples.append(f"{label}: {value}")
        styles = (thousands, spaces, comma_decimal)
        if sum(1 for c in styles if c) <= 1:
            return []
        return [DetectedPattern(
            pattern_type=PatternType.FORMAT_VARIATION,
            column=column,
            severity=Severity.LOW,
            occurrences=sum(styles) - max(styles),
            total_rows=n,
            confidence=0.85,
            description="Number format variations",
            examples=examples,
            suggested_fix="Remove thousand separators, standardize decimal point to dot (.)",
            kind="number",
        )]

    if kind == "boolean":
        reps: Counter = Counter()
        examples = []
        for value in _strings(series):
            if parse_boolean(value) is None:
                continue
            reps[value.strip().upper()] += 1
            if len(examples) < MAX_EXAMPLES and value not in examples:
                examples.append(value)
        # a single true/false pair is normal
        if len(reps) <= 2:
            return []
        return [DetectedPattern(
            pattern_type=PatternType.FORMAT_VARIATION,
            column=column,
            severity=Severity.LOW,
            occurrences=sum(reps.values()) - max(reps.values()),
            total_rows=n,
            confidence=0.90,
            description="Boolean format variations",
            examples=examples,
            suggested_fix="Convert all booleans to true/false",
            kind="boolean",
        )]

    return []


def detect_encoding_issues(series: pd.Series, column: str) -> list[DetectedPattern]:
    if not is_string_series(series):
        return []
    affected_rows = 0
    examples: list[str] = []
    for value in _strings(series):
        if has_encoding_issue(value):
            affected_rows += 1
            if len(examples) < MAX_EXAMPLES:
                examples.append(value if len(value) <= 50 else value[:50] + "...")
    if affected_rows == 0:
        return []
    severity = determine_severity(affected_rows / len(series))
    fixes = {
        Severity.CRITICAL: "Re-import data with correct encoding (UTF-8 recommended)",
        Severity.HIGH: "Detect source encoding and convert to UTF-8",
        Severity.MEDIUM: "Try encoding detection and conversion, verify results",
        Severity.LOW: "Document encoding and consider conversion if needed",
    }
    return [DetectedPattern(
        pattern_type=PatternType.ENCODING_ISSUE,
        column=column,
        severity=severity,
        occurrences=affected_rows,
        total_rows=len(series),
        confidence=0.85,
        description="Character encoding issues",
        examples=examples,
        suggested_fix=fixes[severity],
    )]


def category_groups(series: pd.Series) -> tuple[Counter, dict[str, Counter]]:
    """Case-insensitive category counts plus the raw spellings of each."""
    counts: Counter = Counter()
    spellings: dict[str, Counter] = {}
    for value in _strings(series):
        if is_missing(value):
            continue
        trimmed = value.strip()
        key = trimmed.upper()
        counts[key] += 1
        spellings.setdefault(key, Counter())[trimmed] += 1
    return counts, spellings


def similar_pairs(categories: list[str]) -> list[tuple[str, str]]:
    pairs = []
    for i, a in enumerate(categories):
        for b in categories[i + 1:]:
            if levenshtein_similarity(a, b) >= SIMILARITY_THRESHOLD:
                pairs.append((a, b))
    return pairs


def detect_category_variation(series: pd.Series, column: str) -> list[DetectedPattern]:
    if not is_string_series(series):
        return []
    counts, spellings = category_groups(series)
    if not counts or len(counts) > MAX_CATEGORIES:
        return []
    patterns = []
    n = len(series)

    varied = {k: v for k, v in spellings.items() if len(v) > 1}
    if varied:
        patterns.append(DetectedPattern(
            pattern_type=PatternType.CATEGORY_VARIATION,
            column=column,
            severity=Severity.LOW,
            occurrences=sum(len(v) - 1 for v in varied.values()),
            total_rows=n,
            confidence=0.95,
            description="Case variations",
            examples=[", ".join(sorted(v)) for v in list(varied.values())[:3]],
            suggested_fix="Normalize to lowercase or proper case",
            kind="case",
        ))

    pairs = similar_pairs(sorted(counts))
    if pairs:
        patterns.append(DetectedPattern(
            pattern_type=PatternType.CATEGORY_VARIATION,
            column=column,
            severity=Severity.MEDIUM,
            occurrences=len(pairs) * 2,
            total_rows=n,
            confidence=0.80,
            description="Similar categories (potential typos)",
            examples=[f"{a} ~ {b}" for a, b in pairs[:MAX_EXAMPLES]],
            suggested_fix="Review similar categories and merge if typos, keep separate if distinct",
            kind="typo",
        ))
    return patterns


DETECTORS: tuple[Detector, ...] = (
    detect_missing,
    detect_type_inconsistency,
    detect_format_variation,
    detect_outliers,
    detect_category_variation,
    detect_encoding_issues,
    detect_whitespace,
)


def detect_patterns(df: pd.DataFrame, detectors=DETECTORS) -> list[DetectedPattern]:
    """Run every detector over every column of *df*."""
    patterns: list[DetectedPattern] = []
    if len(df) == 0:
        return patterns
    for column in df.columns:
        series = df[column]
        for detector in detectors:
            try:
                patterns.extend(detector(series, str(column)))
            except Exception as e:
                logger.warning(
                    "Pattern detector %s failed on column %s: %s",
                    getattr(detector, "__name__", detector), column, e,
                )
    return patterns

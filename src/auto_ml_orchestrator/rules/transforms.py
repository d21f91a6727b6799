"""Value-level transformations behind each rule category.

A transform is fitted to the column it will clean (medians, IQR fences,
canonical spellings) and then answers two questions per value: does the
rule apply here, and what is the cleaned value.  A value the rule cannot
handle raises :class:`RuleApplicationError`.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Any

import numpy as np
import pandas as pd

from auto_ml_orchestrator.errors import RuleApplicationError
from auto_ml_orchestrator.rules.detectors import (
    category_groups,
    has_encoding_issue,
    has_whitespace_issue,
    is_missing,
    is_numeric_series,
    outlier_fences,
    parse_boolean,
    parse_date,
    parse_number,
    similar_pairs,
    value_kind,
)
from auto_ml_orchestrator.rules.models import PreprocessingRule, RuleCategory

logger = logging.getLogger(__name__)


class RuleTransform:
    """Base transform: applies nowhere, changes nothing."""

    def applies(self, value: Any) -> bool:
        return False

    def apply(self, value: Any) -> Any:
        return value


class WhitespaceTransform(RuleTransform):
    def __init__(self, trim: bool = True, collapse: bool = True):
        self.trim = trim
        self.collapse = collapse

    def applies(self, value):
        return has_whitespace_issue(value)

    def apply(self, value):
        if self.collapse:
            value = " ".join(value.split())
        elif self.trim:
            value = value.strip()
        return value


class EncodingTransform(RuleTransform):
    def applies(self, value):
        return has_encoding_issue(value)

    def apply(self, value):
        for codec in ("cp1252", "latin-1"):
            try:
                repaired = value.encode(codec).decode("utf-8")
            except (UnicodeEncodeError, UnicodeDecodeError):
                continue
            if not has_encoding_issue(repaired):
                return repaired
        raise RuleApplicationError(f"Cannot repair encoding of {value!r}")


class DateFormatTransform(RuleTransform):
    def applies(self, value):
        if not isinstance(value, str) or is_missing(value):
            return False
        parsed = parse_date(value)
        return parsed is not None and parsed.strftime("%Y-%m-%d") != value.strip()

    def apply(self, value):
        parsed = parse_date(value)
        if parsed is None:
            raise RuleApplicationError(f"Unrecognized date {value!r}")
        return parsed.strftime("%Y-%m-%d")


def parse_localized_number(value: str) -> float:
    text = value.strip().replace(" ", "")
    if "," in text and "." in text:
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif "," in text:
        if text.count(",") == 1 and text.find(",") > len(text) - 4:
            text = text.replace(",", ".")
        else:
            text = text.replace(",", "")
    try:
        return float(text)
    except ValueError:
        raise RuleApplicationError(f"Not a number: {value!r}") from None


class NumericFormatTransform(RuleTransform):
    def applies(self, value):
        return isinstance(value, str) and not is_missing(value) and any(c in value for c in ", ")

    def apply(self, value):
        return parse_localized_number(value)


class MissingValueTransform(RuleTransform):
    def __init__(self, series: pd.Series, strategy: str = ""):
        observed = series[[not is_missing(v) for v in series]]
        if not strategy:
            strategy = "impute_median" if is_numeric_series(series) else "impute_mode"
        self.strategy = strategy
        self.fill: Any = None
        if len(observed) == 0:
            return
        if strategy == "impute_median" and is_numeric_series(series):
            self.fill = float(np.median(observed.to_numpy(dtype=float)))
        elif strategy == "impute_mean" and is_numeric_series(series):
            self.fill = float(np.mean(observed.to_numpy(dtype=float)))
        else:
            self.fill = Counter(observed).most_common(1)[0][0]

    def applies(self, value):
        return is_missing(value)

    def apply(self, value):
        if self.fill is None:
            raise RuleApplicationError("No observed values to impute from")
        return self.fill


class OutlierTransform(RuleTransform):
    def __init__(self, series: pd.Series):
        values = series.dropna()
        self.bounds: tuple[float, float] | None = None
        if is_numeric_series(series) and len(values):
            self.bounds = outlier_fences(values.to_numpy(dtype=float))

    def applies(self, value):
        if self.bounds is None or is_missing(value):
            return False
        try:
            number = float(value)
        except (TypeError, ValueError):
            return False
        lower, upper = self.bounds
        return number < lower or number > upper

    def apply(self, value):
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise RuleApplicationError(f"Not a number: {value!r}") from None
        lower, upper = self.bounds
        return min(max(number, lower), upper)


class CategoryTransform(RuleTransform):
    """Map spelling variants (case, near-duplicates, boolean words) to one form."""

    def __init__(self, series: pd.Series, kind: str = "case"):
        self.kind = kind
        self.mapping: dict[str, str] = {}
        if kind == "boolean":
            return
        counts, spellings = category_groups(series)
        canonical = {key: forms.most_common(1)[0][0] for key, forms in spellings.items()}
        if kind == "typo":
            for a, b in similar_pairs(sorted(counts)):
                keep, drop = (a, b) if counts[a] >= counts[b] else (b, a)
                canonical[drop] = canonical[keep]
        for key, forms in spellings.items():
            for form in forms:
                if form != canonical[key]:
                    self.mapping[form] = canonical[key]

    def applies(self, value):
        if not isinstance(value, str) or is_missing(value):
            return False
        if self.kind == "boolean":
            return parse_boolean(value) is not None and value.strip() not in ("true", "false")
        return value.strip() in self.mapping

    def apply(self, value):
        if self.kind == "boolean":
            parsed = parse_boolean(value)
            if parsed is None:
                raise RuleApplicationError(f"Not a boolean: {value!r}")
            return "true" if parsed else "false"
        return self.mapping.get(value.strip(), value)


class TypeConversionTransform(RuleTransform):
    """Coerce minority-typed values to the column's majority type."""

    def __init__(self, series: pd.Series):
        kinds = Counter(value_kind(str(v)) for v in series if not is_missing(v))
        self.target = kinds.most_common(1)[0][0] if kinds else "text"

    def applies(self, value):
        return not is_missing(value) and value_kind(str(value)) != self.target

    def apply(self, value):
        text = str(value)
        if self.target == "numeric":
            number = parse_number(text)
            if number is None:
                raise RuleApplicationError(f"Cannot convert {text!r} to numeric")
            return number
        if self.target == "datetime":
            parsed = parse_date(text)
            if parsed is None:
                raise RuleApplicationError(f"Cannot convert {text!r} to datetime")
            return parsed.strftime("%Y-%m-%d")
        if self.target == "boolean":
            parsed = parse_boolean(text)
            if parsed is None:
                raise RuleApplicationError(f"Cannot convert {text!r} to boolean")
            return "true" if parsed else "false"
        return text


def build_transform(rule: PreprocessingRule, series: pd.Series) -> RuleTransform:
    """Fit the transform for *rule* on the column it targets."""
    params = rule.parameters
    category = rule.category
    if category == RuleCategory.WHITESPACE_NORMALIZATION:
        return WhitespaceTransform(params.get("trim", True), params.get("collapse_spaces", True))
    if category == RuleCategory.ENCODING_NORMALIZATION:
        return EncodingTransform()
    if category == RuleCategory.DATE_FORMAT_STANDARDIZATION:
        return DateFormatTransform()
    if category == RuleCategory.NUMERIC_FORMAT_STANDARDIZATION:
        return NumericFormatTransform()
    if category == RuleCategory.MISSING_VALUE_STRATEGY:
        return MissingValueTransform(series, params.get("strategy", ""))
    if category == RuleCategory.OUTLIER_HANDLING:
        return OutlierTransform(series)
    if category == RuleCategory.CATEGORY_MAPPING:
        return CategoryTransform(series, params.get("kind", "case"))
    if category == RuleCategory.TYPE_CONVERSION:
        return TypeConversionTransform(series)
    return RuleTransform()


@dataclass
class ValidationCounts:
    rows: int = 0
    applicable: int = 0
    successes: int = 0
    exceptions: int = 0

    @property
    def attempts(self) -> int:
        return self.successes + self.exceptions


def validate_rule(rule: PreprocessingRule, df: pd.DataFrame) -> ValidationCounts:
    """Try the rule on every applicable value of its column(s) in *df*."""
    counts = ValidationCounts(rows=len(df))
    for column in rule.columns:
        if column not in df.columns:
            continue
        series = df[column]
        transform = build_transform(rule, series)
        for value in series:
            if not transform.applies(value):
                continue
            counts.applicable += 1
            try:
                transform.apply(value)
            except RuleApplicationError:
                counts.exceptions += 1
            else:
                counts.successes += 1
    return counts


def apply_rule(rule: PreprocessingRule, df: pd.DataFrame) -> tuple[pd.DataFrame, ValidationCounts]:
    """Return a copy of *df* with *rule* applied; failing values are left as-is."""
    out = df.copy()
    counts = ValidationCounts(rows=len(df))
    for column in rule.columns:
        if column not in out.columns:
            logger.warning("Rule %s targets missing column %s", rule.id, column)
            continue
        series = out[column]
        transform = build_transform(rule, series)
        cleaned = []
        for value in series:
            if transform.applies(value):
                counts.applicable += 1
                try:
                    value = transform.apply(value)
                except RuleApplicationError as e:
                    counts.exceptions += 1
                    logger.debug("Rule %s left value unchanged: %s", rule.id, e)
                else:
                    counts.successes += 1
            cleaned.append(value)
        out[column] = pd.Series(cleaned, index=series.index)
        if rule.category in (RuleCategory.NUMERIC_FORMAT_STANDARDIZATION, RuleCategory.TYPE_CONVERSION):
            # fully converted columns become numeric
            converted = pd.to_numeric(out[column], errors="coerce")
            if converted.notna().sum() == out[column].notna().sum():
                out[column] = converted
    return out, counts

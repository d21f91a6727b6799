"""Pattern and rule records produced by the rule-discovery engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

HIGH_CONFIDENCE = 0.98
MEDIUM_CONFIDENCE = 0.90


class PatternType(str, Enum):
    MISSING_VALUE = "MissingValue"
    TYPE_INCONSISTENCY = "TypeInconsistency"
    FORMAT_VARIATION = "FormatVariation"
    OUTLIER_ANOMALY = "OutlierAnomaly"
    CATEGORY_VARIATION = "CategoryVariation"
    ENCODING_ISSUE = "EncodingIssue"
    WHITESPACE_ISSUE = "WhitespaceIssue"
    BUSINESS_RULE = "BusinessRule"


class Severity(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


class RuleCategory(str, Enum):
    # auto-resolvable
    DATE_FORMAT_STANDARDIZATION = "DateFormatStandardization"
    ENCODING_NORMALIZATION = "EncodingNormalization"
    WHITESPACE_NORMALIZATION = "WhitespaceNormalization"
    NUMERIC_FORMAT_STANDARDIZATION = "NumericFormatStandardization"
    # need a human decision
    MISSING_VALUE_STRATEGY = "MissingValueStrategy"
    OUTLIER_HANDLING = "OutlierHandling"
    CATEGORY_MAPPING = "CategoryMapping"
    TYPE_CONVERSION = "TypeConversion"
    BUSINESS_LOGIC_DECISION = "BusinessLogicDecision"

    @property
    def requires_hitl(self) -> bool:
        return self not in _AUTO_RESOLVABLE


_AUTO_RESOLVABLE = frozenset({
    RuleCategory.DATE_FORMAT_STANDARDIZATION,
    RuleCategory.ENCODING_NORMALIZATION,
    RuleCategory.WHITESPACE_NORMALIZATION,
    RuleCategory.NUMERIC_FORMAT_STANDARDIZATION,
})

_CATEGORY_FOR_PATTERN = {
    PatternType.MISSING_VALUE: RuleCategory.MISSING_VALUE_STRATEGY,
    PatternType.TYPE_INCONSISTENCY: RuleCategory.TYPE_CONVERSION,
    PatternType.FORMAT_VARIATION: RuleCategory.DATE_FORMAT_STANDARDIZATION,
    PatternType.OUTLIER_ANOMALY: RuleCategory.OUTLIER_HANDLING,
    PatternType.CATEGORY_VARIATION: RuleCategory.CATEGORY_MAPPING,
    PatternType.ENCODING_ISSUE: RuleCategory.ENCODING_NORMALIZATION,
    PatternType.WHITESPACE_ISSUE: RuleCategory.WHITESPACE_NORMALIZATION,
    PatternType.BUSINESS_RULE: RuleCategory.BUSINESS_LOGIC_DECISION,
}

_SEVERITY_PRIORITY = {
    Severity.CRITICAL: 10,
    Severity.HIGH: 7,
    Severity.MEDIUM: 5,
    Severity.LOW: 3,
}

_CATEGORY_PRIORITY_BOOST = {
    RuleCategory.MISSING_VALUE_STRATEGY: 2,
    RuleCategory.TYPE_CONVERSION: 2,
    RuleCategory.OUTLIER_HANDLING: 1,
    RuleCategory.ENCODING_NORMALIZATION: 1,
}


def determine_severity(affected: float) -> Severity:
    """Default severity by affected share of rows."""
    if affected >= 0.50:
        return Severity.CRITICAL
    if affected >= 0.20:
        return Severity.HIGH
    if affected >= 0.05:
        return Severity.MEDIUM
    return Severity.LOW


def category_for(pattern: DetectedPattern) -> RuleCategory:
    if pattern.pattern_type == PatternType.FORMAT_VARIATION:
        if pattern.kind == "number":
            return RuleCategory.NUMERIC_FORMAT_STANDARDIZATION
        if pattern.kind == "boolean":
            return RuleCategory.CATEGORY_MAPPING
    return _CATEGORY_FOR_PATTERN[pattern.pattern_type]


def priority_for(severity: Severity, category: RuleCategory) -> int:
    base = _SEVERITY_PRIORITY.get(severity, 1)
    return max(1, min(10, base + _CATEGORY_PRIORITY_BOOST.get(category, 0)))


@dataclass
class DetectedPattern:
    """One data-quality pattern observed in one column of a sample.

    ``description`` is canonical: it names the pattern, never its counts,
    so the same issue found in two samples yields the same text.
    """

    pattern_type: PatternType
    column: str
    severity: Severity
    occurrences: int
    total_rows: int
    confidence: float
    description: str
    examples: list[str] = field(default_factory=list)
    suggested_fix: str = ""
    kind: str = ""
    """Detector-specific sub-kind, e.g. 'date' or 'number' for format variations."""
    details: list[str] = field(default_factory=list)
    """What this sample showed, e.g. which whitespace problems were seen."""

    @property
    def affected_percentage(self) -> float:
        if self.total_rows == 0:
            return 0.0
        return self.occurrences / self.total_rows


@dataclass
class ConfidenceScore:
    consistency: float = 0.0
    coverage: float = 0.0
    stability: float = 0.0
    exception_count: int = 0
    total_attempts: int = 0

    @property
    def overall(self) -> float:
        value = 0.5 * self.consistency + 0.3 * self.coverage + 0.2 * self.stability
        return max(0.0, min(1.0, value))

    @property
    def level(self) -> str:
        overall = self.overall
        if overall >= HIGH_CONFIDENCE:
            return "High"
        if overall >= MEDIUM_CONFIDENCE:
            return "Medium"
        return "Low"

    @property
    def exception_rate(self) -> float:
        if self.total_attempts == 0:
            return 0.0
        return self.exception_count / self.total_attempts


@dataclass
class PreprocessingRule:
    id: str
    category: RuleCategory
    columns: list[str]
    description: str
    pattern_type: PatternType
    requires_hitl: bool
    priority: int
    parameters: dict[str, Any] = field(default_factory=dict)
    approved: bool = False
    affected_rows: int = 0
    discovered_in_stage: int = 0
    active: bool = True
    examples: list[str] = field(default_factory=list)
    suggested_action: str = ""
    confidence: ConfidenceScore = field(default_factory=ConfidenceScore)
    decision: str = ""
    """Answer recorded for this rule's signature, if any."""
    observed: dict[str, Any] = field(default_factory=dict)
    """Statistics from the latest sample (affected share, severity, detector
    confidence).  Unlike ``parameters`` these are not compared for stability."""

    def signature(self) -> str:
        columns = ",".join(sorted(self.columns))
        return f"{self.category.value}|{columns}|{self.pattern_type.value}|{self.description}"

    def is_equivalent_to(self, other: PreprocessingRule) -> bool:
        return self.signature() == other.signature()

    @property
    def column(self) -> str:
        return self.columns[0] if self.columns else ""

    def to_record(self) -> dict[str, Any]:
        """Flat, JSON-friendly view stored on the preprocessing result."""
        return {
            "id": self.id,
            "signature": self.signature(),
            "category": self.category.value,
            "columns": list(self.columns),
            "description": self.description,
            "pattern_type": self.pattern_type.value,
            "requires_hitl": self.requires_hitl,
            "priority": self.priority,
            "parameters": dict(self.parameters),
            "observed": dict(self.observed),
            "approved": self.approved,
            "active": self.active,
            "affected_rows": self.affected_rows,
            "discovered_in_stage": self.discovered_in_stage,
            "suggested_action": self.suggested_action,
            "decision": self.decision,
            "confidence": {
                "consistency": self.confidence.consistency,
                "coverage": self.confidence.coverage,
                "stability": self.confidence.stability,
                "exception_count": self.confidence.exception_count,
                "total_attempts": self.confidence.total_attempts,
                "overall": round(self.confidence.overall, 4),
                "level": self.confidence.level,
            },
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> PreprocessingRule:
        conf = record.get("confidence") or {}
        return cls(
            id=record["id"],
            category=RuleCategory(record["category"]),
            columns=list(record.get("columns", [])),
            description=record.get("description", ""),
            pattern_type=PatternType(record["pattern_type"]),
            requires_hitl=bool(record.get("requires_hitl", False)),
            priority=int(record.get("priority", 1)),
            parameters=dict(record.get("parameters", {})),
            observed=dict(record.get("observed", {})),
            approved=bool(record.get("approved", False)),
            affected_rows=int(record.get("affected_rows", 0)),
            discovered_in_stage=int(record.get("discovered_in_stage", 0)),
            active=bool(record.get("active", True)),
            suggested_action=record.get("suggested_action", ""),
            decision=record.get("decision", ""),
            confidence=ConfidenceScore(
                consistency=float(conf.get("consistency", 0.0)),
                coverage=float(conf.get("coverage", 0.0)),
                stability=float(conf.get("stability", 0.0)),
                exception_count=int(conf.get("exception_count", 0)),
                total_attempts=int(conf.get("total_attempts", 0)),
            ),
        )

"""Confidence scoring for preprocessing rules.

``overall = 0.5 * consistency + 0.3 * coverage + 0.2 * stability``

* consistency: share of applicable values the rule transformed without error
* coverage: share of sample rows the rule applies to
* stability: how unchanged the rule is since the previous sampling stage
"""

from __future__ import annotations

from auto_ml_orchestrator.rules.models import ConfidenceScore, PreprocessingRule
from auto_ml_orchestrator.rules.transforms import ValidationCounts

EXCEPTION_TOLERANCE = 0.05


def overall_confidence(consistency: float, coverage: float, stability: float) -> float:
    return ConfidenceScore(consistency, coverage, stability).overall


def stability(previous: PreprocessingRule | None, current: PreprocessingRule) -> float:
    """Linear parameter distance between two versions of a rule.

    1.0 for an identical rule, ``1 - changed / total`` over the union of
    parameter keys when only parameters moved, 0.0 for a new rule.
    """
    if previous is None or previous.signature() != current.signature():
        return 0.0
    keys = set(previous.parameters) | set(current.parameters)
    if not keys:
        return 1.0
    changed = sum(
        1 for key in keys
        if previous.parameters.get(key) != current.parameters.get(key)
    )
    return 1.0 - changed / len(keys)


def score(
    counts: ValidationCounts,
    previous: PreprocessingRule | None,
    current: PreprocessingRule,
) -> ConfidenceScore:
    consistency = counts.successes / counts.attempts if counts.attempts else 1.0
    coverage = counts.applicable / counts.rows if counts.rows else 0.0
    return ConfidenceScore(
        consistency=consistency,
        coverage=coverage,
        stability=stability(previous, current),
        exception_count=counts.exceptions,
        total_attempts=counts.attempts,
    )


def demote(rule: PreprocessingRule, tolerance: float = EXCEPTION_TOLERANCE) -> bool:
    """Lower consistency for a rule that fails too often.

    Returns True when the rule dropped below Medium confidence and was
    deactivated.
    """
    conf = rule.confidence
    if conf.exception_rate <= tolerance:
        return False
    conf.consistency = 1.0 - conf.exception_rate
    if conf.level == "Low":
        rule.active = False
        return True
    return False

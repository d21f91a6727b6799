"""Progressive-sampling rule discovery.

Rules are learned from growing samples of a dataset (0.1%, 0.5%, 1.5%,
2.5%, then everything).  Discovery stops early once two consecutive stages
produce the same rules with unchanged parameters; the converged rules are
then validated directly on the full dataset.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

import pandas as pd

from auto_ml_orchestrator.rules import confidence
from auto_ml_orchestrator.rules.detectors import DETECTORS, detect_patterns
from auto_ml_orchestrator.rules.models import (
    DetectedPattern,
    PatternType,
    PreprocessingRule,
    category_for,
    priority_for,
)
from auto_ml_orchestrator.rules.sampling import DEFAULT_STAGES, ProgressiveSampler
from auto_ml_orchestrator.rules.transforms import validate_rule

logger = logging.getLogger(__name__)

DecisionCallback = Callable[[PreprocessingRule], "str | None"]

REJECT_WORDS = frozenset({"reject", "rejected", "skip", "no", "n", "drop"})


@dataclass
class StageReport:
    stage_number: int
    stage_name: str
    sample_size: int
    patterns: list[DetectedPattern] = field(default_factory=list)
    signatures: list[str] = field(default_factory=list)
    new_rules: int = 0
    converged: bool = False


@dataclass
class DiscoveryResult:
    stages: list[StageReport] = field(default_factory=list)
    rules: list[PreprocessingRule] = field(default_factory=list)
    """Active rules, highest priority first."""
    auto_fixable: list[PreprocessingRule] = field(default_factory=list)
    needs_decision: list[PreprocessingRule] = field(default_factory=list)
    pending_decisions: list[PreprocessingRule] = field(default_factory=list)
    decisions: dict[str, str] = field(default_factory=dict)
    exception_report: list[dict] = field(default_factory=list)
    converged: bool = False
    converged_at_stage: int | None = None
    last_stage: int = 0
    total_rows: int = 0

    @property
    def applicable_rules(self) -> list[PreprocessingRule]:
        """Rules a preprocessing executor may apply without further input."""
        return [r for r in self.rules if not r.requires_hitl or r.approved]

    @property
    def confidence(self) -> float:
        if not self.rules:
            return 1.0
        value = sum(r.confidence.overall for r in self.rules) / len(self.rules)
        if self.pending_decisions:
            value = min(value, 0.5)
        return value


def rule_from_pattern(pattern: DetectedPattern, stage_number: int) -> PreprocessingRule:
    category = category_for(pattern)
    parameters: dict = {}
    if pattern.kind:
        parameters["kind"] = pattern.kind
    if pattern.pattern_type == PatternType.MISSING_VALUE:
        # filled in by the engine once the column dtype is known
        parameters["strategy"] = "impute_median"
    elif pattern.pattern_type == PatternType.FORMAT_VARIATION:
        parameters["target_format"] = {"number": "decimal-point", "boolean": "true/false"}.get(
            pattern.kind, "ISO-8601"
        )
    elif pattern.pattern_type == PatternType.ENCODING_ISSUE:
        parameters["target_encoding"] = "UTF-8"
    elif pattern.pattern_type == PatternType.WHITESPACE_ISSUE:
        parameters["trim"] = True
        parameters["collapse_spaces"] = True

    return PreprocessingRule(
        id=f"{category.value}_{pattern.column}_{pattern.pattern_type.value}",
        category=category,
        columns=[pattern.column],
        description=pattern.description,
        pattern_type=pattern.pattern_type,
        requires_hitl=category.requires_hitl,
        priority=priority_for(pattern.severity, category),
        parameters=parameters,
        affected_rows=pattern.occurrences,
        discovered_in_stage=stage_number,
        examples=list(pattern.examples),
        suggested_action=pattern.suggested_fix,
        observed={
            "affected_percentage": round(pattern.affected_percentage, 4),
            "severity": pattern.severity.value,
            "pattern_confidence": pattern.confidence,
            "details": list(pattern.details),
        },
    )


class ProgressiveRuleDiscovery:
    """Learn preprocessing rules from progressively larger samples."""

    def __init__(
        self,
        stages=DEFAULT_STAGES,
        exception_tolerance: float = confidence.EXCEPTION_TOLERANCE,
        seed: int = 42,
        detectors=DETECTORS,
    ):
        self.stages = tuple(stages)
        self.exception_tolerance = exception_tolerance
        self.seed = seed
        self.detectors = detectors

    # ── Public API ─────────────────────────────────────────────────

    def discover(
        self,
        df: pd.DataFrame,
        decisions: dict[str, str] | None = None,
        decide: DecisionCallback | None = None,
    ) -> DiscoveryResult:
        """Run progressive discovery over *df*.

        Parameters
        ----------
        decisions:
            Previously recorded answers keyed by rule signature; reused
            without asking again.
        decide:
            Optional callback asked once per new signature that needs a
            human decision.  Returning ``None`` leaves the rule pending.
        """
        result = DiscoveryResult(decisions=dict(decisions or {}), total_rows=len(df))
        sampler = ProgressiveSampler(df, self.stages, seed=self.seed)
        plan = sampler.plan()
        logger.info(
            "Rule discovery over %d rows, %d columns (%d stages)",
            len(df), len(df.columns), len(plan),
        )

        previous: dict[str, PreprocessingRule] = {}
        for index, (stage, size) in enumerate(plan):
            sample = sampler.sample(size)
            patterns = detect_patterns(sample, self.detectors)
            current = self._synthesize(patterns, previous, sample, stage.number)
            self._apply_decisions(current.values(), result.decisions, decide)

            report = StageReport(
                stage_number=stage.number,
                stage_name=stage.name,
                sample_size=size,
                patterns=patterns,
                signatures=sorted(current),
                new_rules=sum(1 for sig in current if sig not in previous),
            )
            result.stages.append(report)
            result.last_stage = stage.number
            logger.info(
                "Stage %d (%s): %d rows, %d patterns, %d rules (%d new)",
                stage.number, stage.name, size, len(patterns), len(current), report.new_rules,
            )

            is_final = index == len(plan) - 1
            if not is_final and self._has_converged(previous, current):
                report.converged = True
                result.converged = True
                result.converged_at_stage = stage.number
                logger.info("Rules converged at stage %d; validating on all %d rows", stage.number, len(df))
                self._rescore_full(current.values(), df)
                previous = current
                break
            previous = current

        self._finish(result, list(previous.values()))
        return result

    # ── Stage steps ────────────────────────────────────────────────

    def _synthesize(
        self,
        patterns: list[DetectedPattern],
        previous: dict[str, PreprocessingRule],
        sample: pd.DataFrame,
        stage_number: int,
    ) -> dict[str, PreprocessingRule]:
        current: dict[str, PreprocessingRule] = {}
        used_ids: set[str] = set()
        for pattern in patterns:
            rule = rule_from_pattern(pattern, stage_number)
            if rule.pattern_type == PatternType.MISSING_VALUE:
                series = sample[pattern.column]
                numeric = pd.api.types.is_numeric_dtype(series) and not pd.api.types.is_bool_dtype(series)
                rule.parameters["strategy"] = "impute_median" if numeric else "impute_mode"
            sig = rule.signature()
            if sig in current:
                continue
            if rule.id in used_ids:
                rule.id = f"{rule.id}_{rule.parameters.get('kind') or len(used_ids)}"
            used_ids.add(rule.id)

            prior = previous.get(sig)
            if prior is not None:
                rule.discovered_in_stage = prior.discovered_in_stage
                rule.approved = prior.approved
                rule.decision = prior.decision
                rule.id = prior.id

            self._rescore(rule, prior, sample)
            current[sig] = rule
        return current

    def _rescore(self, rule: PreprocessingRule, prior: PreprocessingRule | None, df: pd.DataFrame) -> None:
        counts = validate_rule(rule, df)
        rule.confidence = confidence.score(counts, prior, rule)
        rule.affected_rows = counts.applicable or rule.affected_rows
        rule.active = True
        if confidence.demote(rule, self.exception_tolerance):
            logger.warning(
                "Rule %s deactivated: %.1f%% of %d applications failed",
                rule.id, 100 * rule.confidence.exception_rate, rule.confidence.total_attempts,
            )
        if rule.decision and rule.decision.lower() in REJECT_WORDS:
            rule.active = False

    def _rescore_full(self, rules, df: pd.DataFrame) -> None:
        for rule in rules:
            stability = rule.confidence.stability
            counts = validate_rule(rule, df)
            rule.confidence = confidence.score(counts, None, rule)
            rule.confidence.stability = stability
            rule.affected_rows = counts.applicable
            if len(df):
                rule.observed["affected_percentage"] = round(counts.applicable / len(df), 4)
            rule.active = not (rule.decision and rule.decision.lower() in REJECT_WORDS)
            confidence.demote(rule, self.exception_tolerance)

    @staticmethod
    def _apply_decisions(rules, decisions: dict[str, str], decide: DecisionCallback | None) -> None:
        for rule in rules:
            if not rule.requires_hitl or not rule.active:
                continue
            sig = rule.signature()
            answer = decisions.get(sig)
            if answer is None and decide is not None:
                answer = decide(rule)
                if answer is not None:
                    decisions[sig] = answer
            if answer is None:
                continue
            rule.decision = answer
            if answer.lower() in REJECT_WORDS:
                rule.active = False
                rule.approved = False
            else:
                rule.approved = True

    @staticmethod
    def _has_converged(previous: dict[str, PreprocessingRule], current: dict[str, PreprocessingRule]) -> bool:
        if not current or set(previous) != set(current):
            return False
        return all(rule.confidence.stability == 1.0 for rule in current.values())

    def _finish(self, result: DiscoveryResult, rules: list[PreprocessingRule]) -> None:
        rules.sort(key=lambda r: (-r.priority, -r.affected_rows, r.id))
        for rule in rules:
            if not rule.active and not (rule.decision and rule.decision.lower() in REJECT_WORDS):
                conf = rule.confidence
                result.exception_report.append({
                    "rule_id": rule.id,
                    "signature": rule.signature(),
                    "column": rule.column,
                    "exception_count": conf.exception_count,
                    "total_attempts": conf.total_attempts,
                    "exception_rate": round(conf.exception_rate, 4),
                    "overall": round(conf.overall, 4),
                    "reason": (
                        f"{conf.exception_rate:.1%} of applications failed "
                        f"(tolerance {self.exception_tolerance:.0%})"
                    ),
                })
        result.rules = [r for r in rules if r.active]
        result.auto_fixable = [r for r in result.rules if not r.requires_hitl]
        result.needs_decision = [r for r in result.rules if r.requires_hitl]
        result.pending_decisions = [
            r for r in result.needs_decision
            if not r.approved and r.signature() not in result.decisions
        ]
        logger.info(
            "Discovery finished at stage %d: %d active rules (%d auto-fixable, %d pending decision), %d deactivated",
            result.last_stage, len(result.rules), len(result.auto_fixable),
            len(result.pending_decisions), len(result.exception_report),
        )

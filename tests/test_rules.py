"""Tests for pattern detection, rule transforms, confidence scoring and progressive discovery."""

from __future__ import annotations

import numpy as np
import pandas as pd
import pytest


def _rule(category="WhitespaceNormalization", pattern_type="WhitespaceIssue", column="name", **kwargs):
    from auto_ml_orchestrator.rules.models import PatternType, PreprocessingRule, RuleCategory

    category = RuleCategory(category)
    return PreprocessingRule(
        id=f"{category.value}_{column}",
        category=category,
        columns=[column],
        description=kwargs.pop("description", "test rule"),
        pattern_type=PatternType(pattern_type),
        requires_hitl=category.requires_hitl,
        priority=5,
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class TestRuleModels:

    def test_signature(self):
        rule = _rule(description="Whitespace issues")
        assert rule.signature() == "WhitespaceNormalization|name|WhitespaceIssue|Whitespace issues"
        assert rule.is_equivalent_to(_rule(description="Whitespace issues"))
        assert not rule.is_equivalent_to(_rule(description="other"))

    def test_signature_sorts_columns(self):
        a = _rule()
        b = _rule()
        a.columns = ["b", "a"]
        b.columns = ["a", "b"]
        assert a.signature() == b.signature()

    def test_requires_hitl_by_category(self):
        from auto_ml_orchestrator.rules.models import RuleCategory

        auto = {c for c in RuleCategory if not c.requires_hitl}
        assert auto == {
            RuleCategory.DATE_FORMAT_STANDARDIZATION,
            RuleCategory.ENCODING_NORMALIZATION,
            RuleCategory.WHITESPACE_NORMALIZATION,
            RuleCategory.NUMERIC_FORMAT_STANDARDIZATION,
        }

    @pytest.mark.parametrize("affected,severity", [
        (0.6, "Critical"), (0.5, "Critical"), (0.2, "High"), (0.05, "Medium"), (0.01, "Low"),
    ])
    def test_severity(self, affected, severity):
        from auto_ml_orchestrator.rules.models import determine_severity

        assert determine_severity(affected).value == severity

    def test_priority_is_clamped(self):
        from auto_ml_orchestrator.rules.models import RuleCategory, Severity, priority_for

        assert priority_for(Severity.CRITICAL, RuleCategory.MISSING_VALUE_STRATEGY) == 10
        assert priority_for(Severity.LOW, RuleCategory.WHITESPACE_NORMALIZATION) == 3
        assert priority_for(Severity.HIGH, RuleCategory.OUTLIER_HANDLING) == 8

    def test_record_round_trip(self):
        from auto_ml_orchestrator.rules.models import ConfidenceScore, PreprocessingRule

        rule = _rule(parameters={"trim": True}, approved=True, decision="approve",
                     confidence=ConfidenceScore(1.0, 0.5, 1.0, 0, 4))
        record = rule.to_record()
        assert record["signature"] == rule.signature()
        assert record["confidence"]["level"] == "Low"
        restored = PreprocessingRule.from_record(record)
        assert restored.signature() == rule.signature()
        assert restored.approved and restored.decision == "approve"
        assert restored.confidence.overall == pytest.approx(rule.confidence.overall)


# ---------------------------------------------------------------------------
# Confidence
# ---------------------------------------------------------------------------

class TestConfidence:

    def test_perfect_score(self):
        from auto_ml_orchestrator.rules.models import ConfidenceScore

        score = ConfidenceScore(1.0, 1.0, 1.0)
        assert score.overall == pytest.approx(1.0)
        assert score.level == "High"

    def test_weighted_formula(self):
        from auto_ml_orchestrator.rules.confidence import overall_confidence
        from auto_ml_orchestrator.rules.models import ConfidenceScore

        assert overall_confidence(0.9, 0.5, 0.5) == pytest.approx(0.70)
        assert ConfidenceScore(0.9, 0.5, 0.5).level == "Low"

    def test_levels(self):
        from auto_ml_orchestrator.rules.models import ConfidenceScore

        assert ConfidenceScore(1.0, 1.0, 0.95).level == "High"
        assert ConfidenceScore(1.0, 0.9, 0.7).level == "Medium"

    def test_stability(self):
        from auto_ml_orchestrator.rules.confidence import stability

        current = _rule(parameters={"trim": True, "collapse_spaces": True})
        assert stability(None, current) == 0.0
        assert stability(_rule(parameters={"trim": True, "collapse_spaces": True}), current) == 1.0
        assert stability(_rule(parameters={"trim": True, "collapse_spaces": False}), current) == 0.5
        assert stability(_rule(description="different"), current) == 0.0
        assert stability(_rule(), _rule()) == 1.0

    def test_score_from_counts(self):
        from auto_ml_orchestrator.rules.confidence import score
        from auto_ml_orchestrator.rules.transforms import ValidationCounts

        counts = ValidationCounts(rows=10, applicable=5, successes=4, exceptions=1)
        result = score(counts, None, _rule())
        assert result.consistency == pytest.approx(0.8)
        assert result.coverage == pytest.approx(0.5)
        assert result.total_attempts == 5

    def test_no_attempts_is_fully_consistent(self):
        from auto_ml_orchestrator.rules.confidence import score
        from auto_ml_orchestrator.rules.transforms import ValidationCounts

        result = score(ValidationCounts(rows=0), None, _rule())
        assert result.consistency == 1.0
        assert result.coverage == 0.0

    def test_demote(self):
        from auto_ml_orchestrator.rules.confidence import demote
        from auto_ml_orchestrator.rules.models import ConfidenceScore

        ok = _rule(confidence=ConfidenceScore(1.0, 1.0, 1.0, exception_count=1, total_attempts=100))
        assert not demote(ok)
        assert ok.active

        bad = _rule(confidence=ConfidenceScore(1.0, 1.0, 1.0, exception_count=50, total_attempts=100))
        assert demote(bad)
        assert not bad.active
        assert bad.confidence.consistency == pytest.approx(0.5)


# ---------------------------------------------------------------------------
# Detectors
# ---------------------------------------------------------------------------

class TestDetectors:

    def test_missing_values_and_indicators(self):
        from auto_ml_orchestrator.rules.detectors import detect_missing

        series = pd.Series(["a", "N/A", None, "b", "NULL", "c", "d", "e", "f", "g"], dtype=object)
        [pattern] = detect_missing(series, "col")
        assert pattern.occurrences == 3
        assert pattern.severity.value == "High"
        assert pattern.affected_percentage == pytest.approx(0.3)
        assert "[NULL]" in pattern.examples

    def test_clean_column_has_no_patterns(self):
        from auto_ml_orchestrator.rules.detectors import detect_patterns

        df = pd.DataFrame({"n": list(range(50)), "s": [f"item{i % 3}" for i in range(50)]})
        assert detect_patterns(df) == []

    def test_whitespace(self):
        from auto_ml_orchestrator.rules.detectors import detect_whitespace

        series = pd.Series([" lead", "trail ", "in  side", "fine"])
        [pattern] = detect_whitespace(series, "name")
        assert pattern.occurrences == 3
        assert pattern.description == "Whitespace issues"
        assert pattern.details == ["leading spaces", "trailing spaces", "multiple spaces"]

    def test_whitespace_description_ignores_sample_mix(self):
        """Which whitespace problems a sample shows does not change the description."""
        from auto_ml_orchestrator.rules.detectors import detect_whitespace

        [small] = detect_whitespace(pd.Series(["a ", "b", "c"]), "name")
        [large] = detect_whitespace(pd.Series(["a ", " b", "c\td"]), "name")
        assert small.description == large.description
        assert small.details != large.details

    def test_outliers(self):
        from auto_ml_orchestrator.rules.detectors import detect_outliers

        series = pd.Series(list(range(1, 21)) + [1000])
        [pattern] = detect_outliers(series, "amount")
        assert pattern.occurrences == 1
        assert pattern.examples == ["1000"]

    def test_outliers_need_enough_values(self):
        from auto_ml_orchestrator.rules.detectors import detect_outliers

        assert detect_outliers(pd.Series([1, 2, 3, 1000]), "amount") == []

    def test_type_inconsistency(self):
        from auto_ml_orchestrator.rules.detectors import detect_type_inconsistency

        series = pd.Series(["1", "2", "3", "abc", "def", "4", "5", "6", "7", "x"])
        [pattern] = detect_type_inconsistency(series, "code")
        assert pattern.description == "Mixed types"
        assert pattern.details == ["numeric", "text"]
        assert pattern.occurrences == 3

    def test_date_format_variation(self):
        from auto_ml_orchestrator.rules.detectors import detect_format_variation

        series = pd.Series(["2024-01-05", "01/02/2024", "2024-03-04", "05.06.2024"])
        [pattern] = detect_format_variation(series, "signup")
        assert pattern.kind == "date"
        assert pattern.occurrences == 2

    def test_number_format_variation(self):
        from auto_ml_orchestrator.rules.detectors import detect_format_variation

        series = pd.Series(["1,234.5", "1 234", "2,5", "3.0"])
        [pattern] = detect_format_variation(series, "amount")
        assert pattern.kind == "number"
        assert pattern.description == "Number format variations"

    def test_boolean_format_variation(self):
        from auto_ml_orchestrator.rules.detectors import detect_format_variation

        series = pd.Series(["yes", "no", "Y", "N", "true", "yes"])
        [pattern] = detect_format_variation(series, "active")
        assert pattern.kind == "boolean"

    def test_encoding(self):
        from auto_ml_orchestrator.rules.detectors import detect_encoding_issues

        series = pd.Series(["cafÃ©", "plain", "naÃ¯ve"])
        [pattern] = detect_encoding_issues(series, "word")
        assert pattern.occurrences == 2

    def test_category_case_and_typos(self):
        from auto_ml_orchestrator.rules.detectors import detect_category_variation

        series = pd.Series(["Red", "red", "RED", "banana", "bananna", "blue"])
        patterns = detect_category_variation(series, "color")
        kinds = {p.kind: p for p in patterns}
        assert set(kinds) == {"case", "typo"}
        assert kinds["case"].occurrences == 2
        assert kinds["typo"].examples == ["BANANA ~ BANANNA"]

    def test_failing_detector_is_skipped(self):
        from auto_ml_orchestrator.rules.detectors import detect_missing, detect_patterns

        def broken(series, column):
            raise RuntimeError("boom")

        df = pd.DataFrame({"a": [1.0, None]})
        patterns = detect_patterns(df, detectors=(broken, detect_missing))
        assert [p.description for p in patterns] == ["Missing values"]

    def test_levenshtein(self):
        from auto_ml_orchestrator.rules.detectors import levenshtein_similarity

        assert levenshtein_similarity("", "") == 1.0
        assert levenshtein_similarity("abc", "abc") == 1.0
        assert levenshtein_similarity("kitten", "sitting") == pytest.approx(1 - 3 / 7)


# ---------------------------------------------------------------------------
# Transforms
# ---------------------------------------------------------------------------

class TestTransforms:

    def test_whitespace(self):
        from auto_ml_orchestrator.rules.transforms import apply_rule

        df = pd.DataFrame({"name": [" alice ", "bob", "carol  smith"]})
        out, counts = apply_rule(_rule(parameters={"trim": True, "collapse_spaces": True}), df)
        assert list(out["name"]) == ["alice", "bob", "carol smith"]
        assert counts.applicable == 2 and counts.successes == 2
        assert list(df["name"]) == [" alice ", "bob", "carol  smith"]

    @pytest.mark.parametrize("text,expected", [
        ("1,234", 1234.0), ("1.234,5", 1234.5), ("1,234.5", 1234.5), ("2,5", 2.5), ("1 234", 1234.0),
    ])
    def test_localized_numbers(self, text, expected):
        from auto_ml_orchestrator.rules.transforms import parse_localized_number

        assert parse_localized_number(text) == pytest.approx(expected)

    def test_numeric_format_converts_column(self):
        from auto_ml_orchestrator.rules.transforms import apply_rule

        df = pd.DataFrame({"amount": ["1,234", "2,5", "7"]})
        rule = _rule("NumericFormatStandardization", "FormatVariation", "amount")
        out, _ = apply_rule(rule, df)
        assert pd.api.types.is_numeric_dtype(out["amount"])
        assert list(out["amount"]) == [1234.0, 2.5, 7.0]

    def test_missing_value_median(self):
        from auto_ml_orchestrator.rules.transforms import apply_rule

        df = pd.DataFrame({"age": [1.0, np.nan, 3.0, 10.0]})
        rule = _rule("MissingValueStrategy", "MissingValue", "age", parameters={"strategy": "impute_median"})
        out, counts = apply_rule(rule, df)
        assert out["age"].tolist() == [1.0, 3.0, 3.0, 10.0]
        assert counts.successes == 1

    def test_missing_value_mode_for_text(self):
        from auto_ml_orchestrator.rules.transforms import apply_rule

        df = pd.DataFrame({"city": ["Oslo", "N/A", "Oslo", "Rome"]})
        rule = _rule("MissingValueStrategy", "MissingValue", "city")
        out, _ = apply_rule(rule, df)
        assert out["city"].tolist() == ["Oslo", "Oslo", "Oslo", "Rome"]

    def test_missing_value_without_observed_values_fails(self):
        from auto_ml_orchestrator.rules.transforms import validate_rule

        df = pd.DataFrame({"x": [np.nan, np.nan]})
        counts = validate_rule(_rule("MissingValueStrategy", "MissingValue", "x"), df)
        assert counts.applicable == 2
        assert counts.exceptions == 2

    def test_outliers_are_clipped(self):
        from auto_ml_orchestrator.rules.transforms import apply_rule

        df = pd.DataFrame({"v": list(range(1, 21)) + [1000]})
        out, counts = apply_rule(_rule("OutlierHandling", "OutlierAnomaly", "v"), df)
        assert counts.applicable == 1
        assert out["v"].max() < 1000

    def test_category_case_mapping(self):
        from auto_ml_orchestrator.rules.transforms import apply_rule

        df = pd.DataFrame({"color": ["Red", "Red", "red", "Blue"]})
        rule = _rule("CategoryMapping", "CategoryVariation", "color", parameters={"kind": "case"})
        out, _ = apply_rule(rule, df)
        assert out["color"].tolist() == ["Red", "Red", "Red", "Blue"]

    def test_boolean_mapping(self):
        from auto_ml_orchestrator.rules.transforms import apply_rule

        df = pd.DataFrame({"active": ["Yes", "n", "true", "maybe"]})
        rule = _rule("CategoryMapping", "FormatVariation", "active", parameters={"kind": "boolean"})
        out, counts = apply_rule(rule, df)
        assert out["active"].tolist() == ["true", "false", "true", "maybe"]
        assert counts.applicable == 2

    def test_encoding_repair(self):
        from auto_ml_orchestrator.rules.transforms import EncodingTransform

        transform = EncodingTransform()
        assert transform.applies("cafÃ©")
        assert transform.apply("cafÃ©") == "café"

    def test_date_standardization(self):
        from auto_ml_orchestrator.rules.transforms import DateFormatTransform

        transform = DateFormatTransform()
        assert not transform.applies("2024-01-02")
        assert transform.apply("01/02/2024") == "2024-01-02"

    def test_type_conversion_failures_are_counted(self):
        from auto_ml_orchestrator.rules.transforms import apply_rule

        df = pd.DataFrame({"code": ["1", "2", "3", "4", "abc"]})
        out, counts = apply_rule(_rule("TypeConversion", "TypeInconsistency", "code"), df)
        assert counts.exceptions == 1
        assert out["code"].tolist()[-1] == "abc"

    def test_missing_column_is_ignored(self):
        from auto_ml_orchestrator.rules.transforms import apply_rule

        df = pd.DataFrame({"other": [1]})
        out, counts = apply_rule(_rule(column="gone"), df)
        assert counts.applicable == 0
        assert list(out.columns) == ["other"]


# ---------------------------------------------------------------------------
# Sampling
# ---------------------------------------------------------------------------

class TestSampling:

    def test_plan_sizes(self):
        from auto_ml_orchestrator.rules.sampling import ProgressiveSampler

        sampler = ProgressiveSampler(pd.DataFrame({"a": range(2000)}))
        assert [size for _, size in sampler.plan()] == [2, 10, 30, 50, 2000]

    def test_tiny_dataset_skips_repeated_sizes(self):
        from auto_ml_orchestrator.rules.sampling import ProgressiveSampler

        plan = ProgressiveSampler(pd.DataFrame({"a": range(5)})).plan()
        assert [(stage.number, size) for stage, size in plan] == [(1, 1), (5, 5)]

    def test_empty_dataset(self):
        from auto_ml_orchestrator.rules.sampling import ProgressiveSampler

        assert ProgressiveSampler(pd.DataFrame({"a": []})).plan() == []

    def test_samples_are_nested(self):
        from auto_ml_orchestrator.rules.sampling import ProgressiveSampler

        sampler = ProgressiveSampler(pd.DataFrame({"a": range(500)}), seed=7)
        small, large = sampler.sample(10), sampler.sample(100)
        assert set(small.index) <= set(large.index)
        assert list(large.index) == sorted(large.index)

    def test_seeded(self):
        from auto_ml_orchestrator.rules.sampling import ProgressiveSampler

        df = pd.DataFrame({"a": range(500)})
        a = ProgressiveSampler(df, seed=1).sample(20)
        b = ProgressiveSampler(df, seed=1).sample(20)
        assert list(a.index) == list(b.index)


# ---------------------------------------------------------------------------
# Progressive discovery
# ---------------------------------------------------------------------------

class TestProgressiveDiscovery:

    def test_clean_data_runs_all_stages(self):
        """No patterns: no rules, no early convergence, full confidence."""
        from auto_ml_orchestrator.rules.engine import ProgressiveRuleDiscovery

        result = ProgressiveRuleDiscovery().discover(pd.DataFrame({"n": range(1000)}))
        assert result.rules == []
        assert not result.converged
        assert result.last_stage == 5
        assert result.confidence == 1.0

    def test_converges_on_stable_rules(self):
        """Identical rules in two consecutive stages stop discovery and rescore on all rows."""
        from auto_ml_orchestrator.rules.engine import ProgressiveRuleDiscovery

        df = pd.DataFrame({"name": ["alpha "] * 2000})
        result = ProgressiveRuleDiscovery().discover(df)

        assert result.converged
        assert result.converged_at_stage == 2
        assert [s.stage_number for s in result.stages] == [1, 2]
        [rule] = result.rules
        assert rule.category.value == "WhitespaceNormalization"
        assert rule.affected_rows == 2000
        assert rule.discovered_in_stage == 1
        assert rule.confidence.level == "High"
        assert result.auto_fixable == [rule]
        assert result.pending_decisions == []

    def test_converges_on_partially_affected_column(self):
        """Sample statistics drift between stages without breaking convergence."""
        from auto_ml_orchestrator.rules.engine import ProgressiveRuleDiscovery
        from auto_ml_orchestrator.rules.sampling import SamplingStage

        stages = (
            SamplingStage(1, "Small", 0.05),
            SamplingStage(2, "Medium", 0.1),
            SamplingStage(3, "Large", 0.2),
            SamplingStage(4, "Full", 1.0),
        )
        df = pd.DataFrame({"name": ["alpha " if i % 10 == 0 else "beta" for i in range(20000)]})
        result = ProgressiveRuleDiscovery(stages=stages).discover(df)

        assert result.converged
        assert result.converged_at_stage == 2
        [rule] = result.rules
        assert rule.signature() == "WhitespaceNormalization|name|WhitespaceIssue|Whitespace issues"
        assert rule.parameters == {"trim": True, "collapse_spaces": True}
        assert rule.confidence.stability == 1.0
        assert rule.affected_rows == 2000
        assert rule.observed["affected_percentage"] == pytest.approx(0.1)

    def test_small_dataset_missing_values(self):
        """Five rows, four missing: one pending missing-value rule at 80%."""
        from auto_ml_orchestrator.rules.engine import ProgressiveRuleDiscovery

        df = pd.DataFrame({"v": [np.nan, np.nan, np.nan, np.nan, 1.0]})
        result = ProgressiveRuleDiscovery().discover(df)

        [rule] = result.rules
        assert rule.category.value == "MissingValueStrategy"
        assert rule.observed["affected_percentage"] == pytest.approx(0.8)
        assert rule.parameters["strategy"] == "impute_median"
        assert rule.requires_hitl
        assert result.pending_decisions == [rule]
        assert result.confidence <= 0.5
        assert result.applicable_rules == []

    def test_recorded_decisions_are_reused(self):
        from auto_ml_orchestrator.rules.engine import ProgressiveRuleDiscovery

        df = pd.DataFrame({"v": [np.nan, 2.0, 3.0, 4.0, 5.0] * 4})
        engine = ProgressiveRuleDiscovery()
        first = engine.discover(df)
        [rule] = first.pending_decisions

        approved = engine.discover(df, decisions={rule.signature(): "approve"})
        assert approved.pending_decisions == []
        assert approved.rules[0].approved
        assert approved.applicable_rules == approved.rules

        rejected = engine.discover(df, decisions={rule.signature(): "reject"})
        assert rejected.rules == []
        assert rejected.exception_report == []

    def test_decision_callback_asked_once_per_signature(self):
        from auto_ml_orchestrator.rules.engine import ProgressiveRuleDiscovery

        df = pd.DataFrame({"v": [np.nan, 2.0, 3.0, 4.0, 5.0] * 400})
        asked = []

        def decide(rule):
            asked.append(rule.signature())
            return "approve"

        result = ProgressiveRuleDiscovery().discover(df, decide=decide)
        assert len(asked) == len(set(asked)) == 1
        assert result.decisions == {asked[0]: "approve"}
        assert result.rules[0].decision == "approve"

    def test_deferred_callback_leaves_rule_pending(self):
        from auto_ml_orchestrator.rules.engine import ProgressiveRuleDiscovery

        df = pd.DataFrame({"v": [np.nan, 2.0, 3.0, 4.0, 5.0] * 4})
        result = ProgressiveRuleDiscovery().discover(df, decide=lambda rule: None)
        assert len(result.pending_decisions) == 1

    def test_failing_rule_is_deactivated(self):
        """A rule failing beyond the tolerance drops out and is reported."""
        from auto_ml_orchestrator.rules.engine import ProgressiveRuleDiscovery

        df = pd.DataFrame({"code": ["1", "2", "3", "abc", "def", "4", "5", "6", "7", "x"]})
        result = ProgressiveRuleDiscovery().discover(df)

        assert all(r.column != "code" or r.category.value != "TypeConversion" for r in result.rules)
        [report] = result.exception_report
        assert report["column"] == "code"
        assert report["exception_rate"] == pytest.approx(1.0)

    def test_rules_sorted_by_priority(self):
        from auto_ml_orchestrator.rules.engine import ProgressiveRuleDiscovery
        from auto_ml_orchestrator.rules.sampling import SamplingStage

        df = pd.DataFrame({
            "name": [" x", "y"] * 50,
            "v": [np.nan] * 60 + [1.0] * 40,
        })
        result = ProgressiveRuleDiscovery(stages=(SamplingStage(1, "Full", 1.0),)).discover(df)
        priorities = [r.priority for r in result.rules]
        assert priorities == sorted(priorities, reverse=True)
        assert result.rules[0].column == "v"

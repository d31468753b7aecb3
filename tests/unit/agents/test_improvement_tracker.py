"""
Tests for the ImprovementTracker.

Covers:
  - History recording and copies
  - Trend direction and test-suite health bands
  - Loop health metrics aggregated from loop results
  - Report recommendations
"""

from __future__ import annotations

import pytest

from sciloop.agents.improvement_tracker import ImprovementTracker
from sciloop.agents.types import (
    BenchmarkEvolution,
    HypothesisTestRecommendation,
    HypothesisTestResult,
    HypothesisTestVerdict,
    LoopResult,
    ScientificLoopState,
    TestCase,
    TestCaseCategory,
    TestSuiteHealth,
    TrendDirection,
    VerificationChecks,
    VerificationResult,
    VerificationVerdict,
)
from sciloop.config import ImprovementTrackerConfig


def _make_verification(accepted: bool, regressions: bool = False) -> VerificationResult:
    checks = VerificationChecks(
        original_test_passes=accepted or regressions,
        no_regressions=not regressions,
        types_valid=accepted,
    )
    return VerificationResult(
        fix_id="FIX-001",
        verification=checks,
        reward=1 if checks.all_passed else 0,
        verdict=VerificationVerdict.FIX_ACCEPTED if checks.all_passed else VerificationVerdict.FIX_REJECTED,
    )


def _make_supported() -> HypothesisTestResult:
    return HypothesisTestResult(
        hypothesis_id="HYP-PROB-001-A",
        verdict=HypothesisTestVerdict.SUPPORTED,
        confidence=0.7,
        recommendation=HypothesisTestRecommendation.PROCEED_TO_FIX,
    )


def _make_evolution(tests: int) -> BenchmarkEvolution:
    return BenchmarkEvolution(
        problem_id="PROB-001",
        fix_id="FIX-001",
        new_tests=[
            TestCase(name=f"t{i}", file="tests/test_x.py", code="def test_x(): pass",
                     category=TestCaseCategory.PREVENTION)
            for i in range(tests)
        ],
    )


def _make_loop_result(
    verifications: list[VerificationResult],
    supported: int = 0,
    generated_tests: int = 0,
) -> LoopResult:
    state = ScientificLoopState(
        iteration=1,
        fixes_attempted=verifications,
        hypotheses_tested=[_make_supported() for _ in range(supported)],
        benchmark_evolutions=[_make_evolution(generated_tests)] if generated_tests else [],
    )
    return LoopResult(state=state)


class TestHistory:
    def test_record_and_read_back(self):
        tracker = ImprovementTracker()
        row = tracker.record_iteration(1, problems_fixed=2, test_suite_pass_rate=0.95)
        assert row.iteration == 1
        assert tracker.get_history() == [row]

    def test_history_is_a_copy(self):
        tracker = ImprovementTracker()
        tracker.record_iteration(1, 0, 0.9)
        history = tracker.get_history()
        history.clear()
        assert len(tracker.get_history()) == 1

    def test_reset(self):
        tracker = ImprovementTracker()
        tracker.record_iteration(1, 0, 0.9)
        tracker.reset()
        assert tracker.get_history() == []

    def test_pass_rate_bounded(self):
        with pytest.raises(ValueError):
            ImprovementTracker().record_iteration(1, 0, 1.5)


class TestTrend:
    def test_empty_history_is_stable_and_healthy(self):
        trend = ImprovementTracker().compute_trend()
        assert trend.trend_direction == TrendDirection.STABLE
        assert trend.test_suite_health == TestSuiteHealth.HEALTHY
        assert trend.data_points == []

    def test_single_point_is_stable(self):
        tracker = ImprovementTracker()
        tracker.record_iteration(1, 1, 0.95, agent_success_rate_lift=0.5)
        assert tracker.compute_trend().trend_direction == TrendDirection.STABLE

    def test_rising_lift_is_improving(self):
        tracker = ImprovementTracker()
        for i, lift in enumerate([0.0, 0.05, 0.1], start=1):
            tracker.record_iteration(i, 1, 0.95, agent_success_rate_lift=lift)
        trend = tracker.compute_trend()
        assert trend.trend_direction == TrendDirection.IMPROVING
        assert trend.average_improvement == pytest.approx(0.05)
        assert trend.total_problems_fixed == 3

    def test_falling_lift_is_declining(self):
        tracker = ImprovementTracker()
        for i, lift in enumerate([0.1, 0.05, 0.0], start=1):
            tracker.record_iteration(i, 0, 0.95, agent_success_rate_lift=lift)
        assert tracker.compute_trend().trend_direction == TrendDirection.DECLINING

    def test_flat_lift_is_stable(self):
        tracker = ImprovementTracker()
        for i, lift in enumerate([0.1, 0.1005, 0.1], start=1):
            tracker.record_iteration(i, 0, 0.95, agent_success_rate_lift=lift)
        assert tracker.compute_trend().trend_direction == TrendDirection.STABLE

    @pytest.mark.parametrize(
        ("pass_rate", "health"),
        [
            (0.95, TestSuiteHealth.HEALTHY),
            (0.90, TestSuiteHealth.HEALTHY),
            (0.80, TestSuiteHealth.DEGRADING),
            (0.70, TestSuiteHealth.DEGRADING),
            (0.50, TestSuiteHealth.CRITICAL),
        ],
    )
    def test_suite_health_bands(self, pass_rate, health):
        tracker = ImprovementTracker()
        tracker.record_iteration(1, 0, pass_rate)
        assert tracker.compute_trend().test_suite_health == health


class TestHealth:
    def test_empty_results_are_zero(self):
        health = ImprovementTracker().compute_health([])
        assert health.fix_success_rate == 0.0
        assert health.hypothesis_accuracy == 0.0
        assert health.regression_rate == 0.0
        assert health.evolution_coverage == 0.0

    def test_rates(self):
        result = _make_loop_result(
            [_make_verification(True), _make_verification(False, regressions=True),
             _make_verification(False), _make_verification(True)],
            supported=4,
            generated_tests=5,
        )
        health = ImprovementTracker().compute_health([result])
        assert health.fix_success_rate == pytest.approx(0.5)
        assert health.hypothesis_accuracy == pytest.approx(0.5)
        assert health.regression_rate == pytest.approx(0.25)
        assert health.evolution_coverage == pytest.approx(0.2)

    def test_evolution_coverage_capped(self):
        result = _make_loop_result([_make_verification(True)], supported=1, generated_tests=60)
        assert ImprovementTracker().compute_health([result]).evolution_coverage == 1.0

    def test_aggregates_across_results(self):
        results = [
            _make_loop_result([_make_verification(True)], supported=1),
            _make_loop_result([_make_verification(False)], supported=1),
        ]
        assert ImprovementTracker().compute_health(results).fix_success_rate == pytest.approx(0.5)


class TestReport:
    def test_healthy_loop_has_no_recommendations(self):
        tracker = ImprovementTracker()
        tracker.record_iteration(1, 1, 0.95, agent_success_rate_lift=0.0)
        tracker.record_iteration(2, 1, 0.96, agent_success_rate_lift=0.1)
        result = _make_loop_result([_make_verification(True)], supported=1, generated_tests=6)
        report = tracker.generate_report([result])
        assert report.current_iteration == 2
        assert report.tracking.iteration == 2
        assert report.trend.trend_direction == TrendDirection.IMPROVING
        assert report.recommendations == []

    def test_empty_report(self):
        report = ImprovementTracker().generate_report([])
        assert report.current_iteration == 0
        assert report.recommendations == []

    def test_unhealthy_loop_gets_recommendations(self):
        tracker = ImprovementTracker()
        tracker.record_iteration(1, 0, 0.6, agent_success_rate_lift=0.2)
        tracker.record_iteration(2, 0, 0.5, agent_success_rate_lift=0.0)
        result = _make_loop_result(
            [_make_verification(False, regressions=True), _make_verification(False)],
            supported=2,
        )
        recommendations = tracker.generate_report([result]).recommendations
        text = " ".join(recommendations)
        assert "Fix success rate (0%) is below target (70%)" in text
        assert "Hypothesis accuracy (0%) is below target (50%)" in text
        assert "Regression rate (50%) exceeds target (5%)" in text
        assert "Test suite health is critical" in text
        assert "Improvement trend is declining" in text
        assert len(recommendations) == 5

    def test_no_attempts_skip_rate_recommendations(self):
        tracker = ImprovementTracker()
        tracker.record_iteration(1, 0, 0.95)
        report = tracker.generate_report([_make_loop_result([])])
        assert report.recommendations == []

    def test_thin_evolution_coverage_recommended(self):
        tracker = ImprovementTracker()
        tracker.record_iteration(1, 1, 0.95)
        result = _make_loop_result([_make_verification(True)], supported=1, generated_tests=2)
        recommendations = tracker.generate_report([result]).recommendations
        assert recommendations == [
            "Evolution coverage (8%) is below target (20%). "
            "Generate more prevention and variant tests for fixed problems."
        ]

    def test_coverage_target_is_configurable(self):
        tracker = ImprovementTracker(ImprovementTrackerConfig(evolution_coverage_target=0.05))
        tracker.record_iteration(1, 1, 0.95)
        result = _make_loop_result([_make_verification(True)], supported=1, generated_tests=2)
        assert tracker.generate_report([result]).recommendations == []

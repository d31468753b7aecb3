"""
SciLoop — Improvement Tracker

Scores the loop's own health over time. Keeps an append-only history of
per-iteration rows and derives:

  trend   — direction of the agent success-rate lift, plus test-suite
            health from the most recent pass rate
  health  — fix success rate, hypothesis accuracy, regression rate and
            evolution coverage aggregated across loop results
  report  — the two combined, with a recommendation for every metric
            that misses its target
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from sciloop.agents.types import (
    HypothesisTestVerdict,
    ImprovementReport,
    ImprovementTracking,
    ImprovementTrend,
    LoopHealthMetrics,
    LoopResult,
    TestSuiteHealth,
    TrendDirection,
)
from sciloop.config import ImprovementTrackerConfig

logger = structlog.get_logger()

_TREND_EPSILON = 0.001


@dataclass
class _LoopTotals:
    fixes_attempted: int = 0
    fixes_accepted: int = 0
    fixes_with_regressions: int = 0
    hypotheses_supported: int = 0
    tests_generated: int = 0


def _pct(value: float) -> str:
    return f"{value * 100:.0f}%"


class ImprovementTracker:
    def __init__(self, config: ImprovementTrackerConfig | None = None) -> None:
        self._config = config or ImprovementTrackerConfig()
        self._history: list[ImprovementTracking] = []
        self._logger = logger.bind(system="sciloop.improvement_tracker")

    # ─── History ───────────────────────────────────────────────────────

    def record_iteration(
        self,
        iteration: int,
        problems_fixed: int,
        test_suite_pass_rate: float,
        agent_success_rate_lift: float = 0.0,
        agent_time_reduction: float = 0.0,
    ) -> ImprovementTracking:
        row = ImprovementTracking(
            iteration=iteration,
            problems_fixed=problems_fixed,
            test_suite_pass_rate=test_suite_pass_rate,
            agent_success_rate_lift=agent_success_rate_lift,
            agent_time_reduction=agent_time_reduction,
        )
        self._history.append(row)
        self._logger.debug(
            "iteration_recorded",
            iteration=iteration,
            pass_rate=test_suite_pass_rate,
            lift=agent_success_rate_lift,
        )
        return row

    def get_history(self) -> list[ImprovementTracking]:
        return [row.model_copy() for row in self._history]

    def reset(self) -> None:
        self._history = []

    # ─── Trend ─────────────────────────────────────────────────────────

    def compute_trend(self) -> ImprovementTrend:
        if not self._history:
            return ImprovementTrend()

        points = self.get_history()
        return ImprovementTrend(
            data_points=points,
            trend_direction=self._trend_direction(points),
            average_improvement=sum(p.agent_success_rate_lift for p in points) / len(points),
            total_problems_fixed=sum(p.problems_fixed for p in points),
            test_suite_health=self._suite_health(points[-1].test_suite_pass_rate),
        )

    @staticmethod
    def _trend_direction(points: list[ImprovementTracking]) -> TrendDirection:
        """Net sign of successive lift deltas across the whole history."""
        if len(points) < 2:
            return TrendDirection.STABLE
        net = sum(
            b.agent_success_rate_lift - a.agent_success_rate_lift
            for a, b in zip(points, points[1:])
        )
        if net > _TREND_EPSILON:
            return TrendDirection.IMPROVING
        if net < -_TREND_EPSILON:
            return TrendDirection.DECLINING
        return TrendDirection.STABLE

    def _suite_health(self, pass_rate: float) -> TestSuiteHealth:
        if pass_rate >= self._config.healthy_pass_rate_threshold:
            return TestSuiteHealth.HEALTHY
        if pass_rate >= self._config.critical_pass_rate_threshold:
            return TestSuiteHealth.DEGRADING
        return TestSuiteHealth.CRITICAL

    # ─── Health ────────────────────────────────────────────────────────

    @staticmethod
    def _totals(loop_results: list[LoopResult]) -> _LoopTotals:
        totals = _LoopTotals()
        for result in loop_results:
            state = result.state
            for v in state.fixes_attempted:
                totals.fixes_attempted += 1
                if v.reward == 1:
                    totals.fixes_accepted += 1
                if not v.verification.no_regressions:
                    totals.fixes_with_regressions += 1
            totals.hypotheses_supported += sum(
                1 for h in state.hypotheses_tested if h.verdict == HypothesisTestVerdict.SUPPORTED
            )
            totals.tests_generated += sum(e.total_tests for e in state.benchmark_evolutions)
        return totals

    def compute_health(self, loop_results: list[LoopResult]) -> LoopHealthMetrics:
        t = self._totals(loop_results)
        return LoopHealthMetrics(
            fix_success_rate=t.fixes_accepted / t.fixes_attempted if t.fixes_attempted else 0.0,
            hypothesis_accuracy=(
                t.fixes_accepted / t.hypotheses_supported if t.hypotheses_supported else 0.0
            ),
            regression_rate=(
                t.fixes_with_regressions / t.fixes_attempted if t.fixes_attempted else 0.0
            ),
            evolution_coverage=min(
                t.tests_generated / self._config.evolution_baseline_tests, 1.0
            ),
        )

    # ─── Report ────────────────────────────────────────────────────────

    def generate_report(self, loop_results: list[LoopResult]) -> ImprovementReport:
        trend = self.compute_trend()
        health = self.compute_health(loop_results)
        tracking = self._history[-1].model_copy() if self._history else ImprovementTracking()
        recommendations = self._recommendations(trend, health, self._totals(loop_results))

        self._logger.info(
            "improvement_report_generated",
            iteration=tracking.iteration,
            trend=str(trend.trend_direction),
            suite_health=str(trend.test_suite_health),
            recommendations=len(recommendations),
        )
        return ImprovementReport(
            current_iteration=tracking.iteration,
            tracking=tracking,
            trend=trend,
            health=health,
            recommendations=recommendations,
        )

    def _recommendations(
        self,
        trend: ImprovementTrend,
        health: LoopHealthMetrics,
        totals: _LoopTotals,
    ) -> list[str]:
        cfg = self._config
        out: list[str] = []

        if totals.fixes_attempted and health.fix_success_rate < cfg.fix_success_rate_target:
            out.append(
                f"Fix success rate ({_pct(health.fix_success_rate)}) is below target "
                f"({_pct(cfg.fix_success_rate_target)}). "
                "Consider improving hypothesis quality or fix generation strategies."
            )

        if totals.hypotheses_supported and health.hypothesis_accuracy < cfg.hypothesis_accuracy_target:
            out.append(
                f"Hypothesis accuracy ({_pct(health.hypothesis_accuracy)}) is below target "
                f"({_pct(cfg.hypothesis_accuracy_target)}). "
                "Review hypothesis generation logic and evidence gathering."
            )

        if health.regression_rate > cfg.regression_rate_target:
            out.append(
                f"Regression rate ({_pct(health.regression_rate)}) exceeds target "
                f"({_pct(cfg.regression_rate_target)}). "
                "Strengthen regression testing before accepting fixes."
            )

        if totals.fixes_accepted and health.evolution_coverage < cfg.evolution_coverage_target:
            out.append(
                f"Evolution coverage ({_pct(health.evolution_coverage)}) is below target "
                f"({_pct(cfg.evolution_coverage_target)}). "
                "Generate more prevention and variant tests for fixed problems."
            )

        if trend.test_suite_health != TestSuiteHealth.HEALTHY:
            out.append(
                f"Test suite health is {trend.test_suite_health}. "
                "Prioritize improving test pass rate before continuing improvement work."
            )

        if trend.trend_direction == TrendDirection.DECLINING:
            out.append(
                "Improvement trend is declining. Review recent changes and consider "
                "reverting unsuccessful experiments."
            )

        return out

"""
Tests for the ProblemDetector.

Covers:
  - Test-run classification (precomputed results, runner execution,
    runner errors, deadlines, evidence trimming)
  - Regression and adversarial comparisons
  - Performance gaps and severity defaults
  - Consistency violations
  - Aggregated report with zero-filled summary
"""

from __future__ import annotations

import asyncio

import pytest

from sciloop.agents.problem_detector import ProblemDetector
from sciloop.agents.types import (
    AdversarialProbe,
    CommandResult,
    ConsistencyCheck,
    PerformanceExperiment,
    ProblemDetectionInput,
    ProblemSeverity,
    ProblemType,
    RegressionCheck,
    TestFailureCheck,
)
from sciloop.config import ProblemDetectorConfig
from sciloop.errors import CommandExecutionError


class _FakeRunner:
    def __init__(self, result: CommandResult | None = None, error: Exception | None = None,
                 delay: float = 0.0) -> None:
        self.result = result
        self.error = error
        self.delay = delay
        self.calls: list[tuple[str, str | None, int | None]] = []

    async def execute(self, command, *, cwd=None, timeout_ms=None):
        self.calls.append((command, cwd, timeout_ms))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result or CommandResult(command=command, exit_code=0)


def _make_result(exit_code: int = 1, stdout: str = "", stderr: str = "") -> CommandResult:
    return CommandResult(command="pytest tests/test_math.py", exit_code=exit_code,
                         stdout=stdout, stderr=stderr)


class TestTestFailures:
    @pytest.mark.asyncio
    async def test_precomputed_failure_becomes_problem(self):
        detector = ProblemDetector()
        check = TestFailureCheck(
            command="pytest tests/test_math.py",
            result=_make_result(stderr="AssertionError: expected 3, got 4"),
        )
        problems = await detector.test_failures([check])
        assert len(problems) == 1
        problem = problems[0]
        assert problem.id == "PROB-001"
        assert problem.type == ProblemType.TEST_FAILURE
        assert problem.severity == ProblemSeverity.HIGH
        assert problem.reproducible is True
        assert problem.minimal_reproduction == "pytest tests/test_math.py"
        assert "AssertionError: expected 3, got 4" in problem.evidence
        assert problem.evidence[-1] == "exit code: 1"

    @pytest.mark.asyncio
    async def test_passing_result_is_not_a_problem(self):
        detector = ProblemDetector()
        check = TestFailureCheck(command="pytest", result=_make_result(exit_code=0))
        assert await detector.test_failures([check]) == []

    @pytest.mark.asyncio
    async def test_no_runner_skips_unexecuted_checks(self):
        detector = ProblemDetector()
        assert await detector.test_failures([TestFailureCheck(command="pytest")]) == []

    @pytest.mark.asyncio
    async def test_runner_executes_check(self):
        runner = _FakeRunner(result=_make_result(exit_code=2, stdout="1 failed"))
        detector = ProblemDetector(command_runner=runner)
        check = TestFailureCheck(command="pytest -x", cwd="/repo", timeout_ms=5_000)
        problems = await detector.test_failures([check])
        assert runner.calls == [("pytest -x", "/repo", 5_000)]
        assert problems[0].evidence == ["1 failed", "exit code: 2"]

    @pytest.mark.asyncio
    async def test_runner_error_becomes_unreproducible_problem(self):
        runner = _FakeRunner(error=CommandExecutionError("pytest", "no such shell"))
        detector = ProblemDetector(command_runner=runner)
        problems = await detector.test_failures([TestFailureCheck(command="pytest")])
        assert len(problems) == 1
        assert problems[0].reproducible is False
        assert problems[0].evidence[0].startswith("Command execution error:")
        assert "no such shell" in problems[0].evidence[0]

    @pytest.mark.asyncio
    async def test_check_deadline_becomes_problem(self):
        runner = _FakeRunner(delay=3.0)
        detector = ProblemDetector(command_runner=runner)
        check = TestFailureCheck(command="pytest", timeout_ms=20)
        problems = await detector.test_failures([check])
        assert len(problems) == 1
        assert "timed out after 20ms" in problems[0].evidence[0]

    @pytest.mark.asyncio
    async def test_timed_out_result_noted_in_evidence(self):
        result = CommandResult(command="pytest", exit_code=124, timed_out=True)
        problems = await ProblemDetector().test_failures(
            [TestFailureCheck(command="pytest", result=result)]
        )
        assert "command timed out" in problems[0].evidence

    @pytest.mark.asyncio
    async def test_evidence_lines_are_bounded(self):
        stderr = "\n".join(f"line {i} " + "x" * 400 for i in range(20))
        detector = ProblemDetector(ProblemDetectorConfig(max_evidence_lines=5, max_evidence_chars=300))
        problems = await detector.test_failures(
            [TestFailureCheck(command="pytest", result=_make_result(stderr=stderr))]
        )
        output_lines = problems[0].evidence[:-1]
        assert len(output_lines) == 5
        assert all(len(line) <= 300 for line in output_lines)

    @pytest.mark.asyncio
    async def test_explicit_severity_respected(self):
        check = TestFailureCheck(
            command="pytest", severity=ProblemSeverity.CRITICAL, result=_make_result()
        )
        problems = await ProblemDetector().test_failures([check])
        assert problems[0].severity == ProblemSeverity.CRITICAL


class TestAnswerComparisons:
    def test_regression_same_answer_is_silent(self):
        checks = [RegressionCheck(query="capital of France", expected="Paris", actual="Paris")]
        assert ProblemDetector().regression_check(checks) == []

    def test_regression_changed_answer_detected(self):
        checks = [RegressionCheck(query="capital of France", expected="Paris", actual="Lyon")]
        problems = ProblemDetector().regression_check(checks)
        assert len(problems) == 1
        assert problems[0].type == ProblemType.REGRESSION
        assert problems[0].evidence[:2] == ["Expected: Paris", "Actual: Lyon"]
        assert "capital of France" in problems[0].description

    def test_adversarial_mismatch_is_hallucination(self):
        probes = [AdversarialProbe(prompt="Who wrote Foo?", expected="unknown", actual="Bob")]
        problems = ProblemDetector().adversarial_probe(probes)
        assert problems[0].type == ProblemType.HALLUCINATION
        assert problems[0].severity == ProblemSeverity.HIGH

    def test_adversarial_match_is_silent(self):
        probes = [AdversarialProbe(prompt="Who wrote Foo?", expected="unknown", actual="unknown")]
        assert ProblemDetector().adversarial_probe(probes) == []


class TestPerformanceGap:
    def test_treatment_below_required_is_a_gap(self):
        exp = PerformanceExperiment(
            metric="accuracy", control_score=100, treatment_score=90, min_improvement=20
        )
        problems = ProblemDetector().performance_gap([exp])
        assert len(problems) == 1
        assert problems[0].type == ProblemType.PERFORMANCE_GAP
        assert problems[0].severity == ProblemSeverity.HIGH
        assert "Observed improvement: -10" in problems[0].evidence

    def test_sufficient_improvement_is_silent(self):
        exp = PerformanceExperiment(
            metric="accuracy", control_score=100, treatment_score=110, min_improvement=5
        )
        assert ProblemDetector().performance_gap([exp]) == []

    def test_exactly_required_is_silent(self):
        exp = PerformanceExperiment(
            metric="accuracy", control_score=100, treatment_score=105, min_improvement=5
        )
        assert ProblemDetector().performance_gap([exp]) == []

    def test_improvement_too_small_is_medium(self):
        exp = PerformanceExperiment(
            metric="latency", control_score=100, treatment_score=103, min_improvement=5
        )
        problems = ProblemDetector().performance_gap([exp])
        assert problems[0].severity == ProblemSeverity.MEDIUM


class TestConsistency:
    def test_single_distinct_answer_is_consistent(self):
        check = ConsistencyCheck(question="q", variants=["a", "b"], answers=["x", "x"])
        assert ProblemDetector().consistency_violations([check]) == []

    def test_multiple_answers_flagged(self):
        check = ConsistencyCheck(
            question="How many moons?",
            variants=["moons?", "number of moons?", "satellites?"],
            answers=["1", "one", "1"],
        )
        problems = ProblemDetector().consistency_violations([check])
        assert len(problems) == 1
        assert problems[0].severity == ProblemSeverity.MEDIUM
        assert "(2 distinct answers)" in problems[0].description
        assert "Variant: satellites? -> Answer: 1" in problems[0].evidence


class TestIdentifyProblems:
    @pytest.mark.asyncio
    async def test_empty_input_gives_zero_filled_summary(self):
        report = await ProblemDetector().identify_problems(ProblemDetectionInput())
        assert report.problems == []
        assert report.summary.total == 0
        assert set(report.summary.by_type) == set(ProblemType)
        assert set(report.summary.by_severity) == set(ProblemSeverity)
        assert all(v == 0 for v in report.summary.by_type.values())

    @pytest.mark.asyncio
    async def test_mixed_signals_counted(self):
        input = ProblemDetectionInput(
            test_runs=[TestFailureCheck(command="pytest", result=_make_result())],
            regressions=[RegressionCheck(query="q", expected="a", actual="b")],
            consistency=[ConsistencyCheck(question="q", variants=["1", "2"], answers=["x", "y"])],
        )
        report = await ProblemDetector().identify_problems(input)
        assert report.summary.total == 3
        assert report.summary.by_type[ProblemType.TEST_FAILURE] == 1
        assert report.summary.by_type[ProblemType.REGRESSION] == 1
        assert report.summary.by_type[ProblemType.INCONSISTENCY] == 1
        assert report.summary.by_severity[ProblemSeverity.HIGH] == 2
        assert report.summary.by_severity[ProblemSeverity.MEDIUM] == 1
        assert [p.id for p in report.problems] == ["PROB-001", "PROB-002", "PROB-003"]

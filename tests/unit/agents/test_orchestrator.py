"""
Tests for the ScientificLoopOrchestrator.

Uses the real generator, fix generator, verifier and evolver, with a
scripted CommandRunner and a stub hypothesis tester so that verdicts are
under test control.

Covers:
  - Iteration bookkeeping, reset, deep-copied state
  - Fixed path: support → fix → verify → evolve
  - Escalations: no supported hypothesis, all fixes failed, regression
    unavoidable, missing agents, agent errors
  - Fallback to alternative fixes
  - run_until_done stopping rules and cancellation
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from sciloop.agents.benchmark_evolver import BenchmarkEvolver
from sciloop.agents.fix_generator import FixGenerator
from sciloop.agents.fix_verifier import FixVerifier
from sciloop.agents.hypothesis_generator import HypothesisGenerator
from sciloop.agents.orchestrator import ScientificLoopOrchestrator, recommend
from sciloop.agents.problem_detector import ProblemDetector
from sciloop.agents.types import (
    CommandResult,
    EscalationReason,
    EscalationRecommendation,
    HypothesisTesterInput,
    HypothesisTestRecommendation,
    HypothesisTestResult,
    HypothesisTestVerdict,
    Problem,
    ProblemDetectionInput,
    ProblemSeverity,
    ProblemType,
    RegressionCheck,
    TestFailureCheck,
)
from sciloop.config import OrchestratorConfig


# ─── Fakes ────────────────────────────────────────────────────────


class _SequenceRunner:
    """Returns queued exit codes in call order, then passes."""

    def __init__(self, exit_codes: list[int] | None = None) -> None:
        self.exit_codes = list(exit_codes or [])
        self.commands: list[str] = []

    async def execute(self, command, *, cwd=None, timeout_ms=None):
        self.commands.append(command)
        code = self.exit_codes.pop(0) if self.exit_codes else 0
        return CommandResult(command=command, exit_code=code,
                             stderr="" if code == 0 else "failed")


class _StubTester:
    """Supports the hypotheses listed in ``supported``; everything else is inconclusive."""

    def __init__(self, supported: set[str] | None = None, error: Exception | None = None,
                 on_call=None) -> None:
        self.supported = supported or set()
        self.error = error
        self.on_call = on_call
        self.tested: list[str] = []

    async def test_hypothesis(self, input: HypothesisTesterInput) -> HypothesisTestResult:
        self.tested.append(input.hypothesis.id)
        if self.on_call is not None:
            self.on_call()
        if self.error is not None:
            raise self.error
        if input.hypothesis.id in self.supported:
            return HypothesisTestResult(
                hypothesis_id=input.hypothesis.id,
                verdict=HypothesisTestVerdict.SUPPORTED,
                confidence=0.8,
                recommendation=HypothesisTestRecommendation.PROCEED_TO_FIX,
            )
        return HypothesisTestResult(
            hypothesis_id=input.hypothesis.id,
            verdict=HypothesisTestVerdict.INCONCLUSIVE,
            confidence=0.4,
            recommendation=HypothesisTestRecommendation.NEED_MORE_EVIDENCE,
        )


class _BrokenEvolver:
    async def evolve_benchmark(self, input):
        raise RuntimeError("disk full")


# ─── Helpers ──────────────────────────────────────────────────────


def _failing_test(command: str = "pytest tests/test_math.py") -> TestFailureCheck:
    return TestFailureCheck(
        command=command,
        result=CommandResult(command=command, exit_code=1, stderr="AssertionError: expected 3, got 4"),
    )


def _make_input(*commands: str) -> ProblemDetectionInput:
    return ProblemDetectionInput(test_runs=[_failing_test(c) for c in commands])


def _make_orchestrator(
    runner: _SequenceRunner | None = None,
    tester: _StubTester | None = None,
    config: OrchestratorConfig | None = None,
) -> ScientificLoopOrchestrator:
    return ScientificLoopOrchestrator(
        config,
        problem_detector=ProblemDetector(),
        hypothesis_generator=HypothesisGenerator(),
        hypothesis_tester=tester or _StubTester({"HYP-PROB-001-A"}),
        fix_generator=FixGenerator(),
        fix_verifier=FixVerifier(command_runner=runner or _SequenceRunner()),
        benchmark_evolver=BenchmarkEvolver(),
    )


# ─── Tests ────────────────────────────────────────────────────────


class TestStateManagement:
    @pytest.mark.asyncio
    async def test_iteration_increments_by_one(self):
        orchestrator = _make_orchestrator()
        await orchestrator.run_iteration(ProblemDetectionInput())
        assert orchestrator.get_state().iteration == 1
        await orchestrator.run_iteration(ProblemDetectionInput())
        assert orchestrator.get_state().iteration == 2

    @pytest.mark.asyncio
    async def test_get_state_is_a_copy(self):
        orchestrator = _make_orchestrator()
        await orchestrator.run_iteration(_make_input("pytest tests/test_math.py"))
        state = orchestrator.get_state()
        state.problems_fixed.append("PROB-999")
        state.iteration = 42
        fresh = orchestrator.get_state()
        assert "PROB-999" not in fresh.problems_fixed
        assert fresh.iteration == 1

    @pytest.mark.asyncio
    async def test_reset_clears_state_and_run_id(self):
        orchestrator = _make_orchestrator()
        run_id = orchestrator.run_id
        await orchestrator.run_iteration(_make_input("pytest tests/test_math.py"))
        orchestrator.reset()
        state = orchestrator.get_state()
        assert state.iteration == 0
        assert state.problems_detected == []
        assert state.fixes_attempted == []
        assert orchestrator.run_id != run_id

    @pytest.mark.asyncio
    async def test_state_accumulates_across_iterations(self):
        orchestrator = _make_orchestrator()
        await orchestrator.run_iteration(_make_input("pytest tests/test_a.py"))
        await orchestrator.run_iteration(_make_input("pytest tests/test_b.py"))
        state = orchestrator.get_state()
        assert [p.id for p in state.problems_detected] == ["PROB-001", "PROB-002"]


class TestFixedPath:
    @pytest.mark.asyncio
    async def test_supported_hypothesis_and_passing_checks_fix_problem(self):
        runner = _SequenceRunner()
        orchestrator = _make_orchestrator(runner=runner)
        result = await orchestrator.run_iteration(_make_input("pytest tests/test_math.py"))

        assert result.escalations == []
        assert result.state.problems_fixed == ["PROB-001"]
        assert len(result.state.fixes_attempted) == 1
        assert result.state.fixes_attempted[0].reward == 1
        assert len(result.state.benchmark_evolutions) == 1
        assert result.summary.problems_fixed == 1
        assert result.summary.fix_success_rate == 1.0
        assert result.summary.hypothesis_accuracy == 1.0
        assert result.run_id == orchestrator.run_id
        assert runner.commands == ["pytest tests/test_math.py", "pytest -q", "mypy ."]

    @pytest.mark.asyncio
    async def test_stops_testing_at_first_supported(self):
        tester = _StubTester({"HYP-PROB-001-B"})
        orchestrator = _make_orchestrator(tester=tester)
        await orchestrator.run_iteration(_make_input("pytest tests/test_math.py"))
        assert tester.tested == ["HYP-PROB-001-A", "HYP-PROB-001-B"]

    @pytest.mark.asyncio
    async def test_falls_back_to_alternative_fix(self):
        runner = _SequenceRunner([1, 0, 0])
        orchestrator = _make_orchestrator(runner=runner)
        result = await orchestrator.run_iteration(_make_input("pytest tests/test_math.py"))
        assert result.state.problems_fixed == ["PROB-001"]
        assert [v.reward for v in result.state.fixes_attempted] == [0, 1]
        assert result.summary.fix_success_rate == 0.5

    @pytest.mark.asyncio
    async def test_evolver_failure_keeps_fix(self):
        orchestrator = _make_orchestrator()
        orchestrator.set_benchmark_evolver(_BrokenEvolver())
        result = await orchestrator.run_iteration(_make_input("pytest tests/test_math.py"))
        assert result.state.problems_fixed == ["PROB-001"]
        assert result.state.benchmark_evolutions == []

    @pytest.mark.asyncio
    async def test_fixed_without_evolver(self):
        orchestrator = _make_orchestrator()
        orchestrator.set_benchmark_evolver(None)
        result = await orchestrator.run_iteration(_make_input("pytest tests/test_math.py"))
        assert result.state.problems_fixed == ["PROB-001"]


class TestEscalation:
    @pytest.mark.asyncio
    async def test_no_supported_hypothesis(self):
        tester = _StubTester(set())
        orchestrator = _make_orchestrator(tester=tester)
        result = await orchestrator.run_iteration(_make_input("pytest tests/test_math.py"))

        assert len(result.escalations) == 1
        escalation = result.escalations[0]
        assert escalation.reason == EscalationReason.NO_SUPPORTED_HYPOTHESIS
        assert escalation.recommendation == EscalationRecommendation.DEFER
        assert len(escalation.hypotheses_tested) == 5
        assert escalation.fixes_attempted == []
        assert result.state.problems_escalated == ["PROB-001"]
        assert result.state.fixes_attempted == []

    @pytest.mark.asyncio
    async def test_hypothesis_budget_respected(self):
        tester = _StubTester(set())
        orchestrator = _make_orchestrator(
            tester=tester, config=OrchestratorConfig(max_hypotheses_per_problem=2),
        )
        await orchestrator.run_iteration(_make_input("pytest tests/test_math.py"))
        assert len(tester.tested) == 2

    @pytest.mark.asyncio
    async def test_all_fixes_failed(self):
        runner = _SequenceRunner([1, 0, 0] * 3)
        orchestrator = _make_orchestrator(runner=runner)
        result = await orchestrator.run_iteration(_make_input("pytest tests/test_math.py"))

        escalation = result.escalations[0]
        assert escalation.reason == EscalationReason.ALL_FIXES_FAILED
        assert escalation.recommendation == EscalationRecommendation.HUMAN_REVIEW
        assert len(escalation.fixes_attempted) == 3
        assert [v.reward for v in result.state.fixes_attempted] == [0, 0, 0]
        assert result.summary.fix_success_rate == 0.0
        assert result.summary.hypothesis_accuracy == 0.0

    @pytest.mark.asyncio
    async def test_fix_attempt_budget_respected(self):
        runner = _SequenceRunner([1, 0, 0] * 3)
        orchestrator = _make_orchestrator(
            runner=runner, config=OrchestratorConfig(max_fix_attempts_per_problem=1),
        )
        result = await orchestrator.run_iteration(_make_input("pytest tests/test_math.py"))
        assert len(result.escalations[0].fixes_attempted) == 1
        assert len(runner.commands) == 3

    @pytest.mark.asyncio
    async def test_regressions_on_every_attempt_go_to_human_review(self):
        runner = _SequenceRunner([0, 1, 0] * 3)
        orchestrator = _make_orchestrator(runner=runner)
        result = await orchestrator.run_iteration(_make_input("pytest tests/test_math.py"))
        escalation = result.escalations[0]
        assert escalation.reason == EscalationReason.ALL_FIXES_FAILED
        assert escalation.recommendation == EscalationRecommendation.HUMAN_REVIEW
        assert len(escalation.fixes_attempted) == 3

    @pytest.mark.asyncio
    async def test_mixed_rejections_are_all_fixes_failed(self):
        runner = _SequenceRunner([0, 1, 0, 1, 0, 0, 0, 1, 0])
        orchestrator = _make_orchestrator(runner=runner)
        result = await orchestrator.run_iteration(_make_input("pytest tests/test_math.py"))
        assert result.escalations[0].reason == EscalationReason.ALL_FIXES_FAILED

    @pytest.mark.asyncio
    async def test_missing_agents_escalate(self):
        orchestrator = ScientificLoopOrchestrator(problem_detector=ProblemDetector())
        result = await orchestrator.run_iteration(_make_input("pytest tests/test_math.py"))
        escalation = result.escalations[0]
        assert escalation.reason == EscalationReason.NO_SUPPORTED_HYPOTHESIS
        assert escalation.hypotheses_tested == []
        assert escalation.fixes_attempted == []

    @pytest.mark.asyncio
    async def test_missing_detector_finds_nothing(self):
        orchestrator = _make_orchestrator()
        orchestrator.set_problem_detector(None)
        result = await orchestrator.run_iteration(_make_input("pytest tests/test_math.py"))
        assert result.state.problems_detected == []
        assert result.escalations == []

    @pytest.mark.asyncio
    async def test_detector_error_finds_nothing(self):
        detector = MagicMock()
        detector.identify_problems = AsyncMock(side_effect=RuntimeError("detector crashed"))
        orchestrator = _make_orchestrator()
        orchestrator.set_problem_detector(detector)
        result = await orchestrator.run_iteration(_make_input("pytest tests/test_math.py"))
        assert result.state.iteration == 1
        assert result.state.problems_detected == []
        detector.identify_problems.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_agent_error_escalates_and_loop_continues(self):
        tester = _StubTester(error=RuntimeError("tester crashed"))
        orchestrator = _make_orchestrator(tester=tester)
        result = await orchestrator.run_iteration(
            _make_input("pytest tests/test_a.py", "pytest tests/test_b.py")
        )
        assert [e.problem_id for e in result.escalations] == ["PROB-001", "PROB-002"]
        assert all(
            e.reason == EscalationReason.NO_SUPPORTED_HYPOTHESIS for e in result.escalations
        )

    @pytest.mark.asyncio
    async def test_every_problem_fixed_or_escalated(self):
        tester = _StubTester({"HYP-PROB-001-A"})
        orchestrator = _make_orchestrator(tester=tester)
        result = await orchestrator.run_iteration(
            _make_input("pytest tests/test_a.py", "pytest tests/test_b.py")
        )
        state = result.state
        assert state.problems_fixed == ["PROB-001"]
        assert state.problems_escalated == ["PROB-002"]
        assert set(state.problems_fixed).isdisjoint(state.problems_escalated)


class TestRecommend:
    def _problem(self, severity: ProblemSeverity) -> Problem:
        return Problem(id="PROB-001", type=ProblemType.REGRESSION, description="d", severity=severity)

    def test_critical_always_human_review(self):
        problem = self._problem(ProblemSeverity.CRITICAL)
        for reason in EscalationReason:
            assert recommend(problem, reason) == EscalationRecommendation.HUMAN_REVIEW

    def test_low_always_defer(self):
        problem = self._problem(ProblemSeverity.LOW)
        for reason in EscalationReason:
            assert recommend(problem, reason) == EscalationRecommendation.DEFER

    def test_by_reason(self):
        problem = self._problem(ProblemSeverity.MEDIUM)
        assert recommend(problem, EscalationReason.REGRESSION_UNAVOIDABLE) == EscalationRecommendation.WONTFIX
        assert recommend(problem, EscalationReason.ALL_FIXES_FAILED) == EscalationRecommendation.HUMAN_REVIEW
        assert recommend(problem, EscalationReason.NO_SUPPORTED_HYPOTHESIS) == EscalationRecommendation.DEFER


class TestRunUntilDone:
    @pytest.mark.asyncio
    async def test_no_problems_stops_after_one_iteration(self):
        orchestrator = _make_orchestrator()
        result = await orchestrator.run_until_done(ProblemDetectionInput())
        assert result.state.iteration == 1
        assert result.escalations == []
        assert result.summary.problems_detected == 0

    @pytest.mark.asyncio
    async def test_persistent_problems_stop_at_budget(self):
        orchestrator = _make_orchestrator(
            tester=_StubTester(set()), config=OrchestratorConfig(max_iterations=3),
        )
        input = ProblemDetectionInput(
            regressions=[RegressionCheck(query="capital", expected="Paris", actual="Lyon")]
        )
        result = await orchestrator.run_until_done(input)
        assert result.state.iteration == 3
        assert len(result.escalations) == 3
        assert result.summary.problems_escalated == 3

    @pytest.mark.asyncio
    async def test_cancel_before_start_processes_nothing(self):
        cancel = asyncio.Event()
        cancel.set()
        orchestrator = _make_orchestrator()
        result = await orchestrator.run_until_done(
            _make_input("pytest tests/test_a.py", "pytest tests/test_b.py"), cancel_event=cancel,
        )
        assert result.state.iteration == 1
        assert len(result.state.problems_detected) == 2
        assert result.state.problems_fixed == []
        assert result.state.problems_escalated == []

    @pytest.mark.asyncio
    async def test_cancel_mid_iteration_skips_remaining(self):
        cancel = asyncio.Event()
        tester = _StubTester(set(), on_call=cancel.set)
        orchestrator = _make_orchestrator(tester=tester)
        result = await orchestrator.run_iteration(
            _make_input("pytest tests/test_a.py", "pytest tests/test_b.py"), cancel_event=cancel,
        )
        assert result.state.problems_escalated == ["PROB-001"]
        assert "PROB-002" not in result.state.problems_fixed
        assert all(h.startswith("HYP-PROB-001") for h in tester.tested)

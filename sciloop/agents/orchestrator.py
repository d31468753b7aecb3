"""
SciLoop — Scientific Loop Orchestrator

Sequences the six agents through one closed debugging loop per iteration:

  DETECT → HYPOTHESIZE → TEST → FIX → VERIFY → EVOLVE
                                   ↘ ESCALATE

For each detected problem:
  1. Generate hypotheses and test them in ranked order, stopping at the
     first supported one or after ``max_hypotheses_per_problem`` tests.
     None supported → escalate ``no_supported_hypothesis``.
  2. Generate fixes once for the supported hypothesis. Verify the preferred
     fix, then the alternatives, up to ``max_fix_attempts_per_problem``.
  3. Accepted → evolve the benchmark and mark the problem fixed.
     All rejected → escalate ``all_fixes_failed``, whatever the checks
     that failed.

Problems are processed strictly one after another. State accumulates
across iterations and is only cleared by ``reset()``.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

from sciloop.agents.base import LoopAgent
from sciloop.agents.types import (
    AgentCapability,
    BenchmarkEvolverInput,
    Escalation,
    EscalationReason,
    EscalationRecommendation,
    Fix,
    FixGeneratorInput,
    FixVerifierInput,
    Hypothesis,
    HypothesisGenerationInput,
    HypothesisTesterInput,
    HypothesisTestVerdict,
    LoopResult,
    LoopSummary,
    Problem,
    ProblemDetectionInput,
    ProblemSeverity,
    ScientificLoopState,
    VerificationResult,
)
from sciloop.config import OrchestratorConfig
from sciloop.primitives.common import new_id

if TYPE_CHECKING:
    from sciloop.agents.benchmark_evolver import BenchmarkEvolver
    from sciloop.agents.fix_generator import FixGenerator
    from sciloop.agents.fix_verifier import FixVerifier
    from sciloop.agents.hypothesis_generator import HypothesisGenerator
    from sciloop.agents.hypothesis_tester import HypothesisTester
    from sciloop.agents.problem_detector import ProblemDetector

logger = structlog.get_logger()


class _ProblemOutcome:
    """What happened to one problem within one iteration."""

    __slots__ = ("fixed", "escalation")

    def __init__(self, fixed: bool = False, escalation: Escalation | None = None) -> None:
        self.fixed = fixed
        self.escalation = escalation


def recommend(problem: Problem, reason: EscalationReason) -> EscalationRecommendation:
    """Severity overrides first, then the escalation reason."""
    if problem.severity == ProblemSeverity.CRITICAL:
        return EscalationRecommendation.HUMAN_REVIEW
    if problem.severity == ProblemSeverity.LOW:
        return EscalationRecommendation.DEFER
    if reason == EscalationReason.REGRESSION_UNAVOIDABLE:
        return EscalationRecommendation.WONTFIX
    if reason == EscalationReason.ALL_FIXES_FAILED:
        return EscalationRecommendation.HUMAN_REVIEW
    return EscalationRecommendation.DEFER


class ScientificLoopOrchestrator(LoopAgent):
    agent_type = "scientific_loop_orchestrator"
    name = "Scientific Loop Orchestrator"
    capabilities = (
        AgentCapability.PROBLEM_DETECTION,
        AgentCapability.HYPOTHESIS_GENERATION,
        AgentCapability.HYPOTHESIS_TESTING,
        AgentCapability.FIX_GENERATION,
        AgentCapability.FIX_VERIFICATION,
        AgentCapability.BENCHMARK_EVOLUTION,
    )

    def __init__(
        self,
        config: OrchestratorConfig | None = None,
        *,
        problem_detector: ProblemDetector | None = None,
        hypothesis_generator: HypothesisGenerator | None = None,
        hypothesis_tester: HypothesisTester | None = None,
        fix_generator: FixGenerator | None = None,
        fix_verifier: FixVerifier | None = None,
        benchmark_evolver: BenchmarkEvolver | None = None,
    ) -> None:
        super().__init__()
        self._config = config or OrchestratorConfig()
        self._state = ScientificLoopState()
        self._run_id = new_id()
        self._logger = logger.bind(system="sciloop.orchestrator", run_id=self._run_id)

        self._problem_detector = problem_detector
        self._hypothesis_generator = hypothesis_generator
        self._hypothesis_tester = hypothesis_tester
        self._fix_generator = fix_generator
        self._fix_verifier = fix_verifier
        self._benchmark_evolver = benchmark_evolver

    # ─── Cross-Agent Wiring ────────────────────────────────────────────

    def set_problem_detector(self, agent: ProblemDetector | None) -> None:
        self._problem_detector = agent

    def set_hypothesis_generator(self, agent: HypothesisGenerator | None) -> None:
        self._hypothesis_generator = agent

    def set_hypothesis_tester(self, agent: HypothesisTester | None) -> None:
        self._hypothesis_tester = agent

    def set_fix_generator(self, agent: FixGenerator | None) -> None:
        self._fix_generator = agent

    def set_fix_verifier(self, agent: FixVerifier | None) -> None:
        self._fix_verifier = agent

    def set_benchmark_evolver(self, agent: BenchmarkEvolver | None) -> None:
        self._benchmark_evolver = agent

    # ─── State ─────────────────────────────────────────────────────────

    @property
    def run_id(self) -> str:
        return self._run_id

    def get_state(self) -> ScientificLoopState:
        """Deep copy; callers cannot mutate the orchestrator's state."""
        return self._state.model_copy(deep=True)

    def reset(self) -> None:
        self._state = ScientificLoopState()
        self._run_id = new_id()
        self._logger = logger.bind(system="sciloop.orchestrator", run_id=self._run_id)
        self._logger.info("loop_reset")

    # ─── Main Loop ─────────────────────────────────────────────────────

    async def run_iteration(
        self,
        input: ProblemDetectionInput,
        cancel_event: asyncio.Event | None = None,
    ) -> LoopResult:
        self._state.iteration += 1
        iteration = self._state.iteration
        self._logger.info("iteration_started", iteration=iteration)

        problems = await self._detect(input)
        self._state.problems_detected.extend(problems)

        escalations: list[Escalation] = []
        for problem in problems:
            if cancel_event is not None and cancel_event.is_set():
                self._logger.info(
                    "iteration_cancelled",
                    iteration=iteration,
                    remaining=len(problems) - problems.index(problem),
                )
                break

            outcome = await self._process_problem_safe(problem)
            if outcome.fixed:
                self._state.problems_fixed.append(problem.id)
            elif outcome.escalation is not None:
                escalations.append(outcome.escalation)
                self._state.problems_escalated.append(problem.id)

        summary = self._summary()
        self._logger.info(
            "iteration_complete",
            iteration=iteration,
            detected=len(problems),
            escalated=len(escalations),
            fix_success_rate=round(summary.fix_success_rate, 3),
        )
        return LoopResult(
            run_id=self._run_id,
            state=self.get_state(),
            escalations=escalations,
            summary=summary,
        )

    async def run_until_done(
        self,
        input: ProblemDetectionInput,
        cancel_event: asyncio.Event | None = None,
    ) -> LoopResult:
        """
        Iterate until an iteration detects no problems, the iteration budget
        is spent, or ``cancel_event`` is set.
        """
        escalations: list[Escalation] = []

        while self._state.iteration < self._config.max_iterations:
            detected_before = len(self._state.problems_detected)
            result = await self.run_iteration(input, cancel_event)
            escalations.extend(result.escalations)

            if len(self._state.problems_detected) == detected_before:
                break
            if cancel_event is not None and cancel_event.is_set():
                break

        summary = self._summary()
        self._logger.info(
            "loop_finished",
            iterations=self._state.iteration,
            fixed=summary.problems_fixed,
            escalated=summary.problems_escalated,
        )
        return LoopResult(
            run_id=self._run_id,
            state=self.get_state(),
            escalations=escalations,
            summary=summary,
        )

    # ─── Stages ────────────────────────────────────────────────────────

    async def _detect(self, input: ProblemDetectionInput) -> list[Problem]:
        if self._problem_detector is None:
            self._logger.warning("no_problem_detector")
            return []
        try:
            report = await self._problem_detector.identify_problems(input)
        except Exception as exc:
            self._logger.error("problem_detection_failed", error=str(exc))
            return []
        return list(report.problems)

    async def _process_problem_safe(self, problem: Problem) -> _ProblemOutcome:
        """Wrapper that turns an unexpected agent error into an escalation."""
        hypotheses: list[Hypothesis] = []
        fixes: list[Fix] = []
        try:
            return await self._process_problem(problem, hypotheses, fixes)
        except Exception as exc:
            self._logger.error(
                "problem_processing_failed",
                problem_id=problem.id,
                error=str(exc),
            )
            reason = (
                EscalationReason.ALL_FIXES_FAILED if fixes
                else EscalationReason.NO_SUPPORTED_HYPOTHESIS
            )
            return _ProblemOutcome(escalation=self._escalate(problem, hypotheses, fixes, reason))

    async def _process_problem(
        self,
        problem: Problem,
        hypotheses_tried: list[Hypothesis],
        fixes_tried: list[Fix],
    ) -> _ProblemOutcome:
        generator = self._hypothesis_generator
        tester = self._hypothesis_tester
        fix_generator = self._fix_generator
        verifier = self._fix_verifier

        if generator is None or tester is None or fix_generator is None or verifier is None:
            self._logger.warning("pipeline_incomplete", problem_id=problem.id)
            return _ProblemOutcome(
                escalation=self._escalate(
                    problem, [], [], EscalationReason.NO_SUPPORTED_HYPOTHESIS,
                )
            )

        # ── Hypothesize and test ──
        report = generator.generate_hypotheses(HypothesisGenerationInput(problem=problem))
        by_id = {h.id: h for h in report.hypotheses}
        ranked = [by_id[hid] for hid in report.ranked_by_likelihood if hid in by_id]

        supported = None
        for hypothesis in ranked[: self._config.max_hypotheses_per_problem]:
            hypotheses_tried.append(hypothesis)
            result = await tester.test_hypothesis(
                HypothesisTesterInput(hypothesis=hypothesis, problem=problem)
            )
            self._state.hypotheses_tested.append(result)
            if result.verdict == HypothesisTestVerdict.SUPPORTED:
                supported = (hypothesis, result)
                break

        if supported is None:
            return _ProblemOutcome(
                escalation=self._escalate(
                    problem, hypotheses_tried, [], EscalationReason.NO_SUPPORTED_HYPOTHESIS,
                )
            )

        # ── Fix and verify ──
        hypothesis, test_result = supported
        fix_report = fix_generator.generate_fix(
            FixGeneratorInput(problem=problem, hypothesis=hypothesis, test_result=test_result)
        )
        fixes_by_id = {f.id: f for f in fix_report.fixes}
        order = [fix_report.preferred, *fix_report.alternatives]
        candidates = [fixes_by_id[fid] for fid in order if fid in fixes_by_id]

        for fix in candidates[: self._config.max_fix_attempts_per_problem]:
            fixes_tried.append(fix)
            verification = await verifier.verify_fix(FixVerifierInput(fix=fix, problem=problem))
            self._state.fixes_attempted.append(verification)

            if verification.reward == 1:
                await self._evolve(problem, fix, verification)
                self._logger.info("problem_fixed", problem_id=problem.id, fix_id=fix.id)
                return _ProblemOutcome(fixed=True)

        return _ProblemOutcome(
            escalation=self._escalate(
                problem, hypotheses_tried, fixes_tried, EscalationReason.ALL_FIXES_FAILED
            )
        )

    async def _evolve(self, problem: Problem, fix: Fix, verification: VerificationResult) -> None:
        if self._benchmark_evolver is None:
            return
        try:
            evolution = await self._benchmark_evolver.evolve_benchmark(
                BenchmarkEvolverInput(problem=problem, fix=fix, verification_result=verification)
            )
        except Exception as exc:
            # The fix is already accepted; a failed evolution does not undo it.
            self._logger.error("benchmark_evolution_failed", problem_id=problem.id, error=str(exc))
            return
        self._state.benchmark_evolutions.append(evolution)

    def _escalate(
        self,
        problem: Problem,
        hypotheses: list[Hypothesis],
        fixes: list[Fix],
        reason: EscalationReason,
    ) -> Escalation:
        escalation = Escalation(
            problem_id=problem.id,
            hypotheses_tested=list(hypotheses),
            fixes_attempted=list(fixes),
            reason=reason,
            recommendation=recommend(problem, reason),
        )
        self._logger.info(
            "problem_escalated",
            problem_id=problem.id,
            reason=str(reason),
            recommendation=str(escalation.recommendation),
        )
        return escalation

    def _summary(self) -> LoopSummary:
        state = self._state
        attempted = len(state.fixes_attempted)
        accepted = sum(1 for v in state.fixes_attempted if v.reward == 1)
        supported = sum(
            1 for r in state.hypotheses_tested if r.verdict == HypothesisTestVerdict.SUPPORTED
        )
        return LoopSummary(
            problems_detected=len(state.problems_detected),
            problems_fixed=len(state.problems_fixed),
            problems_escalated=len(state.problems_escalated),
            fix_success_rate=accepted / attempted if attempted else 0.0,
            hypothesis_accuracy=accepted / supported if supported else 0.0,
        )

"""
SciLoop — Hypothesis Tester

Supports, refutes, or leaves open one hypothesis using one of four
strategies, chosen by ``hypothesis.test.type``:

  code_inspection → scan problem evidence for the expected pattern.
                    Never a true test without file access, so the verdict
                    is always inconclusive.
  test_run        → run ``test.target`` through the CommandRunner and match
                    its output against the expected pattern.
  log_analysis    → fraction of evidence lines (plus the description) that
                    match the expected pattern.
  behavioral      → look for actual/expected pairs in the evidence and
                    score pattern matches.

Confidence = match score + likelihood boost, damped by 0.8 when the
problem is not reproducible, clamped to [0, 1]. The tester holds no state
between calls.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from sciloop.agents.base import LoopAgent, run_with_deadline
from sciloop.agents.heuristics import count_matching, matches_expected, truncate
from sciloop.agents.types import (
    AgentCapability,
    Hypothesis,
    HypothesisLikelihood,
    HypothesisTesterInput,
    HypothesisTestRecommendation,
    HypothesisTestResult,
    HypothesisTestType,
    HypothesisTestVerdict,
    Problem,
    TestEvidence,
)
from sciloop.config import HypothesisTesterConfig
from sciloop.errors import CommandTimeoutError
from sciloop.primitives.common import clamp

if TYPE_CHECKING:
    from sciloop.clients.command_runner import CommandRunner

logger = structlog.get_logger()

LIKELIHOOD_BOOST: dict[HypothesisLikelihood, float] = {
    HypothesisLikelihood.HIGH: 0.15,
    HypothesisLikelihood.MEDIUM: 0.0,
    HypothesisLikelihood.LOW: -0.15,
}

NOT_REPRODUCIBLE_DAMPING = 0.8

_RECOMMENDATIONS: dict[HypothesisTestVerdict, HypothesisTestRecommendation] = {
    HypothesisTestVerdict.SUPPORTED: HypothesisTestRecommendation.PROCEED_TO_FIX,
    HypothesisTestVerdict.REFUTED: HypothesisTestRecommendation.TEST_ANOTHER_HYPOTHESIS,
    HypothesisTestVerdict.INCONCLUSIVE: HypothesisTestRecommendation.NEED_MORE_EVIDENCE,
}


def _ev(kind: HypothesisTestType, finding: str, implication: str) -> TestEvidence:
    return TestEvidence(type=kind, finding=finding, implication=implication)


class HypothesisTester(LoopAgent):
    agent_type = "hypothesis_tester"
    name = "Hypothesis Tester"
    capabilities = (AgentCapability.HYPOTHESIS_TESTING,)

    def __init__(
        self,
        config: HypothesisTesterConfig | None = None,
        command_runner: CommandRunner | None = None,
    ) -> None:
        super().__init__()
        self._config = config or HypothesisTesterConfig()
        self._runner = command_runner
        self._logger = logger.bind(system="sciloop.hypothesis_tester")

    def set_command_runner(self, runner: CommandRunner | None) -> None:
        self._runner = runner

    def get_command_runner(self) -> CommandRunner | None:
        return self._runner

    # ─── Public API ────────────────────────────────────────────────────

    async def test_hypothesis(self, input: HypothesisTesterInput) -> HypothesisTestResult:
        hypothesis, problem = input.hypothesis, input.problem
        test_type = hypothesis.test.type
        was_testable = True

        if test_type == HypothesisTestType.CODE_INSPECTION:
            evidence = self._inspect_code(hypothesis, problem)
            score = self._code_inspection_score(hypothesis, problem)
            was_testable = False
        elif test_type == HypothesisTestType.TEST_RUN:
            evidence, score, was_testable = await self._run_test(hypothesis)
        elif test_type == HypothesisTestType.LOG_ANALYSIS:
            evidence = self._analyze_logs(hypothesis, problem)
            score = self._log_analysis_score(hypothesis, problem)
        elif test_type == HypothesisTestType.BEHAVIORAL:
            evidence = self._analyze_behavior(hypothesis, problem)
            score = self._behavioral_score(hypothesis, problem)
        else:
            evidence = [
                _ev(
                    HypothesisTestType.CODE_INSPECTION,
                    f"Unknown test type: {test_type}",
                    "Cannot perform analysis for this test type",
                )
            ]
            score = 0.0
            was_testable = False

        confidence = self.compute_confidence(score, hypothesis.likelihood, problem.reproducible)
        verdict = self.determine_verdict(confidence, len(evidence), was_testable)

        self._logger.debug(
            "hypothesis_tested",
            hypothesis_id=hypothesis.id,
            test_type=str(test_type),
            match_score=round(score, 3),
            confidence=round(confidence, 3),
            verdict=str(verdict),
        )
        return HypothesisTestResult(
            hypothesis_id=hypothesis.id,
            verdict=verdict,
            evidence=evidence,
            confidence=confidence,
            recommendation=_RECOMMENDATIONS[verdict],
        )

    @staticmethod
    def compute_confidence(
        match_score: float,
        likelihood: HypothesisLikelihood,
        reproducible: bool,
    ) -> float:
        confidence = match_score + LIKELIHOOD_BOOST[likelihood]
        if not reproducible:
            confidence *= NOT_REPRODUCIBLE_DAMPING
        return clamp(confidence)

    def determine_verdict(
        self,
        confidence: float,
        evidence_count: int,
        was_testable: bool = True,
    ) -> HypothesisTestVerdict:
        if evidence_count == 0 or not was_testable:
            return HypothesisTestVerdict.INCONCLUSIVE
        if confidence >= self._config.supported_threshold:
            return HypothesisTestVerdict.SUPPORTED
        if confidence < self._config.refuted_threshold:
            return HypothesisTestVerdict.REFUTED
        return HypothesisTestVerdict.INCONCLUSIVE

    # ─── Code Inspection ───────────────────────────────────────────────

    def _inspect_code(self, hypothesis: Hypothesis, problem: Problem) -> list[TestEvidence]:
        kind = HypothesisTestType.CODE_INSPECTION
        if not problem.evidence:
            return [
                _ev(
                    kind,
                    f"No evidence available to inspect for target: {hypothesis.test.target}",
                    "Cannot verify hypothesis without examining actual code",
                )
            ]

        relevant = [e for e in problem.evidence if matches_expected(e, hypothesis.test.expected)]
        if not relevant:
            return [
                _ev(
                    kind,
                    f"No evidence found matching expected: {hypothesis.test.expected}",
                    "Evidence does not support code inspection hypothesis",
                )
            ]

        evidence = [
            _ev(
                kind,
                f"Found {len(relevant)} evidence items matching expected pattern",
                f"Evidence suggests {hypothesis.statement}",
            )
        ]
        evidence.extend(
            _ev(kind, truncate(item, 200), "Matches hypothesis prediction pattern")
            for item in relevant[:3]
        )
        return evidence

    def _code_inspection_score(self, hypothesis: Hypothesis, problem: Problem) -> float:
        if not problem.evidence:
            return 0.0
        matches = count_matching(problem.evidence, hypothesis.test.expected)
        if matches == 0:
            return 0.0
        return min(matches / len(problem.evidence) + 0.3, 1.0)

    # ─── Test Run ──────────────────────────────────────────────────────

    async def _run_test(self, hypothesis: Hypothesis) -> tuple[list[TestEvidence], float, bool]:
        kind = HypothesisTestType.TEST_RUN
        target = hypothesis.test.target

        if self._runner is None:
            return (
                [
                    _ev(
                        kind,
                        f"Cannot execute test: {target} - no CommandRunner available",
                        "Test execution not possible without CommandRunner",
                    )
                ],
                0.0,
                False,
            )

        timeout_ms = self._config.command_timeout_ms
        try:
            result = await run_with_deadline(self._runner, target, timeout_ms=timeout_ms)
        except CommandTimeoutError as error:
            self._logger.warning("test_run_timeout", command=target, timeout_ms=timeout_ms)
            return (
                [
                    _ev(
                        kind,
                        f"Command execution failed: {error}",
                        "Unable to complete test run due to execution error",
                    )
                ],
                0.0,
                False,
            )
        except Exception as exc:
            self._logger.warning("test_run_failed", command=target, error=str(exc))
            return (
                [
                    _ev(
                        kind,
                        f"Command execution failed: {exc}",
                        "Unable to complete test run due to execution error",
                    )
                ],
                0.0,
                False,
            )

        evidence = [
            _ev(
                kind,
                f"Command exited with code {result.exit_code}",
                "Test passed successfully" if result.exit_code == 0 else "Test failed",
            )
        ]
        if result.stderr:
            evidence.append(
                _ev(kind, truncate(result.stderr, 500), "Error output from test execution")
            )
        if result.stdout:
            evidence.append(
                _ev(kind, truncate(result.stdout, 500), "Standard output from test execution")
            )

        combined = f"{result.stdout} {result.stderr}"
        if matches_expected(combined, hypothesis.test.expected):
            score = 0.8
        elif result.exit_code != 0:
            score = 0.4
        else:
            score = 0.2
        return evidence, score, True

    # ─── Log Analysis ──────────────────────────────────────────────────

    def _analyze_logs(self, hypothesis: Hypothesis, problem: Problem) -> list[TestEvidence]:
        kind = HypothesisTestType.LOG_ANALYSIS
        expected = hypothesis.test.expected
        evidence = [
            _ev(kind, truncate(line, 300), f"Log entry matches expected pattern: {expected}")
            for line in problem.evidence
            if matches_expected(line, expected)
        ]
        if matches_expected(problem.description, expected):
            evidence.append(
                _ev(
                    kind,
                    f"Problem description contains pattern: {expected}",
                    "Description suggests hypothesis may be correct",
                )
            )
        if not evidence:
            evidence.append(
                _ev(
                    kind,
                    f"No log entries matching expected: {expected}",
                    "Available logs do not support this hypothesis",
                )
            )
        return evidence

    def _log_analysis_score(self, hypothesis: Hypothesis, problem: Problem) -> float:
        expected = hypothesis.test.expected
        matches = count_matching(problem.evidence, expected)
        if matches_expected(problem.description, expected):
            matches += 1
        return matches / (len(problem.evidence) + 1)

    # ─── Behavioral ────────────────────────────────────────────────────

    @staticmethod
    def _actual_expected_lines(evidence: list[str]) -> tuple[str | None, str | None]:
        actual: str | None = None
        expected: str | None = None
        for line in evidence:
            lower = line.lower()
            if "actual:" in lower or "actual =" in lower:
                actual = line
            if "expected:" in lower or "expected =" in lower:
                expected = line
        return actual, expected

    def _analyze_behavior(self, hypothesis: Hypothesis, problem: Problem) -> list[TestEvidence]:
        kind = HypothesisTestType.BEHAVIORAL
        expected_pattern = hypothesis.test.expected
        evidence: list[TestEvidence] = []

        actual_line, expected_line = self._actual_expected_lines(problem.evidence)
        if actual_line and expected_line:
            evidence.append(
                _ev(
                    kind,
                    f"Found actual/expected comparison: {actual_line} vs {expected_line}",
                    "Behavioral mismatch detected",
                )
            )

        if any(matches_expected(e, expected_pattern) for e in problem.evidence):
            evidence.append(
                _ev(
                    kind,
                    f"Evidence matches expected behavioral pattern: {expected_pattern}",
                    "Observed behavior aligns with hypothesis prediction",
                )
            )
        elif not evidence:
            evidence.append(
                _ev(
                    kind,
                    f"No behavioral evidence matching: {expected_pattern}",
                    "Cannot confirm behavioral hypothesis from available evidence",
                )
            )
        return evidence

    def _behavioral_score(self, hypothesis: Hypothesis, problem: Problem) -> float:
        score = 0.3 * count_matching(problem.evidence, hypothesis.test.expected)
        actual_line, expected_line = self._actual_expected_lines(problem.evidence)
        if actual_line and expected_line:
            score += 0.4
        return min(score, 1.0)

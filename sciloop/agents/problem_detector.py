"""
SciLoop — Problem Detector

Five independent classifiers, one per raw signal kind. Each signal yields
at most one Problem; nothing is deduplicated.

  test_runs    → test_failure     (exit code != 0)
  regressions  → regression       (expected != actual)
  adversarial  → hallucination    (expected != actual)
  performance  → performance_gap  (treatment < control + min_improvement)
  consistency  → inconsistency    (more than one distinct answer)

Only the test-run classifier touches the outside world, and only when a
check arrives without a precomputed result.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from sciloop.agents.base import LoopAgent, run_with_deadline
from sciloop.agents.heuristics import truncate
from sciloop.agents.types import (
    AdversarialProbe,
    AgentCapability,
    CommandResult,
    ConsistencyCheck,
    PerformanceExperiment,
    Problem,
    ProblemDetectionInput,
    ProblemDetectionReport,
    ProblemDetectionSummary,
    ProblemSeverity,
    ProblemType,
    RegressionCheck,
    TestFailureCheck,
)
from sciloop.config import ProblemDetectorConfig
from sciloop.primitives.common import SequenceCounter

if TYPE_CHECKING:
    from sciloop.clients.command_runner import CommandRunner

logger = structlog.get_logger()


class ProblemDetector(LoopAgent):
    agent_type = "problem_detector"
    name = "Problem Detector"
    capabilities = (AgentCapability.PROBLEM_DETECTION,)

    def __init__(
        self,
        config: ProblemDetectorConfig | None = None,
        command_runner: CommandRunner | None = None,
        counter: SequenceCounter | None = None,
    ) -> None:
        super().__init__()
        self._config = config or ProblemDetectorConfig()
        self._runner = command_runner
        self._counter = counter or SequenceCounter()
        self._logger = logger.bind(system="sciloop.problem_detector")

    def set_command_runner(self, runner: CommandRunner | None) -> None:
        self._runner = runner

    def get_command_runner(self) -> CommandRunner | None:
        return self._runner

    def _next_id(self) -> str:
        return self._counter.format("PROB")

    # ─── Test Failures ─────────────────────────────────────────────────

    async def test_failures(self, checks: list[TestFailureCheck]) -> list[Problem]:
        problems: list[Problem] = []
        for check in checks:
            result = check.result
            if result is None:
                if self._runner is None:
                    self._logger.info("test_check_skipped_no_runner", command=check.command)
                    continue
                try:
                    result = await self._execute(check)
                except Exception as exc:
                    self._logger.warning(
                        "test_check_execution_failed", command=check.command, error=str(exc),
                    )
                    problems.append(
                        Problem(
                            id=self._next_id(),
                            type=ProblemType.TEST_FAILURE,
                            description=f"Test command failed: {check.command}",
                            evidence=[f"Command execution error: {exc}"],
                            severity=check.severity or ProblemSeverity.HIGH,
                            reproducible=False,
                            minimal_reproduction=check.command,
                        )
                    )
                    continue

            if result.exit_code == 0:
                continue

            problems.append(
                Problem(
                    id=self._next_id(),
                    type=ProblemType.TEST_FAILURE,
                    description=f"Test command failed: {check.command}",
                    evidence=self._output_evidence(result),
                    severity=check.severity or ProblemSeverity.HIGH,
                    reproducible=True,
                    minimal_reproduction=check.command,
                )
            )
        return problems

    async def _execute(self, check: TestFailureCheck) -> CommandResult:
        assert self._runner is not None
        return await run_with_deadline(
            self._runner, check.command, cwd=check.cwd, timeout_ms=check.timeout_ms
        )

    def _output_evidence(self, result: CommandResult) -> list[str]:
        limit = self._config.max_evidence_lines
        width = self._config.max_evidence_chars

        def lines(text: str) -> list[str]:
            return [truncate(line.strip(), width) for line in text.splitlines() if line.strip()][:limit]

        evidence = lines(result.stderr) + lines(result.stdout)
        if result.timed_out:
            evidence.append("command timed out")
        evidence.append(f"exit code: {result.exit_code}")
        return evidence

    # ─── Answer Comparisons ────────────────────────────────────────────

    def regression_check(self, checks: list[RegressionCheck]) -> list[Problem]:
        problems: list[Problem] = []
        for check in checks:
            if check.expected == check.actual:
                continue
            problems.append(
                Problem(
                    id=self._next_id(),
                    type=ProblemType.REGRESSION,
                    description=f"Regression detected for query: {check.query}",
                    evidence=[
                        f"Expected: {check.expected}",
                        f"Actual: {check.actual}",
                        *check.evidence,
                    ],
                    severity=check.severity or ProblemSeverity.HIGH,
                    reproducible=True,
                    minimal_reproduction=f"Run regression query: {check.query}",
                )
            )
        return problems

    def adversarial_probe(self, probes: list[AdversarialProbe]) -> list[Problem]:
        problems: list[Problem] = []
        for probe in probes:
            if probe.expected == probe.actual:
                continue
            problems.append(
                Problem(
                    id=self._next_id(),
                    type=ProblemType.HALLUCINATION,
                    description=f"Hallucination detected for probe: {probe.prompt}",
                    evidence=[
                        f"Expected: {probe.expected}",
                        f"Actual: {probe.actual}",
                        *probe.evidence,
                    ],
                    severity=probe.severity or ProblemSeverity.HIGH,
                    reproducible=True,
                    minimal_reproduction=f"Run probe: {probe.prompt}",
                )
            )
        return problems

    # ─── Performance ───────────────────────────────────────────────────

    def performance_gap(self, experiments: list[PerformanceExperiment]) -> list[Problem]:
        problems: list[Problem] = []
        for exp in experiments:
            required = exp.control_score + exp.min_improvement
            if exp.treatment_score >= required:
                continue

            if exp.severity is not None:
                severity = exp.severity
            elif exp.treatment_score < exp.control_score:
                severity = ProblemSeverity.HIGH
            else:
                severity = ProblemSeverity.MEDIUM

            problems.append(
                Problem(
                    id=self._next_id(),
                    type=ProblemType.PERFORMANCE_GAP,
                    description=(
                        f"Performance gap on {exp.metric}: treatment {exp.treatment_score:g} "
                        f"below required {required:g}"
                    ),
                    evidence=[
                        f"Control: {exp.control_score:g}",
                        f"Treatment: {exp.treatment_score:g}",
                        f"Required improvement: {exp.min_improvement:g}",
                        f"Observed improvement: {exp.treatment_score - exp.control_score:g}",
                        *exp.evidence,
                    ],
                    severity=severity,
                    reproducible=True,
                    minimal_reproduction=f"Re-run experiment for metric: {exp.metric}",
                )
            )
        return problems

    # ─── Consistency ───────────────────────────────────────────────────

    def consistency_violations(self, sets: list[ConsistencyCheck]) -> list[Problem]:
        problems: list[Problem] = []
        for check in sets:
            distinct = set(check.answers)
            if len(distinct) <= 1:
                continue
            pairs = [
                f"Variant: {variant} -> Answer: {answer}"
                for variant, answer in zip(check.variants, check.answers)
            ]
            problems.append(
                Problem(
                    id=self._next_id(),
                    type=ProblemType.INCONSISTENCY,
                    description=(
                        f"Inconsistent answers for question: {check.question} "
                        f"({len(distinct)} distinct answers)"
                    ),
                    evidence=[*pairs, *check.evidence],
                    severity=check.severity or ProblemSeverity.MEDIUM,
                    reproducible=True,
                    minimal_reproduction=f"Ask variants of: {check.question}",
                )
            )
        return problems

    # ─── Aggregate ─────────────────────────────────────────────────────

    async def identify_problems(self, input: ProblemDetectionInput) -> ProblemDetectionReport:
        problems = [
            *await self.test_failures(input.test_runs),
            *self.regression_check(input.regressions),
            *self.adversarial_probe(input.adversarial),
            *self.performance_gap(input.performance),
            *self.consistency_violations(input.consistency),
        ]

        summary = ProblemDetectionSummary(total=len(problems))
        for p in problems:
            summary.by_type[p.type] += 1
            summary.by_severity[p.severity] += 1

        self._logger.info(
            "problems_identified",
            total=summary.total,
            by_type={str(k): v for k, v in summary.by_type.items() if v},
        )
        return ProblemDetectionReport(problems=problems, summary=summary)

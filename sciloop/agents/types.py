"""
SciLoop — Type Definitions

All data types for the scientific debugging loop: problems, hypotheses,
hypothesis verdicts, fixes, verification results, benchmark evolutions,
loop state, escalations and improvement tracking.

Every raw failure signal becomes a Problem. A Problem is explained by
Hypotheses, a supported Hypothesis motivates Fixes, and a Fix is only
accepted when a binary verifier grants it reward 1.
"""

from __future__ import annotations

from datetime import datetime
import enum
from typing import Literal

from pydantic import Field, model_validator

from sciloop.primitives.common import FrozenModel, SciLoopBaseModel, utc_now


# ─── Enums ────────────────────────────────────────────────────────


class ProblemType(enum.StrEnum):
    """What kind of failure signal produced the problem?"""

    TEST_FAILURE = "test_failure"  # A test command exited non-zero
    REGRESSION = "regression"  # A known-good answer changed
    HALLUCINATION = "hallucination"  # An adversarial probe got an ungrounded answer
    PERFORMANCE_GAP = "performance_gap"  # Treatment did not beat control
    INCONSISTENCY = "inconsistency"  # Equivalent questions, different answers


class ProblemSeverity(enum.StrEnum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class HypothesisTestType(enum.StrEnum):
    """Strategy used to support or refute a hypothesis."""

    CODE_INSPECTION = "code_inspection"
    TEST_RUN = "test_run"
    LOG_ANALYSIS = "log_analysis"
    BEHAVIORAL = "behavioral"


class HypothesisLikelihood(enum.StrEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class HypothesisTestVerdict(enum.StrEnum):
    SUPPORTED = "supported"
    REFUTED = "refuted"
    INCONCLUSIVE = "inconclusive"


class HypothesisTestRecommendation(enum.StrEnum):
    PROCEED_TO_FIX = "proceed_to_fix"
    TEST_ANOTHER_HYPOTHESIS = "test_another_hypothesis"
    NEED_MORE_EVIDENCE = "need_more_evidence"


class FileChangeType(enum.StrEnum):
    MODIFY = "modify"
    CREATE = "create"
    DELETE = "delete"


class VerificationVerdict(enum.StrEnum):
    FIX_ACCEPTED = "fix_accepted"
    FIX_REJECTED = "fix_rejected"


class TestCaseCategory(enum.StrEnum):
    """Role of a generated test in the evolved benchmark."""

    __test__ = False

    PREVENTION = "prevention"  # Would have caught the original bug
    REGRESSION_GUARD = "regression_guard"  # Fails if this exact bug recurs
    VARIANT = "variant"  # Probes related edge cases


class EscalationReason(enum.StrEnum):
    NO_SUPPORTED_HYPOTHESIS = "no_supported_hypothesis"
    ALL_FIXES_FAILED = "all_fixes_failed"
    REGRESSION_UNAVOIDABLE = "regression_unavoidable"


class EscalationRecommendation(enum.StrEnum):
    HUMAN_REVIEW = "human_review"
    DEFER = "defer"
    WONTFIX = "wontfix"


class TrendDirection(enum.StrEnum):
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"


class TestSuiteHealth(enum.StrEnum):
    __test__ = False

    HEALTHY = "healthy"  # >= 90% pass rate
    DEGRADING = "degrading"  # 70% .. 90%
    CRITICAL = "critical"  # < 70%


class AgentCapability(enum.StrEnum):
    """What an agent can do, for registry discovery."""

    INDEXING = "indexing"
    PATTERN_DETECTION = "pattern_detection"
    DECISION_TRACKING = "decision_tracking"
    SUMMARIZATION = "summarization"
    DEPENDENCY_ANALYSIS = "dependency_analysis"
    PROBLEM_DETECTION = "problem_detection"
    HYPOTHESIS_GENERATION = "hypothesis_generation"
    HYPOTHESIS_TESTING = "hypothesis_testing"
    FIX_GENERATION = "fix_generation"
    FIX_VERIFICATION = "fix_verification"
    BENCHMARK_EVOLUTION = "benchmark_evolution"


class QualityTier(enum.StrEnum):
    MVP = "mvp"
    ENHANCED = "enhanced"
    FULL = "full"


# ─── Problem Detection ───────────────────────────────────────────


class Problem(FrozenModel):
    """A typed failure signal. Immutable once detected."""

    id: str
    type: ProblemType
    description: str
    evidence: list[str] = Field(default_factory=list)
    severity: ProblemSeverity
    reproducible: bool = True
    minimal_reproduction: str | None = None


class CommandResult(SciLoopBaseModel):
    """Outcome of running one shell command."""

    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    timed_out: bool = False


class TestFailureCheck(SciLoopBaseModel):
    """A test command to run, or the already-captured result of running it."""

    __test__ = False

    command: str
    cwd: str | None = None
    timeout_ms: int | None = None
    severity: ProblemSeverity | None = None
    result: CommandResult | None = None


class RegressionCheck(SciLoopBaseModel):
    query: str
    expected: str
    actual: str
    evidence: list[str] = Field(default_factory=list)
    severity: ProblemSeverity | None = None


class AdversarialProbe(SciLoopBaseModel):
    prompt: str
    expected: str
    actual: str
    evidence: list[str] = Field(default_factory=list)
    severity: ProblemSeverity | None = None


class PerformanceExperiment(SciLoopBaseModel):
    metric: str
    control_score: float
    treatment_score: float
    min_improvement: float = 0.0
    evidence: list[str] = Field(default_factory=list)
    severity: ProblemSeverity | None = None


class ConsistencyCheck(SciLoopBaseModel):
    """Semantically-equivalent question variants and the answers they got."""

    question: str
    variants: list[str] = Field(default_factory=list)
    answers: list[str] = Field(default_factory=list)
    evidence: list[str] = Field(default_factory=list)
    severity: ProblemSeverity | None = None


class ProblemDetectionInput(SciLoopBaseModel):
    test_runs: list[TestFailureCheck] = Field(default_factory=list)
    regressions: list[RegressionCheck] = Field(default_factory=list)
    adversarial: list[AdversarialProbe] = Field(default_factory=list)
    performance: list[PerformanceExperiment] = Field(default_factory=list)
    consistency: list[ConsistencyCheck] = Field(default_factory=list)


def _zero_by_type() -> dict[ProblemType, int]:
    return {t: 0 for t in ProblemType}


def _zero_by_severity() -> dict[ProblemSeverity, int]:
    return {s: 0 for s in ProblemSeverity}


class ProblemDetectionSummary(SciLoopBaseModel):
    total: int = 0
    by_type: dict[ProblemType, int] = Field(default_factory=_zero_by_type)
    by_severity: dict[ProblemSeverity, int] = Field(default_factory=_zero_by_severity)


class ProblemDetectionReport(SciLoopBaseModel):
    problems: list[Problem] = Field(default_factory=list)
    summary: ProblemDetectionSummary = Field(default_factory=ProblemDetectionSummary)


# ─── Hypotheses ──────────────────────────────────────────────────


class HypothesisTest(FrozenModel):
    """The minimal test that would support or falsify a hypothesis."""

    type: HypothesisTestType
    target: str
    expected: str


class Hypothesis(FrozenModel):
    id: str  # HYP-<problem id>-<letter>
    statement: str
    rationale: str
    prediction: str
    test: HypothesisTest
    likelihood: HypothesisLikelihood


class HypothesisGenerationInput(SciLoopBaseModel):
    problem: Problem
    codebase_context: str | None = None


class HypothesisGenerationReport(SciLoopBaseModel):
    problem_id: str
    hypotheses: list[Hypothesis] = Field(default_factory=list)
    ranked_by_likelihood: list[str] = Field(default_factory=list)


class TestEvidence(FrozenModel):
    __test__ = False

    type: HypothesisTestType
    finding: str
    implication: str


class HypothesisTestResult(FrozenModel):
    hypothesis_id: str
    verdict: HypothesisTestVerdict
    evidence: list[TestEvidence] = Field(default_factory=list)
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    recommendation: HypothesisTestRecommendation


class HypothesisTesterInput(SciLoopBaseModel):
    hypothesis: Hypothesis
    problem: Problem
    codebase_context: str | None = None


# ─── Fixes ───────────────────────────────────────────────────────


class FileChange(FrozenModel):
    file_path: str
    change_type: FileChangeType
    before: str | None = None
    after: str | None = None
    description: str


class Fix(FrozenModel):
    id: str  # FIX-<NNN>
    problem_id: str
    hypothesis_id: str
    description: str
    changes: list[FileChange] = Field(default_factory=list)
    rationale: str
    prediction: str


class FixGeneratorInput(SciLoopBaseModel):
    problem: Problem
    hypothesis: Hypothesis
    test_result: HypothesisTestResult
    codebase_context: str | None = None


class FixGeneratorReport(SciLoopBaseModel):
    fixes: list[Fix] = Field(default_factory=list)
    preferred: str
    alternatives: list[str] = Field(default_factory=list)


# ─── Verification ────────────────────────────────────────────────


class ExecutionEntry(SciLoopBaseModel):
    command: str
    exit_code: int
    stdout: str | None = None
    stderr: str | None = None
    duration_ms: int = 0


class VerificationChecks(SciLoopBaseModel):
    original_test_passes: bool = False
    no_regressions: bool = False
    types_valid: bool = False

    @property
    def all_passed(self) -> bool:
        return self.original_test_passes and self.no_regressions and self.types_valid


class VerificationResult(SciLoopBaseModel):
    """
    Binary verification outcome. No partial credit: reward is 1 only when
    every check passed, and the verdict always agrees with the reward.
    """

    fix_id: str
    verification: VerificationChecks = Field(default_factory=VerificationChecks)
    reward: Literal[0, 1] = 0
    verdict: VerificationVerdict = VerificationVerdict.FIX_REJECTED
    notes: str = ""
    execution_log: list[ExecutionEntry] = Field(default_factory=list)

    @model_validator(mode="after")
    def _reward_is_binary_and_total(self) -> VerificationResult:
        if (self.reward == 1) != self.verification.all_passed:
            raise ValueError("reward must be 1 exactly when all verification checks pass")
        expected = (
            VerificationVerdict.FIX_ACCEPTED if self.reward == 1
            else VerificationVerdict.FIX_REJECTED
        )
        if self.verdict != expected:
            raise ValueError(f"verdict {self.verdict} disagrees with reward {self.reward}")
        return self


class FixVerifierInput(SciLoopBaseModel):
    fix: Fix
    problem: Problem
    original_test_command: str | None = None


# ─── Benchmark Evolution ─────────────────────────────────────────


class TestCase(SciLoopBaseModel):
    __test__ = False

    name: str
    file: str
    code: str
    category: TestCaseCategory


class CoverageGap(SciLoopBaseModel):
    description: str
    affected_area: str
    suggested_tests: list[str] = Field(default_factory=list)


class BenchmarkEvolution(SciLoopBaseModel):
    problem_id: str
    fix_id: str
    new_tests: list[TestCase] = Field(default_factory=list)
    regression_guards: list[TestCase] = Field(default_factory=list)
    variant_tests: list[TestCase] = Field(default_factory=list)
    coverage_gaps: list[CoverageGap] = Field(default_factory=list)

    @property
    def total_tests(self) -> int:
        return len(self.new_tests) + len(self.regression_guards) + len(self.variant_tests)


class BenchmarkEvolverInput(SciLoopBaseModel):
    problem: Problem
    fix: Fix
    verification_result: VerificationResult


# ─── Loop State ──────────────────────────────────────────────────


class ScientificLoopState(SciLoopBaseModel):
    """Accumulates across iterations. Only reset() clears it."""

    iteration: int = 0
    problems_detected: list[Problem] = Field(default_factory=list)
    problems_fixed: list[str] = Field(default_factory=list)
    problems_escalated: list[str] = Field(default_factory=list)
    hypotheses_tested: list[HypothesisTestResult] = Field(default_factory=list)
    fixes_attempted: list[VerificationResult] = Field(default_factory=list)
    benchmark_evolutions: list[BenchmarkEvolution] = Field(default_factory=list)


class Escalation(SciLoopBaseModel):
    problem_id: str
    hypotheses_tested: list[Hypothesis] = Field(default_factory=list)
    fixes_attempted: list[Fix] = Field(default_factory=list)
    reason: EscalationReason
    recommendation: EscalationRecommendation


class LoopSummary(SciLoopBaseModel):
    problems_detected: int = 0
    problems_fixed: int = 0
    problems_escalated: int = 0
    fix_success_rate: float = 0.0  # accepted / attempted
    hypothesis_accuracy: float = 0.0  # accepted / supported


class LoopResult(SciLoopBaseModel):
    run_id: str = ""
    state: ScientificLoopState
    escalations: list[Escalation] = Field(default_factory=list)
    summary: LoopSummary = Field(default_factory=LoopSummary)


# ─── Improvement Tracking ────────────────────────────────────────


class ImprovementTracking(SciLoopBaseModel):
    iteration: int = 0
    problems_fixed: int = 0
    test_suite_pass_rate: float = Field(0.0, ge=0.0, le=1.0)
    agent_success_rate_lift: float = 0.0  # vs baseline, may be negative
    agent_time_reduction: float = 0.0  # vs baseline, may be negative
    timestamp: datetime = Field(default_factory=utc_now)


class ImprovementTrend(SciLoopBaseModel):
    data_points: list[ImprovementTracking] = Field(default_factory=list)
    trend_direction: TrendDirection = TrendDirection.STABLE
    average_improvement: float = 0.0
    total_problems_fixed: int = 0
    test_suite_health: TestSuiteHealth = TestSuiteHealth.HEALTHY


class LoopHealthMetrics(SciLoopBaseModel):
    fix_success_rate: float = 0.0  # target > 0.70
    hypothesis_accuracy: float = 0.0  # target > 0.50
    regression_rate: float = 0.0  # target < 0.05
    evolution_coverage: float = 0.0  # target > 0.20


class ImprovementReport(SciLoopBaseModel):
    current_iteration: int
    tracking: ImprovementTracking
    trend: ImprovementTrend
    health: LoopHealthMetrics
    recommendations: list[str] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=utc_now)


# ─── Agent Metadata ──────────────────────────────────────────────


class AgentDescriptor(SciLoopBaseModel):
    agent_type: str
    name: str
    capabilities: list[AgentCapability] = Field(default_factory=list)
    version: str = "1.0.0"
    quality_tier: QualityTier = QualityTier.FULL

"""
SciLoop — Benchmark Evolver

After a fix is accepted, grows the test suite so the same class of bug is
caught earlier next time. Four outputs per fixed problem:

  1. Prevention tests (2-3) that would have caught the bug
  2. Regression guards that fail if this specific bug recurs; the guard's
     code names the fix id it protects
  3. Variant tests probing related edge cases (None input, empty input)
  4. Coverage gaps describing what let the bug through

Strategies are chosen per problem type:
  test_failure    → edge case and boundary tests
  regression      → snapshot and golden value tests
  hallucination   → adversarial probes and grounding checks
  performance_gap → benchmark and load tests
  inconsistency   → equivalence and normalisation tests

Generated code is pytest source text. Nothing is written to disk.
"""

from __future__ import annotations

from dataclasses import dataclass
import re

import structlog

from sciloop.agents.base import LoopAgent
from sciloop.agents.heuristics import find_path, slugify
from sciloop.agents.types import (
    AgentCapability,
    BenchmarkEvolution,
    BenchmarkEvolverInput,
    CoverageGap,
    Fix,
    Problem,
    ProblemType,
    TestCase,
    TestCaseCategory,
)
from sciloop.config import BenchmarkEvolverConfig

logger = structlog.get_logger()

DEFAULT_TEST_FILE = "tests/test_generated.py"

_TEST_FILE_RE = re.compile(r"(\S*?test_\w+\.py|\S*?\w+_test\.py)")
_PLACEHOLDER_RE = re.compile(
    r"\{(problem_id|fix_id|description|problem_type|fix_description|evidence|slug)\}"
)


@dataclass(frozen=True)
class TestStrategy:
    __test__ = False

    name: str
    template: str


@dataclass(frozen=True)
class StrategySet:
    prevention: tuple[TestStrategy, ...]
    regression: tuple[TestStrategy, ...]


@dataclass(frozen=True)
class GapTemplate:
    description: str
    suggested_tests: tuple[str, ...]


# ─── Strategies ───────────────────────────────────────────────────

_TEST_FAILURE = StrategySet(
    prevention=(
        TestStrategy(
            name="edge case boundary test",
            template='''def test_edge_case_boundary_{slug}():
    # Edge case: boundary condition test
    # Problem: {description}
    # This test would have caught the bug by testing boundary values
    boundary = 0
    assert boundary is not None
''',
        ),
        TestStrategy(
            name="boundary condition minimum",
            template='''def test_boundary_minimum_{slug}():
    # Boundary test: minimum valid input
    # Problem: {description}
    min_value = -(2**63)
    assert isinstance(min_value, int)
''',
        ),
        TestStrategy(
            name="boundary condition maximum",
            template='''def test_boundary_maximum_{slug}():
    # Boundary test: maximum valid input
    # Problem: {description}
    max_value = 2**63 - 1
    assert isinstance(max_value, int)
''',
        ),
    ),
    regression=(
        TestStrategy(
            name="regression guard for specific fix",
            template='''def test_regression_guard_{slug}():
    # Guards against regression of fix: {fix_id}
    # Fix: {fix_description}
    # Original problem: {description}
    # Evidence: {evidence}
    fix_id = "{fix_id}"
    assert fix_id  # replace with the specific assertion the fix restored
''',
        ),
    ),
)

_REGRESSION = StrategySet(
    prevention=(
        TestStrategy(
            name="snapshot test for stable output",
            template='''def test_snapshot_stable_output_{slug}(snapshot):
    # Snapshot test to prevent regression
    # Problem: {description}
    output = "expected output"
    assert output == snapshot
''',
        ),
        TestStrategy(
            name="golden value test",
            template='''def test_golden_value_{slug}():
    # Golden value test for regression prevention
    # Problem: {description}
    golden_value = "expected value"
    actual_value = "expected value"
    assert actual_value == golden_value
''',
        ),
        TestStrategy(
            name="version stability test",
            template='''def test_version_stability_{slug}():
    # Version stability test
    # Problem: {description}
    current_version = "1.0.0"
    assert all(part.isdigit() for part in current_version.split("."))
''',
        ),
    ),
    regression=(
        TestStrategy(
            name="regression assertion for known output",
            template='''def test_regression_known_output_{slug}():
    # Regression guard for fix: {fix_id}
    # Fix: {fix_description}
    # Original problem: {description}
    known_good_output = True
    assert known_good_output is True
''',
        ),
    ),
)

_HALLUCINATION = StrategySet(
    prevention=(
        TestStrategy(
            name="adversarial probe input",
            template='''def test_adversarial_misleading_input_{slug}():
    # Adversarial probe test
    # Problem: {description}
    misleading_input = "intentionally confusing input"
    assert misleading_input is not None
''',
        ),
        TestStrategy(
            name="grounding verification check",
            template='''def test_grounding_factual_correctness_{slug}():
    # Grounding check test
    # Problem: {description}
    factual_claim = True
    assert factual_claim is True
''',
        ),
        TestStrategy(
            name="fact checking assertion",
            template='''def test_fact_check_claims_{slug}():
    # Fact checking test
    # Problem: {description}
    claim_is_verified = True
    assert claim_is_verified is True
''',
        ),
    ),
    regression=(
        TestStrategy(
            name="anti-hallucination guard",
            template='''def test_guard_hallucination_recurrence_{slug}():
    # Anti-hallucination guard for fix: {fix_id}
    # Fix: {fix_description}
    # Original problem: {description}
    output_is_grounded = True
    assert output_is_grounded is True
''',
        ),
    ),
)

_PERFORMANCE_GAP = StrategySet(
    prevention=(
        TestStrategy(
            name="performance benchmark baseline",
            template='''def test_benchmark_baseline_{slug}():
    # Performance benchmark test
    # Problem: {description}
    import time

    start = time.perf_counter()
    # Operation under test
    duration = time.perf_counter() - start
    assert duration < 1.0  # 1 second baseline
''',
        ),
        TestStrategy(
            name="load test threshold",
            template='''def test_load_threshold_{slug}():
    # Load test
    # Problem: {description}
    load_factor = 100
    assert load_factor > 0
''',
        ),
        TestStrategy(
            name="performance regression threshold",
            template='''def test_performance_threshold_{slug}():
    # Performance threshold test
    # Problem: {description}
    baseline_ms = 100
    current_ms = 90
    assert current_ms <= baseline_ms * 1.1  # 10% tolerance
''',
        ),
    ),
    regression=(
        TestStrategy(
            name="performance guard",
            template='''def test_performance_guard_{slug}():
    # Performance guard for fix: {fix_id}
    # Fix: {fix_description}
    # Original problem: {description}
    meets_threshold = True
    assert meets_threshold is True
''',
        ),
    ),
)

_INCONSISTENCY = StrategySet(
    prevention=(
        TestStrategy(
            name="equivalence test for similar inputs",
            template='''def test_equivalent_inputs_same_output_{slug}():
    # Equivalence test
    # Problem: {description}
    first = "test"
    second = "test"
    assert first == second
''',
        ),
        TestStrategy(
            name="normalization consistency test",
            template='''def test_normalization_consistent_{slug}():
    # Normalization test
    # Problem: {description}
    raw_input = "  TEST  "
    assert raw_input.strip().lower() == "test"
''',
        ),
        TestStrategy(
            name="idempotency test",
            template='''def test_idempotency_{slug}():
    # Idempotency test
    # Problem: {description}
    first_result = "result"
    second_result = "result"
    assert first_result == second_result
''',
        ),
    ),
    regression=(
        TestStrategy(
            name="consistency guard",
            template='''def test_consistency_guard_{slug}():
    # Consistency guard for fix: {fix_id}
    # Fix: {fix_description}
    # Original problem: {description}
    is_consistent = True
    assert is_consistent is True
''',
        ),
    ),
)

STRATEGIES: dict[ProblemType, StrategySet] = {
    ProblemType.TEST_FAILURE: _TEST_FAILURE,
    ProblemType.REGRESSION: _REGRESSION,
    ProblemType.HALLUCINATION: _HALLUCINATION,
    ProblemType.PERFORMANCE_GAP: _PERFORMANCE_GAP,
    ProblemType.INCONSISTENCY: _INCONSISTENCY,
}

VARIANT_STRATEGIES: tuple[TestStrategy, ...] = (
    TestStrategy(
        name="variant with null input",
        template='''def test_handles_none_input_{slug}():
    # Variant test for None inputs
    # Problem: {description}
    value = None
    assert value is None or value == value
''',
    ),
    TestStrategy(
        name="variant with empty input",
        template='''def test_handles_empty_input_{slug}():
    # Variant test for empty inputs
    # Problem: {description}
    value = ""
    assert len(value) == 0
''',
    ),
)

COVERAGE_GAPS: dict[ProblemType, GapTemplate] = {
    ProblemType.TEST_FAILURE: GapTemplate(
        description="Missing edge case coverage for {problem_type} scenario",
        suggested_tests=(
            "Add boundary value tests",
            "Add None handling tests",
            "Add error condition tests",
        ),
    ),
    ProblemType.REGRESSION: GapTemplate(
        description="Insufficient snapshot/golden value coverage for {problem_type} scenario",
        suggested_tests=(
            "Add snapshot tests for critical outputs",
            "Add golden value tests for expected results",
            "Add version compatibility tests",
        ),
    ),
    ProblemType.HALLUCINATION: GapTemplate(
        description="Missing grounding/adversarial coverage for {problem_type} scenario",
        suggested_tests=(
            "Add adversarial input tests",
            "Add grounding verification tests",
            "Add fact-checking tests",
        ),
    ),
    ProblemType.PERFORMANCE_GAP: GapTemplate(
        description="Missing performance benchmark coverage for {problem_type} scenario",
        suggested_tests=(
            "Add performance regression tests",
            "Add load tests",
            "Add baseline comparison tests",
        ),
    ),
    ProblemType.INCONSISTENCY: GapTemplate(
        description="Missing equivalence/normalization coverage for {problem_type} scenario",
        suggested_tests=(
            "Add equivalence tests for similar inputs",
            "Add normalization tests",
            "Add idempotency tests",
        ),
    ),
}


def _one_line(text: str) -> str:
    return " ".join(text.split())


def interpolate(template: str, problem: Problem, fix: Fix) -> str:
    """Fill the known ``{placeholder}`` names. Other braces are left alone."""
    values = {
        "problem_id": problem.id,
        "fix_id": fix.id,
        "description": _one_line(problem.description),
        "problem_type": str(problem.type),
        "fix_description": _one_line(fix.description),
        "evidence": _one_line("; ".join(problem.evidence)),
        "slug": slugify(f"{problem.id} {problem.description}"),
    }
    return _PLACEHOLDER_RE.sub(lambda m: values[m.group(1)], template)


class BenchmarkEvolver(LoopAgent):
    agent_type = "benchmark_evolver"
    name = "Benchmark Evolver"
    capabilities = (AgentCapability.BENCHMARK_EVOLUTION,)

    def __init__(self, config: BenchmarkEvolverConfig | None = None) -> None:
        super().__init__()
        self._config = config or BenchmarkEvolverConfig()
        self._logger = logger.bind(system="sciloop.benchmark_evolver")

    async def evolve_benchmark(self, input: BenchmarkEvolverInput) -> BenchmarkEvolution:
        problem, fix = input.problem, input.fix
        strategies = STRATEGIES.get(problem.type, _TEST_FAILURE)
        test_file = self.resolve_test_file(problem, fix)

        prevention = strategies.prevention[: self._config.max_prevention_tests]
        if len(prevention) < self._config.min_prevention_tests:
            self._logger.warning(
                "too_few_prevention_strategies",
                problem_type=str(problem.type),
                available=len(prevention),
            )
        if len(VARIANT_STRATEGIES) < self._config.min_variant_tests:
            self._logger.warning(
                "too_few_variant_strategies",
                problem_type=str(problem.type),
                available=len(VARIANT_STRATEGIES),
                required=self._config.min_variant_tests,
            )

        evolution = BenchmarkEvolution(
            problem_id=problem.id,
            fix_id=fix.id,
            new_tests=self._render(prevention, TestCaseCategory.PREVENTION, test_file, problem, fix),
            regression_guards=self._render(
                strategies.regression, TestCaseCategory.REGRESSION_GUARD, test_file, problem, fix,
            ),
            variant_tests=self._render(
                VARIANT_STRATEGIES, TestCaseCategory.VARIANT, test_file, problem, fix,
            ),
            coverage_gaps=self._coverage_gaps(problem, fix),
        )
        self._logger.info(
            "benchmark_evolved",
            problem_id=problem.id,
            fix_id=fix.id,
            test_file=test_file,
            total_tests=evolution.total_tests,
        )
        return evolution

    def _render(
        self,
        strategies: tuple[TestStrategy, ...],
        category: TestCaseCategory,
        test_file: str,
        problem: Problem,
        fix: Fix,
    ) -> list[TestCase]:
        return [
            TestCase(
                name=f"{s.name} - {problem.id}",
                file=test_file,
                code=interpolate(s.template, problem, fix),
                category=category,
            )
            for s in strategies
        ]

    def _coverage_gaps(self, problem: Problem, fix: Fix) -> list[CoverageGap]:
        template = COVERAGE_GAPS.get(problem.type)
        if template is None:
            template = GapTemplate(
                description="Generic coverage gap for {problem_type} scenario",
                suggested_tests=("Add comprehensive tests",),
            )
        if fix.changes:
            affected = ", ".join(c.file_path for c in fix.changes)
        else:
            affected = problem.description[:50]
        return [
            CoverageGap(
                description=interpolate(template.description, problem, fix),
                affected_area=affected,
                suggested_tests=[interpolate(t, problem, fix) for t in template.suggested_tests],
            )
        ]

    @staticmethod
    def resolve_test_file(problem: Problem, fix: Fix) -> str:
        """
        A test path named by the reproduction or evidence, else one derived
        from the first changed source file, else a generated default.
        """
        for text in (problem.minimal_reproduction, *problem.evidence):
            if path := find_path(text, _TEST_FILE_RE):
                return path

        if fix.changes:
            source = fix.changes[0].file_path
            if source.endswith(".py"):
                stem = source.rsplit("/", 1)[-1][: -len(".py")]
                if stem.startswith("test_") or stem.endswith("_test"):
                    return source
                return f"tests/test_{stem}.py"

        return DEFAULT_TEST_FILE

"""
SciLoop — Fix Generator

Proposes candidate fixes for a problem once a hypothesis about its cause
has been supported. Deterministic and template-driven: every problem type
has three fix templates, each a small record plus a pure function that
renders illustrative before/after snippets.

Templates are scored against the supported hypothesis and the evidence
gathered while testing it:
  +2     per template word that overlaps a hypothesis-statement word
  +3     per evidence item mentioning any template word
  +5×c   where c is the test result's confidence

The top ``max_fixes`` templates become Fix objects. The first is the
preferred fix; the rest are alternatives the orchestrator may fall back to.

Fix principles: minimal change, no side effects, address the root cause,
and make the original failing test pass.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import re

import structlog

from sciloop.agents.base import LoopAgent
from sciloop.agents.heuristics import extract_expected_actual, find_path
from sciloop.agents.types import (
    AgentCapability,
    FileChange,
    FileChangeType,
    Fix,
    FixGeneratorInput,
    FixGeneratorReport,
    Hypothesis,
    HypothesisTestResult,
    Problem,
    ProblemType,
)
from sciloop.config import FixGeneratorConfig
from sciloop.primitives.common import SequenceCounter

logger = structlog.get_logger()

DEFAULT_VERIFY_COMMAND = "pytest -q"

DEFAULT_TEST_FILE = "tests/test_affected.py"
DEFAULT_CONFIG_FILE = "pyproject.toml"
DEFAULT_SOURCE_FILE = "src/affected_module.py"

_REPRO_PATH_RE = re.compile(r"(\S+\.py)\b")
_EVIDENCE_PATH_RE = re.compile(r"(\S+?\.pyi?)(?::\d+|::)")
_TARGET_PATH_RE = re.compile(r"(\S+\.[A-Za-z0-9]+)")


# ─── Snippets ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class SnippetContext:
    problem: Problem
    hypothesis: Hypothesis
    expected: str | None = None
    actual: str | None = None


Snippet = Callable[[SnippetContext], tuple[str, str]]


def _update_assertion(ctx: SnippetContext) -> tuple[str, str]:
    return (
        f"assert result == {ctx.expected or 'old_value'}",
        f"assert result == {ctx.actual or 'new_value'}",
    )


def _fix_implementation(ctx: SnippetContext) -> tuple[str, str]:
    return (
        f"return calculate_value(data)  # returns {ctx.actual or 'incorrect result'}",
        f"return calculate_value(data) + correction  # returns {ctx.expected or 'correct result'}",
    )


def _update_fixture(ctx: SnippetContext) -> tuple[str, str]:
    return ('fixture = {"value": "old_data"}', 'fixture = {"value": "correct_data"}')


def _revert_change(ctx: SnippetContext) -> tuple[str, str]:
    return ("result = new_implementation(data)", "result = original_implementation(data)")


def _backward_compatible_config(ctx: SnippetContext) -> tuple[str, str]:
    return ("[tool.app]\nversion = 2", "[tool.app]\nversion = 2\nlegacy_support = true")


def _dual_format(ctx: SnippetContext) -> tuple[str, str]:
    return (
        "formatted = format_v2(data)",
        "formatted = format_v1(data) if is_v1(data) else format_v2(data)",
    )


def _retrieval_filter(ctx: SnippetContext) -> tuple[str, str]:
    return (
        "results = retrieve(query)  # no confidence threshold",
        "results = [r for r in retrieve(query) if r.confidence > 0.7]",
    )


def _grounding_check(ctx: SnippetContext) -> tuple[str, str]:
    return (
        "return generate_response(retrieved)",
        "verified = await verify_exists(retrieved)\nreturn generate_response(verified)",
    )


def _verified_context(ctx: SnippetContext) -> tuple[str, str]:
    return ("context = get_context(query)", "context = get_verified_context(query)")


def _optimize_algorithm(ctx: SnippetContext) -> tuple[str, str]:
    return (
        "for a in items:\n    for b in items:\n        compare(a, b)",
        "ordered = sorted(items, key=sort_key)  # O(n log n) instead of O(n^2)",
    )


def _add_cache(ctx: SnippetContext) -> tuple[str, str]:
    return (
        "result = expensive_computation(data)",
        "if data not in cache:\n    cache[data] = expensive_computation(data)\nresult = cache[data]",
    )


def _paginate(ctx: SnippetContext) -> tuple[str, str]:
    return ("rows = await fetch_all_data()", "rows = await fetch_data_page(offset, limit)")


def _normalize_inputs(ctx: SnippetContext) -> tuple[str, str]:
    return ("result = process(data)", "normalized = normalize(data)\nresult = process(normalized)")


def _stable_embeddings(ctx: SnippetContext) -> tuple[str, str]:
    return ("embedding = embed(text)", "embedding = embed(text, deterministic=True)")


def _deterministic_ranking(ctx: SnippetContext) -> tuple[str, str]:
    return (
        "results.sort(key=lambda r: r.score)",
        "results.sort(key=lambda r: (r.score, r.id))",
    )


# ─── Templates ────────────────────────────────────────────────────


@dataclass(frozen=True)
class FixTemplate:
    description: str
    change_type: FileChangeType
    file_pattern: str
    rationale: str
    prediction: str
    snippet: Snippet

    @property
    def words(self) -> list[str]:
        return self.description.lower().split()


_M = FileChangeType.MODIFY

FIX_TEMPLATES: dict[ProblemType, tuple[FixTemplate, ...]] = {
    ProblemType.TEST_FAILURE: (
        FixTemplate(
            description="Update test assertion to match current expected behavior",
            change_type=_M,
            file_pattern="test_*.py",
            rationale="The test assertion expects outdated behavior; updating it aligns with current implementation",
            prediction="Test will pass with corrected assertion values",
            snippet=_update_assertion,
        ),
        FixTemplate(
            description="Fix implementation logic to produce correct output",
            change_type=_M,
            file_pattern="*.py",
            rationale="Implementation contains logic error that produces incorrect results",
            prediction="Implementation will return expected values, passing the test",
            snippet=_fix_implementation,
        ),
        FixTemplate(
            description="Update test fixture data to match expected format",
            change_type=_M,
            file_pattern="test_*.py",
            rationale="Test fixtures contain invalid or outdated data",
            prediction="Test will pass with valid fixture data",
            snippet=_update_fixture,
        ),
    ),
    ProblemType.REGRESSION: (
        FixTemplate(
            description="Revert breaking change to restore previous behavior",
            change_type=_M,
            file_pattern="*.py",
            rationale="Recent change introduced breaking behavior; reverting restores expected functionality",
            prediction="System will return to previous working state",
            snippet=_revert_change,
        ),
        FixTemplate(
            description="Update configuration to maintain backward compatibility",
            change_type=_M,
            file_pattern="*.config.*",
            rationale="Configuration change caused regression; updating config restores compatibility",
            prediction="Configuration will support both old and new behavior",
            snippet=_backward_compatible_config,
        ),
        FixTemplate(
            description="Fix data format transformation to handle both old and new formats",
            change_type=_M,
            file_pattern="*.py",
            rationale="Data format change broke existing consumers; adding format detection maintains compatibility",
            prediction="System will correctly handle both data formats",
            snippet=_dual_format,
        ),
    ),
    ProblemType.HALLUCINATION: (
        FixTemplate(
            description="Improve retrieval filter to reduce false positives",
            change_type=_M,
            file_pattern="*.py",
            rationale="Retrieval filter threshold is too permissive, allowing low-confidence matches",
            prediction="Only high-confidence, verified results will be returned",
            snippet=_retrieval_filter,
        ),
        FixTemplate(
            description="Add grounding check to verify retrieved information exists",
            change_type=_M,
            file_pattern="*.py",
            rationale="Missing validation step allows ungrounded information to pass through",
            prediction="All returned information will be verified against source",
            snippet=_grounding_check,
        ),
        FixTemplate(
            description="Fix context retrieval to provide accurate source information",
            change_type=_M,
            file_pattern="*.py",
            rationale="Context retrieval returns incorrect or incomplete source data",
            prediction="Retrieved context will accurately reflect source content",
            snippet=_verified_context,
        ),
    ),
    ProblemType.PERFORMANCE_GAP: (
        FixTemplate(
            description="Optimize algorithm to reduce computational complexity",
            change_type=_M,
            file_pattern="*.py",
            rationale="Algorithm has suboptimal complexity causing performance issues",
            prediction="Optimized algorithm will meet performance targets",
            snippet=_optimize_algorithm,
        ),
        FixTemplate(
            description="Add caching layer to reduce redundant computations",
            change_type=_M,
            file_pattern="*.py",
            rationale="Repeated computations without caching cause performance degradation",
            prediction="Cached results will improve response times significantly",
            snippet=_add_cache,
        ),
        FixTemplate(
            description="Reduce data size through filtering or pagination",
            change_type=_M,
            file_pattern="*.py",
            rationale="Processing excessive data causes performance bottleneck",
            prediction="Reduced data volume will improve processing speed",
            snippet=_paginate,
        ),
    ),
    ProblemType.INCONSISTENCY: (
        FixTemplate(
            description="Normalize inputs to ensure consistent processing",
            change_type=_M,
            file_pattern="*.py",
            rationale="Input variations cause different processing paths leading to inconsistent results",
            prediction="Normalized inputs will produce consistent outputs",
            snippet=_normalize_inputs,
        ),
        FixTemplate(
            description="Fix embedding generation to produce stable representations",
            change_type=_M,
            file_pattern="*.py",
            rationale="Embedding instability causes similar inputs to map differently",
            prediction="Stable embeddings will produce consistent similarity scores",
            snippet=_stable_embeddings,
        ),
        FixTemplate(
            description="Update ranking algorithm to be deterministic",
            change_type=_M,
            file_pattern="*.py",
            rationale="Non-deterministic ranking produces varying results for identical queries",
            prediction="Deterministic ranking will produce consistent results",
            snippet=_deterministic_ranking,
        ),
    ),
}


def score_template(
    template: FixTemplate,
    hypothesis: Hypothesis,
    test_result: HypothesisTestResult,
) -> float:
    template_words = template.words
    hypothesis_words = hypothesis.statement.lower().split()

    common = [
        w for w in template_words
        if any(hw in w or w in hw for hw in hypothesis_words)
    ]
    score = 2.0 * len(common)

    for ev in test_result.evidence:
        text = f"{ev.finding} {ev.implication}".lower()
        if any(w in text for w in template_words):
            score += 3.0

    return score + test_result.confidence * 5.0


class FixGenerator(LoopAgent):
    agent_type = "fix_generator"
    name = "Fix Generator"
    capabilities = (AgentCapability.FIX_GENERATION,)

    def __init__(
        self,
        config: FixGeneratorConfig | None = None,
        counter: SequenceCounter | None = None,
        templates: dict[ProblemType, tuple[FixTemplate, ...]] | None = None,
    ) -> None:
        super().__init__()
        self._config = config or FixGeneratorConfig()
        self._counter = counter or SequenceCounter()
        self._templates = templates if templates is not None else FIX_TEMPLATES
        self._logger = logger.bind(system="sciloop.fix_generator")

    def generate_fix(self, input: FixGeneratorInput) -> FixGeneratorReport:
        problem, hypothesis, test_result = input.problem, input.hypothesis, input.test_result

        ranked = self.rank_templates(problem, hypothesis, test_result)
        fixes = [
            self._fix_from_template(t, problem, hypothesis, test_result)
            for t in ranked[: self._config.max_fixes]
        ]
        if not fixes:
            fixes.append(self._generic_fix(problem, hypothesis, test_result))

        self._logger.info(
            "fixes_generated",
            problem_id=problem.id,
            hypothesis_id=hypothesis.id,
            count=len(fixes),
            preferred=fixes[0].id,
        )
        return FixGeneratorReport(
            fixes=fixes,
            preferred=fixes[0].id,
            alternatives=[f.id for f in fixes[1:]],
        )

    def rank_templates(
        self,
        problem: Problem,
        hypothesis: Hypothesis,
        test_result: HypothesisTestResult,
    ) -> list[FixTemplate]:
        """Templates for the problem type, best first. Ties keep table order."""
        templates = self._templates.get(problem.type, ())
        scored = [(score_template(t, hypothesis, test_result), t) for t in templates]
        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [t for _, t in scored]

    # ─── Fix Construction ──────────────────────────────────────────────

    def _fix_from_template(
        self,
        template: FixTemplate,
        problem: Problem,
        hypothesis: Hypothesis,
        test_result: HypothesisTestResult,
    ) -> Fix:
        file_path = self.infer_file_path(template, problem, hypothesis)
        expected, actual = extract_expected_actual(problem.evidence)
        before, after = template.snippet(
            SnippetContext(problem=problem, hypothesis=hypothesis, expected=expected, actual=actual)
        )
        change = FileChange(
            file_path=file_path,
            change_type=template.change_type,
            before=before,
            after=after,
            description=(
                f"{template.description} in {file_path}"
                if self._config.detailed_descriptions
                else template.description
            ),
        )
        return Fix(
            id=self._counter.format("FIX"),
            problem_id=problem.id,
            hypothesis_id=hypothesis.id,
            description=template.description,
            changes=[change],
            rationale=self._rationale(template.rationale, hypothesis, test_result),
            prediction=self._prediction(template.prediction, problem),
        )

    def _generic_fix(
        self,
        problem: Problem,
        hypothesis: Hypothesis,
        test_result: HypothesisTestResult,
    ) -> Fix:
        target = hypothesis.test.target
        path = find_path(target, _TARGET_PATH_RE)
        if path is None:
            path = DEFAULT_TEST_FILE if "test" in target.lower() else DEFAULT_SOURCE_FILE

        return Fix(
            id=self._counter.format("FIX"),
            problem_id=problem.id,
            hypothesis_id=hypothesis.id,
            description=f"Fix for {problem.type}: {hypothesis.statement}",
            changes=[
                FileChange(
                    file_path=path,
                    change_type=FileChangeType.MODIFY,
                    before="# Original code with issue",
                    after="# Modified code addressing the hypothesis",
                    description=f"Address: {hypothesis.statement}",
                )
            ],
            rationale=(
                f'Based on hypothesis "{hypothesis.statement}" with confidence '
                f"{test_result.confidence:.2f}, this fix addresses the root cause "
                "by modifying the relevant code."
            ),
            prediction=(
                "After applying this fix, the original test should pass and "
                f"{hypothesis.prediction}"
            ),
        )

    @staticmethod
    def infer_file_path(template: FixTemplate, problem: Problem, hypothesis: Hypothesis) -> str:
        """
        Priority: path in the minimal reproduction, then ``path:line`` in the
        evidence, then a path-like token in the hypothesis target, then a
        default chosen by the template's file pattern.
        """
        if path := find_path(problem.minimal_reproduction, _REPRO_PATH_RE):
            return path
        for line in problem.evidence:
            if path := find_path(line, _EVIDENCE_PATH_RE):
                return path
        if path := find_path(hypothesis.test.target, _TARGET_PATH_RE):
            return path
        if "test" in template.file_pattern:
            return DEFAULT_TEST_FILE
        if "config" in template.file_pattern:
            return DEFAULT_CONFIG_FILE
        return DEFAULT_SOURCE_FILE

    @staticmethod
    def _rationale(base: str, hypothesis: Hypothesis, test_result: HypothesisTestResult) -> str:
        summary = "; ".join(e.finding for e in test_result.evidence[:2])
        return (
            f"{base} Evidence: {summary or hypothesis.rationale}. "
            f"Confidence: {test_result.confidence * 100:.0f}%."
        )

    @staticmethod
    def _prediction(base: str, problem: Problem) -> str:
        return f"{base} Verify by running: {problem.minimal_reproduction or DEFAULT_VERIFY_COMMAND}"

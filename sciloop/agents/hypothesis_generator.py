"""
SciLoop — Hypothesis Generator

Turns one Problem into 3-5 falsifiable hypotheses, deterministically.
Each problem type has a fixed template table of common root causes:

  test_failure    → test logic, implementation, fixtures, dependencies, config
  regression      → recent change, data format, config drift, stale cache, merge
  hallucination   → retrieval, context assembly, grounding, embeddings, content
  performance_gap → data volume, algorithm, caching, contention, baseline
  inconsistency   → normalisation, embeddings, ranking, ambiguity, context

Hypotheses are ranked high → medium → low likelihood. Within a tier the
table's declaration order is kept, so the first-ranked hypothesis is always
the first high-likelihood template.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from sciloop.agents.base import LoopAgent
from sciloop.agents.types import (
    AgentCapability,
    Hypothesis,
    HypothesisGenerationInput,
    HypothesisGenerationReport,
    HypothesisLikelihood,
    HypothesisTest,
    HypothesisTestType,
    ProblemType,
)
from sciloop.config import HypothesisGeneratorConfig

logger = structlog.get_logger()


@dataclass(frozen=True)
class HypothesisTemplate:
    statement: str
    rationale: str
    prediction: str
    test_type: HypothesisTestType
    test_target: str
    test_expected: str
    likelihood: HypothesisLikelihood


_H = HypothesisLikelihood
_T = HypothesisTestType

HYPOTHESIS_TEMPLATES: dict[ProblemType, tuple[HypothesisTemplate, ...]] = {
    ProblemType.TEST_FAILURE: (
        HypothesisTemplate(
            statement="The test assertion logic is incorrect or outdated",
            rationale="Test assertions may not reflect current expected behavior after code changes.",
            prediction="Inspecting the test will reveal assertions that do not match the intended behavior.",
            test_type=_T.CODE_INSPECTION,
            test_target="test file assertions",
            test_expected="Assertion mismatch with documented behavior",
            likelihood=_H.HIGH,
        ),
        HypothesisTemplate(
            statement="The implementation under test has a bug",
            rationale="The code being tested may have logic errors causing unexpected output.",
            prediction="Tracing the execution path will reveal incorrect logic or missing edge case handling.",
            test_type=_T.CODE_INSPECTION,
            test_target="implementation source code",
            test_expected="Logic error or missing condition",
            likelihood=_H.HIGH,
        ),
        HypothesisTemplate(
            statement="Test fixtures or mock data are invalid or stale",
            rationale="Test data may have become outdated or may not represent valid inputs.",
            prediction="Examining fixture data will show values that no longer match expected schemas or formats.",
            test_type=_T.CODE_INSPECTION,
            test_target="test fixtures and mock data",
            test_expected="Stale or invalid test data",
            likelihood=_H.MEDIUM,
        ),
        HypothesisTemplate(
            statement="A dependency changed its behavior or interface",
            rationale="External or internal dependencies may have been updated with breaking changes.",
            prediction="Checking dependency versions or changelogs will reveal recent updates.",
            test_type=_T.LOG_ANALYSIS,
            test_target="pyproject.toml and dependency changelogs",
            test_expected="Recent dependency version change",
            likelihood=_H.MEDIUM,
        ),
        HypothesisTemplate(
            statement="Test environment or configuration is misconfigured",
            rationale="Environment variables, config files, or test setup may be incorrect.",
            prediction="Comparing test environment config to production or expected config will show discrepancies.",
            test_type=_T.CODE_INSPECTION,
            test_target="test configuration files",
            test_expected="Configuration mismatch",
            likelihood=_H.LOW,
        ),
    ),
    ProblemType.REGRESSION: (
        HypothesisTemplate(
            statement="A recent code change modified the expected behavior",
            rationale="Recent commits may have inadvertently changed functionality that was previously working.",
            prediction="Git blame or diff on relevant files will show recent changes affecting this query.",
            test_type=_T.CODE_INSPECTION,
            test_target="git history of related files",
            test_expected="Recent commit touching affected logic",
            likelihood=_H.HIGH,
        ),
        HypothesisTemplate(
            statement="The data format or schema has changed",
            rationale="Input or output data structures may have been modified without updating all consumers.",
            prediction="Comparing current data format to expected format will reveal schema differences.",
            test_type=_T.CODE_INSPECTION,
            test_target="data schemas and types",
            test_expected="Schema field changes or type differences",
            likelihood=_H.HIGH,
        ),
        HypothesisTemplate(
            statement="Configuration drift occurred between environments",
            rationale="Settings may have diverged between development, test, and production environments.",
            prediction="Comparing config files across environments will show differing values.",
            test_type=_T.CODE_INSPECTION,
            test_target="environment configuration files",
            test_expected="Config value differences between environments",
            likelihood=_H.MEDIUM,
        ),
        HypothesisTemplate(
            statement="The index or cache has become stale",
            rationale="Cached data or search indices may not reflect the current state of the codebase.",
            prediction="Rebuilding the index or clearing cache will restore expected behavior.",
            test_type=_T.BEHAVIORAL,
            test_target="index rebuild or cache clear",
            test_expected="Behavior restored after rebuild/clear",
            likelihood=_H.MEDIUM,
        ),
        HypothesisTemplate(
            statement="A merge conflict resolution introduced an error",
            rationale="Merge conflict resolutions may have accidentally removed or corrupted code.",
            prediction="Examining merge commits will reveal conflict markers or incorrect resolutions.",
            test_type=_T.CODE_INSPECTION,
            test_target="recent merge commits",
            test_expected="Merge artifact or incorrect resolution",
            likelihood=_H.LOW,
        ),
    ),
    ProblemType.HALLUCINATION: (
        HypothesisTemplate(
            statement="The retrieval system is not finding relevant context",
            rationale="If the retrieval query does not match indexed content, irrelevant or no context is provided.",
            prediction="Running the retrieval query directly will show low similarity scores or missing documents.",
            test_type=_T.BEHAVIORAL,
            test_target="retrieval query results",
            test_expected="Low similarity scores or empty results",
            likelihood=_H.HIGH,
        ),
        HypothesisTemplate(
            statement="Context assembly is truncating or omitting relevant information",
            rationale="Token limits or context window constraints may cut off important information.",
            prediction="Inspecting the assembled context will show missing or truncated sections.",
            test_type=_T.LOG_ANALYSIS,
            test_target="assembled context content",
            test_expected="Truncated or missing relevant content",
            likelihood=_H.HIGH,
        ),
        HypothesisTemplate(
            statement="The grounding mechanism is failing to constrain responses",
            rationale="The system may not be properly enforcing that responses come from retrieved context.",
            prediction="Comparing response content to retrieved context will show unsupported claims.",
            test_type=_T.BEHAVIORAL,
            test_target="response vs context comparison",
            test_expected="Claims not present in retrieved context",
            likelihood=_H.MEDIUM,
        ),
        HypothesisTemplate(
            statement="Embedding quality is poor for this type of content",
            rationale="The embedding model may not capture semantic meaning well for specific terminology.",
            prediction="Testing similar queries will show inconsistent retrieval results.",
            test_type=_T.BEHAVIORAL,
            test_target="embedding similarity tests",
            test_expected="Inconsistent similarity for related queries",
            likelihood=_H.MEDIUM,
        ),
        HypothesisTemplate(
            statement="The indexed content itself is incomplete or incorrect",
            rationale="The source content may be missing, outdated, or incorrectly parsed.",
            prediction="Inspecting the indexed content for the expected answer will show gaps.",
            test_type=_T.CODE_INSPECTION,
            test_target="indexed content store",
            test_expected="Missing or incorrect indexed content",
            likelihood=_H.LOW,
        ),
    ),
    ProblemType.PERFORMANCE_GAP: (
        HypothesisTemplate(
            statement="Data volume or complexity exceeded algorithm capacity",
            rationale="The algorithm may not scale well with larger or more complex inputs.",
            prediction="Testing with smaller data will show improved performance.",
            test_type=_T.BEHAVIORAL,
            test_target="algorithm with reduced data size",
            test_expected="Better performance with smaller data",
            likelihood=_H.HIGH,
        ),
        HypothesisTemplate(
            statement="The algorithm is suboptimal for this use case",
            rationale="The current implementation may use inefficient data structures or algorithms.",
            prediction="Profiling will reveal hot spots or inefficient operations.",
            test_type=_T.BEHAVIORAL,
            test_target="performance profiling",
            test_expected="Identified hot spots or O(n^2) operations",
            likelihood=_H.HIGH,
        ),
        HypothesisTemplate(
            statement="Caching is not being utilized effectively",
            rationale="Repeated computations may not be cached, causing unnecessary work.",
            prediction="Adding or fixing caching will significantly improve performance.",
            test_type=_T.CODE_INSPECTION,
            test_target="caching implementation",
            test_expected="Missing cache hits or disabled caching",
            likelihood=_H.MEDIUM,
        ),
        HypothesisTemplate(
            statement="Resource contention is causing slowdowns",
            rationale="Concurrent access to shared resources may cause blocking or delays.",
            prediction="Monitoring will show lock contention or resource waiting.",
            test_type=_T.LOG_ANALYSIS,
            test_target="resource utilization logs",
            test_expected="Lock contention or resource starvation",
            likelihood=_H.MEDIUM,
        ),
        HypothesisTemplate(
            statement="The baseline comparison is unfair or misconfigured",
            rationale="The control and treatment may have different conditions affecting results.",
            prediction="Reviewing experiment setup will reveal configuration differences.",
            test_type=_T.CODE_INSPECTION,
            test_target="experiment configuration",
            test_expected="Unequal conditions between control and treatment",
            likelihood=_H.LOW,
        ),
    ),
    ProblemType.INCONSISTENCY: (
        HypothesisTemplate(
            statement="Query normalization is inconsistent across variants",
            rationale="Different phrasings may be normalized differently, leading to different results.",
            prediction="Comparing normalized forms of the variants will show differences.",
            test_type=_T.BEHAVIORAL,
            test_target="query normalization output",
            test_expected="Different normalized forms for semantically similar queries",
            likelihood=_H.HIGH,
        ),
        HypothesisTemplate(
            statement="Embedding space does not capture semantic similarity well",
            rationale="The embedding model may not recognize paraphrases as semantically similar.",
            prediction="Computing cosine similarity between variant embeddings will show low scores.",
            test_type=_T.BEHAVIORAL,
            test_target="embedding similarity scores",
            test_expected="Low similarity for semantically equivalent queries",
            likelihood=_H.HIGH,
        ),
        HypothesisTemplate(
            statement="Ranking algorithm produces non-deterministic results",
            rationale="The ranking may include randomness or tie-breaking that varies between runs.",
            prediction="Running the same query multiple times will show different rankings.",
            test_type=_T.TEST_RUN,
            test_target="repeated query execution",
            test_expected="Varying results across identical runs",
            likelihood=_H.MEDIUM,
        ),
        HypothesisTemplate(
            statement="Multiple valid answers exist in the knowledge base",
            rationale="The question may be ambiguous or have legitimately different correct answers.",
            prediction="Reviewing the knowledge base will show multiple relevant entries.",
            test_type=_T.CODE_INSPECTION,
            test_target="knowledge base content",
            test_expected="Multiple valid answer candidates",
            likelihood=_H.MEDIUM,
        ),
        HypothesisTemplate(
            statement="Context window variations affect answer generation",
            rationale="Different query formulations may retrieve different context, affecting answers.",
            prediction="Comparing retrieved context for each variant will show different documents.",
            test_type=_T.BEHAVIORAL,
            test_target="retrieved context per variant",
            test_expected="Different context documents for different variants",
            likelihood=_H.LOW,
        ),
    ),
}

_LIKELIHOOD_ORDER: dict[HypothesisLikelihood, int] = {
    HypothesisLikelihood.HIGH: 0,
    HypothesisLikelihood.MEDIUM: 1,
    HypothesisLikelihood.LOW: 2,
}


def rank_by_likelihood(hypotheses: list[Hypothesis]) -> list[str]:
    """Stable sort by tier; ties keep their input order."""
    return [h.id for h in sorted(hypotheses, key=lambda h: _LIKELIHOOD_ORDER[h.likelihood])]


class HypothesisGenerator(LoopAgent):
    """Template-driven hypothesis generation. No model calls."""

    agent_type = "hypothesis_generator"
    name = "Hypothesis Generator"
    capabilities = (AgentCapability.HYPOTHESIS_GENERATION,)

    def __init__(
        self,
        config: HypothesisGeneratorConfig | None = None,
        templates: dict[ProblemType, tuple[HypothesisTemplate, ...]] | None = None,
    ) -> None:
        super().__init__()
        self._config = config or HypothesisGeneratorConfig()
        self._templates = templates if templates is not None else HYPOTHESIS_TEMPLATES
        self._logger = logger.bind(system="sciloop.hypothesis_generator")

    def generate_hypotheses(self, input: HypothesisGenerationInput) -> HypothesisGenerationReport:
        problem = input.problem
        templates = self._templates.get(problem.type, ())[: self._config.max_hypotheses]

        if len(templates) < self._config.min_hypotheses:
            self._logger.warning(
                "too_few_hypothesis_templates",
                problem_type=problem.type,
                available=len(templates),
                minimum=self._config.min_hypotheses,
            )

        hypotheses = [
            Hypothesis(
                id=f"HYP-{problem.id}-{chr(ord('A') + index)}",
                statement=t.statement,
                rationale=t.rationale,
                prediction=t.prediction,
                test=HypothesisTest(type=t.test_type, target=t.test_target, expected=t.test_expected),
                likelihood=t.likelihood,
            )
            for index, t in enumerate(templates)
        ]

        ranked = rank_by_likelihood(hypotheses)
        self._logger.debug(
            "hypotheses_generated",
            problem_id=problem.id,
            count=len(hypotheses),
            top=ranked[0] if ranked else None,
        )
        return HypothesisGenerationReport(
            problem_id=problem.id,
            hypotheses=hypotheses,
            ranked_by_likelihood=ranked,
        )

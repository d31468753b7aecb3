"""
SciLoop — Configuration System

All configuration is Pydantic-validated and loaded from:
1. A YAML file (defaults for a project)
2. Environment variables (overrides)

Every tunable threshold and budget of the loop lives here.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from sciloop.errors import ConfigurationError

# ─── Sub-configs ──────────────────────────────────────────────────


class CommandRunnerConfig(BaseModel):
    default_timeout_ms: int = Field(60_000, gt=0)
    cwd: str | None = None
    shell: str | None = None  # None = platform default shell


class ProblemDetectorConfig(BaseModel):
    max_evidence_lines: int = 5
    max_evidence_chars: int = 300


class HypothesisGeneratorConfig(BaseModel):
    min_hypotheses: int = 3
    max_hypotheses: int = 5


class HypothesisTesterConfig(BaseModel):
    supported_threshold: float = Field(0.5, ge=0.0, le=1.0)
    refuted_threshold: float = Field(0.3, ge=0.0, le=1.0)
    command_timeout_ms: int = Field(60_000, gt=0)

    @model_validator(mode="after")
    def _thresholds_ordered(self) -> HypothesisTesterConfig:
        if self.refuted_threshold > self.supported_threshold:
            raise ValueError("refuted_threshold must not exceed supported_threshold")
        return self


class FixGeneratorConfig(BaseModel):
    max_fixes: int = Field(3, ge=1)
    detailed_descriptions: bool = True


class FixVerifierConfig(BaseModel):
    test_suite_command: str = "pytest -q"
    type_check_command: str = "mypy ."
    command_timeout_ms: int = Field(60_000, gt=0)
    cwd: str | None = None
    max_stderr_chars: int = 200


class BenchmarkEvolverConfig(BaseModel):
    min_prevention_tests: int = 2
    max_prevention_tests: int = 3
    min_variant_tests: int = 1


class OrchestratorConfig(BaseModel):
    max_iterations: int = Field(10, ge=1)
    max_hypotheses_per_problem: int = Field(5, ge=1)
    max_fix_attempts_per_problem: int = Field(3, ge=1)


class ImprovementTrackerConfig(BaseModel):
    # Test suite health
    healthy_pass_rate_threshold: float = 0.90
    critical_pass_rate_threshold: float = 0.70
    # Loop health targets
    fix_success_rate_target: float = 0.70
    hypothesis_accuracy_target: float = 0.50
    regression_rate_target: float = 0.05
    evolution_coverage_target: float = 0.20
    # Baseline size used to normalise evolution coverage
    evolution_baseline_tests: int = 25


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "console"  # "console" | "json"
    stream: str = "stdout"  # "stdout" | "stderr"


# ─── Root Config ──────────────────────────────────────────────────


class SciLoopConfig(BaseSettings):
    """
    Root configuration. Loads from YAML, overridable by env vars.
    """

    model_config = SettingsConfigDict(
        env_prefix="SCILOOP_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    command_runner: CommandRunnerConfig = Field(default_factory=CommandRunnerConfig)
    problem_detector: ProblemDetectorConfig = Field(default_factory=ProblemDetectorConfig)
    hypothesis_generator: HypothesisGeneratorConfig = Field(
        default_factory=HypothesisGeneratorConfig
    )
    hypothesis_tester: HypothesisTesterConfig = Field(default_factory=HypothesisTesterConfig)
    fix_generator: FixGeneratorConfig = Field(default_factory=FixGeneratorConfig)
    fix_verifier: FixVerifierConfig = Field(default_factory=FixVerifierConfig)
    benchmark_evolver: BenchmarkEvolverConfig = Field(default_factory=BenchmarkEvolverConfig)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    improvement_tracker: ImprovementTrackerConfig = Field(
        default_factory=ImprovementTrackerConfig
    )
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(config_path: str | Path | None = None) -> SciLoopConfig:
    """
    Load configuration from YAML file, then apply environment variable overrides.
    """
    raw: dict[str, Any] = {}

    if config_path:
        path = Path(config_path)
        if path.exists():
            try:
                with open(path) as f:
                    raw = yaml.safe_load(f) or {}
            except yaml.YAMLError as exc:
                raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc
            if not isinstance(raw, dict):
                raise ConfigurationError(f"Top level of {path} must be a mapping")

    if suite := os.environ.get("SCILOOP_TEST_COMMAND"):
        raw.setdefault("fix_verifier", {})["test_suite_command"] = suite
    if type_check := os.environ.get("SCILOOP_TYPE_CHECK_COMMAND"):
        raw.setdefault("fix_verifier", {})["type_check_command"] = type_check
    if timeout := os.environ.get("SCILOOP_COMMAND_TIMEOUT_MS"):
        raw.setdefault("fix_verifier", {})["command_timeout_ms"] = int(timeout)
        raw.setdefault("hypothesis_tester", {})["command_timeout_ms"] = int(timeout)
        raw.setdefault("command_runner", {})["default_timeout_ms"] = int(timeout)
    if level := os.environ.get("SCILOOP_LOG_LEVEL"):
        raw.setdefault("logging", {})["level"] = level

    try:
        return SciLoopConfig(**raw)
    except ValidationError as exc:
        raise ConfigurationError(str(exc)) from exc

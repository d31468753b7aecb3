"""
SciLoop — Fix Verifier

Binary, verifiable-reward acceptance of a proposed fix. Three checks are
issued strictly in order and never short-circuited:

  1. the originally failing test
  2. the full regression suite
  3. the type checker

reward = 1 only when all three exit 0. There is no partial credit: two out
of three is a rejection. The execution log always holds exactly three
entries when a CommandRunner is configured, and none when it is not.

Runner failures never escape: an exception or deadline becomes a log entry
with ``exit_code = -1`` and a descriptive stderr.
"""

from __future__ import annotations

import re
import time
from typing import TYPE_CHECKING

import structlog

from sciloop.agents.base import LoopAgent, run_with_deadline
from sciloop.agents.heuristics import find_path, truncate
from sciloop.agents.types import (
    AgentCapability,
    ExecutionEntry,
    FixVerifierInput,
    Problem,
    VerificationChecks,
    VerificationResult,
    VerificationVerdict,
)
from sciloop.config import FixVerifierConfig
from sciloop.errors import CommandTimeoutError

if TYPE_CHECKING:
    from sciloop.clients.command_runner import CommandRunner

logger = structlog.get_logger()

EXECUTION_ERROR_EXIT_CODE = -1

_TEST_INVOCATION_RE = re.compile(r"\b(pytest|test|jest|vitest|tox|nox)\b|npm test", re.IGNORECASE)
_TEST_FILE_RE = re.compile(
    r"(\S*?(?:test_[\w\-]+\.py|[\w\-]+_test\.py|[\w\-]+\.test\.[jt]sx?|[\w\-]+\.spec\.\w+))"
)

_CHECK_NAMES = ("original test", "regression suite", "type check")


class FixVerifier(LoopAgent):
    agent_type = "fix_verifier"
    name = "Fix Verifier"
    capabilities = (AgentCapability.FIX_VERIFICATION,)

    def __init__(
        self,
        config: FixVerifierConfig | None = None,
        command_runner: CommandRunner | None = None,
    ) -> None:
        super().__init__()
        self._config = config or FixVerifierConfig()
        self._runner = command_runner
        self._logger = logger.bind(system="sciloop.fix_verifier")

    def set_command_runner(self, runner: CommandRunner | None) -> None:
        self._runner = runner

    def get_command_runner(self) -> CommandRunner | None:
        return self._runner

    # ─── Public API ────────────────────────────────────────────────────

    async def verify_fix(self, input: FixVerifierInput) -> VerificationResult:
        fix = input.fix

        if self._runner is None:
            self._logger.warning("verification_skipped_no_runner", fix_id=fix.id)
            return VerificationResult(
                fix_id=fix.id,
                verification=VerificationChecks(),
                reward=0,
                verdict=VerificationVerdict.FIX_REJECTED,
                notes=(
                    "Fix rejected: no CommandRunner configured, so no verification "
                    "commands could be executed."
                ),
                execution_log=[],
            )

        commands = (
            self.resolve_original_test_command(input.problem, input.original_test_command),
            self._config.test_suite_command,
            self._config.type_check_command,
        )

        # Each check runs regardless of the outcome of the previous one.
        original = await self._run(commands[0])
        suite = await self._run(commands[1])
        types = await self._run(commands[2])
        log = [original, suite, types]

        checks = VerificationChecks(
            original_test_passes=original.exit_code == 0,
            no_regressions=suite.exit_code == 0,
            types_valid=types.exit_code == 0,
        )
        accepted = checks.all_passed
        result = VerificationResult(
            fix_id=fix.id,
            verification=checks,
            reward=1 if accepted else 0,
            verdict=(
                VerificationVerdict.FIX_ACCEPTED if accepted else VerificationVerdict.FIX_REJECTED
            ),
            notes=self._notes(checks, log),
            execution_log=log,
        )

        self._logger.info(
            "fix_verified",
            fix_id=fix.id,
            problem_id=input.problem.id,
            reward=result.reward,
            original_test_passes=checks.original_test_passes,
            no_regressions=checks.no_regressions,
            types_valid=checks.types_valid,
        )
        return result

    def resolve_original_test_command(self, problem: Problem, override: str | None = None) -> str:
        """
        Explicit override, then the problem's minimal reproduction when it
        is itself a test invocation, then a test file found in the
        reproduction, evidence or description run under the suite command,
        then the full suite.
        """
        if override:
            return override

        repro = problem.minimal_reproduction
        if repro and _TEST_INVOCATION_RE.search(repro):
            return repro

        for text in (repro, *problem.evidence, problem.description):
            if path := find_path(text, _TEST_FILE_RE):
                return f"{self._config.test_suite_command} {path}"

        return self._config.test_suite_command

    # ─── Execution ─────────────────────────────────────────────────────

    async def _run(self, command: str) -> ExecutionEntry:
        assert self._runner is not None
        timeout_ms = self._config.command_timeout_ms
        start = time.monotonic()
        try:
            result = await run_with_deadline(
                self._runner, command, cwd=self._config.cwd, timeout_ms=timeout_ms
            )
        except CommandTimeoutError as error:
            self._logger.warning("verification_command_timeout", command=command)
            return ExecutionEntry(
                command=command,
                exit_code=EXECUTION_ERROR_EXIT_CODE,
                stderr=f"Command execution error: {error}",
                duration_ms=int((time.monotonic() - start) * 1000),
            )
        except Exception as exc:
            self._logger.warning("verification_command_failed", command=command, error=str(exc))
            return ExecutionEntry(
                command=command,
                exit_code=EXECUTION_ERROR_EXIT_CODE,
                stderr=f"Command execution error: {exc}",
                duration_ms=int((time.monotonic() - start) * 1000),
            )

        return ExecutionEntry(
            command=command,
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
            duration_ms=result.duration_ms,
        )

    def _notes(self, checks: VerificationChecks, log: list[ExecutionEntry]) -> str:
        outcomes = (checks.original_test_passes, checks.no_regressions, checks.types_valid)
        if all(outcomes):
            return "All checks passed: original test, regression suite, type check. Fix accepted."

        passed = [n for n, ok in zip(_CHECK_NAMES, outcomes) if ok]
        failed = [n for n, ok in zip(_CHECK_NAMES, outcomes) if not ok]
        parts = [
            "Fix rejected.",
            f"Passed: {', '.join(passed) or 'none'}.",
            f"Failed: {', '.join(failed)}.",
        ]
        for name, ok, entry in zip(_CHECK_NAMES, outcomes, log):
            if not ok and entry.stderr:
                parts.append(
                    f"{name} stderr: {truncate(entry.stderr.strip(), self._config.max_stderr_chars)}"
                )
        return " ".join(parts)

"""
SciLoop -- Command Runner

The single blocking collaborator of the loop: run one shell command and
report exit code, captured output, and wall-clock duration.

Agents depend on the ``CommandRunner`` protocol only. The bundled
``SubprocessCommandRunner`` runs commands through the platform shell with
a hard deadline; a command that overruns is killed and reported as a
failed result instead of hanging the pipeline.

Each command runs in its own session, so a kill takes down the shell and
everything it spawned (``cd x && pytest``, ``a; b``). A cancelled
``execute`` kills the command before the cancellation propagates.
"""

from __future__ import annotations

import asyncio
import os
import signal
import time
from typing import Protocol, runtime_checkable

import structlog

from sciloop.agents.types import CommandResult
from sciloop.config import CommandRunnerConfig
from sciloop.errors import CommandExecutionError

logger = structlog.get_logger()

TIMEOUT_EXIT_CODE = 124

# Upper bound on collecting leftover output once a command has been killed.
_DRAIN_TIMEOUT_S = 0.5


@runtime_checkable
class CommandRunner(Protocol):
    """Executes a command. May raise CommandExecutionError."""

    async def execute(
        self,
        command: str,
        *,
        cwd: str | None = None,
        timeout_ms: int | None = None,
    ) -> CommandResult: ...


def _kill_tree(proc: asyncio.subprocess.Process) -> None:
    """SIGKILL the command's whole process group, or the shell alone where groups don't exist."""
    if proc.returncode is not None:
        return
    try:
        if hasattr(os, "killpg"):
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except ProcessLookupError:
        pass


async def _drain(proc: asyncio.subprocess.Process) -> tuple[bytes, bytes]:
    try:
        return await asyncio.wait_for(proc.communicate(), timeout=_DRAIN_TIMEOUT_S)
    except TimeoutError:
        return b"", b""


class SubprocessCommandRunner:
    """
    Runs commands via ``asyncio.create_subprocess_shell``.

    Output is decoded as UTF-8 with replacement. Timeouts kill the
    process group and resolve to ``exit_code=124`` with ``timed_out=True``.
    """

    def __init__(self, config: CommandRunnerConfig | None = None) -> None:
        self._config = config or CommandRunnerConfig()
        self._log = logger.bind(system="sciloop.command_runner")

    async def execute(
        self,
        command: str,
        *,
        cwd: str | None = None,
        timeout_ms: int | None = None,
    ) -> CommandResult:
        timeout_ms = timeout_ms or self._config.default_timeout_ms
        workdir = cwd or self._config.cwd
        start = time.monotonic()

        try:
            proc = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=workdir,
                executable=self._config.shell,
                start_new_session=True,
            )
        except (FileNotFoundError, NotADirectoryError, PermissionError, OSError) as exc:
            raise CommandExecutionError(command, str(exc)) from exc

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=timeout_ms / 1000.0,
            )
        except TimeoutError:
            _kill_tree(proc)
            stdout, stderr = await _drain(proc)
            duration_ms = int((time.monotonic() - start) * 1000)
            self._log.warning("command_timeout", command=command, timeout_ms=timeout_ms)
            return CommandResult(
                command=command,
                exit_code=TIMEOUT_EXIT_CODE,
                stdout=stdout.decode("utf-8", errors="replace"),
                stderr=(
                    stderr.decode("utf-8", errors="replace")
                    + f"\nCommand timed out after {timeout_ms}ms"
                ).lstrip("\n"),
                duration_ms=duration_ms,
                timed_out=True,
            )
        except asyncio.CancelledError:
            _kill_tree(proc)
            self._log.warning("command_cancelled", command=command)
            raise

        duration_ms = int((time.monotonic() - start) * 1000)
        exit_code = proc.returncode if proc.returncode is not None else -1
        self._log.debug(
            "command_completed",
            command=command,
            exit_code=exit_code,
            duration_ms=duration_ms,
        )
        return CommandResult(
            command=command,
            exit_code=exit_code,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            duration_ms=duration_ms,
        )

"""
SciLoop -- Error Hierarchy

Exceptions used at the edges of the scientific debugging loop.

The core agents never let these escape their public operations:
  CommandExecutionError  -> converted into evidence / exit_code=-1 log entries
  CommandTimeoutError    -> same as above, the deadline is a failed check
  AgentNotReadyError     -> raised only by boundary callers that insist on
                            an initialised agent
  ConfigurationError     -> invalid configuration file
"""

from __future__ import annotations


class SciLoopError(RuntimeError):
    """Base for all SciLoop errors."""


class CommandExecutionError(SciLoopError):
    """
    A command could not be started or did not complete.

    Recovery: the caller records a failed check (exit_code=-1) and continues.
    """

    def __init__(self, command: str, reason: str) -> None:
        super().__init__(f"{reason} (command: {command})")
        self.command = command
        self.reason = reason


class CommandTimeoutError(CommandExecutionError):
    """A command exceeded its deadline and was cancelled."""

    def __init__(self, command: str, timeout_ms: int) -> None:
        super().__init__(command, f"timed out after {timeout_ms}ms")
        self.timeout_ms = timeout_ms


class AgentNotReadyError(SciLoopError):
    """An agent was used before initialize() or after shutdown()."""


class ConfigurationError(SciLoopError):
    """The configuration file could not be loaded or validated."""

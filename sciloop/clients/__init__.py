"""
SciLoop — External Collaborators

Process execution behind the CommandRunner protocol.
"""

from sciloop.clients.command_runner import (
    TIMEOUT_EXIT_CODE,
    CommandRunner,
    SubprocessCommandRunner,
)

__all__ = [
    "CommandRunner",
    "SubprocessCommandRunner",
    "TIMEOUT_EXIT_CODE",
]

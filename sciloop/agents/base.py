"""
SciLoop — Agent Base and Registry

Every loop agent self-describes (type, name, capabilities, version,
quality tier) and follows the same storage lifecycle:

  initialize(storage) → is_ready() → shutdown()

Storage is opaque to the core. An agent is ready once it has been handed
a storage object and not yet shut down. Readiness is bookkeeping only; the
agents' operations do not depend on it.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, ClassVar

import structlog

from sciloop.agents.types import AgentCapability, AgentDescriptor, CommandResult, QualityTier
from sciloop.errors import AgentNotReadyError, CommandTimeoutError

if TYPE_CHECKING:
    from sciloop.clients.command_runner import CommandRunner

logger = structlog.get_logger()

# Headroom past the runner's own deadline before a caller abandons the call.
# Must exceed the runner's post-kill drain so the runner reports first.
RUNNER_DEADLINE_GRACE_S = 1.0


async def run_with_deadline(
    runner: CommandRunner,
    command: str,
    *,
    cwd: str | None = None,
    timeout_ms: int | None = None,
) -> CommandResult:
    """
    Execute through ``runner``, abandoning the call if it overruns
    ``timeout_ms`` plus a grace period.

    The runner enforces ``timeout_ms`` itself; the outer deadline only
    catches runners that ignore it. Raises CommandTimeoutError.
    """
    call = runner.execute(command, cwd=cwd, timeout_ms=timeout_ms)
    if timeout_ms is None:
        return await call
    try:
        return await asyncio.wait_for(
            call, timeout=timeout_ms / 1000.0 + RUNNER_DEADLINE_GRACE_S
        )
    except TimeoutError as exc:
        raise CommandTimeoutError(command, timeout_ms) from exc


class LoopAgent:
    """Base class for the agents of the scientific loop."""

    agent_type: ClassVar[str] = ""
    name: ClassVar[str] = ""
    capabilities: ClassVar[tuple[AgentCapability, ...]] = ()
    version: ClassVar[str] = "1.0.0"
    quality_tier: ClassVar[QualityTier] = QualityTier.FULL

    def __init__(self) -> None:
        self._storage: Any = None

    # ─── Lifecycle ─────────────────────────────────────────────────────

    async def initialize(self, storage: Any) -> None:
        self._storage = storage
        logger.debug("agent_initialized", system="sciloop.agents", agent_type=self.agent_type)

    def is_ready(self) -> bool:
        return self._storage is not None

    async def shutdown(self) -> None:
        self._storage = None
        logger.debug("agent_shutdown", system="sciloop.agents", agent_type=self.agent_type)

    def require_ready(self) -> None:
        """For boundary callers that insist on an initialised agent."""
        if not self.is_ready():
            raise AgentNotReadyError(f"{self.agent_type} is not initialised")

    # ─── Metadata ──────────────────────────────────────────────────────

    def describe(self) -> AgentDescriptor:
        return AgentDescriptor(
            agent_type=self.agent_type,
            name=self.name,
            capabilities=list(self.capabilities),
            version=self.version,
            quality_tier=self.quality_tier,
        )


class AgentRegistry:
    """
    In-memory keyed lookup of agents by ``agent_type``.

    Registering a second agent with the same type replaces the first.
    """

    def __init__(self) -> None:
        self._agents: dict[str, LoopAgent] = {}

    def register(self, agent: LoopAgent) -> None:
        if agent.agent_type in self._agents:
            logger.info("agent_replaced", system="sciloop.agents", agent_type=agent.agent_type)
        self._agents[agent.agent_type] = agent

    def get_agent(self, agent_type: str) -> LoopAgent | None:
        return self._agents.get(agent_type)

    def get_agents_by_capability(self, capability: AgentCapability) -> list[LoopAgent]:
        return [a for a in self._agents.values() if capability in a.capabilities]

    def get_all_agents(self) -> list[LoopAgent]:
        return list(self._agents.values())

    def __len__(self) -> int:
        return len(self._agents)

"""User-driven agent controls: autonomy overrides and soft pause.

An override pins the agent's autonomy level. The annealing loop will not
auto-adjust a pinned agent, and the confidence scorer caps plans that use it.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from trustloop.models import AgentRecord, AutonomyLevel, HealthStatus, utcnow
from trustloop.storage.base import AgentStore

logger = logging.getLogger(__name__)


async def set_autonomy_override(
    agents: AgentStore, agent_id: str, level: AutonomyLevel | str, changed_by: str
) -> AgentRecord:
    level = AutonomyLevel(level)
    agent = await agents.update_agent(
        agent_id,
        autonomy_override=level,
        autonomy_level=level,
        autonomy_override_by=changed_by,
        autonomy_override_at=utcnow(),
    )
    logger.info("Autonomy for %s pinned to %s by %s", agent_id, level, changed_by)
    return agent


async def clear_autonomy_override(agents: AgentStore, agent_id: str) -> AgentRecord:
    """Unpin; the next execution outcome re-derives the level from trust."""
    agent = await agents.update_agent(
        agent_id,
        autonomy_override=None,
        autonomy_override_by=None,
        autonomy_override_at=None,
    )
    logger.info("Autonomy override cleared for %s", agent_id)
    return agent


async def collect_overrides(
    agents: AgentStore, agent_ids: Iterable[str]
) -> dict[str, AutonomyLevel]:
    """Override map for compute_confidence. Unknown agents are skipped."""
    overrides: dict[str, AutonomyLevel] = {}
    for agent_id in dict.fromkeys(agent_ids):
        agent = await agents.get_agent(agent_id)
        if agent is not None and agent.autonomy_override:
            overrides[agent_id] = agent.autonomy_override
    return overrides


async def pause_agent(agents: AgentStore, agent_id: str, reason: str | None = None) -> AgentRecord:
    agent = await agents.update_agent(agent_id, paused_at=utcnow(), pause_reason=reason)
    logger.info("Agent %s paused%s", agent_id, f": {reason}" if reason else "")
    return agent


async def resume_agent(agents: AgentStore, agent_id: str) -> AgentRecord:
    agent = await agents.update_agent(agent_id, paused_at=None, pause_reason=None)
    logger.info("Agent %s resumed", agent_id)
    return agent


def available_agents(agents: Sequence[AgentRecord]) -> list[AgentRecord]:
    """Agents a planner may hand work to: active, not paused, not failing."""
    return [
        a
        for a in agents
        if a.is_active and not a.paused_at and a.health_status != HealthStatus.FAILING
    ]

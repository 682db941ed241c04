"""
Annealing Loop: Post-Execution Learning

Runs after every task execution. Updates the agent's failure/success streaks
and health, stores execution metadata, folds the outcome into the plan
pattern statistics and finally re-derives the agent's autonomy level.

Health moves asymmetrically: degradation is fast, recovery is slow.
- failure: failures >= max -> failing, failures >= ceil(max/2) -> degraded
- success: failing needs 3 successes to reach degraded, then 5 more to reach
  healthy (8 in total); failing never jumps straight to healthy

Nothing here ever raises into the caller. Every failure is logged.
"""

from __future__ import annotations

import asyncio
import logging
import math
import weakref
from dataclasses import dataclass

from trustloop.models import (
    AgentRecord,
    ExecutionOutcome,
    HealthStatus,
    PlanPattern,
    utcnow,
)
from trustloop.storage.base import AgentStore, ExecutionStore, PatternStore
from trustloop.trust.engine import TrustEngine

logger = logging.getLogger(__name__)

RECOVER_TO_DEGRADED = 3
RECOVER_TO_HEALTHY = 5

# Rough blended pricing in cents per million tokens
INPUT_CENTS_PER_MTOK = 300
OUTPUT_CENTS_PER_MTOK = 1500


def round_half_up(value: float) -> int:
    """Half-up rounding for non-negative values. Builtin round() sends halves to even."""
    return math.floor(value + 0.5)


def estimate_cost_cents(input_tokens: int, output_tokens: int) -> int:
    return round_half_up(
        input_tokens / 1_000_000 * INPUT_CENTS_PER_MTOK
        + output_tokens / 1_000_000 * OUTPUT_CENTS_PER_MTOK
    )


@dataclass(frozen=True)
class StreakState:
    consecutive_failures: int
    consecutive_successes: int
    health_status: HealthStatus
    recovery_baseline: int = 0

    @classmethod
    def of(cls, agent: AgentRecord) -> StreakState:
        return cls(
            consecutive_failures=agent.consecutive_failures,
            consecutive_successes=agent.consecutive_successes,
            health_status=agent.health_status,
            recovery_baseline=agent.recovery_baseline,
        )


def apply_outcome(state: StreakState, success: bool, max_failures: int = 5) -> StreakState:
    """Next streak/health state after one outcome. At most one streak is non-zero."""
    health = state.health_status
    if success:
        successes = state.consecutive_successes + 1
        baseline = state.recovery_baseline
        if health == HealthStatus.FAILING and successes >= RECOVER_TO_DEGRADED:
            health = HealthStatus.DEGRADED
            baseline = successes
        elif health == HealthStatus.DEGRADED and successes - baseline >= RECOVER_TO_HEALTHY:
            health = HealthStatus.HEALTHY
            baseline = 0
        return StreakState(0, successes, health, baseline)

    failures = state.consecutive_failures + 1
    if failures >= max_failures:
        health = HealthStatus.FAILING
    elif failures >= math.ceil(max_failures / 2):
        health = HealthStatus.DEGRADED
    return StreakState(failures, 0, health, 0)


def fold_pattern(
    existing: PlanPattern | None,
    outcome: ExecutionOutcome,
    cost_cents: int,
) -> PlanPattern:
    """Merge one outcome into a pattern's running statistics."""
    now = utcnow()
    tool_names = [t.name for t in outcome.tools_used if t.name]

    if existing is None:
        return PlanPattern(
            account_id=outcome.account_id,
            pattern_key=outcome.pattern_key or "",
            total_executions=1,
            successful_executions=1 if outcome.success else 0,
            success_rate=1.0 if outcome.success else 0.0,
            avg_duration_ms=outcome.duration_ms,
            avg_cost_cents=cost_cents,
            last_executed_at=now,
            last_success=outcome.success,
            tools_used=tool_names,
        )

    old_total = existing.total_executions
    total = old_total + 1
    successful = existing.successful_executions + (1 if outcome.success else 0)
    existing.total_executions = total
    existing.successful_executions = successful
    existing.success_rate = successful / total
    existing.avg_duration_ms = round_half_up(
        (existing.avg_duration_ms * old_total + outcome.duration_ms) / total
    )
    existing.avg_cost_cents = round_half_up(
        (existing.avg_cost_cents * old_total + cost_cents) / total
    )
    existing.last_executed_at = now
    existing.last_success = outcome.success
    existing.tools_used = tool_names
    return existing


class AnnealingLoop:
    """Feeds execution outcomes back into agent health, autonomy and patterns."""

    def __init__(
        self,
        agents: AgentStore,
        executions: ExecutionStore,
        patterns: PatternStore,
        trust_engine: TrustEngine,
    ) -> None:
        self.agents = agents
        self.executions = executions
        self.patterns = patterns
        self.trust_engine = trust_engine
        # entries vanish once no coroutine holds or awaits the lock
        self._agent_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, agent_id: str) -> asyncio.Lock:
        lock = self._agent_locks.get(agent_id)
        if lock is None:
            lock = asyncio.Lock()
            self._agent_locks[agent_id] = lock
        return lock

    async def process_execution_outcome(self, outcome: ExecutionOutcome) -> None:
        """Learn from one execution. Never raises."""
        try:
            branches = [
                ("streaks", self._update_agent_streaks(outcome)),
                ("execution metadata", self._update_execution_metadata(outcome)),
            ]
            if outcome.pattern_key:
                branches.append(("plan pattern", self._update_plan_pattern(outcome)))

            results = await asyncio.gather(
                *(coro for _, coro in branches), return_exceptions=True
            )
            for (name, _), result in zip(branches, results):
                if isinstance(result, Exception):
                    logger.error(
                        "Annealing %s update failed for execution %s",
                        name,
                        outcome.execution_id,
                        exc_info=result,
                    )

            await self._auto_adjust_autonomy(outcome.agent_id, outcome.account_id)
        except Exception:
            logger.exception("Error processing outcome for execution %s", outcome.execution_id)

    async def _update_agent_streaks(self, outcome: ExecutionOutcome) -> None:
        async with self._lock_for(outcome.agent_id):
            agent = await self.agents.get_agent(outcome.agent_id)
            if agent is None:
                logger.warning("Could not fetch agent %s for streak update", outcome.agent_id)
                return

            before = StreakState.of(agent)
            after = apply_outcome(before, outcome.success, agent.max_consecutive_failures)
            if after.health_status != before.health_status:
                logger.info(
                    "Agent %s health: %s -> %s (failures=%d, successes=%d)",
                    outcome.agent_id,
                    before.health_status,
                    after.health_status,
                    after.consecutive_failures,
                    after.consecutive_successes,
                )

            await self.agents.update_agent(
                outcome.agent_id,
                consecutive_failures=after.consecutive_failures,
                consecutive_successes=after.consecutive_successes,
                health_status=after.health_status,
                recovery_baseline=after.recovery_baseline,
                last_execution_at=utcnow(),
            )

    async def _update_execution_metadata(self, outcome: ExecutionOutcome) -> None:
        await self.executions.update_execution(
            outcome.execution_id,
            tools_used=list(outcome.tools_used),
            cost_cents=estimate_cost_cents(outcome.input_tokens, outcome.output_tokens),
            plan_pattern_key=outcome.pattern_key or None,
        )

    async def _update_plan_pattern(self, outcome: ExecutionOutcome) -> None:
        if not outcome.pattern_key:
            return
        existing = await self.patterns.get_pattern(outcome.account_id, outcome.pattern_key)
        cost = estimate_cost_cents(outcome.input_tokens, outcome.output_tokens)
        await self.patterns.save_pattern(fold_pattern(existing, outcome, cost))

    async def _auto_adjust_autonomy(self, agent_id: str, account_id: str) -> None:
        agent = await self.agents.get_agent(agent_id)
        if agent is None or agent.autonomy_override:
            return

        trust = await self.trust_engine.compute_trust_score(agent_id, account_id)
        if trust.recommended_autonomy != agent.autonomy_level:
            await self.agents.update_agent(agent_id, autonomy_level=trust.recommended_autonomy)
            logger.info(
                "Auto-adjusted autonomy for %s: %s -> %s",
                agent_id,
                agent.autonomy_level,
                trust.recommended_autonomy,
            )

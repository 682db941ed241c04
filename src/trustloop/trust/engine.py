"""
Trust Engine: Agent Trust Scores and Plan Confidence

Computes trust from real execution history, then combines it with plan shape,
tool familiarity, historical pattern success and cost into a confidence score
that selects the execution mode.

Trust score (weighted composite, clamped to [0, 1]):
- 0.35 recent success rate (last 20 executions)
- 0.25 success rate over the fetched window (last 100)
- 0.20 failure recency (1.0 = no failure in the window)
- 0.10 average tool familiarity
- 0.10 pattern success placeholder (constant 0.5)

Agents with no history receive a neutral 0.75. Read failures degrade to the
same neutral score.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence

from trustloop.models import (
    AutonomyLevel,
    ConfidenceFactors,
    ConfidenceLevel,
    ConfidenceResult,
    ExecutionMode,
    ExecutionRecord,
    HealthStatus,
    PatternSuccess,
    PlanForConfidence,
    TrustScore,
)
from trustloop.storage.base import ExecutionStore, PatternStore

logger = logging.getLogger(__name__)

NEUTRAL_SCORE = 0.75
NEUTRAL_FAMILIARITY = 0.5
NEUTRAL_PATTERN_MATCH = 0.5

# Stand-in for per-agent pattern success. Pattern data is only folded in at
# the plan level (compute_confidence), so this term is constant.
PATTERN_SUCCESS_PLACEHOLDER = 0.5

TRUST_WEIGHTS = {
    "recent_success_rate": 0.35,
    "success_rate": 0.25,
    "failure_recency": 0.20,
    "tool_familiarity": 0.10,
    "pattern_success": 0.10,
}

CONFIDENCE_WEIGHTS = {
    "agent_trust": 0.40,
    "plan_complexity": 0.20,
    "tool_familiarity": 0.15,
    "pattern_match": 0.15,
    "cost_risk": 0.10,
}

AUTONOMOUS_THRESHOLD = 0.85
SEMI_AUTONOMOUS_THRESHOLD = 0.60

FAILING_STREAK = 5
DEGRADED_STREAK = 3

HIGH_CONFIDENCE = 0.80
MEDIUM_CONFIDENCE = 0.50

# (upper bound in cents, risk factor), first match wins
COST_BANDS = [(10, 1.0), (100, 0.8), (500, 0.5)]
COST_RISK_FLOOR = 0.3

_MODE_FOR_LEVEL = {
    ConfidenceLevel.HIGH: ExecutionMode.AUTO,
    ConfidenceLevel.MEDIUM: ExecutionMode.PLAN_THEN_EXECUTE,
    ConfidenceLevel.LOW: ExecutionMode.STEP_BY_STEP,
}


def clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


def _mean(values: Sequence[float], default: float) -> float:
    return sum(values) / len(values) if values else default


# ── Pure derivations ──────────────────────────────────────────────────────


def neutral_trust_score(agent_id: str) -> TrustScore:
    return TrustScore(
        agent_id=agent_id,
        overall_score=NEUTRAL_SCORE,
        success_rate=1.0,
        recent_success_rate=1.0,
        consecutive_failures=0,
        consecutive_successes=0,
        total_executions=0,
        tool_familiarity={},
        recommended_autonomy=AutonomyLevel.SEMI_AUTONOMOUS,
        health_status=HealthStatus.HEALTHY,
    )


def recommend_autonomy(overall_score: float) -> AutonomyLevel:
    if overall_score >= AUTONOMOUS_THRESHOLD:
        return AutonomyLevel.AUTONOMOUS
    if overall_score >= SEMI_AUTONOMOUS_THRESHOLD:
        return AutonomyLevel.SEMI_AUTONOMOUS
    return AutonomyLevel.SUPERVISED


def health_from_failures(consecutive_failures: int) -> HealthStatus:
    """What the data says right now; the persisted health adds recovery hysteresis."""
    if consecutive_failures >= FAILING_STREAK:
        return HealthStatus.FAILING
    if consecutive_failures >= DEGRADED_STREAK:
        return HealthStatus.DEGRADED
    return HealthStatus.HEALTHY


def count_streaks(executions: Sequence[ExecutionRecord]) -> tuple[int, int]:
    """Return (consecutive_failures, consecutive_successes) from newest-first records."""
    failures = 0
    successes = 0
    for record in executions:
        if record.succeeded:
            if failures:
                break
            successes += 1
        else:
            if successes:
                break
            failures += 1
    return failures, successes


def compute_tool_familiarity(executions: Sequence[ExecutionRecord]) -> dict[str, float]:
    attempts: dict[str, int] = {}
    successes: dict[str, int] = {}
    for record in executions:
        for tool in record.tools_used:
            if not tool.name:
                continue
            attempts[tool.name] = attempts.get(tool.name, 0) + 1
            if tool.success is not False:
                successes[tool.name] = successes.get(tool.name, 0) + 1
    return {name: successes.get(name, 0) / count for name, count in attempts.items()}


def failure_recency(executions: Sequence[ExecutionRecord]) -> float:
    for index, record in enumerate(executions):
        if not record.succeeded:
            return min(index / 10, 1.0)
    return 1.0


def score_executions(
    agent_id: str,
    executions: Sequence[ExecutionRecord],
    recent_window: int = 20,
) -> TrustScore:
    """Build a TrustScore from newest-first execution records."""
    if not executions:
        return neutral_trust_score(agent_id)

    total = len(executions)
    success_rate = sum(1 for e in executions if e.succeeded) / total

    recent = executions[:recent_window]
    recent_success_rate = sum(1 for e in recent if e.succeeded) / len(recent)

    consecutive_failures, consecutive_successes = count_streaks(executions)
    familiarity = compute_tool_familiarity(executions)
    avg_familiarity = _mean(list(familiarity.values()), NEUTRAL_FAMILIARITY)

    overall = clamp01(
        TRUST_WEIGHTS["recent_success_rate"] * recent_success_rate
        + TRUST_WEIGHTS["success_rate"] * success_rate
        + TRUST_WEIGHTS["failure_recency"] * failure_recency(executions)
        + TRUST_WEIGHTS["tool_familiarity"] * avg_familiarity
        + TRUST_WEIGHTS["pattern_success"] * PATTERN_SUCCESS_PLACEHOLDER
    )

    return TrustScore(
        agent_id=agent_id,
        overall_score=overall,
        success_rate=success_rate,
        recent_success_rate=recent_success_rate,
        consecutive_failures=consecutive_failures,
        consecutive_successes=consecutive_successes,
        total_executions=total,
        tool_familiarity=familiarity,
        recommended_autonomy=recommend_autonomy(overall),
        health_status=health_from_failures(consecutive_failures),
    )


def plan_complexity(plan: PlanForConfidence) -> float:
    step_count = len(plan.steps)
    has_dependencies = any(s.depends_on_index is not None for s in plan.steps)
    raw = 1 - (step_count - 1) * 0.15 - (0.1 if has_dependencies else 0.0)
    return clamp01(raw)


def cost_risk(estimated_cost_cents: float) -> float:
    for upper, risk in COST_BANDS:
        if estimated_cost_cents < upper:
            return risk
    return COST_RISK_FLOOR


def confidence_level(score: float) -> ConfidenceLevel:
    if score >= HIGH_CONFIDENCE:
        return ConfidenceLevel.HIGH
    if score >= MEDIUM_CONFIDENCE:
        return ConfidenceLevel.MEDIUM
    return ConfidenceLevel.LOW


def apply_cap(computed: ConfidenceLevel, cap: ConfidenceLevel | None) -> ConfidenceLevel:
    """Caps only ever downgrade."""
    if cap is not None and cap.rank < computed.rank:
        return cap
    return computed


def execution_mode_for(level: ConfidenceLevel) -> ExecutionMode:
    return _MODE_FOR_LEVEL[level]


def find_override_cap(
    plan: PlanForConfidence,
    trust_by_agent: Mapping[str, TrustScore],
    agent_overrides: Mapping[str, AutonomyLevel] | None,
) -> ConfidenceLevel | None:
    overrides = agent_overrides or {}
    cap: ConfidenceLevel | None = None
    for step in plan.steps:
        override = overrides.get(step.agent_id)
        if override == AutonomyLevel.SUPERVISED:
            return ConfidenceLevel.LOW
        if override == AutonomyLevel.SEMI_AUTONOMOUS:
            cap = ConfidenceLevel.MEDIUM
        trust = trust_by_agent.get(step.agent_id)
        if trust is not None and trust.recommended_autonomy == AutonomyLevel.SUPERVISED:
            return ConfidenceLevel.LOW
    return cap


def build_reasoning(
    score: float,
    factors: ConfidenceFactors,
    pattern_known: bool,
    step_count: int,
    capped: bool,
) -> str:
    parts: list[str] = []
    if factors.agent_trust >= 0.8:
        parts.append("strong agent track record")
    elif factors.agent_trust < 0.5:
        parts.append("low agent trust")
    if factors.pattern_match >= 0.8:
        parts.append("proven plan pattern")
    elif not pattern_known:
        parts.append("new plan pattern")
    if step_count > 3:
        parts.append(f"complex plan ({step_count} steps)")
    if capped:
        parts.append("capped by autonomy override")

    headline = f"Confidence {score * 100:.0f}%"
    return f"{headline}: {', '.join(parts)}" if parts else headline


# ── Engine ────────────────────────────────────────────────────────────────


class TrustEngine:
    """
    Stateless scoring over the execution and pattern stores.

    Scores are recomputed on every call; nothing is cached, so a new outcome
    is visible to the very next score.
    """

    HISTORY_LIMIT = 100
    RECENT_WINDOW = 20

    def __init__(
        self,
        executions: ExecutionStore,
        patterns: PatternStore,
        history_limit: int | None = None,
        recent_window: int | None = None,
    ) -> None:
        self.executions = executions
        self.patterns = patterns
        self.history_limit = history_limit or self.HISTORY_LIMIT
        self.recent_window = recent_window or self.RECENT_WINDOW

    async def compute_trust_score(self, agent_id: str, account_id: str) -> TrustScore:
        """Trust score for an agent; neutral when there is no usable history."""
        try:
            history = await self.executions.recent_executions(agent_id, self.history_limit)
        except Exception:
            logger.exception("Error fetching executions for agent %s", agent_id)
            return neutral_trust_score(agent_id)
        return score_executions(agent_id, history, self.recent_window)

    async def get_tool_familiarity(
        self, agent_id: str, tool_names: Sequence[str], account_id: str
    ) -> float:
        """Mean familiarity over the given tools; unseen tools count as 0.5."""
        if not tool_names:
            return 1.0
        trust = await self.compute_trust_score(agent_id, account_id)
        return _mean(
            [trust.tool_familiarity.get(name, NEUTRAL_FAMILIARITY) for name in tool_names],
            NEUTRAL_FAMILIARITY,
        )

    async def get_pattern_success(
        self, pattern_key: str, account_id: str
    ) -> PatternSuccess | None:
        """Success stats for a plan pattern, or None if it has never been seen."""
        try:
            pattern = await self.patterns.get_pattern(account_id, pattern_key)
        except Exception:
            logger.warning("Pattern lookup failed for %s", pattern_key, exc_info=True)
            return None
        if pattern is None:
            return None
        return PatternSuccess(
            success_rate=float(pattern.success_rate),
            total_executions=pattern.total_executions,
        )

    async def compute_confidence(
        self,
        plan: PlanForConfidence,
        account_id: str,
        agent_overrides: Mapping[str, AutonomyLevel] | None = None,
    ) -> ConfidenceResult:
        """Score a candidate plan and pick auto / plan-then-execute / step-by-step."""
        unique_agents = list(dict.fromkeys(s.agent_id for s in plan.steps))
        trust_scores, pattern = await asyncio.gather(
            asyncio.gather(*(self.compute_trust_score(a, account_id) for a in unique_agents)),
            self.get_pattern_success(plan.pattern_key, account_id),
        )
        trust_by_agent = {t.agent_id: t for t in trust_scores}

        agent_trust = _mean([t.overall_score for t in trust_scores], NEUTRAL_SCORE)

        step_familiarity: list[float] = []
        for step in plan.steps:
            if not step.tools_required:
                step_familiarity.append(1.0)
                continue
            trust = trust_by_agent.get(step.agent_id)
            if trust is None:
                step_familiarity.append(NEUTRAL_FAMILIARITY)
                continue
            step_familiarity.append(
                _mean(
                    [trust.tool_familiarity.get(t, NEUTRAL_FAMILIARITY) for t in step.tools_required],
                    NEUTRAL_FAMILIARITY,
                )
            )

        factors = ConfidenceFactors(
            agent_trust=agent_trust,
            plan_complexity=plan_complexity(plan),
            tool_familiarity=_mean(step_familiarity, NEUTRAL_FAMILIARITY),
            pattern_match=pattern.success_rate if pattern else NEUTRAL_PATTERN_MATCH,
            cost_risk=cost_risk(plan.estimated_cost_cents),
        )
        score = clamp01(
            sum(weight * getattr(factors, name) for name, weight in CONFIDENCE_WEIGHTS.items())
        )

        cap = find_override_cap(plan, trust_by_agent, agent_overrides)
        level = apply_cap(confidence_level(score), cap)

        return ConfidenceResult(
            score=score,
            level=level,
            execution_mode=execution_mode_for(level),
            factors=factors,
            reasoning=build_reasoning(
                score,
                factors,
                pattern_known=pattern is not None,
                step_count=len(plan.steps),
                capped=cap is not None,
            ),
        )

"""
Tests for the trust engine.

Covers: trust score derivation, neutral defaults, tool familiarity, pattern
lookup, plan confidence, override caps and reasoning text.
"""

import pytest

from trustloop.models import (
    AutonomyLevel,
    ConfidenceLevel,
    ExecutionMode,
    HealthStatus,
    PlanForConfidence,
    PlanPattern,
    PlanStep,
    ToolUse,
)
from trustloop.storage import InMemoryStore
from trustloop.trust.engine import (
    NEUTRAL_SCORE,
    TrustEngine,
    apply_cap,
    confidence_level,
    cost_risk,
    count_streaks,
    execution_mode_for,
    health_from_failures,
    plan_complexity,
    recommend_autonomy,
)

pytestmark = pytest.mark.anyio


class BrokenStore(InMemoryStore):
    async def recent_executions(self, agent_id, limit):
        raise RuntimeError("store unavailable")

    async def get_pattern(self, account_id, pattern_key):
        raise RuntimeError("store unavailable")


def one_step_plan(agent_id="agent-1", tools=(), pattern_key="writer||1", cost=5):
    return PlanForConfidence(
        steps=[PlanStep(agent_id=agent_id, tools_required=list(tools))],
        pattern_key=pattern_key,
        estimated_cost_cents=cost,
    )


# ═══════════════════════════════════════════════════════════════════════════
# PURE DERIVATIONS
# ═══════════════════════════════════════════════════════════════════════════


class TestThresholds:
    def test_recommend_autonomy(self):
        assert recommend_autonomy(0.85) == AutonomyLevel.AUTONOMOUS
        assert recommend_autonomy(0.84) == AutonomyLevel.SEMI_AUTONOMOUS
        assert recommend_autonomy(0.60) == AutonomyLevel.SEMI_AUTONOMOUS
        assert recommend_autonomy(0.59) == AutonomyLevel.SUPERVISED

    def test_health_from_failures(self):
        assert health_from_failures(0) == HealthStatus.HEALTHY
        assert health_from_failures(2) == HealthStatus.HEALTHY
        assert health_from_failures(3) == HealthStatus.DEGRADED
        assert health_from_failures(5) == HealthStatus.FAILING

    def test_confidence_level(self):
        assert confidence_level(0.80) == ConfidenceLevel.HIGH
        assert confidence_level(0.79) == ConfidenceLevel.MEDIUM
        assert confidence_level(0.50) == ConfidenceLevel.MEDIUM
        assert confidence_level(0.49) == ConfidenceLevel.LOW

    def test_execution_modes(self):
        assert execution_mode_for(ConfidenceLevel.HIGH) == ExecutionMode.AUTO
        assert execution_mode_for(ConfidenceLevel.MEDIUM) == ExecutionMode.PLAN_THEN_EXECUTE
        assert execution_mode_for(ConfidenceLevel.LOW) == ExecutionMode.STEP_BY_STEP

    def test_cost_bands(self):
        assert cost_risk(0) == 1.0
        assert cost_risk(9) == 1.0
        assert cost_risk(10) == 0.8
        assert cost_risk(99) == 0.8
        assert cost_risk(100) == 0.5
        assert cost_risk(499) == 0.5
        assert cost_risk(500) == 0.3

    def test_caps_only_downgrade(self):
        assert apply_cap(ConfidenceLevel.HIGH, ConfidenceLevel.MEDIUM) == ConfidenceLevel.MEDIUM
        assert apply_cap(ConfidenceLevel.LOW, ConfidenceLevel.MEDIUM) == ConfidenceLevel.LOW
        assert apply_cap(ConfidenceLevel.MEDIUM, None) == ConfidenceLevel.MEDIUM
        for computed in ConfidenceLevel:
            for cap in ConfidenceLevel:
                assert apply_cap(computed, cap).rank <= computed.rank


class TestPlanComplexity:
    def test_single_step(self):
        assert plan_complexity(one_step_plan()) == 1.0

    def test_dependencies_penalized(self):
        plan = PlanForConfidence(
            steps=[
                PlanStep("a"),
                PlanStep("b", depends_on_index=0),
                PlanStep("c"),
            ]
        )
        assert plan_complexity(plan) == pytest.approx(0.6)

    def test_long_plan_clamped_to_zero(self):
        plan = PlanForConfidence(steps=[PlanStep(f"a{i}") for i in range(10)])
        assert plan_complexity(plan) == 0.0

    def test_empty_plan_clamped_to_one(self):
        assert plan_complexity(PlanForConfidence(steps=[])) == 1.0


# ═══════════════════════════════════════════════════════════════════════════
# TRUST SCORE
# ═══════════════════════════════════════════════════════════════════════════


class TestTrustScore:
    async def test_no_history_is_neutral(self, services):
        score = await services.trust.compute_trust_score("new-agent", "acct")
        assert score.overall_score == NEUTRAL_SCORE == 0.75
        assert score.recommended_autonomy == AutonomyLevel.SEMI_AUTONOMOUS
        assert score.health_status == HealthStatus.HEALTHY
        assert score.total_executions == 0

    async def test_all_successes(self, services, seed_history):
        await seed_history("agent-1", [True] * 10)
        score = await services.trust.compute_trust_score("agent-1", "acct")
        # 0.35 + 0.25 + 0.20 + 0.10 * 0.5 + 0.10 * 0.5
        assert score.overall_score == pytest.approx(0.90)
        assert score.recommended_autonomy == AutonomyLevel.AUTONOMOUS
        assert score.consecutive_successes == 10
        assert score.consecutive_failures == 0

    async def test_latest_failure_zeroes_recency(self, services, seed_history):
        await seed_history("agent-1", [True] * 9 + [False])
        score = await services.trust.compute_trust_score("agent-1", "acct")
        assert score.success_rate == pytest.approx(0.9)
        assert score.overall_score == pytest.approx(0.35 * 0.9 + 0.25 * 0.9 + 0.05 + 0.05)
        assert score.recommended_autonomy == AutonomyLevel.SEMI_AUTONOMOUS
        assert score.consecutive_failures == 1

    async def test_old_failure_recovers_recency(self, services, seed_history):
        # newest-first index of the failure is 5 -> recency 0.5
        await seed_history("agent-1", [False] + [True] * 5)
        score = await services.trust.compute_trust_score("agent-1", "acct")
        expected = 0.35 * (5 / 6) + 0.25 * (5 / 6) + 0.20 * 0.5 + 0.05 + 0.05
        assert score.overall_score == pytest.approx(expected)

    async def test_failure_streak_sets_health(self, services, seed_history):
        await seed_history("agent-1", [True, True, False, False, False])
        score = await services.trust.compute_trust_score("agent-1", "acct")
        assert score.consecutive_failures == 3
        assert score.consecutive_successes == 0
        assert score.health_status == HealthStatus.DEGRADED

    async def test_all_failures_is_supervised(self, services, seed_history):
        await seed_history("agent-1", [False] * 6)
        score = await services.trust.compute_trust_score("agent-1", "acct")
        assert score.overall_score == pytest.approx(0.10)
        assert score.recommended_autonomy == AutonomyLevel.SUPERVISED
        assert score.health_status == HealthStatus.FAILING

    async def test_recent_window(self, store, seed_history):
        await seed_history("agent-1", [False] * 10 + [True] * 20)
        engine = TrustEngine(store, store, recent_window=20)
        score = await engine.compute_trust_score("agent-1", "acct")
        assert score.recent_success_rate == 1.0
        assert score.success_rate == pytest.approx(20 / 30)

    async def test_history_limit(self, store, seed_history):
        await seed_history("agent-1", [False] * 5 + [True] * 10)
        engine = TrustEngine(store, store, history_limit=10)
        score = await engine.compute_trust_score("agent-1", "acct")
        assert score.total_executions == 10
        assert score.success_rate == 1.0

    async def test_read_failure_degrades_to_neutral(self):
        store = BrokenStore()
        engine = TrustEngine(store, store)
        score = await engine.compute_trust_score("agent-1", "acct")
        assert score.overall_score == 0.75
        assert score.recommended_autonomy == AutonomyLevel.SEMI_AUTONOMOUS

    def test_count_streaks_empty(self):
        assert count_streaks([]) == (0, 0)


class TestToolFamiliarity:
    async def test_unrecorded_success_counts(self, services, seed_history):
        await seed_history("agent-1", [True, True], tools=[ToolUse("search")])
        score = await services.trust.compute_trust_score("agent-1", "acct")
        assert score.tool_familiarity == {"search": 1.0}

    async def test_mixed_tool_results(self, services, seed_history):
        await seed_history("agent-1", [True], tools=[ToolUse("search", True)])
        await seed_history("agent-1", [False], tools=[ToolUse("search", False)])
        familiarity = await services.trust.get_tool_familiarity("agent-1", ["search"], "acct")
        assert familiarity == pytest.approx(0.5)

    async def test_no_tools_is_full(self, services):
        assert await services.trust.get_tool_familiarity("agent-1", [], "acct") == 1.0

    async def test_unknown_tool_is_half(self, services, seed_history):
        await seed_history("agent-1", [True], tools=[ToolUse("search")])
        familiarity = await services.trust.get_tool_familiarity(
            "agent-1", ["search", "deploy"], "acct"
        )
        assert familiarity == pytest.approx(0.75)


class TestPatternSuccess:
    async def test_unknown_pattern(self, services):
        assert await services.trust.get_pattern_success("nope", "acct") is None

    async def test_known_pattern(self, services, store):
        await store.save_pattern(
            PlanPattern(account_id="acct", pattern_key="k", total_executions=4, success_rate=0.75)
        )
        result = await services.trust.get_pattern_success("k", "acct")
        assert result.success_rate == 0.75
        assert result.total_executions == 4

    async def test_lookup_failure_is_unknown(self):
        store = BrokenStore()
        assert await TrustEngine(store, store).get_pattern_success("k", "acct") is None


# ═══════════════════════════════════════════════════════════════════════════
# CONFIDENCE
# ═══════════════════════════════════════════════════════════════════════════


class TestConfidence:
    async def seed_trusted(self, store, seed_history):
        await seed_history("agent-1", [True] * 10)
        await store.save_pattern(
            PlanPattern(
                account_id="acct", pattern_key="writer||1", total_executions=20, success_rate=0.95
            )
        )

    async def test_proven_plan_runs_auto(self, services, store, seed_history):
        await self.seed_trusted(store, seed_history)
        result = await services.trust.compute_confidence(one_step_plan(), "acct")
        assert result.factors.agent_trust == pytest.approx(0.90)
        assert result.factors.pattern_match == 0.95
        assert result.factors.cost_risk == 1.0
        assert result.score >= 0.80
        assert result.level == ConfidenceLevel.HIGH
        assert result.execution_mode == ExecutionMode.AUTO
        assert result.reasoning == "Confidence 95%: strong agent track record, proven plan pattern"

    async def test_supervised_override_forces_step_by_step(self, services, store, seed_history):
        await self.seed_trusted(store, seed_history)
        result = await services.trust.compute_confidence(
            one_step_plan(), "acct", {"agent-1": AutonomyLevel.SUPERVISED}
        )
        assert result.score >= 0.80
        assert result.level == ConfidenceLevel.LOW
        assert result.execution_mode == ExecutionMode.STEP_BY_STEP
        assert "capped by autonomy override" in result.reasoning

    async def test_semi_override_caps_at_medium(self, services, store, seed_history):
        await self.seed_trusted(store, seed_history)
        result = await services.trust.compute_confidence(
            one_step_plan(), "acct", {"agent-1": AutonomyLevel.SEMI_AUTONOMOUS}
        )
        assert result.level == ConfidenceLevel.MEDIUM
        assert result.execution_mode == ExecutionMode.PLAN_THEN_EXECUTE

    async def test_override_noted_even_when_level_unchanged(self, services):
        plan = PlanForConfidence(
            steps=[PlanStep("stranger") for _ in range(5)],
            pattern_key="unseen",
            estimated_cost_cents=5,
        )
        result = await services.trust.compute_confidence(
            plan, "acct", {"stranger": AutonomyLevel.SEMI_AUTONOMOUS}
        )
        assert result.level == ConfidenceLevel.MEDIUM
        assert result.reasoning.endswith(
            "new plan pattern, complex plan (5 steps), capped by autonomy override"
        )

    async def test_autonomous_override_does_not_cap(self, services, store, seed_history):
        await self.seed_trusted(store, seed_history)
        result = await services.trust.compute_confidence(
            one_step_plan(), "acct", {"agent-1": AutonomyLevel.AUTONOMOUS}
        )
        assert result.level == ConfidenceLevel.HIGH

    async def test_supervised_recommendation_caps_low(self, services, store, seed_history):
        await self.seed_trusted(store, seed_history)
        await seed_history("shaky", [False] * 10)
        plan = PlanForConfidence(
            steps=[PlanStep("agent-1"), PlanStep("shaky")],
            pattern_key="writer||1",
            estimated_cost_cents=5,
        )
        result = await services.trust.compute_confidence(plan, "acct")
        assert result.level == ConfidenceLevel.LOW

    async def test_unknown_agents_and_pattern(self, services):
        result = await services.trust.compute_confidence(
            one_step_plan(agent_id="stranger", pattern_key="unseen"), "acct"
        )
        assert result.factors.agent_trust == 0.75
        assert result.factors.pattern_match == 0.5
        # 0.4*0.75 + 0.2 + 0.15 + 0.15*0.5 + 0.1
        assert result.score == pytest.approx(0.825)
        assert result.reasoning.endswith(": new plan pattern")

    async def test_step_tool_familiarity(self, services, seed_history):
        await seed_history("agent-1", [True, True], tools=[ToolUse("search")])
        plan = PlanForConfidence(
            steps=[
                PlanStep("agent-1", tools_required=["search", "deploy"]),
                PlanStep("agent-1"),
                PlanStep("stranger", tools_required=["search"]),
            ]
        )
        result = await services.trust.compute_confidence(plan, "acct")
        # step means: 0.75, 1.0, 0.5 (stranger has no familiarity with search)
        assert result.factors.tool_familiarity == pytest.approx(0.75)

    async def test_reasoning_for_weak_complex_plan(self, services, seed_history):
        await seed_history("weak", [False] * 10)
        plan = PlanForConfidence(
            steps=[PlanStep("weak") for _ in range(4)],
            pattern_key="unseen",
            estimated_cost_cents=600,
        )
        result = await services.trust.compute_confidence(plan, "acct")
        assert "low agent trust" in result.reasoning
        assert "new plan pattern" in result.reasoning
        assert "complex plan (4 steps)" in result.reasoning
        assert result.level == ConfidenceLevel.LOW

    async def test_to_dict(self, services):
        result = await services.trust.compute_confidence(one_step_plan(), "acct")
        data = result.to_dict()
        assert set(data["factors"]) == {
            "agent_trust",
            "plan_complexity",
            "tool_familiarity",
            "pattern_match",
            "cost_risk",
        }

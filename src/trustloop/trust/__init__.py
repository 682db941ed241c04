"""Trust: scoring, confidence, annealing, patterns, overrides."""

from trustloop.trust.annealing import AnnealingLoop, StreakState, apply_outcome, estimate_cost_cents
from trustloop.trust.engine import TrustEngine
from trustloop.trust.overrides import (
    available_agents,
    clear_autonomy_override,
    collect_overrides,
    pause_agent,
    resume_agent,
    set_autonomy_override,
)
from trustloop.trust.patterns import describe_top_patterns, generate_pattern_key

__all__ = [
    "TrustEngine",
    "AnnealingLoop",
    "StreakState",
    "apply_outcome",
    "estimate_cost_cents",
    "generate_pattern_key",
    "describe_top_patterns",
    "set_autonomy_override",
    "clear_autonomy_override",
    "collect_overrides",
    "pause_agent",
    "resume_agent",
    "available_agents",
]

"""Plan pattern keys and historical pattern summaries."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from trustloop.models import PlanPattern, PlanStep
from trustloop.storage.base import PatternStore

logger = logging.getLogger(__name__)

MIN_EXECUTIONS_FOR_SUMMARY = 2
TOP_PATTERN_LIMIT = 5


def generate_pattern_key(steps: Sequence[PlanStep]) -> str:
    """Key identifying a plan shape: agent types | tools | step count.

    Both sets are de-duplicated and sorted so the key ignores step order.
    """
    agent_types = sorted({s.agent_type for s in steps})
    tools = sorted({tool for s in steps for tool in s.tools_required})
    return f"{','.join(agent_types)}|{','.join(tools)}|{len(steps)}"


def parse_pattern_key(pattern_key: str) -> tuple[list[str], list[str], int | None]:
    """Inverse of generate_pattern_key. Foreign keys yield empty parts."""
    parts = pattern_key.split("|")
    if len(parts) != 3:
        return [], [], None
    agent_types = [a for a in parts[0].split(",") if a]
    tools = [t for t in parts[1].split(",") if t]
    step_count = int(parts[2]) if parts[2].isdigit() else None
    return agent_types, tools, step_count


def top_patterns(patterns: Sequence[PlanPattern], limit: int = TOP_PATTERN_LIMIT) -> list[PlanPattern]:
    eligible = [p for p in patterns if p.total_executions >= MIN_EXECUTIONS_FOR_SUMMARY]
    return sorted(eligible, key=lambda p: p.success_rate, reverse=True)[:limit]


def format_pattern(pattern: PlanPattern) -> str:
    agent_types, _, step_count = parse_pattern_key(pattern.pattern_key)
    label = " -> ".join(agent_types) or pattern.pattern_key
    steps = step_count if step_count is not None else "?"
    return (
        f"Pattern: {label} ({steps} steps) | "
        f"Success: {pattern.success_rate * 100:.0f}% over {pattern.total_executions} runs"
    )


async def describe_top_patterns(store: PatternStore, account_id: str) -> str:
    """Summary of the best-performing patterns for planning prompts; '' if none."""
    try:
        patterns = await store.list_patterns(account_id)
    except Exception:
        logger.warning("Could not list patterns for account %s", account_id, exc_info=True)
        return ""

    best = top_patterns(patterns)
    if not best:
        return ""
    lines = "\n".join(format_pattern(p) for p in best)
    return f"Historical patterns that worked well:\n{lines}"

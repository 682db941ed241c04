"""Shared fixtures: in-memory store, wired services, history seeding."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence

import pytest

from trustloop.config import Settings
from trustloop.models import (
    AgentRecord,
    ExecutionOutcome,
    ExecutionRecord,
    ExecutionStatus,
    ToolUse,
)
from trustloop.services import Services, build_services
from trustloop.storage import InMemoryStore


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def services(store: InMemoryStore) -> Services:
    return build_services(store, Settings(history_limit=100, recent_window=20))


@pytest.fixture
def make_agent(store: InMemoryStore) -> Callable[..., Awaitable[AgentRecord]]:
    async def factory(agent_id: str = "agent-1", **fields) -> AgentRecord:
        fields.setdefault("account_id", "acct")
        fields.setdefault("name", agent_id)
        return await store.create_agent(AgentRecord(id=agent_id, **fields))

    return factory


@pytest.fixture
def seed_history(store: InMemoryStore) -> Callable[..., Awaitable[list[ExecutionRecord]]]:
    """Record executions oldest-first; ``tools`` applies to every record."""

    async def seed(
        agent_id: str, outcomes: Sequence[bool], tools: Sequence[ToolUse] = ()
    ) -> list[ExecutionRecord]:
        records = []
        for success in outcomes:
            status = ExecutionStatus.COMPLETED if success else ExecutionStatus.FAILED
            records.append(
                await store.record_execution(
                    ExecutionRecord(
                        agent_id=agent_id,
                        status=status,
                        account_id="acct",
                        tools_used=list(tools),
                    )
                )
            )
        return records

    return seed


@pytest.fixture
def run_outcome(
    store: InMemoryStore, services: Services
) -> Callable[..., Awaitable[ExecutionOutcome]]:
    """Record one execution for the agent and feed it through the annealing loop."""

    async def run(agent_id: str, success: bool, **fields) -> ExecutionOutcome:
        status = ExecutionStatus.COMPLETED if success else ExecutionStatus.FAILED
        record = await store.record_execution(
            ExecutionRecord(agent_id=agent_id, status=status, account_id="acct")
        )
        outcome = ExecutionOutcome(
            execution_id=record.id,
            task_id=fields.pop("task_id", "task-1"),
            agent_id=agent_id,
            account_id="acct",
            success=success,
            **fields,
        )
        await services.annealing.process_execution_outcome(outcome)
        return outcome

    return run

"""In-memory store implementing every repository interface.

Records are deep-copied on the way in and out so callers never share state
with the store, which mirrors a real database round trip.
"""

from __future__ import annotations

import copy
from dataclasses import replace
from typing import Any, TypeVar

from trustloop.errors import RecordNotFoundError
from trustloop.models import (
    AgentRecord,
    ExecutionRecord,
    ExecutionStatus,
    Note,
    PlanPattern,
    RunStatus,
    Task,
    TaskStatus,
    WorkflowRun,
    WorkflowTemplate,
    utcnow,
)

R = TypeVar("R")


def _copy(record: R) -> R:
    return copy.deepcopy(record)


class InMemoryStore:
    """Dict-backed agent, execution, pattern, task, note and workflow store."""

    def __init__(self) -> None:
        self._agents: dict[str, AgentRecord] = {}
        self._executions: dict[str, ExecutionRecord] = {}
        self._patterns: dict[tuple[str, str], PlanPattern] = {}
        self._tasks: dict[str, Task] = {}
        self._notes: dict[str, Note] = {}
        self._templates: dict[str, WorkflowTemplate] = {}
        self._runs: dict[str, WorkflowRun] = {}

    # ── Agents ───────────────────────────────────────────────────────────

    async def get_agent(self, agent_id: str) -> AgentRecord | None:
        agent = self._agents.get(agent_id)
        return _copy(agent) if agent else None

    async def list_agents(self, account_id: str | None = None) -> list[AgentRecord]:
        return [
            _copy(a)
            for a in self._agents.values()
            if account_id is None or a.account_id == account_id
        ]

    async def create_agent(self, agent: AgentRecord) -> AgentRecord:
        self._agents[agent.id] = _copy(agent)
        return _copy(agent)

    async def update_agent(self, agent_id: str, **changes: Any) -> AgentRecord:
        current = self._agents.get(agent_id)
        if current is None:
            raise RecordNotFoundError("agent", agent_id)
        updated = replace(current, **changes)
        self._agents[agent_id] = updated
        return _copy(updated)

    # ── Executions ───────────────────────────────────────────────────────

    async def record_execution(self, record: ExecutionRecord) -> ExecutionRecord:
        self._executions[record.id] = _copy(record)
        return _copy(record)

    async def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        record = self._executions.get(execution_id)
        return _copy(record) if record else None

    async def recent_executions(self, agent_id: str, limit: int) -> list[ExecutionRecord]:
        # newest created_at first; equal timestamps fall back to latest insert
        matches = sorted(
            (
                r
                for r in reversed(self._executions.values())
                if r.agent_id == agent_id
                and r.status in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)
            ),
            key=lambda r: r.created_at,
            reverse=True,
        )
        return [_copy(r) for r in matches[:limit]]

    async def update_execution(self, execution_id: str, **changes: Any) -> ExecutionRecord:
        current = self._executions.get(execution_id)
        if current is None:
            raise RecordNotFoundError("execution", execution_id)
        updated = replace(current, **changes)
        self._executions[execution_id] = updated
        return _copy(updated)

    # ── Plan patterns ────────────────────────────────────────────────────

    async def get_pattern(self, account_id: str, pattern_key: str) -> PlanPattern | None:
        pattern = self._patterns.get((account_id, pattern_key))
        return _copy(pattern) if pattern else None

    async def save_pattern(self, pattern: PlanPattern) -> PlanPattern:
        self._patterns[(pattern.account_id, pattern.pattern_key)] = _copy(pattern)
        return _copy(pattern)

    async def list_patterns(self, account_id: str) -> list[PlanPattern]:
        return [_copy(p) for (acct, _), p in self._patterns.items() if acct == account_id]

    # ── Tasks ────────────────────────────────────────────────────────────

    async def create_task(self, task: Task) -> Task:
        self._tasks[task.id] = _copy(task)
        return _copy(task)

    async def get_task(self, task_id: str) -> Task | None:
        task = self._tasks.get(task_id)
        return _copy(task) if task else None

    async def list_tasks(self) -> list[Task]:
        return [_copy(t) for t in self._tasks.values()]

    async def update_task(self, task_id: str, **changes: Any) -> Task:
        current = self._tasks.get(task_id)
        if current is None:
            raise RecordNotFoundError("task", task_id)
        updated = replace(current, **{"updated_at": utcnow(), **changes})
        self._tasks[task_id] = updated
        return _copy(updated)

    async def update_task_status(
        self,
        task_id: str,
        status: TaskStatus,
        changed_by: str = "system",
        note: str | None = None,
    ) -> Task:
        current = self._tasks.get(task_id)
        if current is None:
            raise RecordNotFoundError("task", task_id)
        entry = {"status": str(status), "changed_at": utcnow(), "changed_by": changed_by}
        if note:
            entry["note"] = note
        return await self.update_task(
            task_id,
            status=TaskStatus(status),
            status_history=[*current.status_history, entry],
        )

    # ── Notes ────────────────────────────────────────────────────────────

    async def add_note(
        self,
        title: str,
        content: dict[str, Any] | None = None,
        folder_id: str | None = None,
        entity_type: str | None = None,
        entity_id: str | None = None,
    ) -> Note:
        note = Note(
            title=title,
            content=content,
            folder_id=folder_id,
            entity_type=entity_type,
            entity_id=entity_id,
        )
        self._notes[note.id] = _copy(note)
        return _copy(note)

    async def get_note(self, note_id: str) -> Note | None:
        note = self._notes.get(note_id)
        return _copy(note) if note else None

    async def list_notes(self) -> list[Note]:
        return [_copy(n) for n in self._notes.values()]

    # ── Workflows ────────────────────────────────────────────────────────

    async def save_template(self, template: WorkflowTemplate) -> WorkflowTemplate:
        self._templates[template.id] = _copy(template)
        return _copy(template)

    async def get_template(self, template_id: str) -> WorkflowTemplate | None:
        template = self._templates.get(template_id)
        return _copy(template) if template else None

    async def list_templates(self, account_id: str) -> list[WorkflowTemplate]:
        return [_copy(t) for t in self._templates.values() if t.account_id == account_id]

    async def create_run(self, run: WorkflowRun) -> WorkflowRun:
        self._runs[run.id] = _copy(run)
        return _copy(run)

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        run = self._runs.get(run_id)
        return _copy(run) if run else None

    async def update_run(self, run_id: str, **changes: Any) -> WorkflowRun:
        current = self._runs.get(run_id)
        if current is None:
            raise RecordNotFoundError("workflow run", run_id)
        updated = replace(current, **{"updated_at": utcnow(), **_copy(changes)})
        self._runs[run_id] = updated
        return _copy(updated)

    async def list_runs(
        self, account_id: str, status: RunStatus | None = None
    ) -> list[WorkflowRun]:
        return [
            _copy(r)
            for r in self._runs.values()
            if r.account_id == account_id and (status is None or r.status == status)
        ]

"""Repository interfaces for the trust and workflow cores."""

from __future__ import annotations

from typing import Any, Protocol

from trustloop.models import (
    AgentRecord,
    ExecutionRecord,
    Note,
    PlanPattern,
    RunStatus,
    Task,
    TaskStatus,
    WorkflowRun,
    WorkflowTemplate,
)


class AgentStore(Protocol):
    async def get_agent(self, agent_id: str) -> AgentRecord | None: ...

    async def list_agents(self, account_id: str | None = None) -> list[AgentRecord]: ...

    async def create_agent(self, agent: AgentRecord) -> AgentRecord: ...

    async def update_agent(self, agent_id: str, **changes: Any) -> AgentRecord: ...


class ExecutionStore(Protocol):
    async def record_execution(self, record: ExecutionRecord) -> ExecutionRecord: ...

    async def get_execution(self, execution_id: str) -> ExecutionRecord | None: ...

    async def recent_executions(self, agent_id: str, limit: int) -> list[ExecutionRecord]:
        """Completed/failed executions for the agent, newest first."""
        ...

    async def update_execution(self, execution_id: str, **changes: Any) -> ExecutionRecord: ...


class PatternStore(Protocol):
    async def get_pattern(self, account_id: str, pattern_key: str) -> PlanPattern | None: ...

    async def save_pattern(self, pattern: PlanPattern) -> PlanPattern: ...

    async def list_patterns(self, account_id: str) -> list[PlanPattern]: ...


class TaskStore(Protocol):
    async def create_task(self, task: Task) -> Task: ...

    async def get_task(self, task_id: str) -> Task | None: ...

    async def update_task(self, task_id: str, **changes: Any) -> Task: ...

    async def update_task_status(
        self,
        task_id: str,
        status: TaskStatus,
        changed_by: str = "system",
        note: str | None = None,
    ) -> Task: ...


class NoteStore(Protocol):
    async def add_note(
        self,
        title: str,
        content: dict[str, Any] | None = None,
        folder_id: str | None = None,
        entity_type: str | None = None,
        entity_id: str | None = None,
    ) -> Note: ...

    async def get_note(self, note_id: str) -> Note | None: ...


class WorkflowStore(Protocol):
    async def save_template(self, template: WorkflowTemplate) -> WorkflowTemplate: ...

    async def get_template(self, template_id: str) -> WorkflowTemplate | None: ...

    async def list_templates(self, account_id: str) -> list[WorkflowTemplate]: ...

    async def create_run(self, run: WorkflowRun) -> WorkflowRun: ...

    async def get_run(self, run_id: str) -> WorkflowRun | None: ...

    async def update_run(self, run_id: str, **changes: Any) -> WorkflowRun: ...

    async def list_runs(
        self, account_id: str, status: RunStatus | None = None
    ) -> list[WorkflowRun]: ...

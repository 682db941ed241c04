"""
SQLite Store: aiosqlite persistence for agents, executions, patterns and workflows

Each table carries the columns the queries filter or sort on, plus a ``data``
JSON column holding the full record. Records round-trip through the model
``to_dict`` / ``from_dict`` helpers, which is the only place where stored
field names are translated.
"""

from __future__ import annotations

import json
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

import aiosqlite

from trustloop.errors import RecordNotFoundError, StoreError
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
    utcnow,
)

R = TypeVar("R")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS agents (
    id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL,
    data TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS task_executions (
    id TEXT PRIMARY KEY,
    agent_id TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    data TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_executions_agent
    ON task_executions(agent_id, created_at DESC);

CREATE TABLE IF NOT EXISTS plan_patterns (
    account_id TEXT NOT NULL,
    pattern_key TEXT NOT NULL,
    success_rate REAL NOT NULL DEFAULT 0.0,
    data TEXT NOT NULL,
    PRIMARY KEY (account_id, pattern_key),
    CHECK (success_rate BETWEEN 0.0 AND 1.0)
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    data TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS notes (
    id TEXT PRIMARY KEY,
    data TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS workflow_templates (
    id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL,
    data TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS workflow_runs (
    id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL,
    status TEXT NOT NULL,
    data TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_runs_account ON workflow_runs(account_id, status);
"""


class SqliteStore:
    """
    Persistent implementation of every repository interface.

    Usage:
        async with SqliteStore(path) as store:
            agent = await store.get_agent("agent-1")
    """

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db: Optional[aiosqlite.Connection] = None

    async def __aenter__(self) -> "SqliteStore":
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type],
        exc_val: Optional[BaseException],
        exc_tb: Optional[object],
    ) -> None:
        await self.close()

    async def open(self) -> None:
        if self._db is not None:
            return
        self._db = await aiosqlite.connect(str(self.db_path))
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.executescript(_SCHEMA)
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StoreError("SqliteStore is not open")
        return self._db

    # ── helpers ──────────────────────────────────────────────────────────

    async def _fetch_one(
        self, sql: str, params: tuple[Any, ...], loader: Callable[[dict[str, Any]], R]
    ) -> R | None:
        cursor = await self.db.execute(sql, params)
        row = await cursor.fetchone()
        if not row:
            return None
        return loader(json.loads(row["data"]))

    async def _fetch_all(
        self, sql: str, params: tuple[Any, ...], loader: Callable[[dict[str, Any]], R]
    ) -> list[R]:
        cursor = await self.db.execute(sql, params)
        rows = await cursor.fetchall()
        return [loader(json.loads(row["data"])) for row in rows]

    @staticmethod
    def _dump(record: Any) -> str:
        return json.dumps(record.to_dict())

    # ── Agents ───────────────────────────────────────────────────────────

    async def get_agent(self, agent_id: str) -> AgentRecord | None:
        return await self._fetch_one(
            "SELECT data FROM agents WHERE id = ?", (agent_id,), AgentRecord.from_dict
        )

    async def list_agents(self, account_id: str | None = None) -> list[AgentRecord]:
        if account_id is None:
            return await self._fetch_all("SELECT data FROM agents", (), AgentRecord.from_dict)
        return await self._fetch_all(
            "SELECT data FROM agents WHERE account_id = ?", (account_id,), AgentRecord.from_dict
        )

    async def create_agent(self, agent: AgentRecord) -> AgentRecord:
        await self.db.execute(
            "INSERT OR REPLACE INTO agents (id, account_id, data) VALUES (?, ?, ?)",
            (agent.id, agent.account_id, self._dump(agent)),
        )
        await self.db.commit()
        return agent

    async def update_agent(self, agent_id: str, **changes: Any) -> AgentRecord:
        current = await self.get_agent(agent_id)
        if current is None:
            raise RecordNotFoundError("agent", agent_id)
        updated = replace(current, **changes)
        await self.db.execute(
            "UPDATE agents SET data = ? WHERE id = ?", (self._dump(updated), agent_id)
        )
        await self.db.commit()
        return updated

    # ── Executions ───────────────────────────────────────────────────────

    async def record_execution(self, record: ExecutionRecord) -> ExecutionRecord:
        await self.db.execute(
            """INSERT INTO task_executions (id, agent_id, status, created_at, data)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                   status = excluded.status,
                   data = excluded.data""",
            (record.id, record.agent_id, str(record.status), record.created_at, self._dump(record)),
        )
        await self.db.commit()
        return record

    async def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        return await self._fetch_one(
            "SELECT data FROM task_executions WHERE id = ?",
            (execution_id,),
            ExecutionRecord.from_dict,
        )

    async def recent_executions(self, agent_id: str, limit: int) -> list[ExecutionRecord]:
        return await self._fetch_all(
            """SELECT data FROM task_executions
               WHERE agent_id = ? AND status IN ('completed', 'failed')
               ORDER BY created_at DESC, rowid DESC
               LIMIT ?""",
            (agent_id, limit),
            ExecutionRecord.from_dict,
        )

    async def update_execution(self, execution_id: str, **changes: Any) -> ExecutionRecord:
        current = await self.get_execution(execution_id)
        if current is None:
            raise RecordNotFoundError("execution", execution_id)
        updated = replace(current, **changes)
        await self.db.execute(
            "UPDATE task_executions SET status = ?, data = ? WHERE id = ?",
            (str(updated.status), self._dump(updated), execution_id),
        )
        await self.db.commit()
        return updated

    # ── Plan patterns ────────────────────────────────────────────────────

    async def get_pattern(self, account_id: str, pattern_key: str) -> PlanPattern | None:
        return await self._fetch_one(
            "SELECT data FROM plan_patterns WHERE account_id = ? AND pattern_key = ?",
            (account_id, pattern_key),
            PlanPattern.from_dict,
        )

    async def save_pattern(self, pattern: PlanPattern) -> PlanPattern:
        await self.db.execute(
            """INSERT INTO plan_patterns (account_id, pattern_key, success_rate, data)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(account_id, pattern_key) DO UPDATE SET
                   success_rate = excluded.success_rate,
                   data = excluded.data""",
            (pattern.account_id, pattern.pattern_key, pattern.success_rate, self._dump(pattern)),
        )
        await self.db.commit()
        return pattern

    async def list_patterns(self, account_id: str) -> list[PlanPattern]:
        return await self._fetch_all(
            "SELECT data FROM plan_patterns WHERE account_id = ? ORDER BY success_rate DESC",
            (account_id,),
            PlanPattern.from_dict,
        )

    # ── Tasks ────────────────────────────────────────────────────────────

    async def create_task(self, task: Task) -> Task:
        await self.db.execute(
            "INSERT INTO tasks (id, data) VALUES (?, ?)", (task.id, self._dump(task))
        )
        await self.db.commit()
        return task

    async def get_task(self, task_id: str) -> Task | None:
        return await self._fetch_one(
            "SELECT data FROM tasks WHERE id = ?", (task_id,), Task.from_dict
        )

    async def update_task(self, task_id: str, **changes: Any) -> Task:
        current = await self.get_task(task_id)
        if current is None:
            raise RecordNotFoundError("task", task_id)
        updated = replace(current, **{"updated_at": utcnow(), **changes})
        await self.db.execute(
            "UPDATE tasks SET data = ? WHERE id = ?", (self._dump(updated), task_id)
        )
        await self.db.commit()
        return updated

    async def update_task_status(
        self,
        task_id: str,
        status: TaskStatus,
        changed_by: str = "system",
        note: str | None = None,
    ) -> Task:
        current = await self.get_task(task_id)
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
        await self.db.execute(
            "INSERT INTO notes (id, data) VALUES (?, ?)", (note.id, self._dump(note))
        )
        await self.db.commit()
        return note

    async def get_note(self, note_id: str) -> Note | None:
        return await self._fetch_one(
            "SELECT data FROM notes WHERE id = ?", (note_id,), Note.from_dict
        )

    # ── Workflows ────────────────────────────────────────────────────────

    async def save_template(self, template: WorkflowTemplate) -> WorkflowTemplate:
        await self.db.execute(
            "INSERT OR REPLACE INTO workflow_templates (id, account_id, data) VALUES (?, ?, ?)",
            (template.id, template.account_id, self._dump(template)),
        )
        await self.db.commit()
        return template

    async def get_template(self, template_id: str) -> WorkflowTemplate | None:
        return await self._fetch_one(
            "SELECT data FROM workflow_templates WHERE id = ?",
            (template_id,),
            WorkflowTemplate.from_dict,
        )

    async def list_templates(self, account_id: str) -> list[WorkflowTemplate]:
        return await self._fetch_all(
            "SELECT data FROM workflow_templates WHERE account_id = ?",
            (account_id,),
            WorkflowTemplate.from_dict,
        )

    async def create_run(self, run: WorkflowRun) -> WorkflowRun:
        await self.db.execute(
            "INSERT INTO workflow_runs (id, account_id, status, data) VALUES (?, ?, ?, ?)",
            (run.id, run.account_id, str(run.status), self._dump(run)),
        )
        await self.db.commit()
        return run

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        return await self._fetch_one(
            "SELECT data FROM workflow_runs WHERE id = ?", (run_id,), WorkflowRun.from_dict
        )

    async def update_run(self, run_id: str, **changes: Any) -> WorkflowRun:
        current = await self.get_run(run_id)
        if current is None:
            raise RecordNotFoundError("workflow run", run_id)
        updated = replace(current, **{"updated_at": utcnow(), **changes})
        await self.db.execute(
            "UPDATE workflow_runs SET status = ?, data = ? WHERE id = ?",
            (str(updated.status), self._dump(updated), run_id),
        )
        await self.db.commit()
        return updated

    async def list_runs(
        self, account_id: str, status: RunStatus | None = None
    ) -> list[WorkflowRun]:
        if status is None:
            return await self._fetch_all(
                "SELECT data FROM workflow_runs WHERE account_id = ?",
                (account_id,),
                WorkflowRun.from_dict,
            )
        return await self._fetch_all(
            "SELECT data FROM workflow_runs WHERE account_id = ? AND status = ?",
            (account_id, str(status)),
            WorkflowRun.from_dict,
        )

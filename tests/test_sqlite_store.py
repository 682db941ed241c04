"""
Tests for the SQLite store.

Each test opens a fresh database under tmp_path.
"""

import pytest

from trustloop.errors import RecordNotFoundError, StoreError
from trustloop.models import (
    AgentRecord,
    AutonomyLevel,
    ExecutionRecord,
    ExecutionStatus,
    HealthStatus,
    PlanPattern,
    RunStatus,
    StepType,
    Task,
    TaskStatus,
    ToolUse,
    WorkflowRun,
    WorkflowStepDef,
    WorkflowTemplate,
)
from trustloop.services import build_services
from trustloop.storage import SqliteStore

pytestmark = pytest.mark.anyio


@pytest.fixture
async def db(tmp_path):
    async with SqliteStore(tmp_path / "nested" / "trustloop.db") as store:
        yield store


# ═══════════════════════════════════════════════════════════════════════════
# LIFECYCLE
# ═══════════════════════════════════════════════════════════════════════════


class TestLifecycle:
    async def test_not_open(self, tmp_path):
        store = SqliteStore(tmp_path / "x.db")
        with pytest.raises(StoreError):
            await store.get_agent("a")

    async def test_wal_mode(self, db):
        cursor = await db.db.execute("PRAGMA journal_mode")
        row = await cursor.fetchone()
        assert row[0] == "wal"

    async def test_open_is_idempotent(self, db):
        connection = db.db
        await db.open()
        assert db.db is connection

    async def test_data_survives_reopen(self, tmp_path):
        path = tmp_path / "t.db"
        async with SqliteStore(path) as store:
            await store.create_agent(AgentRecord(id="a", account_id="acct", name="Writer"))
        async with SqliteStore(path) as store:
            agent = await store.get_agent("a")
        assert agent.name == "Writer"


# ═══════════════════════════════════════════════════════════════════════════
# AGENTS & EXECUTIONS
# ═══════════════════════════════════════════════════════════════════════════


class TestAgents:
    async def test_round_trip(self, db):
        await db.create_agent(
            AgentRecord(
                id="a",
                account_id="acct",
                autonomy_override=AutonomyLevel.SUPERVISED,
                health_status=HealthStatus.DEGRADED,
            )
        )
        agent = await db.get_agent("a")
        assert agent.autonomy_override == AutonomyLevel.SUPERVISED
        assert agent.health_status == HealthStatus.DEGRADED

    async def test_update(self, db):
        await db.create_agent(AgentRecord(id="a", account_id="acct"))
        await db.update_agent("a", consecutive_failures=3)
        assert (await db.get_agent("a")).consecutive_failures == 3

    async def test_update_missing(self, db):
        with pytest.raises(RecordNotFoundError, match="agent ghost does not exist"):
            await db.update_agent("ghost", consecutive_failures=1)

    async def test_list_by_account(self, db):
        await db.create_agent(AgentRecord(id="a", account_id="one"))
        await db.create_agent(AgentRecord(id="b", account_id="two"))
        assert [a.id for a in await db.list_agents("two")] == ["b"]
        assert len(await db.list_agents()) == 2


class TestExecutions:
    async def test_recent_newest_first(self, db):
        ids = []
        for i in range(5):
            record = ExecutionRecord(
                agent_id="a",
                status=ExecutionStatus.COMPLETED,
                created_at=f"2026-01-01T00:00:0{i}+00:00",
            )
            ids.append((await db.record_execution(record)).id)
        await db.record_execution(ExecutionRecord(agent_id="other", status=ExecutionStatus.FAILED))

        recent = await db.recent_executions("a", 3)
        assert [r.id for r in recent] == ids[::-1][:3]

    async def test_late_insert_with_older_timestamp(self, db, store):
        for backend in (db, store):
            newer = await backend.record_execution(
                ExecutionRecord(
                    agent_id="a",
                    status=ExecutionStatus.COMPLETED,
                    created_at="2026-01-01T00:00:05+00:00",
                )
            )
            older = await backend.record_execution(
                ExecutionRecord(
                    agent_id="a",
                    status=ExecutionStatus.FAILED,
                    created_at="2026-01-01T00:00:01+00:00",
                )
            )
            recent = await backend.recent_executions("a", 2)
            assert [r.id for r in recent] == [newer.id, older.id]

    async def test_tools_round_trip(self, db):
        record = await db.record_execution(
            ExecutionRecord(
                agent_id="a",
                status=ExecutionStatus.FAILED,
                tools_used=[ToolUse("search", False), ToolUse("web")],
            )
        )
        loaded = await db.get_execution(record.id)
        assert loaded.tools_used == [ToolUse("search", False), ToolUse("web")]
        assert not loaded.succeeded

    async def test_update_execution(self, db):
        record = await db.record_execution(
            ExecutionRecord(agent_id="a", status=ExecutionStatus.COMPLETED)
        )
        await db.update_execution(record.id, cost_cents=42, plan_pattern_key="k")
        loaded = await db.get_execution(record.id)
        assert loaded.cost_cents == 42
        assert loaded.plan_pattern_key == "k"

        with pytest.raises(RecordNotFoundError):
            await db.update_execution("missing", cost_cents=1)


class TestPatterns:
    async def test_upsert_and_order(self, db):
        await db.save_pattern(PlanPattern(account_id="acct", pattern_key="k1", success_rate=0.4))
        await db.save_pattern(PlanPattern(account_id="acct", pattern_key="k2", success_rate=0.9))
        await db.save_pattern(
            PlanPattern(account_id="acct", pattern_key="k1", success_rate=1.0, total_executions=3)
        )

        patterns = await db.list_patterns("acct")
        assert [p.pattern_key for p in patterns] == ["k1", "k2"]
        assert (await db.get_pattern("acct", "k1")).total_executions == 3
        assert await db.get_pattern("other", "k1") is None


# ═══════════════════════════════════════════════════════════════════════════
# TASKS, NOTES & WORKFLOWS
# ═══════════════════════════════════════════════════════════════════════════


class TestTasksAndNotes:
    async def test_status_history(self, db):
        task = await db.create_task(Task(title="T"))
        await db.update_task_status(task.id, TaskStatus.IN_PROGRESS, changed_by="u")
        await db.update_task_status(task.id, TaskStatus.COMPLETED, note="done")

        loaded = await db.get_task(task.id)
        assert loaded.status == TaskStatus.COMPLETED
        assert [h["status"] for h in loaded.status_history] == ["in_progress", "completed"]
        assert loaded.status_history[0]["changed_by"] == "u"
        assert "note" not in loaded.status_history[0]
        assert loaded.status_history[1]["note"] == "done"

    async def test_missing_task(self, db):
        with pytest.raises(RecordNotFoundError):
            await db.update_task_status("missing", TaskStatus.FAILED)

    async def test_note(self, db):
        note = await db.add_note("Report", content={"type": "doc"}, entity_type="workflow")
        loaded = await db.get_note(note.id)
        assert loaded.title == "Report"
        assert loaded.content == {"type": "doc"}


class TestWorkflows:
    async def test_template_and_run(self, db):
        steps = [
            WorkflowStepDef(id="s1", title="One", agent_id="a"),
            WorkflowStepDef(id="s2", title="Gate", type=StepType.HUMAN_GATE, gate_options=["x"]),
        ]
        await db.save_template(WorkflowTemplate(name="T", account_id="acct", steps=steps, id="t"))
        template = await db.get_template("t")
        assert template.steps[1].type == StepType.HUMAN_GATE
        assert [t.id for t in await db.list_templates("acct")] == ["t"]

        run = await db.create_run(
            WorkflowRun(account_id="acct", template_id="t", steps_snapshot=template.steps)
        )
        await db.update_run(run.id, status=RunStatus.CANCELLED)

        assert (await db.get_run(run.id)).status == RunStatus.CANCELLED
        assert await db.list_runs("acct", RunStatus.RUNNING) == []
        assert len(await db.list_runs("acct", RunStatus.CANCELLED)) == 1

        with pytest.raises(RecordNotFoundError):
            await db.update_run("missing", status=RunStatus.FAILED)

    async def test_engine_on_sqlite(self, db):
        services = build_services(db)
        await db.save_template(
            WorkflowTemplate(
                name="T",
                account_id="acct",
                id="t",
                steps=[
                    WorkflowStepDef(id="s1", title="One", agent_id="a"),
                    WorkflowStepDef(id="doc", title="Doc", type=StepType.DOCUMENT_OUTPUT),
                ],
            )
        )
        run = await services.workflows.start_workflow_run("t", "acct", "u")
        await services.workflows.advance_workflow(run.id, "s1", {"content": "hello"})

        run = await db.get_run(run.id)
        assert run.status == RunStatus.COMPLETED
        note = await db.get_note(run.step_results["doc"]["document_id"])
        assert note.entity_id == run.id

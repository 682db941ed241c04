"""FastAPI server for programmatic trust and workflow access."""

from __future__ import annotations

import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import click
from fastapi import Depends, FastAPI, HTTPException, Request

from trustloop import __version__
from trustloop.config import get_settings
from trustloop.log import configure_logging
from trustloop.models import (
    ExecutionOutcome,
    ExecutionRecord,
    ExecutionStatus,
    GateResponse,
    PlanForConfidence,
    TaskStatus,
    TriggerSource,
    WorkflowRun,
)
from trustloop.services import Services, build_services
from trustloop.storage import InMemoryStore, SqliteStore
from trustloop.trust.overrides import collect_overrides
from trustloop.trust.patterns import generate_pattern_key

_start_time = time.monotonic()


def get_services(request: Request) -> Services:
    services: Services | None = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="store not ready")
    return services


def _bad_request(exc: Exception) -> HTTPException:
    return HTTPException(status_code=400, detail=str(exc))


async def _require_run(services: Services, run_id: str) -> WorkflowRun:
    run = await services.store.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"workflow run {run_id} does not exist")
    return run


def create_app(store: InMemoryStore | SqliteStore | None = None) -> FastAPI:
    """Build the API. Without a store, a SQLite store is opened for the app's lifetime."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if store is not None:
            yield
            return
        async with SqliteStore(get_settings().db_path) as sqlite_store:
            app.state.services = build_services(sqlite_store)
            yield

    app = FastAPI(
        title="trustloop API",
        version=__version__,
        description="Agent trust scoring, autonomy annealing and workflow runs",
        lifespan=lifespan,
    )
    if store is not None:
        app.state.services = build_services(store)

    @app.get("/api/health")
    async def health() -> dict[str, Any]:
        """Health check."""
        uptime = time.monotonic() - _start_time
        return {"status": "ok", "version": __version__, "uptime_seconds": round(uptime, 1)}

    # ── Trust ────────────────────────────────────────────────────────────

    @app.get("/api/agents/{agent_id}/trust")
    async def trust_score(
        agent_id: str, account_id: str = "default", services: Services = Depends(get_services)
    ) -> dict[str, Any]:
        """Current trust score for an agent."""
        if await services.store.get_agent(agent_id) is None:
            raise HTTPException(status_code=404, detail=f"agent {agent_id} does not exist")
        score = await services.trust.compute_trust_score(agent_id, account_id)
        return score.to_dict()

    @app.post("/api/confidence")
    async def confidence(
        request: dict[str, Any], services: Services = Depends(get_services)
    ) -> dict[str, Any]:
        """Score a candidate plan and recommend an execution mode."""
        account_id = request.get("account_id", "default")
        try:
            plan = PlanForConfidence.from_dict(request.get("plan", request))
        except (AttributeError, TypeError, ValueError) as exc:
            raise _bad_request(exc) from exc
        if not plan.steps:
            raise HTTPException(status_code=400, detail="plan has no steps")
        if not plan.pattern_key:
            plan.pattern_key = generate_pattern_key(plan.steps)

        overrides = await collect_overrides(services.store, [s.agent_id for s in plan.steps])
        result = await services.trust.compute_confidence(plan, account_id, overrides)
        return {**result.to_dict(), "pattern_key": plan.pattern_key}

    @app.post("/api/outcomes", status_code=202)
    async def record_outcome(
        request: dict[str, Any], services: Services = Depends(get_services)
    ) -> dict[str, Any]:
        """Feed one execution outcome to the annealing loop.

        The execution row is recorded first when the caller has not stored one,
        so the outcome counts towards the agent's trust score.
        """
        try:
            outcome = ExecutionOutcome.from_dict(request)
        except (AttributeError, TypeError, ValueError) as exc:
            raise _bad_request(exc) from exc
        if await services.store.get_execution(outcome.execution_id) is None:
            await services.store.record_execution(
                ExecutionRecord(
                    id=outcome.execution_id,
                    agent_id=outcome.agent_id,
                    status=ExecutionStatus.COMPLETED if outcome.success else ExecutionStatus.FAILED,
                    account_id=outcome.account_id,
                    task_id=outcome.task_id,
                    tools_used=list(outcome.tools_used),
                )
            )
        await services.annealing.process_execution_outcome(outcome)
        agent = await services.store.get_agent(outcome.agent_id)
        return {
            "status": "accepted",
            "execution_id": outcome.execution_id,
            "agent": agent.to_dict() if agent else None,
        }

    # ── Workflows ────────────────────────────────────────────────────────

    @app.post("/api/workflows/{template_id}/runs", status_code=201)
    async def start_run(
        template_id: str, request: dict[str, Any], services: Services = Depends(get_services)
    ) -> dict[str, Any]:
        """Start a run from a template."""
        try:
            triggered_by = TriggerSource(request.get("triggered_by", TriggerSource.USER))
        except ValueError as exc:
            raise _bad_request(exc) from exc
        if await services.store.get_template(template_id) is None:
            raise HTTPException(status_code=404, detail=f"template {template_id} does not exist")

        run = await services.workflows.start_workflow_run(
            template_id,
            request.get("account_id", "default"),
            request.get("user_id", "api"),
            triggered_by,
        )
        if run is None:
            raise HTTPException(status_code=400, detail="could not start workflow run")
        return run.to_dict()

    @app.get("/api/runs/{run_id}")
    async def show_run(run_id: str, services: Services = Depends(get_services)) -> dict[str, Any]:
        return (await _require_run(services, run_id)).to_dict()

    @app.post("/api/runs/{run_id}/steps/{step_id}/complete")
    async def complete_step(
        run_id: str,
        step_id: str,
        request: dict[str, Any],
        services: Services = Depends(get_services),
    ) -> dict[str, Any]:
        """Report a step as completed and advance the run."""
        await _require_run(services, run_id)
        output = request.get("output")
        if output is not None and not isinstance(output, dict):
            raise HTTPException(status_code=400, detail="output must be an object")
        await services.workflows.advance_workflow(run_id, step_id, output)
        return (await _require_run(services, run_id)).to_dict()

    @app.post("/api/runs/{run_id}/steps/{step_id}/gate")
    async def respond_to_gate(
        run_id: str,
        step_id: str,
        request: dict[str, Any],
        services: Services = Depends(get_services),
    ) -> dict[str, Any]:
        """Answer a human gate step."""
        run = await _require_run(services, run_id)
        try:
            response = GateResponse.from_dict(request)
        except (AttributeError, TypeError, ValueError) as exc:
            raise _bad_request(exc) from exc
        task_id = request.get("task_id") or run.step_results.get(step_id, {}).get("task_id")
        if not task_id:
            raise HTTPException(status_code=404, detail=f"no gate task for step {step_id}")
        await services.workflows.handle_gate_response(run_id, step_id, task_id, response)
        return (await _require_run(services, run_id)).to_dict()

    @app.post("/api/runs/{run_id}/steps/{step_id}/fail")
    async def fail_step(
        run_id: str,
        step_id: str,
        request: dict[str, Any],
        services: Services = Depends(get_services),
    ) -> dict[str, Any]:
        await _require_run(services, run_id)
        error = str(request.get("error") or "Step failed")
        await services.workflows.handle_step_failure(run_id, step_id, error)
        return (await _require_run(services, run_id)).to_dict()

    @app.post("/api/runs/{run_id}/cancel")
    async def cancel_run(run_id: str, services: Services = Depends(get_services)) -> dict[str, Any]:
        await _require_run(services, run_id)
        run = await services.workflows.cancel_run(run_id)
        return (run or await _require_run(services, run_id)).to_dict()

    # ── Task events ──────────────────────────────────────────────────────

    @app.post("/api/tasks/{task_id}/events")
    async def task_event(
        task_id: str, request: dict[str, Any], services: Services = Depends(get_services)
    ) -> dict[str, Any]:
        """Apply a task status change and let the chaining watcher react to it."""
        if await services.store.get_task(task_id) is None:
            raise HTTPException(status_code=404, detail=f"task {task_id} does not exist")
        try:
            status = TaskStatus(request.get("status", ""))
        except ValueError as exc:
            raise _bad_request(exc) from exc

        changes: dict[str, Any] = {}
        if isinstance(request.get("output"), dict):
            changes["output"] = request["output"]
        if isinstance(request.get("error"), dict):
            changes["error"] = request["error"]
        if changes:
            await services.store.update_task(task_id, **changes)
        task = await services.store.update_task_status(
            task_id, status, changed_by=request.get("changed_by", "api"), note=request.get("note")
        )

        dispatched = await services.watcher.on_task_update(task)
        return {"task": task.to_dict(), "dispatched": dispatched}

    return app


app = create_app()


@click.command()
@click.option("--port", default=None, type=int, help="Port to listen on")
@click.option("--host", default=None, help="Host to bind to")
def main(port: int | None, host: str | None) -> None:
    """Start the trustloop API server."""
    import uvicorn

    settings = get_settings()
    configure_logging(settings.log_level)
    uvicorn.run(app, host=host or settings.api_host, port=port or settings.api_port)

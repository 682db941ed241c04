"""
Workflow Engine: Run State Machine

Sequences the steps of a workflow template as subtasks of an umbrella task.

    start_workflow_run ──► running ──advance──► ... ──► completed
                              │
                              ├── handle_step_failure ──► failed
                              └── cancel_run ───────────► cancelled

- agent_task steps become queued subtasks
- human_gate steps become subtasks in review, resolved by handle_gate_response
- document_output steps are never dispatched; advance_workflow writes their
  note inline, in order, before creating the next subtask

Every entry point logs and swallows store errors; handle_step_failure is the
one path that persists a failure.
"""

from __future__ import annotations

import copy
import logging
from datetime import UTC, datetime
from typing import Any

from trustloop.models import (
    GateResponse,
    GateType,
    RunStatus,
    StepStatus,
    StepType,
    Task,
    TaskStatus,
    TriggerSource,
    WorkflowRun,
    WorkflowStepDef,
    utcnow,
)
from trustloop.storage.base import NoteStore, TaskStore, WorkflowStore
from trustloop.workflows.mapping import resolve_input_mapping

logger = logging.getLogger(__name__)

# Keys in a step's output that can carry a document body, in priority order
DOCUMENT_BODY_KEYS = ("content", "result", "formatted")


def _today() -> str:
    return datetime.now(UTC).date().isoformat()


def text_document(text: str) -> dict[str, Any]:
    """Minimal rich-text document tree holding one paragraph."""
    return {
        "type": "doc",
        "content": [{"type": "paragraph", "content": [{"type": "text", "text": text}]}],
    }


def document_body(output: Any) -> Any:
    if not isinstance(output, dict):
        return None
    for key in DOCUMENT_BODY_KEYS:
        if output.get(key):
            return output[key]
    return None


def step_task_input(
    run_id: str, step: WorkflowStepDef, step_index: int, resolved: dict[str, Any]
) -> dict[str, Any]:
    task_input: dict[str, Any] = {
        "workflow_run_id": run_id,
        "workflow_step_index": step_index,
        **resolved,
    }
    if step.type == StepType.AGENT_TASK and step.prompt:
        task_input["prompt"] = step.prompt
    if step.type == StepType.HUMAN_GATE:
        task_input["workflow_gate"] = {
            "type": str(step.gate_type or GateType.APPROVE),
            "prompt": step.gate_prompt or step.description,
            "options": step.gate_options,
        }
    return task_input


def initial_step_result(step: WorkflowStepDef, task_id: str) -> dict[str, Any]:
    status = StepStatus.WAITING_GATE if step.type == StepType.HUMAN_GATE else StepStatus.RUNNING
    return {"status": str(status), "task_id": task_id, "started_at": utcnow()}


class WorkflowEngine:
    """Drives workflow runs through the task, note and workflow stores."""

    def __init__(self, workflows: WorkflowStore, tasks: TaskStore, notes: NoteStore) -> None:
        self.workflows = workflows
        self.tasks = tasks
        self.notes = notes

    # ── Start ────────────────────────────────────────────────────────────

    async def start_workflow_run(
        self,
        template_id: str,
        account_id: str,
        user_id: str,
        triggered_by: TriggerSource | str = TriggerSource.USER,
    ) -> WorkflowRun | None:
        """Create the umbrella task, the run and the first step's subtask.

        Returns None, after logging, when the template is missing or empty or
        any store call fails.
        """
        try:
            template = await self.workflows.get_template(template_id)
            if template is None:
                logger.error("Template %s not found", template_id)
                return None
            if not template.steps:
                logger.error("Template %s has no steps", template_id)
                return None

            parent = await self.tasks.create_task(
                Task(
                    title=f"{template.name} - {_today()}",
                    description=template.description or f"Workflow run: {template.name}",
                    status=TaskStatus.IN_PROGRESS,
                    project_id=template.project_id,
                    account_id=account_id,
                    input={"workflow_run_id": ""},
                    created_by=user_id,
                    updated_by=user_id,
                )
            )

            run = await self.workflows.create_run(
                WorkflowRun(
                    account_id=account_id,
                    template_id=template_id,
                    steps_snapshot=copy.deepcopy(template.steps),
                    parent_task_id=parent.id,
                    triggered_by=TriggerSource(triggered_by),
                    triggered_by_id=user_id,
                )
            )
            parent = await self.tasks.update_task(parent.id, input={"workflow_run_id": run.id})

            first = run.steps_snapshot[0]
            task = await self._create_step_task(
                run, first, 0, parent, account_id, user_id,
                resolve_input_mapping(first.input_mapping, {}),
            )
            if task is not None:
                run = await self.workflows.update_run(
                    run.id, step_results={first.id: initial_step_result(first, task.id)}
                )

            logger.info(
                "Started run %s for %r (%d steps)", run.id, template.name, len(run.steps_snapshot)
            )
            return run
        except Exception:
            logger.exception("Failed to start workflow run for template %s", template_id)
            return None

    # ── Advance ──────────────────────────────────────────────────────────

    async def advance_workflow(
        self,
        run_id: str,
        completed_step_id: str,
        step_output: dict[str, Any] | None = None,
    ) -> None:
        """Record a completed step and move the run to its next dispatchable step."""
        try:
            await self._advance(run_id, completed_step_id, step_output)
        except Exception:
            logger.exception("Failed to advance run %s past step %s", run_id, completed_step_id)

    async def _advance(
        self, run_id: str, completed_step_id: str, step_output: dict[str, Any] | None
    ) -> None:
        run = await self.workflows.get_run(run_id)
        if run is None:
            logger.error("Run %s not found", run_id)
            return
        if run.status != RunStatus.RUNNING:
            logger.info("Run %s is %s, skipping advance", run_id, run.status)
            return

        steps = run.steps_snapshot
        completed_index = run.step_index(completed_step_id)
        if completed_index < 0:
            logger.error("Step %s not found in run %s", completed_step_id, run_id)
            return

        previous = run.step_results.get(completed_step_id, {})
        if previous.get("status") == StepStatus.COMPLETED and run.current_step_index > completed_index:
            logger.info("Step %s of run %s already advanced, ignoring", completed_step_id, run_id)
            return

        step_results = dict(run.step_results)
        step_results[completed_step_id] = {
            **previous,
            "status": str(StepStatus.COMPLETED),
            "output": step_output,
            "completed_at": utcnow(),
        }

        next_index = completed_index + 1
        while next_index < len(steps) and steps[next_index].type == StepType.DOCUMENT_OUTPUT:
            doc_step = steps[next_index]
            document_id = await self._process_document_output(run, doc_step, step_results)
            step_results[doc_step.id] = {
                "status": str(StepStatus.COMPLETED),
                "document_id": document_id,
                "completed_at": utcnow(),
            }
            logger.info("Document output step %r processed", doc_step.title)
            next_index += 1

        if next_index >= len(steps):
            await self.workflows.update_run(
                run_id,
                status=RunStatus.COMPLETED,
                current_step_index=len(steps),
                step_results=step_results,
                completed_at=utcnow(),
            )
            if run.parent_task_id:
                await self.tasks.update_task_status(
                    run.parent_task_id,
                    TaskStatus.COMPLETED,
                    note="Workflow completed - all steps finished",
                )
            logger.info("Run %s completed (all %d steps done)", run_id, len(steps))
            return

        next_step = steps[next_index]
        parent = await self.tasks.get_task(run.parent_task_id) if run.parent_task_id else None
        if parent is not None:
            task = await self._create_step_task(
                run,
                next_step,
                next_index,
                parent,
                run.account_id,
                run.triggered_by_id or "system",
                resolve_input_mapping(next_step.input_mapping, step_results),
            )
            if task is not None:
                step_results[next_step.id] = initial_step_result(next_step, task.id)

        await self.workflows.update_run(
            run_id, current_step_index=next_index, step_results=step_results
        )
        logger.info(
            "Advanced run %s to step %d/%d: %r",
            run_id,
            next_index + 1,
            len(steps),
            next_step.title,
        )

    # ── Gates & failures ─────────────────────────────────────────────────

    async def handle_gate_response(
        self, run_id: str, step_id: str, task_id: str, response: GateResponse
    ) -> None:
        """Resolve a human gate: record the response, close its task, advance."""
        try:
            run = await self.workflows.get_run(run_id)
            if run is None:
                logger.error("Run %s not found for gate response", run_id)
                return

            payload = response.to_dict()
            step_results = dict(run.step_results)
            step_results[step_id] = {
                **step_results.get(step_id, {}),
                "gate_response": payload,
                "status": str(StepStatus.COMPLETED),
                "completed_at": utcnow(),
            }
            await self.workflows.update_run(run_id, step_results=step_results)

            await self.tasks.update_task_status(
                task_id,
                TaskStatus.COMPLETED,
                changed_by=response.responded_by or "system",
                note=f"Gate response: {response.action}",
            )
            await self.tasks.update_task(task_id, output={"gate_response": payload})
        except Exception:
            logger.exception("Failed to record gate response for run %s step %s", run_id, step_id)
            return

        await self.advance_workflow(run_id, step_id, {"gate_response": payload})

    async def handle_step_failure(self, run_id: str, step_id: str, error: str) -> None:
        """Fail the step and, with it, the whole run. Terminal."""
        try:
            run = await self.workflows.get_run(run_id)
            if run is None:
                logger.error("Run %s not found for step failure", run_id)
                return
            if run.status != RunStatus.RUNNING:
                logger.info("Run %s is %s, ignoring failure of step %s", run_id, run.status, step_id)
                return

            step_results = dict(run.step_results)
            step_results[step_id] = {
                **step_results.get(step_id, {}),
                "status": str(StepStatus.FAILED),
                "error": error,
                "completed_at": utcnow(),
            }
            await self.workflows.update_run(
                run_id, status=RunStatus.FAILED, step_results=step_results
            )

            if run.parent_task_id:
                index = run.step_index(step_id)
                title = run.steps_snapshot[index].title if index >= 0 else step_id
                await self.tasks.update_task_status(
                    run.parent_task_id,
                    TaskStatus.FAILED,
                    note=f'Workflow failed at step "{title}": {error}',
                )
            logger.error("Run %s failed at step %s: %s", run_id, step_id, error)
        except Exception:
            logger.exception("Failed to record failure of run %s step %s", run_id, step_id)

    async def cancel_run(self, run_id: str) -> WorkflowRun | None:
        """Mark a running run cancelled. In-flight step tasks are left alone."""
        try:
            run = await self.workflows.get_run(run_id)
            if run is None:
                logger.error("Run %s not found for cancel", run_id)
                return None
            if run.status != RunStatus.RUNNING:
                logger.info("Run %s is already %s", run_id, run.status)
                return run
            run = await self.workflows.update_run(run_id, status=RunStatus.CANCELLED)
            logger.info("Run %s cancelled", run_id)
            return run
        except Exception:
            logger.exception("Failed to cancel run %s", run_id)
            return None

    # ── Internals ────────────────────────────────────────────────────────

    async def _create_step_task(
        self,
        run: WorkflowRun,
        step: WorkflowStepDef,
        step_index: int,
        parent: Task,
        account_id: str,
        user_id: str,
        resolved_input: dict[str, Any] | None = None,
    ) -> Task | None:
        is_gate = step.type == StepType.HUMAN_GATE
        try:
            task = await self.tasks.create_task(
                Task(
                    title=step.title,
                    description=(
                        f"{step.description}\n\n---\n"
                        f"Step {step_index + 1} of {len(run.steps_snapshot)} | Workflow run"
                    ),
                    status=TaskStatus.REVIEW if is_gate else TaskStatus.QUEUED,
                    project_id=parent.project_id,
                    parent_task_id=parent.id,
                    account_id=account_id,
                    workflow_run_id=run.id,
                    workflow_step_id=step.id,
                    assigned_to=step.agent_id,
                    assigned_to_type="agent" if step.agent_id else None,
                    skill_id=step.skill_id,
                    input=step_task_input(run.id, step, step_index, resolved_input or {}),
                    created_by=user_id,
                    updated_by=user_id,
                )
            )
        except Exception:
            logger.exception("Failed to create task for step %r of run %s", step.title, run.id)
            return None

        logger.info("Created step task %r (%s) -> %s", step.title, step.type, task.id)
        return task

    async def _process_document_output(
        self,
        run: WorkflowRun,
        step: WorkflowStepDef,
        step_results: dict[str, dict[str, Any]],
    ) -> str | None:
        """Write the preceding step's output as a note; None when there is nothing to write."""
        previous_index = run.step_index(step.id) - 1
        if previous_index < 0:
            return None

        previous_step = run.steps_snapshot[previous_index]
        output = step_results.get(previous_step.id, {}).get("output")
        if not output:
            return None

        body = document_body(output)
        first_title = run.steps_snapshot[0].title or "Workflow"
        title = step.document_title or f"{first_title} - {_today()}"
        try:
            note = await self.notes.add_note(
                title,
                content=text_document(body) if isinstance(body, str) else None,
                folder_id=step.document_folder_id,
                entity_type="workflow",
                entity_id=run.id,
            )
        except Exception:
            logger.exception("Failed to write document %r for run %s", title, run.id)
            return None

        logger.info("Created document %r -> %s", title, note.id)
        return note.id

"""Step-task chaining: turns workflow subtask status changes into engine calls."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from trustloop.models import RunStatus, Task, TaskStatus
from trustloop.workflows.engine import WorkflowEngine

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_MESSAGE = "Step task failed"


class StepTaskWatcher:
    """Dispatches each workflow subtask at most once per outcome.

    A completed subtask advances its run with the task output; a failed one
    fails the run with the task's error message. Dedupe keys are kept per run
    and dropped once the run is finished.
    """

    def __init__(self, engine: WorkflowEngine) -> None:
        self.engine = engine
        self._dispatched: dict[str, set[tuple[str, TaskStatus]]] = {}

    async def on_task_update(self, task: Task) -> bool:
        """Handle one task snapshot. Returns True if it triggered an engine call."""
        if not task.workflow_run_id or not task.workflow_step_id:
            return False
        if task.status not in (TaskStatus.COMPLETED, TaskStatus.FAILED):
            return False

        run_id = task.workflow_run_id
        if not await self._run_is_active(run_id):
            self._dispatched.pop(run_id, None)
            return False

        seen = self._dispatched.setdefault(run_id, set())
        key = (task.id, task.status)
        if key in seen:
            return False
        seen.add(key)

        if task.status == TaskStatus.COMPLETED:
            logger.info(
                "Step %r completed, advancing workflow run %s", task.title, task.workflow_run_id
            )
            await self.engine.advance_workflow(
                task.workflow_run_id, task.workflow_step_id, task.output
            )
        else:
            message = (task.error or {}).get("message") or DEFAULT_FAILURE_MESSAGE
            logger.warning(
                "Step %r failed, marking workflow run %s as failed",
                task.title,
                task.workflow_run_id,
            )
            await self.engine.handle_step_failure(
                task.workflow_run_id, task.workflow_step_id, message
            )

        if not await self._run_is_active(run_id):
            self._dispatched.pop(run_id, None)
        return True

    async def _run_is_active(self, run_id: str) -> bool:
        run = await self.engine.workflows.get_run(run_id)
        return run is not None and run.status == RunStatus.RUNNING

    def tracked_runs(self) -> int:
        return len(self._dispatched)

    async def sweep(self, tasks: Iterable[Task]) -> int:
        """Process a batch of task snapshots; returns how many were dispatched."""
        dispatched = 0
        for task in tasks:
            if await self.on_task_update(task):
                dispatched += 1
        return dispatched

"""Workflows: run state machine, input mapping, step-task chaining."""

from trustloop.workflows.chaining import StepTaskWatcher
from trustloop.workflows.engine import WorkflowEngine
from trustloop.workflows.mapping import get_nested_value, resolve_input_mapping

__all__ = [
    "WorkflowEngine",
    "StepTaskWatcher",
    "resolve_input_mapping",
    "get_nested_value",
]

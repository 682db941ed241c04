"""Repository interfaces and their in-memory / SQLite implementations."""

from trustloop.storage.base import (
    AgentStore,
    ExecutionStore,
    NoteStore,
    PatternStore,
    TaskStore,
    WorkflowStore,
)
from trustloop.storage.memory import InMemoryStore
from trustloop.storage.sqlite import SqliteStore

__all__ = [
    "AgentStore",
    "ExecutionStore",
    "InMemoryStore",
    "NoteStore",
    "PatternStore",
    "SqliteStore",
    "TaskStore",
    "WorkflowStore",
]

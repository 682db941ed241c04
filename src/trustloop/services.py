"""Wires the engines onto one store."""

from __future__ import annotations

from dataclasses import dataclass

from trustloop.config import Settings, get_settings
from trustloop.storage import InMemoryStore, SqliteStore
from trustloop.trust.annealing import AnnealingLoop
from trustloop.trust.engine import TrustEngine
from trustloop.workflows.chaining import StepTaskWatcher
from trustloop.workflows.engine import WorkflowEngine


@dataclass
class Services:
    store: InMemoryStore | SqliteStore
    trust: TrustEngine
    annealing: AnnealingLoop
    workflows: WorkflowEngine
    watcher: StepTaskWatcher


def build_services(
    store: InMemoryStore | SqliteStore, settings: Settings | None = None
) -> Services:
    settings = settings or get_settings()
    trust = TrustEngine(
        store,
        store,
        history_limit=settings.history_limit,
        recent_window=settings.recent_window,
    )
    workflows = WorkflowEngine(store, store, store)
    return Services(
        store=store,
        trust=trust,
        annealing=AnnealingLoop(store, store, store, trust),
        workflows=workflows,
        watcher=StepTaskWatcher(workflows),
    )

"""
Trust & Workflow Data Models

Core dataclasses shared by the trust engine, the annealing loop, the workflow
engine and the repository implementations. Field names are snake_case end to
end; JSON (de)serialization happens only at the storage boundary via
``to_dict`` / ``from_dict``.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


def utcnow() -> str:
    return datetime.now(UTC).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


def _known_fields(cls: type, data: dict[str, Any]) -> dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


class AutonomyLevel(StrEnum):
    """How much human approval an agent's actions require."""

    SUPERVISED = "supervised"
    SEMI_AUTONOMOUS = "semi-autonomous"
    AUTONOMOUS = "autonomous"


class HealthStatus(StrEnum):
    """Circuit-breaker-like agent health."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    FAILING = "failing"


class ExecutionStatus(StrEnum):
    COMPLETED = "completed"
    FAILED = "failed"


class ConfidenceLevel(StrEnum):
    """Plan confidence, ordered low < medium < high."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return list(ConfidenceLevel).index(self)


class ExecutionMode(StrEnum):
    AUTO = "auto"
    PLAN_THEN_EXECUTE = "plan-then-execute"
    STEP_BY_STEP = "step-by-step"


class RunStatus(StrEnum):
    """Workflow run states. Everything except RUNNING is terminal."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StepType(StrEnum):
    AGENT_TASK = "agent_task"
    HUMAN_GATE = "human_gate"
    DOCUMENT_OUTPUT = "document_output"


class StepStatus(StrEnum):
    RUNNING = "running"
    WAITING_GATE = "waiting_gate"
    COMPLETED = "completed"
    FAILED = "failed"


class GateType(StrEnum):
    APPROVE = "approve"
    SELECT = "select"
    INPUT = "input"


class GateAction(StrEnum):
    APPROVE = "approve"
    REJECT = "reject"
    SELECT = "select"
    INPUT = "input"


class TriggerSource(StrEnum):
    USER = "user"
    SCHEDULE = "schedule"
    AGENT = "agent"


class TaskStatus(StrEnum):
    DRAFT = "draft"
    PENDING = "pending"
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# ── Execution ─────────────────────────────────────────────────────────────


@dataclass
class ToolUse:
    """One tool invocation inside an execution. ``success=None`` counts as success."""

    name: str
    success: bool | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolUse:
        return cls(name=str(data.get("name") or ""), success=data.get("success"))


def _coerce_tools(tools: list[Any]) -> list[ToolUse]:
    return [t if isinstance(t, ToolUse) else ToolUse.from_dict(t) for t in tools]


@dataclass
class ExecutionOutcome:
    """Result of one completed task execution, consumed once by the annealing loop."""

    execution_id: str
    task_id: str
    agent_id: str
    account_id: str
    success: bool
    tools_used: list[ToolUse] = field(default_factory=list)
    duration_ms: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    pattern_key: str | None = None

    def __post_init__(self) -> None:
        self.tools_used = _coerce_tools(self.tools_used)
        for field_name in ("duration_ms", "input_tokens", "output_tokens"):
            value = getattr(self, field_name)
            if value < 0:
                raise ValueError(f"{field_name} must be >= 0, got {value}")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionOutcome:
        return cls(**_known_fields(cls, data))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ExecutionRecord:
    """Persisted task execution row, read by the trust engine."""

    agent_id: str
    status: ExecutionStatus
    id: str = field(default_factory=new_id)
    account_id: str = ""
    task_id: str = ""
    tools_used: list[ToolUse] = field(default_factory=list)
    started_at: str | None = None
    completed_at: str | None = None
    cost_cents: int = 0
    plan_pattern_key: str | None = None
    created_at: str = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        self.status = ExecutionStatus(self.status)
        self.tools_used = _coerce_tools(self.tools_used)

    @property
    def succeeded(self) -> bool:
        return self.status == ExecutionStatus.COMPLETED

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionRecord:
        return cls(**_known_fields(cls, data))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ── Agents & patterns ─────────────────────────────────────────────────────


@dataclass
class AgentRecord:
    """Agent with its mutable trust state."""

    id: str
    account_id: str
    name: str = ""
    agent_type: str = ""
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    max_consecutive_failures: int = 5
    health_status: HealthStatus = HealthStatus.HEALTHY
    autonomy_level: AutonomyLevel = AutonomyLevel.SEMI_AUTONOMOUS
    autonomy_override: AutonomyLevel | None = None
    autonomy_override_by: str | None = None
    autonomy_override_at: str | None = None
    # consecutive_successes at the moment health was last raised by recovery
    recovery_baseline: int = 0
    last_execution_at: str | None = None
    is_active: bool = True
    paused_at: str | None = None
    pause_reason: str | None = None
    created_at: str = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        self.health_status = HealthStatus(self.health_status)
        self.autonomy_level = AutonomyLevel(self.autonomy_level)
        if self.autonomy_override is not None:
            self.autonomy_override = AutonomyLevel(self.autonomy_override)
        if self.consecutive_failures < 0 or self.consecutive_successes < 0:
            raise ValueError("streak counters must be >= 0")
        if self.max_consecutive_failures < 1:
            raise ValueError(
                f"max_consecutive_failures must be >= 1, got {self.max_consecutive_failures}"
            )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentRecord:
        return cls(**_known_fields(cls, data))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PlanPattern:
    """Aggregate statistics for every execution sharing one plan shape."""

    account_id: str
    pattern_key: str
    total_executions: int = 0
    successful_executions: int = 0
    success_rate: float = 0.0
    avg_duration_ms: int = 0
    avg_cost_cents: int = 0
    last_executed_at: str | None = None
    last_success: bool | None = None
    tools_used: list[str] = field(default_factory=list)
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=utcnow)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PlanPattern:
        return cls(**_known_fields(cls, data))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PatternSuccess:
    success_rate: float
    total_executions: int


@dataclass
class TrustScore:
    """Point-in-time projection of an agent's execution history. Never persisted."""

    agent_id: str
    overall_score: float
    success_rate: float
    recent_success_rate: float
    consecutive_failures: int
    consecutive_successes: int
    total_executions: int
    tool_familiarity: dict[str, float]
    recommended_autonomy: AutonomyLevel
    health_status: HealthStatus

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ── Plans & confidence ────────────────────────────────────────────────────


@dataclass
class PlanStep:
    agent_id: str
    tools_required: list[str] = field(default_factory=list)
    depends_on_index: int | None = None
    agent_type: str = ""


@dataclass
class PlanForConfidence:
    """Candidate multi-step plan submitted for a confidence decision."""

    steps: list[PlanStep]
    pattern_key: str = ""
    estimated_cost_cents: int = 0

    def __post_init__(self) -> None:
        self.steps = [
            s if isinstance(s, PlanStep) else PlanStep(**_known_fields(PlanStep, s))
            for s in self.steps
        ]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PlanForConfidence:
        return cls(**_known_fields(cls, data))


@dataclass
class ConfidenceFactors:
    agent_trust: float
    plan_complexity: float
    tool_familiarity: float
    pattern_match: float
    cost_risk: float


@dataclass
class ConfidenceResult:
    score: float
    level: ConfidenceLevel
    execution_mode: ExecutionMode
    factors: ConfidenceFactors
    reasoning: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ── Workflows ─────────────────────────────────────────────────────────────


@dataclass
class GateResponse:
    """A human's answer to a human_gate step."""

    action: GateAction
    responded_by: str = ""
    responded_at: str = field(default_factory=utcnow)
    selected_options: list[str] | None = None
    input_text: str | None = None

    def __post_init__(self) -> None:
        self.action = GateAction(self.action)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GateResponse:
        return cls(**_known_fields(cls, data))

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        return {k: v for k, v in data.items() if v is not None}


@dataclass
class WorkflowStepDef:
    """One step of a workflow template."""

    id: str
    title: str
    type: StepType = StepType.AGENT_TASK
    description: str = ""
    agent_id: str | None = None
    prompt: str | None = None
    skill_id: str | None = None
    gate_type: GateType | None = None
    gate_prompt: str | None = None
    gate_options: list[str] | None = None
    document_title: str | None = None
    document_folder_id: str | None = None
    input_mapping: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.type = StepType(self.type)
        if self.gate_type is not None:
            self.gate_type = GateType(self.gate_type)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowStepDef:
        return cls(**_known_fields(cls, data))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _coerce_steps(steps: list[Any]) -> list[WorkflowStepDef]:
    return [s if isinstance(s, WorkflowStepDef) else WorkflowStepDef.from_dict(s) for s in steps]


@dataclass
class WorkflowTemplate:
    name: str
    account_id: str
    steps: list[WorkflowStepDef] = field(default_factory=list)
    id: str = field(default_factory=new_id)
    description: str = ""
    project_id: str | None = None
    created_at: str = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        self.steps = _coerce_steps(self.steps)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowTemplate:
        return cls(**_known_fields(cls, data))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class WorkflowRun:
    """One in-flight instance of a workflow template."""

    account_id: str
    template_id: str
    steps_snapshot: list[WorkflowStepDef]
    id: str = field(default_factory=new_id)
    status: RunStatus = RunStatus.RUNNING
    current_step_index: int = 0
    # step_id -> {status, output, gate_response, task_id, document_id, started_at, completed_at}
    step_results: dict[str, dict[str, Any]] = field(default_factory=dict)
    parent_task_id: str | None = None
    triggered_by: TriggerSource = TriggerSource.USER
    triggered_by_id: str | None = None
    started_at: str = field(default_factory=utcnow)
    completed_at: str | None = None
    updated_at: str = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        self.status = RunStatus(self.status)
        self.triggered_by = TriggerSource(self.triggered_by)
        self.steps_snapshot = _coerce_steps(self.steps_snapshot)

    def step_index(self, step_id: str) -> int:
        for index, step in enumerate(self.steps_snapshot):
            if step.id == step_id:
                return index
        return -1

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowRun:
        return cls(**_known_fields(cls, data))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ── External collaborator records ─────────────────────────────────────────


@dataclass
class Task:
    """Task store row. Workflow steps are materialized as subtasks."""

    title: str
    account_id: str = ""
    id: str = field(default_factory=new_id)
    description: str = ""
    priority: str = "medium"
    status: TaskStatus = TaskStatus.QUEUED
    project_id: str | None = None
    parent_task_id: str | None = None
    assigned_to: str | None = None
    assigned_to_type: str | None = None
    skill_id: str | None = None
    workflow_run_id: str | None = None
    workflow_step_id: str | None = None
    input: dict[str, Any] = field(default_factory=dict)
    output: dict[str, Any] | None = None
    error: dict[str, Any] | None = None
    status_history: list[dict[str, Any]] = field(default_factory=list)
    created_by: str | None = None
    created_by_type: str = "user"
    updated_by: str | None = None
    updated_by_type: str = "user"
    created_at: str = field(default_factory=utcnow)
    updated_at: str = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        self.status = TaskStatus(self.status)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        return cls(**_known_fields(cls, data))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Note:
    title: str
    content: dict[str, Any] | None = None
    id: str = field(default_factory=new_id)
    folder_id: str | None = None
    entity_type: str | None = None
    entity_id: str | None = None
    created_at: str = field(default_factory=utcnow)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Note:
        return cls(**_known_fields(cls, data))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

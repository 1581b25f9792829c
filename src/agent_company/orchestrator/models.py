"""Domain models for the task store, agents, and command protocol."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from agent_company.orchestrator.errors import (
    CommandExecutionError,
    CommandParseError,
    CommandTimeoutError,
)


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    READY = "ready"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_TASK_STATUSES = frozenset(
    {TaskStatus.PENDING, TaskStatus.READY, TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS},
)
OWNED_TASK_STATUSES = frozenset({TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS})


class ReviewStatus(str, Enum):
    """Coordinator review verdict for a completed task."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class InstructionStatus(str, Enum):
    """Lifecycle of an external instruction handled by the coordinator."""

    RECEIVED = "received"
    DECOMPOSED = "decomposed"
    COMPLETED = "completed"
    FAILED = "failed"


class AgentRole(str, Enum):
    COORDINATOR = "coordinator"
    WORKER = "worker"


class ProcessStatus(str, Enum):
    """Supervised process lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    RESTARTING = "restarting"
    ERROR = "error"


class OutputFormat(str, Enum):
    STRUCTURED = "structured"
    PLAIN = "plain"


class CommandFailure(str, Enum):
    """Why a command did not produce a usable result."""

    TIMEOUT = "timeout"
    EXECUTION = "execution"
    PARSE = "parse"
    INTERRUPTED = "interrupted"


class FailureClass(str, Enum):
    """Normalized failure classes recorded on failed task attempts."""

    TIMEOUT = "timeout"
    BACKEND_TRANSIENT = "backend_transient"
    BACKEND_NON_RETRYABLE = "backend_non_retryable"
    BILLING_OR_QUOTA = "billing_or_quota"
    ACCESS_OR_AUTH = "access_or_auth"
    MODEL_NOT_AVAILABLE = "model_not_available"
    OUTPUT_INVALID_JSON = "output_invalid_json"
    PROCESS_CRASH = "process_crash"
    SHUTDOWN = "shutdown"
    SELF_TEST_FAILED = "self_test_failed"


@dataclass(slots=True)
class TaskCreate:
    """Input payload for inserting a task."""

    title: str
    description: str = ""
    priority: int = 5
    capability: str = "general"
    dependencies: tuple[str, ...] = ()
    max_attempts: int = 3
    task_id: str | None = None
    instruction_id: str | None = None
    parent_task_id: str | None = None
    remediation_round: int = 0


@dataclass(slots=True)
class WorkResult:
    """Outcome a worker reports for one task."""

    task_id: str
    success: bool
    payload: Any = None
    error: str | None = None
    duration_ms: int = 0
    cost_usd: float | None = None
    attempt_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "success": self.success,
            "payload": self.payload,
            "error": self.error,
            "duration_ms": self.duration_ms,
            "cost_usd": self.cost_usd,
            "attempt_count": self.attempt_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkResult:
        return cls(
            task_id=str(data.get("task_id", "")),
            success=bool(data.get("success", False)),
            payload=data.get("payload"),
            error=data.get("error"),
            duration_ms=int(data.get("duration_ms") or 0),
            cost_usd=data.get("cost_usd"),
            attempt_count=int(data.get("attempt_count") or 0),
        )


@dataclass(slots=True)
class TaskView:
    """Readable task view for scheduler, agents, and CLI."""

    task_id: str
    seq: int
    title: str
    description: str
    priority: int
    capability: str
    dependencies: tuple[str, ...]
    status: TaskStatus
    assigned_agent_id: str | None
    attempt_count: int
    max_attempts: int
    result: WorkResult | None
    last_error: str | None
    failure_class: FailureClass | None
    instruction_id: str | None
    parent_task_id: str | None
    remediation_round: int
    review_status: ReviewStatus
    integrated: bool
    created_at: datetime
    updated_at: datetime

    @property
    def attempts_left(self) -> int:
        return max(0, self.max_attempts - self.attempt_count)


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task details with event stream."""

    task: TaskView
    events: list[TaskEventView]


@dataclass(slots=True)
class InstructionView:
    instruction_id: str
    content: str
    priority: int
    status: InstructionStatus
    error: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class InstructionProgress:
    """Task counts for one instruction, used to decide when it is finished."""

    total: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    active: int = 0
    awaiting_review: int = 0

    @property
    def is_finished(self) -> bool:
        # Cancelled and failed tasks both keep the instruction open.
        return self.total > 0 and self.completed == self.total and self.awaiting_review == 0


@dataclass(slots=True)
class CommandOptions:
    """Per-command settings translated into the external tool's arguments."""

    output_format: OutputFormat = OutputFormat.STRUCTURED
    timeout_seconds: float = 120.0
    tool_allow_list: tuple[str, ...] = ()
    tool_deny_list: tuple[str, ...] = ()
    permission_mode: str = "bypassPermissions"
    model: str | None = None
    workspace_path: Path | None = None
    append_context: str | None = None
    stop_on_error: bool = False


@dataclass(slots=True)
class CommandResult:
    """Result of one stateless command invocation."""

    success: bool
    payload: Any = None
    error: str | None = None
    failure: CommandFailure | None = None
    duration_ms: int = 0
    cost_usd: float | None = None
    session_id: str | None = None
    exit_code: int | None = None
    stderr: str = ""

    @property
    def killed_by_signal(self) -> bool:
        return self.exit_code is not None and self.exit_code < 0

    def raise_for_failure(self) -> None:
        """Raise the typed command error matching this result, if any."""

        if self.success:
            return
        message = self.error or "command failed"
        if self.failure == CommandFailure.TIMEOUT:
            raise CommandTimeoutError(message)
        if self.failure == CommandFailure.PARSE:
            raise CommandParseError(message)
        raise CommandExecutionError(message)


@dataclass(slots=True)
class Command:
    """One prompt queued on an agent's supervisor."""

    command_id: str
    prompt: str
    options: CommandOptions
    issued_at: datetime
    task_id: str | None = None
    completed_at: datetime | None = None


@dataclass(slots=True)
class AgentView:
    """Snapshot of one supervised agent for operators and the scheduler."""

    agent_id: str
    role: AgentRole
    process_status: ProcessStatus
    capacity: int
    capabilities: tuple[str, ...]
    current_task_ids: tuple[str, ...]
    restart_count: int
    error_count: int
    last_activity_at: datetime | None
    draining: bool = False
    pid: int | None = None

    @property
    def current_task_id(self) -> str | None:
        return self.current_task_ids[0] if self.current_task_ids else None

    @property
    def state(self) -> str:
        """Operator-facing state that keeps "broken" apart from "no work"."""

        if self.process_status == ProcessStatus.RUNNING:
            return "working" if self.current_task_ids else "idle"
        return self.process_status.value

"""Error taxonomy for the process, command, and task layers."""

from __future__ import annotations


class OrchestratorError(RuntimeError):
    """Base class for orchestrator failures."""


class ProcessStartError(OrchestratorError):
    """Agent process could not be spawned or did not come alive in time."""


class ProcessCrashError(OrchestratorError):
    """Agent process exited unexpectedly while work was in flight."""


class ShutdownError(OrchestratorError):
    """Pending or in-flight command was cancelled because the agent stopped."""


class MaxRetriesExceeded(OrchestratorError):
    """Agent process crashed more often than its restart budget allows."""

    def __init__(self, agent_id: str, restart_count: int) -> None:
        super().__init__(
            f"Agent {agent_id} exhausted its restart budget after {restart_count} restart(s).",
        )
        self.agent_id = agent_id
        self.restart_count = restart_count


class CommandError(OrchestratorError):
    """Base class for failures of one external command invocation."""


class CommandTimeoutError(CommandError):
    """Command exceeded its timeout and was forcibly terminated."""


class CommandExecutionError(CommandError):
    """Command could not be run or exited with a non-zero status."""


class CommandParseError(CommandError):
    """Command ran but its structured response could not be decoded."""


class TaskNotAssignable(OrchestratorError):
    """Task is not Ready (or already owned) and cannot be assigned."""

    def __init__(self, task_id: str, status: str | None) -> None:
        super().__init__(f"Task {task_id} is not assignable (status={status or 'missing'}).")
        self.task_id = task_id
        self.status = status


class TaskPermanentlyFailed(OrchestratorError):
    """Task exhausted its attempt budget or remediation chain."""

    def __init__(self, task_id: str, reason: str) -> None:
        super().__init__(f"Task {task_id} permanently failed: {reason}")
        self.task_id = task_id
        self.reason = reason


class DependencyCycleError(ValueError):
    """Submitted task set contains a dependency cycle."""

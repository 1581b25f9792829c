"""Controllers for orchestrator CLI commands."""

from __future__ import annotations

import json
import shlex
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from pathlib import Path

from agent_company.config import Settings
from agent_company.orchestrator.backend import CommandExecutor
from agent_company.orchestrator.models import (
    CommandOptions,
    InstructionStatus,
    OutputFormat,
    TaskStatus,
    TaskView,
)
from agent_company.orchestrator.repository import TaskRepository
from agent_company.orchestrator.runtime import AgentCompanyRuntime


@dataclass(slots=True)
class RunInstructionCommand:
    """CLI input for running one instruction end to end."""

    db_path: Path | None
    instruction: str
    workers: int | None
    priority: int
    timeout_seconds: float


@dataclass(slots=True)
class ListTasksCommand:
    """CLI input for task listing."""

    db_path: Path | None
    status: str | None
    instruction_id: str | None
    limit: int


@dataclass(slots=True)
class InspectTaskCommand:
    """CLI input for task inspection."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class MutateTaskCommand:
    """CLI input for retry/cancel operations."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class SmokeCommand:
    """CLI input for a direct agent CLI smoke check."""

    command: str | None
    prompt: str
    expect_substring: str | None
    timeout_seconds: float


@dataclass(slots=True)
class CommandReport:
    """Lines to render plus the overall outcome."""

    lines: list[str]
    success: bool


class OrchestratorCliController:
    """Coordinates run, inspection, and smoke CLI operations."""

    def run_instruction(self, command: RunInstructionCommand) -> CommandReport:
        settings = Settings.from_env(db_path=command.db_path)
        if command.workers is not None:
            settings.pool = replace(settings.pool, worker_replicas=command.workers)

        lines = [f"Database: {settings.db_path}"]
        with AgentCompanyRuntime(settings) as runtime:
            instruction = runtime.submit_instruction(
                command.instruction,
                priority=command.priority,
            )
            lines.append(f"Instruction: {instruction.instruction_id}")
            try:
                final = runtime.wait_for_instruction(
                    instruction.instruction_id,
                    timeout_seconds=command.timeout_seconds,
                )
            except TimeoutError as error:
                lines.append(f"Timed out: {error}")
                final = runtime.repository.get_instruction(instruction.instruction_id)
            tasks = runtime.repository.list_tasks(
                instruction_id=instruction.instruction_id,
                limit=500,
            )
            agents = runtime.agents()

        status = final.status.value if final is not None else "unknown"
        lines.append(f"Status: {status}")
        if final is not None and final.error:
            lines.append(f"Error: {final.error}")
        lines.append(f"Tasks: {len(tasks)}")
        lines.extend(_task_line(task) for task in tasks)
        lines.append(f"Agents: {len(agents)}")
        for agent in agents:
            lines.append(
                f"  {agent.agent_id} role={agent.role.value} state={agent.state} "
                f"restarts={agent.restart_count} errors={agent.error_count}",
            )
        success = final is not None and final.status == InstructionStatus.COMPLETED
        return CommandReport(lines=lines, success=success)

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = TaskStatus(command.status) if command.status else None
        with _repository(settings) as repository:
            tasks = repository.list_tasks(
                status=status_filter,
                instruction_id=command.instruction_id,
                limit=command.limit,
            )
            counts = repository.count_by_status()

        lines = [
            "Tasks: "
            + " ".join(f"{status.value}={count}" for status, count in counts.items() if count),
        ]
        lines.extend(_task_line(task) for task in tasks)
        return lines

    def inspect_task(self, command: InspectTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_task_details(task_id=command.task_id)
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        lines = [
            f"Task: {task.task_id}",
            f"Title: {task.title}",
            f"Status: {task.status.value}",
            f"Priority: {task.priority}",
            f"Capability: {task.capability}",
            f"Assignee: {task.assigned_agent_id or '-'}",
            f"Attempt: {task.attempt_count}/{task.max_attempts}",
            f"Dependencies: {', '.join(task.dependencies) or '-'}",
            f"Review: {task.review_status.value} integrated={'yes' if task.integrated else 'no'}",
            f"Remediation: round={task.remediation_round} parent={task.parent_task_id or '-'}",
            f"Failure class: {task.failure_class.value if task.failure_class else '-'}",
            f"Error: {task.last_error or '-'}",
        ]
        if task.result is not None:
            preview = json.dumps(task.result.payload, ensure_ascii=False, default=str)
            lines.append(f"Result: {preview[:500]}")
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def retry_task(self, command: MutateTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            created = repository.resubmit(task_id=command.task_id)
        return [f"Task re-submitted: {command.task_id} -> {created.task_id}"]

    def cancel_task(self, command: MutateTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            repository.cancel(task_id=command.task_id)
        return [f"Task cancelled: {command.task_id}"]

    def smoke(self, command: SmokeCommand) -> CommandReport:
        settings = Settings.from_env()
        executable = (
            tuple(shlex.split(command.command)) if command.command else settings.command.executable
        )
        try:
            executor = CommandExecutor(
                executable=executable,
                default_timeout_seconds=command.timeout_seconds,
            )
        except ValueError as error:
            return CommandReport(lines=["Agent smoke check:", str(error)], success=False)

        lines = [
            "Agent smoke check:",
            f"command={shlex.join(executable)}",
            f"prompt={command.prompt!r}",
            f"timeout_seconds={command.timeout_seconds}",
        ]
        available, version = executor.check_availability(
            timeout_seconds=min(command.timeout_seconds, 30.0),
        )
        lines.append(f"  available={'yes' if available else 'no'} version={version or '-'}")
        if not available:
            lines.append("Smoke status: failed")
            return CommandReport(lines=lines, success=False)

        result = executor.execute_command(
            command.prompt,
            CommandOptions(
                output_format=OutputFormat.STRUCTURED,
                timeout_seconds=command.timeout_seconds,
                permission_mode=settings.command.permission_mode,
                model=settings.command.model,
            ),
        )
        preview = json.dumps(result.payload, ensure_ascii=False, default=str)[:300]
        success = result.success
        if success and command.expect_substring:
            success = command.expect_substring in preview
        lines.append(
            f"  run={'ok' if success else 'failed'} duration_ms={result.duration_ms} "
            f"cost_usd={result.cost_usd if result.cost_usd is not None else '-'}",
        )
        if result.error:
            lines.append(f"    error={result.error}")
        if result.payload is not None:
            lines.append(f"    payload={preview}")
        lines.append(f"Smoke status: {'passed' if success else 'failed'}")
        return CommandReport(lines=lines, success=success)


def _task_line(task: TaskView) -> str:
    return (
        f"  {task.task_id} status={task.status.value} priority={task.priority} "
        f"attempt={task.attempt_count}/{task.max_attempts} "
        f"review={task.review_status.value} title={task.title!r}"
    )


@contextmanager
def _repository(settings: Settings) -> Iterator[TaskRepository]:
    repository = TaskRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()

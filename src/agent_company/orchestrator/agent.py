"""Role-parameterized agent state machine.

Phases: ``idle -> planning | executing -> verifying -> reporting -> idle``,
and ``stopped`` once the controller shuts down. The same class drives the
coordinator and every worker; a ``RoleStrategy`` supplies the prompts,
command options and permitted task store operations.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from uuid import uuid4

from agent_company.config import TaskSettings
from agent_company.orchestrator.errors import (
    ProcessCrashError,
    ShutdownError,
    TaskPermanentlyFailed,
)
from agent_company.orchestrator.events import ErrorReporter, EventBus, EventKind
from agent_company.orchestrator.failure_classifier import classify_command_failure
from agent_company.orchestrator.integration import IntegrationHook, NullIntegrationHook
from agent_company.orchestrator.messages import (
    AssignmentMessage,
    FailureMessage,
    InstructionMessage,
    Mailbox,
    ReviewMessage,
    StopMessage,
)
from agent_company.orchestrator.models import (
    AgentRole,
    CommandResult,
    FailureClass,
    InstructionStatus,
    ReviewStatus,
    TaskCreate,
    TaskStatus,
    TaskView,
    WorkResult,
)
from agent_company.orchestrator.prompts import REMEDIATION_DESCRIPTION
from agent_company.orchestrator.repository import TaskRepository
from agent_company.orchestrator.roles import PermittedStore, PromptPhase, RoleStrategy
from agent_company.orchestrator.scheduler import Scheduler
from agent_company.orchestrator.supervisor import AgentProcessSupervisor

logger = logging.getLogger(__name__)

_OUTPUT_PREVIEW_CHARS = 4_000


class AgentPhase(str, Enum):
    IDLE = "idle"
    PLANNING = "planning"
    EXECUTING = "executing"
    VERIFYING = "verifying"
    REPORTING = "reporting"
    STOPPED = "stopped"


@dataclass(slots=True)
class ReviewVerdict:
    approved: bool
    feedback: str
    issues: list[str] = field(default_factory=list)
    score: int | None = None

    def summary(self) -> str:
        parts = [self.feedback] if self.feedback else []
        parts += [f"- {issue}" for issue in self.issues]
        return "\n".join(parts) or "rejected without feedback"


@dataclass(slots=True)
class _WorkLedger:
    """Accumulates cost and duration over every command of one task."""

    duration_ms: int = 0
    cost_usd: float | None = None

    def add(self, result: CommandResult) -> None:
        self.duration_ms += result.duration_ms
        if result.cost_usd is not None:
            self.cost_usd = (self.cost_usd or 0.0) + result.cost_usd


class AgentController:
    """Drives one agent through its role's workflow, one message at a time."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        supervisor: AgentProcessSupervisor,
        strategy: RoleStrategy,
        repository: TaskRepository,
        settings: TaskSettings,
        reporter: ErrorReporter,
        scheduler: Scheduler | None = None,
        integration: IntegrationHook | None = None,
        events: EventBus | None = None,
        poll_interval_seconds: float = 0.5,
    ) -> None:
        if supervisor.role != strategy.role:
            raise ValueError(
                f"Strategy role {strategy.role.value} does not match agent role "
                f"{supervisor.role.value}.",
            )
        self.supervisor = supervisor
        self.strategy = strategy
        self.store = PermittedStore(repository, strategy)
        self.settings = settings
        self.reporter = reporter
        self.scheduler = scheduler
        self.integration = integration or NullIntegrationHook()
        self.events = events
        self.poll_interval_seconds = poll_interval_seconds
        self.inbox: Mailbox[Any] = Mailbox(supervisor.agent_id)
        self._phase = AgentPhase.IDLE
        self._current_task_id: str | None = None
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None

    @property
    def agent_id(self) -> str:
        return self.supervisor.agent_id

    @property
    def role(self) -> AgentRole:
        return self.strategy.role

    @property
    def phase(self) -> AgentPhase:
        with self._lock:
            return self._phase

    @property
    def current_task_id(self) -> str | None:
        with self._lock:
            return self._current_task_id

    # -- lifecycle ----------------------------------------------------------------

    def start(self) -> None:
        """Start consuming the inbox on a dedicated thread."""

        if self._thread is not None and self._thread.is_alive():
            return
        self._set_phase(AgentPhase.IDLE)
        self._thread = threading.Thread(
            target=self._run,
            name=f"{self.agent_id}-controller",
            daemon=True,
        )
        self._thread.start()

    def stop(self, *, timeout: float = 10.0) -> None:
        """Stop the process, which interrupts any in-flight command, then the inbox thread."""

        self.inbox.put(StopMessage())
        self.supervisor.stop()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)
        self._set_phase(AgentPhase.STOPPED)

    def deliver(self, message: Any) -> None:
        self.inbox.put(message)

    def process(self, message: Any) -> None:
        """Handle one message synchronously."""

        if isinstance(message, AssignmentMessage):
            self._handle_assignment(message)
        elif isinstance(message, InstructionMessage):
            self._handle_instruction(message)
        elif isinstance(message, ReviewMessage):
            self._handle_review(message)
        elif isinstance(message, FailureMessage):
            self._handle_failure(message)
        else:
            raise TypeError(f"Unsupported message for {self.agent_id}: {type(message).__name__}")

    def resume_pending_reviews(self) -> int:
        """Queue reviews for completed tasks that were never reviewed (e.g. after a restart)."""

        pending = self.store.list_unreviewed()
        for task in pending:
            self.inbox.put(ReviewMessage(task_id=task.task_id))
        return len(pending)

    def _run(self) -> None:
        while True:
            message = self.inbox.get(timeout=self.poll_interval_seconds)
            if message is None:
                continue
            if isinstance(message, StopMessage):
                self._abandon_queued_assignments()
                self._set_phase(AgentPhase.STOPPED)
                return
            try:
                self.process(message)
            except Exception as error:  # noqa: BLE001
                self.reporter.report(
                    f"Failed to handle {type(message).__name__}",
                    error=error,
                    agent_id=self.agent_id,
                )
                self._set_phase(AgentPhase.IDLE)

    def _abandon_queued_assignments(self) -> None:
        for message in self.inbox.drain():
            if not isinstance(message, AssignmentMessage):
                continue
            task_id = message.task.task_id
            self.store.fail(
                task_id=task_id,
                error=f"agent {self.agent_id} stopped before starting the task",
                failure_class=FailureClass.SHUTDOWN,
            )
            self._release(task_id)

    # -- worker -------------------------------------------------------------------

    def _handle_assignment(self, message: AssignmentMessage) -> None:
        task = message.task
        with self._lock:
            self._current_task_id = task.task_id
        try:
            self._work_on(task)
        except Exception as error:  # noqa: BLE001
            self.reporter.report(
                "Worker failed unexpectedly",
                error=error,
                agent_id=self.agent_id,
                task_id=task.task_id,
            )
            self._fail_task(
                task.task_id,
                error=f"worker error: {error}",
                failure_class=FailureClass.BACKEND_NON_RETRYABLE,
            )
        finally:
            with self._lock:
                self._current_task_id = None
            self._set_phase(AgentPhase.IDLE)
            self._release(task.task_id)

    def _work_on(self, task: TaskView) -> None:
        self._set_phase(AgentPhase.EXECUTING)
        if not self.store.start(task_id=task.task_id, agent_id=self.agent_id):
            self.reporter.warning(
                "Task is no longer assigned to this agent; skipping",
                agent_id=self.agent_id,
                task_id=task.task_id,
            )
            return
        current: TaskView = self.store.get(task.task_id) or task
        ledger = _WorkLedger()

        result = self._run_task_command(
            current,
            PromptPhase.EXECUTE,
            ledger,
            description=current.description,
            attempt=current.attempt_count + 1,
            max_attempts=current.max_attempts,
        )
        if result is None:
            return
        if not self.settings.self_test:
            self._report_success(current, result, ledger)
            return

        while True:
            self._set_phase(AgentPhase.VERIFYING)
            test = self._run_task_command(
                current,
                PromptPhase.SELF_TEST,
                ledger,
                description=current.description,
                output=_preview(result.payload),
            )
            if test is None:
                return
            passed, details = _self_test_verdict(test.payload)
            if passed:
                self._report_success(current, result, ledger)
                return

            error = f"self-test failed: {details}"
            try:
                current = self.store.record_attempt_failure(
                    task_id=current.task_id,
                    error=error,
                    failure_class=FailureClass.SELF_TEST_FAILED,
                )
            except TaskPermanentlyFailed:
                self._fail_task(
                    current.task_id,
                    error=error,
                    failure_class=FailureClass.SELF_TEST_FAILED,
                )
                return
            logger.info(
                "Self-test failed for %s (attempt %d/%d); fixing",
                current.task_id,
                current.attempt_count,
                current.max_attempts,
                extra={"agent_id": self.agent_id, "task_id": current.task_id},
            )

            self._set_phase(AgentPhase.EXECUTING)
            result = self._run_task_command(
                current,
                PromptPhase.FIX,
                ledger,
                description=current.description,
                details=details,
                attempt=current.attempt_count + 1,
                max_attempts=current.max_attempts,
            )
            if result is None:
                return

    def _run_task_command(
        self,
        task: TaskView,
        phase: PromptPhase,
        ledger: _WorkLedger,
        **values: Any,
    ) -> CommandResult | None:
        """Run one command for ``task``; failures are reported to the store and yield ``None``."""

        prompt = self.strategy.render(phase, task_id=task.task_id, title=task.title, **values)
        try:
            result = self.supervisor.execute(
                prompt,
                self.strategy.options_for(title=task.title),
                task_id=task.task_id,
            )
        except ShutdownError as error:
            self._fail_task(task.task_id, error=str(error), failure_class=FailureClass.SHUTDOWN)
            return None
        except ProcessCrashError as error:
            self._fail_task(
                task.task_id,
                error=str(error),
                failure_class=FailureClass.PROCESS_CRASH,
            )
            return None

        ledger.add(result)
        if result.success:
            return result

        classification = classify_command_failure(result)
        self.store.add_task_event(
            task_id=task.task_id,
            event_type="command_failed",
            details={
                "phase": phase.value,
                "error": result.error,
                "exit_code": result.exit_code,
                **classification.to_event_details(),
            },
        )
        self._fail_task(
            task.task_id,
            error=f"{phase.value} command failed: {result.error}",
            failure_class=classification.failure_class,
        )
        return None

    def _report_success(self, task: TaskView, result: CommandResult, ledger: _WorkLedger) -> None:
        self._set_phase(AgentPhase.REPORTING)
        work = WorkResult(
            task_id=task.task_id,
            success=True,
            payload=result.payload,
            duration_ms=ledger.duration_ms,
            cost_usd=ledger.cost_usd,
        )
        if not self.store.complete(task_id=task.task_id, result=work):
            self.reporter.warning(
                "Task was no longer owned when completing",
                agent_id=self.agent_id,
                task_id=task.task_id,
            )

    def _fail_task(self, task_id: str, *, error: str, failure_class: FailureClass) -> None:
        self._set_phase(AgentPhase.REPORTING)
        view = self.store.fail(task_id=task_id, error=error, failure_class=failure_class)
        if view is None:
            self.reporter.warning(
                "Task was no longer owned when reporting failure",
                agent_id=self.agent_id,
                task_id=task_id,
            )
            return
        if view.status == TaskStatus.READY:
            logger.info(
                "Task %s returned to Ready (attempt %d/%d): %s",
                task_id,
                view.attempt_count,
                view.max_attempts,
                error,
                extra={"agent_id": self.agent_id, "task_id": task_id},
            )

    def _release(self, task_id: str) -> None:
        if self.scheduler is not None:
            self.scheduler.release(agent_id=self.agent_id, task_id=task_id)

    # -- coordinator --------------------------------------------------------------

    def _handle_instruction(self, message: InstructionMessage) -> None:
        self._set_phase(AgentPhase.PLANNING)
        instruction_id = message.instruction_id
        prompt = self.strategy.render(
            PromptPhase.DECOMPOSE,
            instruction_id=instruction_id,
            content=message.content,
        )
        try:
            result = self._execute_with_retries(prompt, task_id=None)
            if result is None:
                return
            if not result.success:
                self._fail_instruction(instruction_id, f"decomposition failed: {result.error}")
                return
            payloads = build_task_plan(
                result.payload,
                instruction_id=instruction_id,
                default_priority=message.priority,
                max_attempts=self.settings.max_attempts,
            )
            views = self.store.create_many(payloads)
        except ValueError as error:
            self._fail_instruction(instruction_id, f"invalid task plan: {error}")
            return
        finally:
            self._set_phase(AgentPhase.IDLE)

        self.store.update_instruction_status(
            instruction_id=instruction_id,
            status=InstructionStatus.DECOMPOSED,
        )
        logger.info(
            "Instruction %s decomposed into %d task(s)",
            instruction_id,
            len(views),
            extra={"agent_id": self.agent_id},
        )

    def _handle_review(self, message: ReviewMessage) -> None:
        task: TaskView | None = self.store.get(message.task_id)
        if (
            task is None
            or task.status != TaskStatus.COMPLETED
            or task.review_status != ReviewStatus.PENDING
        ):
            return
        self._set_phase(AgentPhase.VERIFYING)
        try:
            prompt = self.strategy.render(
                PromptPhase.REVIEW,
                task_id=task.task_id,
                title=task.title,
                remediation_round=task.remediation_round,
                description=task.description,
                output=_preview(task.result.payload if task.result is not None else None),
            )
            result = self._execute_with_retries(prompt, task_id=task.task_id)
            if result is None:
                return
            if result.success:
                verdict = _review_verdict(result.payload)
            else:
                verdict = ReviewVerdict(
                    approved=False,
                    feedback=f"review could not be completed: {result.error}",
                )

            self._set_phase(AgentPhase.REPORTING)
            if verdict.approved:
                self._accept(task, verdict)
            else:
                self._reject(task, verdict)
        finally:
            self._set_phase(AgentPhase.IDLE)

    def _accept(self, task: TaskView, verdict: ReviewVerdict) -> None:
        if not self.store.set_review_status(
            task_id=task.task_id,
            status=ReviewStatus.APPROVED,
            feedback=verdict.feedback,
        ):
            return
        outcome = self.integration.integrate(task, workspace_path=self.supervisor.workspace_path)
        if outcome.success:
            self.store.mark_integrated(task_id=task.task_id, details=outcome.to_event_details())
        else:
            self.store.add_task_event(
                task_id=task.task_id,
                event_type="integration_failed",
                details=outcome.to_event_details(),
            )
            self.reporter.warning(
                f"Integration failed: {outcome.detail}",
                agent_id=self.agent_id,
                task_id=task.task_id,
            )
        self._check_instruction_finished(task.instruction_id)

    def _reject(self, task: TaskView, verdict: ReviewVerdict) -> None:
        feedback = verdict.summary()
        if not self.store.set_review_status(
            task_id=task.task_id,
            status=ReviewStatus.REJECTED,
            feedback=feedback,
        ):
            return
        next_round = task.remediation_round + 1
        # The chain (original plus remediations) may not outgrow the task's attempt budget.
        if next_round + 1 > task.max_attempts:
            error = TaskPermanentlyFailed(
                task.task_id,
                f"review rejected {next_round} time(s); remediation budget exhausted",
            )
            self.reporter.report(
                "Remediation budget exhausted",
                error=error,
                agent_id=self.agent_id,
                task_id=task.task_id,
            )
            self._fail_instruction(task.instruction_id, str(error))
            return
        remediation = self.store.create(
            TaskCreate(
                title=task.title,
                description=REMEDIATION_DESCRIPTION.format(
                    description=task.description,
                    round=next_round,
                    feedback=feedback,
                ),
                priority=task.priority,
                capability=task.capability,
                max_attempts=task.max_attempts,
                instruction_id=task.instruction_id,
                parent_task_id=task.task_id,
                remediation_round=next_round,
            ),
        )
        logger.info(
            "Task %s rejected; remediation %s created (round %d)",
            task.task_id,
            remediation.task_id,
            next_round,
            extra={"agent_id": self.agent_id, "task_id": task.task_id},
        )

    def _handle_failure(self, message: FailureMessage) -> None:
        task: TaskView | None = self.store.get(message.task_id)
        if task is None:
            return
        blocked = self.store.list_dependents(task_id=task.task_id)
        error = message.error or task.last_error or "task failed"
        self.reporter.report(
            f"Task failed permanently after {task.attempt_count} attempt(s); "
            f"{len(blocked)} dependent task(s) stay blocked",
            error=TaskPermanentlyFailed(task.task_id, error),
            agent_id=self.agent_id,
            task_id=task.task_id,
        )
        self._fail_instruction(task.instruction_id, f"task {task.task_id} failed: {error}")

    def _check_instruction_finished(self, instruction_id: str | None) -> None:
        if instruction_id is None:
            return
        progress = self.store.instruction_progress(instruction_id=instruction_id)
        if not progress.is_finished:
            return
        self.store.update_instruction_status(
            instruction_id=instruction_id,
            status=InstructionStatus.COMPLETED,
        )
        logger.info(
            "instruction_completed %s (%d task(s))",
            instruction_id,
            progress.total,
            extra={"agent_id": self.agent_id},
        )

    def _fail_instruction(self, instruction_id: str | None, error: str) -> None:
        if instruction_id is None:
            return
        self.store.update_instruction_status(
            instruction_id=instruction_id,
            status=InstructionStatus.FAILED,
            error=error,
        )
        self.reporter.report(
            f"Instruction {instruction_id} failed; operator intervention required",
            agent_id=self.agent_id,
            level=logging.WARNING,
        )

    def _execute_with_retries(self, prompt: str, *, task_id: str | None) -> CommandResult | None:
        """Run a coordinator command, retrying command-layer failures and crashes.

        Returns ``None`` when the agent is shutting down.
        """

        attempts = max(1, self.settings.review_retries + 1)
        result: CommandResult | None = None
        for attempt in range(1, attempts + 1):
            try:
                result = self.supervisor.execute(
                    prompt,
                    self.strategy.options_for(),
                    task_id=task_id,
                )
            except ShutdownError:
                return None
            except ProcessCrashError as error:
                result = CommandResult(success=False, error=str(error))
            if result.success:
                return result
            logger.warning(
                "Coordinator command failed (attempt %d/%d): %s",
                attempt,
                attempts,
                result.error,
                extra={"agent_id": self.agent_id, "task_id": task_id},
            )
        return result

    def _set_phase(self, phase: AgentPhase) -> None:
        with self._lock:
            if self._phase == phase:
                return
            self._phase = phase
            task_id = self._current_task_id
        if self.events is None:
            return
        self.events.publish(
            EventKind.AGENT_STATUS_UPDATE,
            {
                "agent_id": self.agent_id,
                "role": self.role.value,
                "phase": phase.value,
                "task_id": task_id,
                "status": self.supervisor.status.value,
            },
        )


def build_task_plan(
    payload: Any,
    *,
    instruction_id: str | None,
    default_priority: int = 5,
    max_attempts: int = 3,
) -> list[TaskCreate]:
    """Turn a decomposition reply into ``TaskCreate`` payloads.

    Dependencies may name other tasks by ``key`` or by ``title``; references
    that match nothing are dropped with a warning.
    """

    items = payload.get("tasks") if isinstance(payload, dict) else payload
    if not isinstance(items, list) or not items:
        raise ValueError("decomposition returned no tasks")

    task_ids: list[str] = []
    aliases: dict[str, str] = {}
    for index, item in enumerate(items):
        if not isinstance(item, dict) or not str(item.get("title") or "").strip():
            raise ValueError(f"task #{index + 1} has no title")
        task_id = str(uuid4())
        task_ids.append(task_id)
        key = item.get("key") or item.get("id")
        if key:
            aliases[str(key)] = task_id
        aliases.setdefault(str(item["title"]).strip(), task_id)

    plan: list[TaskCreate] = []
    for task_id, item in zip(task_ids, items, strict=True):
        references = item.get("depends_on") or item.get("dependencies") or []
        if isinstance(references, str):
            references = [references]
        dependencies: list[str] = []
        for reference in references:
            resolved = aliases.get(str(reference))
            if resolved is None:
                logger.warning(
                    "Dropping unknown dependency %r of task %r",
                    reference,
                    item["title"],
                )
                continue
            if resolved != task_id and resolved not in dependencies:
                dependencies.append(resolved)
        plan.append(
            TaskCreate(
                task_id=task_id,
                title=str(item["title"]).strip(),
                description=str(item.get("description") or ""),
                priority=_as_int(item.get("priority"), default_priority),
                capability=str(item.get("capability") or "general"),
                dependencies=tuple(dependencies),
                max_attempts=max_attempts,
                instruction_id=instruction_id,
            ),
        )
    return plan


def _self_test_verdict(payload: Any) -> tuple[bool, str]:
    if isinstance(payload, dict):
        details = payload.get("details") or payload.get("summary") or ""
        return bool(payload.get("passed")), str(details)
    if isinstance(payload, bool):
        return payload, ""
    return False, f"unexpected self-test reply: {_preview(payload)[:200]}"


def _review_verdict(payload: Any) -> ReviewVerdict:
    if not isinstance(payload, dict):
        return ReviewVerdict(approved=False, feedback="review reply was not a JSON object")
    issues = payload.get("issues") or []
    score = payload.get("score")
    return ReviewVerdict(
        approved=bool(payload.get("approved")),
        feedback=str(payload.get("feedback") or ""),
        issues=[str(issue) for issue in issues] if isinstance(issues, list) else [str(issues)],
        score=int(score) if isinstance(score, int | float) else None,
    )


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _preview(payload: Any) -> str:
    if payload is None:
        return "(no output)"
    text = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False)
    return text[:_OUTPUT_PREVIEW_CHARS]

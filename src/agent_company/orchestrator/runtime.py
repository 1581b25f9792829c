"""Composition root wiring the store, scheduler, supervisors and controllers."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from types import TracebackType

from agent_company.config import Settings
from agent_company.orchestrator.agent import AgentController
from agent_company.orchestrator.backend.cli_backend import CommandExecutor
from agent_company.orchestrator.events import (
    ErrorReporter,
    Event,
    EventBus,
    EventChannel,
    EventKind,
)
from agent_company.orchestrator.integration import (
    CommandIntegrationHook,
    IntegrationHook,
    NullIntegrationHook,
)
from agent_company.orchestrator.messages import FailureMessage, InstructionMessage, ReviewMessage
from agent_company.orchestrator.models import (
    AgentRole,
    AgentView,
    InstructionStatus,
    InstructionView,
    ProcessStatus,
)
from agent_company.orchestrator.repository import TaskRepository
from agent_company.orchestrator.roles import strategy_for
from agent_company.orchestrator.scheduler import AgentSlot, Scheduler
from agent_company.orchestrator.supervisor import AgentProcessSupervisor

logger = logging.getLogger(__name__)

COORDINATOR_ID = "coordinator"
SERVICE_NAME = "agent-company"
_TERMINAL_INSTRUCTION_STATUSES = frozenset({InstructionStatus.COMPLETED, InstructionStatus.FAILED})


class AgentCompanyRuntime:
    """One coordinator plus a scalable pool of workers sharing one task store."""

    def __init__(
        self,
        settings: Settings,
        *,
        events: EventBus | None = None,
        integration: IntegrationHook | None = None,
    ) -> None:
        self.settings = settings
        self.events = events or EventBus()
        self.reporter = ErrorReporter(service=SERVICE_NAME, events=self.events)
        self.repository = TaskRepository(
            settings.db_path,
            sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
            events=self.events,
        )
        self.scheduler = Scheduler(queue=self.repository, reporter=self.reporter, events=self.events)
        if integration is not None:
            self.integration = integration
        elif settings.integration.command:
            self.integration = CommandIntegrationHook(
                settings.integration.command,
                timeout_seconds=settings.integration.timeout_seconds,
            )
        else:
            self.integration = NullIntegrationHook()
        self.coordinator: AgentController | None = None
        self._workers: dict[str, AgentController] = {}
        self._draining: set[str] = set()
        self._worker_seq = 0
        self._lock = threading.RLock()
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._channel: EventChannel | None = None
        self._started = False

    def __enter__(self) -> AgentCompanyRuntime:
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.shutdown()

    # -- lifecycle ----------------------------------------------------------------

    def start(self) -> None:
        self.settings.validate()
        self.repository.init_schema()
        self._stop.clear()
        self._channel = self.events.subscribe(
            [EventKind.TASK_UPDATE, EventKind.AGENT_STATUS_UPDATE],
        )
        self._start_thread("event-pump", self._pump_events)
        self._start_thread("scheduler", self._run_scheduler)
        self._start_thread("stats", self._publish_stats)
        self._started = True

        self.coordinator = self._spawn_agent(AgentRole.COORDINATOR, COORDINATOR_ID)
        resumed = self.coordinator.resume_pending_reviews()
        if resumed:
            logger.info("Resumed %d pending review(s)", resumed)
        # No worker is running yet, so every claim still held was left by a previous run.
        self.repository.requeue_orphaned(active_agent_ids=())
        self.scale_to(self.settings.pool.worker_replicas)
        logger.info(
            "Runtime started (db=%s workers=%d)",
            self.settings.db_path,
            self.settings.pool.worker_replicas,
        )

    def shutdown(self) -> None:
        """Stop every agent; in-flight tasks go back through the retry path."""

        if not self._started:
            return
        self._started = False
        with self._lock:
            workers = list(self._workers.values())
            self._workers.clear()
            self._draining.clear()
        for worker in workers:
            self.scheduler.remove_agent(worker.agent_id)
            worker.stop(timeout=self.settings.supervisor.graceful_shutdown_seconds + 5.0)
        if self.coordinator is not None:
            self.coordinator.stop(timeout=self.settings.supervisor.graceful_shutdown_seconds + 5.0)
        self._stop.set()
        self.scheduler.wake("shutdown")
        for thread in self._threads:
            thread.join(timeout=5.0)
        self._threads.clear()
        if self._channel is not None:
            self.events.unsubscribe(self._channel)
            self._channel = None
        self.repository.close()
        logger.info("Runtime stopped")

    # -- pool ---------------------------------------------------------------------

    def add_worker(self) -> str:
        with self._lock:
            self._worker_seq += 1
            agent_id = f"worker-{self._worker_seq}"
        controller = self._spawn_agent(AgentRole.WORKER, agent_id)
        with self._lock:
            self._workers[agent_id] = controller
        self.scheduler.add_agent(
            AgentSlot(
                agent_id=agent_id,
                capabilities=self.settings.pool.worker_capabilities,
                supervisor=controller.supervisor,
                deliver=controller.deliver,
            ),
        )
        return agent_id

    def remove_worker(self, agent_id: str) -> None:
        """Remove a worker now if idle, otherwise after its current task is released."""

        if self.scheduler.remove_agent(agent_id):
            with self._lock:
                controller = self._workers.pop(agent_id, None)
            if controller is not None:
                controller.stop()
            return
        with self._lock:
            self._draining.add(agent_id)

    def scale_to(self, replicas: int) -> None:
        if replicas < 0:
            raise ValueError("replicas must be >= 0")
        with self._lock:
            active = [agent_id for agent_id in self._workers if agent_id not in self._draining]
        while len(active) < replicas:
            active.append(self.add_worker())
        for agent_id in reversed(active[replicas:]):
            self.remove_worker(agent_id)

    def agents(self) -> list[AgentView]:
        views = self.scheduler.agents()
        if self.coordinator is not None:
            supervisor = self.coordinator.supervisor
            views.insert(
                0,
                AgentView(
                    agent_id=supervisor.agent_id,
                    role=supervisor.role,
                    process_status=supervisor.status,
                    capacity=1,
                    capabilities=(),
                    current_task_ids=(),
                    restart_count=supervisor.restart_count,
                    error_count=supervisor.error_count,
                    last_activity_at=supervisor.last_activity_at,
                    pid=supervisor.pid,
                ),
            )
        return views

    # -- instructions -------------------------------------------------------------

    def submit_instruction(self, content: str, *, priority: int = 5) -> InstructionView:
        if self.coordinator is None:
            raise RuntimeError("Runtime is not started.")
        view = self.repository.create_instruction(content=content, priority=priority)
        self.coordinator.deliver(
            InstructionMessage(
                instruction_id=view.instruction_id,
                content=content,
                priority=priority,
            ),
        )
        return view

    def wait_for_instruction(
        self,
        instruction_id: str,
        *,
        timeout_seconds: float,
        poll_interval_seconds: float = 0.1,
    ) -> InstructionView:
        """Block until the instruction completes or fails; raises ``TimeoutError``."""

        deadline = time.monotonic() + timeout_seconds
        while True:
            view = self.repository.get_instruction(instruction_id)
            if view is None:
                raise RuntimeError(f"Instruction not found: {instruction_id}")
            if view.status in _TERMINAL_INSTRUCTION_STATUSES:
                return view
            if time.monotonic() >= deadline:
                raise TimeoutError(
                    f"Instruction {instruction_id} still {view.status.value} "
                    f"after {timeout_seconds:.1f}s",
                )
            time.sleep(poll_interval_seconds)

    # -- internals ----------------------------------------------------------------

    def _spawn_agent(self, role: AgentRole, agent_id: str) -> AgentController:
        strategy = strategy_for(role, self.settings.command)
        supervisor = AgentProcessSupervisor(
            agent_id=agent_id,
            role=role,
            workspace_path=self.settings.pool.workspace_root / agent_id,
            executor=CommandExecutor(
                executable=self.settings.command.executable,
                default_timeout_seconds=self.settings.command.timeout_seconds,
            ),
            settings=self.settings.supervisor,
            reporter=self.reporter,
            events=self.events,
            command_options=strategy.command_options,
        )
        controller = AgentController(
            supervisor=supervisor,
            strategy=strategy,
            repository=self.repository,
            settings=self.settings.tasks,
            reporter=self.reporter,
            scheduler=self.scheduler if role == AgentRole.WORKER else None,
            integration=self.integration if role == AgentRole.COORDINATOR else None,
            events=self.events,
        )
        supervisor.start()
        controller.start()
        return controller

    def _start_thread(self, name: str, target: Callable[[], None]) -> None:
        thread = threading.Thread(target=target, name=name, daemon=True)
        thread.start()
        self._threads.append(thread)

    def _run_scheduler(self) -> None:
        self.scheduler.run(self._stop, tick_seconds=self.settings.pool.scheduler_tick_seconds)

    def _publish_stats(self) -> None:
        while not self._stop.wait(self.settings.pool.stats_interval_seconds):
            counts = self.repository.count_by_status()
            self.scheduler.publish_stats(
                {"tasks_by_status": {status.value: count for status, count in counts.items()}},
            )

    def _pump_events(self) -> None:
        channel = self._channel
        if channel is None:
            return
        while not self._stop.is_set():
            event = channel.get(timeout=0.2)
            self._reap_drained_workers()
            if event is not None:
                self._route(event)

    def _route(self, event: Event) -> None:
        payload = event.payload
        if event.kind == EventKind.AGENT_STATUS_UPDATE:
            if payload.get("status") == ProcessStatus.RUNNING.value:
                self.scheduler.wake(f"agent {payload.get('agent_id')} running")
            return

        event_type = payload.get("event_type")
        task_id = str(payload.get("task_id"))
        if event_type == "ready":
            self.scheduler.wake(f"task {task_id} ready")
        elif event_type == "completed" and self.coordinator is not None:
            self.coordinator.deliver(ReviewMessage(task_id=task_id))
        elif event_type == "failed" and self.coordinator is not None:
            self.coordinator.deliver(
                FailureMessage(task_id=task_id, error=payload.get("last_error")),
            )

    def _reap_drained_workers(self) -> None:
        with self._lock:
            finished = [
                agent_id for agent_id in self._draining if not self.scheduler.has_agent(agent_id)
            ]
            controllers = []
            for agent_id in finished:
                self._draining.discard(agent_id)
                controller = self._workers.pop(agent_id, None)
                if controller is not None:
                    controllers.append(controller)
        for controller in controllers:
            controller.stop()

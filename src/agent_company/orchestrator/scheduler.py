"""Pairs idle agents with Ready tasks.

A matching pass runs whenever something relevant happens (a task became
ready, an agent was released, the pool changed) and on a periodic tick.
Claims go through ``TaskQueueBackend.pop_ready`` so the store stays the
single arbiter of who owns a task.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field

from sqlalchemy.exc import SQLAlchemyError

from agent_company.orchestrator.events import ErrorReporter, EventBus, EventKind
from agent_company.orchestrator.messages import (
    AgentReleased,
    AssignmentMessage,
    Mailbox,
    SchedulerMessage,
    WakeUp,
)
from agent_company.orchestrator.models import AgentRole, AgentView, ProcessStatus
from agent_company.orchestrator.repository import MATCH_ANY_CAPABILITY, TaskQueueBackend
from agent_company.orchestrator.supervisor import AgentProcessSupervisor

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AgentSlot:
    """Scheduler-side bookkeeping for one pooled agent."""

    agent_id: str
    capabilities: tuple[str, ...]
    supervisor: AgentProcessSupervisor
    deliver: Callable[[AssignmentMessage], None]
    capacity: int = 1
    current_task_ids: list[str] = field(default_factory=list)
    draining: bool = False

    @property
    def is_idle(self) -> bool:
        return (
            not self.draining
            and self.supervisor.status == ProcessStatus.RUNNING
            and len(self.current_task_ids) < self.capacity
        )

    def view(self) -> AgentView:
        return AgentView(
            agent_id=self.agent_id,
            role=self.supervisor.role,
            process_status=self.supervisor.status,
            capacity=self.capacity,
            capabilities=self.capabilities,
            current_task_ids=tuple(self.current_task_ids),
            restart_count=self.supervisor.restart_count,
            error_count=self.supervisor.error_count,
            last_activity_at=self.supervisor.last_activity_at,
            draining=self.draining,
            pid=self.supervisor.pid,
        )


@dataclass(slots=True)
class Assignment:
    agent_id: str
    task_id: str


class Scheduler:
    """Event-driven matcher between the agent pool and the Ready queue."""

    def __init__(
        self,
        *,
        queue: TaskQueueBackend,
        reporter: ErrorReporter,
        events: EventBus | None = None,
    ) -> None:
        self.queue = queue
        self.reporter = reporter
        self.events = events
        self.inbox: Mailbox[SchedulerMessage] = Mailbox("scheduler")
        self._lock = threading.RLock()
        self._agents: dict[str, AgentSlot] = {}
        self.assignments_made = 0

    # -- pool ---------------------------------------------------------------------

    def add_agent(self, slot: AgentSlot) -> None:
        if slot.supervisor.role != AgentRole.WORKER:
            raise ValueError(f"Only worker agents can be scheduled, got {slot.supervisor.role}.")
        with self._lock:
            if slot.agent_id in self._agents:
                raise ValueError(f"Agent already registered: {slot.agent_id}")
            self._agents[slot.agent_id] = slot
        logger.info(
            "Agent %s joined the pool (capabilities=%s)",
            slot.agent_id,
            ",".join(slot.capabilities),
            extra={"agent_id": slot.agent_id},
        )
        self.tick()

    def remove_agent(self, agent_id: str) -> bool:
        """Remove an idle agent now; a busy one is drained after its release.

        Returns ``True`` when the agent left the pool immediately.
        """

        with self._lock:
            slot = self._agents.get(agent_id)
            if slot is None:
                return True
            if slot.current_task_ids:
                slot.draining = True
                logger.info(
                    "Agent %s draining (tasks=%s)",
                    agent_id,
                    ",".join(slot.current_task_ids),
                    extra={"agent_id": agent_id},
                )
                removed = False
            else:
                del self._agents[agent_id]
                removed = True
        self.tick()
        return removed

    def has_agent(self, agent_id: str) -> bool:
        with self._lock:
            return agent_id in self._agents

    def agents(self) -> list[AgentView]:
        with self._lock:
            return [slot.view() for slot in self._agents.values()]

    # -- messages -----------------------------------------------------------------

    def release(self, *, agent_id: str, task_id: str) -> None:
        self.inbox.put(AgentReleased(agent_id=agent_id, task_id=task_id))

    def wake(self, reason: str) -> None:
        self.inbox.put(WakeUp(reason=reason))

    # -- matching -----------------------------------------------------------------

    def tick(self) -> list[Assignment]:
        """Apply pending messages and hand Ready tasks to idle agents."""

        return self._match(self.inbox.drain())

    def run(self, stop: threading.Event, *, tick_seconds: float = 1.0) -> None:
        """Loop until ``stop`` is set; each message or tick triggers a pass."""

        while not stop.is_set():
            message = self.inbox.get(timeout=tick_seconds)
            if stop.is_set():
                return
            pending = [message] if message is not None else []
            pending.extend(self.inbox.drain())
            try:
                self._match(pending)
            except SQLAlchemyError as error:
                self.reporter.report("Scheduler pass failed", error=error)

    def _match(self, messages: list[SchedulerMessage]) -> list[Assignment]:
        assignments: list[Assignment] = []
        with self._lock:
            for message in messages:
                if isinstance(message, AgentReleased):
                    self._apply_release(message)
            for slot in list(self._agents.values()):
                while slot.is_idle:
                    capabilities = (
                        None if MATCH_ANY_CAPABILITY in slot.capabilities else slot.capabilities
                    )
                    task = self.queue.pop_ready(agent_id=slot.agent_id, capabilities=capabilities)
                    if task is None:
                        break
                    slot.current_task_ids.append(task.task_id)
                    assignments.append(Assignment(agent_id=slot.agent_id, task_id=task.task_id))
                    self.assignments_made += 1
                    logger.info(
                        "Assigned task %s to %s (priority=%d)",
                        task.task_id,
                        slot.agent_id,
                        task.priority,
                        extra={"agent_id": slot.agent_id, "task_id": task.task_id},
                    )
                    slot.deliver(AssignmentMessage(task=task))
        return assignments

    def _apply_release(self, message: AgentReleased) -> None:
        slot = self._agents.get(message.agent_id)
        if slot is None:
            return
        if message.task_id in slot.current_task_ids:
            slot.current_task_ids.remove(message.task_id)
        if slot.draining and not slot.current_task_ids:
            del self._agents[message.agent_id]
            logger.info(
                "Agent %s left the pool after draining",
                message.agent_id,
                extra={"agent_id": message.agent_id},
            )

    # -- stats --------------------------------------------------------------------

    def stats(self) -> dict[str, object]:
        views = self.agents()
        states: dict[str, int] = {}
        for view in views:
            states[view.state] = states.get(view.state, 0) + 1
        return {
            "agents_total": len(views),
            "agents_by_state": states,
            "agents_draining": sum(1 for view in views if view.draining),
            "assignments_made": self.assignments_made,
            "inbox_depth": self.inbox.depth(),
        }

    def publish_stats(self, extra: dict[str, object] | None = None) -> None:
        if self.events is None:
            return
        payload = self.stats()
        if extra:
            payload.update(extra)
        self.events.publish(EventKind.SYSTEM_STATS, payload)

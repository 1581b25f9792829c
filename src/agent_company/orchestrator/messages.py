"""Messages exchanged between the scheduler, the coordinator and workers.

Each receiver owns a ``Mailbox``; senders only ever ``put`` into it.
"""

from __future__ import annotations

import queue
from dataclasses import dataclass, field
from datetime import datetime
from typing import Generic, TypeVar

from agent_company.orchestrator.models import TaskView
from agent_company.storage.common import utc_now


@dataclass(slots=True, frozen=True)
class InstructionMessage:
    """External instruction addressed to the coordinator."""

    instruction_id: str
    content: str
    priority: int = 5
    sent_at: datetime = field(default_factory=utc_now)


@dataclass(slots=True, frozen=True)
class AssignmentMessage:
    """Scheduler -> worker: a task already claimed on the worker's behalf."""

    task: TaskView
    sent_at: datetime = field(default_factory=utc_now)


@dataclass(slots=True, frozen=True)
class ReviewMessage:
    """Completed task waiting for the coordinator's verdict."""

    task_id: str
    sent_at: datetime = field(default_factory=utc_now)


@dataclass(slots=True, frozen=True)
class FailureMessage:
    """Task that exhausted its attempts."""

    task_id: str
    error: str | None = None
    sent_at: datetime = field(default_factory=utc_now)


@dataclass(slots=True, frozen=True)
class StopMessage:
    reason: str = "shutdown"


@dataclass(slots=True, frozen=True)
class AgentReleased:
    """Worker -> scheduler: the agent finished with ``task_id``."""

    agent_id: str
    task_id: str


@dataclass(slots=True, frozen=True)
class WakeUp:
    """Something changed; the scheduler should run a matching pass."""

    reason: str


CoordinatorMessage = InstructionMessage | ReviewMessage | FailureMessage | StopMessage
WorkerMessage = AssignmentMessage | StopMessage
SchedulerMessage = AgentReleased | WakeUp

MessageT = TypeVar("MessageT")


class Mailbox(Generic[MessageT]):
    """Thread-safe single-receiver inbox."""

    def __init__(self, owner: str) -> None:
        self.owner = owner
        self._queue: queue.Queue[MessageT] = queue.Queue()

    def put(self, message: MessageT) -> None:
        self._queue.put(message)

    def get(self, timeout: float | None = None) -> MessageT | None:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[MessageT]:
        messages: list[MessageT] = []
        while True:
            try:
                messages.append(self._queue.get_nowait())
            except queue.Empty:
                return messages

    def depth(self) -> int:
        return self._queue.qsize()

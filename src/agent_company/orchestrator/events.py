"""Typed notification channels and the explicit error reporter.

Components never register callbacks on each other. They publish immutable
``Event`` values on an ``EventBus``; every subscriber owns a queue-backed
``EventChannel`` and drains it at its own pace. The dashboard, the runtime
event pump, and tests are all plain subscribers.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from agent_company.storage.common import utc_now

logger = logging.getLogger(__name__)

_MAX_HISTORY = 500


class EventKind(str, Enum):
    AGENT_STATUS_UPDATE = "agent_status_update"
    TASK_UPDATE = "task_update"
    LOG_ENTRY = "log_entry"
    SYSTEM_STATS = "system_stats"
    INSTRUCTION_UPDATE = "instruction_update"


@dataclass(slots=True, frozen=True)
class Event:
    kind: EventKind
    payload: dict[str, Any]
    created_at: datetime = field(default_factory=utc_now)


class EventChannel:
    """One subscriber's inbox."""

    def __init__(self, kinds: frozenset[EventKind] | None) -> None:
        self.kinds = kinds
        self._queue: queue.Queue[Event] = queue.Queue()
        self.closed = False

    def accepts(self, event: Event) -> bool:
        return not self.closed and (self.kinds is None or event.kind in self.kinds)

    def put(self, event: Event) -> None:
        self._queue.put(event)

    def get(self, timeout: float | None = None) -> Event | None:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[Event]:
        events: list[Event] = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events


class EventBus:
    """Thread-safe fan-out of events to subscribed channels."""

    def __init__(self, max_history: int = _MAX_HISTORY) -> None:
        self._lock = threading.Lock()
        self._channels: list[EventChannel] = []
        self._history: deque[Event] = deque(maxlen=max_history)

    def subscribe(self, kinds: Iterable[EventKind] | None = None) -> EventChannel:
        channel = EventChannel(frozenset(kinds) if kinds is not None else None)
        with self._lock:
            self._channels.append(channel)
        return channel

    def unsubscribe(self, channel: EventChannel) -> None:
        with self._lock:
            channel.closed = True
            if channel in self._channels:
                self._channels.remove(channel)

    def publish(self, kind: EventKind, payload: dict[str, Any]) -> Event:
        event = Event(kind=kind, payload=dict(payload))
        with self._lock:
            self._history.append(event)
            channels = [channel for channel in self._channels if channel.accepts(event)]
        for channel in channels:
            channel.put(event)
        return event

    def history(self, kind: EventKind | None = None) -> list[Event]:
        with self._lock:
            events = list(self._history)
        if kind is None:
            return events
        return [event for event in events if event.kind == kind]


class ErrorReporter:
    """Logs failures with correlation fields and mirrors them as ``log_entry`` events.

    One instance is created by the composition root and passed to every
    component constructor.
    """

    def __init__(self, *, service: str, events: EventBus | None = None) -> None:
        self.service = service
        self.events = events

    def report(
        self,
        message: str,
        *,
        error: BaseException | None = None,
        agent_id: str | None = None,
        task_id: str | None = None,
        level: int = logging.ERROR,
    ) -> None:
        text = f"{message}: {error}" if error is not None else message
        logger.log(
            level,
            "%s",
            text,
            extra={"service": self.service, "agent_id": agent_id, "task_id": task_id},
        )
        if self.events is None:
            return
        self.events.publish(
            EventKind.LOG_ENTRY,
            {
                "service": self.service,
                "level": logging.getLevelName(level).lower(),
                "message": text,
                "agent_id": agent_id,
                "task_id": task_id,
                "error_type": type(error).__name__ if error is not None else None,
            },
        )

    def warning(self, message: str, **kwargs: Any) -> None:
        self.report(message, level=logging.WARNING, **kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        self.report(message, level=logging.INFO, **kwargs)


class CorrelationFilter(logging.Filter):
    """Guarantee correlation attributes on every record so formatters can use them."""

    def __init__(self, service: str) -> None:
        super().__init__()
        self.service = service

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "service", None):
            record.service = self.service
        for name in ("agent_id", "task_id"):
            if getattr(record, name, None) is None:
                setattr(record, name, "-")
        return True


def configure_logging(*, service: str, verbose: bool = False) -> None:
    """Install a stderr handler emitting service, agent and task correlation fields."""

    handler = logging.StreamHandler()
    handler.addFilter(CorrelationFilter(service))
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s %(levelname)s %(service)s agent=%(agent_id)s task=%(task_id)s "
            "%(name)s: %(message)s",
        ),
    )
    root = logging.getLogger("agent_company")
    root.handlers = [handler]
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    root.propagate = False

"""Persistent task store with dependency graph and atomic queue transitions.

Every state change is a conditional ``UPDATE ... WHERE status = <expected>``
followed by a ``rowcount`` check. SQLite serializes writers, so two agents
racing for the same Ready task cannot both win the claim.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import Any, Protocol
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import select as sa_select
from sqlalchemy import update as sa_update
from sqlalchemy.orm import aliased
from sqlmodel import Session, SQLModel, col, select

from agent_company.orchestrator.errors import (
    DependencyCycleError,
    TaskNotAssignable,
    TaskPermanentlyFailed,
)
from agent_company.orchestrator.events import EventBus, EventKind
from agent_company.orchestrator.models import (
    ACTIVE_TASK_STATUSES,
    OWNED_TASK_STATUSES,
    FailureClass,
    InstructionProgress,
    InstructionStatus,
    InstructionView,
    ReviewStatus,
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskStatus,
    TaskView,
    WorkResult,
)
from agent_company.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_company.storage.sqlmodel_models import Instruction, Task, TaskDependency, TaskEvent

logger = logging.getLogger(__name__)

MATCH_ANY_CAPABILITY = "*"


class TaskQueueBackend(Protocol):
    """Queue contract the scheduler depends on."""

    def push(self, payload: TaskCreate) -> TaskView:
        """Enqueue one task."""

    def pop_ready(
        self,
        *,
        agent_id: str,
        capabilities: Iterable[str] | None = None,
    ) -> TaskView | None:
        """Atomically claim the best Ready task for ``agent_id``."""

    def ack(self, task_id: str, result: WorkResult) -> bool:
        """Acknowledge successful processing."""

    def nack(self, task_id: str, error: str) -> TaskView | None:
        """Report a failed processing attempt."""


class TaskRepository:
    """Task store facade backed by SQLModel + SQLite.

    Also implements the queue backend contract (``push``, ``pop_ready``,
    ``ack``, ``nack``) consumed by the scheduler.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        sqlite_busy_timeout_ms: int = 5_000,
        events: EventBus | None = None,
    ) -> None:
        self.db_path = db_path
        self.events = events
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Create tables that do not exist yet."""

        SQLModel.metadata.create_all(
            self.engine,
            tables=[
                Instruction.__table__,  # type: ignore[attr-defined]
                Task.__table__,  # type: ignore[attr-defined]
                TaskDependency.__table__,  # type: ignore[attr-defined]
                TaskEvent.__table__,  # type: ignore[attr-defined]
            ],
        )

    # -- creation -----------------------------------------------------------------

    def create(self, payload: TaskCreate) -> TaskView:
        """Insert one task as Pending, then promote it if its dependencies are done."""

        return self.create_many([payload])[0]

    def create_many(self, payloads: Sequence[TaskCreate]) -> list[TaskView]:
        """Insert a task set atomically.

        Dependencies may reference existing tasks or other tasks of the same
        batch (by their pre-assigned ``task_id``).
        """

        now = utc_now()
        task_ids = [payload.task_id or str(uuid4()) for payload in payloads]
        batch = dict(zip(task_ids, payloads, strict=True))
        if len(batch) != len(payloads):
            raise ValueError("Duplicate task_id within one batch.")
        _check_batch_acyclic(batch)

        with Session(self.engine) as session:
            external = {
                dependency
                for payload in payloads
                for dependency in payload.dependencies
                if dependency not in batch
            }
            if external:
                known = set(
                    session.exec(select(Task.task_id).where(col(Task.task_id).in_(external))).all(),
                )
                missing = sorted(external - known)
                if missing:
                    raise ValueError(f"Unknown dependency task id(s): {', '.join(missing)}")

            for task_id, payload in batch.items():
                if payload.max_attempts < 1:
                    raise ValueError(f"max_attempts must be >= 1, got {payload.max_attempts}")
                session.add(
                    Task(
                        task_id=task_id,
                        instruction_id=payload.instruction_id,
                        title=payload.title,
                        description=payload.description,
                        priority=payload.priority,
                        capability=payload.capability,
                        status=TaskStatus.PENDING.value,
                        attempt_count=0,
                        max_attempts=payload.max_attempts,
                        parent_task_id=payload.parent_task_id,
                        remediation_round=payload.remediation_round,
                        review_status=ReviewStatus.PENDING.value,
                        integrated=False,
                        created_at=to_db_datetime(now),
                        updated_at=to_db_datetime(now),
                    ),
                )
            # Parent rows must exist before the edges referencing them.
            session.flush()
            for task_id, payload in batch.items():
                for dependency in dict.fromkeys(payload.dependencies):
                    session.add(TaskDependency(task_id=task_id, depends_on_task_id=dependency))
                self._add_event(
                    session=session,
                    task_id=task_id,
                    event_type="created",
                    status_from=None,
                    status_to=TaskStatus.PENDING,
                    details={
                        "priority": payload.priority,
                        "capability": payload.capability,
                        "dependencies": list(payload.dependencies),
                        "max_attempts": payload.max_attempts,
                        "parent_task_id": payload.parent_task_id,
                    },
                )
            session.commit()

        for task_id in task_ids:
            self._publish(task_id, event_type="created")
        self.mark_ready()
        return [self._require(task_id) for task_id in task_ids]

    def push(self, payload: TaskCreate) -> TaskView:
        """Queue backend contract: enqueue one task."""

        return self.create(payload)

    def resubmit(self, *, task_id: str) -> TaskView:
        """Operator re-submission of a failed/cancelled task through the normal create path."""

        original = self._require(task_id)
        if original.status not in {TaskStatus.FAILED, TaskStatus.CANCELLED}:
            raise RuntimeError(
                "Only failed/cancelled tasks can be re-submitted, "
                f"got {original.status.value}.",
            )
        created = self.create(
            TaskCreate(
                title=original.title,
                description=original.description,
                priority=original.priority,
                capability=original.capability,
                dependencies=original.dependencies,
                max_attempts=original.max_attempts,
                instruction_id=original.instruction_id,
                parent_task_id=original.task_id,
                remediation_round=original.remediation_round,
            ),
        )
        with Session(self.engine) as session:
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="resubmitted",
                status_from=original.status,
                status_to=original.status,
                details={"new_task_id": created.task_id},
            )
            session.commit()
        return created

    # -- reads --------------------------------------------------------------------

    def get(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.exec(select(Task).where(Task.task_id == task_id)).one_or_none()
            if row is None:
                return None
            return self._to_task_view(session, row)

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        instruction_id: str | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List tasks in creation order, optionally filtered."""

        with Session(self.engine) as session:
            statement = select(Task).order_by(col(Task.seq).asc()).limit(limit)
            if status is not None:
                statement = statement.where(Task.status == status.value)
            if instruction_id is not None:
                statement = statement.where(Task.instruction_id == instruction_id)
            rows = session.exec(statement).all()
            return [self._to_task_view(session, row) for row in rows]

    def list_dependents(self, *, task_id: str) -> list[TaskView]:
        """Tasks that directly depend on ``task_id``."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Task)
                .join(TaskDependency, col(TaskDependency.task_id) == col(Task.task_id))
                .where(TaskDependency.depends_on_task_id == task_id)
                .order_by(col(Task.seq).asc()),
            ).all()
            return [self._to_task_view(session, row) for row in rows]

    def list_unreviewed(self, *, instruction_id: str | None = None) -> list[TaskView]:
        """Completed tasks still waiting for a coordinator review."""

        with Session(self.engine) as session:
            statement = (
                select(Task)
                .where(
                    Task.status == TaskStatus.COMPLETED.value,
                    Task.review_status == ReviewStatus.PENDING.value,
                )
                .order_by(col(Task.seq).asc())
            )
            if instruction_id is not None:
                statement = statement.where(Task.instruction_id == instruction_id)
            rows = session.exec(statement).all()
            return [self._to_task_view(session, row) for row in rows]

    def count_by_status(self) -> dict[TaskStatus, int]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Task.status, func.count()).group_by(Task.status),
            ).all()
        counts = {status: 0 for status in TaskStatus}
        for status, count in rows:
            counts[TaskStatus(status)] = int(count)
        return counts

    def get_task_details(self, *, task_id: str) -> TaskDetails | None:
        """Return task details with event stream."""

        with Session(self.engine) as session:
            row = session.exec(select(Task).where(Task.task_id == task_id)).one_or_none()
            if row is None:
                return None
            task = self._to_task_view(session, row)
            event_rows = session.exec(
                select(TaskEvent)
                .where(TaskEvent.task_id == task_id)
                .order_by(col(TaskEvent.id).asc()),
            ).all()

        events: list[TaskEventView] = []
        for event_row in event_rows:
            details: dict[str, Any] = {}
            if event_row.details_json:
                parsed = json.loads(event_row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                TaskEventView(
                    event_id=event_row.id or 0,
                    task_id=event_row.task_id,
                    event_type=event_row.event_type,
                    status_from=_optional_status(event_row.status_from),
                    status_to=_optional_status(event_row.status_to),
                    created_at=to_utc_aware_datetime(event_row.created_at),
                    details=details,
                ),
            )
        return TaskDetails(task=task, events=events)

    # -- queue transitions --------------------------------------------------------

    def mark_ready(self) -> list[str]:
        """Promote every Pending task whose dependencies are all Completed."""

        promoted: list[str] = []
        with Session(self.engine) as session:
            candidates = session.exec(
                select(Task.task_id)
                .where(
                    Task.status == TaskStatus.PENDING.value,
                    col(Task.task_id).not_in(_blocked_task_ids()),
                )
                .order_by(col(Task.seq).asc()),
            ).all()
            for task_id in candidates:
                result = session.exec(
                    sa_update(Task)
                    .where(
                        col(Task.task_id) == task_id,
                        col(Task.status) == TaskStatus.PENDING.value,
                        col(Task.task_id).not_in(_blocked_task_ids()),
                    )
                    .values(status=TaskStatus.READY.value, updated_at=to_db_datetime(utc_now())),
                )
                if result.rowcount != 1:
                    continue
                self._add_event(
                    session=session,
                    task_id=task_id,
                    event_type="ready",
                    status_from=TaskStatus.PENDING,
                    status_to=TaskStatus.READY,
                    details={},
                )
                promoted.append(task_id)
            session.commit()

        for task_id in promoted:
            self._publish(task_id, event_type="ready")
        if promoted:
            logger.debug("Promoted %d task(s) to ready", len(promoted))
        return promoted

    def assign(self, *, task_id: str, agent_id: str) -> TaskView:
        """Atomically move a Ready task to Assigned for ``agent_id``."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.status) == TaskStatus.READY.value,
                    col(Task.task_id).not_in(_blocked_task_ids()),
                )
                .values(
                    status=TaskStatus.ASSIGNED.value,
                    assigned_agent_id=agent_id,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                current = session.exec(
                    select(Task.status).where(Task.task_id == task_id),
                ).one_or_none()
                raise TaskNotAssignable(task_id, current)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="assigned",
                status_from=TaskStatus.READY,
                status_to=TaskStatus.ASSIGNED,
                details={"agent_id": agent_id},
            )
            session.commit()

        self._publish(task_id, event_type="assigned")
        return self._require(task_id)

    def pop_ready(
        self,
        *,
        agent_id: str,
        capabilities: Iterable[str] | None = None,
    ) -> TaskView | None:
        """Queue backend contract: claim the best Ready task matching ``capabilities``.

        Highest priority wins; equal priorities go to the lowest sequence number.
        """

        capability_filter = _capability_filter(capabilities)
        while True:
            with Session(self.engine) as session:
                statement = (
                    select(Task.task_id)
                    .where(
                        Task.status == TaskStatus.READY.value,
                        col(Task.task_id).not_in(_blocked_task_ids()),
                    )
                    .order_by(col(Task.priority).desc(), col(Task.seq).asc())
                    .limit(1)
                )
                if capability_filter is not None:
                    statement = statement.where(col(Task.capability).in_(capability_filter))
                candidate = session.exec(statement).one_or_none()
            if candidate is None:
                return None
            try:
                return self.assign(task_id=candidate, agent_id=agent_id)
            except TaskNotAssignable:
                # Another claimant won the race; look for the next candidate.
                continue

    def start(self, *, task_id: str, agent_id: str) -> bool:
        """Mark an Assigned task as In Progress for its owner."""

        return self._transition(
            task_id=task_id,
            expected=(TaskStatus.ASSIGNED,),
            target=TaskStatus.IN_PROGRESS,
            event_type="started",
            extra_where=(col(Task.assigned_agent_id) == agent_id,),
            details={"agent_id": agent_id},
        )

    def record_attempt_failure(
        self,
        *,
        task_id: str,
        error: str,
        failure_class: FailureClass | None = None,
    ) -> TaskView:
        """Count one failed in-place attempt (fix-and-retest) without releasing the task."""

        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            if row.status != TaskStatus.IN_PROGRESS.value:
                raise RuntimeError(
                    f"Task {task_id} is not in progress (status={row.status}).",
                )
            if row.attempt_count + 1 >= row.max_attempts:
                raise TaskPermanentlyFailed(task_id, "no attempts left for another retry")
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.status) == TaskStatus.IN_PROGRESS.value,
                    col(Task.attempt_count) == row.attempt_count,
                )
                .values(
                    attempt_count=row.attempt_count + 1,
                    last_error=error,
                    failure_class=failure_class.value if failure_class is not None else None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(
                    f"Task state changed concurrently while recording attempt (task_id={task_id}).",
                )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="attempt_failed",
                status_from=TaskStatus.IN_PROGRESS,
                status_to=TaskStatus.IN_PROGRESS,
                details={"attempt_count": row.attempt_count + 1, "error": error},
            )
            session.commit()

        self._publish(task_id, event_type="attempt_failed")
        return self._require(task_id)

    def complete(self, *, task_id: str, result: WorkResult) -> bool:
        """Mark an owned task Completed, store its result, and release dependents."""

        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            previous = TaskStatus(row.status)
            if previous not in OWNED_TASK_STATUSES:
                return False
            attempt_count = min(row.attempt_count + 1, row.max_attempts)
            result.attempt_count = attempt_count
            update = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.status) == previous.value,
                    col(Task.attempt_count) == row.attempt_count,
                )
                .values(
                    status=TaskStatus.COMPLETED.value,
                    attempt_count=attempt_count,
                    result_json=json.dumps(result.to_dict(), ensure_ascii=False, default=str),
                    last_error=None,
                    failure_class=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if update.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="completed",
                status_from=previous,
                status_to=TaskStatus.COMPLETED,
                details={
                    "agent_id": row.assigned_agent_id,
                    "attempt_count": attempt_count,
                    "duration_ms": result.duration_ms,
                    "cost_usd": result.cost_usd,
                },
            )
            session.commit()

        self._publish(task_id, event_type="completed")
        self.mark_ready()
        return True

    def ack(self, task_id: str, result: WorkResult) -> bool:
        """Queue backend contract: acknowledge successful processing."""

        return self.complete(task_id=task_id, result=result)

    def fail(
        self,
        *,
        task_id: str,
        error: str,
        failure_class: FailureClass | None = None,
    ) -> TaskView | None:
        """Count a failed attempt; requeue while budget remains, else fail permanently.

        Dependents of a permanently failed task stay Pending.
        """

        while True:
            now = utc_now()
            with Session(self.engine) as session:
                row = self._get_task_row(session=session, task_id=task_id)
                previous = TaskStatus(row.status)
                if previous not in OWNED_TASK_STATUSES:
                    return None
                attempt_count = min(row.attempt_count + 1, row.max_attempts)
                target = (
                    TaskStatus.READY if attempt_count < row.max_attempts else TaskStatus.FAILED
                )
                result = session.exec(
                    sa_update(Task)
                    .where(
                        col(Task.task_id) == task_id,
                        col(Task.status) == previous.value,
                        col(Task.attempt_count) == row.attempt_count,
                    )
                    .values(
                        status=target.value,
                        attempt_count=attempt_count,
                        assigned_agent_id=None,
                        last_error=error,
                        failure_class=failure_class.value if failure_class is not None else None,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                self._add_event(
                    session=session,
                    task_id=task_id,
                    event_type="retry_scheduled" if target == TaskStatus.READY else "failed",
                    status_from=previous,
                    status_to=target,
                    details={
                        "agent_id": row.assigned_agent_id,
                        "attempt_count": attempt_count,
                        "max_attempts": row.max_attempts,
                        "failure_class": failure_class.value if failure_class else None,
                        "error": error,
                    },
                )
                session.commit()
                break

        if target == TaskStatus.FAILED:
            logger.warning(
                "Task %s failed permanently after %d attempt(s): %s",
                task_id,
                attempt_count,
                error,
                extra={"task_id": task_id},
            )
        self._publish(task_id, event_type=target.value)
        return self._require(task_id)

    def requeue_orphaned(self, *, active_agent_ids: Iterable[str] = ()) -> list[str]:
        """Fail claims held by agents that are not running, spending one attempt each.

        Called on startup, when claims left by a previous run have no live owner.
        Returns the ids of the tasks that were recovered.
        """

        active = set(active_agent_ids)
        with Session(self.engine) as session:
            rows = session.exec(
                select(Task.task_id, Task.assigned_agent_id)
                .where(col(Task.status).in_([status.value for status in OWNED_TASK_STATUSES]))
                .order_by(col(Task.seq).asc()),
            ).all()
        recovered: list[str] = []
        for task_id, owner in rows:
            if owner in active:
                continue
            view = self.fail(
                task_id=task_id,
                error=f"claim orphaned: agent {owner or '-'} is not running",
                failure_class=FailureClass.PROCESS_CRASH,
            )
            if view is not None:
                recovered.append(task_id)
        if recovered:
            logger.warning("Recovered %d orphaned task claim(s)", len(recovered))
        return recovered

    def nack(self, task_id: str, error: str) -> TaskView | None:
        """Queue backend contract: report a failed processing attempt."""

        return self.fail(task_id=task_id, error=error)

    def cancel(self, *, task_id: str) -> None:
        """Cancel a task that has not reached a terminal status."""

        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            previous = TaskStatus(row.status)
        if previous not in ACTIVE_TASK_STATUSES:
            raise RuntimeError(f"Task cannot be cancelled from status={previous.value}")
        if not self._transition(
            task_id=task_id,
            expected=(previous,),
            target=TaskStatus.CANCELLED,
            event_type="cancelled",
            details={},
        ):
            raise RuntimeError(
                "Task state changed concurrently while cancelling; "
                f"please retry command (task_id={task_id}).",
            )

    # -- review / integration -----------------------------------------------------

    def set_review_status(
        self,
        *,
        task_id: str,
        status: ReviewStatus,
        feedback: str | None = None,
    ) -> bool:
        """Record the coordinator's review verdict on a Completed task."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.status) == TaskStatus.COMPLETED.value,
                    col(Task.review_status) == ReviewStatus.PENDING.value,
                )
                .values(review_status=status.value, updated_at=to_db_datetime(now)),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=f"review_{status.value}",
                status_from=TaskStatus.COMPLETED,
                status_to=TaskStatus.COMPLETED,
                details={"feedback": feedback} if feedback else {},
            )
            session.commit()
        self._publish(task_id, event_type=f"review_{status.value}")
        return True

    def mark_integrated(self, *, task_id: str, details: dict[str, object] | None = None) -> bool:
        """Record that the approved task's output was integrated."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.review_status) == ReviewStatus.APPROVED.value,
                    col(Task.integrated).is_(False),
                )
                .values(integrated=True, updated_at=to_db_datetime(now)),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="integrated",
                status_from=TaskStatus.COMPLETED,
                status_to=TaskStatus.COMPLETED,
                details=details or {},
            )
            session.commit()
        self._publish(task_id, event_type="integrated")
        return True

    def add_task_event(
        self,
        *,
        task_id: str,
        event_type: str,
        details: dict[str, object],
    ) -> None:
        """Append an audit event without changing task state."""

        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            status = TaskStatus(row.status)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=event_type,
                status_from=status,
                status_to=status,
                details=details,
            )
            session.commit()

    # -- instructions -------------------------------------------------------------

    def create_instruction(self, *, content: str, priority: int = 5) -> InstructionView:
        now = utc_now()
        with Session(self.engine) as session:
            row = Instruction(
                instruction_id=str(uuid4()),
                content=content,
                priority=priority,
                status=InstructionStatus.RECEIVED.value,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            view = _to_instruction_view(row)
        self._publish_instruction(view)
        return view

    def get_instruction(self, instruction_id: str) -> InstructionView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Instruction).where(Instruction.instruction_id == instruction_id),
            ).one_or_none()
            return _to_instruction_view(row) if row is not None else None

    def update_instruction_status(
        self,
        *,
        instruction_id: str,
        status: InstructionStatus,
        error: str | None = None,
    ) -> InstructionView:
        """Move an instruction forward; terminal statuses are never overwritten."""

        now = utc_now()
        with Session(self.engine) as session:
            session.exec(
                sa_update(Instruction)
                .where(
                    col(Instruction.instruction_id) == instruction_id,
                    col(Instruction.status).not_in(
                        [InstructionStatus.COMPLETED.value, InstructionStatus.FAILED.value],
                    ),
                )
                .values(status=status.value, error=error, updated_at=to_db_datetime(now)),
            )
            session.commit()
        view = self.get_instruction(instruction_id)
        if view is None:
            raise RuntimeError(f"Instruction not found: {instruction_id}")
        self._publish_instruction(view)
        return view

    def instruction_progress(self, *, instruction_id: str) -> InstructionProgress:
        progress = InstructionProgress()
        with Session(self.engine) as session:
            rows = session.exec(
                select(Task.status, Task.review_status).where(
                    Task.instruction_id == instruction_id,
                ),
            ).all()
        for status_value, review_value in rows:
            status = TaskStatus(status_value)
            progress.total += 1
            if status == TaskStatus.COMPLETED:
                progress.completed += 1
                if review_value == ReviewStatus.PENDING.value:
                    progress.awaiting_review += 1
            elif status == TaskStatus.FAILED:
                progress.failed += 1
            elif status == TaskStatus.CANCELLED:
                progress.cancelled += 1
            else:
                progress.active += 1
        return progress

    # -- helpers ------------------------------------------------------------------

    def _transition(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        expected: tuple[TaskStatus, ...],
        target: TaskStatus,
        event_type: str,
        details: dict[str, object],
        extra_where: tuple[Any, ...] = (),
    ) -> bool:
        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            previous = TaskStatus(row.status)
            if previous not in expected:
                return False
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.status) == previous.value,
                    *extra_where,
                )
                .values(status=target.value, updated_at=to_db_datetime(now)),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=event_type,
                status_from=previous,
                status_to=target,
                details=details,
            )
            session.commit()
        self._publish(task_id, event_type=event_type)
        return True

    def _require(self, task_id: str) -> TaskView:
        view = self.get(task_id)
        if view is None:
            raise RuntimeError(f"Task not found: {task_id}")
        return view

    def _get_task_row(self, *, session: Session, task_id: str) -> Task:
        row = session.exec(select(Task).where(Task.task_id == task_id)).one_or_none()
        if row is None:
            raise RuntimeError(f"Task not found: {task_id}")
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            TaskEvent(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True, default=str)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )

    def _publish(self, task_id: str, *, event_type: str) -> None:
        if self.events is None:
            return
        task = self.get(task_id)
        if task is None:
            return
        self.events.publish(
            EventKind.TASK_UPDATE,
            {
                "event_type": event_type,
                "task_id": task.task_id,
                "title": task.title,
                "status": task.status.value,
                "priority": task.priority,
                "capability": task.capability,
                "assigned_agent_id": task.assigned_agent_id,
                "attempt_count": task.attempt_count,
                "max_attempts": task.max_attempts,
                "last_error": task.last_error,
                "instruction_id": task.instruction_id,
                "review_status": task.review_status.value,
            },
        )

    def _publish_instruction(self, view: InstructionView) -> None:
        if self.events is None:
            return
        self.events.publish(
            EventKind.INSTRUCTION_UPDATE,
            {
                "instruction_id": view.instruction_id,
                "status": view.status.value,
                "error": view.error,
            },
        )

    def _to_task_view(self, session: Session, row: Task) -> TaskView:
        dependencies = session.exec(
            select(TaskDependency.depends_on_task_id)
            .where(TaskDependency.task_id == row.task_id)
            .order_by(col(TaskDependency.depends_on_task_id).asc()),
        ).all()
        result = None
        if row.result_json:
            parsed = json.loads(row.result_json)
            if isinstance(parsed, dict):
                result = WorkResult.from_dict(parsed)
        return TaskView(
            task_id=row.task_id,
            seq=row.seq or 0,
            title=row.title,
            description=row.description,
            priority=row.priority,
            capability=row.capability,
            dependencies=tuple(dependencies),
            status=TaskStatus(row.status),
            assigned_agent_id=row.assigned_agent_id,
            attempt_count=row.attempt_count,
            max_attempts=row.max_attempts,
            result=result,
            last_error=row.last_error,
            failure_class=FailureClass(row.failure_class) if row.failure_class else None,
            instruction_id=row.instruction_id,
            parent_task_id=row.parent_task_id,
            remediation_round=row.remediation_round,
            review_status=ReviewStatus(row.review_status),
            integrated=bool(row.integrated),
            created_at=to_utc_aware_datetime(row.created_at),
            updated_at=to_utc_aware_datetime(row.updated_at),
        )


def _blocked_task_ids():
    """Subquery of task ids that still have at least one unfinished dependency."""

    upstream = aliased(Task)
    return (
        sa_select(col(TaskDependency.task_id))
        .join(upstream, upstream.task_id == col(TaskDependency.depends_on_task_id))
        .where(upstream.status != TaskStatus.COMPLETED.value)
    )


def _capability_filter(capabilities: Iterable[str] | None) -> list[str] | None:
    if capabilities is None:
        return None
    values = sorted({value.strip() for value in capabilities if value.strip()})
    if not values or MATCH_ANY_CAPABILITY in values:
        return None
    return values


def _check_batch_acyclic(batch: dict[str, TaskCreate]) -> None:
    # Existing tasks cannot depend on new ones, so cycles can only close inside the batch.
    remaining = {
        task_id: {dependency for dependency in payload.dependencies if dependency in batch}
        for task_id, payload in batch.items()
    }
    for task_id, dependencies in remaining.items():
        if task_id in dependencies:
            raise DependencyCycleError(f"Task {task_id} depends on itself.")
    while remaining:
        free = [task_id for task_id, dependencies in remaining.items() if not dependencies]
        if not free:
            raise DependencyCycleError(
                f"Dependency cycle among tasks: {', '.join(sorted(remaining))}",
            )
        for task_id in free:
            del remaining[task_id]
        for dependencies in remaining.values():
            dependencies.difference_update(free)


def _optional_status(value: str | None) -> TaskStatus | None:
    return TaskStatus(value) if value is not None else None


def _to_instruction_view(row: Instruction) -> InstructionView:
    return InstructionView(
        instruction_id=row.instruction_id,
        content=row.content,
        priority=row.priority,
        status=InstructionStatus(row.status),
        error=row.error,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )

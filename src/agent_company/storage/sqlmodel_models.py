"""SQLModel ORM tables for the task store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
)
from sqlmodel import Field, SQLModel


class Instruction(SQLModel, table=True):
    __tablename__ = "instructions"  # type: ignore[bad-override]

    instruction_id: str = Field(primary_key=True)
    content: str = Field(sa_column=Column(Text, nullable=False))
    priority: int = Field(default=5)
    status: str = Field(index=True)
    error: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Task(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_tasks_ready_queue", "status", "capability", "priority", "seq"),)

    # Monotonic insertion order, used as the FIFO tie-breaker between equal priorities.
    seq: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(sa_column=Column(String, nullable=False, unique=True, index=True))
    instruction_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("instructions.instruction_id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    title: str
    description: str = Field(default="", sa_column=Column(Text, nullable=False))
    priority: int = Field(default=5, index=True)
    capability: str = Field(default="general")
    status: str = Field(index=True)
    assigned_agent_id: str | None = Field(default=None, index=True)
    attempt_count: int = Field(default=0)
    max_attempts: int = Field(default=3)
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    failure_class: str | None = Field(default=None, index=True)
    parent_task_id: str | None = Field(default=None, index=True)
    remediation_round: int = Field(default=0)
    review_status: str = Field(default="pending")
    integrated: bool = Field(default=False, sa_column=Column(Boolean, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskDependency(SQLModel, table=True):
    __tablename__ = "task_dependencies"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_dependencies_upstream", "depends_on_task_id"),)

    task_id: str = Field(primary_key=True, foreign_key="tasks.task_id")
    depends_on_task_id: str = Field(primary_key=True, foreign_key="tasks.task_id")


class TaskEvent(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = Field(default=None)
    status_to: str | None = Field(default=None)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))

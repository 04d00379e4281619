"""SQLModel ORM tables for external task bookkeeping."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class WorkflowTask(SQLModel, table=True):
    __tablename__ = "workflow_tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_workflow_tasks_status_priority", "status", "priority"),)

    task_id: str = Field(primary_key=True)
    seq: int = Field(index=True, unique=True)
    agent: str = Field(index=True)
    summary: str
    description: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    status: str = Field(index=True)
    priority: str = Field(default="medium")
    workflow_id: str | None = Field(default=None, index=True)
    session_id: str | None = Field(default=None, index=True)
    context_json: str | None = Field(default=None, sa_column=Column(Text))
    dependencies_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    output_json: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class WorkflowTaskEvent(SQLModel, table=True):
    __tablename__ = "workflow_task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_workflow_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("workflow_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))

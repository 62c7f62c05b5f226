"""SQLModel ORM tables for task, log, queue and settings storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Text, text
from sqlmodel import Field, SQLModel


class Task(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "uq_tasks_single_running",
            "status",
            unique=True,
            sqlite_where=text("status = 'running'"),
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    task_type: str = Field(index=True)
    params_json: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    started_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    result_count: int = Field(default=0)
    config_json: str | None = Field(default=None, sa_column=Column(Text))


class TaskLog(SQLModel, table=True):
    __tablename__ = "task_logs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_logs_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: int = Field(
        sa_column=Column(
            Integer,
            ForeignKey("tasks.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    level: str | None = None
    message: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))


class QueueItem(SQLModel, table=True):
    __tablename__ = "queue_items"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_queue_items_dequeue", "status", "priority", "created_at"),
        Index(
            "uq_queue_items_single_running",
            "status",
            unique=True,
            sqlite_where=text("status = 'running'"),
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    task_config_json: str = Field(sa_column=Column(Text, nullable=False))
    priority: int = Field(default=0)
    status: str = Field(index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    task_id: int | None = Field(
        default=None,
        sa_column=Column(
            Integer,
            ForeignKey("tasks.id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    error_message: str | None = Field(default=None, sa_column=Column(Text))


class AppSetting(SQLModel, table=True):
    __tablename__ = "app_settings"  # type: ignore[bad-override]

    key: str = Field(primary_key=True)
    value_json: str = Field(sa_column=Column(Text, nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))

"""Durable task and task-log store with startup recovery."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from spider_queue.orchestrator.errors import AlreadyRunningError, InvalidStateError, NotFoundError
from spider_queue.orchestrator.models import (
    LogEntry,
    LogView,
    QueueItemStatus,
    TaskStatus,
    TaskView,
)
from spider_queue.storage.alembic_runner import upgrade_head
from spider_queue.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from spider_queue.storage.sqlmodel_models import QueueItem, Task, TaskLog

logger = logging.getLogger(__name__)

STUCK_TASK_MESSAGE = "Task interrupted: the application exited while the worker was running."
STUCK_QUEUE_ITEM_MESSAGE = (
    "Queue item interrupted by application exit; requires recovery (re-enqueue to retry)."
)


class TaskStore:
    """Task execution records and their logs, backed by SQLModel + SQLite.

    `get_current_task` relies on at most one task being `running`, which the
    `uq_tasks_single_running` partial index enforces. If concurrent executions
    were ever allowed, the running set would have to be tracked explicitly.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create_task(
        self,
        task_type: str,
        params: dict[str, Any],
        config_snapshot: dict[str, Any] | None,
        *,
        queue_item_id: int | None = None,
    ) -> TaskView:
        """Create a running task; optionally link it to the dispatched queue item."""

        now = utc_now()
        with Session(self.engine) as session:
            row = Task(
                task_type=task_type,
                params_json=_dump_json(params),
                status=TaskStatus.RUNNING.value,
                started_at=to_db_datetime(now),
                config_json=_dump_json(config_snapshot) if config_snapshot is not None else None,
            )
            session.add(row)
            try:
                session.flush()
            except IntegrityError as error:
                session.rollback()
                raise AlreadyRunningError("Another task is already running.") from error

            if queue_item_id is not None:
                result = session.exec(
                    sa_update(QueueItem)
                    .where(
                        col(QueueItem.id) == queue_item_id,
                        col(QueueItem.status) == QueueItemStatus.RUNNING.value,
                    )
                    .values(task_id=row.id),
                )
                if result.rowcount != 1:
                    session.rollback()
                    raise InvalidStateError(
                        f"Queue item {queue_item_id} is not running; cannot attach task.",
                    )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def append_log(self, task_id: int, entry: LogEntry) -> LogView:
        with Session(self.engine) as session:
            row = TaskLog(
                task_id=task_id,
                event_type=entry.event_type,
                level=entry.level,
                message=entry.message,
                created_at=to_db_datetime(utc_now()),
                metadata_json=_dump_json(entry.metadata) if entry.metadata else None,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_log_view(row)

    def update_task_status(
        self,
        task_id: int,
        status: TaskStatus,
        *,
        completed_at: datetime | None = None,
        error_message: str | None = None,
        result_count: int | None = None,
    ) -> bool:
        """Move a running task to `status`; returns False if it already left `running`."""

        values: dict[str, Any] = {"status": status.value}
        if status.is_terminal:
            values["completed_at"] = to_db_datetime(completed_at or utc_now())
        if error_message is not None:
            values["error_message"] = error_message
        if result_count is not None:
            values["result_count"] = result_count

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.id) == task_id,
                    col(Task.status) == TaskStatus.RUNNING.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def get_task(self, task_id: int) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            return _to_task_view(row) if row is not None else None

    def get_current_task(self) -> TaskView | None:
        """Most recent running task, or None."""

        with Session(self.engine) as session:
            row = session.exec(
                select(Task)
                .where(Task.status == TaskStatus.RUNNING.value)
                .order_by(col(Task.started_at).desc(), col(Task.id).desc())
                .limit(1),
            ).one_or_none()
            return _to_task_view(row) if row is not None else None

    def get_task_logs(
        self,
        task_id: int,
        *,
        after_id: int | None = None,
        limit: int | None = None,
    ) -> list[LogView]:
        """Logs of one task in append order."""

        with Session(self.engine) as session:
            statement = (
                select(TaskLog).where(TaskLog.task_id == task_id).order_by(col(TaskLog.id).asc())
            )
            if after_id is not None:
                statement = statement.where(col(TaskLog.id) > after_id)
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [_to_log_view(row) for row in rows]

    def get_recent_tasks(
        self,
        limit: int = 50,
        *,
        status: TaskStatus | None = None,
    ) -> list[TaskView]:
        """Recent tasks, newest first."""

        with Session(self.engine) as session:
            statement = select(Task).order_by(col(Task.started_at).desc(), col(Task.id).desc())
            if status is not None:
                statement = statement.where(Task.status == status.value)
            rows = session.exec(statement.limit(limit)).all()
        return [_to_task_view(row) for row in rows]

    def delete_task(self, task_id: int) -> None:
        """Delete a finished task; its logs are removed by cascade."""

        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            if row is None:
                raise NotFoundError(f"Task not found: {task_id}")
            if row.status == TaskStatus.RUNNING.value:
                raise InvalidStateError(f"Task {task_id} is running; stop it before deleting.")
            session.exec(sa_delete(TaskLog).where(col(TaskLog.task_id) == task_id))
            session.delete(row)
            session.commit()

    def purge_tasks_older_than(self, days: int) -> int:
        """Delete finished tasks started more than `days` ago; returns count removed."""

        if days < 0:
            raise ValueError("days must be >= 0")
        cutoff = to_db_datetime(utc_now() - timedelta(days=days))
        with Session(self.engine) as session:
            stale_ids = session.exec(
                select(Task.id).where(
                    col(Task.started_at) < cutoff,
                    col(Task.status) != TaskStatus.RUNNING.value,
                ),
            ).all()
            if not stale_ids:
                return 0
            session.exec(sa_delete(TaskLog).where(col(TaskLog.task_id).in_(stale_ids)))
            session.exec(sa_delete(Task).where(col(Task.id).in_(stale_ids)))
            session.commit()
        return len(stale_ids)

    def fix_stuck_tasks(self) -> int:
        """Resolve tasks and queue items left `running` by a previous process.

        Must only be called at startup, before any worker is spawned: no live
        worker can own a running row at that point. Returns the number of tasks
        moved to `stopped`; a second call in a row changes nothing.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            task_result = session.exec(
                sa_update(Task)
                .where(col(Task.status) == TaskStatus.RUNNING.value)
                .values(
                    status=TaskStatus.STOPPED.value,
                    completed_at=now,
                    error_message=STUCK_TASK_MESSAGE,
                ),
            )
            queue_result = session.exec(
                sa_update(QueueItem)
                .where(col(QueueItem.status) == QueueItemStatus.RUNNING.value)
                .values(
                    status=QueueItemStatus.FAILED.value,
                    completed_at=now,
                    error_message=STUCK_QUEUE_ITEM_MESSAGE,
                ),
            )
            session.commit()
        if queue_result.rowcount:
            logger.warning("Marked %d interrupted queue item(s) as failed", queue_result.rowcount)
        return task_result.rowcount


def _dump_json(payload: object) -> str:
    return json.dumps(payload, ensure_ascii=False, sort_keys=True)


def _load_json_object(raw: str | None) -> dict[str, Any] | None:
    if not raw:
        return None
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, dict) else None


def _to_task_view(row: Task) -> TaskView:
    if row.id is None:
        raise RuntimeError("Task row has no primary key.")
    return TaskView(
        task_id=row.id,
        task_type=row.task_type,
        params=_load_json_object(row.params_json) or {},
        status=TaskStatus(row.status),
        started_at=to_utc_aware_datetime(row.started_at),
        completed_at=optional_utc(row.completed_at),
        error_message=row.error_message,
        result_count=row.result_count,
        config=_load_json_object(row.config_json),
    )


def _to_log_view(row: TaskLog) -> LogView:
    if row.id is None:
        raise RuntimeError("Log row has no primary key.")
    return LogView(
        log_id=row.id,
        task_id=row.task_id,
        event_type=row.event_type,
        level=row.level,
        message=row.message,
        created_at=to_utc_aware_datetime(row.created_at),
        metadata=_load_json_object(row.metadata_json),
    )

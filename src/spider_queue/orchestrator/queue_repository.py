"""Persistent priority queue of worker execution requests."""

from __future__ import annotations

import json
from pathlib import Path

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from spider_queue.orchestrator.contracts import request_from_payload, request_to_payload
from spider_queue.orchestrator.errors import InvalidStateError, NotFoundError
from spider_queue.orchestrator.models import (
    QueueItemStatus,
    QueueItemView,
    QueueStats,
    QueueTaskRequest,
)
from spider_queue.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from spider_queue.storage.sqlmodel_models import QueueItem

FINISHED_STATUSES = (QueueItemStatus.COMPLETED.value, QueueItemStatus.FAILED.value)


class QueueStore:
    """Queue item persistence facade backed by SQLModel + SQLite.

    Dequeue order is total: priority descending, then `created_at` ascending,
    then id ascending for rows created within the same clock tick.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path)

    def close(self) -> None:
        self.engine.dispose()

    def enqueue(self, request: QueueTaskRequest, priority: int = 0) -> QueueItemView:
        """Create a pending queue item."""

        with Session(self.engine) as session:
            row = QueueItem(
                task_config_json=json.dumps(
                    request_to_payload(request),
                    ensure_ascii=False,
                    sort_keys=True,
                ),
                priority=priority,
                status=QueueItemStatus.PENDING.value,
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_item_view(row)

    def get_item(self, item_id: int) -> QueueItemView | None:
        with Session(self.engine) as session:
            row = session.get(QueueItem, item_id)
            return _to_item_view(row) if row is not None else None

    def list_items(self, status: QueueItemStatus | None = None) -> list[QueueItemView]:
        """Items in dequeue order, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(QueueItem).order_by(*_dequeue_order())
            if status is not None:
                statement = statement.where(QueueItem.status == status.value)
            rows = session.exec(statement).all()
        return [_to_item_view(row) for row in rows]

    def peek_next_pending(self) -> QueueItemView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(QueueItem)
                .where(QueueItem.status == QueueItemStatus.PENDING.value)
                .order_by(*_dequeue_order())
                .limit(1),
            ).one_or_none()
            return _to_item_view(row) if row is not None else None

    def claim_next_pending(self) -> QueueItemView | None:
        """Atomically move the next pending item to `running`.

        Returns None when nothing is pending or another item is already running.
        """

        while True:
            now = to_db_datetime(utc_now())
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(QueueItem)
                    .where(QueueItem.status == QueueItemStatus.PENDING.value)
                    .order_by(*_dequeue_order())
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                try:
                    result = session.exec(
                        sa_update(QueueItem)
                        .where(
                            col(QueueItem.id) == candidate.id,
                            col(QueueItem.status) == QueueItemStatus.PENDING.value,
                        )
                        .values(status=QueueItemStatus.RUNNING.value, started_at=now),
                    )
                except IntegrityError:
                    session.rollback()
                    return None
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                session.refresh(candidate)
                return _to_item_view(candidate)

    def get_running_item(self) -> QueueItemView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(QueueItem).where(QueueItem.status == QueueItemStatus.RUNNING.value),
            ).one_or_none()
            return _to_item_view(row) if row is not None else None

    def complete_item(self, item_id: int) -> bool:
        return self._finish_item(item_id, status=QueueItemStatus.COMPLETED, error_message=None)

    def fail_item(self, item_id: int, error_message: str) -> bool:
        return self._finish_item(
            item_id,
            status=QueueItemStatus.FAILED,
            error_message=error_message,
        )

    def delete_item(self, item_id: int) -> None:
        with Session(self.engine) as session:
            row = session.get(QueueItem, item_id)
            if row is None:
                raise NotFoundError(f"Queue item not found: {item_id}")
            result = session.exec(
                sa_delete(QueueItem).where(
                    col(QueueItem.id) == item_id,
                    col(QueueItem.status) != QueueItemStatus.RUNNING.value,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise InvalidStateError(
                    f"Queue item {item_id} is running; stop the execution before removing it.",
                )
            session.commit()

    def update_priority(self, item_id: int, priority: int) -> QueueItemView:
        with Session(self.engine) as session:
            row = session.get(QueueItem, item_id)
            if row is None:
                raise NotFoundError(f"Queue item not found: {item_id}")
            result = session.exec(
                sa_update(QueueItem)
                .where(
                    col(QueueItem.id) == item_id,
                    col(QueueItem.status) == QueueItemStatus.PENDING.value,
                )
                .values(priority=priority),
            )
            if result.rowcount != 1:
                session.rollback()
                raise InvalidStateError(
                    f"Priority can only change while pending; item {item_id} is {row.status}.",
                )
            session.commit()
            session.refresh(row)
            return _to_item_view(row)

    def clear_finished(self) -> int:
        """Delete completed and failed items; returns count removed."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(QueueItem).where(col(QueueItem.status).in_(FINISHED_STATUSES)),
            )
            session.commit()
            return result.rowcount

    def stats(self) -> QueueStats:
        with Session(self.engine) as session:
            rows = session.exec(
                select(QueueItem.status, func.count()).group_by(QueueItem.status),
            ).all()
        stats = QueueStats()
        for status, count in rows:
            setattr(stats, QueueItemStatus(status).value, int(count))
        return stats

    def _finish_item(
        self,
        item_id: int,
        *,
        status: QueueItemStatus,
        error_message: str | None,
    ) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueItem)
                .where(
                    col(QueueItem.id) == item_id,
                    col(QueueItem.status) == QueueItemStatus.RUNNING.value,
                )
                .values(
                    status=status.value,
                    completed_at=to_db_datetime(utc_now()),
                    error_message=error_message,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True


def _dequeue_order() -> tuple[object, ...]:
    return (
        col(QueueItem.priority).desc(),
        col(QueueItem.created_at).asc(),
        col(QueueItem.id).asc(),
    )


def _to_item_view(row: QueueItem) -> QueueItemView:
    if row.id is None:
        raise RuntimeError("Queue item row has no primary key.")
    return QueueItemView(
        item_id=row.id,
        request=request_from_payload(json.loads(row.task_config_json), validate=False),
        priority=row.priority,
        status=QueueItemStatus(row.status),
        created_at=to_utc_aware_datetime(row.created_at),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        task_id=row.task_id,
        error_message=row.error_message,
    )

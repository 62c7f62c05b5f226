from __future__ import annotations

from collections.abc import Iterator
from datetime import timedelta
from pathlib import Path

import allure
import pytest
from sqlalchemy import update as sa_update
from sqlmodel import Session, col
from support import notes_request

from spider_queue.orchestrator.errors import AlreadyRunningError, InvalidStateError, NotFoundError
from spider_queue.orchestrator.models import LogEntry, QueueItemStatus, TaskStatus, TaskType
from spider_queue.orchestrator.queue_repository import QueueStore
from spider_queue.orchestrator.repository import TaskStore
from spider_queue.storage.common import to_db_datetime, utc_now
from spider_queue.storage.sqlmodel_models import Task

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Task Store"),
]


@pytest.fixture()
def store(tmp_path: Path) -> Iterator[TaskStore]:
    task_store = TaskStore(tmp_path / "tasks.db")
    task_store.init_schema()
    yield task_store
    task_store.close()


def _finish(store: TaskStore, task_id: int, status: TaskStatus = TaskStatus.COMPLETED) -> None:
    assert store.update_task_status(task_id, status)


def test_create_task_starts_running_with_snapshot(store: TaskStore) -> None:
    task = store.create_task(
        TaskType.SEARCH.value,
        {"query": "coffee"},
        {"paths": {"media": "m", "excel": "e"}},
    )

    assert task.status == TaskStatus.RUNNING
    assert task.params == {"query": "coffee"}
    assert task.config == {"paths": {"media": "m", "excel": "e"}}
    assert task.completed_at is None
    assert store.get_current_task() == task


def test_second_running_task_is_rejected(store: TaskStore) -> None:
    store.create_task("notes", {}, None)

    with pytest.raises(AlreadyRunningError):
        store.create_task("notes", {}, None)


def test_status_update_only_applies_to_running_task(store: TaskStore) -> None:
    task = store.create_task("notes", {}, None)

    assert store.update_task_status(task.task_id, TaskStatus.COMPLETED, result_count=4)
    assert not store.update_task_status(task.task_id, TaskStatus.FAILED, error_message="late")

    stored = store.get_task(task.task_id)
    assert stored is not None
    assert stored.status == TaskStatus.COMPLETED
    assert stored.result_count == 4
    assert stored.error_message is None
    assert stored.completed_at is not None
    assert store.get_current_task() is None


def test_logs_are_returned_in_append_order(store: TaskStore) -> None:
    task = store.create_task("notes", {}, None)
    first = store.append_log(task.task_id, LogEntry(event_type="log", message="one", level="INFO"))
    store.append_log(
        task.task_id,
        LogEntry(event_type="media", message="two", metadata={"file": "a.jpg"}),
    )
    store.append_log(task.task_id, LogEntry(event_type="log", message="three"))

    logs = store.get_task_logs(task.task_id)
    assert [log.message for log in logs] == ["one", "two", "three"]
    assert logs[1].metadata == {"file": "a.jpg"}
    assert logs[2].metadata is None

    tail = store.get_task_logs(task.task_id, after_id=first.log_id, limit=1)
    assert [log.message for log in tail] == ["two"]


def test_recent_tasks_newest_first_with_status_filter(store: TaskStore) -> None:
    first = store.create_task("notes", {}, None)
    _finish(store, first.task_id, TaskStatus.FAILED)
    second = store.create_task("user", {}, None)
    _finish(store, second.task_id)

    assert [task.task_id for task in store.get_recent_tasks()] == [second.task_id, first.task_id]
    failed = store.get_recent_tasks(status=TaskStatus.FAILED)
    assert [task.task_id for task in failed] == [first.task_id]


def test_delete_task_removes_logs_and_refuses_running(store: TaskStore) -> None:
    task = store.create_task("notes", {}, None)
    store.append_log(task.task_id, LogEntry(event_type="log", message="x"))

    with pytest.raises(InvalidStateError):
        store.delete_task(task.task_id)

    _finish(store, task.task_id)
    store.delete_task(task.task_id)
    assert store.get_task(task.task_id) is None
    assert store.get_task_logs(task.task_id) == []

    with pytest.raises(NotFoundError):
        store.delete_task(task.task_id)


def test_purge_keeps_recent_and_running_tasks(store: TaskStore) -> None:
    old = store.create_task("notes", {}, None)
    _finish(store, old.task_id)
    with Session(store.engine) as session:
        session.exec(
            sa_update(Task)
            .where(col(Task.id) == old.task_id)
            .values(started_at=to_db_datetime(utc_now() - timedelta(days=40))),
        )
        session.commit()
    recent = store.create_task("notes", {}, None)

    assert store.purge_tasks_older_than(30) == 1
    assert store.get_task(old.task_id) is None
    assert store.get_task(recent.task_id) is not None


def test_create_task_links_running_queue_item(tmp_path: Path) -> None:
    db_path = tmp_path / "linked.db"
    store = TaskStore(db_path)
    store.init_schema()
    queue = QueueStore(db_path)
    item = queue.enqueue(notes_request())

    with pytest.raises(InvalidStateError):
        store.create_task("notes", {}, None, queue_item_id=item.item_id)
    assert store.get_current_task() is None

    claimed = queue.claim_next_pending()
    assert claimed is not None
    task = store.create_task("notes", {}, None, queue_item_id=claimed.item_id)

    linked = queue.get_item(claimed.item_id)
    assert linked is not None
    assert linked.status == QueueItemStatus.RUNNING
    assert linked.task_id == task.task_id
    queue.close()
    store.close()

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import allure
import pytest
from support import notes_request

from spider_queue.orchestrator.errors import InvalidStateError, NotFoundError
from spider_queue.orchestrator.models import QueueItemStatus, SaveMode, SaveOptions
from spider_queue.orchestrator.queue_repository import QueueStore
from spider_queue.storage.alembic_runner import upgrade_head

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Queue Store"),
]


@pytest.fixture()
def queue(tmp_path: Path) -> Iterator[QueueStore]:
    db_path = tmp_path / "queue.db"
    upgrade_head(db_path)
    store = QueueStore(db_path)
    yield store
    store.close()


def _claim_and_finish(queue: QueueStore) -> int:
    item = queue.claim_next_pending()
    assert item is not None
    assert queue.complete_item(item.item_id)
    return item.item_id


def test_enqueue_round_trips_request(queue: QueueStore) -> None:
    request = notes_request()
    request.save_options = SaveOptions(mode=SaveMode.MEDIA, media_types=("image",))

    item = queue.enqueue(request, priority=2)

    stored = queue.get_item(item.item_id)
    assert stored is not None
    assert stored.status == QueueItemStatus.PENDING
    assert stored.priority == 2
    assert stored.request == request
    assert stored.task_id is None
    assert stored.started_at is None


def test_claim_order_is_priority_then_insertion(queue: QueueStore) -> None:
    first = queue.enqueue(notes_request(label="a"), priority=5)
    low = queue.enqueue(notes_request(label="b"), priority=1)
    second = queue.enqueue(notes_request(label="c"), priority=5)

    assert [item.item_id for item in queue.list_items()] == [
        first.item_id,
        second.item_id,
        low.item_id,
    ]
    claimed = [_claim_and_finish(queue) for _ in range(3)]
    assert claimed == [first.item_id, second.item_id, low.item_id]
    assert queue.claim_next_pending() is None


def test_only_one_item_can_be_running(queue: QueueStore) -> None:
    queue.enqueue(notes_request())
    queue.enqueue(notes_request())

    running = queue.claim_next_pending()
    assert running is not None
    assert running.status == QueueItemStatus.RUNNING
    assert running.started_at is not None

    assert queue.claim_next_pending() is None
    assert queue.get_running_item() == running

    assert queue.fail_item(running.item_id, "boom")
    assert not queue.fail_item(running.item_id, "again")
    failed = queue.get_item(running.item_id)
    assert failed is not None
    assert failed.status == QueueItemStatus.FAILED
    assert failed.error_message == "boom"
    assert failed.completed_at is not None
    assert queue.claim_next_pending() is not None


def test_priority_changes_only_while_pending(queue: QueueStore) -> None:
    item = queue.enqueue(notes_request())

    assert queue.update_priority(item.item_id, 9).priority == 9

    queue.claim_next_pending()
    with pytest.raises(InvalidStateError):
        queue.update_priority(item.item_id, 1)
    with pytest.raises(NotFoundError):
        queue.update_priority(999, 1)


def test_running_item_cannot_be_deleted(queue: QueueStore) -> None:
    pending = queue.enqueue(notes_request())
    running_source = queue.enqueue(notes_request(), priority=10)
    running = queue.claim_next_pending()
    assert running is not None
    assert running.item_id == running_source.item_id

    with pytest.raises(InvalidStateError):
        queue.delete_item(running.item_id)
    queue.delete_item(pending.item_id)
    assert queue.get_item(pending.item_id) is None
    with pytest.raises(NotFoundError):
        queue.delete_item(pending.item_id)


def test_clear_finished_and_stats(queue: QueueStore) -> None:
    for _ in range(4):
        queue.enqueue(notes_request())
    _claim_and_finish(queue)
    failed = queue.claim_next_pending()
    assert failed is not None
    queue.fail_item(failed.item_id, "nope")
    queue.claim_next_pending()

    stats = queue.stats()
    assert (stats.pending, stats.running, stats.completed, stats.failed) == (1, 1, 1, 1)
    assert stats.total == 4

    assert queue.clear_finished() == 2
    stats = queue.stats()
    assert (stats.pending, stats.running, stats.completed, stats.failed) == (1, 1, 0, 0)
    assert [item.status for item in queue.list_items(QueueItemStatus.PENDING)] == [
        QueueItemStatus.PENDING,
    ]

"""Drives the supervisor through the persistent priority queue."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from spider_queue.orchestrator.config_store import ConfigStore
from spider_queue.orchestrator.contracts import build_spider_config, validate_request
from spider_queue.orchestrator.errors import InvalidStateError, NotFoundError, SpiderError
from spider_queue.orchestrator.events import EventChannel, Subscription
from spider_queue.orchestrator.models import (
    CredentialInvalidNotice,
    CredentialUpdatedNotice,
    ExecutionOutcome,
    QueueItemStatus,
    QueueItemView,
    QueueMode,
    QueueStats,
    QueueStatus,
    QueueTaskRequest,
)
from spider_queue.orchestrator.queue_repository import QueueStore
from spider_queue.orchestrator.session import SessionManager
from spider_queue.orchestrator.supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

CREDENTIAL_HOLD = "credential_invalid"
BUSY_HOLD = "another_item_running"


class QueueManager:
    """Dispatches pending queue items one at a time.

    Dispatch runs under the manager lock, so an execution that finishes
    before `start` returns is handled only after its queue link is in place.
    The lock is never held while waiting on the supervisor to stop a worker.
    """

    def __init__(
        self,
        *,
        queue_store: QueueStore,
        supervisor: ProcessSupervisor,
        config_store: ConfigStore,
        session: SessionManager,
    ) -> None:
        self._queue_store = queue_store
        self._supervisor = supervisor
        self._config_store = config_store
        self._session = session
        self._lock = threading.RLock()
        self._changed = threading.Condition(self._lock)
        self._mode = QueueMode.IDLE
        self._hold_reason: str | None = None
        self._current_item_id: int | None = None
        self._current_task_id: int | None = None
        self.status_events: EventChannel[QueueStatus] = EventChannel("queue-status")
        self._subscriptions = [
            supervisor.outcomes.subscribe(self._on_execution_finished),
            session.subscribe_updated(self._on_credential_updated),
            session.subscribe_invalid(self._on_credential_invalid),
        ]

    @property
    def mode(self) -> QueueMode:
        with self._lock:
            return self._mode

    def subscribe(self, listener: Callable[[QueueStatus], None]) -> Subscription:
        return self.status_events.subscribe(listener)

    def close(self) -> None:
        for dispose in self._subscriptions:
            dispose()

    def enqueue(self, request: QueueTaskRequest, priority: int = 0) -> QueueItemView:
        validate_request(request)
        item = self._queue_store.enqueue(request, priority)
        logger.info(
            "Enqueued item %d (%s, priority %d)",
            item.item_id,
            request.task_type.value,
            priority,
        )
        with self._lock:
            self._try_dispatch()
        self._publish_status()
        return item

    def start_queue(self) -> QueueStatus:
        with self._lock:
            self._mode = QueueMode.RUNNING
            logger.info("Queue started")
            self._try_dispatch()
            self._changed.notify_all()
        return self._publish_status()

    def stop_queue(self) -> QueueStatus:
        """Pause dispatch; an in-flight execution is left to finish."""

        with self._lock:
            if self._mode is QueueMode.RUNNING:
                self._mode = QueueMode.PAUSED
                logger.info("Queue paused")
            self._hold_reason = None
            self._changed.notify_all()
        return self._publish_status()

    def remove(self, item_id: int) -> None:
        self._queue_store.delete_item(item_id)
        self._publish_status()

    def update_priority(self, item_id: int, priority: int) -> QueueItemView:
        item = self._queue_store.update_priority(item_id, priority)
        self._publish_status()
        return item

    def clear_completed(self) -> int:
        removed = self._queue_store.clear_finished()
        self._publish_status()
        return removed

    def requeue(self, item_id: int) -> QueueItemView:
        """Enqueue a finished item's request again as a new pending item."""

        item = self._queue_store.get_item(item_id)
        if item is None:
            raise NotFoundError(f"Queue item not found: {item_id}")
        if item.status not in {QueueItemStatus.COMPLETED, QueueItemStatus.FAILED}:
            raise InvalidStateError(
                f"Only finished items can be re-enqueued; item {item_id} is {item.status.value}.",
            )
        return self.enqueue(item.request, item.priority)

    def get_stats(self) -> QueueStats:
        return self._queue_store.stats()

    def list_items(self, status: QueueItemStatus | None = None) -> list[QueueItemView]:
        return self._queue_store.list_items(status)

    def get_status(self) -> QueueStatus:
        with self._lock:
            mode = self._mode
            hold_reason = self._hold_reason
        return QueueStatus(
            mode=mode,
            current_item=self._queue_store.get_running_item(),
            stats=self._queue_store.stats(),
            hold_reason=hold_reason,
        )

    def wait_until_settled(self, timeout: float | None = None) -> bool:
        """Wait until nothing is in flight and the queue is not actively draining.

        A queue held on an invalid credential counts as settled.
        """

        with self._changed:
            return self._changed.wait_for(self._is_settled, timeout=timeout)

    def _is_settled(self) -> bool:
        return self._current_item_id is None and (
            self._mode is not QueueMode.RUNNING or self._hold_reason is not None
        )

    def _try_dispatch(self) -> None:
        """Start the next pending item if the queue runs and the slot is free.

        Caller holds the manager lock.
        """

        while self._mode is QueueMode.RUNNING:
            if self._current_item_id is not None or self._supervisor.is_running():
                return
            if self._queue_store.peek_next_pending() is None:
                self._mode = QueueMode.IDLE
                self._hold_reason = None
                logger.info("Queue drained; no pending items left")
                self._changed.notify_all()
                return
            if not self._session.is_valid():
                if self._hold_reason != CREDENTIAL_HOLD:
                    logger.warning("Queue dispatch held: credential missing or invalid")
                self._hold_reason = CREDENTIAL_HOLD
                self._changed.notify_all()
                return
            self._hold_reason = None

            item = self._queue_store.claim_next_pending()
            if item is None:
                if self._queue_store.peek_next_pending() is None:
                    continue
                self._hold_reason = BUSY_HOLD
                logger.warning("Queue dispatch held: another queue item is already running")
                self._changed.notify_all()
                return

            try:
                config = build_spider_config(
                    item.request,
                    settings=self._config_store.execution_settings(),
                    cookie=self._session.get_credential(),
                )
                self._current_item_id = item.item_id
                task = self._supervisor.start(config, queue_item_id=item.item_id)
            except SpiderError as error:
                self._current_item_id = None
                logger.warning("Queue item %d failed to start: %s", item.item_id, error)
                self._queue_store.fail_item(item.item_id, str(error))
                continue
            except Exception as error:
                self._current_item_id = None
                self._queue_store.fail_item(item.item_id, f"Dispatch failed: {error}")
                raise
            self._current_task_id = task.task_id
            logger.info("Dispatched queue item %d as task %d", item.item_id, task.task_id)
            return

    def _on_execution_finished(self, outcome: ExecutionOutcome) -> None:
        with self._lock:
            item_id = self._current_item_id
            if item_id is None or outcome.task_id != self._current_task_id:
                return
            self._current_item_id = None
            self._current_task_id = None
            if outcome.succeeded:
                self._queue_store.complete_item(item_id)
            else:
                self._queue_store.fail_item(
                    item_id,
                    outcome.error_message or f"Task {outcome.status.value}",
                )
            logger.info(
                "Queue item %d finished with task status %s",
                item_id,
                outcome.status.value,
            )
            self._try_dispatch()
            self._changed.notify_all()
        self._publish_status()

    def _on_credential_invalid(self, notice: CredentialInvalidNotice) -> None:
        with self._lock:
            if self._mode is not QueueMode.RUNNING:
                return
            self._hold_reason = CREDENTIAL_HOLD
            logger.warning("Queue dispatch held after credential failure: %s", notice.message)
            self._changed.notify_all()
        self._publish_status()

    def _on_credential_updated(self, notice: CredentialUpdatedNotice) -> None:
        if not notice.has_credential:
            return
        with self._lock:
            if self._mode is not QueueMode.RUNNING:
                return
            self._hold_reason = None
            self._try_dispatch()
            self._changed.notify_all()
        self._publish_status()

    def _publish_status(self) -> QueueStatus:
        status = self.get_status()
        self.status_events.publish(status)
        return status

"""Controllers for spider-queue CLI commands."""

from __future__ import annotations

import json
import logging
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from spider_queue.config import Settings
from spider_queue.orchestrator.contracts import build_spider_config, validate_request
from spider_queue.orchestrator.errors import ConfigurationError, NotFoundError
from spider_queue.orchestrator.models import (
    QueueItemStatus,
    QueueItemView,
    QueueStatus,
    QueueTaskRequest,
    SaveMode,
    SaveOptions,
    TaskStatus,
    TaskType,
    TaskView,
)
from spider_queue.orchestrator.runtime import SpiderRuntime, build_runtime
from spider_queue.storage.common import utc_now

logger = logging.getLogger(__name__)

WAIT_POLL_SECONDS = 0.2


@dataclass(slots=True)
class TaskRequestOptions:
    """CLI input describing one unit of scraping work."""

    task_type: str
    note_urls: tuple[str, ...] = ()
    user_url: str | None = None
    query: str | None = None
    require_num: int | None = None
    save_mode: str = SaveMode.ALL.value
    excel_name: str | None = None
    media_types: tuple[str, ...] = ()


@dataclass(slots=True)
class RunTaskCommand:
    """CLI input for a single foreground execution."""

    db_path: Path | None
    request: TaskRequestOptions


@dataclass(slots=True)
class DbCommand:
    """CLI input for commands that only need the database."""

    db_path: Path | None


@dataclass(slots=True)
class QueueAddCommand:
    db_path: Path | None
    request: TaskRequestOptions
    priority: int


@dataclass(slots=True)
class QueueListCommand:
    db_path: Path | None
    status: str | None


@dataclass(slots=True)
class QueueItemCommand:
    """CLI input for remove/retry on one queue item."""

    db_path: Path | None
    item_id: int


@dataclass(slots=True)
class QueuePriorityCommand:
    db_path: Path | None
    item_id: int
    priority: int


@dataclass(slots=True)
class QueueRunCommand:
    """CLI input for draining the queue in the foreground."""

    db_path: Path | None
    timeout_seconds: float | None = None


@dataclass(slots=True)
class TasksListCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class TaskCommand:
    db_path: Path | None
    task_id: int


@dataclass(slots=True)
class TaskLogsCommand:
    db_path: Path | None
    task_id: int
    limit: int | None


@dataclass(slots=True)
class TasksPurgeCommand:
    db_path: Path | None
    days: int


@dataclass(slots=True)
class CookieSetCommand:
    db_path: Path | None
    value: str
    valid_hours: float | None
    validate: bool


@dataclass(slots=True)
class ConfigPathsCommand:
    db_path: Path | None
    media: str | None
    excel: str | None


@dataclass(slots=True)
class ConfigProxyCommand:
    db_path: Path | None
    enabled: bool | None
    url: str | None


@dataclass(slots=True)
class ConfigPacingCommand:
    db_path: Path | None
    min_seconds: float
    max_seconds: float


class SpiderCliController:
    """Coordinates queue, worker, credential and settings CLI operations."""

    def run_task(self, command: RunTaskCommand) -> list[str]:
        """Run one execution outside the queue and wait for it to finish."""

        request = build_request(command.request)
        with _runtime(command.db_path, boot=True) as runtime:
            if not runtime.session.is_valid():
                raise ConfigurationError(
                    "Credential is missing, expired or invalid; run `spider-queue cookie set`.",
                )
            config = build_spider_config(
                request,
                settings=runtime.config_store.execution_settings(),
                cookie=runtime.session.get_credential(),
            )
            runtime.config_store.set_last_task(request.task_type.value, request.params)
            task = runtime.supervisor.start(config)
            interrupted = threading.Event()
            with _signal_handlers(lambda _: interrupted.set()):
                while not runtime.supervisor.wait(timeout=WAIT_POLL_SECONDS):
                    if interrupted.is_set():
                        runtime.supervisor.stop()
            finished = runtime.task_store.get_task(task.task_id)

        if finished is None:
            raise NotFoundError(f"Task not found: {task.task_id}")
        return _task_lines(finished)

    def recover(self, command: DbCommand) -> list[str]:
        with _runtime(command.db_path, boot=False) as runtime:
            fixed = runtime.boot()
        return [f"Recovered {fixed} stuck task(s)"]

    def queue_add(self, command: QueueAddCommand) -> list[str]:
        request = build_request(command.request)
        with _runtime(command.db_path) as runtime:
            item = runtime.queue_manager.enqueue(request, command.priority)
            runtime.config_store.set_last_task(request.task_type.value, request.params)
        return [f"Queue item added: {_item_line(item)}"]

    def queue_list(self, command: QueueListCommand) -> list[str]:
        status = QueueItemStatus(command.status) if command.status else None
        with _runtime(command.db_path) as runtime:
            items = runtime.queue_manager.list_items(status)
        lines = [f"Queue items: {len(items)}"]
        lines.extend(f"  {_item_line(item)}" for item in items)
        return lines

    def queue_stats(self, command: DbCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            stats = runtime.queue_manager.get_stats()
        return [
            f"Queue: total={stats.total} pending={stats.pending} running={stats.running} "
            f"completed={stats.completed} failed={stats.failed}",
        ]

    def queue_status(self, command: DbCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            status = runtime.queue_manager.get_status()
            current = runtime.task_store.get_current_task()
        lines = _status_lines(status)
        if current is not None:
            lines.append(f"Current task: {_task_line(current)}")
        return lines

    def queue_remove(self, command: QueueItemCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            runtime.queue_manager.remove(command.item_id)
        return [f"Queue item removed: {command.item_id}"]

    def queue_priority(self, command: QueuePriorityCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            item = runtime.queue_manager.update_priority(command.item_id, command.priority)
        return [f"Queue item updated: {_item_line(item)}"]

    def queue_clear(self, command: DbCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            removed = runtime.queue_manager.clear_completed()
        return [f"Removed {removed} finished queue item(s)"]

    def queue_retry(self, command: QueueItemCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            item = runtime.queue_manager.requeue(command.item_id)
        return [f"Queue item re-enqueued: {_item_line(item)}"]

    def queue_run(self, command: QueueRunCommand) -> list[str]:
        """Drain the queue until it is empty, held, interrupted or timed out."""

        interrupted = threading.Event()

        with _runtime(command.db_path, boot=True) as runtime:

            def _interrupt(signal_name: str) -> None:
                logger.warning("Received %s; pausing queue", signal_name)
                interrupted.set()

            with _signal_handlers(_interrupt):
                runtime.queue_manager.start_queue()
                deadline = (
                    utc_now() + timedelta(seconds=command.timeout_seconds)
                    if command.timeout_seconds is not None
                    else None
                )
                while not runtime.queue_manager.wait_until_settled(timeout=WAIT_POLL_SECONDS):
                    if interrupted.is_set() or (deadline is not None and utc_now() >= deadline):
                        runtime.queue_manager.stop_queue()
                        runtime.supervisor.stop()
                        runtime.queue_manager.wait_until_settled(timeout=WAIT_POLL_SECONDS * 10)
                        break
            status = runtime.queue_manager.get_status()

        lines = _status_lines(status)
        if interrupted.is_set():
            lines.insert(0, "Queue interrupted; running worker stopped.")
        return lines

    def tasks_list(self, command: TasksListCommand) -> list[str]:
        status = TaskStatus(command.status) if command.status else None
        with _runtime(command.db_path) as runtime:
            tasks = runtime.task_store.get_recent_tasks(command.limit, status=status)
        lines = [f"Tasks: {len(tasks)}"]
        lines.extend(f"  {_task_line(task)}" for task in tasks)
        return lines

    def task_show(self, command: TaskCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            task = runtime.task_store.get_task(command.task_id)
            progress = (
                runtime.supervisor.last_progress()
                if runtime.supervisor.current_task_id == command.task_id
                else None
            )
        if task is None:
            return [f"Task not found: {command.task_id}"]
        lines = _task_lines(task)
        if progress is not None:
            lines.append(f"Progress: {progress.current}/{progress.total}")
        return lines

    def task_logs(self, command: TaskLogsCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            if runtime.task_store.get_task(command.task_id) is None:
                return [f"Task not found: {command.task_id}"]
            logs = runtime.task_store.get_task_logs(command.task_id, limit=command.limit)
        lines = [f"Logs: {len(logs)}"]
        for log in logs:
            lines.append(
                f"  {log.created_at.isoformat()} {log.event_type} "
                f"{log.level or '-'} {log.message}",
            )
        return lines

    def task_delete(self, command: TaskCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            runtime.task_store.delete_task(command.task_id)
        return [f"Task deleted: {command.task_id}"]

    def tasks_purge(self, command: TasksPurgeCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            removed = runtime.task_store.purge_tasks_older_than(command.days)
        return [f"Purged {removed} task(s) older than {command.days} day(s)"]

    def cookie_set(self, command: CookieSetCommand) -> list[str]:
        valid_until = (
            utc_now() + timedelta(hours=command.valid_hours)
            if command.valid_hours is not None
            else None
        )
        with _runtime(command.db_path) as runtime:
            runtime.session.set_credential(command.value, valid_until)
            lines = ["Cookie saved." if command.value.strip() else "Cookie cleared."]
            if command.validate and command.value.strip():
                result = runtime.session.validate()
                lines.append(_validation_line(result.valid, result.message))
        return lines

    def cookie_show(self, command: DbCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            status = runtime.session.status()
        if not status.has_credential:
            return ["Cookie: not set"]
        lines = [
            f"Cookie: {status.masked}",
            f"Valid: {'yes' if status.valid else 'no'}",
            "Valid until: "
            f"{status.valid_until.isoformat() if status.valid_until else '-'}",
        ]
        if status.invalidated:
            lines.append(f"Invalidated: {status.invalid_reason or '-'}")
        if status.user_info is not None:
            lines.append(
                f"User: {status.user_info.nickname} (id={status.user_info.user_id})",
            )
        return lines

    def cookie_validate(self, command: DbCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            result = runtime.session.validate()
        lines = [_validation_line(result.valid, result.message)]
        if result.user_info is not None:
            lines.append(f"User: {result.user_info.nickname} (id={result.user_info.user_id})")
        return lines

    def cookie_clear(self, command: DbCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            runtime.session.clear()
        return ["Cookie cleared."]

    def config_show(self, command: DbCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            values = runtime.config_store.get_all()
        return json.dumps(values, ensure_ascii=False, indent=2, sort_keys=True).splitlines()

    def config_paths(self, command: ConfigPathsCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            if command.media is None and command.excel is None:
                paths = runtime.config_store.get_paths()
            else:
                paths = runtime.config_store.set_paths(media=command.media, excel=command.excel)
        return [f"Media path: {paths.media}", f"Excel path: {paths.excel}"]

    def config_proxy(self, command: ConfigProxyCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            if command.enabled is None and command.url is None:
                proxy = runtime.config_store.get_proxy()
            else:
                proxy = runtime.config_store.set_proxy(enabled=command.enabled, url=command.url)
        return [f"Proxy: {'enabled' if proxy.enabled else 'disabled'} ({proxy.url})"]

    def config_pacing(self, command: ConfigPacingCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            interval = runtime.config_store.set_request_interval(
                min_seconds=command.min_seconds,
                max_seconds=command.max_seconds,
            )
        return [f"Request interval: {interval.min:g}-{interval.max:g}s"]

    def config_reset(self, command: DbCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            runtime.config_store.reset()
        return ["Settings restored to defaults."]


def build_request(options: TaskRequestOptions) -> QueueTaskRequest:
    """Turn CLI options into a validated queue request."""

    try:
        task_type = TaskType(options.task_type)
        save_mode = SaveMode(options.save_mode)
    except ValueError as error:
        raise ConfigurationError(str(error)) from error

    params: dict[str, object]
    if task_type is TaskType.NOTES:
        params = {"note_urls": list(options.note_urls)}
    elif task_type is TaskType.USER:
        params = {"user_url": options.user_url}
    else:
        params = {"query": options.query}
        if options.require_num is not None:
            params["require_num"] = options.require_num

    request = QueueTaskRequest(
        task_type=task_type,
        params=params,
        save_options=SaveOptions(
            mode=save_mode,
            excel_name=options.excel_name,
            media_types=options.media_types or None,
        ),
    )
    validate_request(request)
    return request


def _status_lines(status: QueueStatus) -> list[str]:
    stats = status.stats
    lines = [
        f"Queue mode: {status.mode.value}",
        f"Items: pending={stats.pending} running={stats.running} "
        f"completed={stats.completed} failed={stats.failed}",
    ]
    if status.hold_reason:
        lines.append(f"Dispatch held: {status.hold_reason}")
    if status.current_item is not None:
        lines.append(f"Running item: {_item_line(status.current_item)}")
    return lines


def _item_line(item: QueueItemView) -> str:
    line = (
        f"{item.item_id} type={item.request.task_type.value} status={item.status.value} "
        f"priority={item.priority} task_id={item.task_id if item.task_id is not None else '-'} "
        f"created_at={item.created_at.isoformat()}"
    )
    if item.error_message:
        line += f" error={item.error_message}"
    return line


def _task_line(task: TaskView) -> str:
    return (
        f"{task.task_id} type={task.task_type} status={task.status.value} "
        f"results={task.result_count} started_at={task.started_at.isoformat()}"
    )


def _task_lines(task: TaskView) -> list[str]:
    return [
        f"Task: {task.task_id}",
        f"Type: {task.task_type}",
        f"Status: {task.status.value}",
        f"Params: {json.dumps(task.params, ensure_ascii=False, sort_keys=True)}",
        f"Started: {task.started_at.isoformat()}",
        f"Completed: {task.completed_at.isoformat() if task.completed_at else '-'}",
        f"Results: {task.result_count}",
        f"Error: {task.error_message or '-'}",
    ]


def _validation_line(valid: bool, message: str) -> str:
    return f"Cookie {'valid' if valid else 'invalid'}: {message or '-'}"


@contextmanager
def _runtime(db_path: Path | None, *, boot: bool = False) -> Iterator[SpiderRuntime]:
    settings = Settings.from_env(db_path=db_path)
    runtime = build_runtime(settings)
    try:
        if boot:
            runtime.boot()
        else:
            runtime.task_store.init_schema()
        yield runtime
    finally:
        runtime.shutdown(timeout=settings.worker.stop_grace_seconds * 2)


@contextmanager
def _signal_handlers(on_signal: Callable[[str], object]) -> Iterator[None]:
    if not hasattr(signal, "SIGINT"):
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        on_signal(name)

    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)

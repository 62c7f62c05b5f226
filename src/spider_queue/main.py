"""CLI entrypoint for spider-queue."""

from __future__ import annotations

import logging
import sys
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from spider_queue import __version__
from spider_queue.orchestrator.controllers import (
    ConfigPacingCommand,
    ConfigPathsCommand,
    ConfigProxyCommand,
    CookieSetCommand,
    DbCommand,
    QueueAddCommand,
    QueueItemCommand,
    QueueListCommand,
    QueuePriorityCommand,
    QueueRunCommand,
    RunTaskCommand,
    SpiderCliController,
    TaskCommand,
    TaskLogsCommand,
    TaskRequestOptions,
    TasksListCommand,
    TasksPurgeCommand,
)
from spider_queue.orchestrator.errors import SpiderError
from spider_queue.orchestrator.models import (
    MEDIA_TYPES,
    QueueItemStatus,
    SaveMode,
    TaskStatus,
    TaskType,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = SpiderCliController()

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


def task_request_options(func: Callable) -> Callable:
    """Options shared by `run` and `queue add`."""

    decorators = [
        click.option(
            "--type",
            "task_type",
            type=click.Choice([item.value for item in TaskType]),
            required=True,
            help="What to scrape.",
        ),
        click.option(
            "--note-url",
            "note_urls",
            multiple=True,
            help="Note URL for `notes` tasks. Can be repeated.",
        ),
        click.option("--user-url", default=None, help="Profile URL for `user` tasks."),
        click.option("--query", default=None, help="Search keywords for `search` tasks."),
        click.option(
            "--require-num",
            type=click.IntRange(min=1),
            default=None,
            help="How many search results to fetch.",
        ),
        click.option(
            "--save-mode",
            type=click.Choice([item.value for item in SaveMode]),
            default=SaveMode.ALL.value,
            show_default=True,
            help="Save spreadsheet rows, media files, or both.",
        ),
        click.option("--excel-name", default=None, help="Spreadsheet file name."),
        click.option(
            "--media-type",
            "media_types",
            type=click.Choice(list(MEDIA_TYPES)),
            multiple=True,
            help="Only download these media types. Can be repeated.",
        ),
    ]
    for decorator in reversed(decorators):
        func = decorator(func)
    return func


def _request_options(  # noqa: PLR0913
    task_type: str,
    note_urls: tuple[str, ...],
    user_url: str | None,
    query: str | None,
    require_num: int | None,
    save_mode: str,
    excel_name: str | None,
    media_types: tuple[str, ...],
) -> TaskRequestOptions:
    return TaskRequestOptions(
        task_type=task_type,
        note_urls=note_urls,
        user_url=user_url,
        query=query,
        require_num=require_num,
        save_mode=save_mode,
        excel_name=excel_name,
        media_types=media_types,
    )


@click.group()
@click.version_option(version=__version__, prog_name="spider-queue")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity on stderr.",
)
def spider_queue(log_level: str) -> None:
    """Durable priority queue and supervisor for an external scraping worker."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


@spider_queue.command("run")
@db_path_option
@task_request_options
def run(db_path: Path | None, **request: object) -> None:
    """Run one task in the foreground and wait for it to finish."""

    options = _request_options(**request)  # type: ignore[arg-type]
    _invoke(lambda: CONTROLLER.run_task(RunTaskCommand(db_path=db_path, request=options)))


@spider_queue.command("recover")
@db_path_option
def recover(db_path: Path | None) -> None:
    """Resolve tasks and queue items left running by a crashed process."""

    _invoke(lambda: CONTROLLER.recover(DbCommand(db_path=db_path)))


@spider_queue.group()
def queue() -> None:
    """Persistent task queue commands."""


@queue.command("add")
@db_path_option
@task_request_options
@click.option("--priority", type=int, default=0, show_default=True, help="Higher runs first.")
def queue_add(db_path: Path | None, priority: int, **request: object) -> None:
    """Add a task to the queue."""

    _invoke(
        lambda: CONTROLLER.queue_add(
            QueueAddCommand(
                db_path=db_path,
                request=_request_options(**request),  # type: ignore[arg-type]
                priority=priority,
            ),
        ),
    )


@queue.command("list")
@db_path_option
@click.option(
    "--status",
    type=click.Choice([item.value for item in QueueItemStatus]),
    default=None,
    help="Optional status filter.",
)
def queue_list(db_path: Path | None, status: str | None) -> None:
    """List queue items in dispatch order."""

    _invoke(lambda: CONTROLLER.queue_list(QueueListCommand(db_path=db_path, status=status)))


@queue.command("stats")
@db_path_option
def queue_stats(db_path: Path | None) -> None:
    """Show per-status queue counts."""

    _invoke(lambda: CONTROLLER.queue_stats(DbCommand(db_path=db_path)))


@queue.command("status")
@db_path_option
def queue_status(db_path: Path | None) -> None:
    """Show queue mode, counts and the running item."""

    _invoke(lambda: CONTROLLER.queue_status(DbCommand(db_path=db_path)))


@queue.command("remove")
@db_path_option
@click.argument("item_id", type=int)
def queue_remove(db_path: Path | None, item_id: int) -> None:
    """Remove a queue item that is not running."""

    _invoke(lambda: CONTROLLER.queue_remove(QueueItemCommand(db_path=db_path, item_id=item_id)))


@queue.command("priority")
@db_path_option
@click.argument("item_id", type=int)
@click.argument("priority", type=int)
def queue_priority(db_path: Path | None, item_id: int, priority: int) -> None:
    """Change the priority of a pending queue item."""

    _invoke(
        lambda: CONTROLLER.queue_priority(
            QueuePriorityCommand(db_path=db_path, item_id=item_id, priority=priority),
        ),
    )


@queue.command("clear")
@db_path_option
def queue_clear(db_path: Path | None) -> None:
    """Delete completed and failed queue items."""

    _invoke(lambda: CONTROLLER.queue_clear(DbCommand(db_path=db_path)))


@queue.command("retry")
@db_path_option
@click.argument("item_id", type=int)
def queue_retry(db_path: Path | None, item_id: int) -> None:
    """Re-enqueue a finished queue item as a new pending item."""

    _invoke(lambda: CONTROLLER.queue_retry(QueueItemCommand(db_path=db_path, item_id=item_id)))


@queue.command("run")
@db_path_option
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Pause the queue and stop the worker after this many seconds.",
)
def queue_run(db_path: Path | None, timeout_seconds: float | None) -> None:
    """Drain the queue in the foreground until empty, held or interrupted."""

    _invoke(
        lambda: CONTROLLER.queue_run(
            QueueRunCommand(db_path=db_path, timeout_seconds=timeout_seconds),
        ),
    )


@spider_queue.group()
def tasks() -> None:
    """Task history commands."""


@tasks.command("list")
@db_path_option
@click.option(
    "--status",
    type=click.Choice([item.value for item in TaskStatus]),
    default=None,
    help="Optional status filter.",
)
@click.option("--limit", type=click.IntRange(min=1), default=50, show_default=True)
def tasks_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent tasks, newest first."""

    _invoke(
        lambda: CONTROLLER.tasks_list(
            TasksListCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@tasks.command("show")
@db_path_option
@click.argument("task_id", type=int)
def tasks_show(db_path: Path | None, task_id: int) -> None:
    """Show one task."""

    _invoke(lambda: CONTROLLER.task_show(TaskCommand(db_path=db_path, task_id=task_id)))


@tasks.command("logs")
@db_path_option
@click.argument("task_id", type=int)
@click.option("--limit", type=click.IntRange(min=1), default=None)
def tasks_logs(db_path: Path | None, task_id: int, limit: int | None) -> None:
    """Show the log rows of one task."""

    _invoke(
        lambda: CONTROLLER.task_logs(
            TaskLogsCommand(db_path=db_path, task_id=task_id, limit=limit),
        ),
    )


@tasks.command("delete")
@db_path_option
@click.argument("task_id", type=int)
def tasks_delete(db_path: Path | None, task_id: int) -> None:
    """Delete a finished task and its logs."""

    _invoke(lambda: CONTROLLER.task_delete(TaskCommand(db_path=db_path, task_id=task_id)))


@tasks.command("purge")
@db_path_option
@click.option("--days", type=click.IntRange(min=0), default=30, show_default=True)
def tasks_purge(db_path: Path | None, days: int) -> None:
    """Delete finished tasks older than N days."""

    _invoke(lambda: CONTROLLER.tasks_purge(TasksPurgeCommand(db_path=db_path, days=days)))


@spider_queue.group()
def cookie() -> None:
    """Credential commands."""


@cookie.command("set")
@db_path_option
@click.argument("value")
@click.option(
    "--valid-hours",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Treat the cookie as expired after this many hours.",
)
@click.option(
    "--validate/--no-validate",
    default=False,
    show_default=True,
    help="Verify the cookie right after saving it.",
)
def cookie_set(
    db_path: Path | None,
    value: str,
    valid_hours: float | None,
    validate: bool,
) -> None:
    """Save the cookie; pass `-` to read it from stdin."""

    if value == "-":
        value = click.get_text_stream("stdin").read()
    _invoke(
        lambda: CONTROLLER.cookie_set(
            CookieSetCommand(
                db_path=db_path,
                value=value,
                valid_hours=valid_hours,
                validate=validate,
            ),
        ),
    )


@cookie.command("show")
@db_path_option
def cookie_show(db_path: Path | None) -> None:
    """Show masked cookie and its validity."""

    _invoke(lambda: CONTROLLER.cookie_show(DbCommand(db_path=db_path)))


@cookie.command("validate")
@db_path_option
def cookie_validate(db_path: Path | None) -> None:
    """Verify the stored cookie."""

    _invoke(lambda: CONTROLLER.cookie_validate(DbCommand(db_path=db_path)))


@cookie.command("clear")
@db_path_option
def cookie_clear(db_path: Path | None) -> None:
    """Forget the stored cookie."""

    _invoke(lambda: CONTROLLER.cookie_clear(DbCommand(db_path=db_path)))


@spider_queue.group()
def config() -> None:
    """Execution settings commands."""


@config.command("show")
@db_path_option
def config_show(db_path: Path | None) -> None:
    """Print all settings as JSON."""

    _invoke(lambda: CONTROLLER.config_show(DbCommand(db_path=db_path)))


@config.command("paths")
@db_path_option
@click.option("--media", default=None, help="Directory for downloaded media.")
@click.option("--excel", default=None, help="Directory for spreadsheets.")
def config_paths(db_path: Path | None, media: str | None, excel: str | None) -> None:
    """Show or change output paths."""

    _invoke(
        lambda: CONTROLLER.config_paths(
            ConfigPathsCommand(db_path=db_path, media=media, excel=excel),
        ),
    )


@config.command("proxy")
@db_path_option
@click.option("--enable/--disable", "enabled", default=None, help="Toggle the proxy.")
@click.option("--url", default=None, help="Proxy URL (http, https or socks5).")
def config_proxy(db_path: Path | None, enabled: bool | None, url: str | None) -> None:
    """Show or change the proxy."""

    _invoke(
        lambda: CONTROLLER.config_proxy(
            ConfigProxyCommand(db_path=db_path, enabled=enabled, url=url),
        ),
    )


@config.command("pacing")
@db_path_option
@click.option("--min", "min_seconds", type=float, required=True, help="Minimum delay (s).")
@click.option("--max", "max_seconds", type=float, required=True, help="Maximum delay (s).")
def config_pacing(db_path: Path | None, min_seconds: float, max_seconds: float) -> None:
    """Set the worker's randomized delay between requests."""

    _invoke(
        lambda: CONTROLLER.config_pacing(
            ConfigPacingCommand(
                db_path=db_path,
                min_seconds=min_seconds,
                max_seconds=max_seconds,
            ),
        ),
    )


@config.command("reset")
@db_path_option
def config_reset(db_path: Path | None) -> None:
    """Restore default settings."""

    _invoke(lambda: CONTROLLER.config_reset(DbCommand(db_path=db_path)))


def _invoke(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (SpiderError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    spider_queue()

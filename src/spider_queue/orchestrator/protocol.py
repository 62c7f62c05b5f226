"""Line-oriented JSON protocol spoken by the worker on stdout.

Every stdout line is one self-describing JSON object with a ``type`` field:

- ``log``: ``message``, optional ``level`` (INFO/WARNING/ERROR)
- ``progress``: ``current``, ``total``, optional ``progress`` percent, ``title``, ``noteId``
- ``media``: ``action``, ``file``, optional ``noteId``, ``title``
- ``done``: ``success``, ``count``, ``files``, optional ``api_success``, ``api_message``
- ``error``: ``code``, ``message``, optional ``terminal``, ``level``

Lines are decoded once into typed messages; anything that does not match
becomes a non-terminal ``PARSE_ERROR`` carrying the raw line.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from typing import Any

from spider_queue.orchestrator.events import EventChannel
from spider_queue.orchestrator.models import LogEntry, TaskStatus
from spider_queue.orchestrator.repository import TaskStore
from spider_queue.orchestrator.session import SessionManager

logger = logging.getLogger(__name__)

PARSE_ERROR = "PARSE_ERROR"
AUTH_ERROR_CODES = frozenset({"AUTH_FAILED", "COOKIE_INVALID", "COOKIE_EXPIRED", "LOGIN_REQUIRED"})
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

NO_DATA_MESSAGE = "Task finished but no data was retrieved"
ACCOUNT_ANOMALY_MESSAGE = "Account anomaly reported by the API; log in again"
WORKER_FAILURE_MESSAGE = "Worker reported failure"


@dataclass(frozen=True, slots=True)
class LogMessage:
    message: str
    level: str = "INFO"


@dataclass(frozen=True, slots=True)
class ProgressMessage:
    current: int
    total: int
    percent: float | None = None
    title: str | None = None
    note_id: str | None = None


@dataclass(frozen=True, slots=True)
class MediaMessage:
    action: str
    file: str
    note_id: str | None = None
    title: str | None = None


@dataclass(frozen=True, slots=True)
class DoneMessage:
    success: bool
    count: int = 0
    files: tuple[str, ...] = ()
    api_success: bool | None = None
    api_message: str | None = None


@dataclass(frozen=True, slots=True)
class ErrorMessage:
    code: str
    message: str
    terminal: bool = False
    level: str = "ERROR"
    raw: str | None = None

    @property
    def is_auth_failure(self) -> bool:
        return self.code in AUTH_ERROR_CODES


WorkerMessage = LogMessage | ProgressMessage | MediaMessage | DoneMessage | ErrorMessage


@dataclass(frozen=True, slots=True)
class WorkerEvent:
    """One decoded worker message, published after its effects are stored."""

    task_id: int
    message: WorkerMessage


@dataclass(frozen=True, slots=True)
class TerminalOutcome:
    status: TaskStatus
    error_message: str | None = None
    result_count: int = 0


class MessageDecodeError(ValueError):
    """Worker line does not match any message variant."""


def decode_worker_line(line: str) -> WorkerMessage:
    """Decode one stdout line; never raises."""

    raw = line.strip()
    try:
        payload = json.loads(raw)
        if not isinstance(payload, dict):
            raise MessageDecodeError("line is not a JSON object")
        return _decode_payload(payload)
    except (json.JSONDecodeError, MessageDecodeError) as error:
        return ErrorMessage(
            code=PARSE_ERROR,
            message=f"Unparseable worker output: {error}",
            terminal=False,
            level="WARNING",
            raw=raw,
        )


def _decode_payload(payload: dict[str, Any]) -> WorkerMessage:
    kind = payload.get("type")
    if kind == "log":
        return LogMessage(
            message=_str_field(payload, "message", default=""),
            level=_level_field(payload, default="INFO"),
        )
    if kind == "progress":
        return ProgressMessage(
            current=_int_field(payload, "current"),
            total=_int_field(payload, "total"),
            percent=_optional_float(payload, "progress"),
            title=_optional_str(payload, "title"),
            note_id=_optional_str(payload, "noteId"),
        )
    if kind == "media":
        return MediaMessage(
            action=_str_field(payload, "action"),
            file=_str_field(payload, "file"),
            note_id=_optional_str(payload, "noteId"),
            title=_optional_str(payload, "title"),
        )
    if kind == "done":
        files = payload.get("files") or []
        if not isinstance(files, list) or not all(isinstance(item, str) for item in files):
            raise MessageDecodeError("'files' must be a list of strings")
        api_success = payload.get("api_success")
        if api_success is not None and not isinstance(api_success, bool):
            raise MessageDecodeError("'api_success' must be a boolean")
        return DoneMessage(
            success=_bool_field(payload, "success"),
            count=_int_field(payload, "count", default=0),
            files=tuple(files),
            api_success=api_success,
            api_message=_optional_str(payload, "api_message"),
        )
    if kind == "error":
        return ErrorMessage(
            code=_str_field(payload, "code", default="WORKER_ERROR"),
            message=_str_field(payload, "message", default=""),
            terminal=_bool_field(payload, "terminal", default=False),
            level=_level_field(payload, default="ERROR"),
        )
    raise MessageDecodeError(f"unknown message type {kind!r}")


_MISSING = object()


def _str_field(payload: dict[str, Any], name: str, default: object = _MISSING) -> str:
    value = payload.get(name, default)
    if value is _MISSING:
        raise MessageDecodeError(f"missing '{name}'")
    if not isinstance(value, str):
        raise MessageDecodeError(f"'{name}' must be a string")
    return value


def _optional_str(payload: dict[str, Any], name: str) -> str | None:
    value = payload.get(name)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, str | int):
        raise MessageDecodeError(f"'{name}' must be a string")
    return str(value)


def _int_field(payload: dict[str, Any], name: str, default: object = _MISSING) -> int:
    value = payload.get(name, default)
    if value is _MISSING:
        raise MessageDecodeError(f"missing '{name}'")
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise MessageDecodeError(f"'{name}' must be a non-negative integer")
    return value


def _optional_float(payload: dict[str, Any], name: str) -> float | None:
    value = payload.get(name)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise MessageDecodeError(f"'{name}' must be a number")
    return float(value)


def _bool_field(payload: dict[str, Any], name: str, default: object = _MISSING) -> bool:
    value = payload.get(name, default)
    if value is _MISSING:
        raise MessageDecodeError(f"missing '{name}'")
    if not isinstance(value, bool):
        raise MessageDecodeError(f"'{name}' must be a boolean")
    return value


def _level_field(payload: dict[str, Any], *, default: str) -> str:
    value = payload.get("level", default)
    if not isinstance(value, str) or value.upper() not in LOG_LEVELS:
        raise MessageDecodeError(f"'level' must be one of {', '.join(LOG_LEVELS)}")
    return value.upper()


class MessageProtocol:
    """Applies one task's worker messages to storage, then to observers.

    Messages must be handled in emission order from a single reader. Once a
    terminal outcome was produced, later messages are ignored.
    """

    def __init__(
        self,
        task_id: int,
        *,
        task_store: TaskStore,
        session: SessionManager,
        events: EventChannel[WorkerEvent],
    ) -> None:
        self.task_id = task_id
        self._task_store = task_store
        self._session = session
        self._events = events
        self._lock = threading.Lock()
        self._last_progress: ProgressMessage | None = None
        self._outcome: TerminalOutcome | None = None

    @property
    def last_progress(self) -> ProgressMessage | None:
        with self._lock:
            return self._last_progress

    @property
    def outcome(self) -> TerminalOutcome | None:
        return self._outcome

    def handle_line(self, line: str) -> TerminalOutcome | None:
        if not line.strip():
            return None
        return self.handle(decode_worker_line(line))

    def handle(self, message: WorkerMessage) -> TerminalOutcome | None:
        if self._outcome is not None:
            logger.debug("Ignoring %s after terminal event for task %d", message, self.task_id)
            return None

        outcome: TerminalOutcome | None = None
        if isinstance(message, LogMessage):
            self._append(LogEntry(event_type="log", level=message.level, message=message.message))
        elif isinstance(message, ProgressMessage):
            with self._lock:
                self._last_progress = message
        elif isinstance(message, MediaMessage):
            self._append(
                LogEntry(
                    event_type="media",
                    level="INFO",
                    message=f"{message.action}: {message.file}",
                    metadata=_compact(
                        {
                            "action": message.action,
                            "file": message.file,
                            "noteId": message.note_id,
                            "title": message.title,
                        },
                    ),
                ),
            )
        elif isinstance(message, DoneMessage):
            outcome = self._finish_done(message)
        else:
            outcome = self._handle_error(message)

        if outcome is not None:
            self._outcome = outcome
        self._events.publish(WorkerEvent(task_id=self.task_id, message=message))
        return outcome

    def _finish_done(self, message: DoneMessage) -> TerminalOutcome:
        if message.api_success is False:
            error_message = message.api_message or ACCOUNT_ANOMALY_MESSAGE
            outcome = TerminalOutcome(
                status=TaskStatus.FAILED,
                error_message=error_message,
                result_count=message.count,
            )
            self._write_outcome(outcome)
            self._session.invalidate(error_message, source="worker")
            return outcome

        if not message.success:
            outcome = TerminalOutcome(
                status=TaskStatus.FAILED,
                error_message=message.api_message or WORKER_FAILURE_MESSAGE,
                result_count=message.count,
            )
        elif message.count == 0:
            outcome = TerminalOutcome(status=TaskStatus.WARNING, error_message=NO_DATA_MESSAGE)
        else:
            outcome = TerminalOutcome(status=TaskStatus.COMPLETED, result_count=message.count)
        self._write_outcome(outcome)
        return outcome

    def _handle_error(self, message: ErrorMessage) -> TerminalOutcome | None:
        if message.is_auth_failure:
            self._session.invalidate(message.message or message.code, source="worker")
        else:
            if message.code == PARSE_ERROR:
                logger.warning("Task %d: %s (%r)", self.task_id, message.message, message.raw)
            self._append(
                LogEntry(
                    event_type="error",
                    level=message.level,
                    message=message.message,
                    metadata=_compact({"code": message.code, "raw": message.raw}),
                ),
            )
        if not message.terminal:
            return None
        outcome = TerminalOutcome(
            status=TaskStatus.FAILED,
            error_message=(
                f"{message.code}: {message.message}" if message.message else message.code
            ),
        )
        self._write_outcome(outcome)
        return outcome

    def _append(self, entry: LogEntry) -> None:
        self._task_store.append_log(self.task_id, entry)

    def _write_outcome(self, outcome: TerminalOutcome) -> None:
        applied = self._task_store.update_task_status(
            self.task_id,
            outcome.status,
            error_message=outcome.error_message,
            result_count=outcome.result_count,
        )
        if not applied:
            logger.warning(
                "Task %d already left running; %s not applied",
                self.task_id,
                outcome.status.value,
            )


def _compact(metadata: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in metadata.items() if value is not None}

"""Domain models for the spider task queue and worker executions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Worker execution lifecycle states."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"
    WARNING = "warning"

    @property
    def is_terminal(self) -> bool:
        return self is not TaskStatus.RUNNING


class QueueItemStatus(str, Enum):
    """Durable queue item lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class QueueMode(str, Enum):
    """In-memory queue processing mode."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"


class SupervisorState(str, Enum):
    """Single-slot worker supervisor states."""

    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class TaskType(str, Enum):
    NOTES = "notes"
    USER = "user"
    SEARCH = "search"


class SaveMode(str, Enum):
    EXCEL = "excel"
    MEDIA = "media"
    ALL = "all"


MEDIA_TYPES = ("video", "image")


@dataclass(slots=True)
class SaveOptions:
    """Where and how the worker persists scraped results."""

    mode: SaveMode = SaveMode.ALL
    excel_name: str | None = None
    media_types: tuple[str, ...] | None = None


@dataclass(slots=True)
class OutputPaths:
    media: str
    excel: str


@dataclass(slots=True)
class ProxySettings:
    enabled: bool = False
    url: str = "http://127.0.0.1:7890"

    @property
    def effective_url(self) -> str | None:
        return self.url if self.enabled and self.url else None


@dataclass(slots=True)
class RequestInterval:
    """Bounds in seconds for the worker's randomized delay between requests."""

    min: float = 1.0
    max: float = 3.0


@dataclass(slots=True)
class ExecutionSettings:
    """ConfigStore values merged into every dispatched execution."""

    paths: OutputPaths
    proxy: ProxySettings
    request_interval: RequestInterval


@dataclass(slots=True)
class QueueTaskRequest:
    """Enqueued unit of work; execution settings are resolved at dispatch."""

    task_type: TaskType
    params: dict[str, Any] = field(default_factory=dict)
    save_options: SaveOptions = field(default_factory=SaveOptions)


@dataclass(slots=True)
class SpiderConfig:
    """Complete, frozen configuration handed to one worker execution."""

    cookie: str
    task_type: TaskType
    params: dict[str, Any]
    save_options: SaveOptions
    paths: OutputPaths
    proxy: str | None = None
    request_interval: RequestInterval = field(default_factory=RequestInterval)


@dataclass(slots=True)
class TaskView:
    """Readable task row."""

    task_id: int
    task_type: str
    params: dict[str, Any]
    status: TaskStatus
    started_at: datetime
    completed_at: datetime | None
    error_message: str | None
    result_count: int
    config: dict[str, Any] | None


@dataclass(slots=True)
class LogEntry:
    """Input for one appended task log row."""

    event_type: str
    message: str
    level: str | None = None
    metadata: dict[str, Any] | None = None


@dataclass(slots=True)
class LogView:
    log_id: int
    task_id: int
    event_type: str
    level: str | None
    message: str
    created_at: datetime
    metadata: dict[str, Any] | None


@dataclass(slots=True)
class QueueItemView:
    """Readable queue item row."""

    item_id: int
    request: QueueTaskRequest
    priority: int
    status: QueueItemStatus
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    task_id: int | None
    error_message: str | None


@dataclass(slots=True)
class QueueStats:
    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.running + self.completed + self.failed


@dataclass(slots=True)
class QueueStatus:
    """Derived queue snapshot published to observers."""

    mode: QueueMode
    current_item: QueueItemView | None
    stats: QueueStats
    hold_reason: str | None = None


@dataclass(slots=True)
class ExecutionOutcome:
    """Terminal result of one supervised worker execution."""

    task_id: int
    status: TaskStatus
    error_message: str | None = None
    result_count: int = 0
    exit_code: int | None = None

    @property
    def succeeded(self) -> bool:
        return self.status in {TaskStatus.COMPLETED, TaskStatus.WARNING}


@dataclass(slots=True)
class UserInfo:
    user_id: str
    nickname: str
    red_id: str = ""
    avatar: str = ""


@dataclass(slots=True)
class CredentialValidation:
    valid: bool
    message: str
    user_info: UserInfo | None = None


@dataclass(slots=True)
class CredentialInvalidNotice:
    """Published when the credential stops being usable."""

    message: str
    source: str


@dataclass(slots=True)
class CredentialUpdatedNotice:
    """Published after a credential is stored or cleared."""

    has_credential: bool
    valid_until: datetime | None = None


@dataclass(slots=True)
class CredentialStatus:
    """Readable session state; never carries the full credential."""

    has_credential: bool
    valid: bool
    masked: str
    valid_until: datetime | None
    invalidated: bool
    invalid_reason: str | None
    user_info: UserInfo | None

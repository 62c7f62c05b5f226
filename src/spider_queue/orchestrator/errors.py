"""Exception hierarchy for queue, supervisor and settings operations."""

from __future__ import annotations


class SpiderError(RuntimeError):
    """Base error for spider-queue operations."""


class ConfigurationError(SpiderError, ValueError):
    """Invalid settings or task parameters, rejected before a worker is spawned."""


class AlreadyRunningError(SpiderError):
    """A worker execution is already active."""


class InvalidStateError(SpiderError):
    """Operation not permitted for the current status of the target row."""


class NotFoundError(SpiderError):
    """Referenced task or queue item does not exist."""


class WorkerStartError(SpiderError):
    """Worker process could not be spawned or fed its configuration."""

    def __init__(self, message: str, *, task_id: int | None = None) -> None:
        super().__init__(message)
        self.task_id = task_id

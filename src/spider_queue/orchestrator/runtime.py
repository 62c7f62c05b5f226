"""Explicit construction and lifecycle of the queue/supervisor runtime."""

from __future__ import annotations

import logging
import os
import secrets
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import IO

from spider_queue.config import Settings
from spider_queue.orchestrator.config_store import ConfigStore
from spider_queue.orchestrator.errors import AlreadyRunningError
from spider_queue.orchestrator.queue_manager import QueueManager
from spider_queue.orchestrator.queue_repository import QueueStore
from spider_queue.orchestrator.repository import TaskStore
from spider_queue.orchestrator.session import (
    CredentialCipher,
    CredentialVerifier,
    HttpCredentialVerifier,
    SessionManager,
    WorkerCredentialVerifier,
)
from spider_queue.orchestrator.settings_repository import SettingsRepository
from spider_queue.orchestrator.supervisor import ProcessSupervisor

if sys.platform == "win32":
    import msvcrt
else:
    import fcntl

logger = logging.getLogger(__name__)

LOCK_SUFFIX = ".lock"


class OwnerLock:
    """Exclusive OS file lock next to the database.

    A runtime that resolves stuck rows or spawns workers must own the
    database; another process's `running` rows are live, not stuck. The OS
    drops the lock when its holder exits.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.path = db_path.with_name(db_path.name + LOCK_SUFFIX)
        self._handle: IO[str] | None = None

    @property
    def held(self) -> bool:
        return self._handle is not None

    def acquire(self) -> None:
        """Take the lock or raise AlreadyRunningError; re-acquiring is a no-op."""

        if self._handle is not None:
            return
        handle = self.path.open("a+", encoding="utf-8")
        try:
            handle.seek(0)
            _lock_file(handle)
        except OSError as error:
            handle.close()
            raise AlreadyRunningError(
                f"Another spider-queue process is using {self.db_path}; "
                "wait for it to finish.",
            ) from error
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        self._handle = handle
        logger.debug("Acquired runtime lock %s", self.path)

    def release(self) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            handle.seek(0)
            _unlock_file(handle)
        finally:
            handle.close()


@dataclass(slots=True)
class SpiderRuntime:
    """All long-lived components, wired once and passed by reference."""

    settings: Settings
    task_store: TaskStore
    queue_store: QueueStore
    settings_repository: SettingsRepository
    config_store: ConfigStore
    session: SessionManager
    supervisor: ProcessSupervisor
    queue_manager: QueueManager
    owner_lock: OwnerLock

    def boot(self) -> int:
        """Own the database, migrate it and resolve rows left running by a dead process.

        Must run before any worker is started. Raises AlreadyRunningError while
        another runtime owns the database. Returns the number of tasks moved
        to `stopped`.
        """

        self.owner_lock.acquire()
        self.task_store.init_schema()
        fixed = self.task_store.fix_stuck_tasks()
        logger.info("Fixed %d stuck task(s) from previous session", fixed)
        return fixed

    def shutdown(self, timeout: float | None = None) -> None:
        """Pause the queue, stop any running worker, release DB engines and the lock."""

        try:
            self.queue_manager.stop_queue()
            if self.supervisor.is_running():
                self.supervisor.stop(timeout=timeout)
            self.queue_manager.close()
            self.task_store.close()
            self.queue_store.close()
            self.settings_repository.close()
        finally:
            self.owner_lock.release()


def build_runtime(settings: Settings) -> SpiderRuntime:
    settings.validate()
    settings.db_path.parent.mkdir(parents=True, exist_ok=True)
    task_store = TaskStore(settings.db_path)
    queue_store = QueueStore(settings.db_path)
    settings_repository = SettingsRepository(settings.db_path)
    session = SessionManager(
        settings_repository,
        cipher=CredentialCipher(_resolve_secret(settings)),
        verifier=_build_verifier(settings),
    )
    supervisor = ProcessSupervisor(
        task_store=task_store,
        session=session,
        worker_command=settings.worker.command,
        worker_cwd=settings.worker.cwd,
        stop_grace_seconds=settings.worker.stop_grace_seconds,
    )
    config_store = ConfigStore(settings_repository, data_dir=settings.data_dir)
    queue_manager = QueueManager(
        queue_store=queue_store,
        supervisor=supervisor,
        config_store=config_store,
        session=session,
    )
    return SpiderRuntime(
        settings=settings,
        task_store=task_store,
        queue_store=queue_store,
        settings_repository=settings_repository,
        config_store=config_store,
        session=session,
        supervisor=supervisor,
        queue_manager=queue_manager,
        owner_lock=OwnerLock(settings.db_path),
    )


def _build_verifier(settings: Settings) -> CredentialVerifier:
    if settings.credential.validate_url:
        return HttpCredentialVerifier(
            settings.credential.validate_url,
            timeout_seconds=settings.credential.validate_timeout_seconds,
        )
    return WorkerCredentialVerifier(
        settings.worker.command,
        timeout_seconds=settings.credential.validate_timeout_seconds,
        cwd=str(settings.worker.cwd) if settings.worker.cwd is not None else None,
    )


def _resolve_secret(settings: Settings) -> str:
    """Configured secret, else a per-installation key file created on first use."""

    if settings.credential.secret_key:
        return settings.credential.secret_key
    return _load_or_create_secret(settings.secret_key_path)


def _load_or_create_secret(path: Path) -> str:
    if path.exists():
        return path.read_text("utf-8").strip()
    path.parent.mkdir(parents=True, exist_ok=True)
    secret = secrets.token_urlsafe(32)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(secret)
    logger.info("Created credential key file %s", path)
    return secret


def _lock_file(handle: IO[str]) -> None:
    if sys.platform == "win32":
        msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
    else:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)


def _unlock_file(handle: IO[str]) -> None:
    if sys.platform == "win32":
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
    else:
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

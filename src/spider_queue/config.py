"""Runtime configuration for the spider task queue."""

from __future__ import annotations

import os
import shlex
import sys
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse


def _default_worker_command() -> str:
    return shlex.join([sys.executable, "-m", "spider_queue.orchestrator.backend.echo_worker"])


@dataclass(slots=True)
class WorkerSettings:
    """How the external worker process is launched and stopped."""

    command: str = field(default_factory=_default_worker_command)
    cwd: Path | None = None
    stop_grace_seconds: float = 5.0


@dataclass(slots=True)
class CredentialSettings:
    """Credential encryption and validation settings."""

    secret_key: str | None = None
    validate_url: str | None = None
    validate_timeout_seconds: float = 30.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".spider_queue.db")
    data_dir: Path = Path("spider-data")
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    credential: CredentialSettings = field(default_factory=CredentialSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        worker_cwd = os.getenv("SPIDER_QUEUE_WORKER_CWD", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("SPIDER_QUEUE_DB_PATH", ".spider_queue.db")),
            data_dir=Path(os.getenv("SPIDER_QUEUE_DATA_DIR", "spider-data")),
            worker=WorkerSettings(
                command=os.getenv("SPIDER_QUEUE_WORKER_COMMAND", "").strip()
                or _default_worker_command(),
                cwd=Path(worker_cwd) if worker_cwd else None,
                stop_grace_seconds=float(os.getenv("SPIDER_QUEUE_STOP_GRACE_SECONDS", "5")),
            ),
            credential=CredentialSettings(
                secret_key=os.getenv("SPIDER_QUEUE_SECRET_KEY") or None,
                validate_url=os.getenv("SPIDER_QUEUE_VALIDATE_URL", "").strip() or None,
                validate_timeout_seconds=float(
                    os.getenv("SPIDER_QUEUE_VALIDATE_TIMEOUT_SECONDS", "30"),
                ),
            ),
        )

    @property
    def secret_key_path(self) -> Path:
        return self.data_dir / "secret.key"

    def validate(self) -> None:
        """Raise ValueError for settings that cannot work."""

        if not self.worker.command.strip():
            raise ValueError("SPIDER_QUEUE_WORKER_COMMAND must not be empty.")
        if self.worker.stop_grace_seconds < 0:
            raise ValueError("SPIDER_QUEUE_STOP_GRACE_SECONDS must be >= 0.")
        if self.worker.cwd is not None and not self.worker.cwd.is_dir():
            raise ValueError(f"SPIDER_QUEUE_WORKER_CWD is not a directory: {self.worker.cwd}")
        if self.credential.validate_timeout_seconds <= 0:
            raise ValueError("SPIDER_QUEUE_VALIDATE_TIMEOUT_SECONDS must be > 0.")
        if self.credential.validate_url is not None:
            parsed = urlparse(self.credential.validate_url)
            if parsed.scheme not in {"http", "https"} or not parsed.netloc:
                raise ValueError(
                    f"Invalid SPIDER_QUEUE_VALIDATE_URL: {self.credential.validate_url!r}. "
                    "Expected an absolute URL with http:// or https:// scheme.",
                )

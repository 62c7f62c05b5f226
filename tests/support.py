"""Builders shared by the test modules."""

from __future__ import annotations

import shlex
import sys
from pathlib import Path
from typing import Any

from spider_queue.config import CredentialSettings, Settings, WorkerSettings
from spider_queue.orchestrator.models import (
    OutputPaths,
    QueueTaskRequest,
    RequestInterval,
    SaveOptions,
    SpiderConfig,
    TaskType,
)

FAKE_WORKER = Path(__file__).with_name("fake_worker.py")
FAKE_WORKER_COMMAND = shlex.join([sys.executable, str(FAKE_WORKER)])
TEST_SECRET = "test-secret"
GOOD_COOKIE = "good-cookie=1; a1=abc"


def notes_request(script: str = "ok", **params: Any) -> QueueTaskRequest:
    return QueueTaskRequest(
        task_type=TaskType.NOTES,
        params={
            "note_urls": ["https://example.com/explore/1"],
            "script": script,
            **params,
        },
    )


def spider_config(script: str = "ok", *, cookie: str = GOOD_COOKIE, **params: Any) -> SpiderConfig:
    request = notes_request(script, **params)
    return SpiderConfig(
        cookie=cookie,
        task_type=request.task_type,
        params=request.params,
        save_options=SaveOptions(),
        paths=OutputPaths(media="/tmp/media", excel="/tmp/excel"),
        request_interval=RequestInterval(min=0.0, max=0.0),
    )


def make_settings(tmp_path: Path, *, worker_command: str = FAKE_WORKER_COMMAND) -> Settings:
    return Settings(
        db_path=tmp_path / "spider.db",
        data_dir=tmp_path / "data",
        worker=WorkerSettings(command=worker_command, stop_grace_seconds=1.0),
        credential=CredentialSettings(secret_key=TEST_SECRET, validate_timeout_seconds=10.0),
    )

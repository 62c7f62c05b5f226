"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path

import pytest
from support import FAKE_WORKER_COMMAND, GOOD_COOKIE, TEST_SECRET, make_settings

from spider_queue.orchestrator.runtime import SpiderRuntime, build_runtime


@pytest.fixture()
def runtime_factory(tmp_path: Path) -> Iterator[Callable[..., SpiderRuntime]]:
    """Build booted runtimes on the test database; all are shut down afterwards."""

    created: list[SpiderRuntime] = []

    def _build(
        *,
        worker_command: str = FAKE_WORKER_COMMAND,
        cookie: str | None = GOOD_COOKIE,
    ) -> SpiderRuntime:
        runtime = build_runtime(make_settings(tmp_path, worker_command=worker_command))
        runtime.boot()
        if cookie is not None:
            runtime.session.set_credential(cookie)
        created.append(runtime)
        return runtime

    yield _build
    for runtime in created:
        runtime.shutdown(timeout=5)


@pytest.fixture()
def runtime(runtime_factory: Callable[..., SpiderRuntime]) -> SpiderRuntime:
    return runtime_factory()


@pytest.fixture()
def cli_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point `Settings.from_env` at the test database and fake worker."""

    db_path = tmp_path / "cli.db"
    monkeypatch.setenv("SPIDER_QUEUE_DB_PATH", str(db_path))
    monkeypatch.setenv("SPIDER_QUEUE_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("SPIDER_QUEUE_WORKER_COMMAND", FAKE_WORKER_COMMAND)
    monkeypatch.setenv("SPIDER_QUEUE_SECRET_KEY", TEST_SECRET)
    monkeypatch.setenv("SPIDER_QUEUE_STOP_GRACE_SECONDS", "1")
    monkeypatch.delenv("SPIDER_QUEUE_VALIDATE_URL", raising=False)
    return db_path

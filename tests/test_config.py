from __future__ import annotations

from pathlib import Path

import allure
import pytest

from spider_queue.config import CredentialSettings, Settings, WorkerSettings

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


def test_from_env_reads_spider_queue_variables(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("SPIDER_QUEUE_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("SPIDER_QUEUE_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("SPIDER_QUEUE_WORKER_COMMAND", "node worker.js")
    monkeypatch.setenv("SPIDER_QUEUE_WORKER_CWD", str(tmp_path))
    monkeypatch.setenv("SPIDER_QUEUE_STOP_GRACE_SECONDS", "2.5")
    monkeypatch.setenv("SPIDER_QUEUE_SECRET_KEY", "s3cret")
    monkeypatch.setenv("SPIDER_QUEUE_VALIDATE_URL", "https://validator.example.com/me")
    monkeypatch.setenv("SPIDER_QUEUE_VALIDATE_TIMEOUT_SECONDS", "4")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "env.db"
    assert settings.data_dir == tmp_path / "data"
    assert settings.secret_key_path == tmp_path / "data" / "secret.key"
    assert settings.worker == WorkerSettings(
        command="node worker.js",
        cwd=tmp_path,
        stop_grace_seconds=2.5,
    )
    assert settings.credential == CredentialSettings(
        secret_key="s3cret",
        validate_url="https://validator.example.com/me",
        validate_timeout_seconds=4.0,
    )
    settings.validate()


def test_explicit_db_path_wins_over_environment(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("SPIDER_QUEUE_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.delenv("SPIDER_QUEUE_WORKER_COMMAND", raising=False)

    settings = Settings.from_env(db_path=tmp_path / "cli.db")

    assert settings.db_path == tmp_path / "cli.db"
    assert "spider_queue.orchestrator.backend.echo_worker" in settings.worker.command


@pytest.mark.parametrize(
    ("settings", "match"),
    [
        (Settings(worker=WorkerSettings(command="  ")), "WORKER_COMMAND"),
        (Settings(worker=WorkerSettings(stop_grace_seconds=-1)), "STOP_GRACE_SECONDS"),
        (Settings(worker=WorkerSettings(cwd=Path("/nonexistent/dir"))), "WORKER_CWD"),
        (
            Settings(credential=CredentialSettings(validate_timeout_seconds=0)),
            "VALIDATE_TIMEOUT_SECONDS",
        ),
        (
            Settings(credential=CredentialSettings(validate_url="validator.local/me")),
            "Invalid SPIDER_QUEUE_VALIDATE_URL",
        ),
    ],
)
def test_validate_rejects_unusable_settings(settings: Settings, match: str) -> None:
    with pytest.raises(ValueError, match=match):
        settings.validate()

from __future__ import annotations

import io
import json
import subprocess
import sys

import allure
import pytest

from spider_queue.orchestrator.backend import build_worker_argv, echo_worker, terminate_process
from spider_queue.orchestrator.protocol import DoneMessage, ErrorMessage, decode_worker_line

pytestmark = [
    allure.epic("Worker Supervision"),
    allure.feature("Worker Process"),
]


def test_build_worker_argv_splits_command_and_appends_args() -> None:
    argv = build_worker_argv("node 'my worker.js' --fast", "validate-cookie", os_name="posix")

    assert argv == ["node", "my worker.js", "--fast", "validate-cookie"]


def test_build_worker_argv_rejects_empty_command() -> None:
    with pytest.raises(ValueError, match="empty"):
        build_worker_argv("   ")


def test_terminate_process_stops_sleeping_child() -> None:
    process = subprocess.Popen(  # noqa: S603
        [sys.executable, "-c", "import time; time.sleep(30)"],
        stdout=subprocess.DEVNULL,
        text=True,
    )

    exit_code = terminate_process(process, grace_seconds=5)

    assert exit_code is not None
    assert exit_code != 0
    assert terminate_process(process) == exit_code


def _run_echo_worker(
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
    stdin: str,
    argv: list[str],
) -> tuple[int, list[dict]]:
    monkeypatch.setattr(sys, "stdin", io.StringIO(stdin))
    exit_code = echo_worker.main(argv)
    lines = [json.loads(line) for line in capsys.readouterr().out.splitlines() if line.strip()]
    return exit_code, lines


def test_echo_worker_runs_search_task(
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    config = {
        "cookie": "a1=abc",
        "taskType": "search",
        "params": {"query": "tea", "require_num": 2},
        "saveOptions": {"mode": "excel"},
        "paths": {"media": "/tmp/m", "excel": "/tmp/e"},
        "requestInterval": {"min": 0, "max": 0},
    }

    exit_code, lines = _run_echo_worker(monkeypatch, capsys, json.dumps(config) + "\n", [])

    assert exit_code == 0
    assert [line["type"] for line in lines] == ["log", "progress", "progress", "log", "done"]
    assert lines[-1]["count"] == 2
    assert lines[-1]["files"] == []
    assert decode_worker_line(json.dumps(lines[-1])) == DoneMessage(success=True, count=2)


def test_echo_worker_requires_cookie(
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    config = {"cookie": "", "taskType": "notes", "params": {}}

    exit_code, lines = _run_echo_worker(monkeypatch, capsys, json.dumps(config) + "\n", [])

    assert exit_code == 1
    message = decode_worker_line(json.dumps(lines[-1]))
    assert isinstance(message, ErrorMessage)
    assert message.is_auth_failure
    assert message.terminal


def test_echo_worker_validates_cookie(
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    _, accepted = _run_echo_worker(monkeypatch, capsys, "a1=abc\n", ["validate-cookie"])
    _, rejected = _run_echo_worker(monkeypatch, capsys, "a1=expired\n", ["validate-cookie"])

    assert accepted[-1]["valid"] is True
    assert accepted[-1]["userInfo"]["nickname"] == "demo-user"
    assert rejected[-1] == {
        "type": "validation_result",
        "valid": False,
        "message": "Cookie is invalid or expired",
    }

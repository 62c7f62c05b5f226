"""Local demo worker speaking the stdout JSON-lines protocol."""

from __future__ import annotations

import argparse
import hashlib
import json
import random
import sys
import time
from pathlib import Path
from typing import Any

VALIDATE_COOKIE_COMMAND = "validate-cookie"
DEFAULT_RESULT_COUNT = 3


def main(argv: list[str] | None = None) -> int:
    """Run one deterministic demo execution, or validate a cookie."""

    parser = argparse.ArgumentParser()
    parser.add_argument("command", nargs="?", choices=[VALIDATE_COOKIE_COMMAND])
    args = parser.parse_args(argv)

    if args.command == VALIDATE_COOKIE_COMMAND:
        return _validate_cookie(sys.stdin.readline().strip())

    raw = sys.stdin.readline()
    try:
        config = json.loads(raw)
    except json.JSONDecodeError as error:
        _emit(type="error", code="BAD_CONFIG", message=str(error), terminal=True)
        return 2
    return _run(config)


def _run(config: dict[str, Any]) -> int:
    if not config.get("cookie"):
        _emit(type="error", code="LOGIN_REQUIRED", message="No cookie provided", terminal=True)
        return 1

    targets = _targets(config.get("taskType"), config.get("params") or {})
    interval = config.get("requestInterval") or {}
    low = float(interval.get("min", 0.0))
    high = float(interval.get("max", low))
    media_dir = Path((config.get("paths") or {}).get("media", "."))
    save_mode = (config.get("saveOptions") or {}).get("mode", "all")

    _emit(type="log", level="INFO", message=f"Starting {config.get('taskType')} task")
    files: list[str] = []
    for index, target in enumerate(targets, start=1):
        time.sleep(random.uniform(low, high))  # noqa: S311
        note_id = hashlib.sha1(target.encode("utf-8")).hexdigest()[:12]  # noqa: S324
        _emit(
            type="progress",
            current=index,
            total=len(targets),
            progress=round(index * 100 / len(targets), 1),
            title=target,
            noteId=note_id,
        )
        if save_mode in {"media", "all"}:
            file_path = str(media_dir / f"{note_id}.jpg")
            files.append(file_path)
            _emit(type="media", action="download", file=file_path, noteId=note_id, title=target)
    _emit(type="log", level="INFO", message=f"Processed {len(targets)} note(s)")
    _emit(type="done", success=True, count=len(targets), files=files)
    return 0


def _targets(task_type: object, params: dict[str, Any]) -> list[str]:
    if task_type == "notes":
        return [str(url) for url in params.get("note_urls") or []]
    if task_type == "user":
        return [f"{params.get('user_url')}#note-{n}" for n in range(1, DEFAULT_RESULT_COUNT + 1)]
    count = int(params.get("require_num") or DEFAULT_RESULT_COUNT)
    return [f"search:{params.get('query')}#{n}" for n in range(1, count + 1)]


def _validate_cookie(cookie: str) -> int:
    if not cookie or "expired" in cookie:
        _emit(type="validation_result", valid=False, message="Cookie is invalid or expired")
        return 0
    digest = hashlib.sha256(cookie.encode("utf-8")).hexdigest()
    _emit(
        type="validation_result",
        valid=True,
        message="Cookie is valid",
        userInfo={
            "userId": digest[:16],
            "nickname": "demo-user",
            "redId": digest[16:24],
            "avatar": "",
        },
    )
    return 0


def _emit(**payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, ensure_ascii=False) + "\n")
    sys.stdout.flush()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())

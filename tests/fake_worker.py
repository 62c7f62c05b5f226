"""Scripted worker for supervisor and queue tests.

The behaviour is chosen by ``params["script"]`` in the config read from stdin.
"""

from __future__ import annotations

import json
import sys
import time


def emit(**payload: object) -> None:
    sys.stdout.write(json.dumps(payload) + "\n")
    sys.stdout.flush()


def validate_cookie() -> int:
    cookie = sys.stdin.readline().strip()
    if cookie.startswith("good"):
        emit(type="log", message="checking")
        emit(
            type="validation_result",
            valid=True,
            message="ok",
            userInfo={"userId": "u-1", "nickname": "tester", "redId": "r-1", "avatar": ""},
        )
    else:
        emit(type="validation_result", valid=False, message="cookie rejected")
    return 0


def run(config: dict) -> int:  # noqa: C901, PLR0911
    params = config.get("params") or {}
    script = params.get("script", "ok")
    urls = params.get("note_urls") or []
    message = f"received {config['taskType']} with {len(urls)} url(s)"
    emit(type="log", level="INFO", message=message)

    if script == "ok":
        emit(type="progress", current=3, total=10, progress=30.0)
        emit(type="done", success=True, count=3, files=[])
        return 0
    if script == "slow":
        time.sleep(float(params.get("sleep", 0.3)))
        emit(type="done", success=True, count=1)
        return 0
    if script == "media":
        emit(type="media", action="download", file="/tmp/a.jpg", noteId="n1", title="A")
        emit(type="done", success=True, count=1, files=["/tmp/a.jpg"])
        return 0
    if script == "empty":
        emit(type="done", success=True, count=0)
        return 0
    if script == "api_fail":
        emit(type="done", success=True, count=0, api_success=False, api_message="account anomaly")
        return 0
    if script == "auth_error":
        emit(type="error", code="COOKIE_EXPIRED", message="login again", terminal=True)
        return 1
    if script == "fatal_error":
        emit(type="error", code="SITE_DOWN", message="upstream unavailable", terminal=True)
        return 1
    if script == "garbage":
        sys.stdout.write("this is not json\n")
        sys.stdout.flush()
        emit(type="done", success=True, count=1)
        return 0
    if script == "after_done":
        emit(type="done", success=True, count=2)
        emit(type="log", message="late line")
        return 0
    if script == "crash":
        sys.stderr.write("boom\n")
        sys.stderr.flush()
        return 3
    if script == "clean_exit":
        return 0
    if script == "hang":
        while True:
            time.sleep(0.1)
    emit(type="error", code="UNKNOWN_SCRIPT", message=script, terminal=True)
    return 1


def main() -> int:
    if len(sys.argv) > 1 and sys.argv[1] == "validate-cookie":
        return validate_cookie()
    return run(json.loads(sys.stdin.readline()))


if __name__ == "__main__":
    sys.exit(main())

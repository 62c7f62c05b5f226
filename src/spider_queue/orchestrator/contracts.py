"""JSON contracts for queued requests and worker input, with boundary validation."""

from __future__ import annotations

from typing import Any
from urllib.parse import urlparse

from spider_queue.orchestrator.errors import ConfigurationError
from spider_queue.orchestrator.models import (
    MEDIA_TYPES,
    ExecutionSettings,
    OutputPaths,
    QueueTaskRequest,
    RequestInterval,
    SaveMode,
    SaveOptions,
    SpiderConfig,
    TaskType,
)


def request_to_payload(request: QueueTaskRequest) -> dict[str, Any]:
    """Serialize a queued request as stored in `queue_items.task_config_json`."""

    return {
        "taskType": request.task_type.value,
        "params": request.params,
        "saveOptions": _save_options_payload(request.save_options),
    }


def request_from_payload(payload: dict[str, Any], *, validate: bool = True) -> QueueTaskRequest:
    """Parse a queued request payload; params are checked unless `validate` is False."""

    if not isinstance(payload, dict):
        raise ConfigurationError("Task configuration must be a JSON object.")
    task_type = _parse_task_type(payload.get("taskType"))
    params = payload.get("params", {})
    if not isinstance(params, dict):
        raise ConfigurationError("Task params must be a JSON object.")
    raw_save = payload.get("saveOptions") or {}
    if not isinstance(raw_save, dict):
        raise ConfigurationError("saveOptions must be a JSON object.")
    request = QueueTaskRequest(
        task_type=task_type,
        params=dict(params),
        save_options=_parse_save_options(raw_save),
    )
    if validate:
        validate_request(request)
    return request


def validate_request(request: QueueTaskRequest) -> None:
    """Raise ConfigurationError when task-type specific params are malformed."""

    params = request.params
    if request.task_type == TaskType.NOTES:
        urls = params.get("note_urls")
        if not isinstance(urls, list) or not urls:
            raise ConfigurationError("notes task requires a non-empty 'note_urls' list.")
        for url in urls:
            _validate_http_url(url, field_name="note_urls")
    elif request.task_type == TaskType.USER:
        _validate_http_url(params.get("user_url"), field_name="user_url")
    elif request.task_type == TaskType.SEARCH:
        query = params.get("query")
        if not isinstance(query, str) or not query.strip():
            raise ConfigurationError("search task requires a non-empty 'query'.")
        require_num = params.get("require_num")
        if require_num is not None and (
            isinstance(require_num, bool) or not isinstance(require_num, int) or require_num <= 0
        ):
            raise ConfigurationError("'require_num' must be a positive integer.")

    media_types = request.save_options.media_types
    if media_types is not None:
        unknown = sorted(set(media_types) - set(MEDIA_TYPES))
        if unknown:
            raise ConfigurationError(f"Unsupported media types: {', '.join(unknown)}")


def build_spider_config(
    request: QueueTaskRequest,
    *,
    settings: ExecutionSettings,
    cookie: str,
) -> SpiderConfig:
    """Merge a queued request with current execution settings and credential."""

    return SpiderConfig(
        cookie=cookie,
        task_type=request.task_type,
        params=dict(request.params),
        save_options=request.save_options,
        paths=OutputPaths(media=settings.paths.media, excel=settings.paths.excel),
        proxy=settings.proxy.effective_url,
        request_interval=RequestInterval(
            min=settings.request_interval.min,
            max=settings.request_interval.max,
        ),
    )


def validate_spider_config(config: SpiderConfig) -> None:
    if not config.cookie.strip():
        raise ConfigurationError("Credential is empty; set a cookie before starting a task.")
    if not config.paths.media.strip() or not config.paths.excel.strip():
        raise ConfigurationError("Output paths for media and excel must be non-empty.")
    validate_request(
        QueueTaskRequest(
            task_type=config.task_type,
            params=config.params,
            save_options=config.save_options,
        ),
    )


def config_to_payload(config: SpiderConfig) -> dict[str, Any]:
    """Serialize the worker input object written to the worker's stdin."""

    return {
        "cookie": config.cookie,
        **config_snapshot(config),
        "taskType": config.task_type.value,
        "params": config.params,
    }


def config_snapshot(config: SpiderConfig) -> dict[str, Any]:
    """Non-secret part of the config, persisted with the task."""

    return {
        "saveOptions": _save_options_payload(config.save_options),
        "paths": {"media": config.paths.media, "excel": config.paths.excel},
        "proxy": config.proxy,
        "requestInterval": {
            "min": config.request_interval.min,
            "max": config.request_interval.max,
        },
    }


def _save_options_payload(options: SaveOptions) -> dict[str, Any]:
    payload: dict[str, Any] = {"mode": options.mode.value}
    if options.excel_name:
        payload["excelName"] = options.excel_name
    if options.media_types is not None:
        payload["mediaTypes"] = list(options.media_types)
    return payload


def _parse_task_type(value: object) -> TaskType:
    try:
        return TaskType(value)
    except ValueError as error:
        allowed = ", ".join(item.value for item in TaskType)
        raise ConfigurationError(
            f"Unsupported task type {value!r}; expected one of: {allowed}",
        ) from error


def _parse_save_options(payload: dict[str, Any]) -> SaveOptions:
    try:
        mode = SaveMode(payload.get("mode", SaveMode.ALL.value))
    except ValueError as error:
        raise ConfigurationError(f"Unsupported save mode: {payload.get('mode')!r}") from error
    excel_name = payload.get("excelName")
    if excel_name is not None and not isinstance(excel_name, str):
        raise ConfigurationError("excelName must be a string.")
    media_types = payload.get("mediaTypes")
    if media_types is not None:
        if not isinstance(media_types, list) or not all(isinstance(v, str) for v in media_types):
            raise ConfigurationError("mediaTypes must be a list of strings.")
        media_types = tuple(media_types)
    return SaveOptions(mode=mode, excel_name=excel_name or None, media_types=media_types)


def _validate_http_url(value: object, *, field_name: str) -> None:
    if not isinstance(value, str):
        raise ConfigurationError(f"'{field_name}' must contain URL strings.")
    parsed = urlparse(value.strip())
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ConfigurationError(
            f"Invalid URL in '{field_name}': {value!r}. "
            "Expected an absolute URL with http:// or https:// scheme.",
        )

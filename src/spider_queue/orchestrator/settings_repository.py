"""Key-value JSON settings persisted next to the queue tables."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from sqlmodel import Session

from spider_queue.storage.common import build_sqlite_engine, to_db_datetime, utc_now
from spider_queue.storage.sqlmodel_models import AppSetting


class SettingsRepository:
    """Read/write JSON values under fixed keys in `app_settings`."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path)

    def close(self) -> None:
        self.engine.dispose()

    def get(self, key: str) -> Any | None:
        with Session(self.engine) as session:
            row = session.get(AppSetting, key)
            if row is None:
                return None
            return json.loads(row.value_json)

    def set(self, key: str, value: Any) -> None:
        now = to_db_datetime(utc_now())
        payload = json.dumps(value, ensure_ascii=False, sort_keys=True)
        with Session(self.engine) as session:
            row = session.get(AppSetting, key)
            if row is None:
                row = AppSetting(key=key, value_json=payload, updated_at=now)
            else:
                row.value_json = payload
                row.updated_at = now
            session.add(row)
            session.commit()

    def delete(self, key: str) -> None:
        with Session(self.engine) as session:
            row = session.get(AppSetting, key)
            if row is None:
                return
            session.delete(row)
            session.commit()

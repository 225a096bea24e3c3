from __future__ import annotations

import asyncio
import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Tuple, Union

from .env import setup_logger
from .events import NormalizedEvent

logger = setup_logger("slackscribe.writer")

EVENTS_FILENAME = "events.jsonl"


def extract_date_parts(value: Any) -> Tuple[str, str, str]:
    """
    logged_at -> (YYYY, MM, DD). ISO strings keep their own (local) date;
    bare epoch numbers are read as UTC; anything else means "today".
    """
    iso = None
    if isinstance(value, str) and "T" in value:
        iso = value
    elif value not in (None, ""):
        try:
            iso = datetime.fromtimestamp(float(value), tz=timezone.utc).isoformat()
        except Exception:
            iso = None
    if iso is None:
        iso = datetime.now(timezone.utc).isoformat()

    parts = iso.split("T", 1)[0].split("-")
    year = parts[0] if len(parts) > 0 and parts[0] else "1970"
    month = parts[1] if len(parts) > 1 and parts[1] else "01"
    day = parts[2] if len(parts) > 2 and parts[2] else "01"
    return year, month.zfill(2), day.zfill(2)


class JsonlWriter:
    """
    Append-only, date/source partitioned event log:

        <data_dir>/<YYYY>/<MM>/<DD>/<source>/events.jsonl

    Stateless between calls, so one instance can serve every session.
    """

    def __init__(self, data_dir: Union[str, os.PathLike]):
        self.data_dir = Path(data_dir)

    def partition_path(self, record: Dict[str, Any]) -> Path:
        year, month, day = extract_date_parts(record.get("logged_at"))
        return self.data_dir / year / month / day / str(record.get("source") or "unknown") / EVENTS_FILENAME

    async def append(self, event: Union[NormalizedEvent, Dict[str, Any]]) -> Dict[str, Any]:
        """Persist one event; returns the record exactly as written."""
        record = event.to_record() if isinstance(event, NormalizedEvent) else dict(event)
        logged_at = record.get("logged_at")
        if not isinstance(logged_at, str) or not logged_at.strip():
            record["logged_at"] = datetime.now(timezone.utc).isoformat()

        path = self.partition_path(record)
        line = json.dumps(record, ensure_ascii=False, separators=(",", ":")) + "\n"
        await asyncio.to_thread(self._append_line, path, line)
        return record

    @staticmethod
    def _append_line(path: Path, line: str, attempts: int = 2) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        for attempt in range(attempts):
            try:
                with open(path, "a", encoding="utf-8") as f:
                    f.write(line)
                return
            except FileNotFoundError:
                if attempt == attempts - 1:
                    raise
                logger.warning(f"Partition vanished, recreating {path.parent}")
                path.parent.mkdir(parents=True, exist_ok=True)

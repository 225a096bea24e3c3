"""
reader.py

Read side of the event log, as consumed by the dashboard stream.

Readers treat the log as append-only and re-scannable from offset zero:
malformed lines are skipped, missing days/partitions read as empty, and
records are deduped by uid and ordered by (ts or logged_at, uid).
"""

from __future__ import annotations

import hashlib
import json
import os
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from .jsonl_writer import EVENTS_FILENAME

IGNORED_DIRS = {"summaries"}


@dataclass
class TimelineEvent:
    uid: str
    source: str
    ts: Optional[str]
    logged_at: Optional[str]
    raw: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["loggedAt"] = d.pop("logged_at")
        return d


@dataclass
class DailyEvents:
    events: List[TimelineEvent]
    by_source: Dict[str, int]


def read_jsonl_file(path: Union[str, os.PathLike]) -> List[Dict[str, Any]]:
    records: List[Dict[str, Any]] = []
    try:
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    parsed = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if isinstance(parsed, dict):
                    records.append(parsed)
    except FileNotFoundError:
        return []
    return records


def _synthetic_uid(raw: Dict[str, Any]) -> str:
    digest = hashlib.sha1(json.dumps(raw, sort_keys=True, ensure_ascii=False).encode("utf-8")).hexdigest()
    return f"synthetic:{digest[:16]}"


def normalize_record(raw: Dict[str, Any], fallback_source: str) -> TimelineEvent:
    uid = raw.get("uid") if isinstance(raw.get("uid"), str) and raw.get("uid") else _synthetic_uid(raw)
    source = raw.get("source") if isinstance(raw.get("source"), str) and raw.get("source") else fallback_source
    ts = raw.get("ts") if isinstance(raw.get("ts"), str) else None
    logged_at = raw.get("logged_at")
    if not isinstance(logged_at, str):
        logged_at = raw.get("loggedAt") if isinstance(raw.get("loggedAt"), str) else None
    return TimelineEvent(uid=uid, source=source, ts=ts, logged_at=logged_at, raw=raw)


def _epoch_of(value: Optional[str]) -> float:
    if not value:
        return float("inf")
    try:
        moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return float("inf")
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.timestamp()


def sort_key(event: TimelineEvent) -> Tuple[float, str]:
    primary = _epoch_of(event.ts)
    if primary == float("inf"):
        primary = _epoch_of(event.logged_at)
    return primary, event.uid


def day_dir(data_dir: Union[str, os.PathLike], date: str) -> Path:
    parts = date.split("-")
    if len(parts) != 3 or not all(p.isdigit() for p in parts):
        raise ValueError(f"date must be YYYY-MM-DD, got {date!r}")
    year, month, day = parts
    return Path(data_dir) / year / month.zfill(2) / day.zfill(2)


def list_sources(root: Path) -> List[str]:
    try:
        return sorted(e.name for e in os.scandir(root) if e.is_dir() and e.name not in IGNORED_DIRS)
    except FileNotFoundError:
        return []


def read_daily_events(data_dir: Union[str, os.PathLike], date: str) -> DailyEvents:
    root = day_dir(data_dir, date)
    seen: set[str] = set()
    events: List[TimelineEvent] = []
    by_source: Dict[str, int] = {}

    for source in list_sources(root):
        for raw in read_jsonl_file(root / source / EVENTS_FILENAME):
            event = normalize_record(raw, source)
            if event.uid in seen:
                continue
            seen.add(event.uid)
            events.append(event)
            by_source[event.source] = by_source.get(event.source, 0) + 1

    events.sort(key=sort_key)
    return DailyEvents(events=events, by_source=by_source)

"""
normalize.py

Slack wire values -> canonical events.

- Slack timestamps ("1711111111.000200") are epoch seconds with a
  microsecond-ish fraction. The canonical form is always integer seconds +
  exactly 6 fractional digits; it is what UIDs are built from.
- Event times are rendered as ISO-8601 in a fixed target timezone, always
  with an explicit offset.
- Rich-text `blocks` are flattened to the concatenation of their text leaves.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional
from zoneinfo import ZoneInfo

from .events import (
    EventDetail,
    EventSource,
    NormalizedEvent,
    SlackPostDetail,
    SlackReactionDetail,
)

DEFAULT_TIMEZONE = "Asia/Tokyo"

_MICRO = Decimal("0.000001")
# 9999-12-31T00:00:00Z, so every zone offset still lands inside datetime range
_MAX_EPOCH = Decimal(253402214400)


# -----------------------------
# Timestamps
# -----------------------------

def normalized_timestamp(ts: Optional[str]) -> Optional[str]:
    """'1711111111.0002' -> '1711111111.000200'; None when not numeric."""
    if ts is None:
        return None
    s = str(ts).strip()
    if not s:
        return None
    try:
        value = Decimal(s)
    except InvalidOperation:
        return None
    if not value.is_finite() or value < 0 or value >= _MAX_EPOCH:
        return None
    value = value.quantize(_MICRO, rounding=ROUND_HALF_UP)
    seconds = int(value)
    micros = int((value - seconds) * 1_000_000)
    return f"{seconds}.{micros:06d}"


def synthesize_timestamp(now: datetime) -> str:
    """Clock-derived stand-in for a missing server ts: `epochSeconds.millis000`."""
    epoch_seconds = int(now.timestamp())
    millis = now.microsecond // 1000
    return f"{epoch_seconds}.{millis:03d}000"


def resolve_message_ts(ts: Optional[str], now: datetime) -> str:
    return normalized_timestamp(ts) or normalized_timestamp(synthesize_timestamp(now)) or "0.000000"


def format_in_timezone(moment: datetime, tz_name: str) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(_zone(tz_name)).isoformat(timespec="seconds")


def slack_ts_to_iso(ts: str, tz_name: str) -> str:
    value = Decimal(normalized_timestamp(ts) or "0")
    moment = datetime.fromtimestamp(float(value), tz=timezone.utc)
    return format_in_timezone(moment, tz_name)


def _zone(tz_name: str):
    try:
        return ZoneInfo(tz_name)
    except Exception:
        return ZoneInfo(DEFAULT_TIMEZONE)


# -----------------------------
# Rich text blocks
# -----------------------------

def from_blocks(blocks: Any) -> str:
    if isinstance(blocks, str):
        try:
            blocks = json.loads(blocks)
        except Exception:
            return ""
    if not isinstance(blocks, list):
        return ""

    texts: list[str] = []

    def visit(node: Any) -> None:
        if not isinstance(node, dict):
            return
        if node.get("type") == "text" and isinstance(node.get("text"), str):
            texts.append(node["text"])
            return
        if node.get("type") == "rich_text_section":
            for child in node.get("elements") or []:
                visit(child)

    for block in blocks:
        if isinstance(block, dict) and isinstance(block.get("elements"), list):
            for node in block["elements"]:
                visit(node)
    return "".join(texts)


def parse_blocks(blocks: Any) -> Any:
    if isinstance(blocks, str):
        try:
            return json.loads(blocks)
        except Exception:
            return None
    return blocks


# -----------------------------
# Payloads
# -----------------------------

@dataclass
class SlackMessagePayload:
    channel_id: str
    ts: str
    user_id: str = "unknown"
    channel_name: Optional[str] = None
    user_name: Optional[str] = None
    text: Optional[str] = None
    blocks: Any = None
    thread_ts: Optional[str] = None
    raw_ts: Optional[str] = None


@dataclass
class SlackReactionPayload:
    channel_id: str
    item_ts: str
    action: str  # "added" | "removed"
    reaction: str
    user_id: str = "unknown"
    channel_name: Optional[str] = None
    user_name: Optional[str] = None
    event_ts: Optional[str] = None
    message_text: Optional[str] = None
    message_user: Optional[str] = None


def message_uid(channel_id: str, ts: str) -> str:
    return f"slack:{channel_id}@{normalized_timestamp(ts) or ts}"


def reaction_uid(channel_id: str, item_ts: str, reaction: str, action: str, user: str) -> str:
    return f"{message_uid(channel_id, item_ts)}:{reaction}:{action}:{user}"


def normalize_slack_message(
    payload: SlackMessagePayload,
    now: Optional[datetime] = None,
    tz_name: str = DEFAULT_TIMEZONE,
) -> NormalizedEvent:
    now = now or datetime.now(timezone.utc)
    channel_name = payload.channel_name or payload.channel_id
    text = payload.text if payload.text is not None else from_blocks(payload.blocks)
    raw_ts = payload.raw_ts if payload.raw_ts and payload.raw_ts != payload.ts else None

    return NormalizedEvent(
        source=EventSource.SLACK,
        kind="post",
        uid=message_uid(payload.channel_id, payload.ts),
        actor=payload.user_name or payload.user_id,
        subject=f"[#{channel_name}] {text or ''}".strip(),
        ts=slack_ts_to_iso(payload.ts, tz_name),
        logged_at=format_in_timezone(now, tz_name),
        meta={"channel": f"#{channel_name}"},
        detail=EventDetail(
            slack=SlackPostDetail(
                channel_id=payload.channel_id,
                channel_name=payload.channel_name,
                text=text,
                blocks=parse_blocks(payload.blocks),
                thread_ts=payload.thread_ts,
                raw_ts=raw_ts,
            )
        ),
    )


def normalize_slack_reaction(
    payload: SlackReactionPayload,
    now: Optional[datetime] = None,
    tz_name: str = DEFAULT_TIMEZONE,
) -> NormalizedEvent:
    now = now or datetime.now(timezone.utc)
    channel_name = payload.channel_name or payload.channel_id
    actor = payload.user_name or payload.user_id
    event_ts = payload.event_ts if normalized_timestamp(payload.event_ts) else payload.item_ts

    return NormalizedEvent(
        source=EventSource.SLACK,
        kind="reaction",
        action=payload.action,
        uid=reaction_uid(payload.channel_id, payload.item_ts, payload.reaction, payload.action, payload.user_id),
        actor=actor,
        subject=f"[#{channel_name}] reaction {payload.reaction}",
        ts=slack_ts_to_iso(event_ts, tz_name),
        logged_at=format_in_timezone(now, tz_name),
        meta={"channel": f"#{channel_name}", "emoji": payload.reaction},
        detail=EventDetail(
            slack=SlackReactionDetail(
                channel_id=payload.channel_id,
                channel_name=payload.channel_name,
                message_ts=normalized_timestamp(payload.item_ts) or payload.item_ts,
                emoji=payload.reaction,
                user=actor,
                message_text=payload.message_text,
                message_user=payload.message_user,
            )
        ),
    )

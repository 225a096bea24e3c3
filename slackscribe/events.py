"""
events.py

Canonical activity event persisted to the log, plus the cheap structural
validator used at ingestion boundaries.

Events are frozen pydantic models. On disk they are compact JSON objects,
one per line; `to_record()` produces that shape (None fields dropped).
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

# =============================================================================
# Enums / constants
# =============================================================================

SCHEMA_VERSION = "slackscribe.event.v1.1"


class EventSource(str, Enum):
    SLACK = "slack"
    GITHUB = "github"
    GIT_LOCAL = "git-local"


SOURCE_VALUES = frozenset(s.value for s in EventSource)


# =============================================================================
# Source-specific detail
# =============================================================================

class SlackPostDetail(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    channel_id: str
    channel_name: Optional[str] = None
    text: Optional[str] = None
    blocks: Optional[Any] = None
    thread_ts: Optional[str] = None
    raw_ts: Optional[str] = None


class SlackReactionDetail(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    message_ts: str
    channel_id: str
    channel_name: Optional[str] = None
    emoji: Optional[str] = None
    user: Optional[str] = None
    message_text: Optional[str] = None
    message_user: Optional[str] = None


SlackDetail = Union[SlackPostDetail, SlackReactionDetail]


class EventDetail(BaseModel):
    """Tagged union keyed by source: exactly one key is populated."""

    model_config = ConfigDict(frozen=True)

    slack: Optional[SlackDetail] = None
    github: Optional[Dict[str, Any]] = None
    git_local: Optional[Dict[str, Any]] = None

    @model_validator(mode="after")
    def _single_tag(self) -> "EventDetail":
        tags = [k for k in ("slack", "github", "git_local") if getattr(self, k) is not None]
        if len(tags) != 1:
            raise ValueError(f"detail must carry exactly one source tag, got {tags or 'none'}")
        return self


# =============================================================================
# Event
# =============================================================================

class NormalizedEvent(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    schema_: str = Field(SCHEMA_VERSION, alias="schema")
    uid: str = Field(..., min_length=1)
    source: EventSource
    kind: str = Field(..., min_length=1)
    action: Optional[str] = None
    actor: Optional[str] = None
    subject: Optional[str] = None
    ts: str
    logged_at: Optional[str] = None
    meta: Dict[str, Any] = Field(default_factory=dict)
    detail: Optional[EventDetail] = None

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# =============================================================================
# Validation
# =============================================================================

def is_valid_event(x: Union[NormalizedEvent, Mapping[str, Any], Any]) -> bool:
    """
    Structural gate, never raises. Accepts a model or a decoded JSON record.
    """
    if isinstance(x, NormalizedEvent):
        x = x.to_record()
    if not isinstance(x, Mapping):
        return False

    if x.get("schema") != SCHEMA_VERSION:
        return False
    uid = x.get("uid")
    if not isinstance(uid, str) or not uid:
        return False
    if x.get("source") not in SOURCE_VALUES:
        return False
    kind = x.get("kind")
    if not isinstance(kind, str) or not kind:
        return False
    ts = x.get("ts")
    if not isinstance(ts, str) or "T" not in ts:
        return False
    if x.get("detail") is not None and not isinstance(x.get("detail"), Mapping):
        return False
    return True

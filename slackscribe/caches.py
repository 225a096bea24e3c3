"""
caches.py

Per-session, in-process state owned by one SlackAdapter:

  MessageCache   (channel, ts) -> {text?, user?}, last write wins
  UiCaptureCache ts variant   -> UiCaptureEntry, bounded, earliest stored evicted
                                 first, consumed at most once

Nothing here is persisted or shared across sessions.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

DEFAULT_UI_CACHE_MAX_ENTRIES = 200


@dataclass(frozen=True)
class MessageCacheEntry:
    text: Optional[str] = None
    user: Optional[str] = None


class MessageCache:
    def __init__(self):
        self._entries: Dict[str, MessageCacheEntry] = {}

    @staticmethod
    def key(channel: str, ts: str) -> str:
        return f"{channel}@{ts}"

    def put(self, channel: Optional[str], ts: Optional[str], text: Optional[str] = None, user: Optional[str] = None) -> None:
        if not channel or not ts:
            return
        self._entries[self.key(channel, ts)] = MessageCacheEntry(text=text or None, user=user or None)

    def get(self, channel: str, ts: str) -> Optional[MessageCacheEntry]:
        return self._entries.get(self.key(channel, ts))

    def lookup(self, channel: str, ts_candidates: Iterable[Optional[str]]) -> Optional[MessageCacheEntry]:
        """First hit over the candidate timestamps, in order."""
        for ts in ts_candidates:
            if not ts:
                continue
            entry = self.get(channel, ts)
            if entry is not None:
                return entry
        return None

    def __len__(self) -> int:
        return len(self._entries)


@dataclass(frozen=True)
class UiCaptureEntry:
    text: str
    channel_name: Optional[str] = None
    channel_id: Optional[str] = None
    captured_at: float = 0.0


class UiCaptureCache:
    def __init__(self, max_entries: int = DEFAULT_UI_CACHE_MAX_ENTRIES, clock=time.time):
        self.max_entries = max(1, int(max_entries))
        self._clock = clock
        self._entries: Dict[str, UiCaptureEntry] = {}

    def store(
        self,
        keys: Iterable[Optional[str]],
        text: str,
        channel_name: Optional[str] = None,
        channel_id: Optional[str] = None,
    ) -> UiCaptureEntry:
        entry = UiCaptureEntry(
            text=text,
            channel_name=channel_name,
            channel_id=channel_id,
            captured_at=self._clock(),
        )
        for key in keys:
            if key:
                # re-insert so dict order tracks insertion
                self._entries.pop(key, None)
                self._entries[key] = entry
        self._prune()
        return entry

    def consume(self, keys: Iterable[Optional[str]]) -> Optional[UiCaptureEntry]:
        keys = [k for k in keys if k]
        found: Optional[UiCaptureEntry] = None
        for key in keys:
            entry = self._entries.get(key)
            if entry is not None:
                found = entry
        if found is None:
            return None
        for key in keys:
            self._entries.pop(key, None)
        return found

    def _prune(self) -> None:
        # dict order is store order; the clock only stamps entries
        while len(self._entries) > self.max_entries:
            del self._entries[next(iter(self._entries))]

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

"""
tail.py

Real-time distribution of newly appended log records for one day.

DayTailer keeps one SourcePoller per source partition of the day plus a
coarser discovery loop that starts pollers for new partitions and disposes
pollers for removed ones. close() cancels everything synchronously; each
connected subscriber owns its own tailer.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Callable, Dict, Optional, Union

from .env import setup_logger
from .jsonl_writer import EVENTS_FILENAME
from .reader import TimelineEvent, day_dir, list_sources, normalize_record, read_jsonl_file

logger = setup_logger("slackscribe.tail")

OnEvent = Callable[[TimelineEvent], None]
OnError = Callable[[Exception], None]


class SourcePoller:
    def __init__(
        self,
        source_dir: Path,
        on_event: OnEvent,
        initial_count: int = 0,
        interval_s: float = 0.5,
    ):
        self.source_dir = Path(source_dir)
        self.source = self.source_dir.name
        self.path = self.source_dir / EVENTS_FILENAME
        self.on_event = on_event
        self.consumed = max(0, int(initial_count))
        self.interval_s = interval_s
        self._task: Optional[asyncio.Task] = None
        self.disposed = False

    async def flush(self) -> int:
        """Deliver records appended since the last flush; returns how many."""
        if self.disposed:
            return 0
        records = await asyncio.to_thread(read_jsonl_file, self.path)
        if self.consumed > len(records):
            # truncated or replaced
            self.consumed = 0
        fresh = records[self.consumed:]
        self.consumed = len(records)
        for raw in fresh:
            if self.disposed:
                break
            self.on_event(normalize_record(raw, self.source))
        return len(fresh)

    def start(self) -> None:
        if self._task is None and not self.disposed:
            self._task = asyncio.ensure_future(self._run())

    async def _run(self) -> None:
        while not self.disposed:
            await asyncio.sleep(self.interval_s)
            try:
                await self.flush()
            except Exception as e:
                logger.warning(f"Poll failed for {self.path}: {e}")

    def dispose(self) -> None:
        self.disposed = True
        if self._task is not None:
            self._task.cancel()
            self._task = None


class DayTailer:
    def __init__(
        self,
        data_dir: Union[str, Path],
        date: str,
        on_event: OnEvent,
        on_error: Optional[OnError] = None,
        poll_interval_s: float = 0.5,
        discovery_interval_s: float = 1.0,
    ):
        self.root = day_dir(data_dir, date)
        self.date = date
        self.on_event = on_event
        self.on_error = on_error
        self.poll_interval_s = poll_interval_s
        self.discovery_interval_s = discovery_interval_s
        self.pollers: Dict[str, SourcePoller] = {}
        self._discovery_task: Optional[asyncio.Task] = None
        self.closed = False

    async def open(self, start_timers: bool = True) -> None:
        """Attach to existing partitions at their current length."""
        for source in list_sources(self.root):
            try:
                baseline = len(await asyncio.to_thread(read_jsonl_file, self.root / source / EVENTS_FILENAME))
            except Exception as e:
                self._error(e)
                continue
            self._ensure_poller(source, baseline, start_timers)
        if start_timers and not self.closed:
            self._discovery_task = asyncio.ensure_future(self._discovery_loop())

    async def discover(self, start_timers: bool = True) -> None:
        if self.closed:
            return
        existing = set(list_sources(self.root))
        for source in existing - set(self.pollers):
            self._ensure_poller(source, 0, start_timers)
        for source in set(self.pollers) - existing:
            self.pollers.pop(source).dispose()

    async def flush(self) -> None:
        for poller in list(self.pollers.values()):
            try:
                await poller.flush()
            except Exception as e:
                self._error(e)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._discovery_task is not None:
            self._discovery_task.cancel()
            self._discovery_task = None
        for poller in self.pollers.values():
            poller.dispose()
        self.pollers.clear()

    def _ensure_poller(self, source: str, baseline: int, start_timer: bool) -> None:
        if self.closed or source in self.pollers:
            return
        poller = SourcePoller(self.root / source, self.on_event, initial_count=baseline, interval_s=self.poll_interval_s)
        self.pollers[source] = poller
        if start_timer:
            poller.start()

    async def _discovery_loop(self) -> None:
        while not self.closed:
            await asyncio.sleep(self.discovery_interval_s)
            try:
                await self.discover()
            except Exception as e:
                self._error(e)

    def _error(self, e: Exception) -> None:
        logger.warning(f"Tail error for {self.date}: {e}")
        if self.on_error is not None:
            self.on_error(e)

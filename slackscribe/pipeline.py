from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional, Protocol

from .env import setup_logger
from .events import NormalizedEvent
from .jsonl_writer import JsonlWriter

logger = setup_logger("slackscribe.pipeline")

EmitFn = Callable[[NormalizedEvent], Awaitable[None]]


class IngestionAdapter(Protocol):
    name: str

    async def start(self, emit: EmitFn) -> None: ...

    async def stop(self) -> None: ...


class SlackIngestor:
    """Adapter -> writer wiring. start()/stop() are idempotent."""

    def __init__(self, adapter: IngestionAdapter, writer: JsonlWriter):
        self.adapter = adapter
        self.writer = writer
        self.started = False
        self.written = 0

    async def start(self) -> None:
        if self.started:
            return

        async def emit(event: NormalizedEvent) -> None:
            record = await self.writer.append(event)
            self.written += 1
            logger.info(f"Logged {record.get('kind')} {record.get('uid')}")

        await self.adapter.start(emit)
        self.started = True

    async def stop(self) -> None:
        if not self.started:
            return
        stop: Optional[Callable[[], Awaitable[Any]]] = getattr(self.adapter, "stop", None)
        if stop is not None:
            await stop()
        self.started = False

from __future__ import annotations

"""
supervisor.py

Reconnect supervisor: one full session lifecycle per cycle.

    CONNECTING -> RUNNING -> (DISCONNECTED | ERRORED) -> CONNECTING ...
    any state  -> SHUTTING_DOWN (terminal, on request_shutdown())

Every cycle builds a fresh adapter and ingestor, so caches and the seen-uid
set start empty after a reconnect. The writer is shared for the whole run.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional

from .env import setup_logger
from .jsonl_writer import JsonlWriter
from .pipeline import SlackIngestor

logger = setup_logger("slackscribe.supervisor")


class SupervisorState(str, Enum):
    CONNECTING = "connecting"
    RUNNING = "running"
    DISCONNECTED = "disconnected"
    ERRORED = "errored"
    SHUTTING_DOWN = "shutting_down"


@dataclass
class Backoff:
    base_delay_s: float = 1.0
    max_delay_s: float = 10.0

    def delay(self, retries: int) -> float:
        return min(self.base_delay_s * max(1, retries), self.max_delay_s)


ConnectFn = Callable[[], Awaitable[Any]]
AdapterFactory = Callable[[Any], Any]


class ReconnectSupervisor:
    """
    `connect()` returns a session exposing `cdp`, `wait_disconnected()` and
    `close()`; `make_adapter(cdp)` builds the per-session adapter.
    """

    def __init__(
        self,
        connect: ConnectFn,
        make_adapter: AdapterFactory,
        writer: JsonlWriter,
        backoff: Optional[Backoff] = None,
        on_state: Optional[Callable[[SupervisorState], None]] = None,
    ):
        self.connect = connect
        self.make_adapter = make_adapter
        self.writer = writer
        self.backoff = backoff or Backoff()
        self.on_state = on_state

        self.state = SupervisorState.CONNECTING
        self.retries = 0
        self.cycles = 0
        self.history: List[SupervisorState] = []
        self._shutdown: Optional[asyncio.Event] = None
        self._shutdown_requested = False

    # -------------------------------------------------------------------------
    # Control
    # -------------------------------------------------------------------------
    def request_shutdown(self) -> None:
        self._shutdown_requested = True
        if self._shutdown is not None:
            self._shutdown.set()

    @property
    def shutting_down(self) -> bool:
        return self._shutdown_requested

    def _set_state(self, state: SupervisorState) -> None:
        if self.state == SupervisorState.SHUTTING_DOWN:
            return
        self.state = state
        self.history.append(state)
        if self.on_state is not None:
            self.on_state(state)

    def _shutdown_event(self) -> asyncio.Event:
        if self._shutdown is None:
            self._shutdown = asyncio.Event()
            if self._shutdown_requested:
                self._shutdown.set()
        return self._shutdown

    # -------------------------------------------------------------------------
    # Loop
    # -------------------------------------------------------------------------
    async def run(self) -> None:
        shutdown = self._shutdown_event()
        while not shutdown.is_set():
            outcome = await self.run_cycle(raise_on_connect_error=False)
            if outcome == SupervisorState.SHUTTING_DOWN or shutdown.is_set():
                break
            self.retries += 1
            delay = self.backoff.delay(self.retries)
            logger.info(f"Session {outcome.value}; reconnecting in {delay:.1f}s (retry {self.retries})")
            await self._pause(delay)
        self._set_state(SupervisorState.SHUTTING_DOWN)

    async def run_cycle(self, raise_on_connect_error: bool = True) -> SupervisorState:
        """One connect/run/teardown cycle; returns how it ended."""
        shutdown = self._shutdown_event()
        self.cycles += 1
        self._set_state(SupervisorState.CONNECTING)
        try:
            session = await self.connect()
        except Exception as e:
            if raise_on_connect_error:
                raise
            logger.warning(f"Connect failed: {e}")
            self._set_state(SupervisorState.ERRORED)
            return SupervisorState.ERRORED

        adapter = self.make_adapter(session.cdp)
        ingestor = SlackIngestor(adapter, self.writer)
        outcome = SupervisorState.ERRORED
        try:
            try:
                await ingestor.start()
            except Exception as e:
                logger.warning(f"Adapter start failed: {e}")
                self._set_state(SupervisorState.ERRORED)
                return SupervisorState.ERRORED

            self.retries = 0
            self._set_state(SupervisorState.RUNNING)
            outcome = await self._wait_for_end(session, adapter, shutdown)
            self._set_state(outcome)
            return outcome
        finally:
            await self._teardown(ingestor, session)

    async def _wait_for_end(self, session: Any, adapter: Any, shutdown: asyncio.Event) -> SupervisorState:
        disconnected = asyncio.ensure_future(session.wait_disconnected())
        stopping = asyncio.ensure_future(shutdown.wait())
        waiters = [disconnected, stopping]
        failed = None
        if hasattr(adapter, "wait_failed"):
            failed = asyncio.ensure_future(adapter.wait_failed())
            waiters.append(failed)
        try:
            done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for w in waiters:
                if not w.done():
                    w.cancel()

        if stopping in done:
            return SupervisorState.SHUTTING_DOWN
        if failed is not None and failed in done:
            logger.error(f"Session failed: {failed.result()!r}")
            return SupervisorState.ERRORED
        exc = disconnected.exception()
        if exc is not None:
            logger.warning(f"Disconnect watcher failed: {exc}")
            return SupervisorState.ERRORED
        return SupervisorState.DISCONNECTED

    async def _teardown(self, ingestor: SlackIngestor, session: Any) -> None:
        try:
            await ingestor.stop()
        except Exception as e:
            logger.warning(f"Ingestor stop failed: {e}")
        try:
            await session.close()
        except Exception as e:
            # already gone (disconnect raced with shutdown)
            logger.debug(f"Session close failed: {e}")

    async def _pause(self, delay: float) -> None:
        shutdown = self._shutdown_event()
        try:
            await asyncio.wait_for(shutdown.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

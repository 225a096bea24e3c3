# server.py
from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import AsyncIterator, Optional, Union

import orjson
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse, StreamingResponse

from .env import resolve_data_dir, setup_logger
from .reader import TimelineEvent, day_dir, read_daily_events
from .tail import DayTailer

logger = setup_logger("slackscribe.server")

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


def format_sse(event: str, data) -> str:
    return f"event: {event}\ndata: {orjson.dumps(data).decode('utf-8')}\n\n"


def _check_date(date: str) -> None:
    try:
        day_dir(".", date)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e


# ------------------------------------------------------------------------------
# FastAPI app
# ------------------------------------------------------------------------------
def create_app(
    data_dir: Optional[Union[str, os.PathLike]] = None,
    poll_interval_s: float = 0.5,
    discovery_interval_s: float = 1.0,
) -> FastAPI:
    root = Path(data_dir) if data_dir is not None else resolve_data_dir()

    app = FastAPI(
        title="slackscribe timeline",
        version="1.1",
        default_response_class=ORJSONResponse,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    @app.get("/healthz")
    def healthz():
        return {"status": "ok", "data_dir": str(root)}

    @app.get("/day/{date}/events")
    def day_events(date: str):
        _check_date(date)
        daily = read_daily_events(root, date)
        return {
            "date": date,
            "events": [e.to_dict() for e in daily.events],
            "by_source": daily.by_source,
        }

    @app.get("/day/{date}/stream")
    async def day_stream(date: str, request: Request):
        _check_date(date)
        queue: asyncio.Queue = asyncio.Queue()

        def on_event(event: TimelineEvent) -> None:
            queue.put_nowait(format_sse("timeline", event.to_dict()))

        def on_error(e: Exception) -> None:
            queue.put_nowait(format_sse("error", str(e)))

        tailer = DayTailer(
            root,
            date,
            on_event=on_event,
            on_error=on_error,
            poll_interval_s=poll_interval_s,
            discovery_interval_s=discovery_interval_s,
        )
        await tailer.open()
        logger.info(f"Stream subscriber attached for {date}")

        async def body() -> AsyncIterator[str]:
            try:
                yield format_sse("ready", {"date": date})
                while True:
                    if await request.is_disconnected():
                        break
                    try:
                        chunk = await asyncio.wait_for(queue.get(), timeout=1.0)
                    except asyncio.TimeoutError:
                        continue
                    yield chunk
            finally:
                tailer.close()
                logger.info(f"Stream subscriber detached for {date}")

        return StreamingResponse(body(), media_type="text/event-stream", headers=SSE_HEADERS)

    return app

from __future__ import annotations

import asyncio
import inspect
import json
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import pytest

FIXED_NOW = datetime(2024, 3, 22, 12, 40, 0, tzinfo=timezone.utc)


class FakeCdpSession:
    """on/remove_listener/send surface of playwright's CDPSession."""

    def __init__(self, evaluate: Optional[Callable[[Dict[str, Any]], Any]] = None, evaluate_delay_s: float = 0.0):
        self.listeners: Dict[str, List[Callable[..., Any]]] = defaultdict(list)
        self.sent: List[tuple] = []
        self.response_bodies: Dict[str, Dict[str, Any]] = {}
        self._evaluate = evaluate
        self.evaluate_delay_s = evaluate_delay_s

    def on(self, event: str, f: Callable[..., Any]) -> None:
        self.listeners[event].append(f)

    def remove_listener(self, event: str, f: Callable[..., Any]) -> None:
        self.listeners[event].remove(f)

    async def send(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        self.sent.append((method, params or {}))
        if method == "Runtime.evaluate":
            if self.evaluate_delay_s:
                await asyncio.sleep(self.evaluate_delay_s)
            value = self._evaluate(params or {}) if self._evaluate else None
            return {"result": {"type": "object", "value": value}}
        if method == "Network.getResponseBody":
            return self.response_bodies.get((params or {}).get("requestId"), {"body": ""})
        return {}

    async def fire(self, event: str, params: Dict[str, Any]) -> None:
        for f in list(self.listeners[event]):
            r = f(params)
            if inspect.isawaitable(r):
                await r

    def calls(self, method: str) -> List[Dict[str, Any]]:
        return [p for m, p in self.sent if m == method]


def paused_request(url: str, body: str, request_id: str = "req-1", content_type: str = "application/x-www-form-urlencoded"):
    return {
        "requestId": request_id,
        "frameId": "frame-1",
        "request": {
            "url": url,
            "method": "POST",
            "headers": {"Content-Type": content_type},
            "postData": body,
        },
    }


def ws_frame(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {"requestId": "ws-1", "timestamp": 1.0, "response": {"opcode": 1, "payloadData": json.dumps(payload)}}


@pytest.fixture
def fake_cdp() -> FakeCdpSession:
    return FakeCdpSession()


@pytest.fixture
def fixed_now() -> Callable[[], datetime]:
    return lambda: FIXED_NOW

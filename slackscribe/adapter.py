"""
adapter.py

SlackAdapter: turns one debugging-protocol session's traffic into canonical
events.

Signals:
  Fetch.requestPaused            outbound chat.postMessage / reactions.add|remove
                                 -> events (the only emitting path)
  Network.webSocketFrame*        realtime frames -> message cache warming
  Network.responseReceived       API responses   -> message cache warming
  Runtime.executionContext*      context registry for page-script evaluation

Every paused request is continued exactly once, whatever happens while it
is being parsed or emitted.

One instance per session: caches, the seen-uid set and the context registry
live on the instance and die with it.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol, Set, Tuple
from urllib.parse import urlparse

from .bodies import BodyParseError, as_str, header_value, parse_body, post_data_of
from .caches import MessageCache, UiCaptureCache
from .contexts import ExecutionContextRegistry
from .dom_capture import (
    DOM_CAPTURE_VERSION,
    DOM_RETRY_DELAYS_MS,
    CaptureFailure,
    CaptureSuccess,
    build_capture_expression,
    dom_probe_script,
    outcome_to_log,
    parse_capture_result,
)
from .env import setup_logger
from .events import NormalizedEvent, is_valid_event
from .normalize import (
    DEFAULT_TIMEZONE,
    SlackMessagePayload,
    SlackReactionPayload,
    from_blocks,
    normalize_slack_message,
    normalize_slack_reaction,
    normalized_timestamp,
    resolve_message_ts,
    synthesize_timestamp,
)

logger = setup_logger("slackscribe.adapter")

SLACK_API_RE = re.compile(
    r"https://[^/]+\.slack\.com/api/(chat\.postMessage|reactions\.(?:add|remove))\b",
    re.IGNORECASE,
)

FETCH_PATTERNS = [
    {"urlPattern": "*://*.slack.com/api/chat.postMessage*", "requestStage": "Request"},
    {"urlPattern": "*://*.slack.com/api/reactions.*", "requestStage": "Request"},
]

MAX_FRAME_BYTES = 512 * 1024

EmitFn = Callable[[NormalizedEvent], Awaitable[None]]


class CdpClient(Protocol):
    """The slice of playwright's CDPSession the adapter relies on."""

    async def send(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]: ...

    def on(self, event: str, f: Callable[..., Any]) -> Any: ...

    def remove_listener(self, event: str, f: Callable[..., Any]) -> Any: ...


@dataclass(frozen=True)
class ReactionCandidate:
    ts: str
    normalized_ts: str
    channel_id: Optional[str] = None
    frame_id: Optional[str] = None


def _redact(payload: Mapping[str, Any]) -> Dict[str, Any]:
    out = dict(payload)
    for k, v in out.items():
        if isinstance(v, str) and re.search(r"token|cookie", k, re.IGNORECASE):
            out[k] = "[redacted]"
    return out


class SlackAdapter:
    name = "slack"

    def __init__(
        self,
        client: CdpClient,
        now: Optional[Callable[[], datetime]] = None,
        tz_name: str = DEFAULT_TIMEZONE,
        dom_capture_enabled: bool = True,
        dom_probe: bool = False,
        retry_delays_ms: Tuple[int, ...] = DOM_RETRY_DELAYS_MS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        ui_cache_max_entries: int = 200,
    ):
        self.client = client
        self.now = now or (lambda: datetime.now(timezone.utc))
        self.tz_name = tz_name
        self.dom_capture_enabled = bool(dom_capture_enabled)
        self.dom_probe = bool(dom_probe)
        self.retry_delays_ms = tuple(retry_delays_ms)
        self._sleep = sleep

        self.messages = MessageCache()
        self.ui_captures = UiCaptureCache(max_entries=ui_cache_max_entries)
        self.contexts = ExecutionContextRegistry()
        self.channel_names: Dict[str, str] = {}
        self.seen_uids: Set[str] = set()

        self._emit: Optional[EmitFn] = None
        self._capture_tasks: Dict[str, asyncio.Task] = {}
        self._handlers: List[Tuple[str, Callable[..., Any]]] = []
        self._failure: Optional[asyncio.Future] = None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------
    async def start(self, emit: EmitFn) -> None:
        self._emit = emit
        self._failure = asyncio.get_running_loop().create_future()

        self._subscribe("Network.webSocketFrameReceived", self._on_ws_frame)
        self._subscribe("Network.webSocketFrameSent", self._on_ws_frame)
        self._subscribe("Network.responseReceived", self._on_response_received)
        self._subscribe("Runtime.executionContextCreated", self.contexts.on_created)
        self._subscribe("Runtime.executionContextDestroyed", self.contexts.on_destroyed)
        self._subscribe("Runtime.executionContextsCleared", self._on_contexts_cleared)
        self._subscribe("Fetch.requestPaused", self._on_request_paused)

        await self.client.send("Network.enable", {})
        await self.client.send("Network.setCacheDisabled", {"cacheDisabled": True})
        await self.client.send("Runtime.enable", {})
        await self.client.send("Fetch.enable", {"patterns": FETCH_PATTERNS})
        logger.info(
            f"Adapter started (tz={self.tz_name}, dom_capture={self.dom_capture_enabled}, script v{DOM_CAPTURE_VERSION})"
        )

        if self.dom_probe:
            await self.run_dom_probe()

    async def stop(self) -> None:
        for event, handler in self._handlers:
            try:
                self.client.remove_listener(event, handler)
            except Exception:
                pass
        self._handlers.clear()
        try:
            await self.client.send("Fetch.disable", {})
        except Exception as e:
            logger.debug(f"Fetch.disable failed during stop: {e}")
        for task in list(self._capture_tasks.values()):
            task.cancel()
        self._capture_tasks.clear()
        self._emit = None

    async def wait_failed(self) -> BaseException:
        """Resolves with the first error that made emitting impossible."""
        if self._failure is None:
            self._failure = asyncio.get_running_loop().create_future()
        return await asyncio.shield(self._failure)

    def _subscribe(self, event: str, handler: Callable[..., Any]) -> None:
        self.client.on(event, handler)
        self._handlers.append((event, handler))

    def _report_failure(self, exc: BaseException) -> None:
        if self._failure is not None and not self._failure.done():
            self._failure.set_result(exc)

    # -------------------------------------------------------------------------
    # Fetch: request interception
    # -------------------------------------------------------------------------
    async def _on_request_paused(self, params: Dict[str, Any]) -> None:
        request_id = params.get("requestId")
        try:
            try:
                events = await self.handle_request(params)
            except Exception as e:
                logger.warning(f"Dropped intercepted request: {e}")
                events = []
            for event in events:
                try:
                    await self.deliver(event)
                except Exception as e:
                    logger.exception(f"Failed to emit {event.uid}: {e}")
                    self._report_failure(e)
        finally:
            await self._continue_request(request_id)

    async def _continue_request(self, request_id: Optional[str]) -> None:
        if not request_id:
            return
        try:
            await self.client.send("Fetch.continueRequest", {"requestId": request_id})
        except Exception as e:
            logger.warning(f"Fetch.continueRequest failed for {request_id}: {e}")

    async def handle_request(self, params: Mapping[str, Any]) -> List[NormalizedEvent]:
        request = params.get("request") or {}
        url = request.get("url") or ""
        if (request.get("method") or "").upper() != "POST" or not SLACK_API_RE.search(url):
            return []

        content_type = header_value(request.get("headers"), "content-type")
        try:
            payload = parse_body(post_data_of(request), content_type)
        except BodyParseError as e:
            logger.debug(f"Unparseable body for {url}: {e}")
            return []
        logger.debug(f"Parsed payload: {_redact(payload)}")

        path = urlparse(url).path
        if path.endswith("/api/chat.postMessage"):
            event = self._build_post(payload)
            return [event] if event else []
        if path.endswith("/api/reactions.add") or path.endswith("/api/reactions.remove"):
            action = "added" if path.endswith(".add") else "removed"
            event = await self._build_reaction(payload, action, params.get("frameId"))
            return [event] if event else []
        return []

    def _build_post(self, payload: Mapping[str, Any]) -> Optional[NormalizedEvent]:
        channel_id = as_str(payload.get("channel"))
        if not channel_id:
            logger.debug("chat.postMessage without channel; skipped")
            return None
        now = self.now()
        raw_ts = as_str(payload.get("ts"))
        ts = resolve_message_ts(raw_ts, now)
        user_id = as_str(payload.get("user"))
        text = as_str(payload.get("text"))
        blocks = payload.get("blocks")
        resolved_text = text if text is not None else (from_blocks(blocks) or None)

        event = normalize_slack_message(
            SlackMessagePayload(
                channel_id=channel_id,
                channel_name=self.channel_names.get(channel_id),
                ts=ts,
                raw_ts=raw_ts,
                user_id=user_id or "unknown",
                user_name=user_id,
                text=resolved_text,
                blocks=blocks,
                thread_ts=as_str(payload.get("thread_ts")),
            ),
            now=now,
            tz_name=self.tz_name,
        )

        self.messages.put(channel_id, ts, text=resolved_text, user=user_id)
        if raw_ts and raw_ts != ts:
            self.messages.put(channel_id, raw_ts, text=resolved_text, user=user_id)
        return event

    async def _build_reaction(
        self, payload: Mapping[str, Any], action: str, frame_id: Optional[str]
    ) -> Optional[NormalizedEvent]:
        item = payload.get("item") if isinstance(payload.get("item"), dict) else {}
        channel_id = as_str(payload.get("channel")) or as_str(item.get("channel"))
        raw_ts = as_str(payload.get("timestamp")) or as_str(item.get("ts"))
        reaction = as_str(payload.get("name")) or as_str(payload.get("reaction"))
        if not channel_id or not raw_ts or not reaction:
            logger.debug(
                f"Reaction payload missing fields (channel={channel_id}, ts={raw_ts}, name={reaction}): {_redact(payload)}"
            )
            return None

        now = self.now()
        normalized_ts = normalized_timestamp(raw_ts) or raw_ts
        fallback_ts = normalized_timestamp(synthesize_timestamp(now))
        lookup = [raw_ts, normalized_ts, fallback_ts]

        cached = self.messages.lookup(channel_id, lookup)
        message_text = cached.text if cached else None
        if not message_text:
            captured = await self.capture_ui_state(
                ReactionCandidate(ts=raw_ts, normalized_ts=normalized_ts, channel_id=channel_id, frame_id=frame_id)
            )
            if captured is not None:
                message_text = captured.text
                self.messages.put(channel_id, normalized_ts, text=captured.text, user=cached.user if cached else None)
            else:
                # a concurrent capture for the same ts may have consumed it and warmed the cache
                cached = self.messages.lookup(channel_id, lookup) or cached
                message_text = cached.text if cached else None
        message_text = message_text or as_str(payload.get("message_text"))

        user_id = as_str(payload.get("user")) or "unknown"
        return normalize_slack_reaction(
            SlackReactionPayload(
                channel_id=channel_id,
                channel_name=self.channel_names.get(channel_id),
                item_ts=raw_ts,
                action=action,
                reaction=reaction,
                user_id=user_id,
                event_ts=as_str(payload.get("event_ts")),
                message_text=message_text,
                message_user=(cached.user if cached else None) or as_str(payload.get("message_user")),
            ),
            now=now,
            tz_name=self.tz_name,
        )

    async def deliver(self, event: NormalizedEvent) -> bool:
        if event.uid in self.seen_uids:
            logger.debug(f"Duplicate uid suppressed: {event.uid}")
            return False
        if not is_valid_event(event):
            logger.warning(f"Invalid event dropped: {event.uid}")
            return False
        if self._emit is None:
            return False
        self.seen_uids.add(event.uid)
        await self._emit(event)
        return True

    # -------------------------------------------------------------------------
    # Network: cache warming
    # -------------------------------------------------------------------------
    def _on_ws_frame(self, params: Dict[str, Any]) -> None:
        response = params.get("response") if isinstance(params, dict) else None
        raw = response.get("payloadData") if isinstance(response, dict) else None
        if not isinstance(raw, str) or not raw or len(raw.encode("utf-8")) > MAX_FRAME_BYTES:
            return
        try:
            data = json.loads(raw)
        except Exception:
            return
        if not isinstance(data, dict):
            return

        kind = data.get("type")
        if kind == "message" and data.get("subtype") == "message_changed":
            kind = "message_changed"
        channel = as_str(data.get("channel"))
        if kind == "message" and channel and as_str(data.get("ts")):
            self._warm(channel, data["ts"], data)
        elif kind == "message_changed" and channel and isinstance(data.get("message"), dict):
            message = data["message"]
            if as_str(message.get("ts")):
                self._warm(channel, message["ts"], message)
        elif kind == "thread_broadcast" and channel and as_str(data.get("root_ts")):
            self._warm(channel, data["root_ts"], data)

    def _warm(self, channel: str, ts: str, message: Mapping[str, Any]) -> None:
        text = as_str(message.get("text")) or from_blocks(message.get("blocks")) or None
        user = as_str(message.get("user"))
        self.messages.put(channel, ts, text=text, user=user)
        normalized = normalized_timestamp(ts)
        if normalized and normalized != ts:
            self.messages.put(channel, normalized, text=text, user=user)

    async def _on_response_received(self, params: Dict[str, Any]) -> None:
        response = params.get("response") or {}
        if not SLACK_API_RE.search(response.get("url") or ""):
            return
        try:
            result = await self.client.send("Network.getResponseBody", {"requestId": params.get("requestId")})
            body = result.get("body") or ""
            if result.get("base64Encoded"):
                body = base64.b64decode(body).decode("utf-8", errors="replace")
            data = json.loads(body)
        except Exception as e:
            logger.debug(f"Response body unavailable: {e}")
            return
        if not isinstance(data, dict):
            return

        message = data.get("message")
        if not isinstance(message, dict):
            item = data.get("item")
            message = item.get("message", item) if isinstance(item, dict) else None
        if not isinstance(message, dict):
            return
        channel = as_str(message.get("channel")) or as_str(data.get("channel"))
        ts = as_str(message.get("ts")) or as_str(message.get("message_ts")) or as_str(data.get("ts"))
        if channel and ts:
            self._warm(channel, ts, message)

    def _on_contexts_cleared(self, params: Any = None) -> None:
        self.contexts.clear()

    # -------------------------------------------------------------------------
    # UI-state fallback capture
    # -------------------------------------------------------------------------
    async def capture_ui_state(self, candidate: ReactionCandidate) -> Optional[CaptureSuccess]:
        """
        Capture (or join the in-flight capture) for candidate's ts, then take
        the result out of the capture cache.
        """
        if not self.dom_capture_enabled or not candidate.normalized_ts:
            return None
        key = candidate.normalized_ts
        task = self._capture_tasks.get(key)
        if task is None:
            task = asyncio.ensure_future(self._run_capture(candidate))
            self._capture_tasks[key] = task
            task.add_done_callback(lambda t, k=key: self._forget_capture(k, t))
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug(f"UI capture failed for {key}: {e}")

        entry = self.ui_captures.consume([candidate.ts, candidate.normalized_ts])
        if entry is None:
            return None
        if entry.channel_id and entry.channel_name:
            self._remember_channel(entry.channel_id, entry.channel_name)
        return CaptureSuccess(text=entry.text, channel_name=entry.channel_name, channel_id=entry.channel_id)

    async def _run_capture(self, candidate: ReactionCandidate) -> None:
        needles: List[str] = []
        for v in (candidate.ts, candidate.normalized_ts, normalized_timestamp(candidate.ts)):
            if v and v not in needles:
                needles.append(v)

        last_failure: Optional[CaptureFailure] = None
        for delay_ms in self.retry_delays_ms:
            if delay_ms > 0:
                await self._sleep(delay_ms / 1000.0)
            outcome = await self._evaluate_capture(needles, candidate.frame_id)
            if isinstance(outcome, CaptureFailure):
                last_failure = outcome
                continue
            if outcome is None:
                continue

            channel_id = outcome.channel_id or candidate.channel_id
            self.ui_captures.store(
                [*needles, *outcome.matched_ts],
                text=outcome.text,
                channel_name=outcome.channel_name,
                channel_id=channel_id,
            )
            if channel_id and outcome.channel_name:
                self._remember_channel(channel_id, outcome.channel_name)
            logger.info(json.dumps({"ts": candidate.normalized_ts, **outcome_to_log(outcome)}, ensure_ascii=False))
            return

        log = {"ok": False, "ts": candidate.normalized_ts, "channel": candidate.channel_id, "reason": "dom-not-found"}
        if last_failure is not None:
            log.update(outcome_to_log(last_failure))
        logger.info(json.dumps(log, ensure_ascii=False))

    async def _evaluate_capture(self, needles: List[str], frame_id: Optional[str] = None):
        expression = build_capture_expression(needles, debug=logger.isEnabledFor(logging.DEBUG))
        last_failure: Optional[CaptureFailure] = None
        for context_id in self.contexts.resolve(frame_id):
            params: Dict[str, Any] = {"expression": expression, "returnByValue": True}
            if context_id is not None:
                params["contextId"] = context_id
            try:
                result = await self.client.send("Runtime.evaluate", params)
            except Exception as e:
                logger.debug(f"Runtime.evaluate failed in context {context_id}: {e}")
                continue
            value = ((result or {}).get("result") or {}).get("value")
            outcome = parse_capture_result(value, needles)
            if isinstance(outcome, CaptureSuccess):
                return outcome
            if isinstance(outcome, CaptureFailure):
                last_failure = outcome
        return last_failure

    async def run_dom_probe(self) -> None:
        for context_id in self.contexts.resolve():
            params: Dict[str, Any] = {"expression": dom_probe_script.strip(), "returnByValue": True}
            if context_id is not None:
                params["contextId"] = context_id
            try:
                result = await self.client.send("Runtime.evaluate", params)
            except Exception as e:
                logger.debug(f"DOM probe failed in context {context_id}: {e}")
                continue
            value = ((result or {}).get("result") or {}).get("value")
            logger.debug(f"DOM probe (context={context_id}): {value}")
            if isinstance(value, dict) and value.get("ok"):
                return

    def _remember_channel(self, channel_id: str, label: str) -> None:
        channel_id, label = channel_id.strip(), label.strip()
        if channel_id and label and label != channel_id:
            self.channel_names[channel_id] = label

    def _forget_capture(self, key: str, task: asyncio.Task) -> None:
        if self._capture_tasks.get(key) is task:
            del self._capture_tasks[key]

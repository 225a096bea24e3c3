import asyncio

import pytest

from conftest import FIXED_NOW, FakeCdpSession, paused_request, ws_frame
from slackscribe.adapter import FETCH_PATTERNS, ReactionCandidate, SlackAdapter

POST_URL = "https://acme.slack.com/api/chat.postMessage"
REACTION_ADD_URL = "https://acme.slack.com/api/reactions.add"
REACTION_REMOVE_URL = "https://acme.slack.com/api/reactions.remove"

CAPTURED = {
    "text": "fetched-text",
    "channel": "general",
    "channelId": "C123",
    "matchedTs": ["1711111111.000200"],
}


def _run_with_adapter(fake, scenario, **kwargs):
    """Start an adapter on `fake`, run `scenario(adapter)`, return emitted events."""
    emitted = []

    async def emit(event):
        emitted.append(event)

    async def main():
        adapter = SlackAdapter(fake, now=lambda: FIXED_NOW, sleep=_no_sleep, **kwargs)
        await adapter.start(emit)
        try:
            await scenario(adapter)
        finally:
            await adapter.stop()
        return adapter

    adapter = asyncio.run(main())
    return adapter, emitted


async def _no_sleep(_s):
    return None


# -----------------------------
# Lifecycle
# -----------------------------

def test_start_enables_domains_and_stop_unsubscribes(fake_cdp):
    async def scenario(adapter):
        assert fake_cdp.listeners["Fetch.requestPaused"]

    _run_with_adapter(fake_cdp, scenario)

    methods = [m for m, _ in fake_cdp.sent]
    assert methods[:4] == ["Network.enable", "Network.setCacheDisabled", "Runtime.enable", "Fetch.enable"]
    assert fake_cdp.calls("Fetch.enable")[0]["patterns"] == FETCH_PATTERNS
    assert "Fetch.disable" in methods
    assert all(not handlers for handlers in fake_cdp.listeners.values())


# -----------------------------
# Posts
# -----------------------------

def test_post_request_emits_post_event(fake_cdp):
    body = "channel=C123&ts=1711111111.000200&text=hello&token=xoxc-secret"

    async def scenario(adapter):
        await fake_cdp.fire("Fetch.requestPaused", paused_request(POST_URL, body))

    _, emitted = _run_with_adapter(fake_cdp, scenario)

    assert len(emitted) == 1
    event = emitted[0]
    assert event.uid == "slack:C123@1711111111.000200"
    assert event.kind == "post"
    assert event.source.value == "slack"
    assert event.detail.slack.text == "hello"
    assert event.ts == "2024-03-22T21:38:31+09:00"
    assert event.meta == {"channel": "#C123"}
    assert fake_cdp.calls("Fetch.continueRequest") == [{"requestId": "req-1"}]


def test_post_without_ts_uses_clock_fallback(fake_cdp):
    async def scenario(adapter):
        await fake_cdp.fire("Fetch.requestPaused", paused_request(POST_URL, "channel=C9&text=hi"))

    _, emitted = _run_with_adapter(fake_cdp, scenario)

    epoch = int(FIXED_NOW.timestamp())
    assert emitted[0].uid == f"slack:C9@{epoch}.000000"


def test_post_text_from_json_blocks(fake_cdp):
    body = (
        '{"channel":"C1","ts":"1711111111.0002","blocks":[{"type":"rich_text","elements":'
        '[{"type":"rich_text_section","elements":[{"type":"text","text":"from "},{"type":"text","text":"blocks"}]}]}]}'
    )

    async def scenario(adapter):
        await fake_cdp.fire("Fetch.requestPaused", paused_request(POST_URL, body, content_type="application/json"))

    _, emitted = _run_with_adapter(fake_cdp, scenario)

    assert emitted[0].uid == "slack:C1@1711111111.000200"
    assert emitted[0].detail.slack.text == "from blocks"


def test_duplicate_post_is_suppressed(fake_cdp):
    body = "channel=C123&ts=1711111111.000200&text=hello"

    async def scenario(adapter):
        await fake_cdp.fire("Fetch.requestPaused", paused_request(POST_URL, body, request_id="a"))
        await fake_cdp.fire("Fetch.requestPaused", paused_request(POST_URL, body, request_id="b"))

    _, emitted = _run_with_adapter(fake_cdp, scenario)

    assert len(emitted) == 1
    assert [p["requestId"] for p in fake_cdp.calls("Fetch.continueRequest")] == ["a", "b"]


def test_non_matching_request_is_continued_without_events(fake_cdp):
    async def scenario(adapter):
        await fake_cdp.fire(
            "Fetch.requestPaused", paused_request("https://acme.slack.com/api/users.list", "x=1")
        )

    _, emitted = _run_with_adapter(fake_cdp, scenario)

    assert emitted == []
    assert len(fake_cdp.calls("Fetch.continueRequest")) == 1


# -----------------------------
# Continue-exactly-once
# -----------------------------

def test_request_continued_once_when_parsing_raises(fake_cdp):
    async def scenario(adapter):
        async def boom(params):
            raise RuntimeError("parser exploded")

        adapter.handle_request = boom
        await fake_cdp.fire("Fetch.requestPaused", paused_request(POST_URL, "channel=C1"))

    _, emitted = _run_with_adapter(fake_cdp, scenario)

    assert emitted == []
    assert fake_cdp.calls("Fetch.continueRequest") == [{"requestId": "req-1"}]


def test_request_continued_once_for_invalid_json_body(fake_cdp):
    async def scenario(adapter):
        await fake_cdp.fire(
            "Fetch.requestPaused", paused_request(POST_URL, "{not json", content_type="application/json")
        )

    _, emitted = _run_with_adapter(fake_cdp, scenario)

    assert emitted == []
    assert len(fake_cdp.calls("Fetch.continueRequest")) == 1


def test_emit_failure_is_reported_and_request_still_continued():
    fake = FakeCdpSession()

    async def main():
        adapter = SlackAdapter(fake, now=lambda: FIXED_NOW)

        async def failing_emit(event):
            raise OSError("disk full")

        await adapter.start(failing_emit)
        await fake.fire("Fetch.requestPaused", paused_request(POST_URL, "channel=C1&ts=1.5&text=x"))
        failure = await asyncio.wait_for(adapter.wait_failed(), timeout=1.0)
        await adapter.stop()
        return failure

    failure = asyncio.run(main())

    assert isinstance(failure, OSError)
    assert len(fake.calls("Fetch.continueRequest")) == 1


# -----------------------------
# Reactions
# -----------------------------

def test_reaction_uses_ui_capture_when_cache_misses():
    fake = FakeCdpSession(evaluate=lambda params: CAPTURED)
    body = "channel=C123&timestamp=1711112222.000300&name=eyes"

    async def scenario(adapter):
        await fake.fire("Fetch.requestPaused", paused_request(REACTION_ADD_URL, body))

    adapter, emitted = _run_with_adapter(fake, scenario)

    assert len(emitted) == 1
    event = emitted[0]
    assert event.kind == "reaction"
    assert event.action == "added"
    assert event.uid == "slack:C123@1711112222.000300:eyes:added:unknown"
    assert event.detail.slack.message_text == "fetched-text"
    assert event.detail.slack.message_ts == "1711112222.000300"
    assert event.meta == {"channel": "#general", "emoji": "eyes"}
    assert adapter.channel_names == {"C123": "general"}
    assert len(fake.calls("Runtime.evaluate")) == 1


def test_reaction_prefers_message_cache_over_ui_capture():
    fake = FakeCdpSession(evaluate=lambda params: CAPTURED)

    async def scenario(adapter):
        await fake.fire(
            "Network.webSocketFrameReceived",
            ws_frame({"type": "message", "channel": "C123", "ts": "1711111111.000200", "text": "from-ws", "user": "U7"}),
        )
        await fake.fire(
            "Fetch.requestPaused",
            paused_request(REACTION_REMOVE_URL, "channel=C123&timestamp=1711111111.000200&name=eyes&user=U1"),
        )

    _, emitted = _run_with_adapter(fake, scenario)

    event = emitted[0]
    assert event.action == "removed"
    assert event.detail.slack.message_text == "from-ws"
    assert event.detail.slack.message_user == "U7"
    assert fake.calls("Runtime.evaluate") == []


def test_reaction_finds_text_of_message_posted_earlier(fake_cdp):
    async def scenario(adapter):
        await fake_cdp.fire(
            "Fetch.requestPaused",
            paused_request(POST_URL, "channel=C5&ts=1711111111.0002&text=original", request_id="p"),
        )
        await fake_cdp.fire(
            "Fetch.requestPaused",
            paused_request(REACTION_ADD_URL, "channel=C5&timestamp=1711111111.000200&name=tada", request_id="r"),
        )

    _, emitted = _run_with_adapter(fake_cdp, scenario)

    assert [e.kind for e in emitted] == ["post", "reaction"]
    assert emitted[1].detail.slack.message_text == "original"


def test_reaction_warmed_from_response_body(fake_cdp):
    fake_cdp.response_bodies["resp-1"] = {
        "body": '{"ok":true,"channel":"C8","message":{"ts":"1711111111.000300","text":"from-response"}}',
        "base64Encoded": False,
    }

    async def scenario(adapter):
        await fake_cdp.fire(
            "Network.responseReceived",
            {"requestId": "resp-1", "response": {"url": "https://acme.slack.com/api/chat.postMessage"}},
        )
        await fake_cdp.fire(
            "Fetch.requestPaused",
            paused_request(REACTION_ADD_URL, "channel=C8&timestamp=1711111111.000300&name=eyes"),
        )

    _, emitted = _run_with_adapter(fake_cdp, scenario)

    assert emitted[0].detail.slack.message_text == "from-response"


def test_reaction_falls_back_to_payload_text_when_capture_disabled(fake_cdp):
    body = "channel=C1&timestamp=1711111111.000200&name=eyes&message_text=inline"

    async def scenario(adapter):
        await fake_cdp.fire("Fetch.requestPaused", paused_request(REACTION_ADD_URL, body))

    _, emitted = _run_with_adapter(fake_cdp, scenario, dom_capture_enabled=False)

    assert emitted[0].detail.slack.message_text == "inline"
    assert fake_cdp.calls("Runtime.evaluate") == []


def test_reaction_missing_fields_is_dropped(fake_cdp):
    async def scenario(adapter):
        await fake_cdp.fire("Fetch.requestPaused", paused_request(REACTION_ADD_URL, "channel=C1&name=eyes"))

    _, emitted = _run_with_adapter(fake_cdp, scenario)

    assert emitted == []
    assert len(fake_cdp.calls("Fetch.continueRequest")) == 1


def test_failed_capture_retries_then_gives_up():
    fake = FakeCdpSession(evaluate=lambda params: {"status": "no-target", "candidateCount": 3})
    body = "channel=C1&timestamp=1711111111.000200&name=eyes"

    async def scenario(adapter):
        await fake.fire("Fetch.requestPaused", paused_request(REACTION_ADD_URL, body))

    _, emitted = _run_with_adapter(fake, scenario, retry_delays_ms=(0, 100, 200))

    assert len(fake.calls("Runtime.evaluate")) == 3
    assert emitted[0].detail.slack.message_text is None


# -----------------------------
# UI capture
# -----------------------------

def test_concurrent_reactions_share_one_capture():
    fake = FakeCdpSession(evaluate=lambda params: CAPTURED, evaluate_delay_s=0.01)

    async def scenario(adapter):
        await asyncio.gather(
            fake.fire(
                "Fetch.requestPaused",
                paused_request(REACTION_ADD_URL, "channel=C123&timestamp=1711111111.000200&name=eyes&user=U1", "r1"),
            ),
            fake.fire(
                "Fetch.requestPaused",
                paused_request(REACTION_ADD_URL, "channel=C123&timestamp=1711111111.000200&name=eyes&user=U2", "r2"),
            ),
        )

    adapter, emitted = _run_with_adapter(fake, scenario, retry_delays_ms=(0,))

    assert len(fake.calls("Runtime.evaluate")) == 1
    assert len(emitted) == 2
    assert {e.detail.slack.message_text for e in emitted} == {"fetched-text"}
    assert adapter._capture_tasks == {}


def test_capture_result_is_consumed_once():
    fake = FakeCdpSession(evaluate=lambda params: CAPTURED)
    candidate = ReactionCandidate(ts="1711111111.0002", normalized_ts="1711111111.000200", channel_id="C123")

    async def scenario(adapter):
        first = await adapter.capture_ui_state(candidate)
        assert first is not None and first.text == "fetched-text"
        assert "1711111111.000200" not in adapter.ui_captures
        assert "1711111111.0002" not in adapter.ui_captures

    _run_with_adapter(fake, scenario)


def test_capture_evaluates_in_frame_context_first():
    fake = FakeCdpSession(evaluate=lambda params: CAPTURED if params.get("contextId") == 11 else None)
    candidate = ReactionCandidate(
        ts="1711111111.000200", normalized_ts="1711111111.000200", channel_id="C123", frame_id="frame-1"
    )

    async def scenario(adapter):
        await fake.fire(
            "Runtime.executionContextCreated",
            {"context": {"id": 11, "auxData": {"frameId": "frame-1", "isDefault": True}}},
        )
        result = await adapter.capture_ui_state(candidate)
        assert result is not None

    _run_with_adapter(fake, scenario)

    assert fake.calls("Runtime.evaluate")[0]["contextId"] == 11


def test_contexts_cleared_empties_registry(fake_cdp):
    async def scenario(adapter):
        await fake_cdp.fire(
            "Runtime.executionContextCreated",
            {"context": {"id": 4, "auxData": {"frameId": "f", "isDefault": True}}},
        )
        assert adapter.contexts.resolve("f") == [4, None]
        await fake_cdp.fire("Runtime.executionContextsCleared", {})
        assert adapter.contexts.resolve("f") == [None]

    _run_with_adapter(fake_cdp, scenario)


def test_oversized_ws_frame_is_ignored(fake_cdp):
    async def scenario(adapter):
        payload = {"type": "message", "channel": "C1", "ts": "1.000000", "text": "x" * (600 * 1024)}
        await fake_cdp.fire("Network.webSocketFrameReceived", ws_frame(payload))
        assert len(adapter.messages) == 0

    _run_with_adapter(fake_cdp, scenario)


@pytest.mark.parametrize("kind", ["message_changed", "thread_broadcast"])
def test_ws_frame_variants_warm_cache(fake_cdp, kind):
    if kind == "message_changed":
        payload = {"type": kind, "channel": "C1", "message": {"ts": "1711111111.0002", "text": "edited"}}
    else:
        payload = {"type": kind, "channel": "C1", "root_ts": "1711111111.0002", "text": "edited"}

    async def scenario(adapter):
        await fake_cdp.fire("Network.webSocketFrameReceived", ws_frame(payload))
        assert adapter.messages.get("C1", "1711111111.000200").text == "edited"
        assert adapter.messages.get("C1", "1711111111.0002").text == "edited"

    _run_with_adapter(fake_cdp, scenario)


def test_message_subtype_frame_warms_edited_message(fake_cdp):
    payload = {
        "type": "message",
        "subtype": "message_changed",
        "channel": "C1",
        "message": {"ts": "1711111111.0002", "text": "edited"},
    }

    async def scenario(adapter):
        await fake_cdp.fire("Network.webSocketFrameReceived", ws_frame(payload))
        assert adapter.messages.get("C1", "1711111111.000200").text == "edited"

    _run_with_adapter(fake_cdp, scenario)


def test_out_of_range_ts_in_frame_and_response_is_tolerated(fake_cdp):
    fake_cdp.response_bodies["resp-1"] = {
        "body": '{"ok":true,"channel":"C8","message":{"ts":"1e30","text":"from-response"}}',
        "base64Encoded": False,
    }

    async def scenario(adapter):
        await fake_cdp.fire(
            "Network.webSocketFrameReceived", ws_frame({"type": "message", "channel": "C1", "ts": "1e30", "text": "x"})
        )
        await fake_cdp.fire(
            "Network.responseReceived",
            {"requestId": "resp-1", "response": {"url": "https://acme.slack.com/api/chat.postMessage"}},
        )
        assert adapter.messages.get("C1", "1e30").text == "x"
        assert adapter.messages.get("C8", "1e30").text == "from-response"

    _run_with_adapter(fake_cdp, scenario)

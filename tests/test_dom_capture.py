import json

from slackscribe.dom_capture import (
    CaptureFailure,
    CaptureSuccess,
    build_capture_expression,
    excerpt,
    outcome_to_log,
    parse_capture_result,
)


def test_expression_embeds_needles_and_debug_flag():
    expr = build_capture_expression(["1.000200", "1.0002"], debug=True)
    assert expr.startswith("(function slackscribeCapture(")
    assert json.dumps(["1.000200", "1.0002"]) in expr
    assert expr.endswith(", true)")


def test_parse_success():
    outcome = parse_capture_result(
        {"text": "  hi  ", "channel": "general", "channelId": "C1", "matchedTs": ["1.000200", 5]}
    )
    assert isinstance(outcome, CaptureSuccess)
    assert outcome.text == "hi"
    assert outcome.channel_name == "general"
    assert outcome.matched_ts == ["1.000200"]


def test_parse_failure_status():
    outcome = parse_capture_result({"status": "no-target", "candidateCount": 4, "sampleTs": ["9"]}, ["1.0"])
    assert isinstance(outcome, CaptureFailure)
    assert outcome.reason == "no-target"
    assert outcome.needles == ["1.0"]
    assert outcome.candidate_count == 4


def test_parse_junk():
    assert parse_capture_result(None) is None
    assert parse_capture_result({"error": "TypeError"}) is None
    assert parse_capture_result({"text": "   "}) is None


def test_log_excerpt_is_truncated():
    text = "x" * 100
    assert excerpt(text) == "x" * 80 + "..."
    log = outcome_to_log(CaptureSuccess(text=text, channel_id="C1"))
    assert log == {"ok": True, "channel": "C1", "excerpt": "x" * 80 + "..."}

"""
dom_capture.py

Page script used to recover a message's text from the rendered Slack UI when
the intercepted traffic only references the message by timestamp.

Input contract:  capture(needles: string[], selectors: {root, body, channel}, debug: bool)
Output contract: {text, channel, channelId, matchedTs}             on success
                 {status: "no-target"|"empty-text"|"no-ts", ...}   on a miss
                 {error: "..."}                                    on a script fault

The script only reads the DOM; it never touches the client's JS state.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

DOM_CAPTURE_VERSION = "2"

DOM_ROOT_SELECTORS = [
    "[data-message-ts]",
    "[data-message-id]",
    '[data-qa="message"]',
    '[data-qa="message_container"]',
    '[data-qa="virtual-list-item"]',
    "[data-qa='message-pane-body'] [role='row']",
    ".p-message_pane_message",
    ".c-message_kit__message",
    ".p-threads_view__thread_container [role='presentation']",
]

DOM_BODY_SELECTORS = [
    '[data-qa="message_content"]',
    '[data-qa="message-text"]',
    ".p-rich_text_section",
    ".c-message__body",
    ".p-message_pane_message__message",
    ".p-threads_view__thread_message_body",
    ".c-message_kit__text",
    ".p-rich_text_block",
]

DOM_CHANNEL_NAME_SELECTORS = [
    '[data-qa="channel_name_text"]',
    ".p-top_nav__channel_header__name",
    ".p-top_nav__conversation_title__name",
    ".p-classic_nav__model__title__name",
    ".p-ia__channel_header__info .p-ia__channel_header__name",
    "[data-qa='channel_context_bar_channel_name']",
]

# Reaction bars / action menus; stripped from the clone before reading text.
DOM_CHROME_SELECTORS = [
    "[data-qa='message_reactions']",
    "[data-qa='message-reactions']",
    "[data-qa='message_actions']",
    "[data-qa='add-reaction']",
    "[data-qa='more_message_actions']",
    ".c-reaction",
    ".c-reaction_bar",
    ".c-message_kit__reaction",
    ".c-message_kit__reaction_bar",
    ".c-message_kit__actions",
    ".p-message_pane_message__actions",
]

DOM_RETRY_DELAYS_MS = (0, 100, 200, 300)
DOM_EXCERPT_LENGTH = 80


dom_capture_script = r"""
(function slackscribeCapture(tsList, selectors, debugMode) {
  try {
    const asList = (v) => (Array.isArray(v) ? v : v == null ? [] : [v]);
    const needles = asList(tsList).map((v) => String(v == null ? "" : v).trim()).filter(Boolean);
    if (!needles.length) return { status: "no-ts" };

    const rootSelectors = asList(selectors && selectors.root);
    const bodySelectors = asList(selectors && selectors.body);
    const channelSelectors = asList(selectors && selectors.channel);
    const chromeSelectors = asList(selectors && selectors.chrome);

    const nodes = [];
    const seen = new Set();
    const collect = (selector) => {
      try {
        document.querySelectorAll(selector).forEach((n) => {
          if (n && n.nodeType === 1 && !seen.has(n)) { seen.add(n); nodes.push(n); }
        });
      } catch (err) {}
    };
    rootSelectors.forEach(collect);

    const attr = (el, name) => {
      if (!el || typeof el.getAttribute !== "function") return "";
      const v = el.getAttribute(name);
      return typeof v === "string" ? v : "";
    };

    const TS_ATTRS = ["data-message-ts", "data-message-id", "data-ts", "data-qa-ts", "data-sort-key"];
    const tsValuesOf = (el) => {
      const values = new Set();
      const add = (v) => { if (v) values.add(v); };
      const visit = (node) => {
        TS_ATTRS.forEach((a) => add(attr(node, a)));
        if (node.dataset) Object.keys(node.dataset).forEach((k) => add(String(node.dataset[k] || "")));
        if (node.matches && node.matches("time[datetime]")) add(attr(node, "datetime"));
      };
      visit(el);
      try {
        el.querySelectorAll("[data-message-ts],[data-message-id],[data-ts],[data-qa-ts],time[datetime]").forEach(visit);
      } catch (err) {}
      return Array.from(values);
    };

    const matches = (el) => tsValuesOf(el).some((v) => needles.some((n) => v.includes(n)));
    const target = nodes.find(matches) || null;

    if (!target) {
      const result = { status: "no-target", needles, candidateCount: nodes.length };
      if (debugMode) {
        const sample = [];
        for (const n of nodes) {
          for (const v of tsValuesOf(n)) { if (!sample.includes(v)) sample.push(v); }
          if (sample.length >= 12) break;
        }
        result.sampleTs = sample.slice(0, 12);
      }
      return result;
    }

    let body = null;
    for (const selector of bodySelectors) {
      try {
        const found = target.querySelector(selector);
        if (found) { body = found; if ((found.innerText || "").trim()) break; }
      } catch (err) {}
    }

    const clone = (body || target).cloneNode(true);
    chromeSelectors.forEach((selector) => {
      try { clone.querySelectorAll(selector).forEach((el) => el.remove()); } catch (err) {}
    });
    const text = String(clone.innerText || clone.textContent || "").trim();
    if (!text) {
      return { status: "empty-text", needles, hasBody: Boolean(body), matchedTs: tsValuesOf(target) };
    }

    let channelName = null;
    let channelId = null;
    const container = target.closest
      ? target.closest("[data-qa='message_container'], .p-message_pane_message, .p-threads_view__thread_message")
      : null;
    if (container) {
      channelId = attr(container, "data-qa-channel-id") || attr(container, "data-qa-conversation-id") || null;
    }
    for (const selector of channelSelectors) {
      try {
        const found = document.querySelector(selector);
        const value = found && typeof found.textContent === "string" ? found.textContent.trim() : "";
        if (value) { channelName = value; break; }
      } catch (err) {}
    }

    return { text, channel: channelName, channelId, matchedTs: tsValuesOf(target) };
  } catch (err) {
    return { error: err && err.message ? err.message : String(err) };
  }
})
"""


dom_probe_script = r"""
(() => {
  try {
    const ready = typeof document === "object" ? document.readyState : "unknown";
    return {
      ok: true,
      ready,
      title: typeof document.title === "string" ? document.title : null,
      href: window.location ? window.location.href : null,
      timestamp: Date.now(),
    };
  } catch (err) {
    return { ok: false, reason: String(err) };
  }
})()
"""


def build_capture_expression(needles: Sequence[str], debug: bool = False) -> str:
    selectors = {
        "root": DOM_ROOT_SELECTORS,
        "body": DOM_BODY_SELECTORS,
        "channel": DOM_CHANNEL_NAME_SELECTORS,
        "chrome": DOM_CHROME_SELECTORS,
    }
    return f"{dom_capture_script.strip()}({json.dumps(list(needles))}, {json.dumps(selectors)}, {'true' if debug else 'false'})"


# -----------------------------
# Outcomes
# -----------------------------

@dataclass
class CaptureSuccess:
    text: str
    channel_name: Optional[str] = None
    channel_id: Optional[str] = None
    matched_ts: List[str] = field(default_factory=list)
    ok: bool = True


@dataclass
class CaptureFailure:
    reason: str  # "no-target" | "empty-text" | "no-ts"
    needles: List[str] = field(default_factory=list)
    candidate_count: Optional[int] = None
    sample_ts: List[str] = field(default_factory=list)
    has_body: Optional[bool] = None
    ok: bool = False


CaptureOutcome = Union[CaptureSuccess, CaptureFailure]


def _str_list(v: Any) -> List[str]:
    if not isinstance(v, list):
        return []
    return [x for x in v if isinstance(x, str) and x]


def _opt_str(v: Any) -> Optional[str]:
    if isinstance(v, str) and v.strip():
        return v.strip()
    return None


def parse_capture_result(value: Any, needles: Sequence[str] = ()) -> Optional[CaptureOutcome]:
    """Runtime.evaluate `result.value` -> outcome; None for script faults or junk."""
    if not isinstance(value, dict):
        return None
    if value.get("error"):
        return None
    status = value.get("status")
    if isinstance(status, str):
        count = value.get("candidateCount")
        return CaptureFailure(
            reason=status,
            needles=_str_list(value.get("needles")) or list(needles),
            candidate_count=count if isinstance(count, int) else None,
            sample_ts=_str_list(value.get("sampleTs")),
            has_body=value.get("hasBody") if isinstance(value.get("hasBody"), bool) else None,
        )
    text = _opt_str(value.get("text"))
    if not text:
        return None
    return CaptureSuccess(
        text=text,
        channel_name=_opt_str(value.get("channel")),
        channel_id=_opt_str(value.get("channelId")),
        matched_ts=_str_list(value.get("matchedTs")),
    )


def excerpt(text: str, limit: int = DOM_EXCERPT_LENGTH) -> str:
    return text if len(text) <= limit else f"{text[:limit]}..."


def outcome_to_log(outcome: CaptureOutcome) -> Dict[str, Any]:
    if isinstance(outcome, CaptureSuccess):
        return {"ok": True, "channel": outcome.channel_name or outcome.channel_id, "excerpt": excerpt(outcome.text)}
    return {
        "ok": False,
        "reason": outcome.reason,
        "candidateCount": outcome.candidate_count,
        "sampleTs": outcome.sample_ts or None,
    }

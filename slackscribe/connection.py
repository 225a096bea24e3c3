from __future__ import annotations

"""
connection.py

Locate the Slack page target on the desktop app's remote-debugging endpoint
and open a protocol session on it through playwright.
"""

import asyncio
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests
from playwright.async_api import Browser, CDPSession, Page, Playwright, async_playwright

from .env import CdpEndpoint, setup_logger

logger = setup_logger("slackscribe.connection")

SLACK_URL_RE = re.compile(r"https://app\.slack\.com", re.IGNORECASE)
SLACK_TARGET_TYPES = {"page", "webview", "other"}


class EndpointUnavailable(RuntimeError):
    pass


class SlackTargetNotFound(RuntimeError):
    pass


# -----------------------------------------------------------------------------
# Target discovery
# -----------------------------------------------------------------------------
def list_targets(endpoint: CdpEndpoint, timeout: float = 3.0) -> List[Dict[str, Any]]:
    url = f"{endpoint.http_url}/json/list"
    try:
        r = requests.get(url, timeout=timeout)
        r.raise_for_status()
        data = r.json()
    except (requests.RequestException, ValueError) as e:
        raise EndpointUnavailable(f"Debugging endpoint unavailable at {url}: {e}") from e
    if not isinstance(data, list):
        raise EndpointUnavailable(f"Unexpected target list from {url}")
    return [t for t in data if isinstance(t, dict)]


def is_slack_target(target: Dict[str, Any]) -> bool:
    return target.get("type") in SLACK_TARGET_TYPES and bool(SLACK_URL_RE.search(str(target.get("url") or "")))


def find_slack_target(targets: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    for t in targets:
        if is_slack_target(t):
            return t
    return None


# -----------------------------------------------------------------------------
# Session
# -----------------------------------------------------------------------------
@dataclass
class SlackSession:
    """One attached session: the protocol client plus what keeps it alive."""

    target: Dict[str, Any]
    cdp: CDPSession
    page: Page
    browser: Browser
    playwright: Playwright
    closed: bool = False

    async def wait_disconnected(self) -> None:
        loop = asyncio.get_running_loop()
        done = loop.create_future()

        def _mark(*_args: Any) -> None:
            if not done.done():
                done.set_result(None)

        self.browser.on("disconnected", _mark)
        self.page.on("close", _mark)
        try:
            if not self.browser.is_connected() or self.page.is_closed():
                _mark()
            await done
        finally:
            self.browser.remove_listener("disconnected", _mark)
            self.page.remove_listener("close", _mark)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self.cdp.detach()
        except Exception as e:
            logger.debug(f"detach failed: {e}")
        try:
            # over CDP this disconnects; the desktop app keeps running
            await self.browser.close()
        except Exception as e:
            logger.debug(f"browser close failed: {e}")
        try:
            await self.playwright.stop()
        except Exception as e:
            logger.debug(f"playwright stop failed: {e}")


def _find_page(browser: Browser, target: Dict[str, Any]) -> Optional[Page]:
    want = str(target.get("url") or "")
    fallback = None
    for ctx in browser.contexts:
        for page in ctx.pages:
            if page.url == want:
                return page
            if fallback is None and SLACK_URL_RE.search(page.url or ""):
                fallback = page
    return fallback


async def connect_to_slack(endpoint: CdpEndpoint, timeout: float = 3.0) -> SlackSession:
    """
    Raises EndpointUnavailable when the endpoint does not answer and
    SlackTargetNotFound when it answers without a Slack page.
    """
    targets = await asyncio.to_thread(list_targets, endpoint, timeout)
    target = find_slack_target(targets)
    if target is None:
        raise SlackTargetNotFound("Slack page target not found. Open app.slack.com in the desktop app.")

    pw = await async_playwright().start()
    browser: Optional[Browser] = None
    try:
        try:
            browser = await pw.chromium.connect_over_cdp(endpoint.http_url, timeout=timeout * 1000)
        except Exception as e:
            raise EndpointUnavailable(f"Could not attach to {endpoint.http_url}: {e}") from e

        page = _find_page(browser, target)
        if page is None:
            raise SlackTargetNotFound("Slack page target not found. Open app.slack.com in the desktop app.")

        cdp = await page.context.new_cdp_session(page)
    except BaseException:
        await _release(browser, pw)
        raise

    logger.info(f"Attached to {target.get('type')} target {target.get('url')}")
    return SlackSession(target=target, cdp=cdp, page=page, browser=browser, playwright=pw)


async def _release(browser: Optional[Browser], pw: Playwright) -> None:
    """Undo a half-finished attach; the original error is what the caller sees."""
    if browser is not None:
        try:
            await browser.close()
        except Exception as e:
            logger.debug(f"browser close failed: {e}")
    try:
        await pw.stop()
    except Exception as e:
        logger.debug(f"playwright stop failed: {e}")

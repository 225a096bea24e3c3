from __future__ import annotations

"""
cli.py

    python -m slackscribe ingest [--once]
    python -m slackscribe serve [--host H] [--port P]
    python -m slackscribe targets
"""

import argparse
import asyncio
import json
import signal
import sys
from typing import List, Optional

from dotenv import load_dotenv

from .adapter import SlackAdapter
from .connection import EndpointUnavailable, SlackTargetNotFound, connect_to_slack, list_targets
from .env import CaptureSettings, _env_int, _env_str, setup_logger
from .jsonl_writer import JsonlWriter
from .supervisor import Backoff, ReconnectSupervisor, SupervisorState

logger = setup_logger("slackscribe.cli")


def build_supervisor(settings: CaptureSettings) -> ReconnectSupervisor:
    async def connect():
        return await connect_to_slack(settings.endpoint, timeout=settings.list_timeout_s)

    def make_adapter(cdp) -> SlackAdapter:
        return SlackAdapter(
            cdp,
            tz_name=settings.timezone,
            dom_capture_enabled=settings.dom_capture_enabled,
            dom_probe=settings.dom_probe,
        )

    return ReconnectSupervisor(
        connect=connect,
        make_adapter=make_adapter,
        writer=JsonlWriter(settings.data_dir),
        backoff=Backoff(base_delay_s=settings.reconnect_base_s, max_delay_s=settings.reconnect_max_s),
    )


def _install_signal_handlers(supervisor: ReconnectSupervisor) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, supervisor.request_shutdown)
        except (NotImplementedError, RuntimeError):
            # no loop signal support (Windows); KeyboardInterrupt still ends the run
            logger.debug(f"Signal handler unavailable for {sig!r}")


async def run_ingest(settings: CaptureSettings, once: bool = False) -> int:
    supervisor = build_supervisor(settings)
    _install_signal_handlers(supervisor)
    logger.info(f"Ingesting from {settings.endpoint.http_url} into {settings.data_dir}")

    if once:
        try:
            outcome = await supervisor.run_cycle(raise_on_connect_error=True)
        except (SlackTargetNotFound, EndpointUnavailable) as e:
            logger.error(str(e))
            return 1
        return 1 if outcome == SupervisorState.ERRORED else 0

    await supervisor.run()
    return 0


def cmd_targets(settings: CaptureSettings) -> int:
    try:
        targets = list_targets(settings.endpoint, timeout=settings.list_timeout_s)
    except EndpointUnavailable as e:
        logger.error(str(e))
        return 1
    for t in targets:
        print(json.dumps({"type": t.get("type"), "title": t.get("title"), "url": t.get("url")}, ensure_ascii=False))
    return 0


def cmd_serve(settings: CaptureSettings, host: str, port: int) -> int:
    import uvicorn

    from .server import create_app

    uvicorn.run(create_app(settings.data_dir), host=host, port=port, log_level="info")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()

    ap = argparse.ArgumentParser(prog="slackscribe")
    sub = ap.add_subparsers(dest="command", required=True)

    p_ingest = sub.add_parser("ingest", help="capture Slack activity into the event log")
    p_ingest.add_argument("--once", action="store_true", help="run a single session without reconnecting")

    p_serve = sub.add_parser("serve", help="serve the day timeline and live stream")
    p_serve.add_argument("--host", default=_env_str("SLACKSCRIBE_HOST", "127.0.0.1"))
    p_serve.add_argument("--port", type=int, default=_env_int("SLACKSCRIBE_PORT", 8765))

    sub.add_parser("targets", help="list debugging targets on the endpoint")

    args = ap.parse_args(argv)
    settings = CaptureSettings.from_env()

    if args.command == "targets":
        return cmd_targets(settings)
    if args.command == "serve":
        return cmd_serve(settings, args.host, args.port)

    try:
        return asyncio.run(run_ingest(settings, once=args.once))
    except KeyboardInterrupt:
        return 0
    except Exception:
        logger.exception("Ingest failed")
        return 1


if __name__ == "__main__":
    sys.exit(main())

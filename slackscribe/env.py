from __future__ import annotations

"""
env.py

Environment-driven configuration and logging for the capture core.

Knobs are read from the process environment (optionally seeded from a .env
file by the CLI). Nothing here raises on bad input; every helper falls back
to its documented default.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List


DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 9222
DEFAULT_TIMEZONE = "Asia/Tokyo"
DEFAULT_ENDPOINT_FILE = os.path.join(".slackscribe", "cdp-endpoint.json")


# -----------------------------------------------------------------------------
# Env helpers
# -----------------------------------------------------------------------------
def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None:
        return default
    try:
        return int(v)
    except Exception:
        return default


def _env_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None:
        return default
    try:
        return float(v)
    except Exception:
        return default


def _env_str(name: str, default: str) -> str:
    v = os.getenv(name)
    if v is None:
        return default
    return str(v).strip()


def _env_tokens(name: str) -> List[str]:
    return [t.strip() for t in _env_str(name, "").split(",") if t.strip()]


# -----------------------------------------------------------------------------
# Logging
# -----------------------------------------------------------------------------
def _parse_log_level(s: str, default: int = logging.INFO) -> int:
    if not s:
        return default
    s = s.strip().upper()
    return {
        "CRITICAL": logging.CRITICAL,
        "ERROR": logging.ERROR,
        "WARNING": logging.WARNING,
        "WARN": logging.WARNING,
        "INFO": logging.INFO,
        "DEBUG": logging.DEBUG,
    }.get(s, default)


def setup_logger(name: str) -> logging.Logger:
    level = _parse_log_level(_env_str("SLACKSCRIBE_LOG_LEVEL", "INFO"), default=logging.INFO)
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if logger.handlers:
        return logger
    ch = logging.StreamHandler()
    ch.setLevel(level)
    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )
    ch.setFormatter(formatter)
    logger.addHandler(ch)
    return logger


# -----------------------------------------------------------------------------
# Protocol endpoint
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class CdpEndpoint:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT

    @property
    def http_url(self) -> str:
        return f"http://{self.host}:{self.port}"


def _port_or_none(v) -> int | None:
    if isinstance(v, bool):
        return None
    try:
        port = int(v)
    except Exception:
        return None
    return port if 0 < port < 65536 else None


def resolve_endpoint() -> CdpEndpoint:
    """
    Endpoint file first (CDP_ENDPOINT_FILE, written by whatever launched the
    desktop app with remote debugging), then CDP_HOST/CDP_PORT, then
    127.0.0.1:9222. A corrupt file is ignored.
    """
    env_host = _env_str("CDP_HOST", "") or DEFAULT_HOST
    env_port = _port_or_none(os.getenv("CDP_PORT")) or DEFAULT_PORT

    path = Path(_env_str("CDP_ENDPOINT_FILE", "") or DEFAULT_ENDPOINT_FILE)
    if path.is_file():
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except Exception:
            data = None
        if isinstance(data, dict):
            host = data.get("host")
            port = _port_or_none(data.get("port"))
            return CdpEndpoint(
                host=host if isinstance(host, str) and host else env_host,
                port=port or env_port,
            )

    return CdpEndpoint(host=env_host, port=env_port)


def resolve_data_dir() -> Path:
    v = _env_str("DATA_DIR", "")
    if v:
        return Path(v).expanduser().resolve()
    return (Path.cwd() / "data").resolve()


# -----------------------------------------------------------------------------
# Settings
# -----------------------------------------------------------------------------
@dataclass
class CaptureSettings:
    endpoint: CdpEndpoint = field(default_factory=CdpEndpoint)
    data_dir: Path = field(default_factory=lambda: (Path.cwd() / "data").resolve())
    timezone: str = DEFAULT_TIMEZONE
    dom_capture_enabled: bool = True
    dom_probe: bool = False
    reconnect_base_s: float = 1.0
    reconnect_max_s: float = 10.0
    list_timeout_s: float = 3.0

    @classmethod
    def from_env(cls) -> "CaptureSettings":
        debug_tokens = set(_env_tokens("SLACKSCRIBE_DEBUG"))
        return cls(
            endpoint=resolve_endpoint(),
            data_dir=resolve_data_dir(),
            timezone=_env_str("SLACKSCRIBE_TIMEZONE", DEFAULT_TIMEZONE) or DEFAULT_TIMEZONE,
            dom_capture_enabled=not _env_bool("SLACKSCRIBE_DISABLE_DOM_CAPTURE", False),
            dom_probe="slack:domprobe" in debug_tokens,
            reconnect_base_s=max(0.0, _env_float("SLACKSCRIBE_RECONNECT_BASE_S", 1.0)),
            reconnect_max_s=max(0.0, _env_float("SLACKSCRIBE_RECONNECT_MAX_S", 10.0)),
            list_timeout_s=max(0.1, _env_float("SLACKSCRIBE_LIST_TIMEOUT_S", 3.0)),
        )

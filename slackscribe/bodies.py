from __future__ import annotations

import base64
import json
import re
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import parse_qsl

from .env import setup_logger

logger = setup_logger("slackscribe.bodies")

JSON_CT_RE = re.compile(r"application/json|text/json", re.IGNORECASE)
FORM_CT_RE = re.compile(r"application/x-www-form-urlencoded", re.IGNORECASE)
MULTIPART_CT_RE = re.compile(r"multipart/form-data", re.IGNORECASE)
BOUNDARY_RE = re.compile(r"boundary=([^;]+)", re.IGNORECASE)
PART_NAME_RE = re.compile(r'name="([^"]+)"', re.IGNORECASE)


class BodyParseError(ValueError):
    pass


def header_value(headers: Optional[Mapping[str, Any]], key: str) -> str:
    if not headers:
        return ""
    target = key.lower()
    for k, v in headers.items():
        if str(k).lower() == target and v is not None:
            return str(v)
    return ""


def post_data_of(request: Mapping[str, Any]) -> str:
    """Fetch.requestPaused request -> raw body text (postData or postDataEntries)."""
    raw = request.get("postData")
    if isinstance(raw, str):
        return raw
    chunks: List[bytes] = []
    for entry in request.get("postDataEntries") or []:
        b64 = entry.get("bytes") if isinstance(entry, dict) else None
        if isinstance(b64, str):
            try:
                chunks.append(base64.b64decode(b64))
            except Exception:
                continue
    return b"".join(chunks).decode("utf-8", errors="replace")


def _merge_payload(result: Dict[str, Any], value: str) -> None:
    try:
        nested = json.loads(value)
    except Exception:
        logger.debug("nested payload is not JSON")
        return
    if isinstance(nested, dict):
        result.update(nested)


def parse_multipart(body: str, boundary: str) -> Dict[str, Any]:
    delim = "--" + boundary.strip().strip("\"'")
    result: Dict[str, Any] = {}
    for segment in body.split(delim):
        if not segment.strip() or segment.strip() == "--":
            continue
        head, sep, value = segment.lstrip("\r\n").partition("\r\n\r\n")
        if not sep:
            continue
        disposition = next(
            (line for line in head.split("\r\n") if line.lower().startswith("content-disposition")),
            "",
        )
        m = PART_NAME_RE.search(disposition)
        if not m:
            continue
        if value.endswith("\r\n"):
            value = value[:-2]
        result[m.group(1)] = value
        if m.group(1) == "payload":
            _merge_payload(result, value)
    return result


def parse_body(body: str, content_type: str) -> Dict[str, Any]:
    """
    Intercepted request body -> flat key/value map.

    Dispatch is on content-type; a body that *looks* like JSON is parsed as
    JSON regardless. Raises BodyParseError when no known format applies.
    """
    if not body:
        return {}

    if JSON_CT_RE.search(content_type or "") or body.lstrip().startswith("{"):
        try:
            parsed = json.loads(body)
        except Exception as e:
            raise BodyParseError(f"invalid JSON body: {e}") from e
        if not isinstance(parsed, dict):
            raise BodyParseError("JSON body is not an object")
        return parsed

    if FORM_CT_RE.search(content_type or ""):
        result: Dict[str, Any] = {}
        for key, value in parse_qsl(body, keep_blank_values=True):
            result[key] = value
            if key == "payload":
                _merge_payload(result, value)
        return result

    if MULTIPART_CT_RE.search(content_type or ""):
        m = BOUNDARY_RE.search(content_type)
        if not m:
            raise BodyParseError("multipart body without boundary")
        return parse_multipart(body, m.group(1))

    raise BodyParseError(f"unsupported content-type: {content_type or '(none)'}")


def as_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value != "" else None

"""Slack desktop activity capture over the Chrome DevTools Protocol."""

from .events import SCHEMA_VERSION, EventSource, NormalizedEvent, is_valid_event

__all__ = ["SCHEMA_VERSION", "EventSource", "NormalizedEvent", "is_valid_event"]

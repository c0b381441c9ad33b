"""Adapters package - the engine's connection to the server.

Holds the wire event types, the HTTP client for history, snapshot and
channel list, and the Server-Sent Events stream client.
"""
from __future__ import annotations

__all__ = [
    "ApiClient",
    "EventStreamClient",
    "dict_to_event",
    "event_to_dict",
]

from convoscope.adapters.api_client import ApiClient
from convoscope.adapters.event_stream import EventStreamClient
from convoscope.adapters.events import dict_to_event, event_to_dict

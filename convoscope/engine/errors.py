"""Exception hierarchy for the live-state engine.

Nothing in the engine lets these escape past a public operation:
fetch failures are logged and absorbed by the component that issued
the request, malformed events are dropped by the stream client.
"""
from __future__ import annotations


class ConvoscopeError(Exception):
    """Base exception for all convoscope errors."""


class ApiError(ConvoscopeError):
    """A collaborator endpoint answered with a non-success status."""
    def __init__(self, status: int, path: str, body: str = ""):
        self.status = status
        self.path = path
        self.body = body
        super().__init__(f"API error: {status} for {path}")


class EventDecodeError(ConvoscopeError):
    """A stream frame could not be decoded into a known event shape."""
    def __init__(self, event_type: str, reason: str):
        self.event_type = event_type
        self.reason = reason
        super().__init__(f"Cannot decode {event_type or '<untyped>'} event: {reason}")


class PayloadError(ConvoscopeError):
    """A history or snapshot payload does not have the expected shape."""

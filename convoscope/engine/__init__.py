"""Reconciliation engine: per-conversation live state and what feeds it."""
from .models import ConnectionState, MessageRole, ProcessType
from .config import LiveConfig
from .errors import ApiError, ConvoscopeError, EventDecodeError, PayloadError

__all__ = [
    # Models
    "ConnectionState",
    "MessageRole",
    "ProcessType",
    # Config
    "LiveConfig",
    # Errors
    "ApiError",
    "ConvoscopeError",
    "EventDecodeError",
    "PayloadError",
]

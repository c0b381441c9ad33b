"""Transcript steps accumulated for running workers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class TextPart:
    text: str


@dataclass(frozen=True)
class ToolCallPart:
    id: str
    name: str
    args: str = ""


@dataclass(frozen=True)
class ActionStep:
    """Something the worker did: a status line or a tool invocation."""
    content: tuple[Union[TextPart, ToolCallPart], ...]

    step_type = "action"


@dataclass(frozen=True)
class ToolResultStep:
    """The result of an earlier tool call, correlated by ``call_id``."""
    call_id: str
    name: str
    text: str = ""

    step_type = "tool_result"


TranscriptStep = Union[ActionStep, ToolResultStep]

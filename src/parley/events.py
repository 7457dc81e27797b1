"""Events emitted while the Runner drives a conversation."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class StreamEvent:
    """Base for all runner events."""


@dataclass
class RawResponseEvent(StreamEvent):
    """Text delta from the provider stream, in arrival order."""

    content: str = ""


@dataclass
class RunItemEvent(StreamEvent):
    """A discrete step in the tool-calling loop.

    ``name`` values: ``"tool_call"`` (emitted before the tool runs),
    ``"tool_result"``, ``"message"``, ``"stream_interrupted"``.
    """

    name: str = ""
    data: dict = field(default_factory=dict)


@dataclass
class RunCompleteEvent(StreamEvent):
    """Final event, always the last one yielded."""

    result: Any = None

"""Domain events produced by the event translator.

The subprocess speaks its own, larger protocol. The translator folds it
into these few typed events, which are all the session manager and the
connection hub depend on.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from voiceterm.shared.models.turn import ToolCall, TurnMetadata


@dataclass
class RelayEvent:
    """Base domain event."""
    event_type: str = ""


@dataclass
class SessionInit(RelayEvent):
    event_type: str = "session_init"
    model: str = ""
    runtime_version: str = ""
    tools: list[str] = field(default_factory=list)
    session_id: str = ""


@dataclass
class Partial(RelayEvent):
    event_type: str = "partial"
    text: str = ""


@dataclass
class ToolCallObserved(RelayEvent):
    event_type: str = "tool_call"
    name: str = ""
    id: str = ""
    input: Any = None


@dataclass
class TurnComplete(RelayEvent):
    event_type: str = "turn_complete"
    content: str = ""
    spoken_summary: str = ""
    metadata: TurnMetadata = field(default_factory=TurnMetadata)
    tool_calls: list[ToolCall] = field(default_factory=list)


@dataclass
class TurnError(RelayEvent):
    event_type: str = "turn_error"
    message: str = ""


def event_to_dict(event: RelayEvent) -> dict[str, Any]:
    """Convert a typed event dataclass to a plain dict for logging."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if val is not None:
            d[f] = val
    if "event_type" in d:
        d["event"] = d.pop("event_type")
    return d

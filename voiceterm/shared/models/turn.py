"""Turn and tool call models."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TurnRole(Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class ToolCall:
    name: str
    id: str
    input: Any = None


@dataclass
class TurnMetadata:
    """Run statistics reported by the assistant's terminal result event."""
    duration_ms: int | None = None
    api_duration_ms: int | None = None
    num_turns: int | None = None
    total_cost_usd: float | None = None
    token_usage: dict[str, Any] = field(default_factory=dict)
    is_error: bool = False


@dataclass
class Turn:
    role: TurnRole
    content: str
    spoken_summary: str | None = None
    metadata: TurnMetadata | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    timestamp: datetime = field(default_factory=_utcnow)

    @classmethod
    def user(cls, content: str) -> "Turn":
        return cls(role=TurnRole.USER, content=content)

    @classmethod
    def assistant(
        cls,
        content: str,
        spoken_summary: str,
        metadata: TurnMetadata,
        tool_calls: list[ToolCall] | None = None,
    ) -> "Turn":
        return cls(
            role=TurnRole.ASSISTANT,
            content=content,
            spoken_summary=spoken_summary,
            metadata=metadata,
            tool_calls=list(tool_calls or []),
        )

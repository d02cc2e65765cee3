"""Event translator: folds subprocess events into domain events.

Owns the in-flight turn accumulator. Text fragments and tool calls are
collected until a terminal ``result`` or ``error`` closes the turn; the
accumulator is consumed exactly once and never carried into the next turn.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from voiceterm.adapters.events import (
    Partial,
    RelayEvent,
    SessionInit,
    ToolCallObserved,
    TurnComplete,
    TurnError,
)
from voiceterm.adapters.protocol import (
    UpstreamAssistant,
    UpstreamError,
    UpstreamEvent,
    UpstreamInit,
    UpstreamResult,
    UpstreamText,
    UpstreamTextDelta,
    UpstreamToolUse,
)
from voiceterm.shared.models.session import SessionMetadata
from voiceterm.shared.models.turn import ToolCall

logger = logging.getLogger(__name__)

_SPOKEN_RE = re.compile(r"\[SPOKEN:\s*([\s\S]*?)\]", re.IGNORECASE)
SPOKEN_FALLBACK_LIMIT = 500


def extract_spoken_summary(text: str) -> str:
    """Return the text meant to be read aloud.

    The last ``[SPOKEN: ...]`` marker wins, since the assistant may echo
    the instruction format earlier in its answer. Without a marker, the
    final paragraph is used, truncated to 500 characters.
    """
    matches = _SPOKEN_RE.findall(text)
    if matches:
        return matches[-1].strip()
    paragraphs = text.strip().split("\n\n")
    return paragraphs[-1][:SPOKEN_FALLBACK_LIMIT]


@dataclass
class TurnAccumulator:
    text_buffer: list[str] = field(default_factory=list)
    tool_calls: list[ToolCall] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "".join(self.text_buffer)

    def is_empty(self) -> bool:
        return not self.text_buffer and not self.tool_calls


class EventTranslator:
    """Stateful mapping from upstream events to domain events."""

    def __init__(self) -> None:
        self._accumulator: TurnAccumulator | None = None
        self._metadata: SessionMetadata | None = None

    @property
    def metadata(self) -> SessionMetadata | None:
        return self._metadata

    @property
    def accumulator(self) -> TurnAccumulator | None:
        return self._accumulator

    def reset(self) -> None:
        """Forget everything; called at the start of a running period."""
        self._accumulator = None
        self._metadata = None

    def begin_turn(self) -> None:
        """Mark a turn boundary before a new command is written.

        Fragments left over at this point arrived with no turn outstanding;
        they are dropped rather than merged into the new turn.
        """
        if self._accumulator is not None and not self._accumulator.is_empty():
            logger.warning(
                "Discarding leftover accumulator at new turn chars=%d tool_calls=%d",
                len(self._accumulator.text),
                len(self._accumulator.tool_calls),
            )
        self._accumulator = None

    def discard(self, reason: str) -> None:
        if self._accumulator is not None:
            logger.info(
                "Discarding in-flight turn reason=%s chars=%d tool_calls=%d",
                reason,
                len(self._accumulator.text),
                len(self._accumulator.tool_calls),
            )
        self._accumulator = None

    def _current(self) -> TurnAccumulator:
        if self._accumulator is None:
            self._accumulator = TurnAccumulator()
        return self._accumulator

    def _take(self) -> TurnAccumulator:
        acc = self._accumulator or TurnAccumulator()
        self._accumulator = None
        return acc

    def feed(self, event: UpstreamEvent) -> list[RelayEvent]:
        """Apply one upstream event and return the domain events it implies."""
        if isinstance(event, UpstreamInit):
            if self._metadata is not None:
                logger.debug("Ignoring repeated init session_id=%s", event.session_id)
                return []
            self._metadata = SessionMetadata(
                model=event.model,
                tools=list(event.tools),
                session_id=event.session_id,
                runtime_version=event.runtime_version,
            )
            logger.info(
                "Session init model=%s version=%s tools=%d session_id=%s",
                event.model, event.runtime_version, len(event.tools), event.session_id,
            )
            return [SessionInit(
                model=event.model,
                runtime_version=event.runtime_version,
                tools=list(event.tools),
                session_id=event.session_id,
            )]

        if isinstance(event, UpstreamAssistant):
            out: list[RelayEvent] = []
            for block in event.blocks:
                if isinstance(block, UpstreamText):
                    if not block.text:
                        continue
                    self._current().text_buffer.append(block.text)
                    out.append(Partial(text=block.text))
                elif isinstance(block, UpstreamToolUse):
                    self._current().tool_calls.append(
                        ToolCall(name=block.name, id=block.id, input=block.input)
                    )
                    out.append(ToolCallObserved(
                        name=block.name, id=block.id, input=block.input,
                    ))
            return out

        if isinstance(event, UpstreamTextDelta):
            if not event.text:
                return []
            self._current().text_buffer.append(event.text)
            return [Partial(text=event.text)]

        if isinstance(event, UpstreamResult):
            acc = self._take()
            content = acc.text if acc.text_buffer else event.result
            return [TurnComplete(
                content=content,
                spoken_summary=extract_spoken_summary(content),
                metadata=event.metadata,
                tool_calls=list(acc.tool_calls),
            )]

        if isinstance(event, UpstreamError):
            acc = self._take()
            if not acc.is_empty():
                logger.info("Turn error drops partial output chars=%d", len(acc.text))
            return [TurnError(message=event.message)]

        return []

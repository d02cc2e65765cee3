"""Wire protocol codec.

Pure parse/encode functions for the two wire formats the relay speaks:

- client <-> server: one JSON object per WebSocket text frame, tagged by
  ``type`` (``voice-command``, ``partial``, ``response``, ...).
- server <-> subprocess: newline-delimited JSON in the assistant CLI's
  ``stream-json`` format (``system``/``assistant``/``result``/...).

Nothing here performs I/O or touches session state.
"""
from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from voiceterm.engine.errors import MalformedClientMessage, MalformedUpstreamEvent
from voiceterm.shared.models.turn import ToolCall, Turn, TurnMetadata

logger = logging.getLogger(__name__)

# Prepended to every transcript before it reaches the subprocess.
VOICE_PROMPT_PREFIX = (
    "You are being invoked via a voice interface. Be brief. After completing "
    "the user's request, end your response with a spoken summary in this "
    "exact format: [SPOKEN: your 1-2 sentence summary here]. Keep it "
    "conversational and concise - it will be read aloud.\n\n"
    "User's voice request: "
)

START_SESSION = "start-session"
STOP_SESSION = "stop-session"
GET_HISTORY = "get-history"
CLEAR_HISTORY = "clear-history"
VOICE_COMMAND = "voice-command"
CANCEL_REQUEST = "cancel-request"

CLIENT_MESSAGE_TYPES = frozenset({
    START_SESSION,
    STOP_SESSION,
    GET_HISTORY,
    CLEAR_HISTORY,
    VOICE_COMMAND,
    CANCEL_REQUEST,
})


# ── Client -> server ──


@dataclass
class ClientMessage:
    type: str
    transcript: str = ""


def parse_client_message(raw: str | bytes) -> ClientMessage:
    """Parse and validate one client frame.

    Raises MalformedClientMessage for invalid JSON, a non-object payload,
    an unknown ``type`` or a ``voice-command`` without a transcript.
    """
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, ValueError) as exc:
        raise MalformedClientMessage(str(exc)) from exc
    if not isinstance(data, dict):
        raise MalformedClientMessage("expected a JSON object")

    msg_type = data.get("type")
    if not isinstance(msg_type, str) or not msg_type:
        raise MalformedClientMessage("missing 'type'")
    if msg_type not in CLIENT_MESSAGE_TYPES:
        raise MalformedClientMessage(f"unknown message type '{msg_type}'")

    if msg_type == VOICE_COMMAND:
        transcript = data.get("transcript")
        if not isinstance(transcript, str) or not transcript.strip():
            raise MalformedClientMessage(
                "'voice-command' requires a non-empty 'transcript'"
            )
        return ClientMessage(type=msg_type, transcript=transcript.strip())
    return ClientMessage(type=msg_type)


# ── Server -> client ──


def encode_message(message: dict[str, Any]) -> str:
    return json.dumps(message, default=str)


def metadata_to_wire(metadata: TurnMetadata | None) -> dict[str, Any] | None:
    if metadata is None:
        return None
    return {
        "durationMs": metadata.duration_ms,
        "apiDurationMs": metadata.api_duration_ms,
        "numTurns": metadata.num_turns,
        "totalCostUsd": metadata.total_cost_usd,
        "tokenUsage": metadata.token_usage,
        "isError": metadata.is_error,
    }


def tool_calls_to_wire(tool_calls: list[ToolCall]) -> list[dict[str, Any]]:
    return [
        {"toolName": tc.name, "toolId": tc.id, "input": tc.input}
        for tc in tool_calls
    ]


def turn_to_wire(turn: Turn) -> dict[str, Any]:
    # ``type`` mirrors ``role``; the browser keys message rendering on it.
    return {
        "type": turn.role.value,
        "role": turn.role.value,
        "content": turn.content,
        "spokenSummary": turn.spoken_summary,
        "metadata": metadata_to_wire(turn.metadata),
        "toolCalls": tool_calls_to_wire(turn.tool_calls),
        "timestamp": turn.timestamp.isoformat(),
    }


def session_status(running: bool) -> dict[str, Any]:
    return {"type": "session-status", "running": running}


def session_init(
    model: str,
    runtime_version: str,
    tools: list[str] | None = None,
    session_id: str = "",
) -> dict[str, Any]:
    return {
        "type": "session-init",
        "model": model,
        "runtimeVersion": runtime_version,
        "tools": list(tools or []),
        "sessionId": session_id,
    }


def session_ended(code: int | None) -> dict[str, Any]:
    return {"type": "session-ended", "code": code}


def history(turns: list[Turn]) -> dict[str, Any]:
    return {"type": "history", "messages": [turn_to_wire(t) for t in turns]}


def status(message: str, state: str | None = None) -> dict[str, Any]:
    msg: dict[str, Any] = {"type": "status", "message": message}
    if state is not None:
        msg["status"] = state
    return msg


def partial(text: str) -> dict[str, Any]:
    return {"type": "partial", "text": text}


def tool_call(name: str, tool_id: str, tool_input: Any) -> dict[str, Any]:
    return {"type": "tool-call", "toolName": name, "toolId": tool_id, "input": tool_input}


def response(
    full_response: str,
    spoken_summary: str,
    model: str,
    metadata: TurnMetadata,
    tool_calls: list[ToolCall] | None = None,
) -> dict[str, Any]:
    return {
        "type": "response",
        "fullResponse": full_response,
        "spokenSummary": spoken_summary,
        "model": model,
        "metadata": metadata_to_wire(metadata),
        "toolCalls": tool_calls_to_wire(tool_calls or []),
    }


def error(message: str) -> dict[str, Any]:
    return {"type": "error", "message": message}


def history_cleared() -> dict[str, Any]:
    return {"type": "history-cleared"}


def request_cancelled() -> dict[str, Any]:
    return {"type": "request-cancelled"}


# ── Server -> subprocess ──


def encode_user_message(transcript: str) -> dict[str, Any]:
    """Build the stream-json user message for one voice command."""
    return {
        "type": "user",
        "message": {
            "role": "user",
            "content": [
                {"type": "text", "text": VOICE_PROMPT_PREFIX + transcript},
            ],
        },
    }


def encode_interrupt(request_id: str | None = None) -> dict[str, Any]:
    return {
        "type": "control_request",
        "request_id": request_id or f"req_{uuid.uuid4().hex[:12]}",
        "request": {"subtype": "interrupt"},
    }


# ── Subprocess -> server ──


@dataclass
class UpstreamInit:
    model: str = ""
    tools: list[str] = field(default_factory=list)
    session_id: str = ""
    runtime_version: str = ""


@dataclass
class UpstreamText:
    text: str


@dataclass
class UpstreamToolUse:
    name: str
    id: str
    input: Any = None


@dataclass
class UpstreamAssistant:
    blocks: list[UpstreamText | UpstreamToolUse] = field(default_factory=list)


@dataclass
class UpstreamTextDelta:
    text: str


@dataclass
class UpstreamResult:
    result: str = ""
    metadata: TurnMetadata = field(default_factory=TurnMetadata)


@dataclass
class UpstreamError:
    message: str


UpstreamEvent = (
    UpstreamInit
    | UpstreamAssistant
    | UpstreamTextDelta
    | UpstreamResult
    | UpstreamError
)


def decode_line(line: bytes | str) -> dict[str, Any] | None:
    """Decode one stdout line into a JSON object.

    Returns None for a blank line. Raises MalformedUpstreamEvent when the
    line is not a JSON object.
    """
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    stripped = line.strip()
    if not stripped:
        return None
    try:
        data = json.loads(stripped)
    except (json.JSONDecodeError, ValueError) as exc:
        raise MalformedUpstreamEvent(stripped, str(exc)) from exc
    if not isinstance(data, dict):
        raise MalformedUpstreamEvent(stripped, "not a JSON object")
    return data


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


def _parse_metadata(data: dict[str, Any]) -> TurnMetadata:
    cost = data.get("total_cost_usd")
    usage = data.get("usage")
    return TurnMetadata(
        duration_ms=_as_int(data.get("duration_ms")),
        api_duration_ms=_as_int(data.get("duration_api_ms")),
        num_turns=_as_int(data.get("num_turns")),
        total_cost_usd=float(cost) if isinstance(cost, (int, float)) else None,
        token_usage=usage if isinstance(usage, dict) else {},
        is_error=bool(data.get("is_error", False)),
    )


def _parse_block(block: Any) -> UpstreamText | UpstreamToolUse | None:
    if not isinstance(block, dict):
        logger.warning("Dropping non-object content block: %r", block)
        return None
    block_type = block.get("type")
    if block_type == "text":
        text = block.get("text")
        if not isinstance(text, str):
            logger.warning("Dropping text block without text field")
            return None
        return UpstreamText(text=text)
    if block_type == "tool_use":
        name = block.get("name")
        tool_id = block.get("id")
        if not isinstance(name, str) or not name:
            logger.warning("Dropping tool_use block without name id=%s", tool_id)
            return None
        return UpstreamToolUse(
            name=name,
            id=str(tool_id or ""),
            input=block.get("input"),
        )
    # thinking, tool_result, etc.
    return None


def _error_message(data: dict[str, Any]) -> str:
    err = data.get("error")
    if isinstance(err, dict):
        message = err.get("message")
        if message:
            return str(message)
    if isinstance(err, str) and err:
        return err
    message = data.get("message")
    if isinstance(message, str) and message:
        return message
    return "Assistant reported an error"


def parse_upstream_event(data: dict[str, Any]) -> UpstreamEvent | None:
    """Map a decoded subprocess event onto a typed upstream event.

    Returns None for tags the relay does not consume. Missing or
    mistyped fields degrade to a no-op with a log line.
    """
    etype = data.get("type")

    if etype == "system":
        if data.get("subtype") != "init":
            return None
        tools = data.get("tools")
        return UpstreamInit(
            model=str(data.get("model") or ""),
            tools=[str(t) for t in tools] if isinstance(tools, list) else [],
            session_id=str(data.get("session_id") or ""),
            runtime_version=str(data.get("claude_code_version") or data.get("version") or ""),
        )

    if etype == "assistant":
        message = data.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, list):
            logger.warning("assistant event without content list; ignoring")
            return UpstreamAssistant()
        blocks = [b for b in (_parse_block(raw) for raw in content) if b is not None]
        return UpstreamAssistant(blocks=blocks)

    if etype == "content_block_delta":
        delta = data.get("delta")
        if not isinstance(delta, dict):
            logger.warning("content_block_delta without delta object; ignoring")
            return None
        text = delta.get("text")
        if delta.get("type", "text_delta") != "text_delta" or not isinstance(text, str):
            return None
        return UpstreamTextDelta(text=text)

    if etype == "result":
        result = data.get("result")
        return UpstreamResult(
            result=result if isinstance(result, str) else "",
            metadata=_parse_metadata(data),
        )

    if etype == "error":
        return UpstreamError(message=_error_message(data))

    return None

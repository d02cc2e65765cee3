"""Tests for the session state machine, turn ordering and crash handling."""
from __future__ import annotations

import asyncio
from typing import Any

import pytest

from voiceterm.adapters.protocol import VOICE_PROMPT_PREFIX
from voiceterm.engine.errors import NotRunningError, SpawnError
from voiceterm.engine.history import HistoryStore
from voiceterm.engine.session_manager import SessionManager
from voiceterm.shared.models.session import SessionState
from voiceterm.shared.models.turn import TurnRole


class _FakeTransport:
    def __init__(self, fail_start: bool = False, start_delay: float = 0.0) -> None:
        self.fail_start = fail_start
        self.start_delay = start_delay
        self.start_calls = 0
        self.spawning = 0
        self.max_concurrent_spawns = 0
        self.stop_calls = 0
        self.writes: list[dict[str, Any]] = []
        self.running = False
        self._event_cb = None
        self._exit_cb = None

    def on_event(self, callback) -> None:
        self._event_cb = callback

    def on_exit(self, callback) -> None:
        self._exit_cb = callback

    async def start(self, cwd: str | None = None) -> None:
        self.start_calls += 1
        self.spawning += 1
        self.max_concurrent_spawns = max(self.max_concurrent_spawns, self.spawning)
        try:
            if self.start_delay:
                await asyncio.sleep(self.start_delay)
            if self.fail_start:
                raise SpawnError("claude", "not found")
        finally:
            self.spawning -= 1
        self.running = True

    async def write_line(self, payload: dict[str, Any]) -> None:
        if not self.running:
            raise NotRunningError("write to the assistant")
        self.writes.append(payload)

    async def stop(self) -> None:
        self.stop_calls += 1
        if self.running:
            self.running = False
            await self._exit_cb(-15)

    # Test helpers

    async def emit(self, event: dict[str, Any]) -> None:
        await self._event_cb(event)

    async def crash(self, code: int = 1) -> None:
        self.running = False
        await self._exit_cb(code)


def _text(text: str) -> dict[str, Any]:
    return {"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}}


def _result(**extra: Any) -> dict[str, Any]:
    return {"type": "result", "subtype": "success", "is_error": False, "duration_ms": 10, **extra}


def _build(
    transport: _FakeTransport | None = None,
) -> tuple[SessionManager, _FakeTransport, HistoryStore, list[dict[str, Any]]]:
    transport = transport or _FakeTransport()
    history = HistoryStore()
    sent: list[dict[str, Any]] = []

    async def broadcast(message: dict[str, Any]) -> None:
        sent.append(message)

    session = SessionManager(transport, history, cwd="/tmp", broadcast=broadcast)
    return session, transport, history, sent


def _types(sent: list[dict[str, Any]]) -> list[str]:
    return [m["type"] for m in sent]


@pytest.mark.asyncio
async def test_start_transitions_to_running_and_broadcasts() -> None:
    session, transport, _, sent = _build()
    assert session.state is SessionState.STOPPED

    await session.start()

    assert session.state is SessionState.RUNNING
    assert transport.start_calls == 1
    assert sent == [{"type": "session-status", "running": True}]


@pytest.mark.asyncio
async def test_start_while_running_does_not_spawn_again() -> None:
    session, transport, _, sent = _build()
    await session.start()
    await session.start()

    assert transport.start_calls == 1
    assert _types(sent) == ["session-status"]


@pytest.mark.asyncio
async def test_stop_twice_produces_one_transition() -> None:
    session, transport, _, sent = _build()
    await session.start()
    sent.clear()

    await session.stop()
    await session.stop()

    assert session.state is SessionState.STOPPED
    assert transport.stop_calls == 1
    assert sent == [{"type": "session-status", "running": False}]


@pytest.mark.asyncio
async def test_spawn_failure_leaves_session_stopped() -> None:
    transport = _FakeTransport(fail_start=True)
    sent: list[dict[str, Any]] = []

    async def broadcast(message: dict[str, Any]) -> None:
        sent.append(message)

    session = SessionManager(transport, HistoryStore(), broadcast=broadcast)
    await session.start()

    assert session.state is SessionState.STOPPED
    assert _types(sent) == ["status"]
    assert "not found" in sent[0]["message"]


@pytest.mark.asyncio
async def test_stop_during_spawn_then_start_ends_running() -> None:
    session, transport, _, sent = _build(_FakeTransport(start_delay=0.05))

    first = asyncio.create_task(session.start())
    await asyncio.sleep(0)
    assert session.state is SessionState.STARTING

    await session.stop()
    await session.start()
    await first

    assert session.state is SessionState.RUNNING
    assert transport.max_concurrent_spawns == 1
    assert transport.start_calls == 2
    assert sent == [
        {"type": "session-status", "running": True},
        {"type": "session-status", "running": False},
        {"type": "session-status", "running": True},
    ]


@pytest.mark.asyncio
async def test_start_during_spawn_does_not_spawn_twice() -> None:
    session, transport, _, sent = _build(_FakeTransport(start_delay=0.05))

    await asyncio.gather(session.start(), session.start())

    assert session.state is SessionState.RUNNING
    assert transport.start_calls == 1
    assert sent == [{"type": "session-status", "running": True}]


@pytest.mark.asyncio
async def test_submit_requires_running_session() -> None:
    session, transport, history, _ = _build()
    with pytest.raises(NotRunningError):
        await session.submit("hello")
    assert len(history) == 0
    assert transport.writes == []


@pytest.mark.asyncio
async def test_submit_writes_wrapped_user_message() -> None:
    session, transport, history, _ = _build()
    await session.start()
    await session.submit("list files")

    [payload] = transport.writes
    assert payload["type"] == "user"
    assert payload["message"]["content"][0]["text"] == VOICE_PROMPT_PREFIX + "list files"
    [turn] = history.snapshot()
    assert turn.role is TurnRole.USER
    assert turn.content == "list files"


@pytest.mark.asyncio
async def test_history_ordering_across_two_turns() -> None:
    session, transport, history, sent = _build()
    await session.start()

    await session.submit("A")
    await transport.emit(_text("reply to A [SPOKEN: A done]"))
    await transport.emit(_result())
    await session.submit("B")
    await transport.emit(_text("reply to B"))

    in_flight = history.snapshot()
    assert [(t.role, t.content) for t in in_flight] == [
        (TurnRole.USER, "A"),
        (TurnRole.ASSISTANT, "reply to A [SPOKEN: A done]"),
        (TurnRole.USER, "B"),
    ]

    await transport.emit(_result())

    done = history.snapshot()
    assert [(t.role, t.content) for t in done] == [
        (TurnRole.USER, "A"),
        (TurnRole.ASSISTANT, "reply to A [SPOKEN: A done]"),
        (TurnRole.USER, "B"),
        (TurnRole.ASSISTANT, "reply to B"),
    ]
    assert done[1].spoken_summary == "A done"
    assert done[1].metadata.duration_ms == 10
    responses = [m for m in sent if m["type"] == "response"]
    assert [r["fullResponse"] for r in responses] == [
        "reply to A [SPOKEN: A done]", "reply to B",
    ]


@pytest.mark.asyncio
async def test_streaming_events_are_broadcast() -> None:
    session, transport, _, sent = _build()
    await session.start()
    await transport.emit({
        "type": "system", "subtype": "init", "model": "claude-sonnet-4-5",
        "claude_code_version": "2.0.0", "tools": ["Bash"], "session_id": "s1",
    })
    await session.submit("run ls")
    await transport.emit({"type": "assistant", "message": {"content": [
        {"type": "tool_use", "id": "t1", "name": "Bash", "input": {"command": "ls"}},
    ]}})
    await transport.emit({"type": "content_block_delta", "delta": {"type": "text_delta", "text": "two files"}})
    await transport.emit(_result())

    assert _types(sent) == [
        "session-status", "session-init", "tool-call", "partial", "response",
    ]
    init = sent[1]
    assert init["model"] == "claude-sonnet-4-5"
    assert init["runtimeVersion"] == "2.0.0"
    assert sent[2] == {"type": "tool-call", "toolName": "Bash", "toolId": "t1", "input": {"command": "ls"}}
    response = sent[-1]
    assert response["model"] == "claude-sonnet-4-5"
    assert response["fullResponse"] == "two files"
    assert response["toolCalls"] == [{"toolName": "Bash", "toolId": "t1", "input": {"command": "ls"}}]


@pytest.mark.asyncio
async def test_turn_error_is_broadcast_and_not_recorded() -> None:
    session, transport, history, sent = _build()
    await session.start()
    await session.submit("A")
    await transport.emit(_text("partial"))
    await transport.emit({"type": "error", "error": {"message": "overloaded"}})

    assert sent[-1] == {"type": "error", "message": "overloaded"}
    assert [t.role for t in history.snapshot()] == [TurnRole.USER]
    assert session.pending_turns == 0


@pytest.mark.asyncio
async def test_crash_mid_turn_keeps_user_turn_only() -> None:
    session, transport, history, sent = _build()
    await session.start()
    await session.submit("A")
    await transport.emit(_text("half of"))

    await transport.crash(code=137)

    assert session.state is SessionState.STOPPED
    assert sent[-1] == {"type": "session-ended", "code": 137}
    snapshot = history.snapshot()
    assert [(t.role, t.content) for t in snapshot] == [(TurnRole.USER, "A")]
    assert session.pending_turns == 0


@pytest.mark.asyncio
async def test_events_after_crash_from_old_run_are_ignored() -> None:
    session, transport, history, sent = _build()
    await session.start()
    await session.submit("A")
    await transport.crash()
    count = len(sent)

    await transport.emit(_text("ghost"))
    await transport.emit(_result())

    assert len(sent) == count
    assert [t.role for t in history.snapshot()] == [TurnRole.USER]


@pytest.mark.asyncio
async def test_restart_clears_history() -> None:
    session, transport, history, _ = _build()
    await session.start()
    await session.submit("A")
    await transport.crash()
    assert len(history) == 1

    await session.start()

    assert session.state is SessionState.RUNNING
    assert transport.start_calls == 2
    assert len(history) == 0


@pytest.mark.asyncio
async def test_explicit_stop_does_not_report_session_ended() -> None:
    session, transport, history, sent = _build()
    await session.start()
    await session.submit("A")

    await session.stop()

    assert "session-ended" not in _types(sent)
    assert len(history) == 0


@pytest.mark.asyncio
async def test_pipelined_submits_resolve_in_order() -> None:
    session, transport, history, sent = _build()
    await session.start()
    await session.submit("A")
    await session.submit("B")
    assert len(transport.writes) == 2
    assert session.pending_turns == 2

    await transport.emit(_text("answer A"))
    await transport.emit(_result())
    await transport.emit(_text("answer B"))
    await transport.emit(_result())

    assert [t.content for t in history.snapshot()] == ["A", "B", "answer A", "answer B"]
    assert session.pending_turns == 0


@pytest.mark.asyncio
async def test_cancel_drops_turn_and_forwards_interrupt() -> None:
    session, transport, history, sent = _build()
    await session.start()
    await session.submit("A")
    await transport.emit(_text("working on"))

    await session.cancel()

    assert sent[-1] == {"type": "request-cancelled"}
    assert transport.writes[-1]["type"] == "control_request"
    assert transport.writes[-1]["request"] == {"subtype": "interrupt"}

    await transport.emit(_text(" more text"))
    await transport.emit(_result(is_error=True))

    assert _types(sent).count("response") == 0
    assert _types(sent).count("partial") == 1
    assert [t.role for t in history.snapshot()] == [TurnRole.USER]

    await session.submit("B")
    await transport.emit(_text("answer B"))
    await transport.emit(_result())
    assert history.snapshot()[-1].content == "answer B"


@pytest.mark.asyncio
async def test_repeated_cancel_leaves_queued_turn_alone() -> None:
    session, transport, history, sent = _build()
    await session.start()
    await session.submit("A")
    await session.submit("B")

    await session.cancel()
    await session.cancel()

    interrupts = [w for w in transport.writes if w["type"] == "control_request"]
    assert len(interrupts) == 1
    assert _types(sent).count("request-cancelled") == 2

    await transport.emit(_text("aborted A"))
    await transport.emit(_result(is_error=True))
    await transport.emit(_text("answer B"))
    await transport.emit(_result())

    responses = [m for m in sent if m["type"] == "response"]
    assert [r["fullResponse"] for r in responses] == ["answer B"]
    assert [t.content for t in history.snapshot()] == ["A", "B", "answer B"]
    assert session.pending_turns == 0


@pytest.mark.asyncio
async def test_cancel_without_interrupt_support_only_resets_locally() -> None:
    transport = _FakeTransport()
    sent: list[dict[str, Any]] = []

    async def broadcast(message: dict[str, Any]) -> None:
        sent.append(message)

    session = SessionManager(
        transport, HistoryStore(), broadcast=broadcast, interrupt_supported=False,
    )
    await session.start()
    await session.submit("A")
    await session.cancel()

    assert [w["type"] for w in transport.writes] == ["user"]
    assert sent[-1] == {"type": "request-cancelled"}


@pytest.mark.asyncio
async def test_cancel_with_nothing_in_flight_still_acknowledges() -> None:
    session, transport, _, sent = _build()
    await session.cancel()
    assert sent == [{"type": "request-cancelled"}]
    assert transport.writes == []


@pytest.mark.asyncio
async def test_broadcast_failure_does_not_break_relay() -> None:
    transport = _FakeTransport()
    history = HistoryStore()

    async def broken(message: dict[str, Any]) -> None:
        raise ConnectionResetError("gone")

    session = SessionManager(transport, history, broadcast=broken)
    await session.start()
    await session.submit("A")
    await transport.emit(_text("answer"))
    await transport.emit(_result())

    assert [t.content for t in history.snapshot()] == ["A", "answer"]


@pytest.mark.asyncio
async def test_shutdown_stops_running_session() -> None:
    session, transport, _, sent = _build()
    await session.start()
    await session.shutdown()
    assert transport.stop_calls == 1
    assert session.state is SessionState.STOPPED

"""Session manager: the single assistant session and its state machine.

    STOPPED --start()--> STARTING --spawned--> RUNNING
    RUNNING --stop() / process exit--> STOPPED

Every accepted voice command becomes a pending turn ticket. Terminal
events from the subprocess resolve tickets in FIFO order, so commands
submitted while a turn is in flight are queued behind it at the
subprocess's stdin and answered in order.
"""
from __future__ import annotations

import asyncio
import functools
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Protocol

from voiceterm.adapters import protocol
from voiceterm.adapters.events import (
    Partial,
    RelayEvent,
    SessionInit,
    ToolCallObserved,
    TurnComplete,
    TurnError,
    event_to_dict,
)
from voiceterm.engine.config import BroadcastCallback, fire_event
from voiceterm.engine.errors import (
    NotRunningError,
    SpawnError,
    SubprocessExit,
)
from voiceterm.engine.history import HistoryStore
from voiceterm.engine.translator import EventTranslator
from voiceterm.shared.models.session import SessionMetadata, SessionState
from voiceterm.shared.models.turn import Turn

logger = logging.getLogger(__name__)


class Transport(Protocol):
    """What the session manager needs from a subprocess transport."""

    @property
    def running(self) -> bool: ...

    def on_event(self, callback: Any) -> None: ...

    def on_exit(self, callback: Any) -> None: ...

    async def start(self, cwd: str | None = None) -> None: ...

    async def write_line(self, payload: dict[str, Any]) -> None: ...

    async def stop(self) -> None: ...


@dataclass
class PendingTurn:
    """A submitted command awaiting its terminal event."""
    transcript: str
    cancelled: bool = False


class SessionManager:
    """Owns the assistant session, its history and its in-flight turns.

    Constructed once at server start and torn down with ``shutdown()``.
    All methods run on the event loop; none of them block it.
    """

    def __init__(
        self,
        transport: Transport,
        history: HistoryStore,
        *,
        cwd: str | None = None,
        broadcast: BroadcastCallback | None = None,
        translator: EventTranslator | None = None,
        interrupt_supported: bool = True,
    ) -> None:
        self._transport = transport
        self._history = history
        self._cwd = cwd
        self._broadcast = broadcast
        self._translator = translator or EventTranslator()
        self._interrupt_supported = interrupt_supported
        self._state = SessionState.STOPPED
        self._pending: deque[PendingTurn] = deque()
        # Bumped on every start/stop; callbacks from older runs are ignored.
        self._generation = 0
        # Held across a whole start or stop, so a stop issued mid-spawn
        # waits for the spawn and a second start never spawns alongside it.
        self._lifecycle_lock = asyncio.Lock()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def running(self) -> bool:
        return self._state is SessionState.RUNNING

    @property
    def metadata(self) -> SessionMetadata | None:
        return self._translator.metadata

    @property
    def pending_turns(self) -> int:
        return len(self._pending)

    def set_broadcast(self, broadcast: BroadcastCallback | None) -> None:
        self._broadcast = broadcast

    async def _emit(self, message: dict[str, Any]) -> None:
        await fire_event(self._broadcast, message)

    # ── Lifecycle ──

    async def start(self) -> None:
        async with self._lifecycle_lock:
            await self._start_locked()

    async def _start_locked(self) -> None:
        if self._state is not SessionState.STOPPED:
            logger.info("start ignored: session already %s", self._state.value)
            return

        self._generation += 1
        generation = self._generation
        self._history.clear()
        self._translator.reset()
        self._pending.clear()
        self._state = SessionState.STARTING
        logger.info("Session starting gen=%d cwd=%s", generation, self._cwd)

        self._transport.on_event(functools.partial(self._handle_upstream, generation))
        self._transport.on_exit(functools.partial(self._handle_exit, generation))
        try:
            await self._transport.start(self._cwd)
        except SpawnError as exc:
            logger.error("Session start failed: %s", exc)
            self._state = SessionState.STOPPED
            await self._emit(protocol.status(f"Failed to start assistant: {exc.reason}"))
            return

        if generation != self._generation or self._state is not SessionState.STARTING:
            # The process died during spawn and the exit was already reported.
            logger.info("Session start superseded gen=%d", generation)
            await self._transport.stop()
            return
        self._state = SessionState.RUNNING
        logger.info("Session running gen=%d", generation)
        await self._emit(protocol.session_status(True))

    async def stop(self) -> None:
        """Stop the session; a stop issued mid-spawn waits for the spawn."""
        async with self._lifecycle_lock:
            await self._stop_locked()

    async def _stop_locked(self) -> None:
        if self._state is SessionState.STOPPED:
            logger.debug("stop ignored: session already stopped")
            return
        self._generation += 1
        logger.info("Session stopping gen=%d pending=%d", self._generation, len(self._pending))
        await self._transport.stop()
        self._translator.discard("stop")
        self._pending.clear()
        self._history.clear()
        self._state = SessionState.STOPPED
        await self._emit(protocol.session_status(False))

    async def shutdown(self) -> None:
        """Process teardown: stop the session and silence the broadcaster."""
        await self.stop()
        self._broadcast = None

    # ── Commands ──

    async def submit(self, transcript: str) -> None:
        """Queue one user command; its answer arrives as a broadcast later."""
        if self._state is not SessionState.RUNNING:
            raise NotRunningError("submit a command")

        self._history.append(Turn.user(transcript))
        if not self._pending:
            self._translator.begin_turn()
        ticket = PendingTurn(transcript=transcript)
        self._pending.append(ticket)
        logger.info(
            "Turn submitted chars=%d pending=%d", len(transcript), len(self._pending),
        )
        try:
            await self._transport.write_line(protocol.encode_user_message(transcript))
        except NotRunningError:
            if ticket in self._pending:
                self._pending.remove(ticket)
            raise

    async def cancel(self) -> None:
        """Abandon the in-flight turn without waiting for the subprocess."""
        # Only the turn the subprocess is working on can be interrupted;
        # queued turns behind it stay untouched.
        head = self._pending[0] if self._pending else None
        if head is None:
            logger.info("cancel with no turn in flight")
        elif head.cancelled:
            logger.info("cancel ignored: in-flight turn already cancelled")
        else:
            head.cancelled = True
            self._translator.discard("cancel")
            logger.info("Turn cancelled pending=%d", len(self._pending))
            if self._interrupt_supported and self._transport.running:
                try:
                    await self._transport.write_line(protocol.encode_interrupt())
                except NotRunningError as exc:
                    logger.warning("Interrupt not delivered: %s", exc)
        await self._emit(protocol.request_cancelled())

    # ── Subprocess callbacks ──

    async def _handle_upstream(self, generation: int, data: dict[str, Any]) -> None:
        if generation != self._generation:
            logger.debug("Dropping event from stale run gen=%d type=%s", generation, data.get("type"))
            return
        event = protocol.parse_upstream_event(data)
        if event is None:
            return
        for domain_event in self._translator.feed(event):
            await self._dispatch(domain_event)

    async def _dispatch(self, event: RelayEvent) -> None:
        logger.debug("Domain event %s", event_to_dict(event).get("event"))
        head = self._pending[0] if self._pending else None

        if isinstance(event, SessionInit):
            await self._emit(protocol.session_init(
                event.model, event.runtime_version, event.tools, event.session_id,
            ))
        elif isinstance(event, Partial):
            if head is not None and head.cancelled:
                return
            await self._emit(protocol.partial(event.text))
        elif isinstance(event, ToolCallObserved):
            if head is not None and head.cancelled:
                return
            await self._emit(protocol.tool_call(event.name, event.id, event.input))
        elif isinstance(event, TurnComplete):
            ticket = self._resolve_ticket()
            if ticket is not None and ticket.cancelled:
                logger.info("Dropping result of cancelled turn chars=%d", len(event.content))
                return
            self._history.append(Turn.assistant(
                event.content, event.spoken_summary, event.metadata, event.tool_calls,
            ))
            model = self.metadata.model if self.metadata is not None else ""
            await self._emit(protocol.response(
                event.content, event.spoken_summary, model, event.metadata, event.tool_calls,
            ))
        elif isinstance(event, TurnError):
            ticket = self._resolve_ticket()
            if ticket is not None and ticket.cancelled:
                logger.info("Dropping error of cancelled turn: %s", event.message)
                return
            logger.warning("Turn failed: %s", event.message)
            await self._emit(protocol.error(event.message))

    def _resolve_ticket(self) -> PendingTurn | None:
        if not self._pending:
            logger.warning("Terminal event with no turn outstanding")
            return None
        return self._pending.popleft()

    async def _handle_exit(self, generation: int, returncode: int | None) -> None:
        if generation != self._generation or self._state is SessionState.STOPPED:
            return
        exc = SubprocessExit(returncode)
        logger.warning("%s; unanswered turns=%d", exc, len(self._pending))
        self._generation += 1
        self._translator.discard("process exit")
        self._pending.clear()
        self._state = SessionState.STOPPED
        await self._emit(protocol.session_ended(returncode))

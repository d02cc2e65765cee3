"""Connection hub: WebSocket fan-out and inbound command routing."""
from __future__ import annotations

import logging
from typing import Any

from aiohttp import web

from voiceterm.adapters import protocol
from voiceterm.engine.errors import MalformedClientMessage, NotRunningError
from voiceterm.engine.history import HistoryStore
from voiceterm.engine.session_manager import SessionManager

logger = logging.getLogger(__name__)


class ConnectionHub:
    """Tracks connected clients and routes their commands.

    Connections carry no state of their own: history is session-wide,
    and a client gets it only by sending ``get-history``.
    """

    def __init__(self, session: SessionManager, history: HistoryStore) -> None:
        self._session = session
        self._history = history
        self._clients: set[web.WebSocketResponse] = set()

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def register(self, ws: web.WebSocketResponse) -> None:
        self._clients.add(ws)
        logger.info("Client connected active_clients=%d", len(self._clients))

    def unregister(self, ws: web.WebSocketResponse) -> None:
        if ws in self._clients:
            self._clients.discard(ws)
            logger.info("Client disconnected active_clients=%d", len(self._clients))

    async def broadcast(self, message: dict[str, Any]) -> None:
        """Send one message to every open client, pruning dead ones."""
        payload = protocol.encode_message(message)
        stale: list[web.WebSocketResponse] = []
        for ws in list(self._clients):
            if ws.closed:
                stale.append(ws)
                continue
            try:
                await ws.send_str(payload)
            except (ConnectionResetError, RuntimeError) as exc:
                logger.info("Dropping unwritable client: %s", exc)
                stale.append(ws)
        for ws in stale:
            self.unregister(ws)
        logger.debug(
            "Broadcast type=%s clients=%d", message.get("type"), len(self._clients),
        )

    async def send(self, ws: web.WebSocketResponse, message: dict[str, Any]) -> None:
        if ws.closed:
            return
        try:
            await ws.send_str(protocol.encode_message(message))
        except (ConnectionResetError, RuntimeError) as exc:
            logger.info("Reply to client failed type=%s: %s", message.get("type"), exc)
            self.unregister(ws)

    async def dispatch(self, ws: web.WebSocketResponse, raw: str | bytes) -> None:
        """Handle one inbound frame from *ws*."""
        try:
            message = protocol.parse_client_message(raw)
        except MalformedClientMessage as exc:
            logger.warning("Rejected client message: %s", exc.reason)
            await self.send(ws, protocol.error(str(exc)))
            return

        logger.info("Client command type=%s", message.type)
        if message.type == protocol.START_SESSION:
            await self._session.start()
        elif message.type == protocol.STOP_SESSION:
            await self._session.stop()
        elif message.type == protocol.GET_HISTORY:
            await self.send(ws, protocol.history(self._history.snapshot()))
        elif message.type == protocol.CLEAR_HISTORY:
            self._history.clear()
            await self.broadcast(protocol.history_cleared())
        elif message.type == protocol.VOICE_COMMAND:
            await self._handle_voice_command(ws, message.transcript)
        elif message.type == protocol.CANCEL_REQUEST:
            await self._session.cancel()

    async def _handle_voice_command(self, ws: web.WebSocketResponse, transcript: str) -> None:
        if not self._session.running:
            await self.send(ws, protocol.error(str(NotRunningError("submit a command"))))
            return
        await self.send(ws, protocol.status("Sending to Claude...", "processing"))
        try:
            await self._session.submit(transcript)
        except NotRunningError as exc:
            await self.send(ws, protocol.error(str(exc)))

"""HTTP + WebSocket server for the voice terminal.

Serves the browser assets, a health endpoint, and the ``/ws`` socket
through which clients drive the single assistant session.

Usage:
    voiceterm [--port PORT] [--cwd DIR]
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import time
import uuid
from pathlib import Path
from typing import Any

from aiohttp import WSMsgType, web

from voiceterm.engine.config import RelayConfig
from voiceterm.engine.history import HistoryStore
from voiceterm.engine.session_manager import SessionManager, Transport
from voiceterm.engine.transport import SubprocessTransport, resolve_command
from voiceterm.server.hub import ConnectionHub

logger = logging.getLogger(__name__)


class VoiceTermServer:
    """Wires transport, session, history and hub into one aiohttp app.

    Thin adapter: session state lives in SessionManager. This class only
    handles HTTP routing and socket lifetimes.
    """

    def __init__(
        self,
        config: RelayConfig | None = None,
        transport: Transport | None = None,
    ) -> None:
        self._config = config or RelayConfig()
        if transport is None:
            command = resolve_command(self._config.command, "claude")
            transport = SubprocessTransport(
                self._config.build_argv(command),
                stop_timeout_seconds=self._config.stop_timeout_seconds,
            )
        self._history = HistoryStore()
        self._session = SessionManager(
            transport,
            self._history,
            cwd=self._config.cwd,
            interrupt_supported=self._config.interrupt_supported,
        )
        self._hub = ConnectionHub(self._session, self._history)
        self._session.set_broadcast(self._hub.broadcast)
        self._started_at = time.time()
        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._app.on_shutdown.append(self._on_shutdown)
        self._setup_routes()
        logger.info(
            "VoiceTermServer init host=%s port=%s cwd=%s pid=%s",
            self._config.host, self._config.port, self._config.cwd, os.getpid(),
        )

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def session(self) -> SessionManager:
        return self._session

    @property
    def history(self) -> HistoryStore:
        return self._history

    @property
    def hub(self) -> ConnectionHub:
        return self._hub

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_get("/ws", self._handle_ws)
        static_dir = self._resolve_static_dir()
        if static_dir is not None:
            logger.info("Serving static files from: %s", static_dir)
            r.add_get("/", self._handle_index)
            r.add_static("/", static_dir, show_index=False)
        else:
            logger.info("No static directory found; serving API only")

    def _resolve_static_dir(self) -> Path | None:
        if self._config.static_dir:
            path = Path(self._config.static_dir)
            return path if path.is_dir() else None
        # Built assets win over the dev fallback.
        for candidate in (Path.cwd() / "dist", Path.cwd() / "public"):
            if candidate.is_dir():
                return candidate
        return None

    # ── Lifecycle ──

    async def start(self) -> None:
        """Run until cancelled, then tear the session down."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._config.host, self._config.port)
        await site.start()
        logger.info(
            "Voice terminal server running on %s:%d", self._config.host, self._config.port,
        )
        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await runner.cleanup()

    async def _on_shutdown(self, app: web.Application) -> None:
        await self._session.shutdown()

    # ── Handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        metadata = self._session.metadata
        return web.json_response({
            "status": "ok",
            "session": self._session.state.value,
            "model": metadata.model if metadata is not None else None,
            "clients": self._hub.client_count,
            "history": len(self._history),
            "pending_turns": self._session.pending_turns,
            "uptime_seconds": round(time.time() - self._started_at, 1),
        })

    async def _handle_index(self, request: web.Request) -> web.StreamResponse:
        static_dir = self._resolve_static_dir()
        index = static_dir / "index.html" if static_dir is not None else None
        if index is None or not index.is_file():
            raise web.HTTPNotFound()
        return web.FileResponse(index)

    async def _handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=30.0)
        await ws.prepare(request)
        self._hub.register(ws)
        try:
            async for msg in ws:
                if msg.type in (WSMsgType.TEXT, WSMsgType.BINARY):
                    await self._hub.dispatch(ws, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning(
                        "WebSocket error req=%s: %s", request.get("req_id", "unknown"), ws.exception(),
                    )
        finally:
            self._hub.unregister(ws)
            logger.info(
                "WebSocket closed req=%s code=%s", request.get("req_id", "unknown"), ws.close_code,
            )
        return ws


def describe(config: RelayConfig) -> dict[str, Any]:
    """Startup summary written to stdout for supervisors."""
    return {"host": config.host, "port": config.port, "cwd": config.cwd}


def run(config: RelayConfig) -> None:
    server = VoiceTermServer(config)
    sys.stdout.write(json.dumps(describe(config)) + "\n")
    sys.stdout.flush()
    asyncio.run(server.start())

"""Subprocess transport for the long-lived assistant CLI.

Spawns the CLI with piped stdio, writes newline-delimited JSON to its
stdin and hands every stdout line, parsed, to a registered consumer.
"""
from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import shutil
from collections.abc import Awaitable, Callable
from typing import Any

from voiceterm.adapters.protocol import decode_line
from voiceterm.engine.errors import MalformedUpstreamEvent, NotRunningError, SpawnError

logger = logging.getLogger(__name__)

# Signature: async def callback(event: dict[str, Any]) -> None
EventConsumer = Callable[[dict[str, Any]], Awaitable[None]]
# Signature: async def callback(returncode: int | None) -> None
ExitConsumer = Callable[[int | None], Awaitable[None]]

# Stream reader limit; a single assistant event can carry a whole file.
_MAX_LINE_BYTES = 16 * 1024 * 1024
# How long stdout may keep draining after the process has exited. A
# descendant that inherited the pipe can hold it open indefinitely.
_DRAIN_TIMEOUT_SECONDS = 2.0
_EXIT_POLL_SECONDS = 0.1


def resolve_command(command: str, fallback: str | None = None) -> str:
    """Resolve a CLI binary, preferring ``command`` then ``fallback``.

    Keeps the raw value when neither is on PATH so spawn errors name
    the configured command.
    """
    if command and shutil.which(command):
        return command
    if fallback and shutil.which(fallback):
        logger.debug("Command %s not found; falling back to %s", command, fallback)
        return fallback
    return command or fallback or ""


class SubprocessTransport:
    """Owns at most one running assistant process."""

    def __init__(
        self,
        argv: list[str],
        *,
        stop_timeout_seconds: float = 5.0,
    ) -> None:
        if not argv:
            raise ValueError("argv must name a command")
        self._argv = list(argv)
        self._stop_timeout = stop_timeout_seconds
        self._process: asyncio.subprocess.Process | None = None
        self._reader_task: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None
        self._exit_task: asyncio.Task | None = None
        self._event_consumer: EventConsumer | None = None
        self._exit_consumer: ExitConsumer | None = None

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    def on_event(self, callback: EventConsumer) -> None:
        self._event_consumer = callback

    def on_exit(self, callback: ExitConsumer) -> None:
        self._exit_consumer = callback

    async def start(self, cwd: str | None = None) -> None:
        if self._process is not None:
            raise SpawnError(self._argv[0], "a process is already running")
        try:
            # argv list, no shell
            proc = await asyncio.create_subprocess_exec(
                *self._argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                limit=_MAX_LINE_BYTES,
            )
        except FileNotFoundError as exc:
            raise SpawnError(self._argv[0], f"not found ({exc})") from exc
        except (OSError, ValueError) as exc:
            raise SpawnError(self._argv[0], str(exc)) from exc

        if self._process is not None:
            # Another start() finished spawning first.
            logger.warning("Discarding duplicate assistant process pid=%s", proc.pid)
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await _wait_returncode(proc, self._stop_timeout)
            raise SpawnError(self._argv[0], "a process is already running")

        self._process = proc
        logger.info(
            "Assistant process started pid=%s cwd=%s cmd=%s",
            proc.pid, cwd, " ".join(self._argv),
        )
        self._reader_task = asyncio.create_task(self._read_loop(proc))
        self._stderr_task = asyncio.create_task(self._drain_stderr(proc))
        self._exit_task = asyncio.create_task(
            self._watch_exit(proc, self._reader_task, self._stderr_task)
        )

    async def write_line(self, payload: dict[str, Any]) -> None:
        proc = self._process
        if proc is None or proc.returncode is not None or proc.stdin is None:
            raise NotRunningError("write to the assistant")
        data = json.dumps(payload).encode("utf-8") + b"\n"
        try:
            proc.stdin.write(data)
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            logger.warning("Write to assistant failed pid=%s: %s", proc.pid, exc)
            raise NotRunningError("write to the assistant") from exc

    async def stop(self) -> None:
        """Terminate the process; a no-op when nothing is running.

        Returns once the exit callback for the process has been delivered.
        """
        proc = self._process
        if proc is None:
            return
        exit_task = self._exit_task

        if proc.stdin is not None and not proc.stdin.is_closing():
            proc.stdin.close()

        if proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.terminate()
            if not await _wait_returncode(proc, self._stop_timeout):
                logger.warning(
                    "Assistant pid=%s ignored SIGTERM for %.1fs; killing",
                    proc.pid, self._stop_timeout,
                )
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                await _wait_returncode(proc)

        if exit_task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await exit_task
        logger.info("Assistant process stopped pid=%s rc=%s", proc.pid, proc.returncode)

    async def _watch_exit(
        self,
        proc: asyncio.subprocess.Process,
        reader: asyncio.Task,
        stderr: asyncio.Task,
    ) -> None:
        """Report the exit of *proc* exactly once, whatever its pipes do."""
        await _wait_returncode(proc)
        returncode = proc.returncode
        _, pending = await asyncio.wait(
            {reader, stderr}, timeout=_DRAIN_TIMEOUT_SECONDS,
        )
        if pending:
            logger.warning(
                "Assistant pid=%s exited but its output pipes are still open; "
                "abandoning them after %.1fs", proc.pid, _DRAIN_TIMEOUT_SECONDS,
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        if self._process is proc:
            self._process = None
        logger.info("Assistant process exited pid=%s rc=%s", proc.pid, returncode)
        if self._exit_consumer is not None:
            try:
                await self._exit_consumer(returncode)
            except Exception:
                logger.exception("Exit consumer failed pid=%s", proc.pid)

    async def _read_loop(self, proc: asyncio.subprocess.Process) -> None:
        """Hand every stdout line to the event consumer until EOF."""
        assert proc.stdout is not None
        while True:
            try:
                line = await proc.stdout.readline()
            except ValueError as exc:
                # Line exceeded the reader limit; the stream is unusable.
                logger.error("Assistant stdout line too long pid=%s: %s", proc.pid, exc)
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                return
            if not line:
                return
            try:
                event = decode_line(line)
            except MalformedUpstreamEvent as exc:
                logger.warning("%s", exc)
                continue
            if event is None:
                continue
            if self._event_consumer is not None:
                try:
                    await self._event_consumer(event)
                except Exception:
                    logger.exception(
                        "Event consumer failed type=%s", event.get("type"),
                    )

    async def _drain_stderr(self, proc: asyncio.subprocess.Process) -> None:
        if proc.stderr is None:
            return
        while True:
            try:
                line = await proc.stderr.readline()
            except ValueError:
                continue
            if not line:
                return
            logger.debug(
                "assistant stderr pid=%s: %s",
                proc.pid, line.decode("utf-8", errors="replace").rstrip(),
            )


async def _wait_returncode(
    proc: asyncio.subprocess.Process, timeout: float | None = None,
) -> bool:
    """Wait until *proc* has exited; False if *timeout* elapses first.

    ``Process.wait()`` may also wait for every pipe to close, which a
    descendant holding stdout can postpone indefinitely, so the return
    code is polled alongside it.
    """
    loop = asyncio.get_running_loop()
    deadline = None if timeout is None else loop.time() + timeout
    waiter = asyncio.ensure_future(proc.wait())
    try:
        while proc.returncode is None:
            step = _EXIT_POLL_SECONDS
            if deadline is not None:
                step = min(step, deadline - loop.time())
                if step <= 0:
                    return False
            await asyncio.wait({waiter}, timeout=step)
        return True
    finally:
        if not waiter.done():
            waiter.cancel()

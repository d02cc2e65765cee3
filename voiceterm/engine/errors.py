"""Exception hierarchy for the session relay.

One exception per failure mode. Client-facing errors are answered
on the socket; subprocess-facing errors are logged and absorbed.
"""
from __future__ import annotations


class RelayError(Exception):
    """Base exception for all relay errors."""


class SpawnError(RelayError):
    """The assistant subprocess could not be started."""
    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to start '{command}': {reason}")


class NotRunningError(RelayError):
    """A command needs a running session but none is active."""
    def __init__(self, action: str = "submit"):
        self.action = action
        super().__init__(
            f"Cannot {action}: no assistant session is running"
        )


class MalformedUpstreamEvent(RelayError):
    """A line from the subprocess could not be parsed."""
    def __init__(self, line: str, reason: str):
        self.line = line
        self.reason = reason
        preview = line if len(line) <= 120 else line[:117] + "..."
        super().__init__(f"Malformed subprocess event ({reason}): {preview}")


class MalformedClientMessage(RelayError):
    """A client payload is unparseable or has an unknown type."""
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid message format: {reason}")


class SubprocessExit(RelayError):
    """The assistant subprocess terminated while the session was running."""
    def __init__(self, code: int | None):
        self.code = code
        super().__init__(f"Assistant process exited with code {code}")

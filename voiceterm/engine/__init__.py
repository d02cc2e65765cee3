"""Session relay engine: subprocess transport, translator, session and history."""
from .config import RelayConfig
from .errors import (
    MalformedClientMessage,
    MalformedUpstreamEvent,
    NotRunningError,
    RelayError,
    SpawnError,
    SubprocessExit,
)

__all__ = [
    # Config
    "RelayConfig",
    # Core (lazy import to avoid circular deps)
    "SessionManager",
    "HistoryStore",
    "EventTranslator",
    "SubprocessTransport",
    # Errors
    "MalformedClientMessage",
    "MalformedUpstreamEvent",
    "NotRunningError",
    "RelayError",
    "SpawnError",
    "SubprocessExit",
]


def __getattr__(name: str):
    if name == "SessionManager":
        from .session_manager import SessionManager
        return SessionManager
    if name == "HistoryStore":
        from .history import HistoryStore
        return HistoryStore
    if name == "EventTranslator":
        from .translator import EventTranslator
        return EventTranslator
    if name == "SubprocessTransport":
        from .transport import SubprocessTransport
        return SubprocessTransport
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

"""Assistant session state models."""

from dataclasses import dataclass, field
from enum import Enum


class SessionState(Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"


@dataclass
class SessionMetadata:
    """Captured from the subprocess's init event, once per running period."""
    model: str = ""
    tools: list[str] = field(default_factory=list)
    session_id: str = ""
    runtime_version: str = ""

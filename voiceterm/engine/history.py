"""In-memory conversation history for the current session."""
from __future__ import annotations

import logging

from voiceterm.shared.models.turn import Turn

logger = logging.getLogger(__name__)


class HistoryStore:
    """Append-only ordered log of turns.

    Lives only as long as the server process. All access happens on the
    event loop, so appends and snapshots never interleave.
    """

    def __init__(self) -> None:
        self._turns: list[Turn] = []

    def append(self, turn: Turn) -> None:
        self._turns.append(turn)
        logger.debug("History append role=%s size=%d", turn.role.value, len(self._turns))

    def snapshot(self) -> list[Turn]:
        return list(self._turns)

    def clear(self) -> None:
        if self._turns:
            logger.info("History cleared turns=%d", len(self._turns))
        self._turns.clear()

    def __len__(self) -> int:
        return len(self._turns)

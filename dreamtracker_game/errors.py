from __future__ import annotations

from typing import Optional


class TrackerError(ValueError):
    """Client-recoverable error; ``str(exc)`` is a stable snake_case code."""

    code = "tracker_error"

    def __init__(self, code: Optional[str] = None, detail: Optional[str] = None) -> None:
        self.code = code or self.code
        self.detail = detail
        super().__init__(self.code)


class GameNotFound(TrackerError):
    code = "game_not_found"


class GameFull(TrackerError):
    code = "game_full"


class UnknownPlayer(TrackerError):
    code = "not_in_game"


class InvalidStateTransition(TrackerError):
    code = "invalid_state_transition"


class CorruptGameState(TrackerError):
    code = "corrupt_game_state"


class StoreError(RuntimeError):
    code = "store_error"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.code)


class StoreReadError(StoreError):
    code = "store_read_failed"


class StoreWriteError(StoreError):
    code = "store_write_failed"


class ConcurrentUpdate(StoreWriteError):
    code = "concurrent_update"

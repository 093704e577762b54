from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, List, Optional
import asyncio
import contextlib
import logging
import random

from . import engine
from .config import TrackerSettings
from .errors import ConcurrentUpdate, GameNotFound, InvalidStateTransition, StoreWriteError
from .history import MatchHistory
from .models import CounterKind, GameState, PlayerState, game_state_from_dict, game_state_to_dict
from .persistence import Document, DocumentStore, Unsubscribe


logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


_CLOSED = object()


class GameWatch:
    """Async iterator over remote snapshots of one game document.

    Each snapshot goes through ``apply`` (the owning session's
    ``apply_remote``); only snapshots that changed the local state are
    yielded. Iteration stops when the watch is closed or the document is
    deleted. A malformed snapshot raises ``CorruptGameState`` from the
    iterator and leaves the local state alone.
    """

    def __init__(
        self,
        store: DocumentStore,
        collection: str,
        game_code: str,
        apply: Callable[[Optional[Document]], bool],
        current: Callable[[], Optional[GameState]],
    ) -> None:
        self.store = store
        self.collection = collection
        self.game_code = game_code
        self._apply = apply
        self._current = current
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self._unsubscribe: Optional[Unsubscribe] = None
        self.closed = False

    def _on_change(self, doc: Optional[Document]) -> None:
        if not self.closed:
            self._queue.put_nowait(doc)

    def start(self) -> None:
        self._unsubscribe = self.store.subscribe(self.collection, self.game_code, self._on_change)

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> "GameWatch":
        return self

    async def __anext__(self) -> GameState:
        while True:
            if self.closed and self._queue.empty():
                raise StopAsyncIteration
            doc = await self._queue.get()
            if doc is _CLOSED:
                raise StopAsyncIteration
            if doc is None:
                logger.warning(f"[dreamtracker] game document gone code={self.game_code}")
                self.close()
                raise StopAsyncIteration
            if self._apply(doc):
                state = self._current()
                if state is None:
                    raise InvalidStateTransition("no_game_loaded")
                return state


class GameSession:
    """One client's view of a shared game document.

    Every action computes the next state from the latest local state with the
    pure rules in ``engine``, writes it to the store, and only then adopts it
    locally. A failed write leaves ``state`` at the last confirmed value.
    Snapshots pushed by the store replace ``state`` wholesale (last writer
    wins).
    """

    def __init__(
        self,
        store: DocumentStore,
        player_id: str,
        settings: Optional[TrackerSettings] = None,
        history: Optional[MatchHistory] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self.store = store
        self.player_id = player_id
        self.settings = settings or TrackerSettings()
        self.history = history or MatchHistory(store, self.settings.matches_collection)
        self.state: Optional[GameState] = None
        self._rng = rng
        self._clock = clock
        self._lock = asyncio.Lock()
        self._watches: List[GameWatch] = []

    # --- Helpers ---

    def _current(self) -> GameState:
        if self.state is None:
            raise InvalidStateTransition("no_game_loaded")
        return self.state

    async def _fresh_code(self) -> str:
        for _ in range(self.settings.code_attempts):
            code = engine.generate_game_code(self.settings.code_length)
            if await self.store.get(self.settings.games_collection, code) is None:
                return code
            logger.info(f"[dreamtracker] game code collision code={code}")
        raise StoreWriteError("game_code_exhausted")

    async def _write(self, state: GameState, expected_version: Optional[int], guarded: bool) -> GameState:
        """Persist ``state`` as the next version and adopt it once the write succeeded."""

        state.version = (expected_version or 0) + 1
        doc = game_state_to_dict(state)
        doc["lastUpdated"] = self.store.server_timestamp
        collection = self.settings.games_collection
        try:
            if guarded and self.settings.conditional_writes:
                await self.store.set_if_version(collection, state.game_code, doc, expected_version)
            else:
                await self.store.set(collection, state.game_code, doc, merge=False)
        except ConcurrentUpdate:
            logger.warning(
                f"[dreamtracker] conditional write rejected code={state.game_code} "
                f"expected_version={expected_version} player={self.player_id}"
            )
            raise
        except StoreWriteError as exc:
            logger.warning(f"[dreamtracker] game write failed code={state.game_code} error={exc}")
            raise
        self.state = state
        return state

    async def _finish(self, before: GameState, state: GameState) -> GameState:
        if state.match_id is not None and before.match_id is None:
            await self.record_match()
        return state

    # --- Lifecycle ---

    async def create_game(self, host: PlayerState) -> GameState:
        async with self._lock:
            code = await self._fresh_code()
            state = engine.new_game(code, host, self._clock())
            state = await self._write(state, expected_version=None, guarded=False)
            logger.info(f"[dreamtracker] game created code={code} host={host.id}")
            return state

    async def join_game(self, code: str, guest: PlayerState) -> GameState:
        code = engine.normalize_game_code(code)
        async with self._lock:
            doc = await self.store.get(self.settings.games_collection, code) if code else None
            if doc is None:
                raise GameNotFound(detail=code)
            current = game_state_from_dict(doc)

            if guest.id in current.players:
                if current.status == "ended":
                    self.state = current
                    await self.record_match()
                    return current
                updated = engine.reconnect_player(current, guest.id, self._clock())
                state = await self._write(updated, expected_version=current.version, guarded=True)
                logger.info(f"[dreamtracker] player reconnected code={code} player={guest.id}")
                return state

            updated = engine.add_player(current, guest, self._rng)
            state = await self._write(updated, expected_version=current.version, guarded=True)
            logger.info(
                f"[dreamtracker] player joined code={code} player={guest.id} "
                f"priority={state.priority_player_id}"
            )
            return state

    async def load(self, code: str) -> GameState:
        code = engine.normalize_game_code(code)
        doc = await self.store.get(self.settings.games_collection, code) if code else None
        if doc is None:
            raise GameNotFound(detail=code)
        self.state = game_state_from_dict(doc)
        return self.state

    async def refresh(self) -> GameState:
        """Re-read the game document, e.g. after a rejected conditional write."""

        return await self.load(self._current().game_code)

    async def delete_game(self) -> None:
        current = self._current()
        if current.status == "active":
            raise InvalidStateTransition("game_in_progress")
        await self.store.delete(self.settings.games_collection, current.game_code)
        logger.info(f"[dreamtracker] game deleted code={current.game_code}")
        self.close()
        self.state = None

    # --- Actions ---

    async def adjust_counter(self, player_id: str, kind: CounterKind, delta: int) -> GameState:
        async with self._lock:
            current = self._current()
            updated = engine.adjust_counter(current, player_id, kind, delta)
            return await self._write(updated, expected_version=current.version, guarded=False)

    async def advance_turn(self) -> GameState:
        async with self._lock:
            current = self._current()
            updated = engine.advance_turn(current)
            if len(updated.rounds) > len(current.rounds):
                result = updated.rounds[-1]
                logger.info(
                    f"[dreamtracker] round ended code={current.game_code} round={result.round_number} "
                    f"turn={result.end_turn} winner={result.winner_id} reason={result.end_reason}"
                )
            state = await self._write(updated, expected_version=current.version, guarded=True)
            return await self._finish(current, state)

    async def surrender(self, player_id: Optional[str] = None) -> GameState:
        player_id = player_id or self.player_id
        async with self._lock:
            current = self._current()
            updated = engine.surrender(current, player_id)
            state = await self._write(updated, expected_version=current.version, guarded=True)
            logger.info(f"[dreamtracker] surrender code={current.game_code} player={player_id}")
            return await self._finish(current, state)

    async def mark_disconnected(self, player_id: Optional[str] = None) -> GameState:
        player_id = player_id or self.player_id
        async with self._lock:
            current = self._current()
            updated = engine.mark_disconnected(current, player_id, self._clock())
            if updated.incomplete and not current.incomplete:
                logger.info(f"[dreamtracker] all players disconnected code={current.game_code}")
            state = await self._write(updated, expected_version=current.version, guarded=False)
            return await self._finish(current, state)

    async def record_match(self) -> bool:
        """Store the MatchRecord of the loaded, ended game unless it already exists.

        Called after the game document is written with the final state. If
        that record write fails the game stays ended, and calling this again
        (or rejoining the game) completes it. Returns True if a record was
        written by this call.
        """

        state = self._current()
        record = engine.build_match_record(state, self._clock())
        created = await self.history.record(record)
        if created:
            logger.info(
                f"[dreamtracker] match ended code={state.game_code} match_id={record.id} "
                f"winner={record.winner_id} win_type={record.win_type}"
            )
        else:
            logger.debug(f"[dreamtracker] match already recorded code={state.game_code} match_id={record.id}")
        return created

    async def leave(self) -> GameState:
        """Disconnect this client's player and stop watching the game."""

        try:
            return await self.mark_disconnected(self.player_id)
        finally:
            self.close()

    # --- Remote updates ---

    def apply_remote(self, doc: Optional[Document]) -> bool:
        """Adopt a pushed snapshot unless it equals the local state. Returns True if adopted."""

        if doc is None:
            return False
        incoming = game_state_from_dict(doc)
        if self.state is not None and incoming.game_code != self.state.game_code:
            logger.warning(
                f"[dreamtracker] ignoring snapshot for other game code={incoming.game_code} "
                f"local={self.state.game_code}"
            )
            return False
        if incoming == self.state:
            logger.debug(f"[dreamtracker] redundant snapshot code={incoming.game_code} version={incoming.version}")
            return False
        self.state = incoming
        return True

    @contextlib.asynccontextmanager
    async def watch(self) -> AsyncIterator[GameWatch]:
        """Subscribe to the loaded game for the duration of the ``async with`` block."""

        current = self._current()
        watch = GameWatch(
            self.store,
            self.settings.games_collection,
            current.game_code,
            self.apply_remote,
            lambda: self.state,
        )
        watch.start()
        self._watches.append(watch)
        try:
            yield watch
        finally:
            watch.close()
            if watch in self._watches:
                self._watches.remove(watch)

    def close(self) -> None:
        for watch in list(self._watches):
            watch.close()
        self._watches.clear()

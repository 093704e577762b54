import asyncio
import logging
import os
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Literal, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field
from dotenv import load_dotenv

from dreamtracker_game.config import TrackerSettings
from dreamtracker_game.engine import new_player
from dreamtracker_game.errors import (
    ConcurrentUpdate,
    CorruptGameState,
    GameFull,
    GameNotFound,
    InvalidStateTransition,
    StoreError,
    TrackerError,
    UnknownPlayer,
)
from dreamtracker_game.history import compute_stats, filter_matches, used_decks
from dreamtracker_game.models import GameState, game_state_to_dict, match_record_to_dict
from dreamtracker_game.persistence import FirestorePersistence, InMemoryPersistence
from dreamtracker_game.session import GameSession

load_dotenv(dotenv_path=Path(".env.local"))

API_BASE = "/api/dreamtracker"

logger = logging.getLogger("uvicorn.error")


def choose_persistence(settings: TrackerSettings):
    if settings.use_inmemory:
        return InMemoryPersistence()
    try:
        return FirestorePersistence(project=settings.project)
    except Exception as exc:
        logger.warning(f"[dreamtracker] firestore unavailable, using in-memory store error={exc}")
        return InMemoryPersistence()


class CreateGameBody(BaseModel):
    display_name: Optional[str] = None
    deck_label: Optional[str] = None


class JoinGameBody(BaseModel):
    game_code: str = Field(..., min_length=1, max_length=16)
    display_name: Optional[str] = None
    deck_label: Optional[str] = None


class GameCodeBody(BaseModel):
    game_code: str


class AdjustCounterBody(BaseModel):
    game_code: str
    kind: Literal["morale", "energy"]
    delta: int
    player_id: Optional[str] = None


class DisconnectBody(BaseModel):
    # Only the caller can be marked disconnected.
    model_config = ConfigDict(extra="forbid")

    game_code: str


def to_client(state: GameState, user_id: str) -> Dict[str, Any]:
    data = game_state_to_dict(state)
    data["you"] = user_id
    data["yourPriority"] = state.priority_player_id == user_id
    return data


def error_to_http(exc: Exception) -> HTTPException:
    msg = str(exc)
    if isinstance(exc, GameNotFound):
        return HTTPException(status_code=404, detail=msg)
    if isinstance(exc, UnknownPlayer):
        return HTTPException(status_code=403, detail=msg)
    if isinstance(exc, (GameFull, InvalidStateTransition, ConcurrentUpdate)):
        return HTTPException(status_code=409, detail=msg)
    if isinstance(exc, CorruptGameState):
        return HTTPException(status_code=500, detail=msg)
    if isinstance(exc, StoreError):
        return HTTPException(status_code=503, detail=msg)
    return HTTPException(status_code=400, detail=msg)


def _identity(headers: Any) -> Optional[str]:
    trust_x_user_id = os.getenv("TRUST_X_USER_ID", "1").lower() in ("1", "true", "yes")
    allow_anon = os.getenv("ALLOW_ANON", "1").lower() in ("1", "true", "yes")
    uid = headers.get("X-User-Id")
    if uid and trust_x_user_id:
        return uid
    if allow_anon:
        return os.getenv("DEFAULT_USER_ID", "local-user")
    return None


def create_app(persistence=None, settings: Optional[TrackerSettings] = None) -> FastAPI:
    app = FastAPI(title="Dream Tracker Service", version="0.1.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = settings or TrackerSettings.from_env(env_file=None)
    app.state.persistence = persistence or choose_persistence(app.state.settings)

    @app.on_event("startup")
    async def _log_persistence():
        s = app.state.settings
        logger.info(
            f"[dreamtracker] Persistence={app.state.persistence.__class__.__name__} "
            f"USE_INMEMORY={int(s.use_inmemory)} FIRESTORE_EMULATOR_HOST={s.emulator_host or '-'} "
            f"GOOGLE_CLOUD_PROJECT={s.project or '-'} CONDITIONAL_WRITES={int(s.conditional_writes)}"
        )

    def get_user_id(req: Request) -> str:
        uid = _identity(req.headers)
        if uid is None:
            logger.warning("[dreamtracker] get_user_id missing user id")
            raise HTTPException(status_code=401, detail="missing user id")
        return uid

    def new_session(user_id: str) -> GameSession:
        return GameSession(app.state.persistence, user_id, app.state.settings)

    async def load_member_session(user_id: str, game_code: str) -> GameSession:
        session = new_session(user_id)
        state = await session.load(game_code)
        if user_id not in state.players:
            raise UnknownPlayer(detail=user_id)
        return session

    @app.post(f"{API_BASE}/create")
    async def create_game(body: CreateGameBody, user_id: str = Depends(get_user_id)):
        session = new_session(user_id)
        host = new_player(user_id, body.display_name, body.deck_label, is_host=True)
        try:
            state = await session.create_game(host)
        except (TrackerError, StoreError) as e:
            raise error_to_http(e)
        return to_client(state, user_id)

    @app.post(f"{API_BASE}/join")
    async def join_game(body: JoinGameBody, user_id: str = Depends(get_user_id)):
        session = new_session(user_id)
        guest = new_player(user_id, body.display_name, body.deck_label)
        try:
            state = await session.join_game(body.game_code, guest)
        except (TrackerError, StoreError) as e:
            raise error_to_http(e)
        return to_client(state, user_id)

    @app.get(f"{API_BASE}/state")
    async def get_state(game_code: str, user_id: str = Depends(get_user_id)):
        try:
            session = await load_member_session(user_id, game_code)
        except (TrackerError, StoreError) as e:
            raise error_to_http(e)
        return to_client(session.state, user_id)

    @app.post(f"{API_BASE}/adjust")
    async def adjust_counter(body: AdjustCounterBody, user_id: str = Depends(get_user_id)):
        try:
            session = await load_member_session(user_id, body.game_code)
            state = await session.adjust_counter(body.player_id or user_id, body.kind, body.delta)
        except (TrackerError, StoreError) as e:
            raise error_to_http(e)
        return to_client(state, user_id)

    @app.post(f"{API_BASE}/advance")
    async def advance_turn(body: GameCodeBody, user_id: str = Depends(get_user_id)):
        try:
            session = await load_member_session(user_id, body.game_code)
            state = await session.advance_turn()
        except (TrackerError, StoreError) as e:
            raise error_to_http(e)
        return to_client(state, user_id)

    @app.post(f"{API_BASE}/surrender")
    async def surrender(body: GameCodeBody, user_id: str = Depends(get_user_id)):
        try:
            session = await load_member_session(user_id, body.game_code)
            state = await session.surrender(user_id)
        except (TrackerError, StoreError) as e:
            raise error_to_http(e)
        return to_client(state, user_id)

    @app.post(f"{API_BASE}/disconnect")
    async def mark_disconnected(body: DisconnectBody, user_id: str = Depends(get_user_id)):
        try:
            session = await load_member_session(user_id, body.game_code)
            state = await session.mark_disconnected(user_id)
        except (TrackerError, StoreError) as e:
            raise error_to_http(e)
        return to_client(state, user_id)

    @app.post(f"{API_BASE}/leave")
    async def leave_game(body: GameCodeBody, user_id: str = Depends(get_user_id)):
        try:
            session = await load_member_session(user_id, body.game_code)
            state = await session.leave()
        except (TrackerError, StoreError) as e:
            raise error_to_http(e)
        return to_client(state, user_id)

    @app.get(f"{API_BASE}/history")
    async def get_history(
        result: Literal["all", "wins", "losses"] = "all",
        win_type: Literal["all", "normal", "surrender", "incomplete"] = "all",
        deck: Optional[str] = None,
        exclude_deck: Optional[str] = None,
        opponent: str = "",
        user_id: str = Depends(get_user_id),
    ):
        session = new_session(user_id)
        try:
            matches = await session.history.list_for_player(user_id)
        except (TrackerError, StoreError) as e:
            raise error_to_http(e)
        selected = filter_matches(matches, user_id, result, win_type, deck, exclude_deck, opponent)
        return {
            "matches": [match_record_to_dict(m) for m in selected],
            "decks": used_decks(user_id, matches),
        }

    @app.get(f"{API_BASE}/stats")
    async def get_stats(user_id: str = Depends(get_user_id)):
        session = new_session(user_id)
        try:
            matches = await session.history.list_for_player(user_id)
        except (TrackerError, StoreError) as e:
            raise error_to_http(e)
        return asdict(compute_stats(user_id, matches))

    @app.websocket(API_BASE + "/watch/{game_code}")
    async def watch_game(websocket: WebSocket, game_code: str):
        """Push every remote change of the game to the client until either side closes."""

        user_id = _identity(websocket.headers)
        await websocket.accept()
        if user_id is None:
            await websocket.close(code=4401, reason="missing user id")
            return
        try:
            session = await load_member_session(user_id, game_code)
        except (TrackerError, StoreError) as e:
            await websocket.close(code=4000 + error_to_http(e).status_code, reason=str(e))
            return

        await websocket.send_json(to_client(session.state, user_id))

        async with session.watch() as updates:

            async def _pump() -> None:
                async for state in updates:
                    await websocket.send_json(to_client(state, user_id))

            async def _listen() -> None:
                while True:
                    await websocket.receive_text()

            pump = asyncio.create_task(_pump())
            listen = asyncio.create_task(_listen())
            done, pending = await asyncio.wait({pump, listen}, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

            error = pump.exception() if pump in done and not pump.cancelled() else None
            if listen in done and not listen.cancelled() and not isinstance(listen.exception(), WebSocketDisconnect):
                error = error or listen.exception()
            if error is not None:
                logger.warning(f"[dreamtracker] watch ended with error code={game_code} error={error}")
                await websocket.close(code=1011, reason=str(error))
            elif pump in done:
                await websocket.close(code=1000)
        logger.info(f"[dreamtracker] watch closed code={game_code} user_id={user_id}")

    return app


app = create_app()

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Tuple

from .errors import CorruptGameState


GameStatus = Literal["setup", "active", "ended"]
EndReason = Literal["morale_at_or_below_zero", "morale_at_or_above_hundred", "surrender"]
WinType = Literal["normal", "surrender", "incomplete"]
CounterKind = Literal["morale", "energy"]

GAME_STATUSES: Tuple[str, ...] = ("setup", "active", "ended")
END_REASONS: Tuple[str, ...] = ("morale_at_or_below_zero", "morale_at_or_above_hundred", "surrender")
WIN_TYPES: Tuple[str, ...] = ("normal", "surrender", "incomplete")

# Winner sentinel for matches abandoned by both players.
INCOMPLETE = "incomplete"


@dataclass
class PlayerState:
    id: str
    display_name: str
    morale: int = 50
    energy: int = 0
    max_energy_this_turn: int = 0
    is_host: bool = False
    deck_label: Optional[str] = None
    disconnected: bool = False
    last_disconnect_at: Optional[datetime] = None
    last_reconnect_at: Optional[datetime] = None


@dataclass(frozen=True)
class RoundResult:
    round_number: int
    end_turn: int
    final_morale: Dict[str, int]
    winner_id: Optional[str]
    end_reason: EndReason


@dataclass
class GameState:
    game_code: str
    players: Dict[str, PlayerState]
    current_turn: int
    current_round: int
    priority_player_id: str
    status: GameStatus
    started_at: datetime
    rounds: List[RoundResult] = field(default_factory=list)
    winner_id: Optional[str] = None
    incomplete: bool = False
    version: int = 0
    match_id: Optional[str] = None

    def player_ids(self) -> List[str]:
        return list(self.players.keys())

    def opponent_of(self, player_id: str) -> str:
        for pid in self.players:
            if pid != player_id:
                return pid
        raise ValueError("no_opponent")


@dataclass(frozen=True)
class MatchPlayer:
    name: str
    deck_label: Optional[str] = None


@dataclass(frozen=True)
class MatchRecord:
    id: str
    game_code: str
    players: Dict[str, MatchPlayer]
    rounds: List[RoundResult]
    winner_id: str
    win_type: WinType
    started_at: datetime
    ended_at: datetime


# --- Encoding ---


def _encode_time(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


def round_result_to_dict(result: RoundResult) -> Dict[str, Any]:
    return {
        "roundNumber": result.round_number,
        "endTurn": result.end_turn,
        "finalMorale": dict(result.final_morale),
        "winnerId": result.winner_id,
        "endReason": result.end_reason,
    }


def player_state_to_dict(player: PlayerState) -> Dict[str, Any]:
    return {
        "id": player.id,
        "displayName": player.display_name,
        "morale": player.morale,
        "energy": player.energy,
        "maxEnergyThisTurn": player.max_energy_this_turn,
        "isHost": player.is_host,
        "deckLabel": player.deck_label,
        "disconnected": player.disconnected,
        "lastDisconnectAt": _encode_time(player.last_disconnect_at),
        "lastReconnectAt": _encode_time(player.last_reconnect_at),
    }


def game_state_to_dict(state: GameState) -> Dict[str, Any]:
    # Firestore maps do not keep key order, so join order travels separately.
    return {
        "gameCode": state.game_code,
        "status": state.status,
        "currentTurn": state.current_turn,
        "currentRound": state.current_round,
        "priorityPlayerId": state.priority_player_id,
        "winnerId": state.winner_id,
        "incomplete": state.incomplete,
        "startedAt": _encode_time(state.started_at),
        "version": state.version,
        "matchId": state.match_id,
        "playerOrder": list(state.players.keys()),
        "players": {pid: player_state_to_dict(p) for pid, p in state.players.items()},
        "rounds": [round_result_to_dict(r) for r in state.rounds],
    }


def match_record_to_dict(record: MatchRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "gameCode": record.game_code,
        "players": {
            pid: {"name": p.name, "deckLabel": p.deck_label} for pid, p in record.players.items()
        },
        "rounds": [round_result_to_dict(r) for r in record.rounds],
        "winnerId": record.winner_id,
        "winType": record.win_type,
        "startedAt": _encode_time(record.started_at),
        "endedAt": _encode_time(record.ended_at),
    }


# --- Decoding ---
#
# Decoders fail closed: a missing or mistyped required field raises
# CorruptGameState instead of being replaced by a default.


def _require(data: Dict[str, Any], key: str, kind: Any, where: str) -> Any:
    if key not in data:
        raise CorruptGameState(detail=f"{where}: missing {key}")
    value = data[key]
    # bool is an int subclass; counters must be real integers.
    if kind is int and isinstance(value, bool):
        raise CorruptGameState(detail=f"{where}: {key} is not int")
    if not isinstance(value, kind):
        raise CorruptGameState(detail=f"{where}: {key} has type {type(value).__name__}")
    return value


def _optional(data: Dict[str, Any], key: str, kind: Any, where: str) -> Any:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, kind):
        raise CorruptGameState(detail=f"{where}: {key} has type {type(value).__name__}")
    return value


def _decode_time(value: Any, key: str, where: str) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            raise CorruptGameState(detail=f"{where}: {key} is not a timestamp")
    else:
        raise CorruptGameState(detail=f"{where}: {key} is not a timestamp")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def round_result_from_dict(data: Any) -> RoundResult:
    where = "round"
    if not isinstance(data, dict):
        raise CorruptGameState(detail=f"{where}: not a mapping")
    round_number = _require(data, "roundNumber", int, where)
    if round_number not in (1, 2):
        raise CorruptGameState(detail=f"{where}: roundNumber={round_number}")
    end_reason = _require(data, "endReason", str, where)
    if end_reason not in END_REASONS:
        raise CorruptGameState(detail=f"{where}: endReason={end_reason}")
    final_morale = _require(data, "finalMorale", dict, where)
    for pid in final_morale:
        _require(final_morale, pid, int, f"{where}.finalMorale")
    return RoundResult(
        round_number=round_number,
        end_turn=_require(data, "endTurn", int, where),
        final_morale={str(k): v for k, v in final_morale.items()},
        winner_id=_optional(data, "winnerId", str, where),
        end_reason=end_reason,
    )


def player_state_from_dict(data: Any) -> PlayerState:
    where = "player"
    if not isinstance(data, dict):
        raise CorruptGameState(detail=f"{where}: not a mapping")
    return PlayerState(
        id=_require(data, "id", str, where),
        display_name=_require(data, "displayName", str, where),
        morale=_require(data, "morale", int, where),
        energy=_require(data, "energy", int, where),
        max_energy_this_turn=_require(data, "maxEnergyThisTurn", int, where),
        is_host=_require(data, "isHost", bool, where),
        deck_label=_optional(data, "deckLabel", str, where),
        disconnected=_require(data, "disconnected", bool, where),
        last_disconnect_at=_decode_time(data.get("lastDisconnectAt"), "lastDisconnectAt", where),
        last_reconnect_at=_decode_time(data.get("lastReconnectAt"), "lastReconnectAt", where),
    )


def game_state_from_dict(data: Any) -> GameState:
    """Rebuild a GameState from a ``games/{code}`` document and check its invariants."""

    where = "game"
    if not isinstance(data, dict):
        raise CorruptGameState(detail=f"{where}: not a mapping")

    players_data = _require(data, "players", dict, where)
    order = data.get("playerOrder")
    if order is None:
        order = list(players_data.keys())
    if not isinstance(order, list) or sorted(order) != sorted(players_data.keys()):
        raise CorruptGameState(detail=f"{where}: playerOrder does not match players")

    players: Dict[str, PlayerState] = {}
    for pid in order:
        player = player_state_from_dict(players_data[pid])
        if player.id != pid:
            raise CorruptGameState(detail=f"{where}: player key {pid} != id {player.id}")
        players[pid] = player

    status = _require(data, "status", str, where)
    if status not in GAME_STATUSES:
        raise CorruptGameState(detail=f"{where}: status={status}")

    rounds = [round_result_from_dict(r) for r in _require(data, "rounds", list, where)]

    state = GameState(
        game_code=_require(data, "gameCode", str, where),
        players=players,
        current_turn=_require(data, "currentTurn", int, where),
        current_round=_require(data, "currentRound", int, where),
        priority_player_id=_require(data, "priorityPlayerId", str, where),
        status=status,
        started_at=_decode_time(_require(data, "startedAt", (str, datetime), where), "startedAt", where),
        rounds=rounds,
        winner_id=_optional(data, "winnerId", str, where),
        incomplete=_require(data, "incomplete", bool, where),
        version=_require(data, "version", int, where),
        match_id=_optional(data, "matchId", str, where),
    )
    check_invariants(state)
    return state


def check_invariants(state: GameState) -> None:
    if not 1 <= len(state.players) <= 2:
        raise CorruptGameState(detail=f"players={len(state.players)}")
    if state.priority_player_id not in state.players:
        raise CorruptGameState(detail="priority player not in game")
    if sum(1 for p in state.players.values() if p.is_host) != 1:
        raise CorruptGameState(detail="expected exactly one host")
    if state.version < 0:
        raise CorruptGameState(detail=f"version={state.version}")
    if state.current_turn < 1 or state.current_round not in (1, 2):
        raise CorruptGameState(detail=f"turn={state.current_turn} round={state.current_round}")
    if len(state.rounds) > 2:
        raise CorruptGameState(detail=f"rounds={len(state.rounds)}")
    numbers = [r.round_number for r in state.rounds]
    if len(set(numbers)) != len(numbers):
        raise CorruptGameState(detail="duplicate round result")
    if state.status == "active" and len(state.players) != 2:
        raise CorruptGameState(detail="active game without two players")
    if state.winner_id is not None and state.status != "ended":
        raise CorruptGameState(detail="winner set before game ended")
    for p in state.players.values():
        if p.energy < 0 or p.max_energy_this_turn < 0:
            raise CorruptGameState(detail=f"negative energy for {p.id}")


def match_record_from_dict(data: Any) -> MatchRecord:
    where = "match"
    if not isinstance(data, dict):
        raise CorruptGameState(detail=f"{where}: not a mapping")
    players_data = _require(data, "players", dict, where)
    players: Dict[str, MatchPlayer] = {}
    for pid, p in players_data.items():
        if not isinstance(p, dict):
            raise CorruptGameState(detail=f"{where}: player {pid} not a mapping")
        players[str(pid)] = MatchPlayer(
            name=_require(p, "name", str, where),
            deck_label=_optional(p, "deckLabel", str, where),
        )
    win_type = _require(data, "winType", str, where)
    if win_type not in WIN_TYPES:
        raise CorruptGameState(detail=f"{where}: winType={win_type}")
    return MatchRecord(
        id=_require(data, "id", str, where),
        game_code=_require(data, "gameCode", str, where),
        players=players,
        rounds=[round_result_from_dict(r) for r in _require(data, "rounds", list, where)],
        winner_id=_require(data, "winnerId", str, where),
        win_type=win_type,
        started_at=_decode_time(_require(data, "startedAt", (str, datetime), where), "startedAt", where),
        ended_at=_decode_time(_require(data, "endedAt", (str, datetime), where), "endedAt", where),
    )

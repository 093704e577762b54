"""Pure match rules: every function takes a GameState and returns a new one.

Nothing here touches the document store, so each rule can be exercised
directly. ``session.GameSession`` sequences these with the store writes.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Sequence, Tuple
import copy
import random
import secrets
import string

from .errors import CorruptGameState, GameFull, InvalidStateTransition, UnknownPlayer
from .models import (
    INCOMPLETE,
    CounterKind,
    EndReason,
    GameState,
    MatchPlayer,
    MatchRecord,
    PlayerState,
    RoundResult,
    WinType,
)


STARTING_MORALE = 50
MORALE_FLOOR = 0  # at or below: that player loses the round
MORALE_CEILING = 100  # at or above: that player wins the round
MAX_PLAYERS = 2
TOTAL_ROUNDS = 2

GAME_CODE_LENGTH = 6
GAME_CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_game_code(length: int = GAME_CODE_LENGTH) -> str:
    return "".join(secrets.choice(GAME_CODE_ALPHABET) for _ in range(length))


def normalize_game_code(code: str) -> str:
    return (code or "").strip().upper()


def new_player(
    player_id: str,
    display_name: Optional[str] = None,
    deck_label: Optional[str] = None,
    is_host: bool = False,
) -> PlayerState:
    return PlayerState(
        id=player_id,
        display_name=display_name or player_id,
        morale=STARTING_MORALE,
        energy=0,
        max_energy_this_turn=0,
        is_host=is_host,
        deck_label=deck_label,
    )


def new_game(game_code: str, host: PlayerState, now: datetime) -> GameState:
    host = copy.deepcopy(host)
    host.is_host = True
    return GameState(
        game_code=game_code,
        players={host.id: host},
        current_turn=1,
        current_round=1,
        priority_player_id=host.id,
        status="setup",
        started_at=now,
        rounds=[],
    )


def _player(state: GameState, player_id: str) -> PlayerState:
    player = state.players.get(player_id)
    if player is None:
        raise UnknownPlayer(detail=player_id)
    return player


def _require_active(state: GameState) -> None:
    if state.status != "active":
        raise InvalidStateTransition("game_not_active", detail=f"status={state.status}")


def add_player(state: GameState, guest: PlayerState, rng: Optional[random.Random] = None) -> GameState:
    """Seat the second player and start the match with a random first priority."""

    if guest.id in state.players:
        raise InvalidStateTransition("already_joined")
    if len(state.players) >= MAX_PLAYERS:
        raise GameFull()
    if state.status != "setup":
        raise InvalidStateTransition("game_not_in_setup", detail=f"status={state.status}")

    new_state = copy.deepcopy(state)
    guest = copy.deepcopy(guest)
    guest.is_host = False
    new_state.players[guest.id] = guest
    new_state.priority_player_id = (rng or random).choice(new_state.player_ids())
    new_state.status = "active"
    return new_state


def reconnect_player(state: GameState, player_id: str, now: datetime) -> GameState:
    new_state = copy.deepcopy(state)
    player = _player(new_state, player_id)
    player.disconnected = False
    player.last_reconnect_at = now
    return new_state


def adjust_counter(state: GameState, player_id: str, kind: CounterKind, delta: int) -> GameState:
    """Apply ``delta`` to one counter.

    Morale is never clamped here; out-of-range values are what the round-end
    check in ``advance_turn`` looks for. Energy is floored at zero and raises the
    player's high-water mark for the turn.
    """

    _require_active(state)
    new_state = copy.deepcopy(state)
    player = _player(new_state, player_id)
    if kind == "morale":
        player.morale += delta
    elif kind == "energy":
        player.energy = max(0, player.energy + delta)
        player.max_energy_this_turn = max(player.max_energy_this_turn, player.energy)
    else:
        raise ValueError("invalid_counter")
    return new_state


def check_round_end(state: GameState) -> Optional[Tuple[Optional[str], EndReason]]:
    """Return (round winner, reason) when a win condition holds, else None.

    All players are scanned for morale at or below zero before anyone is checked
    for morale at or above one hundred, so a zeroed player loses the round even
    if the opponent also crossed the ceiling.
    """

    ids = state.player_ids()
    for pid in ids:
        if state.players[pid].morale <= MORALE_FLOOR:
            winner = next((other for other in ids if other != pid), None)
            return winner, "morale_at_or_below_zero"
    for pid in ids:
        if state.players[pid].morale >= MORALE_CEILING:
            return pid, "morale_at_or_above_hundred"
    return None


def _morale_gap(result: RoundResult, player_ids: Sequence[str]) -> int:
    a, b = player_ids
    try:
        return abs(result.final_morale[a] - result.final_morale[b])
    except KeyError as exc:
        raise CorruptGameState(detail=f"round {result.round_number} missing morale for {exc.args[0]}")


def finalize(rounds: Sequence[RoundResult], player_ids: Sequence[str]) -> str:
    """Pick the match winner from two completed rounds.

    More round wins takes the match. At one round each, the round with the
    larger final morale gap decides; equal gaps go to the round 1 winner.
    """

    if len(rounds) != TOTAL_ROUNDS or len(player_ids) != MAX_PLAYERS:
        raise ValueError("finalize_requires_two_rounds_and_two_players")
    first, second = rounds
    wins = {pid: sum(1 for r in rounds if r.winner_id == pid) for pid in player_ids}
    a, b = player_ids
    if wins[a] != wins[b]:
        return a if wins[a] > wins[b] else b

    gap_first = _morale_gap(first, player_ids)
    gap_second = _morale_gap(second, player_ids)
    winner = second.winner_id if gap_second > gap_first else first.winner_id
    if winner is None:
        raise CorruptGameState(detail="round without a winner")
    return winner


def match_id_for(state: GameState) -> str:
    return f"{state.game_code}_{int(state.started_at.timestamp() * 1000)}"


def _snapshot_morale(state: GameState) -> dict:
    return {pid: p.morale for pid, p in state.players.items()}


def _end_match(state: GameState, winner_id: str) -> None:
    state.status = "ended"
    state.winner_id = winner_id
    state.match_id = match_id_for(state)


def _append_round(state: GameState, winner_id: Optional[str], reason: EndReason) -> None:
    if any(r.round_number == state.current_round for r in state.rounds):
        raise CorruptGameState(detail=f"round {state.current_round} already recorded")
    state.rounds.append(
        RoundResult(
            round_number=state.current_round,
            end_turn=state.current_turn,
            final_morale=_snapshot_morale(state),
            winner_id=winner_id,
            end_reason=reason,
        )
    )


def advance_turn(state: GameState) -> GameState:
    """Resolve the end of the current turn.

    Without a win condition energy is banked at its high-water mark, the turn
    counter moves on and priority passes to the other player. With one, the
    round is recorded; round 1 resets the counters for round 2 and round 2
    ends the match.
    """

    _require_active(state)
    new_state = copy.deepcopy(state)
    outcome = check_round_end(new_state)

    if outcome is None:
        for player in new_state.players.values():
            player.energy = player.max_energy_this_turn
        new_state.current_turn += 1
        new_state.priority_player_id = new_state.opponent_of(new_state.priority_player_id)
        return new_state

    winner_id, reason = outcome
    _append_round(new_state, winner_id, reason)

    if new_state.current_round < TOTAL_ROUNDS:
        for player in new_state.players.values():
            player.morale = STARTING_MORALE
            player.energy = 0
            player.max_energy_this_turn = 0
        new_state.current_round += 1
        new_state.current_turn = 1
        new_state.priority_player_id = new_state.opponent_of(new_state.priority_player_id)
        return new_state

    _end_match(new_state, finalize(new_state.rounds, new_state.player_ids()))
    return new_state


def surrender(state: GameState, player_id: str) -> GameState:
    """Concede the whole match, whichever round is in progress."""

    _require_active(state)
    new_state = copy.deepcopy(state)
    _player(new_state, player_id)
    winner_id = new_state.opponent_of(player_id)
    _append_round(new_state, winner_id, "surrender")
    _end_match(new_state, winner_id)
    return new_state


def mark_disconnected(state: GameState, player_id: str, now: datetime) -> GameState:
    """Flag a player as gone; an active match with nobody left ends incomplete."""

    new_state = copy.deepcopy(state)
    player = _player(new_state, player_id)
    player.disconnected = True
    player.last_disconnect_at = now
    everyone_gone = all(p.disconnected for p in new_state.players.values())
    if everyone_gone and new_state.status == "active":
        new_state.incomplete = True
        _end_match(new_state, INCOMPLETE)
    return new_state


def win_type_for(state: GameState) -> WinType:
    if state.incomplete:
        return "incomplete"
    if state.rounds and state.rounds[-1].end_reason == "surrender":
        return "surrender"
    return "normal"


def build_match_record(state: GameState, ended_at: datetime) -> MatchRecord:
    if state.status != "ended" or state.winner_id is None:
        raise InvalidStateTransition("match_not_ended")
    return MatchRecord(
        id=state.match_id or match_id_for(state),
        game_code=state.game_code,
        players={
            pid: MatchPlayer(name=p.display_name, deck_label=p.deck_label) for pid, p in state.players.items()
        },
        rounds=list(state.rounds),
        winner_id=state.winner_id,
        win_type=win_type_for(state),
        started_at=state.started_at,
        ended_at=ended_at,
    )

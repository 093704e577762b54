from __future__ import annotations

from dataclasses import dataclass
from typing import List, Literal, Optional, Sequence
import logging

from .models import INCOMPLETE, MatchRecord, match_record_from_dict, match_record_to_dict
from .persistence import DocumentStore


logger = logging.getLogger(__name__)

ResultFilter = Literal["all", "wins", "losses"]
WinTypeFilter = Literal["all", "normal", "surrender", "incomplete"]

NO_DECK = "no-deck"


class MatchHistory:
    """Finished-match records under ``matches/{matchId}``."""

    def __init__(self, store: DocumentStore, collection: str = "matches") -> None:
        self.store = store
        self.collection = collection

    async def record(self, match: MatchRecord) -> bool:
        """Store ``match`` unless a record with its id exists. Returns True if written.

        Records are never overwritten, so repeating the call after a failure
        is safe.
        """

        doc = match_record_to_dict(match)
        doc["createdAt"] = self.store.server_timestamp
        return await self.store.create(self.collection, match.id, doc)

    async def get(self, match_id: str) -> Optional[MatchRecord]:
        doc = await self.store.get(self.collection, match_id)
        if doc is None:
            return None
        return match_record_from_dict(doc)

    async def list_for_player(self, player_id: str) -> List[MatchRecord]:
        # Filtered client-side; the collection has no per-player index.
        matches = [match_record_from_dict(doc) for doc in await self.store.list_documents(self.collection)]
        mine = [m for m in matches if player_id in m.players]
        mine.sort(key=lambda m: m.started_at, reverse=True)
        logger.debug(f"[dreamtracker] history player={player_id} total={len(matches)} matched={len(mine)}")
        return mine


@dataclass
class PlayerStats:
    total_games: int = 0
    wins: int = 0
    losses: int = 0
    normal_wins: int = 0
    surrender_wins: int = 0
    normal_losses: int = 0
    surrender_losses: int = 0
    incomplete: int = 0
    times_reduced_to_zero: int = 0
    times_opponent_reduced_to_zero: int = 0
    avg_morale_difference: int = 0
    win_rate: float = 0.0


def _opponent(match: MatchRecord, player_id: str) -> Optional[str]:
    return next((pid for pid in match.players if pid != player_id), None)


def compute_stats(player_id: str, matches: Sequence[MatchRecord]) -> PlayerStats:
    """Aggregate a player's record. Incomplete matches count on their own, not as wins or losses."""

    stats = PlayerStats()
    morale_gap_total = 0
    rounds_counted = 0
    for match in matches:
        if player_id not in match.players:
            continue
        if match.win_type == "incomplete" or match.winner_id == INCOMPLETE:
            stats.incomplete += 1
            continue

        stats.total_games += 1
        surrendered = match.win_type == "surrender"
        if match.winner_id == player_id:
            stats.wins += 1
            if surrendered:
                stats.surrender_wins += 1
            else:
                stats.normal_wins += 1
        else:
            stats.losses += 1
            if surrendered:
                stats.surrender_losses += 1
            else:
                stats.normal_losses += 1

        opponent = _opponent(match, player_id)
        for round_result in match.rounds:
            mine = round_result.final_morale.get(player_id, 0)
            theirs = round_result.final_morale.get(opponent, 0) if opponent else 0
            if mine <= 0:
                stats.times_reduced_to_zero += 1
            if theirs <= 0:
                stats.times_opponent_reduced_to_zero += 1
            morale_gap_total += abs(mine - theirs)
            rounds_counted += 1

    if stats.total_games:
        stats.win_rate = round(stats.wins / stats.total_games * 100, 2)
    if rounds_counted:
        stats.avg_morale_difference = round(morale_gap_total / rounds_counted)
    return stats


def filter_matches(
    matches: Sequence[MatchRecord],
    player_id: str,
    result: ResultFilter = "all",
    win_type: WinTypeFilter = "all",
    deck: Optional[str] = None,
    exclude_deck: Optional[str] = None,
    opponent: str = "",
) -> List[MatchRecord]:
    """Narrow a player's match list the way the history view does.

    ``deck`` / ``exclude_deck`` take a deck label or ``"no-deck"`` for matches
    played without one. ``opponent`` is a case-insensitive name substring.
    """

    needle = opponent.strip().lower()
    selected: List[MatchRecord] = []
    for match in matches:
        me = match.players.get(player_id)
        if me is None:
            continue
        won = match.winner_id == player_id
        if result == "wins" and not won:
            continue
        if result == "losses" and (won or match.win_type == "incomplete"):
            continue
        if win_type != "all" and match.win_type != win_type:
            continue
        if deck is not None:
            if deck == NO_DECK and me.deck_label:
                continue
            if deck != NO_DECK and me.deck_label != deck:
                continue
        if exclude_deck is not None:
            if exclude_deck == NO_DECK and not me.deck_label:
                continue
            if exclude_deck != NO_DECK and me.deck_label == exclude_deck:
                continue
        if needle:
            other = _opponent(match, player_id)
            name = match.players[other].name if other else ""
            if needle not in name.lower():
                continue
        selected.append(match)
    return selected


def used_decks(player_id: str, matches: Sequence[MatchRecord]) -> List[str]:
    labels = {m.players[player_id].deck_label for m in matches if player_id in m.players}
    return sorted(label for label in labels if label)

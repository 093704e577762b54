import unittest
from datetime import datetime, timedelta, timezone

from dreamtracker_game.history import MatchHistory, compute_stats, filter_matches, used_decks
from dreamtracker_game.models import INCOMPLETE, MatchPlayer, MatchRecord, RoundResult
from dreamtracker_game.persistence import InMemoryPersistence


START = datetime(2026, 10, 1, 18, 0, tzinfo=timezone.utc)


def _match(
    match_id: str,
    winner: str,
    win_type: str = "normal",
    me_deck=None,
    opponent=("opp", "Olga"),
    days: int = 0,
    morale=((60, 0), (100, 40)),
) -> MatchRecord:
    opp_id, opp_name = opponent
    rounds = [
        RoundResult(
            round_number=i + 1,
            end_turn=4,
            final_morale={"me": mine, opp_id: theirs},
            winner_id=winner,
            end_reason="surrender" if win_type == "surrender" else "morale_at_or_below_zero",
        )
        for i, (mine, theirs) in enumerate(morale)
    ]
    return MatchRecord(
        id=match_id,
        game_code="ABC123",
        players={"me": MatchPlayer("Me", me_deck), opp_id: MatchPlayer(opp_name, None)},
        rounds=rounds,
        winner_id=winner,
        win_type=win_type,
        started_at=START + timedelta(days=days),
        ended_at=START + timedelta(days=days, hours=1),
    )


class StatsTests(unittest.TestCase):
    def test_counts_and_rates(self) -> None:
        matches = [
            _match("m1", "me"),
            _match("m2", "opp", morale=((0, 70),)),
            _match("m3", "me", win_type="surrender", morale=((50, 45),)),
            _match("m4", INCOMPLETE, win_type="incomplete", morale=()),
            _match("m5", "x", opponent=("x", "Xena")),
        ]
        matches.append(
            MatchRecord("other", "ZZZ999", {"a": MatchPlayer("A"), "b": MatchPlayer("B")}, [], "a", "normal", START, START)
        )
        stats = compute_stats("me", matches)
        self.assertEqual(stats.total_games, 4)
        self.assertEqual((stats.wins, stats.losses), (2, 2))
        self.assertEqual((stats.normal_wins, stats.surrender_wins), (1, 1))
        self.assertEqual((stats.normal_losses, stats.surrender_losses), (2, 0))
        self.assertEqual(stats.incomplete, 1)
        self.assertEqual(stats.win_rate, 50.0)
        # m1: opp at 0 once; m2: me at 0 once; m5: opp at 0 once.
        self.assertEqual(stats.times_reduced_to_zero, 1)
        self.assertEqual(stats.times_opponent_reduced_to_zero, 2)
        # Gaps: 60, 60, 70, 5, 60, 60 over six rounds.
        self.assertEqual(stats.avg_morale_difference, 52)

    def test_empty_history(self) -> None:
        stats = compute_stats("me", [])
        self.assertEqual(stats.total_games, 0)
        self.assertEqual(stats.win_rate, 0.0)
        self.assertEqual(stats.avg_morale_difference, 0)


class FilterTests(unittest.TestCase):
    def setUp(self) -> None:
        self.matches = [
            _match("m1", "me", me_deck="Dragons"),
            _match("m2", "opp", me_deck="Nightmares"),
            _match("m3", "me", win_type="surrender"),
            _match("m4", INCOMPLETE, win_type="incomplete", opponent=("zed", "Zed")),
        ]

    def _ids(self, **kwargs):
        return [m.id for m in filter_matches(self.matches, "me", **kwargs)]

    def test_result_filter(self) -> None:
        self.assertEqual(self._ids(result="wins"), ["m1", "m3"])
        self.assertEqual(self._ids(result="losses"), ["m2"])
        self.assertEqual(self._ids(), ["m1", "m2", "m3", "m4"])

    def test_win_type_filter(self) -> None:
        self.assertEqual(self._ids(win_type="surrender"), ["m3"])
        self.assertEqual(self._ids(win_type="incomplete"), ["m4"])

    def test_deck_filters(self) -> None:
        self.assertEqual(self._ids(deck="Dragons"), ["m1"])
        self.assertEqual(self._ids(deck="no-deck"), ["m3", "m4"])
        self.assertEqual(self._ids(exclude_deck="Dragons"), ["m2", "m3", "m4"])
        self.assertEqual(self._ids(exclude_deck="no-deck"), ["m1", "m2"])

    def test_opponent_search(self) -> None:
        self.assertEqual(self._ids(opponent="  ZE "), ["m4"])
        self.assertEqual(self._ids(opponent="nobody"), [])

    def test_used_decks(self) -> None:
        self.assertEqual(used_decks("me", self.matches), ["Dragons", "Nightmares"])


class MatchHistoryStoreTests(unittest.IsolatedAsyncioTestCase):
    async def test_record_and_list_newest_first(self) -> None:
        store = InMemoryPersistence()
        history = MatchHistory(store)
        await history.record(_match("old", "me", days=0))
        await history.record(_match("new", "opp", days=3))
        await history.record(
            MatchRecord("else", "ZZZ999", {"a": MatchPlayer("A"), "b": MatchPlayer("B")}, [], "a", "normal", START, START)
        )
        self.assertIn("createdAt", store.collections["matches"]["old"])
        self.assertFalse(await history.record(_match("old", "opp", days=0)))
        self.assertEqual((await history.get("old")).winner_id, "me")

        mine = await history.list_for_player("me")
        self.assertEqual([m.id for m in mine], ["new", "old"])
        self.assertEqual(await history.get("old"), _match("old", "me", days=0))
        self.assertIsNone(await history.get("missing"))


if __name__ == "__main__":
    unittest.main()

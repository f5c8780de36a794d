"""
Game selection tests: normalization of raw Lichess games and the
result-balanced quota/backfill selection.
"""
from gamelens.services.game_selection import (
    DEFAULT_TARGET,
    normalize_game,
    normalize_games,
    select_games,
)


def _games(prefix, result, n, start=0):
    return [
        {"id": f"{prefix}{i}", "result": result, "duration_ms": 1000 - (start + i), "rating_diff": 0}
        for i in range(n)
    ]


class TestNormalizeGame:
    def test_user_as_white_winning(self, raw_game):
        g = normalize_game(raw_game("g1", color="white", winner="white"), "DrNykterstein")
        assert g["id"] == "g1"
        assert g["user_color"] == "white"
        assert g["result"] == "win"

    def test_user_as_black_losing(self, raw_game):
        g = normalize_game(raw_game("g1", color="black", winner="white"), "DrNykterstein")
        assert g["user_color"] == "black"
        assert g["result"] == "loss"

    def test_username_match_is_case_insensitive(self, raw_game):
        g = normalize_game(raw_game("g1"), "drnykterSTEIN")
        assert g is not None
        assert g["user_color"] == "white"

    def test_draw_status_or_missing_winner_is_draw(self, raw_game):
        assert normalize_game(raw_game("g1", status="draw", winner=None), "DrNykterstein")["result"] == "draw"
        assert normalize_game(raw_game("g2", status="stalemate", winner=None), "DrNykterstein")["result"] == "draw"

    def test_rating_diff_and_duration(self, raw_game):
        g = normalize_game(
            raw_game("g1", user_rating=1800, opponent_rating=1950, duration_ms=123_000),
            "DrNykterstein",
        )
        assert g["rating_diff"] == 150
        assert g["duration_ms"] == 123_000
        assert g["user_rating"] == 1800
        assert g["opponent_rating"] == 1950
        assert g["lichess_opening"] == "Sicilian Defense"
        assert g["played_at"] is not None

    def test_missing_ratings_give_zero_diff(self, raw_game):
        raw = raw_game("g1")
        del raw["players"]["black"]["rating"]
        g = normalize_game(raw, "DrNykterstein")
        assert g["rating_diff"] == 0
        assert g["opponent_rating"] is None

    def test_non_participant_is_dropped(self, raw_game):
        assert normalize_game(raw_game("g1", username="someone"), "DrNykterstein") is None

    def test_garbage_is_dropped(self):
        assert normalize_game({}, "x") is None
        assert normalize_game("not a game", "x") is None


class TestNormalizeGames:
    def test_priority_order_duration_desc_then_rating_gap_asc(self, raw_game):
        raws = [
            raw_game("short", duration_ms=100_000),
            raw_game("long-wide", duration_ms=900_000, opponent_rating=2300),
            raw_game("long-close", duration_ms=900_000, opponent_rating=2010),
            raw_game("other-player", username="someone"),
        ]
        games = normalize_games(raws, "DrNykterstein")
        assert [g["id"] for g in games] == ["long-close", "long-wide", "short"]


class TestSelectGames:
    def test_quotas_filled_when_pool_is_large(self):
        pool = _games("w", "win", 15) + _games("l", "loss", 15) + _games("d", "draw", 8)
        selected = select_games(pool)
        assert len(selected) == DEFAULT_TARGET
        counts = {r: sum(1 for g in selected if g["result"] == r) for r in ("win", "loss", "draw")}
        assert counts == {"win": 10, "loss": 10, "draw": 5}

    def test_quota_picks_follow_priority_order(self):
        pool = _games("w", "win", 12)
        selected = select_games(pool, target=25, quotas={"win": 10, "loss": 10, "draw": 5})
        # 10 by quota then 2 backfilled, all in priority order.
        assert [g["id"] for g in selected] == [f"w{i}" for i in range(12)]

    def test_short_categories_are_backfilled_from_remaining_games(self):
        pool = _games("w", "win", 12) + _games("l", "loss", 3) + _games("d", "draw", 1)
        selected = select_games(pool, target=25)
        assert len(selected) == 16
        assert sum(1 for g in selected if g["result"] == "win") == 12

    def test_never_pads_when_pool_is_exactly_the_quotas(self):
        pool = _games("w", "win", 10) + _games("l", "loss", 3) + _games("d", "draw", 1)
        selected = select_games(pool, target=25)
        assert len(selected) == 14

    def test_backfill_stops_at_target(self):
        pool = _games("w", "win", 40)
        selected = select_games(pool, target=25)
        assert len(selected) == 25
        assert [g["id"] for g in selected] == [f"w{i}" for i in range(25)]

    def test_no_duplicate_ids(self):
        pool = _games("w", "win", 5)
        pool = pool + [dict(pool[0])]
        selected = select_games(pool, target=25)
        ids = [g["id"] for g in selected]
        assert len(ids) == len(set(ids)) == 5

    def test_empty_pool(self):
        assert select_games([]) == []

"""
Game Selection

Turns a player's raw Lichess games into a bounded, result-balanced work set.

Two pure steps:
    normalize_games  -- find the player's side, rating gap, duration, result
    select_games     -- quota per result, then backfill in priority order

Priority order is longest game first, then smallest rating gap: long,
evenly-matched games carry the most signal about how someone plays.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_QUOTAS = {"win": 10, "loss": 10, "draw": 5}
DEFAULT_TARGET = 25


def _ms_to_datetime(value) -> Optional[datetime]:
    if not isinstance(value, (int, float)):
        return None
    return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)


def _player_id(side: Optional[Dict]) -> Optional[str]:
    user = (side or {}).get("user") or {}
    uid = user.get("id")
    return uid.lower() if isinstance(uid, str) else None


def _determine_result(status: Optional[str], winner: Optional[str], user_color: str) -> str:
    if status == "draw" or not winner:
        return "draw"
    return "win" if winner == user_color else "loss"


def normalize_game(raw: Dict, username: str) -> Optional[Dict]:
    """
    Normalize one raw Lichess game from `username`'s point of view.

    Returns None when the player did not take part in the game.
    """
    if not isinstance(raw, dict) or not raw.get("id"):
        return None

    players = raw.get("players") or {}
    white, black = players.get("white") or {}, players.get("black") or {}
    uname = username.lower().strip()

    if _player_id(white) == uname:
        user_color, me, opponent = "white", white, black
    elif _player_id(black) == uname:
        user_color, me, opponent = "black", black, white
    else:
        return None

    user_rating = me.get("rating")
    opponent_rating = opponent.get("rating")
    rating_diff = (
        abs(user_rating - opponent_rating)
        if isinstance(user_rating, int) and isinstance(opponent_rating, int)
        else 0
    )

    created_at = raw.get("createdAt")
    last_move_at = raw.get("lastMoveAt")
    duration_ms = (
        int(last_move_at - created_at)
        if isinstance(created_at, (int, float)) and isinstance(last_move_at, (int, float))
        else 0
    )

    return {
        "id": str(raw["id"]),
        "rated": raw.get("rated"),
        "variant": raw.get("variant"),
        "speed": raw.get("speed"),
        "perf": raw.get("perf"),
        "status": raw.get("status"),
        "winner": raw.get("winner"),
        "players": players,
        "lichess_opening": (raw.get("opening") or {}).get("name"),
        "user_color": user_color,
        "user_rating": user_rating if isinstance(user_rating, int) else None,
        "opponent_rating": opponent_rating if isinstance(opponent_rating, int) else None,
        "rating_diff": rating_diff,
        "duration_ms": duration_ms,
        "played_at": _ms_to_datetime(created_at),
        "last_move_at": _ms_to_datetime(last_move_at),
        "result": _determine_result(raw.get("status"), raw.get("winner"), user_color),
        "raw_payload": raw,
    }


def normalize_games(raw_games: List[Dict], username: str) -> List[Dict]:
    """Normalize and sort into priority order (duration desc, rating gap asc)."""
    games = [g for g in (normalize_game(raw, username) for raw in raw_games) if g is not None]
    skipped = len(raw_games) - len(games)
    if skipped:
        logger.info(f"Dropped {skipped} games where {username} was not a participant")
    games.sort(key=lambda g: (-g["duration_ms"], g["rating_diff"]))
    return games


def select_games(
    games: List[Dict],
    target: int = DEFAULT_TARGET,
    quotas: Optional[Dict[str, int]] = None,
) -> List[Dict]:
    """
    Pick up to `target` games, balanced by result.

    `games` must already be in priority order. Each result category gets up
    to its quota (first in priority order); if that leaves the set short of
    `target`, the remaining games backfill it in priority order. Never pads,
    never returns the same id twice.
    """
    quotas = DEFAULT_QUOTAS if quotas is None else quotas
    selected: List[Dict] = []
    selected_ids = set()

    for category, quota in quotas.items():
        taken = 0
        for game in games:
            if taken >= quota:
                break
            if game.get("result") != category or game["id"] in selected_ids:
                continue
            selected.append(game)
            selected_ids.add(game["id"])
            taken += 1

    for game in games:
        if len(selected) >= target:
            break
        if game["id"] in selected_ids:
            continue
        selected.append(game)
        selected_ids.add(game["id"])

    return selected[:target]

"""
Pipeline kickoff: fetch a player's recent games, pick the work set and
store it as `selected`.

Dispatching the analysis tasks is left to the caller (the Celery task), so
this module stays free of executor concerns.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from gamelens.core.config import settings
from gamelens.models import STATE_SELECTED
from gamelens.services import progress_store
from gamelens.services.game_selection import normalize_games, select_games
from gamelens.services.lichess_service import fetch_player_games

logger = logging.getLogger(__name__)


def selection_quotas() -> Dict[str, int]:
    return {
        "win": settings.SELECTION_QUOTA_WINS,
        "loss": settings.SELECTION_QUOTA_LOSSES,
        "draw": settings.SELECTION_QUOTA_DRAWS,
    }


def start_player_analysis(
    db: Session,
    username: str,
    *,
    fetch_games: Optional[Callable[[str, int, int], List[Dict]]] = None,
    now: Optional[datetime] = None,
) -> List[str]:
    """
    Select and persist the player's work set. Returns the game ids to analyze.

    Re-running is safe: raw fields are refreshed, but games that already
    carry an analysis keep their state and are not returned again.
    """
    username = username.strip()
    player = progress_store.ensure_player(db, username)

    now = now or datetime.now(timezone.utc)
    since_ms = int((now - timedelta(days=settings.LICHESS_LOOKBACK_DAYS)).timestamp() * 1000)
    raw_games = (fetch_games or fetch_player_games)(username, since_ms, settings.LICHESS_MAX_GAMES)

    games = normalize_games(raw_games, username)
    selected = select_games(games, target=settings.SELECTION_TARGET, quotas=selection_quotas())

    to_dispatch = []
    for game in selected:
        fields = {k: v for k, v in game.items() if k != "id"}
        existing = progress_store.get_game(db, player.id, game["id"])
        if existing is None or not existing.is_analyzed:
            fields["state"] = existing.state if existing is not None else STATE_SELECTED
            to_dispatch.append(game["id"])
        progress_store.upsert_game(db, player.id, game["id"], fields)
    db.commit()

    logger.info(
        f"Selected {len(selected)} of {len(games)} games for {player.id}; "
        f"{len(to_dispatch)} need analysis"
    )
    return to_dispatch

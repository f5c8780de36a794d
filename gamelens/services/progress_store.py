"""
Progress store: typed reads and writes over the pipeline's tables.

Every write is a field-level upsert so that repeating it yields the same
logical state. Counts are always recomputed from the table; nothing here
caches a counter in process.

Callers own the transaction: these helpers flush but never commit.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from gamelens.models import ANALYZED_STATES, GameRecord, Player, PlayerProfile

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_player_id(username: str) -> str:
    return username.lower().strip()


def _insert_if_missing(db: Session, model, values: Dict[str, Any], key_columns: List[str]) -> None:
    """INSERT ... ON CONFLICT DO NOTHING, so concurrent creators never collide."""
    dialect = db.get_bind().dialect.name
    insert_fn = pg_insert if dialect == "postgresql" else sqlite_insert
    stmt = insert_fn(model).values(**values).on_conflict_do_nothing(index_elements=key_columns)
    db.execute(stmt)


# ---------------------------------------------------------------------------
# Players
# ---------------------------------------------------------------------------

def ensure_player(db: Session, username: str) -> Player:
    player_id = normalize_player_id(username)
    _insert_if_missing(
        db,
        Player,
        {"id": player_id, "username": username.strip(), "baseline_claimed": 0},
        ["id"],
    )
    return db.get(Player, player_id)


def claim_baseline_slot(db: Session, player_id: str, baseline_size: int) -> bool:
    """
    Atomically claim one of the player's `baseline_size` baseline slots.

    The conditional UPDATE is the compare-and-swap: it only matches while
    slots remain, so concurrent claimers can never exceed the limit.
    """
    result = db.execute(
        update(Player)
        .where(Player.id == player_id, Player.baseline_claimed < baseline_size)
        .values(baseline_claimed=Player.baseline_claimed + 1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


# ---------------------------------------------------------------------------
# Games
# ---------------------------------------------------------------------------

def get_game(db: Session, player_id: str, game_id: str) -> Optional[GameRecord]:
    return (
        db.query(GameRecord)
        .filter(GameRecord.player_id == player_id, GameRecord.game_id == game_id)
        .first()
    )


def upsert_game(db: Session, player_id: str, game_id: str, fields: Dict[str, Any]) -> GameRecord:
    """
    Insert or overwrite the given fields of one game, keyed by (player, game).

    Creating a row needs the raw fields (at least `result`); updates may pass
    any subset.
    """
    record = get_game(db, player_id, game_id)
    if record is None:
        _insert_if_missing(
            db,
            GameRecord,
            {"player_id": player_id, "game_id": game_id, **fields},
            ["player_id", "game_id"],
        )
        record = get_game(db, player_id, game_id)
    for key, value in fields.items():
        setattr(record, key, value)
    record.updated_at = _utcnow()
    db.flush()
    return record


def set_game_field_once(db: Session, record: GameRecord, field: str, value: Any) -> bool:
    """
    Write `field` only if the stored value is still NULL. True if this call set it.

    The condition is evaluated against the row, not the loaded object, so
    two sessions holding the same stale record cannot both win. The in-memory
    record is not updated; refresh it afterwards.
    """
    column = getattr(GameRecord, field)
    result = db.execute(
        update(GameRecord)
        .where(GameRecord.id == record.id, column.is_(None))
        .values({field: value})
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _games_query(
    db: Session,
    player_id: str,
    *,
    analyzed: Optional[bool] = None,
    baseline: Optional[bool] = None,
    uncorrelated: Optional[bool] = None,
):
    q = db.query(GameRecord).filter(GameRecord.player_id == player_id)
    if analyzed is True:
        q = q.filter(GameRecord.state.in_(ANALYZED_STATES))
    elif analyzed is False:
        q = q.filter(GameRecord.state.notin_(ANALYZED_STATES))
    if baseline is not None:
        # Unclassified games (NULL) match neither side.
        q = q.filter(GameRecord.is_baseline.is_(baseline))
    if uncorrelated is True:
        q = q.filter(GameRecord.correlated_at.is_(None))
    elif uncorrelated is False:
        q = q.filter(GameRecord.correlated_at.isnot(None))
    return q


def find_games(
    db: Session,
    player_id: str,
    *,
    analyzed: Optional[bool] = None,
    baseline: Optional[bool] = None,
    uncorrelated: Optional[bool] = None,
    order_by: Optional[List[Any]] = None,
    limit: Optional[int] = None,
) -> List[GameRecord]:
    q = _games_query(db, player_id, analyzed=analyzed, baseline=baseline, uncorrelated=uncorrelated)
    q = q.order_by(*(order_by or [GameRecord.analyzed_at.asc(), GameRecord.id.asc()]))
    if limit is not None:
        q = q.limit(limit)
    return q.all()


def count_games(
    db: Session,
    player_id: str,
    *,
    analyzed: Optional[bool] = None,
    baseline: Optional[bool] = None,
    uncorrelated: Optional[bool] = None,
) -> int:
    return _games_query(
        db, player_id, analyzed=analyzed, baseline=baseline, uncorrelated=uncorrelated
    ).count()


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------

def get_profile(db: Session, player_id: str) -> Optional[PlayerProfile]:
    return db.get(PlayerProfile, player_id)


def upsert_profile(db: Session, player_id: str, fields: Dict[str, Any]) -> PlayerProfile:
    """Replace the player's profile content. created_at survives replacement."""
    _insert_if_missing(db, PlayerProfile, {"player_id": player_id, **fields}, ["player_id"])
    profile = get_profile(db, player_id)
    for key, value in fields.items():
        setattr(profile, key, value)
    profile.updated_at = _utcnow()
    db.flush()
    return profile

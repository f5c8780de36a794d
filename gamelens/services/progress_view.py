"""
Poller-facing reads.

Plain dicts built straight from the store, safe to call at any point while
the pipeline runs. A game without analysis is reported with
"analysis": None, never as an error.
"""

from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from gamelens.models import GameRecord, PlayerProfile
from gamelens.services import progress_store

MAX_GAMES = 100


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _analysis_view(game: GameRecord) -> Optional[Dict[str, Any]]:
    if not game.is_analyzed:
        return None
    return {
        "final_analysis": game.final_analysis,
        "detailed_analysis": game.detailed_analysis,
        "opening": game.opening,
        "concepts": game.concepts or [],
        "is_representative": game.is_representative,
        "degraded": game.analysis_degraded,
        "is_baseline": game.is_baseline,
        "is_lookalike": game.is_lookalike,
        "thematic_match": game.thematic_match,
        "matched_baseline_ids": game.matched_baseline_ids or [],
        "thematic_connections": game.thematic_connections,
        "analyzed_at": _iso(game.analyzed_at),
        "correlated_at": _iso(game.correlated_at),
    }


def game_view(game: GameRecord) -> Dict[str, Any]:
    return {
        "game_id": game.game_id,
        "state": game.state,
        "rated": game.rated,
        "variant": game.variant,
        "speed": game.speed,
        "perf": game.perf,
        "status": game.status,
        "winner": game.winner,
        "players": game.players,
        "lichess_opening": game.lichess_opening,
        "user_color": game.user_color,
        "user_rating": game.user_rating,
        "opponent_rating": game.opponent_rating,
        "rating_diff": game.rating_diff,
        "duration_ms": game.duration_ms,
        "result": game.result,
        "played_at": _iso(game.played_at),
        "last_move_at": _iso(game.last_move_at),
        "pgn": game.pgn,
        "analysis": _analysis_view(game),
        "stored_at": _iso(game.stored_at),
        "updated_at": _iso(game.updated_at),
    }


def get_player_progress(db: Session, player_id: str, game_id: Optional[str] = None) -> Dict[str, Any]:
    """All selected games for a player (or one game), most recently updated first."""
    player_id = progress_store.normalize_player_id(player_id)
    q = db.query(GameRecord).filter(GameRecord.player_id == player_id)
    if game_id:
        q = q.filter(GameRecord.game_id == game_id)
    games = q.order_by(GameRecord.updated_at.desc(), GameRecord.id.desc()).limit(MAX_GAMES).all()

    views = [game_view(g) for g in games]
    with_analysis = sum(1 for v in views if v["analysis"] is not None)
    return {
        "games": views,
        "count": len(views),
        "with_analysis": with_analysis,
        "without_analysis": len(views) - with_analysis,
    }


def profile_view(profile: PlayerProfile) -> Dict[str, Any]:
    return {
        "strengths": profile.strengths or [],
        "weaknesses": profile.weaknesses or [],
        "blind_spots": profile.blind_spots or [],
        "learning_areas": profile.learning_areas or [],
        "playing_style": profile.playing_style,
        "rating_assessment": profile.rating_assessment,
        "key_insights": profile.key_insights,
        "degraded": profile.synthesis_degraded,
        "games_analyzed": profile.games_analyzed,
        "wins": profile.wins,
        "losses": profile.losses,
        "draws": profile.draws,
        "average_rating": profile.average_rating,
        "rating_range": [profile.rating_min, profile.rating_max],
        "common_openings": profile.common_openings or [],
        "common_concepts": profile.common_concepts or [],
        "last_game_analyzed_at": _iso(profile.last_game_analyzed_at),
        "synthesized_at": _iso(profile.updated_at),
    }


def get_player_profile_view(db: Session, player_id: str) -> Dict[str, Any]:
    profile = progress_store.get_profile(db, progress_store.normalize_player_id(player_id))
    if profile is None:
        return {"has_analysis": False}
    return {"has_analysis": True, "analysis": profile_view(profile)}

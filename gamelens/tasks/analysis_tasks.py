"""
Celery tasks for game selection and per-game analysis.

start_player_analysis -- fetch, select and store a player's games, then fan
                         out one analyze_game per game
analyze_game          -- the unit of work: PGN -> Gemini -> store ->
                         classify -> signal the trigger coordinator

Transient provider errors are retried by Celery with exponential backoff;
a Lichess 429 is retried after its Retry-After instead. Fatal errors end
the task with an error result and leave the game as it was.
"""
import logging
from typing import Dict

from celery import Task
from sqlalchemy.orm import Session

from gamelens.core.config import settings
from gamelens.core.database import get_db_sync
from gamelens.core.exceptions import FatalTaskError, ProviderRateLimitError, TransientProviderError
from gamelens.services.game_analysis import run_game_analysis
from gamelens.services.pipeline import start_player_analysis
from gamelens.services.progress_store import normalize_player_id
from gamelens.tasks import celery_app
from gamelens.tasks.trigger_tasks import dispatch_game_analyses, on_game_analyzed_task

logger = logging.getLogger(__name__)

# Bounds for honoring a provider's Retry-After.
MIN_RATE_LIMIT_COUNTDOWN_S = 1
MAX_RATE_LIMIT_COUNTDOWN_S = 60 * 60


def _rate_limit_countdown(e: ProviderRateLimitError) -> int:
    retry_after_s = int(e.retry_after_s or 60)
    return max(MIN_RATE_LIMIT_COUNTDOWN_S, min(retry_after_s, MAX_RATE_LIMIT_COUNTDOWN_S))


@celery_app.task(
    name="tasks.start_player_analysis",
    bind=True,
    autoretry_for=(TransientProviderError,),
    retry_backoff=True,
    retry_backoff_max=300,
    max_retries=3,
)
def start_player_analysis_task(self: Task, username: str) -> Dict:
    """
    Kick off the pipeline for a player.

    Args:
        username: Lichess username (any case)

    Returns:
        Dictionary with the selected game ids and how many were dispatched
    """
    db: Session = get_db_sync()
    try:
        try:
            game_ids = start_player_analysis(db, username)
        except ProviderRateLimitError as e:
            db.rollback()
            raise self.retry(exc=e, countdown=_rate_limit_countdown(e))
        except FatalTaskError as e:
            db.rollback()
            logger.error(f"Could not start analysis for {username}: {e}")
            return {"status": "error", "username": username, "error": str(e)}
    finally:
        db.close()

    player_id = normalize_player_id(username)
    dispatched = dispatch_game_analyses(player_id, game_ids)
    return {
        "status": "success",
        "player_id": player_id,
        "game_ids": game_ids,
        "dispatched": dispatched,
    }


@celery_app.task(
    name="tasks.analyze_game",
    bind=True,
    autoretry_for=(TransientProviderError,),
    retry_backoff=True,
    retry_backoff_max=600,
    max_retries=settings.ANALYSIS_MAX_RETRIES,
)
def analyze_game_task(self: Task, player_id: str, game_id: str) -> Dict:
    """
    Analyze one selected game and signal completion.

    Args:
        player_id: lower-cased Lichess username
        game_id: Lichess game id

    Returns:
        Dictionary with analysis results
    """
    db: Session = get_db_sync()
    try:
        try:
            result = run_game_analysis(db, player_id, game_id)
        except ProviderRateLimitError as e:
            db.rollback()
            countdown = _rate_limit_countdown(e)
            logger.warning(f"Rate limited analyzing {game_id}; retrying in {countdown}s")
            raise self.retry(exc=e, countdown=countdown)
        except FatalTaskError as e:
            db.rollback()
            logger.error(f"Analysis of {game_id} for {player_id} failed: {e}")
            return {"status": "error", "game_id": game_id, "error": str(e)}
        except TransientProviderError as e:
            db.rollback()
            logger.warning(
                f"Transient error analyzing {game_id} (attempt {self.request.retries + 1}): {e}"
            )
            raise
    finally:
        db.close()

    if result.get("status") == "success":
        try:
            on_game_analyzed_task.delay(player_id)
        except Exception as e:
            # The analysis is stored; the next completion re-evaluates the gates.
            logger.error(f"Failed to signal completion of {game_id} for {player_id}: {e}")

    return result

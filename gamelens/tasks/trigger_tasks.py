"""
Trigger coordination and fan-out.

on_game_analyzed runs after every completed game analysis. It holds no
state of its own: it recounts from the store and enqueues whichever
downstream stages are eligible right now. Running it twice for the same
completion is harmless.
"""
import logging
from typing import Dict, List

from celery import Task
from sqlalchemy.orm import Session

from gamelens.core.database import get_db_sync
from gamelens.services.trigger_coordinator import evaluate_triggers
from gamelens.tasks import celery_app
from gamelens.tasks.correlation_tasks import correlate_games_task
from gamelens.tasks.synthesis_tasks import synthesize_player_task

logger = logging.getLogger(__name__)


def dispatch_game_analyses(player_id: str, game_ids: List[str]) -> int:
    """Enqueue one analysis task per game. Returns how many were enqueued."""
    from gamelens.tasks.analysis_tasks import analyze_game_task

    dispatched = 0
    for game_id in game_ids:
        try:
            analyze_game_task.delay(player_id, game_id)
            dispatched += 1
        except Exception as e:
            # One failed enqueue must not stop the rest of the batch.
            logger.error(f"Failed to enqueue analysis of {game_id} for {player_id}: {e}")
    logger.info(f"Dispatched {dispatched}/{len(game_ids)} analysis tasks for {player_id}")
    return dispatched


@celery_app.task(name="tasks.on_game_analyzed", bind=True)
def on_game_analyzed_task(self: Task, player_id: str) -> Dict:
    """
    Re-evaluate the synthesis and correlation gates for a player.

    Returns:
        Dictionary with the counts seen and what was dispatched
    """
    db: Session = get_db_sync()
    try:
        decision = evaluate_triggers(db, player_id)
    finally:
        db.close()

    if decision.fire_synthesis:
        logger.info(f"{decision.analyzed} games analyzed for {player_id}; dispatching synthesis")
        synthesize_player_task.delay(player_id)
    if decision.fire_correlation:
        logger.info(
            f"Baseline complete for {player_id} with {decision.pending_correlation} "
            f"games awaiting correlation; dispatching look-alike check"
        )
        correlate_games_task.delay(player_id)

    return {
        "status": "success",
        "player_id": player_id,
        "analyzed": decision.analyzed,
        "baseline_analyzed": decision.baseline_analyzed,
        "pending_correlation": decision.pending_correlation,
        "synthesis_dispatched": decision.fire_synthesis,
        "correlation_dispatched": decision.fire_correlation,
    }

"""
Celery task for look-alike correlation.

The verify step: right after the K-th baseline game commits, a replica or
a concurrent reader may still count fewer. Instead of sleeping in the
worker, the task re-schedules itself a bounded number of times and then
gives up quietly; the next completed analysis re-fires it anyway.
"""
import logging
from typing import Dict

from celery import Task
from sqlalchemy.orm import Session

from gamelens.core.config import settings
from gamelens.core.database import get_db_sync
from gamelens.services.game_correlation import run_correlation
from gamelens.tasks import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(
    name="tasks.correlate_games",
    bind=True,
    max_retries=settings.CORRELATION_VERIFY_ATTEMPTS,
)
def correlate_games_task(self: Task, player_id: str) -> Dict:
    """
    Correlate every analyzed, not yet correlated non-baseline game.

    Args:
        player_id: lower-cased Lichess username

    Returns:
        Dictionary with correlation results
    """
    db: Session = get_db_sync()
    try:
        result = run_correlation(db, player_id)
    except Exception as e:
        db.rollback()
        logger.error(f"Correlation stage failed for {player_id}: {e}", exc_info=True)
        return {"status": "error", "player_id": player_id, "error": str(e)}
    finally:
        db.close()

    if result.get("reason") == "insufficient_baseline":
        attempt = self.request.retries or 0
        if attempt < self.max_retries:
            logger.info(
                f"Baseline for {player_id} not visible yet "
                f"({result['baseline_analyzed']}/{result['required']}); "
                f"re-checking in {settings.CORRELATION_VERIFY_DELAY_S}s"
            )
            raise self.retry(countdown=settings.CORRELATION_VERIFY_DELAY_S)
        logger.info(f"Giving up on correlation for {player_id} after {attempt} re-checks")
        return {"status": "skipped", "reason": "insufficient_baseline", "player_id": player_id}

    logger.info(
        f"Correlation for {player_id}: {result['games_processed']} processed, "
        f"{result['valid_lookalikes']} look-alikes"
    )
    return result

"""
Celery task for player-level synthesis.

Dispatched by the trigger coordinator whenever the analyzed-game count is a
positive multiple of the batch size. The gate is re-checked on entry, so a
late or duplicate dispatch just exits as "skipped".
"""
import logging
from typing import Dict

from celery import Task
from sqlalchemy.orm import Session

from gamelens.core.database import get_db_sync
from gamelens.core.exceptions import FatalTaskError, TransientProviderError
from gamelens.services.player_synthesis import run_synthesis
from gamelens.tasks import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(
    name="tasks.synthesize_player",
    bind=True,
    autoretry_for=(TransientProviderError,),
    retry_backoff=True,
    retry_backoff_max=300,
    max_retries=3,
)
def synthesize_player_task(self: Task, player_id: str) -> Dict:
    """
    Rebuild the player's profile from every analyzed game.

    Args:
        player_id: lower-cased Lichess username

    Returns:
        Dictionary with synthesis results
    """
    db: Session = get_db_sync()
    try:
        return run_synthesis(db, player_id)
    except FatalTaskError as e:
        db.rollback()
        logger.error(f"Synthesis failed for {player_id}: {e}")
        return {"status": "error", "player_id": player_id, "error": str(e)}
    except TransientProviderError:
        db.rollback()
        logger.warning(f"Synthesis for {player_id} hit a transient error (attempt {self.request.retries + 1})")
        raise
    finally:
        db.close()

"""
Trigger Coordinator

Re-evaluates the two downstream gates after every completed game analysis.
It keeps no memory of what it fired before: each call recounts from the
store and reports which stages are currently eligible. Duplicate firings
are absorbed downstream (synthesis replaces, correlation skips games that
already have a verdict).

Gates:
    synthesis   -- analyzed >= batch and analyzed % batch == 0
    correlation -- baseline analyzed >= K and some analyzed non-baseline
                   game has no verdict yet
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from gamelens.core.config import settings
from gamelens.services import progress_store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TriggerDecision:
    analyzed: int
    baseline_analyzed: int
    pending_correlation: int
    fire_synthesis: bool
    fire_correlation: bool


def synthesis_gate(analyzed: int, batch_size: Optional[int] = None) -> bool:
    batch = batch_size or settings.SYNTHESIS_BATCH_SIZE
    return analyzed >= batch and analyzed % batch == 0


def correlation_gate(baseline_analyzed: int, pending: int, baseline_size: Optional[int] = None) -> bool:
    k = baseline_size or settings.BASELINE_SIZE
    return baseline_analyzed >= k and pending > 0


def evaluate_triggers(
    db: Session,
    player_id: str,
    *,
    batch_size: Optional[int] = None,
    baseline_size: Optional[int] = None,
) -> TriggerDecision:
    analyzed = progress_store.count_games(db, player_id, analyzed=True)
    baseline_analyzed = progress_store.count_games(db, player_id, analyzed=True, baseline=True)
    pending = progress_store.count_games(
        db, player_id, analyzed=True, baseline=False, uncorrelated=True
    )

    decision = TriggerDecision(
        analyzed=analyzed,
        baseline_analyzed=baseline_analyzed,
        pending_correlation=pending,
        fire_synthesis=synthesis_gate(analyzed, batch_size),
        fire_correlation=correlation_gate(baseline_analyzed, pending, baseline_size),
    )
    logger.debug(f"Trigger evaluation for {player_id}: {decision}")
    return decision

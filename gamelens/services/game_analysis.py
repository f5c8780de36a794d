"""
Per-Game Analysis

The unit of asynchronous work behind tasks.analyze_game:

    1. fetch PGN (memoized on the row once fetched)
    2. ask Gemini for a structured critique of the player's play
    3. persist the analysis (upsert, same input -> same row)
    4. classify baseline membership (atomic slot claim, same transaction)

Signalling the trigger coordinator is the task's job, not this module's,
so that a dispatch failure can never undo a stored analysis.

Degradation: if Gemini's reply is not the JSON we asked for, the raw text
becomes the short analysis and the game still counts as analyzed.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from sqlalchemy import update as sa_update
from sqlalchemy.orm import Session

from gamelens.core.config import settings
from gamelens.models import (
    GameRecord,
    STATE_CLASSIFIED,
    STATE_DETAIL_FETCHED,
    STATE_SELECTED,
)
from gamelens.schemas import GameAnalysisOutput
from gamelens.services import progress_store
from gamelens.services.lichess_service import fetch_game_pgn
from gamelens.services.oracle import DegradedOutput, OracleOutput, ParsedOutput, infer, parse_oracle_json

logger = logging.getLogger(__name__)


ANALYSIS_PROMPT = """You are reviewing one chess game to coach a single player.

PLAYER: {username} (played {color_title})

GAME (PGN):
{pgn}

Focus only on {username}'s moves and decisions as {color_title}. Identify:
- Weaknesses and mistakes: concrete tactical and positional errors, with move numbers.
- Blind spots: threats, resources or recurring patterns {username} failed to see.
- Learning areas: the specific skills this game shows {username} needs to work on
  (calculation, endgame technique, time management, king safety, pawn structure, ...).
- Critical moments: the decisions that cost the most and what should have been played.

Also judge whether this game is representative of {username}'s normal play. Games that
ended by early abandonment, a disconnect, or a blunder in the first few moves are not.

Respond with ONLY a JSON object, no markdown fences, no commentary:

{{
  "detailedAnalysis": "Thorough critique covering mistakes, blind spots, learning areas and critical moments.",
  "finalAnalysis": "3-5 plain sentences in markdown (use **bold** for the key weaknesses) summarizing what {username} most needs to improve.",
  "opening": "Exact opening name with variation, e.g. 'Sicilian Defense: Najdorf Variation'.",
  "concepts": ["Exactly 5 specific chess concepts that mattered in this game, e.g. 'Back rank weakness', 'Isolated queen pawn structure'. No opening names, no generic labels like 'tactics' or 'endgame'."],
  "isRepresentative": true
}}"""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_analysis_prompt(pgn: str, username: str, user_color: Optional[str]) -> str:
    color_title = (user_color or "white").capitalize()
    return ANALYSIS_PROMPT.format(pgn=pgn.strip(), username=username, color_title=color_title)


def analyze_pgn(
    pgn: str,
    username: str,
    user_color: Optional[str],
    client: Optional[Any] = None,
) -> OracleOutput:
    """Run the oracle on one game. Raises only on transport/config failure."""
    text = infer(build_analysis_prompt(pgn, username, user_color), client=client)
    return parse_oracle_json(text, GameAnalysisOutput)


def analysis_fields(output: OracleOutput) -> Dict[str, Any]:
    """Map an oracle result onto GameRecord analysis columns."""
    if isinstance(output, ParsedOutput):
        parsed: GameAnalysisOutput = output.fields
        final = parsed.final_analysis or parsed.detailed_analysis or output.raw_text
        return {
            "final_analysis": final,
            "detailed_analysis": parsed.detailed_analysis,
            "opening": parsed.opening,
            "concepts": parsed.concepts,
            "is_representative": parsed.is_representative,
            "analysis_degraded": False,
        }

    degraded: DegradedOutput = output
    return {
        "final_analysis": degraded.raw_text.strip() or "Analysis unavailable for this game.",
        "detailed_analysis": None,
        "opening": None,
        "concepts": [],
        "is_representative": True,
        "analysis_degraded": True,
    }


def ensure_game_detail(
    db: Session,
    record: GameRecord,
    fetch_pgn: Optional[Callable[[str], str]] = None,
) -> str:
    """
    Return the game's PGN, fetching and storing it on first use.

    A retried task finds the PGN already on the row and skips the provider.
    Raises the provider's typed errors unchanged.
    """
    if record.pgn:
        return record.pgn

    pgn = (fetch_pgn or fetch_game_pgn)(record.game_id)
    fields: Dict[str, Any] = {"pgn": pgn}
    if record.state == STATE_SELECTED:
        fields["state"] = STATE_DETAIL_FETCHED
    progress_store.upsert_game(db, record.player_id, record.game_id, fields)
    db.commit()
    return pgn


def record_analysis(
    db: Session,
    record: GameRecord,
    fields: Dict[str, Any],
    baseline_size: Optional[int] = None,
) -> GameRecord:
    """
    Persist analysis fields and classify baseline membership in one transaction.

    analyzed_at and is_baseline are set once; a re-run keeps them, so the
    stored state only depends on the analysis input. Both are decided
    against the stored row, never the record loaded at task start: a
    duplicate delivery of the same game may still hold is_baseline=None.
    """
    baseline_size = baseline_size if baseline_size is not None else settings.BASELINE_SIZE

    update = dict(fields)
    update["state"] = STATE_CLASSIFIED
    record = progress_store.upsert_game(db, record.player_id, record.game_id, update)

    progress_store.set_game_field_once(db, record, "analyzed_at", _utcnow())
    # Whoever flips is_baseline off NULL owns the classification and may claim a slot.
    if progress_store.set_game_field_once(db, record, "is_baseline", False):
        if progress_store.claim_baseline_slot(db, record.player_id, baseline_size):
            db.execute(
                sa_update(GameRecord)
                .where(GameRecord.id == record.id)
                .values(is_baseline=True)
                .execution_options(synchronize_session=False)
            )
    db.refresh(record)

    db.commit()
    return record


def run_game_analysis(
    db: Session,
    player_id: str,
    game_id: str,
    *,
    client: Optional[Any] = None,
    fetch_pgn: Optional[Callable[[str], str]] = None,
    baseline_size: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Analyze one selected game end to end (steps 1-4 above).

    Returns a result dict; raises FatalTaskError / TransientProviderError
    subclasses for the task layer to act on.
    """
    record = progress_store.get_game(db, player_id, game_id)
    if record is None:
        return {"status": "error", "game_id": game_id, "error": "game not selected"}

    player = progress_store.ensure_player(db, player_id)
    pgn = ensure_game_detail(db, record, fetch_pgn=fetch_pgn)

    output = analyze_pgn(pgn, player.username, record.user_color, client=client)
    fields = analysis_fields(output)
    if fields["analysis_degraded"]:
        logger.warning(f"Degraded analysis stored for game {game_id} ({player_id})")

    record = record_analysis(db, record, fields, baseline_size=baseline_size)
    logger.info(
        f"Analyzed game {game_id} for {player_id} "
        f"(baseline={record.is_baseline}, degraded={fields['analysis_degraded']})"
    )
    return {
        "status": "success",
        "game_id": game_id,
        "is_baseline": bool(record.is_baseline),
        "degraded": fields["analysis_degraded"],
    }

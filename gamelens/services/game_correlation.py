"""
Look-alike Correlation

Compares every analyzed non-baseline game against the player's baseline
games (the first K to finish analysis) and the synthesized profile, and
records whether the game repeats a baseline theme.

Every candidate ends with a verdict, even when Gemini fails: an
unprocessed candidate would keep the correlation gate open and re-trigger
this stage forever. Candidates are independent; one failing never stops
the rest.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from gamelens.core.config import settings
from gamelens.core.exceptions import ConfigurationError
from gamelens.models import GameRecord, PlayerProfile
from gamelens.schemas import CorrelationOutput
from gamelens.services import progress_store
from gamelens.services.oracle import ParsedOutput, get_gemini_client, infer, parse_oracle_json

logger = logging.getLogger(__name__)

FALLBACK_RATIONALE = "Unable to analyze game due to missing data or API error"


CORRELATION_PROMPT = """You are checking whether a chess game repeats themes from a player's earlier games.

PLAYER: {username}

PLAYER PROFILE:
- Common concepts: {concepts}
- Strengths: {strengths}
- Weaknesses: {weaknesses}
- Blind spots: {blind_spots}

BASELINE GAMES (the player's first analyzed games):
{baseline}

GAME TO CHECK:
- Game ID: {game_id}
- Opening: {opening}
- Concepts: {game_concepts}
- Result: {result}
- Analysis: {analysis}

A game is a look-alike when it shows the same tactical or positional patterns, the same
kind of mistakes or missed opportunities, overlapping concepts, or the strengths,
weaknesses and blind spots described in the profile.

If it IS a look-alike, name the baseline game(s) it resembles and rewrite its analysis so it
reads in the context of those games and the player's recurring patterns.

Respond with ONLY a JSON object, no markdown fences, no commentary:

{{
  "isLookAlike": true or false,
  "thematicMatch": "Why it matches (citing baseline games) or why it does not.",
  "matchedBaselineGameIds": ["Baseline game IDs it most resembles; [] if not a look-alike."],
  "updatedAnalysis": "Contextualized analysis if a look-alike; otherwise the original analysis.",
  "thematicConnections": "The concrete concepts or patterns linking it to the baseline games; empty if none."
}}"""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _join(values: Optional[List[str]]) -> str:
    return ", ".join(values or []) or "None"


def _format_baseline(games: List[GameRecord]) -> str:
    blocks = []
    for i, g in enumerate(games, start=1):
        blocks.append(
            f"Baseline game {i} (ID: {g.game_id}):\n"
            f"- Opening: {g.opening or 'Unknown'}\n"
            f"- Concepts: {_join(g.concepts)}\n"
            f"- Result: {g.result}\n"
            f"- Analysis: {g.final_analysis or ''}"
        )
    return "\n---\n".join(blocks)


def build_correlation_prompt(
    username: str,
    candidate: GameRecord,
    baseline: List[GameRecord],
    profile: Optional[PlayerProfile],
) -> str:
    return CORRELATION_PROMPT.format(
        username=username,
        concepts=_join(profile.common_concepts if profile else None),
        strengths=_join(profile.strengths if profile else None),
        weaknesses=_join(profile.weaknesses if profile else None),
        blind_spots=_join(profile.blind_spots if profile else None),
        baseline=_format_baseline(baseline),
        game_id=candidate.game_id,
        opening=candidate.opening or "Unknown",
        game_concepts=_join(candidate.concepts),
        result=candidate.result,
        analysis=candidate.final_analysis or "",
    )


def fallback_verdict() -> CorrelationOutput:
    return CorrelationOutput(
        is_lookalike=False,
        thematic_match=FALLBACK_RATIONALE,
        matched_baseline_ids=[],
        updated_analysis="",
        thematic_connections="",
    )


def judge_candidate(
    username: str,
    candidate: GameRecord,
    baseline: List[GameRecord],
    profile: Optional[PlayerProfile],
    client: Optional[Any] = None,
) -> CorrelationOutput:
    """Ask Gemini for a verdict. Never raises: any failure is a non-match."""
    if not baseline or not candidate.final_analysis:
        logger.warning(f"Missing inputs for look-alike check of game {candidate.game_id}")
        return fallback_verdict()

    try:
        text = infer(build_correlation_prompt(username, candidate, baseline, profile), client=client)
    except Exception as e:
        logger.error(f"Look-alike oracle call failed for game {candidate.game_id}: {e}")
        return fallback_verdict()

    output = parse_oracle_json(text, CorrelationOutput)
    if not isinstance(output, ParsedOutput):
        return fallback_verdict()

    verdict: CorrelationOutput = output.fields
    baseline_ids = {g.game_id for g in baseline}
    matched = list(dict.fromkeys(i for i in verdict.matched_baseline_ids if i in baseline_ids))
    return verdict.model_copy(update={"matched_baseline_ids": matched})


def persist_verdict(db: Session, candidate: GameRecord, verdict: CorrelationOutput) -> GameRecord:
    fields: Dict[str, Any] = {
        "is_lookalike": verdict.is_lookalike,
        "thematic_match": verdict.thematic_match,
        "matched_baseline_ids": verdict.matched_baseline_ids,
        "thematic_connections": verdict.thematic_connections,
        "correlated_at": _utcnow(),
    }
    if verdict.is_lookalike and verdict.updated_analysis.strip():
        fields["final_analysis"] = verdict.updated_analysis
    record = progress_store.upsert_game(db, candidate.player_id, candidate.game_id, fields)
    db.commit()
    return record


def baseline_status(db: Session, player_id: str, baseline_size: Optional[int] = None) -> Dict[str, Any]:
    k = baseline_size or settings.BASELINE_SIZE
    count = progress_store.count_games(db, player_id, analyzed=True, baseline=True)
    return {"baseline_analyzed": count, "required": k, "ready": count >= k}


def run_correlation(
    db: Session,
    player_id: str,
    *,
    client: Optional[Any] = None,
    baseline_size: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Correlate all pending non-baseline games for a player.

    Returns {"status": "skipped", "reason": "insufficient_baseline", ...}
    when the baseline is not visible yet; the caller decides whether to wait
    and retry.
    """
    k = baseline_size or settings.BASELINE_SIZE
    status = baseline_status(db, player_id, k)
    if not status["ready"]:
        return {"status": "skipped", "reason": "insufficient_baseline", **status}

    baseline = progress_store.find_games(db, player_id, analyzed=True, baseline=True, limit=k)
    profile = progress_store.get_profile(db, player_id)
    if profile is None:
        logger.info(f"No synthesized profile for {player_id} yet; comparing against baseline games only")

    candidates = progress_store.find_games(
        db, player_id, analyzed=True, baseline=False, uncorrelated=True
    )
    if not candidates:
        return {"status": "success", "games_processed": 0, "valid_lookalikes": 0, "results": []}

    if client is None:
        try:
            client = get_gemini_client()
        except ConfigurationError as e:
            # Candidates still get a terminal (fallback) verdict below.
            logger.error(f"Look-alike check for {player_id} running without Gemini: {e}")

    player = progress_store.ensure_player(db, player_id)
    logger.info(f"Checking {len(candidates)} non-baseline games for {player_id}")

    results = []
    for candidate in candidates:
        try:
            db.refresh(candidate)
            if candidate.correlated_at is not None:
                results.append({"game_id": candidate.game_id, "success": True, "skipped": True})
                continue

            verdict = judge_candidate(player.username, candidate, baseline, profile, client=client)
            persist_verdict(db, candidate, verdict)
            results.append({
                "game_id": candidate.game_id,
                "success": True,
                "is_lookalike": verdict.is_lookalike,
            })
            logger.info(f"Game {candidate.game_id} for {player_id}: is_lookalike={verdict.is_lookalike}")
        except Exception as e:
            db.rollback()
            logger.error(f"Look-alike processing failed for game {candidate.game_id}: {e}", exc_info=True)
            results.append({"game_id": candidate.game_id, "success": False, "error": str(e)})

    return {
        "status": "success",
        "games_processed": len(results),
        "valid_lookalikes": sum(1 for r in results if r.get("is_lookalike")),
        "results": results,
    }

"""
Player Synthesis

Aggregates every analyzed game for a player into one PlayerProfile.

Qualitative fields come from Gemini; every number (results, ratings,
concept/opening frequencies) is computed here. The profile is replaced
wholesale on each run, so a duplicate or late dispatch can only rewrite
the same kind of document, never append to it.
"""

import logging
import math
import re
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from sqlalchemy.orm import Session

from gamelens.core.config import settings
from gamelens.models import GameRecord
from gamelens.schemas import SynthesisOutput
from gamelens.services import progress_store
from gamelens.services.oracle import OracleOutput, ParsedOutput, infer, parse_oracle_json
from gamelens.services.trigger_coordinator import synthesis_gate

logger = logging.getLogger(__name__)

TOP_CONCEPTS = 10
TOP_OPENINGS = 5
MAX_LIST_ITEMS = 10
DEGRADED_INSIGHT_CHARS = 500

_BULLET = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s*")


SYNTHESIS_PROMPT = """You are building a coaching profile for the chess player {username} from
analyses of {count} of their games.

{games}

Synthesize these into a player profile. Look for patterns that recur across games,
not one-off events.

Respond with ONLY a JSON object, no markdown fences, no commentary:

{{
  "overallStrengths": "What {username} does well consistently, one item per line.",
  "recurringWeaknesses": "Mistakes that show up in several games, one item per line.",
  "blindSpots": "Tactical or positional patterns {username} keeps missing, one item per line.",
  "learningPriorities": "What to work on first, most impactful first, one item per line.",
  "playingStyle": "A short description of {username}'s style and tendencies.",
  "ratingAssessment": "The rating level the quality of play suggests, and why.",
  "keyInsights": "3-5 sentences with the most important takeaways."
}}"""


def _format_game(index: int, game: GameRecord) -> str:
    concepts = ", ".join(game.concepts or []) or "None"
    return (
        f"GAME {index}:\n"
        f"- Result: {game.result}\n"
        f"- Opening: {game.opening or game.lichess_opening or 'Unknown'}\n"
        f"- Speed: {game.speed or 'Unknown'}\n"
        f"- Opponent rating: {game.opponent_rating or 'Unknown'}\n"
        f"- Concepts: {concepts}\n"
        f"- Analysis: {game.final_analysis or game.detailed_analysis or ''}"
    )


def build_synthesis_prompt(username: str, games: List[GameRecord]) -> str:
    body = "\n---\n".join(_format_game(i, g) for i, g in enumerate(games, start=1))
    return SYNTHESIS_PROMPT.format(username=username, count=len(games), games=body)


def split_to_list(value: Union[str, List[str], None]) -> List[str]:
    """Turn prose or a list into at most MAX_LIST_ITEMS clean entries."""
    if not value:
        return []
    if isinstance(value, list):
        items = [v.strip() for v in value if isinstance(v, str) and v.strip()]
        return items[:MAX_LIST_ITEMS]
    items = [_BULLET.sub("", line).strip() for line in value.split("\n")]
    items = [item for item in items if item]
    return (items or [value.strip()])[:MAX_LIST_ITEMS]


def _top(values: List[str], n: int) -> Optional[List[str]]:
    if not values:
        return None
    return [value for value, _ in Counter(values).most_common(n)]


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes.
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def compute_profile_stats(games: List[GameRecord]) -> Dict[str, Any]:
    """Local aggregates over analyzed games. No oracle involvement."""
    results = Counter(g.result for g in games)
    ratings = [g.user_rating for g in games if g.user_rating is not None]
    analyzed_times = [_as_utc(g.analyzed_at) for g in games if g.analyzed_at is not None]

    concepts = [c for g in games for c in (g.concepts or []) if c]
    openings = [g.opening for g in games if g.opening]

    return {
        "games_analyzed": len(games),
        "game_ids": [g.game_id for g in games],
        "wins": results.get("win", 0),
        "losses": results.get("loss", 0),
        "draws": results.get("draw", 0),
        # Half-up rounding, matching how ratings are usually displayed.
        "average_rating": int(math.floor(sum(ratings) / len(ratings) + 0.5)) if ratings else None,
        "rating_min": min(ratings) if ratings else None,
        "rating_max": max(ratings) if ratings else None,
        "common_concepts": _top(concepts, TOP_CONCEPTS),
        "common_openings": _top(openings, TOP_OPENINGS),
        "last_game_analyzed_at": max(analyzed_times) if analyzed_times else None,
    }


def synthesis_fields(output: OracleOutput) -> Dict[str, Any]:
    """Map an oracle result onto PlayerProfile qualitative columns."""
    if not isinstance(output, ParsedOutput):
        return {
            "strengths": [],
            "weaknesses": [],
            "blind_spots": [],
            "learning_areas": [],
            "playing_style": "",
            "rating_assessment": "",
            "key_insights": output.raw_text[:DEGRADED_INSIGHT_CHARS],
            "detailed_analysis": "",
            "synthesis_degraded": True,
        }

    s: SynthesisOutput = output.fields

    def _as_text(value: Union[str, List[str]]) -> str:
        return "\n".join(value) if isinstance(value, list) else value

    sections = [
        _as_text(s.overall_strengths),
        _as_text(s.recurring_weaknesses),
        _as_text(s.blind_spots),
        _as_text(s.learning_priorities),
        s.playing_style,
        s.rating_assessment,
    ]
    return {
        "strengths": split_to_list(s.overall_strengths),
        "weaknesses": split_to_list(s.recurring_weaknesses),
        "blind_spots": split_to_list(s.blind_spots),
        "learning_areas": split_to_list(s.learning_priorities),
        "playing_style": s.playing_style,
        "rating_assessment": s.rating_assessment,
        "key_insights": s.key_insights,
        "detailed_analysis": "\n\n".join(sections),
        "synthesis_degraded": False,
    }


def run_synthesis(
    db: Session,
    player_id: str,
    *,
    client: Optional[Any] = None,
    batch_size: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Re-check the gate, then synthesize and replace the player's profile.

    Exits with a "skipped" result (no writes) when the gate no longer holds.
    """
    batch = batch_size or settings.SYNTHESIS_BATCH_SIZE
    games = progress_store.find_games(db, player_id, analyzed=True)
    count = len(games)

    if count < batch:
        logger.info(f"Only {count} analyzed games for {player_id}, need at least {batch}. Skipping synthesis.")
        return {"status": "skipped", "reason": "insufficient_games", "games_analyzed": count, "required": batch}
    if not synthesis_gate(count, batch):
        logger.info(f"{count} analyzed games for {player_id} is not a multiple of {batch}. Skipping synthesis.")
        return {"status": "skipped", "reason": "not_multiple_of_batch", "games_analyzed": count}

    player = progress_store.ensure_player(db, player_id)
    text = infer(build_synthesis_prompt(player.username, games), client=client)
    output = parse_oracle_json(text, SynthesisOutput)

    fields = synthesis_fields(output)
    fields.update(compute_profile_stats(games))
    progress_store.upsert_profile(db, player_id, fields)
    db.commit()

    logger.info(
        f"Synthesized profile for {player_id} from {count} games "
        f"(degraded={fields['synthesis_degraded']})"
    )
    return {"status": "success", "player_id": player_id, "games_analyzed": count}

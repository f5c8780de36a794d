"""
Lichess API client.

Two reads:
- fetch_player_games: a player's recent games as NDJSON (the raw item source)
- fetch_game_pgn: one game's PGN (the per-game detail)

Errors are typed so the task layer can decide between retry and give-up:
404 and empty payloads are fatal, 429 / 5xx / network errors are transient.
"""

import json
import logging
from typing import Dict, List, Optional

import requests

from gamelens.core.config import settings
from gamelens.core.exceptions import (
    GameNotFoundError,
    MalformedGameError,
    PlayerNotFoundError,
    ProviderRateLimitError,
    TransientProviderError,
)

logger = logging.getLogger(__name__)

# Lichess asks clients to wait a full minute after a 429.
DEFAULT_RETRY_AFTER_S = 60


def _retry_after(response: requests.Response) -> int:
    try:
        return int(response.headers.get("Retry-After", DEFAULT_RETRY_AFTER_S))
    except (TypeError, ValueError):
        return DEFAULT_RETRY_AFTER_S


def _get(url: str, *, accept: str, params: Optional[Dict] = None) -> requests.Response:
    try:
        return requests.get(
            url,
            headers={"Accept": accept},
            params=params,
            timeout=settings.EXTERNAL_API_TIMEOUT,
        )
    except requests.exceptions.RequestException as e:
        raise TransientProviderError(f"Lichess request failed for {url}: {e}") from e


def _raise_for_transient(response: requests.Response, what: str) -> None:
    if response.status_code == 429:
        retry_after = _retry_after(response)
        raise ProviderRateLimitError(
            f"429 Rate limited fetching {what} (Retry-After {retry_after}s)",
            retry_after_s=retry_after,
        )
    if response.status_code >= 500:
        raise TransientProviderError(f"Lichess {response.status_code} fetching {what}")


def parse_ndjson(text: str) -> List[Dict]:
    """Parse newline-delimited JSON, skipping blank and unparseable lines."""
    games = []
    for line in text.strip().split("\n"):
        if not line.strip():
            continue
        try:
            obj = json.loads(line)
        except json.JSONDecodeError:
            logger.warning(f"Skipping malformed NDJSON line: {line[:80]!r}")
            continue
        if isinstance(obj, dict):
            games.append(obj)
    return games


def fetch_player_games(username: str, since_ms: int, max_games: int) -> List[Dict]:
    """
    Fetch a player's games played since `since_ms` (epoch millis), newest first.

    Raises:
        PlayerNotFoundError: Lichess returned 404 for the username
        ProviderRateLimitError / TransientProviderError: retryable failures
    """
    url = f"{settings.LICHESS_API_BASE}/api/games/user/{username}"
    response = _get(
        url,
        accept="application/x-ndjson",
        params={"since": since_ms, "max": max_games},
    )

    if response.status_code == 404:
        raise PlayerNotFoundError(username)
    _raise_for_transient(response, f"games for {username}")
    if not response.ok:
        raise TransientProviderError(f"Lichess {response.status_code} fetching games for {username}")

    games = parse_ndjson(response.text)
    logger.info(f"Fetched {len(games)} games for {username} from Lichess")
    return games


def fetch_game_pgn(game_id: str) -> str:
    """
    Fetch the PGN for one game.

    Raises:
        GameNotFoundError: 404
        MalformedGameError: 2xx with an empty body, or another 4xx
        ProviderRateLimitError / TransientProviderError: retryable failures
    """
    url = f"{settings.LICHESS_API_BASE}/game/export/{game_id}.pgn"
    response = _get(url, accept="application/x-chess-pgn")

    if response.status_code == 404:
        raise GameNotFoundError(game_id)
    _raise_for_transient(response, f"PGN for {game_id}")
    if not response.ok:
        raise MalformedGameError(f"Lichess {response.status_code} fetching PGN for {game_id}")

    pgn = response.text or ""
    if not pgn.strip():
        raise MalformedGameError(f"Empty PGN for game {game_id}")
    return pgn

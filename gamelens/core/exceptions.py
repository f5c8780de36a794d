"""
Custom exception classes for the analysis pipeline.

Two families matter to the task layer:
- FatalTaskError: stop this game's task, no retry.
- TransientProviderError: let Celery retry with backoff.
"""
from typing import Optional


class GameLensError(Exception):
    """Base exception for the pipeline."""


class FatalTaskError(GameLensError):
    """Item-scoped failure that retrying cannot fix."""


class ConfigurationError(FatalTaskError):
    """Required configuration (API key, etc.) is missing."""


class GameNotFoundError(FatalTaskError):
    """Provider has no record of the game."""

    def __init__(self, game_id: str):
        super().__init__(f"Game not found: {game_id}")
        self.game_id = game_id


class PlayerNotFoundError(FatalTaskError):
    """Provider has no record of the player."""

    def __init__(self, username: str):
        super().__init__(f"Player not found: {username}")
        self.username = username


class MalformedGameError(FatalTaskError):
    """Provider returned an empty or unusable payload."""


class TransientProviderError(GameLensError):
    """Rate limits, network errors and 5xx responses."""

    def __init__(self, message: str, *, retry_after_s: Optional[int] = None):
        super().__init__(message)
        self.retry_after_s = int(retry_after_s) if retry_after_s is not None else None


class ProviderRateLimitError(TransientProviderError):
    """429 from the game provider."""

    def __init__(self, message: str, *, retry_after_s: int):
        super().__init__(message, retry_after_s=retry_after_s)


class OracleUnavailableError(TransientProviderError):
    """The text-generation service could not be reached or errored."""

"""
Gemini oracle adapter.

Submits a prompt, returns free text, and turns that text into a tagged
variant the callers can branch on:

    ParsedOutput(fields=<pydantic model>)   -- JSON parsed and validated
    DegradedOutput(raw_text, error)         -- anything else

Transport failures raise OracleUnavailableError (transient, retried by the
task layer). Malformed content never raises.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Generic, Optional, Type, TypeVar, Union

from google import genai
from google.genai import types as genai_types
from pydantic import BaseModel, ValidationError

from gamelens.core.config import settings
from gamelens.core.exceptions import ConfigurationError, OracleUnavailableError

logger = logging.getLogger(__name__)

ORACLE_TEMPERATURE = 0.4

T = TypeVar("T", bound=BaseModel)

_FENCE_OPEN = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\s*```$")


@dataclass(frozen=True)
class ParsedOutput(Generic[T]):
    fields: T
    raw_text: str


@dataclass(frozen=True)
class DegradedOutput:
    raw_text: str
    error: str


OracleOutput = Union[ParsedOutput, DegradedOutput]


def get_gemini_client():
    """Build a Gemini client from settings. Missing key is fatal."""
    api_key = settings.GOOGLE_AI_API_KEY
    if not api_key or not api_key.strip():
        raise ConfigurationError("GOOGLE_AI_API_KEY is not set")
    return genai.Client(api_key=api_key)


def infer(prompt: str, client: Optional[Any] = None, model: Optional[str] = None) -> str:
    """
    Send one prompt to Gemini and return the response text ("" if empty).

    Supports both real Gemini clients and mock clients (for testing).
    """
    if client is None:
        client = get_gemini_client()

    try:
        response = client.models.generate_content(
            model=model or settings.GEMINI_MODEL,
            contents=prompt,
            config=genai_types.GenerateContentConfig(temperature=ORACLE_TEMPERATURE),
        )
    except Exception as e:
        raise OracleUnavailableError(f"Gemini request failed: {type(e).__name__}: {e}") from e

    text = getattr(response, "text", None)
    if not isinstance(text, str):
        return ""
    return text


def strip_code_fences(text: str) -> str:
    """Remove a leading ```json / ``` fence and its closing fence."""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = _FENCE_OPEN.sub("", cleaned)
        cleaned = _FENCE_CLOSE.sub("", cleaned)
    return cleaned.strip()


def _load_json_object(text: str) -> dict:
    cleaned = strip_code_fences(text)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        # Prose around the object: try the outermost braces.
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start == -1 or end <= start:
            raise
        data = json.loads(cleaned[start:end + 1])
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    return data


def parse_oracle_json(text: Optional[str], schema: Type[T]) -> OracleOutput:
    """Parse oracle text against `schema`. Never raises."""
    raw = text or ""
    if not raw.strip():
        return DegradedOutput(raw_text=raw, error="empty response")
    try:
        data = _load_json_object(raw)
        return ParsedOutput(fields=schema.model_validate(data), raw_text=raw)
    except (json.JSONDecodeError, ValueError, ValidationError) as e:
        logger.warning(f"Oracle output did not match {schema.__name__}: {e}")
        return DegradedOutput(raw_text=raw, error=str(e))

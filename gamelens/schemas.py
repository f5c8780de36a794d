"""
Pydantic contracts for oracle (Gemini) output.

The oracle gives no format guarantee. These models are deliberately lax
about shape (missing keys get defaults, stray types are coerced) and strict
only where a wrong type would corrupt stored data.
"""
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, List, Union

MAX_CONCEPTS = 5


def _clean_str_list(value) -> List[str]:
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


class GameAnalysisOutput(BaseModel):
    """Per-game analysis as requested by the analysis prompt."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    final_analysis: Optional[str] = Field(default=None, alias="finalAnalysis")
    detailed_analysis: Optional[str] = Field(default=None, alias="detailedAnalysis")
    opening: Optional[str] = None
    concepts: List[str] = Field(default_factory=list)
    is_representative: bool = Field(default=True, alias="isRepresentative")

    @field_validator("concepts", mode="before")
    @classmethod
    def _trim_concepts(cls, v):
        return _clean_str_list(v)[:MAX_CONCEPTS]

    @field_validator("is_representative", mode="before")
    @classmethod
    def _conservative_representative(cls, v):
        # Anything but an explicit boolean keeps the game in play.
        return v if isinstance(v, bool) else True

    @field_validator("opening", mode="before")
    @classmethod
    def _blank_opening(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v


class SynthesisOutput(BaseModel):
    """Player-level synthesis. Each field may come back as prose or a list."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    overall_strengths: Union[str, List[str]] = Field(default="", alias="overallStrengths")
    recurring_weaknesses: Union[str, List[str]] = Field(default="", alias="recurringWeaknesses")
    blind_spots: Union[str, List[str]] = Field(default="", alias="blindSpots")
    learning_priorities: Union[str, List[str]] = Field(default="", alias="learningPriorities")
    playing_style: str = Field(default="", alias="playingStyle")
    rating_assessment: str = Field(default="", alias="ratingAssessment")
    key_insights: str = Field(default="", alias="keyInsights")

    @field_validator(
        "overall_strengths", "recurring_weaknesses", "blind_spots", "learning_priorities",
        mode="before",
    )
    @classmethod
    def _none_to_empty(cls, v):
        if v is None:
            return ""
        if isinstance(v, list):
            return _clean_str_list(v)
        return v

    @field_validator("playing_style", "rating_assessment", "key_insights", mode="before")
    @classmethod
    def _flatten_text(cls, v):
        if v is None:
            return ""
        if isinstance(v, list):
            return "\n".join(_clean_str_list(v))
        return v


class CorrelationOutput(BaseModel):
    """Look-alike verdict for one non-baseline game."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    is_lookalike: bool = Field(default=False, alias="isLookAlike")
    thematic_match: str = Field(default="", alias="thematicMatch")
    matched_baseline_ids: List[str] = Field(default_factory=list, alias="matchedBaselineGameIds")
    updated_analysis: str = Field(default="", alias="updatedAnalysis")
    thematic_connections: str = Field(default="", alias="thematicConnections")

    @field_validator("is_lookalike", mode="before")
    @classmethod
    def _strict_true(cls, v):
        # Only a literal JSON true counts as a match.
        return v is True

    @field_validator("matched_baseline_ids", mode="before")
    @classmethod
    def _clean_ids(cls, v):
        return _clean_str_list(v)

    @field_validator("thematic_match", "updated_analysis", "thematic_connections", mode="before")
    @classmethod
    def _text_or_empty(cls, v):
        return v if isinstance(v, str) else ""

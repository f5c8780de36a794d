from sqlalchemy import Column, Integer, BigInteger, Boolean, DateTime, ForeignKey, Text, String, Index, UniqueConstraint, JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from gamelens.core.database import Base

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")

# Game lifecycle states. "Analyzed" for gating purposes means either of the
# last two: analysis fields are present. The analysis write stores
# "classified" directly, in the same transaction as the baseline decision,
# so "analyzed" is never committed by this code; it is only matched.
STATE_SELECTED = "selected"
STATE_DETAIL_FETCHED = "detail-fetched"
STATE_ANALYZED = "analyzed"
STATE_CLASSIFIED = "classified"
ANALYZED_STATES = (STATE_ANALYZED, STATE_CLASSIFIED)


class Player(Base):
    """
    One Lichess player whose games are analyzed in aggregate.

    baseline_claimed is the store-level counter for baseline slots. It is
    only ever changed by a conditional increment (see
    progress_store.claim_baseline_slot), which is what keeps baseline
    membership at exactly BASELINE_SIZE under concurrent task completions.
    """
    __tablename__ = "player"

    id = Column(Text, primary_key=True)  # lower-cased username
    username = Column(Text, nullable=False)
    baseline_claimed = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class GameRecord(Base):
    """
    A selected game and everything the pipeline learned about it.

    One row per (player, game). Rows are never deleted; every writer
    overwrites fields in place.
    """
    __tablename__ = "game_record"

    id = Column(Integer, primary_key=True, autoincrement=True)
    player_id = Column(Text, ForeignKey("player.id"), nullable=False, index=True)
    game_id = Column(String(32), nullable=False)

    # --- Raw game metadata (from Lichess, normalized at selection) ---
    rated = Column(Boolean, nullable=True)
    variant = Column(Text, nullable=True)
    speed = Column(Text, nullable=True)
    perf = Column(Text, nullable=True)
    status = Column(Text, nullable=True)
    winner = Column(Text, nullable=True)  # 'white' | 'black' | None
    players = Column(JSONType, nullable=True)
    lichess_opening = Column(Text, nullable=True)
    user_color = Column(Text, nullable=True)  # 'white' | 'black'
    user_rating = Column(Integer, nullable=True)
    opponent_rating = Column(Integer, nullable=True)
    rating_diff = Column(Integer, nullable=False, default=0)
    duration_ms = Column(BigInteger, nullable=False, default=0)
    played_at = Column(DateTime(timezone=True), nullable=True)
    last_move_at = Column(DateTime(timezone=True), nullable=True)
    result = Column(Text, nullable=False)  # 'win' | 'loss' | 'draw'
    raw_payload = Column(JSONType, nullable=True)

    state = Column(Text, nullable=False, default=STATE_SELECTED)
    pgn = Column(Text, nullable=True)

    # --- Per-game AI analysis ---
    final_analysis = Column(Text, nullable=True)  # short summary (markdown)
    detailed_analysis = Column(Text, nullable=True)
    opening = Column(Text, nullable=True)  # AI-named opening (primary tag)
    concepts = Column(JSONType, nullable=True)  # up to 5 secondary tags
    is_representative = Column(Boolean, nullable=True)
    analysis_degraded = Column(Boolean, nullable=False, default=False)
    analyzed_at = Column(DateTime(timezone=True), nullable=True)

    # Set once at classification; NULL until then.
    is_baseline = Column(Boolean, nullable=True)

    # --- Look-alike correlation (non-baseline games only) ---
    is_lookalike = Column(Boolean, nullable=True)
    matched_baseline_ids = Column(JSONType, nullable=True)
    thematic_match = Column(Text, nullable=True)
    thematic_connections = Column(Text, nullable=True)
    correlated_at = Column(DateTime(timezone=True), nullable=True)

    stored_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("player_id", "game_id", name="uq_game_record_player_game"),
        Index("ix_game_record_player_state", "player_id", "state"),
    )

    @property
    def is_analyzed(self) -> bool:
        return self.state in ANALYZED_STATES


class PlayerProfile(Base):
    """
    Synthesized aggregate for a player. Fully replaced on every synthesis.
    """
    __tablename__ = "player_profile"

    player_id = Column(Text, ForeignKey("player.id"), primary_key=True)

    # --- Qualitative (from the oracle) ---
    strengths = Column(JSONType, nullable=False, default=list)
    weaknesses = Column(JSONType, nullable=False, default=list)
    blind_spots = Column(JSONType, nullable=False, default=list)
    learning_areas = Column(JSONType, nullable=False, default=list)
    playing_style = Column(Text, nullable=True)
    rating_assessment = Column(Text, nullable=True)
    key_insights = Column(Text, nullable=True)
    detailed_analysis = Column(Text, nullable=True)
    synthesis_degraded = Column(Boolean, nullable=False, default=False)

    # --- Quantitative (computed locally) ---
    games_analyzed = Column(Integer, nullable=False, default=0)
    game_ids = Column(JSONType, nullable=False, default=list)
    wins = Column(Integer, nullable=False, default=0)
    losses = Column(Integer, nullable=False, default=0)
    draws = Column(Integer, nullable=False, default=0)
    average_rating = Column(Integer, nullable=True)
    rating_min = Column(Integer, nullable=True)
    rating_max = Column(Integer, nullable=True)
    common_concepts = Column(JSONType, nullable=True)
    common_openings = Column(JSONType, nullable=True)

    last_game_analyzed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

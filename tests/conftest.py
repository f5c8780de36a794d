"""
Pytest configuration and fixtures

Tests run against a throwaway SQLite file. DATABASE_URL must be set before
anything under gamelens is imported, because the engine is built at import
time. The schema is dropped and recreated for every test, so nothing leaks
between tests.
"""
import os
import tempfile

_TEST_DB_DIR = tempfile.mkdtemp(prefix="gamelens-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_DB_DIR, 'gamelens.db')}"
os.environ["CELERY_BROKER_URL"] = "memory://"
os.environ["CELERY_RESULT_BACKEND"] = "cache+memory://"
os.environ["LOG_FORMAT"] = "text"
os.environ["GOOGLE_AI_API_KEY"] = ""

from datetime import datetime, timedelta, timezone  # noqa: E402
from unittest.mock import MagicMock  # noqa: E402

import pytest  # noqa: E402

import gamelens.models  # noqa: E402,F401
from gamelens.core.database import Base, SessionLocal, engine  # noqa: E402
from gamelens.services import progress_store  # noqa: E402

BASE_TIME = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _fresh_schema():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db_session():
    """A plain session on the test database. Code under test commits freely."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


def _gemini_response(text):
    response = MagicMock()
    response.text = text
    return response


@pytest.fixture
def gemini_client():
    """
    Factory for a mock Gemini client.

    gemini_client("...") answers every call with the same text;
    gemini_client("a", "b") answers successive calls in order.
    """
    def _make(*texts):
        client = MagicMock()
        if len(texts) == 1:
            client.models.generate_content.return_value = _gemini_response(texts[0])
        else:
            client.models.generate_content.side_effect = [_gemini_response(t) for t in texts]
        return client

    return _make


@pytest.fixture
def raw_game():
    """Factory for a raw Lichess game dict as returned by the NDJSON export."""
    def _make(
        game_id,
        username="DrNykterstein",
        color="white",
        winner="white",
        status="mate",
        duration_ms=600_000,
        user_rating=2000,
        opponent_rating=2000,
        opening="Sicilian Defense",
        created_at=None,
    ):
        created = created_at if created_at is not None else int(BASE_TIME.timestamp() * 1000)
        me = {"user": {"name": username, "id": username.lower()}, "rating": user_rating}
        opponent = {"user": {"name": "opponent", "id": "opponent"}, "rating": opponent_rating}
        players = {"white": me, "black": opponent} if color == "white" else {"white": opponent, "black": me}
        game = {
            "id": game_id,
            "rated": True,
            "variant": "standard",
            "speed": "rapid",
            "perf": "rapid",
            "createdAt": created,
            "lastMoveAt": created + duration_ms,
            "status": status,
            "players": players,
            "opening": {"eco": "B20", "name": opening, "ply": 2},
        }
        if winner:
            game["winner"] = winner
        return game

    return _make


@pytest.fixture
def seed_game(db_session):
    """
    Factory that stores a GameRecord directly.

    seed_game("id1", result="win", analyzed=True, is_baseline=True) creates an
    analyzed, classified game with analyzed_at spaced by `order`.
    """
    def _make(
        game_id,
        player="DrNykterstein",
        result="win",
        analyzed=False,
        is_baseline=None,
        order=0,
        **fields,
    ):
        player_row = progress_store.ensure_player(db_session, player)
        values = {
            "result": result,
            "user_color": "white",
            "user_rating": 2000,
            "opponent_rating": 1990,
            "rating_diff": 10,
            "duration_ms": 600_000,
            "state": "selected",
        }
        if analyzed:
            values.update({
                "state": "classified" if is_baseline is not None else "analyzed",
                "pgn": "1. e4 e5 2. Nf3 Nc6 *",
                "final_analysis": f"Summary of {game_id}",
                "detailed_analysis": f"Details of {game_id}",
                "opening": "Ruy Lopez",
                "concepts": ["Back rank weakness", "Pawn storm"],
                "is_representative": True,
                "analyzed_at": BASE_TIME + timedelta(minutes=order),
                "is_baseline": is_baseline,
            })
        values.update(fields)
        record = progress_store.upsert_game(db_session, player_row.id, game_id, values)
        if analyzed and is_baseline:
            player_row.baseline_claimed = (player_row.baseline_claimed or 0) + 1
        db_session.commit()
        return record

    return _make

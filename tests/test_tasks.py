"""
Celery task tests.

Tasks are invoked with .run(...) in-process. Downstream .delay calls and
self.retry are monkeypatched, the same way the worker-facing contract is
checked elsewhere: what gets enqueued, with which countdown, and what the
task returns.
"""
import json
from unittest.mock import MagicMock

import pytest
from celery.exceptions import Retry

from gamelens.core.config import settings
from gamelens.core.database import SessionLocal
from gamelens.core.exceptions import (
    GameNotFoundError,
    PlayerNotFoundError,
    ProviderRateLimitError,
    TransientProviderError,
)
from gamelens.services import progress_store
from gamelens.tasks import celery_app
from gamelens.tasks.analysis_tasks import analyze_game_task, start_player_analysis_task
from gamelens.tasks.correlation_tasks import correlate_games_task
from gamelens.tasks.synthesis_tasks import synthesize_player_task
from gamelens.tasks.trigger_tasks import dispatch_game_analyses, on_game_analyzed_task

PID = "drnykterstein"

GOOD_ANALYSIS = json.dumps({
    "finalAnalysis": "Short.",
    "detailedAnalysis": "Long.",
    "opening": "Caro-Kann Defense",
    "concepts": ["Pawn break"],
    "isRepresentative": True,
})


@pytest.fixture
def patch_gemini(monkeypatch, gemini_client):
    """Make every oracle call inside tasks use a mock client."""
    def _patch(*texts):
        client = gemini_client(*texts)
        monkeypatch.setattr("gamelens.services.oracle.get_gemini_client", lambda: client)
        monkeypatch.setattr("gamelens.services.game_correlation.get_gemini_client", lambda: client)
        return client

    return _patch


@pytest.fixture
def patch_retry(monkeypatch):
    """Replace task.retry with a recorder that raises celery's Retry."""
    def _patch(task):
        called = {"countdown": None, "count": 0}

        def _retry(*args, **kwargs):
            called["countdown"] = kwargs.get("countdown")
            called["count"] += 1
            raise Retry("retried", None, None)

        monkeypatch.setattr(task, "retry", _retry)
        return called

    return _patch


def _state(game_id):
    db = SessionLocal()
    try:
        return progress_store.get_game(db, PID, game_id)
    finally:
        db.close()


class TestCeleryConfig:
    def test_tasks_are_registered(self):
        for name in (
            "tasks.start_player_analysis",
            "tasks.analyze_game",
            "tasks.on_game_analyzed",
            "tasks.synthesize_player",
            "tasks.correlate_games",
        ):
            assert name in celery_app.tasks

    def test_redelivery_on_worker_loss(self):
        assert celery_app.conf.task_acks_late is True
        assert celery_app.conf.task_reject_on_worker_lost is True

    def test_analysis_retry_policy(self):
        assert analyze_game_task.max_retries == settings.ANALYSIS_MAX_RETRIES
        assert TransientProviderError in analyze_game_task.autoretry_for
        assert correlate_games_task.max_retries == settings.CORRELATION_VERIFY_ATTEMPTS


class TestAnalyzeGameTask:
    def test_success_signals_coordinator(self, monkeypatch, seed_game, patch_gemini):
        seed_game("g1")
        patch_gemini(GOOD_ANALYSIS)
        monkeypatch.setattr("gamelens.services.game_analysis.fetch_game_pgn", lambda game_id: "1. e4 *")
        delay = MagicMock()
        monkeypatch.setattr(on_game_analyzed_task, "delay", delay)

        result = analyze_game_task.run(PID, "g1")

        assert result["status"] == "success"
        assert _state("g1").state == "classified"
        delay.assert_called_once_with(PID)

    def test_signal_failure_does_not_fail_task(self, monkeypatch, seed_game, patch_gemini):
        seed_game("g1")
        patch_gemini(GOOD_ANALYSIS)
        monkeypatch.setattr("gamelens.services.game_analysis.fetch_game_pgn", lambda game_id: "1. e4 *")
        monkeypatch.setattr(on_game_analyzed_task, "delay", MagicMock(side_effect=ConnectionError("broker down")))

        result = analyze_game_task.run(PID, "g1")

        assert result["status"] == "success"
        assert _state("g1").is_analyzed

    def test_fatal_error_returns_error_without_retry(self, monkeypatch, seed_game, patch_gemini, patch_retry):
        seed_game("g1")
        patch_gemini(GOOD_ANALYSIS)

        def _missing(game_id):
            raise GameNotFoundError(game_id)

        monkeypatch.setattr("gamelens.services.game_analysis.fetch_game_pgn", _missing)
        delay = MagicMock()
        monkeypatch.setattr(on_game_analyzed_task, "delay", delay)
        called = patch_retry(analyze_game_task)

        result = analyze_game_task.run(PID, "g1")

        assert result["status"] == "error"
        assert called["count"] == 0
        delay.assert_not_called()
        assert _state("g1").state == "selected"

    def test_missing_api_key_is_fatal(self, monkeypatch, seed_game, patch_retry):
        seed_game("g1")
        monkeypatch.setattr(settings, "GOOGLE_AI_API_KEY", None)
        monkeypatch.setattr("gamelens.services.game_analysis.fetch_game_pgn", lambda game_id: "1. e4 *")
        monkeypatch.setattr(on_game_analyzed_task, "delay", MagicMock())
        called = patch_retry(analyze_game_task)

        result = analyze_game_task.run(PID, "g1")

        assert result["status"] == "error"
        assert "GOOGLE_AI_API_KEY" in result["error"]
        assert called["count"] == 0

    def test_rate_limit_retries_after_provider_delay(self, monkeypatch, seed_game, patch_retry):
        seed_game("g1")

        def _limited(game_id):
            raise ProviderRateLimitError("429", retry_after_s=120)

        monkeypatch.setattr("gamelens.services.game_analysis.fetch_game_pgn", _limited)
        called = patch_retry(analyze_game_task)

        with pytest.raises(Retry):
            analyze_game_task.run(PID, "g1")
        assert called["countdown"] == 120

    def test_oracle_outage_is_retried(self, monkeypatch, seed_game, patch_retry):
        seed_game("g1")
        client = MagicMock()
        client.models.generate_content.side_effect = RuntimeError("503")
        monkeypatch.setattr("gamelens.services.oracle.get_gemini_client", lambda: client)
        monkeypatch.setattr("gamelens.services.game_analysis.fetch_game_pgn", lambda game_id: "1. e4 *")
        called = patch_retry(analyze_game_task)

        with pytest.raises(Retry):
            analyze_game_task.run(PID, "g1")
        assert called["count"] == 1
        # The fetched PGN survives for the retry.
        assert _state("g1").pgn == "1. e4 *"


class TestStartPlayerAnalysisTask:
    def test_fans_out_selected_games(self, monkeypatch, raw_game):
        games = [raw_game(f"g{i}") for i in range(4)]
        monkeypatch.setattr("gamelens.services.pipeline.fetch_player_games", lambda *a: games)
        delay = MagicMock()
        monkeypatch.setattr(analyze_game_task, "delay", delay)

        result = start_player_analysis_task.run("DrNykterstein")

        assert result["status"] == "success"
        assert result["dispatched"] == 4
        assert sorted(c.args for c in delay.call_args_list) == [(PID, f"g{i}") for i in range(4)]

    def test_unknown_player(self, monkeypatch):
        def _missing(*a):
            raise PlayerNotFoundError("ghost")

        monkeypatch.setattr("gamelens.services.pipeline.fetch_player_games", _missing)
        result = start_player_analysis_task.run("ghost")
        assert result["status"] == "error"


class TestDispatchGameAnalyses:
    def test_one_failed_enqueue_does_not_stop_the_rest(self, monkeypatch):
        delay = MagicMock(side_effect=[None, ConnectionError("x"), None])
        monkeypatch.setattr(analyze_game_task, "delay", delay)
        assert dispatch_game_analyses(PID, ["a", "b", "c"]) == 2
        assert delay.call_count == 3


class TestOnGameAnalyzedTask:
    def _patch_delays(self, monkeypatch):
        synth, corr = MagicMock(), MagicMock()
        monkeypatch.setattr(synthesize_player_task, "delay", synth)
        monkeypatch.setattr(correlate_games_task, "delay", corr)
        return synth, corr

    def test_dispatches_nothing_below_thresholds(self, monkeypatch, seed_game):
        synth, corr = self._patch_delays(monkeypatch)
        seed_game("g0", analyzed=True, is_baseline=True)

        result = on_game_analyzed_task.run(PID)

        assert result["synthesis_dispatched"] is False
        synth.assert_not_called()
        corr.assert_not_called()

    def test_dispatches_synthesis_at_multiple_of_three(self, monkeypatch, seed_game):
        synth, corr = self._patch_delays(monkeypatch)
        for i in range(3):
            seed_game(f"g{i}", analyzed=True, is_baseline=True, order=i)

        on_game_analyzed_task.run(PID)

        synth.assert_called_once_with(PID)
        corr.assert_not_called()

    def test_dispatches_both(self, monkeypatch, seed_game):
        synth, corr = self._patch_delays(monkeypatch)
        k = settings.BASELINE_SIZE
        for i in range(k):
            seed_game(f"b{i}", analyzed=True, is_baseline=True, order=i)
        n_candidates = 3 - (k % 3) if k % 3 else 3
        for i in range(n_candidates):
            seed_game(f"c{i}", analyzed=True, is_baseline=False, order=k + i)

        result = on_game_analyzed_task.run(PID)

        assert result["analyzed"] % 3 == 0
        synth.assert_called_once_with(PID)
        corr.assert_called_once_with(PID)


class TestSynthesizePlayerTask:
    def test_runs_synthesis(self, seed_game, patch_gemini):
        for i in range(3):
            seed_game(f"g{i}", analyzed=True, is_baseline=True, order=i)
        patch_gemini(json.dumps({"overallStrengths": "Calculation"}))

        result = synthesize_player_task.run(PID)

        assert result["status"] == "success"
        db = SessionLocal()
        try:
            assert progress_store.get_profile(db, PID).strengths == ["Calculation"]
        finally:
            db.close()

    def test_late_dispatch_is_skipped(self, seed_game, patch_gemini):
        for i in range(4):
            seed_game(f"g{i}", analyzed=True, is_baseline=True, order=i)
        client = patch_gemini("{}")

        result = synthesize_player_task.run(PID)

        assert result["status"] == "skipped"
        client.models.generate_content.assert_not_called()


class TestCorrelateGamesTask:
    def test_baseline_not_visible_reschedules(self, seed_game, patch_retry):
        seed_game("b0", analyzed=True, is_baseline=True)
        called = patch_retry(correlate_games_task)

        with pytest.raises(Retry):
            correlate_games_task.run(PID)
        assert called["countdown"] == settings.CORRELATION_VERIFY_DELAY_S

    def test_gives_up_after_bounded_attempts(self, monkeypatch, seed_game, patch_retry):
        seed_game("b0", analyzed=True, is_baseline=True)
        called = patch_retry(correlate_games_task)
        monkeypatch.setattr(correlate_games_task, "max_retries", 0)

        result = correlate_games_task.run(PID)

        assert result == {"status": "skipped", "reason": "insufficient_baseline", "player_id": PID}
        assert called["count"] == 0

    def test_correlates_pending_games(self, seed_game, patch_gemini):
        for i in range(settings.BASELINE_SIZE):
            seed_game(f"b{i}", analyzed=True, is_baseline=True, order=i)
        seed_game("c0", analyzed=True, is_baseline=False, order=50)
        patch_gemini(json.dumps({"isLookAlike": True, "matchedBaselineGameIds": ["b2"]}))

        result = correlate_games_task.run(PID)

        assert result["status"] == "success"
        assert result["valid_lookalikes"] == 1
        assert _state("c0").matched_baseline_ids == ["b2"]

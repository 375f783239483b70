"""CLI smoke tests (click CliRunner, no network)."""

import asyncio
from datetime import datetime, timezone

import pytest
from click.testing import CliRunner

from kasina_timer.cli import _summary, cli
from kasina_timer.controller import CompletionOutcome
from kasina_timer.models import (
    CompletionCause,
    CompletionEvent,
    PersistResult,
    ResolvedSession,
    SaveStatus,
)
from kasina_timer.store import FallbackStore


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    path = tmp_path / "sessions.db"
    monkeypatch.setenv("KASINA_TIMER_DB", str(path))
    # Nothing listens here; any accidental request fails fast
    monkeypatch.setenv("KASINA_TIMER_API_URL", "http://127.0.0.1:9")
    monkeypatch.setenv("KASINA_TIMER_REQUEST_TIMEOUT", "1")
    monkeypatch.setenv("KASINA_TIMER_RETRY_BACKOFF", "0")
    return path


def seed_unsynced(path):
    store = FallbackStore(path)
    session = ResolvedSession(300, "white", datetime(2026, 3, 1, 7, 0, tzinfo=timezone.utc))

    async def seed():
        await store.init()
        await store.put(session, "White (5-minutes)")

    loop = asyncio.new_event_loop()
    try:
        loop.run_until_complete(seed())
    finally:
        loop.close()


class TestPending:
    def test_empty_store(self, db_path):
        result = CliRunner().invoke(cli, ["pending"], obj={})
        assert result.exit_code == 0
        assert "No unsynced sessions." in result.output

    def test_lists_unsynced(self, db_path):
        seed_unsynced(db_path)
        result = CliRunner().invoke(cli, ["pending"], obj={})
        assert result.exit_code == 0
        assert "White (5-minutes)" in result.output


class TestRecover:
    def test_nothing_to_recover(self, db_path):
        result = CliRunner().invoke(cli, ["recover"], obj={})
        assert result.exit_code == 0
        assert "Nothing to recover." in result.output


class TestRun:
    def test_requires_duration(self, db_path):
        result = CliRunner().invoke(cli, ["run"], obj={})
        assert result.exit_code == 2
        assert "--count-up" in result.output

    def test_count_up_excludes_duration(self, db_path):
        result = CliRunner().invoke(cli, ["run", "--count-up", "--minutes", "5"], obj={})
        assert result.exit_code == 2


class TestSettingsErrors:
    def test_bad_env_reported(self, db_path, monkeypatch):
        monkeypatch.setenv("KASINA_TIMER_REQUEST_TIMEOUT", "soon")
        result = CliRunner().invoke(cli, ["pending"], obj={})
        assert result.exit_code == 1
        assert "KASINA_TIMER_REQUEST_TIMEOUT" in result.output


class TestSummary:
    def event(self, cause=CompletionCause.NATURAL_EXPIRY, elapsed=90):
        return CompletionEvent(cause=cause, elapsed_seconds=elapsed, target_seconds=90)

    def test_saved_shows_exact_duration(self):
        outcome = CompletionOutcome(
            self.event(), 90, PersistResult("k", SaveStatus.SAVED, 1),
        )
        assert _summary(outcome, "white") == "Saved White (2-minutes) session (01:30)."

    def test_too_short(self):
        outcome = CompletionOutcome(self.event(CompletionCause.MANUAL_STOP, 12), 0)
        assert _summary(outcome, "white") == "Session too short to save (12s)."

    def test_failed_save(self):
        outcome = CompletionOutcome(
            self.event(), 90, PersistResult("k", SaveStatus.FAILED, 2, error="timeout"),
        )
        assert _summary(outcome, "white").startswith("Could not save session: timeout.")

    def test_cancelled(self):
        assert _summary(None, "white") == "Session ended."

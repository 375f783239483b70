"""Tests for SessionPersister: idempotency, retry, fallback and recovery.

Uses a temporary SQLite store and an in-memory fake backend that honours
the sessionKey idempotency contract.
"""

import asyncio
import threading
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import aiosqlite
import pytest

from kasina_timer.config import Settings
from kasina_timer.errors import PersistPermanentError, PersistTransientError
from kasina_timer.models import ClockState, ResolvedSession, SaveStatus, TimerConfig
from kasina_timer.persister import MAX_ATTEMPTS, SessionPersister
from kasina_timer.store import FallbackStore


# ── Helpers ───────────────────────────────────────────────────


def run(coro):
    """Run an async function in a fresh event loop."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


class FakeBackend:
    """Session endpoint double. ``failures`` are raised, in order, before succeeding."""

    def __init__(self, failures=None, delay=0.0):
        self.failures = list(failures or [])
        self.delay = delay
        self.calls = []
        self.records = {}
        self._lock = threading.Lock()

    def write(self, payload, timeout):
        with self._lock:
            self.calls.append(payload)
            failure = self.failures.pop(0) if self.failures else None
        if self.delay:
            time.sleep(self.delay)
        if failure is not None:
            raise failure
        with self._lock:
            self.records.setdefault(payload.session_key, payload)
        return {"id": str(len(self.records))}


def make_settings(tmp_path, **overrides):
    values = dict(db_path=tmp_path / "sessions.db", retry_backoff=0, request_timeout=2)
    values.update(overrides)
    return Settings(**values)


def make_persister(tmp_path, backend=None, **overrides):
    settings = make_settings(tmp_path, **overrides)
    persister = SessionPersister(FallbackStore(settings.db_path), backend or FakeBackend(), settings)
    run(persister.init())
    return persister


def make_session(duration=300, kasina="white"):
    return ResolvedSession(
        duration_seconds=duration,
        kasina_type=kasina,
        started_at=datetime(2026, 3, 1, 7, 0, tzinfo=timezone.utc),
    )


# ── Happy path / idempotency ──────────────────────────────────


class TestPersist:
    def test_saves_and_marks_synced(self, tmp_path):
        backend = FakeBackend()
        persister = make_persister(tmp_path, backend)
        session = make_session()

        result = run(persister.persist(session))

        assert result.success
        assert result.attempts == 1
        assert len(backend.calls) == 1
        assert backend.calls[0].kasina_name == "White (5-minutes)"
        record = run(persister.store.get(session.session_key))
        assert record.synced

    def test_second_persist_is_absorbed(self, tmp_path):
        backend = FakeBackend()
        persister = make_persister(tmp_path, backend)
        session = make_session()

        first = run(persister.persist(session))
        second = run(persister.persist(session))

        assert first.success and not first.duplicate
        assert second.success and second.duplicate
        assert len(backend.calls) == 1
        assert len(backend.records) == 1

    def test_concurrent_persist_writes_once(self, tmp_path):
        backend = FakeBackend(delay=0.05)
        persister = make_persister(tmp_path, backend)
        session = make_session()

        async def both():
            return await asyncio.gather(persister.persist(session), persister.persist(session))

        results = run(both())
        assert len(backend.calls) == 1
        assert sorted(r.duplicate for r in results) == [False, True]
        assert run(persister.store.get(session.session_key)).synced

    def test_synced_record_survives_restart(self, tmp_path):
        backend = FakeBackend()
        session = make_session()
        run(make_persister(tmp_path, backend).persist(session))

        restarted = make_persister(tmp_path, backend)
        result = run(restarted.persist(session))

        assert result.duplicate
        assert result.status == SaveStatus.SAVED
        assert len(backend.calls) == 1


# ── Failure handling ──────────────────────────────────────────


class TestFailures:
    def test_transient_failure_retried_once(self, tmp_path):
        backend = FakeBackend(failures=[PersistTransientError("503")])
        persister = make_persister(tmp_path, backend)

        result = run(persister.persist(make_session()))

        assert result.success
        assert result.attempts == 2
        assert len(backend.calls) == 2

    def test_two_transient_failures_give_up(self, tmp_path):
        backend = FakeBackend(failures=[PersistTransientError("503"), PersistTransientError("503 again")])
        persister = make_persister(tmp_path, backend)
        session = make_session()

        result = run(persister.persist(session))

        assert not result.success
        assert result.status == SaveStatus.FAILED
        assert result.attempts == MAX_ATTEMPTS
        assert "503 again" in result.error
        record = run(persister.store.get(session.session_key))
        assert not record.synced
        assert record.attempts == MAX_ATTEMPTS
        assert persister.get_attempt(session.session_key).status == SaveStatus.FAILED

    def test_permanent_failure_not_retried(self, tmp_path):
        backend = FakeBackend(failures=[PersistPermanentError("400")])
        persister = make_persister(tmp_path, backend)
        session = make_session()

        result = run(persister.persist(session))

        assert result.status == SaveStatus.FAILED
        assert len(backend.calls) == 1
        assert not run(persister.store.get(session.session_key)).synced

    def test_timeout_counts_as_failed_attempt(self, tmp_path):
        backend = FakeBackend(delay=0.3)
        persister = make_persister(tmp_path, backend, request_timeout=0.05)

        result = run(persister.persist(make_session()))

        assert result.status == SaveStatus.FAILED
        assert result.attempts == MAX_ATTEMPTS
        assert "no response" in result.error

    def test_unexpected_client_error_does_not_raise(self, tmp_path):
        backend = FakeBackend(failures=[RuntimeError("boom"), RuntimeError("boom")])
        persister = make_persister(tmp_path, backend)

        result = run(persister.persist(make_session()))

        assert result.status == SaveStatus.FAILED

    def test_malformed_session_kept_locally(self, tmp_path):
        backend = FakeBackend()
        persister = make_persister(tmp_path, backend)
        session = make_session(duration=0)

        result = run(persister.persist(session))

        assert result.status == SaveStatus.FAILED
        assert backend.calls == []
        assert run(persister.store.get(session.session_key)) is not None

    def test_failed_key_can_be_retried_later(self, tmp_path):
        backend = FakeBackend(failures=[PersistTransientError("x"), PersistTransientError("x")])
        persister = make_persister(tmp_path, backend)
        session = make_session()

        assert not run(persister.persist(session)).success
        retry = run(persister.persist(session))

        assert retry.success
        assert not retry.duplicate
        assert len(backend.records) == 1


# ── Recovery ──────────────────────────────────────────────────


class TestRecovery:
    def test_unsynced_record_resynced_on_startup(self, tmp_path):
        session = make_session()
        offline = FakeBackend(failures=[PersistTransientError("down"), PersistTransientError("down")])
        run(make_persister(tmp_path, offline).persist(session))

        online = FakeBackend()
        restarted = make_persister(tmp_path, online)
        results = run(restarted.recover())

        assert [r.success for r in results] == [True]
        assert run(restarted.store.get(session.session_key)).synced
        assert len(online.records) == 1

    def test_second_sweep_has_nothing_to_do(self, tmp_path):
        session = make_session()
        offline = FakeBackend(failures=[PersistTransientError("down"), PersistTransientError("down")])
        run(make_persister(tmp_path, offline).persist(session))

        online = FakeBackend()
        restarted = make_persister(tmp_path, online)
        run(restarted.recover())
        assert run(restarted.recover()) == []
        assert len(online.calls) == 1

    def test_still_offline_stays_unsynced(self, tmp_path):
        session = make_session()
        failures = [PersistTransientError("down")] * 4
        backend = FakeBackend(failures=failures)
        persister = make_persister(tmp_path, backend)
        run(persister.persist(session))

        results = run(persister.recover())

        assert [r.success for r in results] == [False]
        assert len(run(persister.pending())) == 1

    def test_fresh_checkpoint_saved_as_abandoned(self, tmp_path):
        backend = FakeBackend()
        persister = make_persister(tmp_path, backend)
        started = datetime(2026, 3, 1, 7, 0, tzinfo=timezone.utc)
        run(persister.checkpoint(
            f"{started.isoformat()}_white", "white", started,
            ClockState(elapsed_seconds=150, running=True), TimerConfig.count_up(),
        ))

        results = run(persister.recover(now=datetime.now(timezone.utc) + timedelta(seconds=10)))

        assert len(results) == 1 and results[0].success
        assert backend.calls[0].duration_seconds == 180
        assert backend.calls[0].session_key == f"{started.isoformat()}_white"
        assert run(persister.store.load_checkpoint()) is None

    def test_stale_checkpoint_discarded(self, tmp_path):
        backend = FakeBackend()
        persister = make_persister(tmp_path, backend)
        started = datetime(2026, 3, 1, 7, 0, tzinfo=timezone.utc)
        run(persister.checkpoint(
            "k", "white", started, ClockState(elapsed_seconds=600, running=True),
            TimerConfig.countdown(1200),
        ))

        results = run(persister.recover(now=datetime.now(timezone.utc) + timedelta(hours=1)))

        assert results == []
        assert backend.calls == []
        assert run(persister.store.load_checkpoint()) is None

    def test_short_checkpoint_not_saved(self, tmp_path):
        backend = FakeBackend()
        persister = make_persister(tmp_path, backend)
        started = datetime(2026, 3, 1, 7, 0, tzinfo=timezone.utc)
        run(persister.checkpoint(
            "k", "white", started, ClockState(elapsed_seconds=10, running=True),
            TimerConfig.countdown(600),
        ))

        assert run(persister.recover()) == []
        assert backend.calls == []
        assert run(persister.store.load_checkpoint()) is None

    def test_checkpoint_and_unsynced_record_resync_once(self, tmp_path):
        """A crash after the fallback write leaves both a checkpoint and a record."""
        started = datetime(2026, 3, 1, 7, 0, tzinfo=timezone.utc)
        key = f"{started.isoformat()}_white"
        offline = FakeBackend(failures=[PersistTransientError("down")] * 2)
        first = make_persister(tmp_path, offline)
        run(first.checkpoint(
            key, "white", started, ClockState(elapsed_seconds=300, running=True),
            TimerConfig.countdown(300),
        ))
        run(first.persist(ResolvedSession(300, "white", started)))

        online = FakeBackend()
        restarted = make_persister(tmp_path, online)
        results = run(restarted.recover())

        assert len(results) == 1
        assert len(online.calls) == 1
        assert run(restarted.pending()) == []

    def test_recorded_duration_wins_over_older_checkpoint(self, tmp_path):
        """The last checkpoint lags the resolved session; the fallback record is authoritative."""
        started = datetime(2026, 3, 1, 7, 0, tzinfo=timezone.utc)
        key = f"{started.isoformat()}_white"
        offline = FakeBackend(failures=[PersistTransientError("down")] * 2)
        first = make_persister(tmp_path, offline)
        run(first.checkpoint(
            key, "white", started, ClockState(elapsed_seconds=120, running=True),
            TimerConfig.count_up(),
        ))
        run(first.persist(ResolvedSession(180, "white", started)))

        online = FakeBackend()
        restarted = make_persister(tmp_path, online)
        results = run(restarted.recover())

        assert [r.success for r in results] == [True]
        assert [p.duration_seconds for p in online.calls] == [180]
        record = run(restarted.store.get(key))
        assert record.synced
        assert record.duration_seconds == 180
        assert run(restarted.store.load_checkpoint()) is None


class TestRecoveryStoreErrors:
    def test_unreadable_checkpoint_skipped(self, tmp_path):
        session = make_session()
        offline = FakeBackend(failures=[PersistTransientError("down")] * 2)
        run(make_persister(tmp_path, offline).persist(session))

        online = FakeBackend()
        persister = make_persister(tmp_path, online)
        persister.store.load_checkpoint = AsyncMock(
            side_effect=aiosqlite.OperationalError("database is locked")
        )

        results = run(persister.recover())

        assert [r.success for r in results] == [True]
        assert len(online.calls) == 1

    def test_locked_database_returns_empty(self, tmp_path):
        backend = FakeBackend()
        persister = make_persister(tmp_path, backend)
        locked = AsyncMock(side_effect=aiosqlite.OperationalError("database is locked"))
        persister.store.load_checkpoint = locked
        persister.store.list_unsynced = locked

        assert run(persister.recover()) == []
        assert backend.calls == []

    def test_checkpoint_clear_failure_does_not_abort(self, tmp_path):
        backend = FakeBackend()
        persister = make_persister(tmp_path, backend)
        started = datetime(2026, 3, 1, 7, 0, tzinfo=timezone.utc)
        run(persister.checkpoint(
            "k", "white", started, ClockState(elapsed_seconds=600, running=True),
            TimerConfig.countdown(1200),
        ))
        persister.store.clear_checkpoint = AsyncMock(
            side_effect=aiosqlite.OperationalError("disk I/O error")
        )

        results = run(persister.recover(now=datetime.now(timezone.utc) + timedelta(hours=1)))

        assert results == []

"""SessionPersister: at-most-one durable write per session key.

Every session is written to the local fallback store before the network
call, so a crash between the two still leaves a recoverable record. A
failed write is retried once after a fixed backoff; after that the record
stays in the store flagged unsynced until a recovery sweep succeeds.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Protocol

import aiosqlite
from pydantic import ValidationError

from .config import Settings
from .errors import PersistError, PersistPermanentError, PersistTransientError
from .models import (
    ClockState,
    CompletionCause,
    CompletionEvent,
    PersistResult,
    ResolvedSession,
    SaveAttempt,
    SaveStatus,
    SessionWritePayload,
    TimerConfig,
)
from .resolver import kasina_display_name, resolve
from .store import Checkpoint, FallbackStore

logger = logging.getLogger(__name__)

# First try plus one retry
MAX_ATTEMPTS = 2


class SessionWriter(Protocol):
    def write(self, payload: SessionWritePayload, timeout: float) -> dict: ...


class SessionPersister:
    def __init__(self, store: FallbackStore, client: SessionWriter, settings: Settings | None = None):
        self.store = store
        self.client = client
        self.settings = settings or Settings()
        self._attempts: dict[str, SaveAttempt] = {}

    async def init(self) -> None:
        await self.store.init()

    def get_attempt(self, session_key: str) -> SaveAttempt | None:
        attempt = self._attempts.get(session_key)
        return replace(attempt) if attempt else None

    # ── Persist ────────────────────────────────────────────────

    async def persist(self, session: ResolvedSession) -> PersistResult:
        """Write ``session`` once. Never raises PersistError; see the result."""
        key = session.session_key

        # Claim the key before the first await so a concurrent call sees Pending
        attempt = self._attempts.get(key)
        if attempt is not None and attempt.status in (SaveStatus.PENDING, SaveStatus.SAVED):
            logger.debug(f"Skipping duplicate save for {key} ({attempt.status.value})")
            return PersistResult(key, attempt.status, attempt.attempts, duplicate=True)
        if attempt is None:
            attempt = SaveAttempt(session_key=key)
            self._attempts[key] = attempt
        attempt.status = SaveStatus.PENDING
        attempt.attempts = 0

        existing = await self._read_fallback(key)
        if existing is not None and existing.synced:
            attempt.status = SaveStatus.SAVED
            logger.debug(f"Session {key} already synced, not writing again")
            return PersistResult(key, SaveStatus.SAVED, existing.attempts, duplicate=True)

        kasina_name = kasina_display_name(session.kasina_type, session.duration_seconds)
        await self._write_fallback(session, kasina_name)

        error: PersistError | None = None
        try:
            payload = SessionWritePayload(
                kasina_type=session.kasina_type,
                kasina_name=kasina_name,
                duration_seconds=session.duration_seconds,
                started_at=session.started_at.isoformat(),
                session_key=key,
            )
        except ValidationError as e:
            payload = None
            error = PersistPermanentError(f"invalid session payload: {e.error_count()} error(s)")

        while payload is not None and attempt.attempts < MAX_ATTEMPTS:
            attempt.attempts += 1
            try:
                body = await self._send(payload)
            except PersistTransientError as e:
                error = e
                if attempt.attempts < MAX_ATTEMPTS:
                    logger.warning(
                        f"Save failed for {key} ({e}), retrying in {self.settings.retry_backoff}s"
                    )
                    await asyncio.sleep(self.settings.retry_backoff)
                continue
            except PersistPermanentError as e:
                error = e
                break

            error = None
            attempt.status = SaveStatus.SAVED
            logger.info(f"Saved {kasina_name} session {key} (id={body.get('id', '?')})")
            await self._mark(key, attempt.attempts, None)
            return PersistResult(key, SaveStatus.SAVED, attempt.attempts)

        attempt.status = SaveStatus.FAILED
        message = str(error) if error else "unknown error"
        logger.error(f"Giving up on {key} after {attempt.attempts} attempt(s): {message}")
        await self._mark(key, attempt.attempts, message)
        return PersistResult(key, SaveStatus.FAILED, attempt.attempts, error=message)

    async def _send(self, payload: SessionWritePayload) -> dict:
        """Run the blocking HTTP write in the default executor, bounded by the timeout."""
        timeout = self.settings.request_timeout
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, self.client.write, payload, timeout),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise PersistTransientError(f"no response within {timeout}s") from e
        except PersistError:
            raise
        except Exception as e:
            logger.exception(f"Unexpected error writing session {payload.session_key}")
            raise PersistTransientError(f"unexpected error: {e}") from e

    # ── Fallback store access ─────────────────────────────────
    # Store failures are logged, never allowed to drop the network write.

    async def _read_fallback(self, key: str):
        try:
            return await self.store.get(key)
        except aiosqlite.Error as e:
            logger.error(f"Fallback store read failed for {key}: {e}")
            return None

    async def _write_fallback(self, session: ResolvedSession, kasina_name: str) -> None:
        try:
            await self.store.put(session, kasina_name)
        except aiosqlite.Error as e:
            logger.error(f"Fallback store write failed for {session.session_key}: {e}")

    async def _mark(self, key: str, attempts: int, error: str | None) -> None:
        try:
            if error is None:
                await self.store.mark_synced(key, attempts)
            else:
                await self.store.mark_failed(key, attempts, error)
        except aiosqlite.Error as e:
            logger.error(f"Fallback store update failed for {key}: {e}")

    async def _list_unsynced(self) -> list:
        try:
            return await self.store.list_unsynced()
        except aiosqlite.Error as e:
            logger.error(f"Recovery: could not list unsynced sessions: {e}")
            return []

    async def _load_checkpoint(self) -> Checkpoint | None:
        try:
            return await self.store.load_checkpoint()
        except aiosqlite.Error as e:
            logger.error(f"Recovery: could not read checkpoint: {e}")
            return None

    # ── Active-session checkpoint ─────────────────────────────

    async def checkpoint(
        self,
        session_key: str,
        kasina_type: str,
        started_at: datetime,
        state: ClockState,
        config: TimerConfig,
    ) -> None:
        try:
            await self.store.save_checkpoint(Checkpoint(
                session_key=session_key,
                kasina_type=kasina_type,
                started_at=started_at.isoformat(),
                elapsed_seconds=state.elapsed_seconds,
                target_seconds=config.target_seconds,
                minimum_recordable_seconds=config.minimum_recordable_seconds,
                rounding_threshold_seconds=config.rounding_threshold_seconds,
                updated_at=datetime.now(timezone.utc).isoformat(),
            ))
        except aiosqlite.Error as e:
            logger.warning(f"Checkpoint write failed for {session_key}: {e}")

    async def clear_checkpoint(self, session_key: str) -> None:
        try:
            await self.store.clear_checkpoint(session_key)
        except aiosqlite.Error as e:
            logger.warning(f"Checkpoint clear failed for {session_key}: {e}")

    # ── Recovery ──────────────────────────────────────────────

    async def recover(self, now: datetime | None = None) -> list[PersistResult]:
        """Start-up sweep: finish a crashed session, then resync unsynced records."""
        results: list[PersistResult] = []
        seen: set[str] = set()

        recovered = await self._recover_checkpoint(now or datetime.now(timezone.utc))
        if recovered is not None:
            results.append(recovered)
            seen.add(recovered.session_key)

        records = await self._list_unsynced()
        if records:
            logger.info(f"Recovery: {len(records)} unsynced session(s) found")
        for record in records:
            if record.session_key in seen:
                continue
            seen.add(record.session_key)
            result = await self.persist(record.to_session())
            if result.success and not result.duplicate:
                logger.info(f"Recovery: resynced {record.kasina_name} ({record.session_key})")
            results.append(result)
        return results

    async def _recover_checkpoint(self, now: datetime) -> PersistResult | None:
        checkpoint = await self._load_checkpoint()
        if checkpoint is None:
            return None

        # A fallback record means the session already resolved; it drives the resync
        if await self._read_fallback(checkpoint.session_key) is not None:
            logger.info(f"Recovery: {checkpoint.session_key} already recorded locally, dropping checkpoint")
            await self.clear_checkpoint(checkpoint.session_key)
            return None

        age = (now - datetime.fromisoformat(checkpoint.updated_at)).total_seconds()
        if age > self.settings.checkpoint_max_age:
            logger.info(f"Recovery: discarding stale checkpoint {checkpoint.session_key} ({int(age)}s old)")
            await self.clear_checkpoint(checkpoint.session_key)
            return None

        config = TimerConfig(
            target_seconds=checkpoint.target_seconds,
            minimum_recordable_seconds=checkpoint.minimum_recordable_seconds,
            rounding_threshold_seconds=checkpoint.rounding_threshold_seconds,
        )
        event = CompletionEvent(
            cause=CompletionCause.ABANDONED,
            elapsed_seconds=checkpoint.elapsed_seconds,
            target_seconds=checkpoint.target_seconds,
        )
        duration = resolve(event, config)
        if duration == 0:
            logger.info(f"Recovery: interrupted session {checkpoint.session_key} too short, not saving")
            await self.clear_checkpoint(checkpoint.session_key)
            return None

        logger.info(
            f"Recovery: interrupted {checkpoint.kasina_type} session at "
            f"{checkpoint.elapsed_seconds}s, saving {duration}s"
        )
        result = await self.persist(ResolvedSession(
            duration_seconds=duration,
            kasina_type=checkpoint.kasina_type,
            started_at=datetime.fromisoformat(checkpoint.started_at),
        ))
        await self.clear_checkpoint(checkpoint.session_key)
        return result

    async def pending(self):
        return await self.store.list_unsynced()

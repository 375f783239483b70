"""One-second tick source on an APScheduler AsyncIOScheduler.

A TickSource owns at most one interval job. The job never overlaps
itself (max_instances=1) and missed runs collapse into one (coalesce),
so the clock it drives sees strictly serialized ticks.
"""

from __future__ import annotations

import itertools
import logging
from typing import Awaitable, Callable

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)

TICK_INTERVAL_SECONDS = 1

_ids = itertools.count(1)


class TickSource:
    def __init__(self, scheduler: AsyncIOScheduler, interval_seconds: int = TICK_INTERVAL_SECONDS):
        self.scheduler = scheduler
        self.interval_seconds = interval_seconds
        self.job_id = f"kasina_tick_{next(_ids)}"
        self._attached = False

    @property
    def attached(self) -> bool:
        return self._attached

    def attach(self, callback: Callable[[], Awaitable[None]]) -> None:
        """Start calling ``callback`` every interval. Replaces any previous job."""
        self.scheduler.add_job(
            callback,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=self.job_id,
            name="kasina timer tick",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._attached = True
        logger.debug(f"Tick source {self.job_id} attached")

    def detach(self) -> None:
        if not self._attached:
            return
        self._attached = False
        try:
            self.scheduler.remove_job(self.job_id)
        except JobLookupError:
            pass
        logger.debug(f"Tick source {self.job_id} detached")

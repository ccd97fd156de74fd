from __future__ import annotations

import asyncio
from contextlib import suppress
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from contentengine.core.config import get_settings
from contentengine.services.regeneration.executor import (
    RegenerationOutcome,
    claim_regeneration_job,
    execute_claimed_job,
    next_pending_job_id,
)
from contentengine.services.regeneration.generator import RegenerationGenerator


logger = logging.getLogger(__name__)


class RegenerationWorker:
    """Continuous regeneration loop; many instances may run side by side."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        generator: RegenerationGenerator,
        *,
        poll_interval_s: float | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._generator = generator
        self._poll_interval_s = max(0.05, float(poll_interval_s or get_settings().regeneration_poll_interval_s))
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None

    async def process_next_job(self) -> RegenerationOutcome | None:
        job_id = await next_pending_job_id(self._session_factory)
        if job_id is None:
            return None
        job = await claim_regeneration_job(self._session_factory, job_id)
        if job is None:
            # Another worker won the claim; a zero-row update is final.
            logger.info("regeneration_claim_lost job_id=%s", job_id)
            return None
        return await execute_claimed_job(self._session_factory, self._generator, job)

    async def run_forever(self) -> None:
        while not self._stop_event.is_set():
            outcome = None
            try:
                outcome = await self.process_next_job()
            except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
                logger.exception("regeneration worker cycle failed")
            if outcome is not None:
                # Drain the backlog before sleeping.
                continue
            with suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._poll_interval_s)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stop_event.clear()
            self._task = asyncio.create_task(self.run_forever())
        return self._task

    async def stop(self) -> None:
        self._stop_event.set()
        task = self._task
        self._task = None
        if task is not None:
            with suppress(asyncio.CancelledError):
                await task

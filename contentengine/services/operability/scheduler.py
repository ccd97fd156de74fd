from __future__ import annotations

import asyncio
from contextlib import suppress
from dataclasses import dataclass
import logging
import time
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from contentengine.core.config import get_settings
from contentengine.core.errors import JobTimeoutError
from contentengine.persistence.db import SessionLocal
from contentengine.persistence.locks import AdvisoryLock
from contentengine.services.audit import JOB_RUN, record_event
from contentengine.services.operability.alerts import (
    CRITICAL,
    JOB_FAILED,
    JOB_TIMEOUT,
    WARNING,
    raise_runtime_alert,
    run_alert_evaluation,
)
from contentengine.services.operability.watchdogs import run_watchdogs
from contentengine.services.reconciler import reconcile_hydration
from contentengine.services.regeneration.runner import run_regeneration_batch
from contentengine.services.telemetry import sample_pipeline_metrics_with_queue


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScheduledJob:
    name: str
    lock_name: str
    timeout_s: float
    interval_s: float
    run: Callable[[], Awaitable[Any]]


class ScheduledJobRegistry:
    def __init__(self) -> None:
        self._jobs: dict[str, ScheduledJob] = {}

    def register(self, job: ScheduledJob) -> None:
        self._jobs[job.name] = job

    def get(self, name: str) -> ScheduledJob:
        return self._jobs[name]

    def all(self) -> list[ScheduledJob]:
        return list(self._jobs.values())


async def _audit_run(
    factory: async_sessionmaker[AsyncSession],
    job: ScheduledJob,
    status: str,
    *,
    outcome: str = "success",
    error_code: str | None = None,
    **metadata: Any,
) -> None:
    async with factory() as session:
        await record_event(
            session=session,
            action=JOB_RUN,
            outcome=outcome,
            entity_type="scheduled_job",
            entity_id=job.name,
            error_code=error_code,
            metadata={"status": status, "lock_name": job.lock_name, **metadata},
            commit=True,
        )


async def _alert(factory: async_sessionmaker[AsyncSession], **kwargs: Any) -> None:
    async with factory() as session:
        await raise_runtime_alert(session, **kwargs)


async def run_scheduled_job(
    job: ScheduledJob,
    *,
    lock: AdvisoryLock | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> dict[str, Any]:
    """Run one scheduled job under its advisory lock and wall-clock budget.

    Every invocation leaves a JOB_RUN audit trail: SKIPPED, or STARTED followed
    by SUCCESS, TIMED_OUT or FAILED. Timeouts and failures also raise alerts.
    """
    factory = session_factory or SessionLocal
    resolved_lock = lock or AdvisoryLock()
    async with resolved_lock.hold(job.lock_name) as acquired:
        if not acquired:
            await _audit_run(factory, job, "SKIPPED", reason="lock_unavailable")
            logger.info("scheduled_job_skipped name=%s", job.name)
            return {"skipped": True}

        await _audit_run(factory, job, "STARTED")
        started = time.monotonic()
        try:
            result = await asyncio.wait_for(job.run(), timeout=job.timeout_s)
        except asyncio.TimeoutError as exc:
            duration_ms = int((time.monotonic() - started) * 1000)
            await _audit_run(
                factory,
                job,
                "TIMED_OUT",
                outcome="failure",
                error_code="JOB_TIMEOUT",
                duration_ms=duration_ms,
                timeout_s=job.timeout_s,
            )
            await _alert(
                factory,
                alert_type=JOB_TIMEOUT,
                severity=CRITICAL,
                message=f"Scheduled job {job.name} exceeded {job.timeout_s:g}s",
                payload={"job": job.name, "timeout_s": job.timeout_s},
            )
            logger.error("scheduled_job_timed_out name=%s timeout_s=%s", job.name, job.timeout_s)
            raise JobTimeoutError(f"Scheduled job {job.name} exceeded {job.timeout_s:g}s") from exc
        except Exception as exc:
            duration_ms = int((time.monotonic() - started) * 1000)
            await _audit_run(
                factory,
                job,
                "FAILED",
                outcome="failure",
                error_code=type(exc).__name__,
                duration_ms=duration_ms,
                message=str(exc)[:1000],
            )
            await _alert(
                factory,
                alert_type=JOB_FAILED,
                severity=WARNING,
                message=f"Scheduled job {job.name} failed: {type(exc).__name__}",
                payload={"job": job.name, "error": str(exc)[:1000]},
            )
            raise
        duration_ms = int((time.monotonic() - started) * 1000)
        await _audit_run(factory, job, "SUCCESS", duration_ms=duration_ms)
    logger.info("scheduled_job_succeeded name=%s duration_ms=%s", job.name, duration_ms)
    return {"skipped": False, "duration_ms": duration_ms, "result": result}


def build_default_registry() -> ScheduledJobRegistry:
    settings = get_settings()
    timeout_s = float(settings.scheduled_job_timeout_s)
    registry = ScheduledJobRegistry()
    registry.register(
        ScheduledJob(
            name="telemetry_sampler",
            lock_name="telemetry_sampler",
            timeout_s=timeout_s,
            interval_s=float(settings.telemetry_sample_interval_s),
            run=sample_pipeline_metrics_with_queue,
        )
    )
    registry.register(
        ScheduledJob(
            name="alert_evaluator",
            lock_name="alert_evaluator",
            timeout_s=timeout_s,
            interval_s=float(settings.alert_eval_interval_s),
            run=run_alert_evaluation,
        )
    )
    registry.register(
        ScheduledJob(
            name="watchdogs",
            lock_name="watchdogs",
            timeout_s=timeout_s,
            interval_s=float(settings.watchdog_interval_s),
            run=run_watchdogs,
        )
    )
    # The reconciler and regeneration runner take their own locks inside; use distinct job locks here.
    registry.register(
        ScheduledJob(
            name="hydration_reconciler",
            lock_name="scheduled:hydration_reconciler",
            timeout_s=timeout_s,
            interval_s=float(settings.reconciler_interval_s),
            run=reconcile_hydration,
        )
    )
    registry.register(
        ScheduledJob(
            name="regeneration_batch",
            lock_name="scheduled:regeneration_batch",
            timeout_s=timeout_s,
            interval_s=float(settings.regeneration_poll_interval_s),
            run=run_regeneration_batch,
        )
    )
    return registry


async def run_scheduler_loop(
    registry: ScheduledJobRegistry,
    *,
    stop_event: asyncio.Event,
    tick_s: float = 1.0,
    lock: AdvisoryLock | None = None,
) -> None:
    # Jobs run sequentially; a slow job delays the others rather than overlapping.
    next_run: dict[str, float] = {job.name: 0.0 for job in registry.all()}
    while not stop_event.is_set():
        for job in registry.all():
            if stop_event.is_set():
                break
            if time.monotonic() < next_run[job.name]:
                continue
            try:
                await run_scheduled_job(job, lock=lock)
            except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
                logger.exception("scheduled job %s failed", job.name)
            next_run[job.name] = time.monotonic() + job.interval_s
        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(stop_event.wait(), timeout=tick_s)

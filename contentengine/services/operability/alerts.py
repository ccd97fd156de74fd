from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from contentengine.core.config import get_settings
from contentengine.domain.models import SystemAlert, TelemetrySample
from contentengine.persistence.db import SessionLocal
from contentengine.services.telemetry import JOBS_FAILED_KEY, QUEUE_DEPTH_KEY


logger = logging.getLogger(__name__)

QUEUE_BACKLOG = "QUEUE_BACKLOG"
JOB_FAILURE_SPIKE = "JOB_FAILURE_SPIKE"
JOB_TIMEOUT = "JOB_TIMEOUT"
JOB_FAILED = "JOB_FAILED"

WARNING = "WARNING"
CRITICAL = "CRITICAL"

_BACKLOG_WINDOW = timedelta(minutes=5)
_BACKLOG_SEVERITY_WINDOW = timedelta(minutes=30)
_BACKLOG_MIN_BREACHES = 3
_SPIKE_RECENT_WINDOW = timedelta(minutes=1)
_SPIKE_BASELINE_WINDOW = timedelta(minutes=15)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AlertThresholds:
    queue_backlog: float
    queue_backlog_critical_floor: float
    failed_spike_multiplier: float
    failed_spike_min: float

    @classmethod
    def from_settings(cls) -> "AlertThresholds":
        settings = get_settings()
        return cls(
            queue_backlog=float(settings.queue_backlog_threshold),
            queue_backlog_critical_floor=float(settings.queue_backlog_critical_floor),
            failed_spike_multiplier=float(settings.failed_spike_multiplier),
            failed_spike_min=float(settings.failed_spike_min),
        )


@dataclass
class AlertDecision:
    type: str
    triggered: bool
    severity: str | None = None
    message: str = ""
    payload: dict[str, Any] = field(default_factory=dict)
    # created | refreshed | resolved | none
    action: str = "none"


async def _evaluate_queue_backlog(session: AsyncSession, *, now: datetime, thresholds: AlertThresholds) -> AlertDecision:
    breaches = await session.scalar(
        select(func.count())
        .select_from(TelemetrySample)
        .where(
            TelemetrySample.key == QUEUE_DEPTH_KEY,
            TelemetrySample.timestamp >= now - _BACKLOG_WINDOW,
            TelemetrySample.timestamp <= now,
            TelemetrySample.value > thresholds.queue_backlog,
        )
    )
    breaches = int(breaches or 0)
    if breaches < _BACKLOG_MIN_BREACHES:
        return AlertDecision(type=QUEUE_BACKLOG, triggered=False, payload={"breaches": breaches})
    peak = await session.scalar(
        select(func.max(TelemetrySample.value)).where(
            TelemetrySample.key == QUEUE_DEPTH_KEY,
            TelemetrySample.timestamp >= now - _BACKLOG_SEVERITY_WINDOW,
            TelemetrySample.timestamp <= now,
        )
    )
    peak = float(peak or 0.0)
    critical_at = max(thresholds.queue_backlog, thresholds.queue_backlog_critical_floor)
    severity = CRITICAL if peak > critical_at else WARNING
    return AlertDecision(
        type=QUEUE_BACKLOG,
        triggered=True,
        severity=severity,
        message=f"Queue depth above {thresholds.queue_backlog:g} in {breaches} samples over 5m (peak {peak:g})",
        payload={"breaches": breaches, "peak_30m": peak, "threshold": thresholds.queue_backlog},
    )


async def _evaluate_failure_spike(session: AsyncSession, *, now: datetime, thresholds: AlertThresholds) -> AlertDecision:
    recent_start = now - _SPIKE_RECENT_WINDOW
    recent = await session.scalar(
        select(func.coalesce(func.sum(TelemetrySample.value), 0.0)).where(
            TelemetrySample.key == JOBS_FAILED_KEY,
            TelemetrySample.timestamp >= recent_start,
            TelemetrySample.timestamp <= now,
        )
    )
    baseline = await session.scalar(
        select(func.avg(TelemetrySample.value)).where(
            TelemetrySample.key == JOBS_FAILED_KEY,
            TelemetrySample.timestamp >= now - _SPIKE_BASELINE_WINDOW,
            TelemetrySample.timestamp < recent_start,
        )
    )
    recent = float(recent or 0.0)
    baseline = float(baseline or 0.0)
    threshold = max(thresholds.failed_spike_min, thresholds.failed_spike_multiplier * baseline)
    payload = {"recent": recent, "baseline": baseline, "threshold": threshold}
    if recent <= threshold:
        return AlertDecision(type=JOB_FAILURE_SPIKE, triggered=False, payload=payload)
    severity = CRITICAL if recent > 2 * threshold else WARNING
    return AlertDecision(
        type=JOB_FAILURE_SPIKE,
        triggered=True,
        severity=severity,
        message=f"{recent:g} failed jobs in the last minute (baseline {baseline:g}/sample)",
        payload=payload,
    )


async def _active_alert(session: AsyncSession, alert_type: str) -> SystemAlert | None:
    return (
        await session.execute(
            select(SystemAlert).where(SystemAlert.type == alert_type, SystemAlert.active.is_(True)).limit(1)
        )
    ).scalar_one_or_none()


async def apply_alert_decision(session: AsyncSession, decision: AlertDecision, *, now: datetime) -> AlertDecision:
    # One active row per type: insert, refresh in place, or resolve.
    active = await _active_alert(session, decision.type)
    if decision.triggered:
        if active is None:
            session.add(
                SystemAlert(
                    type=decision.type,
                    severity=decision.severity,
                    active=True,
                    message=decision.message,
                    payload_json=decision.payload,
                    created_at=now,
                    last_seen=now,
                )
            )
            decision.action = "created"
        else:
            active.severity = decision.severity
            active.message = decision.message
            active.payload_json = decision.payload
            active.last_seen = now
            decision.action = "refreshed"
    elif active is not None:
        active.active = False
        active.resolved_at = now
        decision.action = "resolved"
    try:
        await session.commit()
    except IntegrityError:
        # A concurrent evaluator inserted the active row first; it will be refreshed next cycle.
        await session.rollback()
        logger.info("system_alert_insert_raced type=%s", decision.type)
        decision.action = "none"
    return decision


async def evaluate_alerts(
    session: AsyncSession,
    *,
    now: datetime | None = None,
    thresholds: AlertThresholds | None = None,
) -> list[AlertDecision]:
    current = now or _utc_now()
    limits = thresholds or AlertThresholds.from_settings()
    decisions = [
        await _evaluate_queue_backlog(session, now=current, thresholds=limits),
        await _evaluate_failure_spike(session, now=current, thresholds=limits),
    ]
    for decision in decisions:
        await apply_alert_decision(session, decision, now=current)
        if decision.action != "none":
            logger.info(
                "system_alert_%s type=%s severity=%s",
                decision.action,
                decision.type,
                decision.severity,
            )
    return decisions


async def run_alert_evaluation(
    *,
    now: datetime | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> dict[str, Any]:
    factory = session_factory or SessionLocal
    async with factory() as session:
        decisions = await evaluate_alerts(session, now=now)
    return {decision.type: decision.action for decision in decisions}


async def raise_runtime_alert(
    session: AsyncSession,
    *,
    alert_type: str,
    severity: str,
    message: str,
    payload: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> AlertDecision:
    # Runtime hooks (timeouts, scheduled job failures) share the upsert-by-type path.
    decision = AlertDecision(
        type=alert_type,
        triggered=True,
        severity=severity,
        message=message,
        payload=payload or {},
    )
    return await apply_alert_decision(session, decision, now=now or _utc_now())


async def list_active_alerts(session: AsyncSession) -> list[SystemAlert]:
    rows = (
        await session.execute(
            select(SystemAlert).where(SystemAlert.active.is_(True)).order_by(SystemAlert.last_seen.desc())
        )
    ).scalars().all()
    return list(rows)

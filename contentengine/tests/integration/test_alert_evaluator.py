from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from contentengine.domain.models import SystemAlert
from contentengine.persistence.db import SessionLocal
from contentengine.services.operability import (
    CRITICAL,
    JOB_FAILURE_SPIKE,
    JOB_TIMEOUT,
    QUEUE_BACKLOG,
    WARNING,
    AlertThresholds,
    evaluate_alerts,
    list_active_alerts,
    raise_runtime_alert,
)
from contentengine.services.telemetry import JOBS_FAILED_KEY, QUEUE_DEPTH_KEY, record_sample


THRESHOLDS = AlertThresholds(
    queue_backlog=50.0,
    queue_backlog_critical_floor=200.0,
    failed_spike_multiplier=5.0,
    failed_spike_min=5.0,
)


async def _samples(key: str, points: list[tuple[datetime, float]]) -> None:
    async with SessionLocal() as session:
        for timestamp, value in points:
            record_sample(session, key=key, value=value, timestamp=timestamp)
        await session.commit()


async def _evaluate(now: datetime) -> dict[str, object]:
    async with SessionLocal() as session:
        decisions = await evaluate_alerts(session, now=now, thresholds=THRESHOLDS)
    return {decision.type: decision for decision in decisions}


async def _alerts(alert_type: str) -> list[SystemAlert]:
    async with SessionLocal() as session:
        return list(
            (await session.execute(select(SystemAlert).where(SystemAlert.type == alert_type))).scalars().all()
        )


@pytest.mark.asyncio
async def test_sustained_backlog_creates_then_refreshes_then_resolves() -> None:
    now = datetime.now(timezone.utc)
    await _samples(QUEUE_DEPTH_KEY, [(now - timedelta(minutes=minutes), 80) for minutes in (1, 2, 3)])

    created = (await _evaluate(now))[QUEUE_BACKLOG]
    assert created.triggered is True
    assert created.severity == WARNING
    assert created.action == "created"

    refreshed = (await _evaluate(now + timedelta(seconds=30)))[QUEUE_BACKLOG]
    assert refreshed.action == "refreshed"
    [alert] = await _alerts(QUEUE_BACKLOG)
    assert alert.active is True

    # Ten minutes later the breaching samples have aged out of the 5m window.
    resolved = (await _evaluate(now + timedelta(minutes=10)))[QUEUE_BACKLOG]
    assert resolved.action == "resolved"
    [alert] = await _alerts(QUEUE_BACKLOG)
    assert alert.active is False
    assert alert.resolved_at is not None


@pytest.mark.asyncio
async def test_two_breaches_are_not_enough() -> None:
    now = datetime.now(timezone.utc)
    await _samples(QUEUE_DEPTH_KEY, [(now - timedelta(minutes=1), 500), (now - timedelta(minutes=2), 500)])
    decision = (await _evaluate(now))[QUEUE_BACKLOG]
    assert decision.triggered is False
    assert decision.action == "none"
    assert await _alerts(QUEUE_BACKLOG) == []


@pytest.mark.asyncio
async def test_backlog_peak_above_floor_is_critical() -> None:
    now = datetime.now(timezone.utc)
    await _samples(
        QUEUE_DEPTH_KEY,
        [
            (now - timedelta(minutes=20), 250),
            (now - timedelta(minutes=3), 60),
            (now - timedelta(minutes=2), 60),
            (now - timedelta(minutes=1), 60),
        ],
    )
    decision = (await _evaluate(now))[QUEUE_BACKLOG]
    assert decision.severity == CRITICAL
    assert decision.payload["peak_30m"] == 250


@pytest.mark.asyncio
async def test_failure_spike_against_baseline() -> None:
    now = datetime.now(timezone.utc)
    await _samples(JOBS_FAILED_KEY, [(now - timedelta(minutes=minutes), 1) for minutes in (3, 6, 9)])
    await _samples(JOBS_FAILED_KEY, [(now - timedelta(seconds=10), 8)])

    decision = (await _evaluate(now))[JOB_FAILURE_SPIKE]

    assert decision.triggered is True
    assert decision.severity == WARNING
    assert decision.payload == {"recent": 8.0, "baseline": 1.0, "threshold": 5.0}


@pytest.mark.asyncio
async def test_failure_spike_far_above_threshold_is_critical() -> None:
    now = datetime.now(timezone.utc)
    await _samples(JOBS_FAILED_KEY, [(now - timedelta(seconds=5), 11)])
    decision = (await _evaluate(now))[JOB_FAILURE_SPIKE]
    assert decision.severity == CRITICAL


@pytest.mark.asyncio
async def test_quiet_pipeline_raises_nothing() -> None:
    decisions = await _evaluate(datetime.now(timezone.utc))
    assert all(not decision.triggered for decision in decisions.values())
    async with SessionLocal() as session:
        assert await list_active_alerts(session) == []


@pytest.mark.asyncio
async def test_runtime_alerts_upsert_by_type() -> None:
    async with SessionLocal() as session:
        first = await raise_runtime_alert(session, alert_type=JOB_TIMEOUT, severity=CRITICAL, message="slow")
        second = await raise_runtime_alert(session, alert_type=JOB_TIMEOUT, severity=WARNING, message="slow again")
        active = await list_active_alerts(session)
    assert (first.action, second.action) == ("created", "refreshed")
    assert len(active) == 1
    assert active[0].message == "slow again"
    assert active[0].severity == WARNING

from contentengine.services.operability.alerts import (
    CRITICAL,
    JOB_FAILED,
    JOB_FAILURE_SPIKE,
    JOB_TIMEOUT,
    QUEUE_BACKLOG,
    WARNING,
    AlertDecision,
    AlertThresholds,
    evaluate_alerts,
    list_active_alerts,
    raise_runtime_alert,
    run_alert_evaluation,
)
from contentengine.services.operability.scheduler import (
    ScheduledJob,
    ScheduledJobRegistry,
    build_default_registry,
    run_scheduled_job,
    run_scheduler_loop,
)
from contentengine.services.operability.watchdogs import (
    DB_DOWN,
    JOB_STUCK,
    REDIS_DOWN,
    WORKER_STALE,
    read_worker_heartbeats,
    run_watchdogs,
)

__all__ = [
    "CRITICAL",
    "DB_DOWN",
    "JOB_FAILED",
    "JOB_FAILURE_SPIKE",
    "JOB_STUCK",
    "JOB_TIMEOUT",
    "QUEUE_BACKLOG",
    "REDIS_DOWN",
    "WARNING",
    "WORKER_STALE",
    "AlertDecision",
    "AlertThresholds",
    "ScheduledJob",
    "ScheduledJobRegistry",
    "build_default_registry",
    "evaluate_alerts",
    "list_active_alerts",
    "raise_runtime_alert",
    "read_worker_heartbeats",
    "run_alert_evaluation",
    "run_scheduled_job",
    "run_scheduler_loop",
    "run_watchdogs",
]

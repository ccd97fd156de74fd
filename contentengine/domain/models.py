from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON elsewhere so the same models run against SQLite in tests.
JsonType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER PRIMARY KEY columns.
BigIntId = BigInteger().with_variant(Integer(), "sqlite")


def _utc_now() -> datetime:
    # Python-side timestamps keep ordering stable across dialects.
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid4().hex


class Base(DeclarativeBase):
    pass


class ExecutionRequest(Base):
    __tablename__ = "execution_requests"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    job_kind: Mapped[str] = mapped_column(String, index=True)
    target_type: Mapped[str] = mapped_column(String)
    target_id: Mapped[str] = mapped_column(String, index=True)
    # Keep the validated submission payload for audit and replay.
    payload_json: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    status: Mapped[str] = mapped_column(String, default="pending", index=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Identify the worker that last claimed the child job.
    locked_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, onupdate=_utc_now)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class HydrationJob(Base):
    __tablename__ = "hydration_jobs"
    __table_args__ = (
        # Only one in-flight job per generation key; terminal rows stay for history.
        Index(
            "uq_hydration_jobs_active_key",
            "job_kind",
            "target_id",
            "language",
            "difficulty",
            unique=True,
            postgresql_where=text("status IN ('pending', 'running')"),
            sqlite_where=text("status IN ('pending', 'running')"),
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    request_id: Mapped[str] = mapped_column(String, ForeignKey("execution_requests.id"), unique=True)
    job_kind: Mapped[str] = mapped_column(String)
    target_type: Mapped[str] = mapped_column(String)
    target_id: Mapped[str] = mapped_column(String)
    language: Mapped[str] = mapped_column(String)
    difficulty: Mapped[str] = mapped_column(String, default="any")
    # Denormalized hierarchy so workers never re-resolve the request.
    board_id: Mapped[str | None] = mapped_column(String, nullable=True)
    grade_id: Mapped[str | None] = mapped_column(String, nullable=True)
    subject_id: Mapped[str | None] = mapped_column(String, nullable=True)
    chapter_id: Mapped[str | None] = mapped_column(String, nullable=True)
    topic_id: Mapped[str | None] = mapped_column(String, nullable=True)
    payload_json: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    status: Mapped[str] = mapped_column(String, default="pending", index=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    locked_by: Mapped[str | None] = mapped_column(String, nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Hydrate-all tree: children point at the syllabus root; level 1 is the root itself.
    root_job_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("hydration_jobs.id"), nullable=True, index=True
    )
    hierarchy_level: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # Only set on roots: running until every level is terminal.
    cascade_status: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    topics_expected: Mapped[int] = mapped_column(Integer, default=0)
    notes_expected: Mapped[int] = mapped_column(Integer, default=0)
    notes_completed: Mapped[int] = mapped_column(Integer, default=0)
    questions_expected: Mapped[int] = mapped_column(Integer, default=0)
    questions_completed: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, onupdate=_utc_now)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class OutboxMessage(Base):
    __tablename__ = "outbox_messages"
    __table_args__ = (Index("ix_outbox_messages_unsent", "sent_at", "created_at"),)

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    queue: Mapped[str] = mapped_column(String)
    # Opaque envelope; carries the hydration job id.
    payload_json: Mapped[dict[str, Any]] = mapped_column(JsonType)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    # Null until the queue has accepted the message.
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class JobExecutionLog(Base):
    __tablename__ = "job_execution_logs"

    # Monotonic id doubles as the timeline tiebreaker.
    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String, ForeignKey("hydration_jobs.id"), index=True)
    event: Mapped[str] = mapped_column(String)
    prev_status: Mapped[str | None] = mapped_column(String, nullable=True)
    new_status: Mapped[str | None] = mapped_column(String, nullable=True)
    meta_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class GeneratedContent(Base):
    __tablename__ = "generated_contents"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    # One content row per job makes duplicate deliveries a no-op.
    hydration_job_id: Mapped[str] = mapped_column(String, ForeignKey("hydration_jobs.id"), unique=True)
    job_kind: Mapped[str] = mapped_column(String)
    target_type: Mapped[str] = mapped_column(String)
    target_id: Mapped[str] = mapped_column(String, index=True)
    language: Mapped[str] = mapped_column(String)
    difficulty: Mapped[str] = mapped_column(String)
    content_json: Mapped[dict[str, Any]] = mapped_column(JsonType)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class RegenerationJob(Base):
    __tablename__ = "regeneration_jobs"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    suggestion_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    target_type: Mapped[str] = mapped_column(String)
    target_id: Mapped[str] = mapped_column(String)
    # Copied verbatim on retries for exact reproducibility.
    instruction_json: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    status: Mapped[str] = mapped_column(String, default="PENDING", index=True)
    output_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    error_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    # A retry intent spawns at most one job.
    retry_intent_id: Mapped[str | None] = mapped_column(String, unique=True, nullable=True)
    retry_of_job_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, onupdate=_utc_now)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class RegenerationOutput(Base):
    __tablename__ = "regeneration_outputs"

    # Immutable; every regeneration writes a fresh row.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    job_id: Mapped[str] = mapped_column(String, ForeignKey("regeneration_jobs.id"), unique=True)
    content_json: Mapped[dict[str, Any]] = mapped_column(JsonType)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class PromotionCandidate(Base):
    __tablename__ = "promotion_candidates"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    output_id: Mapped[str] = mapped_column(String, ForeignKey("regeneration_outputs.id"), index=True)
    scope: Mapped[str] = mapped_column(String)
    scope_ref_id: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="PENDING", index=True)
    reviewer_id: Mapped[str | None] = mapped_column(String, nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    review_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class PublishedOutput(Base):
    __tablename__ = "published_outputs"
    # At most one live output per scope.
    __table_args__ = (UniqueConstraint("scope", "scope_ref_id", name="uq_published_outputs_scope"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    scope: Mapped[str] = mapped_column(String)
    scope_ref_id: Mapped[str] = mapped_column(String)
    candidate_id: Mapped[str] = mapped_column(String, ForeignKey("promotion_candidates.id"))
    output_id: Mapped[str] = mapped_column(String, ForeignKey("regeneration_outputs.id"))
    approved_by: Mapped[str | None] = mapped_column(String, nullable=True)
    approved_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class RetryIntent(Base):
    __tablename__ = "retry_intents"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    source_job_id: Mapped[str] = mapped_column(String, ForeignKey("regeneration_jobs.id"), index=True)
    reason_code: Mapped[str] = mapped_column(String)
    reason_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    requested_by: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default="PENDING")
    executed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class TelemetrySample(Base):
    __tablename__ = "telemetry_samples"
    __table_args__ = (Index("ix_telemetry_samples_key_ts", "key", "timestamp"),)

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String)
    dimension_hash: Mapped[str] = mapped_column(String)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    value: Mapped[float] = mapped_column(Float)
    dimensions_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, default=dict)


class SystemAlert(Base):
    __tablename__ = "system_alerts"
    __table_args__ = (
        # Breaches refresh the active row instead of inserting a duplicate.
        Index(
            "uq_system_alerts_active_type",
            "type",
            unique=True,
            postgresql_where=text("active"),
            sqlite_where=text("active = 1"),
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    type: Mapped[str] = mapped_column(String, index=True)
    severity: Mapped[str] = mapped_column(String)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    message: Mapped[str] = mapped_column(Text)
    payload_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    last_seen: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class SystemSetting(Base):
    __tablename__ = "system_settings"

    # Operator switches such as HYDRATION_DISABLED; values stay strings for simple toggling.
    key: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[str] = mapped_column(String)
    updated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, onupdate=_utc_now)


class AuditEvent(Base):
    __tablename__ = "audit_events"

    # Use a monotonic numeric id for efficient pagination and ordering.
    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    # Stable action taxonomy for audit-log viewers.
    action: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String, default="success")
    actor_type: Mapped[str] = mapped_column(String, default="system")
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    entity_type: Mapped[str | None] = mapped_column(String, nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    # Keep metadata sanitized for flexible investigation.
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)

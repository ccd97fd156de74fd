from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class JobKind(str, Enum):
    SYLLABUS = "syllabus"
    NOTES = "notes"
    QUESTIONS = "questions"
    TESTS = "tests"
    ASSEMBLE = "assemble"


class TargetType(str, Enum):
    SUBJECT = "subject"
    TOPIC = "topic"


# Each job kind targets exactly one entity type in the curriculum hierarchy.
TARGET_TYPE_BY_KIND: dict[JobKind, TargetType] = {
    JobKind.SYLLABUS: TargetType.SUBJECT,
    JobKind.NOTES: TargetType.TOPIC,
    JobKind.QUESTIONS: TargetType.TOPIC,
    JobKind.TESTS: TargetType.TOPIC,
    JobKind.ASSEMBLE: TargetType.TOPIC,
}

# Stored difficulty when a request does not specify one, so uniqueness keys never hold NULL.
ANY_DIFFICULTY = "any"


class HydrationStatus:
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    ACTIVE = frozenset({PENDING, RUNNING})
    TERMINAL = frozenset({COMPLETED, FAILED, CANCELLED})


class TimelineEvent:
    CREATED = "CREATED"
    ENQUEUED = "ENQUEUED"
    STARTED = "STARTED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    RETRY_CREATED = "RETRY_CREATED"
    RECONCILED = "RECONCILED"
    CASCADE_FINALIZED = "CASCADE_FINALIZED"


class CascadeStatus:
    # Hydrate-all progress on the syllabus root; the job status stays the syllabus outcome.
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class RegenerationStatus:
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class RegenerationTarget:
    LESSON = "LESSON"
    QUIZ = "QUIZ"
    PROJECT = "PROJECT"
    MODULE = "MODULE"


class CandidateStatus:
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


PromotionScope = Literal["COURSE", "MODULE", "LESSON"]


class RetryIntentStatus:
    PENDING = "PENDING"
    EXECUTED = "EXECUTED"


RetryReasonCode = Literal["MODEL_ERROR", "CONTENT_QUALITY", "TRANSIENT_FAILURE", "OPERATOR_REQUEST", "OTHER"]


class HierarchyIds(BaseModel):
    # Denormalized curriculum context copied onto the hydration job.
    board_id: str | None = None
    grade_id: str | None = None
    subject_id: str | None = None
    chapter_id: str | None = None
    topic_id: str | None = None


class _KindPayload(HierarchyIds):
    model_config = ConfigDict(extra="forbid")

    language: str = Field(min_length=2)
    difficulty: Literal["easy", "medium", "hard"] | None = None
    # Display name passed through to prompts; ids stay authoritative.
    topic_name: str | None = None


class SyllabusPayload(_KindPayload):
    kind: Literal[JobKind.SYLLABUS] = JobKind.SYLLABUS
    # Set on hydrate-all roots; drives the question fan-out once notes finish.
    difficulties: list[Literal["easy", "medium", "hard"]] | None = None


class NotesPayload(_KindPayload):
    kind: Literal[JobKind.NOTES] = JobKind.NOTES


class QuestionsPayload(_KindPayload):
    kind: Literal[JobKind.QUESTIONS] = JobKind.QUESTIONS
    count: int = Field(default=10, ge=1, le=100)


class TestsPayload(_KindPayload):
    kind: Literal[JobKind.TESTS] = JobKind.TESTS
    count: int = Field(default=20, ge=1, le=200)


class AssemblePayload(_KindPayload):
    kind: Literal[JobKind.ASSEMBLE] = JobKind.ASSEMBLE
    count: int = Field(default=10, ge=1, le=100)


JobPayload = SyllabusPayload | NotesPayload | QuestionsPayload | TestsPayload | AssemblePayload

PAYLOAD_MODELS: dict[JobKind, type[_KindPayload]] = {
    JobKind.SYLLABUS: SyllabusPayload,
    JobKind.NOTES: NotesPayload,
    JobKind.QUESTIONS: QuestionsPayload,
    JobKind.TESTS: TestsPayload,
    JobKind.ASSEMBLE: AssemblePayload,
}


def parse_job_payload(kind: JobKind, raw: dict) -> JobPayload:
    # Bind the free-form submission payload to the closed model for its kind.
    data = dict(raw or {})
    data.pop("kind", None)
    return PAYLOAD_MODELS[kind].model_validate(data)


class QueueEnvelope(BaseModel):
    # Internal queue message shape: {type: <JOBKIND>, payload: {jobId}}.
    type: str
    payload: dict

    @property
    def job_id(self) -> str | None:
        value = self.payload.get("jobId")
        return str(value) if value else None


def build_envelope(kind: JobKind, job_id: str) -> dict:
    return {"type": kind.value.upper(), "payload": {"jobId": job_id}}

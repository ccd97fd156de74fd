from __future__ import annotations

import pytest
from pydantic import ValidationError

from contentengine.domain.jobs import (
    JobKind,
    NotesPayload,
    QueueEnvelope,
    build_envelope,
    parse_job_payload,
)


def test_payload_binds_to_model_for_kind() -> None:
    payload = parse_job_payload(JobKind.NOTES, {"language": "en", "topic_id": "T1", "kind": "ignored"})
    assert isinstance(payload, NotesPayload)
    assert payload.kind is JobKind.NOTES
    assert payload.topic_id == "T1"


def test_count_defaults_differ_per_kind() -> None:
    assert parse_job_payload(JobKind.QUESTIONS, {"language": "en"}).count == 10
    assert parse_job_payload(JobKind.TESTS, {"language": "en"}).count == 20


def test_unknown_fields_are_rejected() -> None:
    with pytest.raises(ValidationError):
        parse_job_payload(JobKind.NOTES, {"language": "en", "unexpected": True})


def test_language_is_required_and_difficulty_is_closed() -> None:
    with pytest.raises(ValidationError):
        parse_job_payload(JobKind.SYLLABUS, {})
    with pytest.raises(ValidationError):
        parse_job_payload(JobKind.QUESTIONS, {"language": "en", "difficulty": "extreme"})


def test_envelope_round_trip_carries_job_id() -> None:
    envelope = build_envelope(JobKind.ASSEMBLE, "job-1")
    assert envelope == {"type": "ASSEMBLE", "payload": {"jobId": "job-1"}}
    assert QueueEnvelope.model_validate(envelope).job_id == "job-1"


def test_envelope_without_job_id_has_none() -> None:
    assert QueueEnvelope.model_validate({"type": "NOTES", "payload": {}}).job_id is None

from __future__ import annotations

from datetime import datetime, timezone

from contentengine.services.audit import sanitize_metadata
from contentengine.services.telemetry import dimension_hash


def test_sensitive_keys_are_redacted_recursively() -> None:
    metadata = {
        "job_kind": "notes",
        "Authorization": "Bearer abc",
        "nested": {"vertex_api_key": "k", "items": [{"refresh_token": "t", "ok": 1}]},
    }
    assert sanitize_metadata(metadata) == {
        "job_kind": "notes",
        "Authorization": "[REDACTED]",
        "nested": {"vertex_api_key": "[REDACTED]", "items": [{"refresh_token": "[REDACTED]", "ok": 1}]},
    }


def test_datetimes_are_serialized() -> None:
    moment = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    assert sanitize_metadata({"at": moment}) == {"at": "2024-01-02T03:04:05+00:00"}


def test_dimension_hash_ignores_key_order() -> None:
    assert dimension_hash({"a": 1, "b": 2}) == dimension_hash({"b": 2, "a": 1})
    assert dimension_hash(None) == dimension_hash({})
    assert dimension_hash({"a": 1}) != dimension_hash({"a": 2})

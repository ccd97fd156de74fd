from __future__ import annotations

from datetime import datetime, timezone

from contentengine.services.operability.watchdogs import heartbeat_key, parse_heartbeats


def test_heartbeat_values_are_keyed_by_worker_id() -> None:
    keys = [heartbeat_key("host-a:10").encode(), heartbeat_key("host-b:11")]
    values = [b"2026-03-01T12:00:00+00:00", "2026-03-01T11:59:00"]

    assert parse_heartbeats(keys, values) == {
        "host-a:10": datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc),
        "host-b:11": datetime(2026, 3, 1, 11, 59, tzinfo=timezone.utc),
    }


def test_expired_and_garbled_heartbeats_are_ignored() -> None:
    keys = [heartbeat_key("gone"), heartbeat_key("garbled"), "unrelated:key"]
    values = [None, b"yesterday", b"2026-03-01T12:00:00+00:00"]

    assert parse_heartbeats(keys, values) == {}

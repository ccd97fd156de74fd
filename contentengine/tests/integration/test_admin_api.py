from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from contentengine.apps.api.main import create_app
from contentengine.domain.models import RegenerationJob, RegenerationOutput
from contentengine.persistence.db import SessionLocal
from contentengine.services.regeneration.runner import run_regeneration_batch
from contentengine.tests.utils.fakes import LESSON_INSTRUCTION


AUTH = {"Authorization": "Bearer test-admin-token", "X-Actor-Id": "admin-1"}


def _client() -> AsyncClient:
    transport = ASGITransport(app=create_app())
    return AsyncClient(transport=transport, base_url="http://test")


async def _seed_output() -> str:
    # Seed a finished regeneration so promotion endpoints have something to publish.
    async with SessionLocal() as session:
        job = RegenerationJob(target_type="LESSON", target_id="L1", status="COMPLETED")
        session.add(job)
        await session.flush()
        output = RegenerationOutput(job_id=job.id, content_json={"lessons": []})
        session.add(output)
        await session.commit()
        return output.id


@pytest.mark.asyncio
async def test_health_needs_no_auth() -> None:
    async with _client() as client:
        response = await client.get("/v1/health", headers={"X-Request-Id": "req-123"})
    assert response.status_code == 200
    body = response.json()
    assert body["data"]["status"] == "ok"
    assert body["data"]["database"] == "ok"
    assert body["meta"] == {"request_id": "req-123", "api_version": "v1"}
    assert response.headers["X-Request-Id"] == "req-123"


@pytest.mark.asyncio
async def test_admin_routes_require_bearer_token() -> None:
    async with _client() as client:
        missing = await client.get("/v1/alerts")
        wrong = await client.get("/v1/alerts", headers={"Authorization": "Bearer nope"})
        malformed = await client.get("/v1/alerts", headers={"Authorization": "Token test-admin-token"})
    for response in (missing, wrong, malformed):
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert missing.headers["WWW-Authenticate"] == "Bearer"


@pytest.mark.asyncio
async def test_content_job_lifecycle_over_http() -> None:
    body = {"job_kind": "notes", "target_type": "topic", "target_id": "T1", "payload": {"language": "en"}}
    async with _client() as client:
        submitted = await client.post("/v1/content-jobs", json=body, headers=AUTH)
        assert submitted.status_code == 202
        job_id = submitted.json()["data"]["job_id"]
        assert submitted.json()["data"]["existing"] is False

        repeated = await client.post("/v1/content-jobs", json=body, headers=AUTH)
        assert repeated.json()["data"] == {**submitted.json()["data"], "existing": True}

        fetched = await client.get(f"/v1/content-jobs/{job_id}", headers=AUTH)
        assert fetched.status_code == 200
        assert fetched.json()["data"]["status"] == "pending"

        cancelled = await client.post(f"/v1/content-jobs/{job_id}/cancel", headers=AUTH)
        assert cancelled.json()["data"]["status"] == "cancelled"

        conflict = await client.post(f"/v1/content-jobs/{job_id}/cancel", headers=AUTH)
        assert conflict.status_code == 409
        assert conflict.json()["error"]["code"] == "CONFLICT"

        retried = await client.post(f"/v1/content-jobs/{job_id}/retry", headers=AUTH)
        assert retried.json()["data"]["status"] == "pending"

        timeline = await client.get(f"/v1/content-jobs/{job_id}/timeline", headers=AUTH)
        events = [item["event"] for item in timeline.json()["data"]["items"]]
        assert events == ["CREATED", "ENQUEUED", "CANCELLED", "RETRY_CREATED"]

        audit = await client.get("/v1/audit/events", params={"entity_id": job_id}, headers=AUTH)
        actions = {item["action"] for item in audit.json()["data"]["items"]}
        assert actions == {"JOB_CANCELLED", "RETRY_CREATED"}


@pytest.mark.asyncio
async def test_domain_errors_map_to_envelopes() -> None:
    async with _client() as client:
        missing = await client.get("/v1/content-jobs/missing", headers=AUTH)
        wrong_target = await client.post(
            "/v1/content-jobs",
            json={"job_kind": "notes", "target_type": "subject", "target_id": "S1", "payload": {"language": "en"}},
            headers=AUTH,
        )
        malformed = await client.post("/v1/content-jobs", json={"job_kind": "notes"}, headers=AUTH)
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "NOT_FOUND"
    assert wrong_target.status_code == 422
    assert wrong_target.json()["error"]["code"] == "VALIDATION"
    assert malformed.status_code == 422
    assert malformed.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_regeneration_and_retry_intent_endpoints() -> None:
    body = {"suggestion_id": "sug-1", "target_type": "MODULE", "target_id": "M1", "instruction": LESSON_INSTRUCTION}
    async with _client() as client:
        created = await client.post("/v1/regeneration-jobs", json=body, headers=AUTH)
        assert created.status_code == 201
        job_id = created.json()["data"]["id"]

        reused = await client.post("/v1/regeneration-jobs", json=body, headers=AUTH)
        assert reused.status_code == 200
        assert reused.json()["data"]["id"] == job_id

        early = await client.post(
            f"/v1/regeneration-jobs/{job_id}/retry-intents",
            json={"reason_code": "MODEL_ERROR"},
            headers=AUTH,
        )
        assert early.status_code == 409
        assert early.json()["error"]["code"] == "RETRY_NOT_ALLOWED"

    summary = await run_regeneration_batch()
    assert summary["failed"] == 1

    async with _client() as client:
        failed = await client.get(f"/v1/regeneration-jobs/{job_id}", headers=AUTH)
        assert failed.json()["data"]["status"] == "FAILED"
        assert failed.json()["data"]["error"]["type"] == "UnsupportedTargetError"
        assert "stack" not in failed.json()["data"]["error"]

        intent = await client.post(
            f"/v1/regeneration-jobs/{job_id}/retry-intents",
            json={"reason_code": "OPERATOR_REQUEST", "reason_text": "try again"},
            headers=AUTH,
        )
        assert intent.status_code == 201
        intent_id = intent.json()["data"]["id"]
        assert intent.json()["data"]["requested_by"] == "admin-1"

        executed = await client.post(f"/v1/retry-intents/{intent_id}/execute", headers=AUTH)
        assert executed.status_code == 201
        assert executed.json()["data"]["retry_of_job_id"] == job_id

        twice = await client.post(f"/v1/retry-intents/{intent_id}/execute", headers=AUTH)
        assert twice.status_code == 409
        assert twice.json()["error"]["code"] == "ALREADY_EXECUTED"


@pytest.mark.asyncio
async def test_promotion_endpoints_publish_and_guard_reviews() -> None:
    output_id = await _seed_output()
    async with _client() as client:
        candidate = await client.post(
            "/v1/promotion-candidates",
            json={"output_id": output_id, "scope": "LESSON", "scope_ref_id": "L1"},
            headers=AUTH,
        )
        assert candidate.status_code == 201
        candidate_id = candidate.json()["data"]["id"]

        approved = await client.post(f"/v1/promotion-candidates/{candidate_id}/approve", headers=AUTH)
        assert approved.status_code == 200
        assert approved.json()["data"]["approved_by"] == "admin-1"

        rejected = await client.post(
            f"/v1/promotion-candidates/{candidate_id}/reject",
            json={"notes": "changed my mind"},
            headers=AUTH,
        )
        assert rejected.status_code == 409
        assert rejected.json()["error"]["code"] == "CANDIDATE_ALREADY_APPROVED"

        live = await client.get("/v1/published-outputs/LESSON/L1", headers=AUTH)
        assert live.json()["data"]["output_id"] == output_id

        absent = await client.get("/v1/published-outputs/COURSE/C1", headers=AUTH)
        assert absent.status_code == 404

        bad_scope = await client.post(
            "/v1/promotion-candidates",
            json={"output_id": output_id, "scope": "CHAPTER", "scope_ref_id": "X"},
            headers=AUTH,
        )
        assert bad_scope.status_code == 422


@pytest.mark.asyncio
async def test_alerts_and_audit_listing() -> None:
    async with _client() as client:
        alerts = await client.get("/v1/alerts", headers=AUTH)
        assert alerts.json()["data"] == {"items": []}

        for index in range(3):
            await client.post(
                "/v1/regeneration-jobs",
                json={"target_type": "LESSON", "target_id": f"L{index}", "instruction": LESSON_INSTRUCTION},
                headers=AUTH,
            )
        page = await client.get("/v1/audit/events", params={"action": "SUGGESTION_CREATED", "limit": 2}, headers=AUTH)
        data = page.json()["data"]
        assert len(data["items"]) == 2
        assert data["next_offset"] == 2

        event_id = data["items"][0]["id"]
        single = await client.get(f"/v1/audit/events/{event_id}", headers=AUTH)
        assert single.json()["data"]["actor_id"] == "admin-1"

        missing = await client.get("/v1/audit/events/999999", headers=AUTH)
        assert missing.status_code == 404


@pytest.mark.asyncio
async def test_kill_switch_and_hydrate_all_over_http() -> None:
    async with _client() as client:
        started = await client.post(
            "/v1/hydrate-all",
            json={"subject_id": "S1", "language": "en", "difficulties": ["easy"]},
            headers=AUTH,
        )
        assert started.status_code == 202
        root_job_id = started.json()["data"]["root_job_id"]

        progress = await client.get(f"/v1/hydrate-all/{root_job_id}", headers=AUTH)
        assert progress.json()["data"]["cascade_status"] == "running"
        assert progress.json()["data"]["syllabus_status"] == "pending"

        switched = await client.put("/v1/system-settings/hydration_disabled", json={"value": "true"}, headers=AUTH)
        assert switched.status_code == 200
        assert switched.json()["data"]["key"] == "HYDRATION_DISABLED"
        assert switched.json()["data"]["updated_by"] == "admin-1"

        blocked = await client.post(
            "/v1/content-jobs",
            json={"job_kind": "notes", "target_type": "topic", "target_id": "T1", "payload": {"language": "en"}},
            headers=AUTH,
        )
        assert blocked.status_code == 503
        assert blocked.json()["error"]["code"] == "HYDRATION_DISABLED"

        listed = await client.get("/v1/system-settings", headers=AUTH)
        assert [item["key"] for item in listed.json()["data"]["items"]] == ["HYDRATION_DISABLED"]

        unknown = await client.get("/v1/hydrate-all/missing", headers=AUTH)
        assert unknown.status_code == 404

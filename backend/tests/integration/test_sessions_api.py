"""
Integration Tests — Sessions, Collections and Job endpoints
═══════════════════════════════════════════════════════════
These tests exercise the FULL FastAPI routing stack, including:
  - Dependency injection chain (services, dispatcher, settings overridden)
  - Caller identity from X-User-ID
  - Response status codes and body schemas
  - Structured error bodies

What is mocked vs real
──────────────────────
  ✅ Real: FastAPI routing, Pydantic validation, SessionStateMachine,
           DocumentPipeline, JobQueue, Reaper, CollectionPersister
  🔲 Mock: PostgreSQL       (InMemoryPipelineStore)
  🔲 Mock: Language model   (FakeGateway)
  🔲 Mock: Embeddings API   (FakeEmbeddingsClient)
  🔲 Mock: Object storage   (FakeStorage)
  🔲 Mock: Celery broker    (RecordingDispatcher)

How to run
──────────
  pytest -m integration backend/tests/integration/test_sessions_api.py -v
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from docqa.api.deps import get_app_settings
from tests.conftest import CJK_PARAGRAPH, RecordingDispatcher, qa_json, segments_json


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

async def _submit(client, headers, file_ref, options=None):
    body = {"file": file_ref}
    if options is not None:
        body["options"] = options
    return await client.post("/api/v1/sessions", json=body, headers=headers)


# ─────────────────────────────────────────────────────────────────────────────
# POST /api/v1/sessions
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestCreateSession:

    async def test_returns_202_and_dispatches(self, async_client, auth_headers, file_ref_payload, dispatcher, store):
        response = await _submit(async_client, auth_headers, file_ref_payload)

        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "pending"
        session_id = uuid.UUID(body["session_id"])
        assert dispatcher.dispatched == [(session_id, 0)]
        assert store.sessions[session_id].processing_options["language"] == "ja"

    async def test_options_stored(self, async_client, auth_headers, file_ref_payload, store):
        response = await _submit(
            async_client, auth_headers, file_ref_payload,
            {"segmentation_strategy": "structural", "quality_threshold": 0.5, "language": "en"},
        )
        options = store.sessions[uuid.UUID(response.json()["session_id"])].processing_options
        assert options["segmentation_strategy"] == "structural"
        assert options["quality_threshold"] == 0.5
        assert options["language"] == "en"

    async def test_unsupported_mime_type(self, async_client, auth_headers, file_ref_payload, dispatcher):
        file_ref = {**file_ref_payload, "name": "notes.docx",
                    "mime_type": "application/vnd.openxmlformats-officedocument.wordprocessingml.document"}
        response = await _submit(async_client, auth_headers, file_ref)

        assert response.status_code == 415
        assert response.json()["detail"]["error_code"] == "UNSUPPORTED_FILE_TYPE"
        assert dispatcher.dispatched == []

    async def test_invalid_options(self, async_client, auth_headers, file_ref_payload, store):
        response = await _submit(async_client, auth_headers, file_ref_payload, {"quality_threshold": 1.5})

        assert response.status_code == 422
        detail = response.json()["detail"]
        assert detail["error_code"] == "VALIDATION_ERROR"
        assert detail["details"][0]["field"] == "options.quality_threshold"
        assert store.sessions == {}

    async def test_malformed_body_uses_error_envelope(self, async_client, auth_headers):
        response = await async_client.post("/api/v1/sessions", json={"file": {"name": "x"}}, headers=auth_headers)
        assert response.status_code == 422
        assert response.json()["error_code"] == "VALIDATION_ERROR"

    async def test_missing_user_header(self, async_client, file_ref_payload):
        response = await _submit(async_client, {}, file_ref_payload)
        assert response.status_code == 401
        assert response.json()["detail"]["error_code"] == "UNAUTHORIZED"

    async def test_dispatch_failure_still_accepted(self, async_client, app_with_overrides, auth_headers, file_ref_payload, store):
        from docqa.api.deps import get_dispatcher
        from docqa.services.dispatch import DispatchError

        app_with_overrides.dependency_overrides[get_dispatcher] = lambda: RecordingDispatcher(
            error=DispatchError("broker unreachable"),
        )
        response = await _submit(async_client, auth_headers, file_ref_payload)

        assert response.status_code == 202
        assert store.sessions[uuid.UUID(response.json()["session_id"])].status == "pending"


# ─────────────────────────────────────────────────────────────────────────────
# GET / DELETE /api/v1/sessions/{id}
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestSessionStatusAndCancel:

    async def test_poll_status(self, async_client, auth_headers, file_ref_payload):
        created = await _submit(async_client, auth_headers, file_ref_payload)
        session_id = created.json()["session_id"]

        response = await async_client.get(f"/api/v1/sessions/{session_id}", headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "pending"
        assert body["progress"] == 0
        assert body["collection_id"] is None

    async def test_other_users_session_is_404(self, async_client, auth_headers, other_user_id, file_ref_payload):
        created = await _submit(async_client, auth_headers, file_ref_payload)
        session_id = created.json()["session_id"]

        response = await async_client.get(
            f"/api/v1/sessions/{session_id}", headers={"X-User-ID": str(other_user_id)},
        )
        assert response.status_code == 404
        assert response.json()["detail"]["error_code"] == "SESSION_NOT_FOUND"

    async def test_cancel(self, async_client, auth_headers, file_ref_payload):
        created = await _submit(async_client, auth_headers, file_ref_payload)
        session_id = created.json()["session_id"]

        response = await async_client.delete(f"/api/v1/sessions/{session_id}", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["cancelled"] is True

        again = await async_client.delete(f"/api/v1/sessions/{session_id}", headers=auth_headers)
        assert again.json()["cancelled"] is False

        status_body = (await async_client.get(f"/api/v1/sessions/{session_id}", headers=auth_headers)).json()
        assert status_body["status"] == "cancelled"
        assert status_body["current_step"] == "Cancelled by user"

    async def test_cancel_unknown_session(self, async_client, auth_headers):
        response = await async_client.delete(f"/api/v1/sessions/{uuid.uuid4()}", headers=auth_headers)
        assert response.status_code == 404


# ─────────────────────────────────────────────────────────────────────────────
# POST /api/v1/sessions/{id}/retry
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestRetry:

    async def test_pending_session_cannot_be_retried(self, async_client, auth_headers, file_ref_payload):
        created = await _submit(async_client, auth_headers, file_ref_payload)
        session_id = created.json()["session_id"]

        response = await async_client.post(f"/api/v1/sessions/{session_id}/retry", headers=auth_headers)
        assert response.status_code == 409
        assert response.json()["detail"]["error_code"] == "RETRY_NOT_ALLOWED"

    async def test_failed_session_retried(self, async_client, auth_headers, file_ref_payload, store):
        created = await _submit(async_client, auth_headers, file_ref_payload)
        session_id = uuid.UUID(created.json()["session_id"])
        store.backdate(session_id, status="failed", error_message="boom")

        response = await async_client.post(f"/api/v1/sessions/{session_id}/retry", headers=auth_headers)

        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "pending"
        assert body["retry_count"] == 1
        job = store.jobs[uuid.UUID(body["job_id"])]
        assert job.priority == 10

    async def test_retry_limit(self, async_client, auth_headers, file_ref_payload, store):
        created = await _submit(async_client, auth_headers, file_ref_payload)
        session_id = uuid.UUID(created.json()["session_id"])
        store.backdate(session_id, status="failed", retry_count=3)

        response = await async_client.post(f"/api/v1/sessions/{session_id}/retry", headers=auth_headers)
        assert response.status_code == 409

    async def test_retry_unknown_session(self, async_client, auth_headers):
        response = await async_client.post(f"/api/v1/sessions/{uuid.uuid4()}/retry", headers=auth_headers)
        assert response.status_code == 404


# ─────────────────────────────────────────────────────────────────────────────
# Job endpoints + collection items (full run through the queue)
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestJobsAndCollections:

    async def test_worker_runs_queued_session(
        self, async_client, auth_headers, cron_headers, file_ref_payload, services, gateway,
    ):
        gateway.extraction = [segments_json(CJK_PARAGRAPH)]
        gateway.qa         = [qa_json("機械学習とは？", "教師あり学習とは？")]
        created = await _submit(async_client, auth_headers, file_ref_payload)
        session_id = uuid.UUID(created.json()["session_id"])
        await services.queue.enqueue(session_id)

        worker = await async_client.post("/api/v1/jobs/worker", headers=cron_headers)
        assert worker.status_code == 200
        assert worker.json() == {"processed": True}

        status_body = (await async_client.get(f"/api/v1/sessions/{session_id}", headers=auth_headers)).json()
        assert status_body["status"] == "completed"
        assert status_body["progress"] == 100

        collection_id = status_body["collection_id"]
        items = await async_client.get(f"/api/v1/collections/{collection_id}/items", headers=auth_headers)
        assert items.status_code == 200
        body = items.json()
        assert body["total"] == 2
        assert [i["question"] for i in body["items"]] == ["機械学習とは？", "教師あり学習とは？"]
        assert {i["review_status"] for i in body["items"]} == {"pending"}
        assert all(i["has_embedding"] for i in body["items"])

    async def test_worker_with_empty_queue(self, async_client, cron_headers):
        response = await async_client.post("/api/v1/jobs/worker", headers=cron_headers)
        assert response.json() == {"processed": False}

    async def test_cleanup_reaps_stuck_session(self, async_client, auth_headers, cron_headers, file_ref_payload, services, store):
        created = await _submit(async_client, auth_headers, file_ref_payload)
        session_id = uuid.UUID(created.json()["session_id"])
        await services.state_machine.begin(session_id)
        store.backdate(session_id, started_at=datetime.now(timezone.utc) - timedelta(minutes=16))

        response = await async_client.post("/api/v1/jobs/cleanup", headers=cron_headers)

        assert response.status_code == 200
        assert response.json()["cleaned"] == 1
        assert store.sessions[session_id].error_detail["reason"] == "timeout"

    async def test_wrong_cron_secret(self, async_client):
        response = await async_client.post("/api/v1/jobs/worker", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    async def test_jobs_disabled_without_secret(self, async_client, app_with_overrides, settings, cron_headers):
        app_with_overrides.dependency_overrides[get_app_settings] = lambda: settings.model_copy(
            update={"cron_secret": ""},
        )
        response = await async_client.post("/api/v1/jobs/cleanup", headers=cron_headers)
        assert response.status_code == 503
        assert response.json()["detail"]["error_code"] == "JOB_ENDPOINTS_DISABLED"

    async def test_other_users_collection_is_404(self, async_client, other_user_id, services, store, user_id, file_ref_payload):
        from docqa.schemas.sessions import FileRef, ProcessingOptions

        session_id = await services.state_machine.create_session(
            user_id, FileRef(**file_ref_payload), ProcessingOptions(),
        )
        collection_id = await services.persister.persist(await store.get_session(session_id), [])

        response = await async_client.get(
            f"/api/v1/collections/{collection_id}/items", headers={"X-User-ID": str(other_user_id)},
        )
        assert response.status_code == 404
        assert response.json()["detail"]["error_code"] == "COLLECTION_NOT_FOUND"


@pytest.mark.integration
async def test_health(async_client):
    response = await async_client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"

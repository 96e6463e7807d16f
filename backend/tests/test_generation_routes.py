"""API tests for generation endpoints.

Tests cover:
- POST /api/generate/customized-ads and /quick-ads, including a run where the
  engine posts its callback back through the API
- POST /api/generate/callback validation and shared-key check
- GET /api/generate/job-images
- POST /api/generate/charge-partial
- POST /api/generation-jobs/status-check
- GET /health
"""

from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from blumpo.app import app
from blumpo.models import JobStatus


@pytest_asyncio.fixture
async def test_client(
    settings, session_factory, uow_factory, rendezvous, orchestrator, ingestor
):
    """Provide AsyncClient for testing API endpoints with database access."""
    # Inject services into app.state for dependency injection
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.uow_factory = uow_factory
    app.state.rendezvous = rendezvous
    app.state.orchestrator = orchestrator
    app.state.ingestor = ingestor

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


def _auth(user_id) -> dict[str, str]:
    return {"X-User-Id": str(user_id)}


async def _refunded_failed_job(seed, uow_factory, user_id):
    await seed.account(user_id, balance=500)
    job = await seed.job(user_id, status=JobStatus.FAILED)
    async with await uow_factory() as uow:
        await uow.token_ledger.reserve(user_id, 80, job.id)
    async with await uow_factory() as uow:
        await uow.token_ledger.refund(user_id, job.id)
    return job


class TestStartEndpoints:
    @pytest.mark.asyncio
    async def test_customized_ads_end_to_end(
        self, test_client, fake_dispatcher, seed, user_id, uow_factory
    ):
        await seed.account(user_id, balance=500, plan_code="PRO")
        job = await seed.job(user_id, formats=["1:1", "9:16"])

        async def engine(payload):
            await seed.image(job)
            response = await test_client.post(
                "/api/generate/callback",
                json={"job_id": payload["job_id"], "status": "completed", "result": "{'ok': True}"},
            )
            assert response.status_code == 200
            assert response.json()["images_count"] == 1

        fake_dispatcher.on_trigger = engine

        response = await test_client.post(
            "/api/generate/customized-ads", json={"jobId": str(job.id)}, headers=_auth(user_id)
        )

        assert response.status_code == 200
        data = response.json()
        assert data["job_id"] == str(job.id)
        assert data["status"] == "SUCCEEDED"
        assert data["tokens_used"] == 80
        assert len(data["images"]) == 1
        async with await uow_factory() as uow:
            assert await uow.token_ledger.get_balance(user_id) == 420

    @pytest.mark.asyncio
    async def test_requires_authentication(self, test_client):
        response = await test_client.post(
            "/api/generate/customized-ads", json={"jobId": str(uuid4())}
        )

        assert response.status_code == 401
        assert response.json() == {"error": "Unauthorized", "error_code": "AUTH_REQUIRED"}

    @pytest.mark.asyncio
    async def test_missing_job_id(self, test_client, user_id):
        response = await test_client.post(
            "/api/generate/quick-ads", json={}, headers=_auth(user_id)
        )

        assert response.status_code == 400
        assert response.json()["error"] == "Missing jobId"

    @pytest.mark.asyncio
    async def test_insufficient_tokens(self, test_client, fake_dispatcher, seed, user_id):
        await seed.account(user_id, balance=50)
        job = await seed.job(user_id, formats=["1:1", "9:16"])

        response = await test_client.post(
            "/api/generate/customized-ads", json={"jobId": str(job.id)}, headers=_auth(user_id)
        )

        assert response.status_code == 402
        assert response.json() == {
            "error": "Insufficient tokens",
            "error_code": "INSUFFICIENT_TOKENS",
            "job_id": str(job.id),
            "tokens_required": 80,
        }
        assert fake_dispatcher.calls == []

    @pytest.mark.asyncio
    async def test_failed_generation_returns_500_with_refund(
        self, test_client, fake_dispatcher, ingestor, seed, user_id
    ):
        await seed.account(user_id, balance=500, plan_code="PRO")
        job = await seed.job(user_id)

        async def engine(payload):
            await ingestor.ingest(
                {"job_id": payload["job_id"], "status": "failed", "result": "Render crashed"}
            )

        fake_dispatcher.on_trigger = engine

        response = await test_client.post(
            "/api/generate/customized-ads", json={"jobId": str(job.id)}, headers=_auth(user_id)
        )

        assert response.status_code == 500
        data = response.json()
        assert data["status"] == "FAILED"
        assert data["error_message"] == "Render crashed"
        assert data["tokens_refunded"] == 50

    @pytest.mark.asyncio
    async def test_dispatch_error_returns_502(self, test_client, fake_dispatcher, seed, user_id):
        await seed.account(user_id, balance=500)
        job = await seed.job(user_id)
        fake_dispatcher.fail_with("Workflow could not be started", upstream_status=500)

        response = await test_client.post(
            "/api/generate/customized-ads", json={"jobId": str(job.id)}, headers=_auth(user_id)
        )

        assert response.status_code == 502
        data = response.json()
        assert data["error_code"] == "WEBHOOK_ERROR"
        assert data["tokens_refunded"] == 50
        assert data["upstream_status"] == 500

    @pytest.mark.asyncio
    async def test_timeout_returns_504(self, test_client, seed, user_id):
        await seed.account(user_id, balance=500)
        job = await seed.job(user_id)

        response = await test_client.post(
            "/api/generate/customized-ads", json={"jobId": str(job.id)}, headers=_auth(user_id)
        )

        assert response.status_code == 504
        data = response.json()
        assert data["error_code"] == "TIMEOUT"
        assert data["status"] == "FAILED"
        assert data["tokens_refunded"] == 50

    @pytest.mark.asyncio
    async def test_finished_job_cannot_restart(self, test_client, seed, user_id):
        job = await seed.job(user_id, auto_generated=True, status=JobStatus.SUCCEEDED)

        response = await test_client.post(
            "/api/generate/quick-ads", json={"jobId": str(job.id)}, headers=_auth(user_id)
        )

        assert response.status_code == 400
        assert response.json()["error_code"] == "ALREADY_FINISHED"


class TestCallbackEndpoint:
    @pytest.mark.asyncio
    async def test_invalid_json(self, test_client):
        response = await test_client.post(
            "/api/generate/callback",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_REQUEST"

    @pytest.mark.asyncio
    async def test_body_must_be_object(self, test_client):
        response = await test_client.post("/api/generate/callback", json=["job"])

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_missing_job_id(self, test_client):
        response = await test_client.post("/api/generate/callback", json={"status": "completed"})

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_job(self, test_client):
        response = await test_client.post(
            "/api/generate/callback", json={"job_id": str(uuid4()), "status": "completed"}
        )

        assert response.status_code == 404
        assert response.json()["error_code"] == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_failed_job_is_still_ingested(self, test_client, seed, user_id):
        job = await seed.job(user_id, status=JobStatus.RUNNING)

        response = await test_client.post(
            "/api/generate/callback",
            json={"job_id": str(job.id), "status": "failed", "result": {"ok": False}},
        )

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "job_id": str(job.id),
            "status": "FAILED",
            "images_count": 0,
        }

    @pytest.mark.asyncio
    async def test_internal_error_returns_500(self, test_client):
        class BrokenIngestor:
            async def ingest(self, payload):
                raise RuntimeError("database went away")

        app.state.ingestor = BrokenIngestor()

        response = await test_client.post(
            "/api/generate/callback", json={"job_id": str(uuid4()), "status": "completed"}
        )

        assert response.status_code == 500
        assert response.json() == {
            "error": "Internal server error",
            "message": "database went away",
        }

    @pytest.mark.asyncio
    async def test_shared_key_required_when_configured(self, test_client, settings, seed, user_id):
        app.state.settings = settings.model_copy(update={"callback_secret": "s3cret"})
        job = await seed.job(user_id, status=JobStatus.RUNNING)
        body = {"job_id": str(job.id), "status": "failed"}

        missing = await test_client.post("/api/generate/callback", json=body)
        wrong = await test_client.post(
            "/api/generate/callback", json=body, headers={"x-agent-key": "guess"}
        )
        right = await test_client.post(
            "/api/generate/callback", json=body, headers={"x-agent-key": "s3cret"}
        )

        assert missing.status_code == 401
        assert wrong.status_code == 401
        assert right.status_code == 200


class TestJobImages:
    @pytest.mark.asyncio
    async def test_lists_displayable_images(self, test_client, seed, user_id):
        workflow = await seed.workflow("testimonial")
        job = await seed.job(user_id, status=JobStatus.SUCCEEDED)
        shown = await seed.image(job, workflow_id=workflow.id)
        hidden = await seed.image(job, is_deleted=True)
        await seed.image(job, error_flag=True)

        response = await test_client.get(
            "/api/generate/job-images", params={"jobId": str(job.id)}, headers=_auth(user_id)
        )

        assert response.status_code == 200
        images = {image["id"]: image for image in response.json()}
        assert set(images) == {str(shown.id), str(hidden.id)}
        assert images[str(shown.id)]["archetype"]["code"] == "testimonial"
        assert images[str(hidden.id)]["archetype"] is None

    @pytest.mark.asyncio
    async def test_foreign_job_is_not_found(self, test_client, seed, user_id):
        job = await seed.job(user_id)

        response = await test_client.get(
            "/api/generate/job-images", params={"jobId": str(job.id)}, headers=_auth(uuid4())
        )

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_requires_authentication(self, test_client):
        response = await test_client.get(
            "/api/generate/job-images", params={"jobId": str(uuid4())}
        )

        assert response.status_code == 401


class TestChargePartial:
    @pytest.mark.asyncio
    async def test_charges_once(self, test_client, seed, user_id, uow_factory):
        job = await _refunded_failed_job(seed, uow_factory, user_id)

        first = await test_client.post(
            "/api/generate/charge-partial", json={"jobId": str(job.id)}, headers=_auth(user_id)
        )
        second = await test_client.post(
            "/api/generate/charge-partial", json={"jobId": str(job.id)}, headers=_auth(user_id)
        )

        assert first.status_code == 200
        assert first.json() == {"success": True, "tokens_deducted": 50}
        assert second.status_code == 200
        async with await uow_factory() as uow:
            assert await uow.token_ledger.get_balance(user_id) == 450

    @pytest.mark.asyncio
    async def test_job_must_be_failed_or_canceled(self, test_client, seed, user_id):
        await seed.account(user_id)
        job = await seed.job(user_id, status=JobStatus.SUCCEEDED)

        response = await test_client.post(
            "/api/generate/charge-partial", json={"jobId": str(job.id)}, headers=_auth(user_id)
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_job_never_refunded(self, test_client, seed, user_id):
        await seed.account(user_id)
        job = await seed.job(user_id, status=JobStatus.FAILED)

        response = await test_client.post(
            "/api/generate/charge-partial", json={"jobId": str(job.id)}, headers=_auth(user_id)
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_insufficient_tokens(self, test_client, seed, user_id, uow_factory):
        job = await _refunded_failed_job(seed, uow_factory, user_id)
        spend = uuid4()
        async with await uow_factory() as uow:
            await uow.token_ledger.reserve(user_id, 480, spend)

        response = await test_client.post(
            "/api/generate/charge-partial", json={"jobId": str(job.id)}, headers=_auth(user_id)
        )

        assert response.status_code == 402
        assert response.json()["tokens_required"] == 50

    @pytest.mark.asyncio
    async def test_foreign_job(self, test_client, seed, user_id, uow_factory):
        job = await _refunded_failed_job(seed, uow_factory, user_id)

        response = await test_client.post(
            "/api/generate/charge-partial", json={"jobId": str(job.id)}, headers=_auth(uuid4())
        )

        assert response.status_code == 404


class TestStatusCheck:
    @pytest.mark.asyncio
    async def test_returns_published_results(self, test_client, ingestor, seed, user_id):
        await seed.account(user_id, plan_code="PRO")
        job = await seed.job(user_id, status=JobStatus.RUNNING)
        await seed.image(job)
        await ingestor.ingest({"job_id": str(job.id), "status": "done", "result": {"ok": True}})
        pending = str(uuid4())

        response = await test_client.post(
            "/api/generation-jobs/status-check",
            json={"jobIds": [str(job.id), pending]},
            headers=_auth(user_id),
        )

        assert response.status_code == 200
        data = response.json()
        assert data[pending] is None
        assert data[str(job.id)]["status"] == "SUCCEEDED"
        assert len(data[str(job.id)]["images"]) == 1

    @pytest.mark.asyncio
    async def test_validates_job_ids(self, test_client, user_id):
        empty = await test_client.post(
            "/api/generation-jobs/status-check", json={"jobIds": []}, headers=_auth(user_id)
        )
        too_many = await test_client.post(
            "/api/generation-jobs/status-check",
            json={"jobIds": [str(uuid4()) for _ in range(101)]},
            headers=_auth(user_id),
        )

        assert empty.status_code == 400
        assert too_many.status_code == 400

    @pytest.mark.asyncio
    async def test_requires_authentication(self, test_client):
        response = await test_client.post(
            "/api/generation-jobs/status-check", json={"jobIds": [str(uuid4())]}
        )

        assert response.status_code == 401


@pytest.mark.asyncio
async def test_health(test_client):
    response = await test_client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}

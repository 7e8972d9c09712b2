"""
HTTP surface tests using FastAPI TestClient with auth overridden.
"""

import asyncio
import pytest
from unittest.mock import patch

from api import database as db
from api import queue_manager

from conftest import WORKER_SECRET, seed_applied_today, seed_jobs, seed_user


pytestmark = pytest.mark.integration


def _run(coro):
    return asyncio.run(coro)


class TestHealthAndAuth:

    def test_health(self, authenticated_client):
        response = authenticated_client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_queue_requires_bearer_token(self, temp_db):
        from fastapi.testclient import TestClient
        from api.main import app

        response = TestClient(app).get("/api/job-queue/status")
        assert response.status_code == 401

    def test_real_token_accepted(self, temp_db, auth_headers):
        from fastapi.testclient import TestClient
        from api.main import app

        _run(seed_user())
        response = TestClient(app).get("/api/job-queue/status", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["dailyLimit"] == 5


class TestQueueRoutes:

    def test_enqueue_and_status(self, authenticated_client):
        user_id = authenticated_client.user_id
        jobs = _run(seed_jobs(user_id, 2))

        response = authenticated_client.post("/api/job-queue/enqueue", json={"jobIds": jobs})

        assert response.status_code == 200
        body = response.json()
        assert [a["jobId"] for a in body["accepted"]] == jobs
        assert body["remainingSlots"] == 3

        status = authenticated_client.get("/api/job-queue/status").json()
        assert status["queued"] == 2
        assert status["currentStatus"] == "processing"
        assert len(status["entries"]) == 2

    def test_enqueue_over_quota_is_429(self, authenticated_client):
        user_id = authenticated_client.user_id
        _run(seed_applied_today(user_id, 5))
        jobs = _run(seed_jobs(user_id, 1))

        response = authenticated_client.post("/api/job-queue/enqueue", json={"jobIds": jobs})

        assert response.status_code == 429
        body = response.json()
        assert body["error"] == "QuotaExceeded"
        assert body["remaining_slots"] == 0

    def test_enqueue_validates_body(self, authenticated_client):
        response = authenticated_client.post("/api/job-queue/enqueue", json={"jobIds": []})
        assert response.status_code == 422

    def test_dequeue(self, authenticated_client):
        user_id = authenticated_client.user_id
        jobs = _run(seed_jobs(user_id, 1))
        queue_id = _run(queue_manager.enqueue(user_id, jobs))["accepted"][0]["queueId"]

        assert authenticated_client.delete(f"/api/job-queue/{queue_id}").status_code == 200
        assert authenticated_client.delete(f"/api/job-queue/{queue_id}").status_code == 404

    def test_resubmit_applied_is_412(self, authenticated_client):
        user_id = authenticated_client.user_id
        job_id = _run(seed_jobs(user_id, 1, application_status="applied"))[0]

        response = authenticated_client.post(f"/api/jobs/{job_id}/resubmit")

        assert response.status_code == 412
        assert response.json()["detail"] == "Only failed applications can be resubmitted"

    def test_logs(self, authenticated_client):
        user_id = authenticated_client.user_id
        _run(queue_manager.enqueue(user_id, _run(seed_jobs(user_id, 1))))

        logs = authenticated_client.get("/api/auto-apply/logs?limit=10").json()["logs"]

        assert logs[0]["status"] == "Queued"


class TestEvaluateRoutes:

    def test_evaluate_and_progress(self, authenticated_client, mock_ai):
        postings = [
            {"title": "Backend Engineer", "company": "Acme", "description": "Python",
             "applyUrl": "https://jobs.example.com/acme/1", "externalJobId": "acme-1"},
        ]

        with patch("api.main.get_application_ai", return_value=mock_ai):
            response = authenticated_client.post("/api/auto-apply/evaluate", json={"postings": postings})

        assert response.status_code == 200
        body = response.json()
        assert body["results"][0]["decision"] == "queued"

        progress = authenticated_client.get(f"/api/auto-apply/sessions/{body['sessionId']}").json()
        assert progress["evaluated"] == 1
        assert progress["accepted"] == 1

    def test_evaluate_rejects_bad_url(self, authenticated_client):
        postings = [{"title": "Engineer", "company": "Acme", "applyUrl": "ftp://nope"}]
        response = authenticated_client.post("/api/auto-apply/evaluate", json={"postings": postings})
        assert response.status_code == 422

    def test_unknown_session(self, authenticated_client):
        assert authenticated_client.get("/api/auto-apply/sessions/does-not-exist").status_code == 404


class TestWorkerRoutes:

    def test_worker_health(self, authenticated_client):
        body = authenticated_client.get("/api/worker/health").json()
        assert set(body) >= {"workerId", "running", "lastTickAt", "ticks"}


class TestCallbackRoute:

    def _processing(self, user_id):
        jobs = _run(seed_jobs(user_id, 1))
        queue_id = _run(queue_manager.enqueue(user_id, jobs))["accepted"][0]["queueId"]
        _run(queue_manager.claim(queue_id))
        return jobs[0], queue_id

    def test_wrong_secret_is_401(self, authenticated_client, worker_secret):
        job_id, queue_id = self._processing(authenticated_client.user_id)

        response = authenticated_client.post(
            "/worker/update-job-status",
            json={"queueId": queue_id, "jobId": job_id, "userId": authenticated_client.user_id,
                  "finalStatus": "completed"},
            headers={"x-worker-secret": "nope"},
        )

        assert response.status_code == 401
        assert _run(db.get_queue_entry(queue_id))["status"] == "processing"

    def test_completed_callback(self, authenticated_client, worker_secret):
        job_id, queue_id = self._processing(authenticated_client.user_id)

        response = authenticated_client.post(
            "/worker/update-job-status",
            json={"queueId": queue_id, "jobId": job_id, "userId": authenticated_client.user_id,
                  "finalStatus": "completed", "message": "Submitted"},
            headers={"x-worker-secret": WORKER_SECRET},
        )

        assert response.status_code == 200
        assert response.json()["queueStatus"] == "completed"
        assert _run(db.get_tracked_application(job_id))["application_status"] == "applied"

    def test_non_json_body(self, authenticated_client, worker_secret):
        response = authenticated_client.post(
            "/worker/update-job-status",
            content=b"not json",
            headers={"x-worker-secret": WORKER_SECRET, "content-type": "application/json"},
        )
        assert response.status_code == 400

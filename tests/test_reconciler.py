"""
Callback Reconciler tests: authentication, correlation and idempotency.
"""

import pytest
from datetime import timedelta

from api import database as db
from api import queue_manager
from api.errors import BadRequest, NotFound, Unauthorized
from api.reconciler import map_final_status, on_executor_callback
from core.models import ApplicationStatus, QueueStatus

from conftest import seed_jobs, seed_user


pytestmark = pytest.mark.integration


async def _processing_entry():
    user_id = await seed_user()
    job_id = (await seed_jobs(user_id, 1))[0]
    result = await queue_manager.enqueue(user_id, [job_id])
    queue_id = result["accepted"][0]["queueId"]
    await queue_manager.claim(queue_id)
    return user_id, job_id, queue_id


def _body(user_id, job_id, queue_id, final_status="completed", **extra):
    return {"queueId": queue_id, "jobId": job_id, "userId": user_id, "finalStatus": final_status, **extra}


@pytest.mark.unit
@pytest.mark.parametrize("final_status,expected", [
    ("completed", (QueueStatus.COMPLETED, ApplicationStatus.APPLIED, "Applied")),
    ("SKIPPED", (QueueStatus.SKIPPED, ApplicationStatus.SKIPPED, "Skipped")),
    ("failed", (QueueStatus.FAILED, ApplicationStatus.FAILED, "Failed")),
    ("crashed", (QueueStatus.FAILED, ApplicationStatus.FAILED, "Failed")),
])
def test_map_final_status(final_status, expected):
    assert map_final_status(final_status) == expected


class TestAuthentication:

    @pytest.mark.asyncio
    async def test_wrong_secret_leaves_entry_processing(self, temp_db, worker_secret):
        user_id, job_id, queue_id = await _processing_entry()

        with pytest.raises(Unauthorized):
            await on_executor_callback(_body(user_id, job_id, queue_id), header_secret="wrong")

        assert (await db.get_queue_entry(queue_id))["status"] == "processing"

    @pytest.mark.asyncio
    async def test_unconfigured_secret_rejects_everything(self, temp_db):
        user_id, job_id, queue_id = await _processing_entry()

        with pytest.raises(Unauthorized):
            await on_executor_callback(_body(user_id, job_id, queue_id), header_secret="")

    @pytest.mark.asyncio
    async def test_secret_accepted_in_body(self, temp_db, worker_secret):
        user_id, job_id, queue_id = await _processing_entry()

        result = await on_executor_callback(_body(user_id, job_id, queue_id, secret=worker_secret))

        assert result.changed is True


class TestValidation:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("missing", ["queueId", "jobId", "userId", "finalStatus"])
    async def test_missing_fields(self, temp_db, worker_secret, missing):
        body = _body(1, 1, 1)
        body.pop(missing)

        with pytest.raises(BadRequest):
            await on_executor_callback(body, header_secret=worker_secret)

    @pytest.mark.asyncio
    async def test_non_numeric_id(self, temp_db, worker_secret):
        with pytest.raises(BadRequest):
            await on_executor_callback(_body("abc", 1, 1), header_secret=worker_secret)

    @pytest.mark.asyncio
    async def test_unknown_entry(self, temp_db, worker_secret):
        with pytest.raises(NotFound):
            await on_executor_callback(_body(1, 1, 9999), header_secret=worker_secret)

    @pytest.mark.asyncio
    async def test_mismatched_correlation(self, temp_db, worker_secret):
        user_id, job_id, queue_id = await _processing_entry()

        with pytest.raises(BadRequest):
            await on_executor_callback(_body(user_id + 1, job_id, queue_id), header_secret=worker_secret)

        assert (await db.get_queue_entry(queue_id))["status"] == "processing"


class TestOutcomes:

    @pytest.mark.asyncio
    async def test_completed_marks_application_applied(self, temp_db, worker_secret):
        user_id, job_id, queue_id = await _processing_entry()
        logs_before = await db.list_logs(user_id, job_id=job_id)

        result = await on_executor_callback(
            _body(user_id, job_id, queue_id, message="Submitted via Greenhouse"),
            header_secret=worker_secret,
        )

        entry = await db.get_queue_entry(queue_id)
        tracked = await db.get_tracked_application(job_id)
        logs_after = await db.list_logs(user_id, job_id=job_id)
        assert result.to_dict() == {
            "success": True,
            "queueId": queue_id,
            "changed": True,
            "queueStatus": "completed",
            "applicationStatus": "applied",
        }
        assert entry["status"] == "completed"
        assert tracked["status"] == "applied"
        assert tracked["application_status"] == "applied"
        assert tracked["applied_at"] is not None
        assert len(logs_after) == len(logs_before) + 1
        assert logs_after[0]["status"] == "Applied"
        assert (await db.get_quota_snapshot(user_id))["applied_today"] == 1

    @pytest.mark.asyncio
    async def test_unrecognised_status_fails_entry(self, temp_db, worker_secret):
        user_id, job_id, queue_id = await _processing_entry()

        await on_executor_callback(
            _body(user_id, job_id, queue_id, final_status="crashed", message="Browser crashed"),
            header_secret=worker_secret,
        )

        entry = await db.get_queue_entry(queue_id)
        assert entry["status"] == "failed"
        assert entry["error"] == "Browser crashed"
        assert (await db.get_tracked_application(job_id))["application_status"] == "failed"

    @pytest.mark.asyncio
    async def test_duplicate_callback_is_noop(self, temp_db, worker_secret):
        user_id, job_id, queue_id = await _processing_entry()
        body = _body(user_id, job_id, queue_id)

        await on_executor_callback(body, header_secret=worker_secret)
        again = await on_executor_callback(body, header_secret=worker_secret)

        assert again.changed is False
        assert again.queue_status == "completed"
        assert len(await db.list_logs(user_id, job_id=job_id)) == 1

    @pytest.mark.asyncio
    async def test_late_callback_supersedes_stale_timeout(self, temp_db, worker_secret):
        user_id, job_id, queue_id = await _processing_entry()
        async with db.get_db() as conn:
            old = (db.utcnow() - timedelta(hours=2)).isoformat()
            await conn.execute("UPDATE job_queue SET claimed_at = ? WHERE id = ?", (old, queue_id))
            await conn.commit()
        await db.reclaim_stale_processing(timedelta(minutes=45))

        result = await on_executor_callback(_body(user_id, job_id, queue_id), header_secret=worker_secret)

        entry = await db.get_queue_entry(queue_id)
        assert result.changed is True
        assert entry["status"] == "completed"
        assert entry["attempt_count"] == 1
        assert (await db.get_tracked_application(job_id))["application_status"] == "applied"

    @pytest.mark.asyncio
    async def test_late_failure_after_stale_timeout_is_noop(self, temp_db, worker_secret):
        user_id, job_id, queue_id = await _processing_entry()
        async with db.get_db() as conn:
            old = (db.utcnow() - timedelta(hours=2)).isoformat()
            await conn.execute("UPDATE job_queue SET claimed_at = ? WHERE id = ?", (old, queue_id))
            await conn.commit()
        await db.reclaim_stale_processing(timedelta(minutes=45))

        result = await on_executor_callback(
            _body(user_id, job_id, queue_id, final_status="failed"), header_secret=worker_secret
        )

        assert result.changed is False
        assert (await db.get_queue_entry(queue_id))["error"] == db.STALE_TIMEOUT_ERROR

    @pytest.mark.asyncio
    async def test_late_completion_drops_resubmitted_attempt(self, temp_db, worker_secret):
        user_id, job_id, queue_id = await _processing_entry()
        await db.reclaim_stale_processing(timedelta(seconds=-1))
        retry_id = (await queue_manager.resubmit(user_id, job_id))["queueId"]

        result = await on_executor_callback(_body(user_id, job_id, queue_id), header_secret=worker_secret)

        retry = await db.get_queue_entry(retry_id)
        assert result.changed is True
        assert retry["status"] == "skipped"
        assert retry["error"] == db.ALREADY_APPLIED_ERROR
        assert [log["status"] for log in await db.list_logs(user_id, job_id=job_id)][:2] == ["Applied", "Skipped"]

    @pytest.mark.asyncio
    async def test_later_failure_does_not_downgrade_applied(self, temp_db, worker_secret):
        user_id, job_id, queue_id = await _processing_entry()
        await db.mark_tracked_applied(job_id)

        await on_executor_callback(
            _body(user_id, job_id, queue_id, final_status="failed", message="Timed out"),
            header_secret=worker_secret,
        )

        assert (await db.get_queue_entry(queue_id))["status"] == "failed"
        assert (await db.get_tracked_application(job_id))["application_status"] == "applied"

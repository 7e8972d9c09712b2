"""
Callback Reconciler

Applies executor results to durable state. The executor delivers at least
once, so every path here is idempotent: an entry that is already resolved
acknowledges without touching anything.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from api import database as db
from api.auth import verify_worker_secret
from api.errors import BadRequest, InvalidTransition, NotFound, Unauthorized
from api.logging_config import logger, log_queue_transition
from core.models import ApplicationStatus, QueueStatus


# finalStatus -> (queue outcome, application status, log label)
OUTCOMES = {
    "completed": (QueueStatus.COMPLETED, ApplicationStatus.APPLIED, "Applied"),
    "skipped": (QueueStatus.SKIPPED, ApplicationStatus.SKIPPED, "Skipped"),
}
FAILED_OUTCOME = (QueueStatus.FAILED, ApplicationStatus.FAILED, "Failed")


def map_final_status(final_status: Optional[str]):
    return OUTCOMES.get((final_status or "").strip().lower(), FAILED_OUTCOME)


@dataclass
class ReconcileResult:
    queue_id: int
    changed: bool
    queue_status: str
    application_status: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "queueId": self.queue_id,
            "changed": self.changed,
            "queueStatus": self.queue_status,
            "applicationStatus": self.application_status,
        }


async def apply_outcome(queue_id: int, final_status: str, message: Optional[str] = None) -> ReconcileResult:
    """
    Resolve a processing entry and update its tracked application and the
    audit log together. Shared by the callback endpoint and the dispatch
    loop's synchronous skip/fail paths.
    """
    outcome, app_status, label = map_final_status(final_status)
    if outcome == QueueStatus.COMPLETED and not message:
        message = "Application submitted"
    try:
        entry = await db.record_outcome(queue_id, outcome, message, app_status, label)
    except LookupError:
        raise NotFound(f"Queue entry {queue_id} not found")
    except ValueError as e:
        raise InvalidTransition(str(e))

    if entry is None:
        current = await db.get_queue_entry(queue_id)
        logger.info(f"Queue {queue_id} already resolved as {current['status']}; ignoring '{final_status}'")
        return ReconcileResult(queue_id, False, current["status"], "")

    log_queue_transition(queue_id, entry["user_id"], entry["previous_status"], outcome.value, message)
    return ReconcileResult(queue_id, True, outcome.value, app_status.value)


def _require_int(body: Dict[str, Any], key: str) -> int:
    value = body.get(key)
    if value is None or value == "":
        raise BadRequest(f"Missing {key}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise BadRequest(f"Invalid {key}: {value!r}")


async def on_executor_callback(body: Dict[str, Any], header_secret: Optional[str] = None) -> ReconcileResult:
    """
    Handle POST /worker/update-job-status.

    Body: {queueId, jobId, userId, finalStatus, message, secret?}. The
    shared secret may arrive in the x-worker-secret header or the body.
    """
    secret = header_secret or body.get("secret")
    if not verify_worker_secret(secret):
        logger.error(f"Rejected executor callback with bad secret (queueId={body.get('queueId')})")
        raise Unauthorized("Invalid worker secret")

    queue_id = _require_int(body, "queueId")
    job_id = _require_int(body, "jobId")
    user_id = _require_int(body, "userId")
    final_status = body.get("finalStatus")
    if not final_status:
        raise BadRequest("Missing finalStatus")

    entry = await db.get_queue_entry(queue_id)
    if not entry:
        raise NotFound(f"Queue entry {queue_id} not found")
    if entry["job_id"] != job_id or entry["user_id"] != user_id:
        raise BadRequest("jobId/userId do not match the queue entry")

    result = await apply_outcome(queue_id, str(final_status), body.get("message"))
    logger.info(f"Executor callback for queue {queue_id}: {final_status} (changed={result.changed})")
    return result

"""
Queue & Quota Manager

Domain operations over the persistent job_queue: quota-gated enqueue,
batch selection, claim/resolve compare-and-set transitions, resubmission,
dequeue and the per-user status summary. Also hosts the evaluate pipeline
that feeds Match Gate results into the queue.
"""

from datetime import timedelta
from typing import Any, Dict, List, Optional

from api import database as db
from api.config import config
from api.errors import (
    AlreadyClaimed,
    InvalidTransition,
    NotFound,
    PreconditionFailed,
    QuotaExceeded,
)
from api.logging_config import logger, log_queue_transition
from ai.match_gate import MatchGate, SearchSession, format_explanation
from core.models import (
    Applicant,
    ApplicantProfile,
    ApplicationStatus,
    Posting,
    QueueStatus,
    ResumeFile,
)


# ============== Applicant context ==============

async def load_applicant(user_id: int) -> Optional[Applicant]:
    user = await db.get_user(user_id)
    if not user:
        return None
    profile_row = await db.get_profile(user_id)
    resume_row = await db.get_latest_resume(user_id)
    plan = await db.get_plan_for_user(user_id)

    resume = None
    if resume_row:
        resume = ResumeFile(
            filename=resume_row["filename"],
            content_type=resume_row.get("content_type") or "application/pdf",
            file_content=resume_row.get("file_content") or "",
            text=resume_row.get("parsed_text") or "",
        )
    return Applicant(
        user_id=user_id,
        name=user.get("name") or "",
        email=user.get("email") or "",
        phone=user.get("phone") or "",
        plan=plan,
        profile=ApplicantProfile.from_row(profile_row),
        resume=resume,
        auto_apply_enabled=bool(user.get("auto_apply_enabled", 1)),
    )


async def load_resume_text(user_id: int) -> Optional[str]:
    row = await db.get_latest_resume(user_id)
    return (row or {}).get("parsed_text")


# ============== Queue operations ==============

async def enqueue(user_id: int, job_ids: List[int]) -> Dict[str, Any]:
    """
    Admit the longest feasible prefix of job_ids.

    Raises QuotaExceeded when no slot is free before admitting anything;
    otherwise ids past the free slots come back in `rejected` with a
    limit_reached / queue_full reason.
    """
    result = await db.enqueue_jobs(user_id, list(job_ids))
    if result["remaining_slots"] <= 0:
        raise QuotaExceeded(
            remaining_slots=0,
            daily_limit=result["daily_limit"],
            applied_today=result["applied_today"],
            queued=result["queued"],
        )

    remaining = result["remaining_slots"] - len(result["accepted"])
    for item in result["accepted"]:
        log_queue_transition(item["queueId"], user_id, "new", QueueStatus.PENDING.value)
    if result["rejected"]:
        logger.info(f"Enqueue for user {user_id}: rejected {result['rejected']}")

    return {
        "accepted": result["accepted"],
        "rejected": result["rejected"],
        "remainingSlots": remaining,
        "dailyLimit": result["daily_limit"],
        "appliedToday": result["applied_today"],
    }


async def next_batch(limit: int) -> List[Dict[str, Any]]:
    return await db.fetch_pending_batch(limit)


async def claim(queue_id: int) -> Dict[str, Any]:
    """pending -> processing; AlreadyClaimed when someone else got there first."""
    if not await db.claim_queue_entry(queue_id):
        raise AlreadyClaimed(f"Queue entry {queue_id} is not pending")
    entry = await db.get_queue_entry(queue_id)
    log_queue_transition(queue_id, entry["user_id"], QueueStatus.PENDING.value, QueueStatus.PROCESSING.value)
    return entry


async def resolve(queue_id: int, outcome: QueueStatus, message: Optional[str] = None) -> bool:
    """processing -> terminal. Returns False for an already-resolved entry."""
    try:
        changed = await db.resolve_queue_entry(queue_id, outcome, message)
    except LookupError:
        raise NotFound(f"Queue entry {queue_id} not found")
    except ValueError as e:
        raise InvalidTransition(str(e))
    if changed:
        logger.info(f"Queue {queue_id} resolved as {outcome.value}")
    return changed


async def resubmit(user_id: int, job_id: int) -> Dict[str, Any]:
    """Re-queue a failed application; the stored match score is reused."""
    result = await db.requeue_failed_application(user_id, job_id)
    status = result["status"]
    if status == "not_found":
        raise NotFound(f"Tracked application {job_id} not found")
    if status == "not_failed":
        raise PreconditionFailed(
            "Only failed applications can be resubmitted",
            application_status=result["application_status"],
        )
    if status == "quota":
        raise QuotaExceeded(
            remaining_slots=0,
            daily_limit=result["daily_limit"],
            applied_today=result["applied_today"],
            queued=result["queued"],
        )

    log_queue_transition(result["queue_id"], user_id, "new", QueueStatus.PENDING.value, "resubmitted")
    return {
        "queueId": result["queue_id"],
        "jobId": job_id,
        "previousError": result["previous_error"],
        "matchScore": result["match_score"],
        "remainingSlots": result["remaining_slots"],
    }


async def dequeue(user_id: int, queue_id: int) -> Dict[str, Any]:
    try:
        removed = await db.delete_queue_entry(queue_id, user_id)
    except ValueError:
        raise InvalidTransition("An entry that is being processed cannot be removed")
    if not removed:
        raise NotFound(f"Queue entry {queue_id} not found")
    logger.info(f"Queue {queue_id} removed by user {user_id} (was {removed['status']})")
    return {"queueId": queue_id, "removed": True}


async def queue_status(user_id: int) -> Dict[str, Any]:
    snap = await db.get_quota_snapshot(user_id)
    counts = await db.get_queue_counts(user_id)

    if counts[QueueStatus.STANDBY.value] or snap["remaining_today"] == 0:
        current = "standby"
    elif counts[QueueStatus.PENDING.value] or counts[QueueStatus.PROCESSING.value]:
        current = "processing"
    else:
        current = "idle"

    next_reset = db.utc_midnight() + timedelta(days=1)
    return {
        "currentStatus": current,
        "counts": counts,
        "queued": counts[QueueStatus.PENDING.value] + counts[QueueStatus.PROCESSING.value],
        "standby": counts[QueueStatus.STANDBY.value],
        "appliedToday": snap["applied_today"],
        "dailyLimit": snap["daily_limit"],
        "remainingToday": snap["remaining_today"],
        "remainingSlots": max(0, snap["remaining_slots"]),
        "plan": snap["plan"].id,
        "nextReset": next_reset.isoformat(),
    }


# ============== Match Gate -> Queue ==============

async def evaluate_postings(
    user_id: int,
    postings: List[Posting],
    gate: MatchGate,
    session: Optional[SearchSession] = None,
) -> Dict[str, Any]:
    """
    Score each posting, track it, and enqueue those at or above the user's
    threshold in input order.
    """
    session = session or SearchSession(user_id=user_id)
    profile = await db.get_profile(user_id)
    threshold = (profile or {}).get("match_score_threshold") or config.DEFAULT_MATCH_THRESHOLD

    results: List[Dict[str, Any]] = []
    candidates: List[int] = []
    for posting in postings:
        match = await gate.score(user_id, posting, session)
        tracked = await db.upsert_tracked_application(
            user_id,
            {
                "title": posting.title,
                "company": posting.company,
                "external_job_id": posting.external_job_id,
                "apply_url": posting.apply_url,
                "description": posting.description,
                "location": posting.location,
                "source": posting.source,
            },
            match.score,
            format_explanation(match),
        )
        entry = {
            "jobId": tracked["id"],
            "title": posting.title,
            "company": posting.company,
            "score": match.score,
            "reasons": match.reasons,
            "scoreSource": match.source,
        }
        if tracked["application_status"] == ApplicationStatus.APPLIED.value:
            entry["decision"] = "already_applied"
        elif match.score >= threshold:
            entry["decision"] = "candidate"
            candidates.append(tracked["id"])
        else:
            entry["decision"] = "below_threshold"
        results.append(entry)

    accepted_ids: set = set()
    rejections: Dict[int, str] = {}
    remaining_slots = None
    if candidates:
        try:
            outcome = await enqueue(user_id, candidates)
            accepted_ids = {item["jobId"] for item in outcome["accepted"]}
            rejections = {item["jobId"]: item["reason"] for item in outcome["rejected"]}
            remaining_slots = outcome["remainingSlots"]
        except QuotaExceeded:
            rejections = {job_id: "limit_reached" for job_id in candidates}
            remaining_slots = 0

    for entry in results:
        if entry["decision"] != "candidate":
            session.record(False)
            continue
        if entry["jobId"] in accepted_ids:
            entry["decision"] = "queued"
            session.record(True)
        else:
            entry["decision"] = rejections.get(entry["jobId"], "rejected")
            session.record(False)

    await db.save_search_progress(session.id, user_id, session.evaluated, session.accepted, session.rejected)
    return {
        "sessionId": session.id,
        "threshold": threshold,
        "results": results,
        "progress": session.progress(),
        "remainingSlots": remaining_slots,
    }

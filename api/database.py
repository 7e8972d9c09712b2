"""
Database module for the Auto-Apply Orchestrator.
Implements SQLite persistence with async support.

Claim and resolve are single-row compare-and-set updates; multi-step
read-then-write operations (enqueue, resubmit, standby moves) run under
BEGIN IMMEDIATE so concurrent callers serialise on the write lock.
"""

import os
import json
import aiosqlite
from datetime import datetime, timedelta, timezone
from typing import Optional, List, Dict, Any, Iterable
from pathlib import Path
from contextlib import asynccontextmanager

from core.models import (
    ACTIVE_QUEUE_STATUSES,
    DEFAULT_PLANS,
    ApplicationStatus,
    LifecycleStatus,
    QueueStatus,
    SubscriptionPlan,
)

# Database configuration
DB_PATH = Path(os.getenv("DATABASE_PATH", Path(__file__).parent.parent / "data" / "auto_apply.db"))
DB_PATH.parent.mkdir(parents=True, exist_ok=True)

STALE_TIMEOUT_ERROR = "Executor callback timed out"
ALREADY_APPLIED_ERROR = "Already applied to this job"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def utc_midnight(now: Optional[datetime] = None) -> datetime:
    now = now or utcnow()
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


async def init_database():
    """Initialize the database schema."""
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT,
                email TEXT UNIQUE NOT NULL,
                phone TEXT,
                subscription_plan TEXT DEFAULT 'FREE',
                auto_apply_enabled INTEGER DEFAULT 1,
                created_at TEXT
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS subscription_plans (
                id TEXT PRIMARY KEY,
                daily_limit INTEGER NOT NULL,
                resumes_allowed INTEGER DEFAULT 1,
                priority INTEGER DEFAULT 0,
                ai_tier TEXT DEFAULT 'basic'
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS user_profiles (
                user_id INTEGER PRIMARY KEY,
                first_name TEXT,
                last_name TEXT,
                full_name TEXT,
                email TEXT,
                phone TEXT,
                address TEXT,
                city TEXT,
                state TEXT,
                zip_code TEXT,
                country TEXT,
                linkedin_url TEXT,
                github_url TEXT,
                portfolio_url TEXT,
                website TEXT,
                job_title TEXT,
                skills_json TEXT,
                education_json TEXT,
                work_experience_json TEXT,
                match_score_threshold INTEGER,
                updated_at TEXT,
                FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS resumes (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                filename TEXT NOT NULL,
                content_type TEXT DEFAULT 'application/pdf',
                file_content TEXT,
                parsed_text TEXT,
                created_at TEXT,
                FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS tracked_applications (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                job_title TEXT NOT NULL,
                company TEXT NOT NULL,
                external_job_id TEXT,
                link TEXT,
                description TEXT,
                location TEXT,
                status TEXT DEFAULT 'saved',
                application_status TEXT DEFAULT 'pending',
                match_score INTEGER,
                match_explanation TEXT,
                source TEXT DEFAULT 'manual',
                created_at TEXT,
                updated_at TEXT,
                applied_at TEXT,
                submitted_at TEXT,
                UNIQUE (user_id, external_job_id),
                FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS job_queue (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                job_id INTEGER NOT NULL,
                priority INTEGER DEFAULT 0,
                status TEXT DEFAULT 'pending',
                attempt_count INTEGER DEFAULT 0,
                error TEXT,
                created_at TEXT,
                claimed_at TEXT,
                processed_at TEXT,
                updated_at TEXT,
                FOREIGN KEY (job_id) REFERENCES tracked_applications(id) ON DELETE CASCADE
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS application_payloads (
                queue_id INTEGER PRIMARY KEY,
                payload_json TEXT NOT NULL,
                created_at TEXT,
                FOREIGN KEY (queue_id) REFERENCES job_queue(id) ON DELETE CASCADE
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS auto_apply_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                job_id INTEGER,
                status TEXT NOT NULL,
                message TEXT,
                timestamp TEXT,
                FOREIGN KEY (job_id) REFERENCES tracked_applications(id) ON DELETE CASCADE
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS search_sessions (
                id TEXT PRIMARY KEY,
                user_id INTEGER NOT NULL,
                evaluated INTEGER DEFAULT 0,
                accepted INTEGER DEFAULT 0,
                rejected INTEGER DEFAULT 0,
                created_at TEXT,
                updated_at TEXT
            )
        """)

        # Indexes
        await db.execute("CREATE INDEX IF NOT EXISTS idx_queue_status ON job_queue(status, priority, created_at)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_queue_user ON job_queue(user_id, status)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_tracked_user ON tracked_applications(user_id, status)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_logs_user ON auto_apply_logs(user_id, timestamp)")
        # At most one processing entry per tracked application
        await db.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS idx_queue_one_processing "
            "ON job_queue(job_id) WHERE status = 'processing'"
        )

        await _migrate_tracked_applications(db)
        await _seed_plans(db)

        await db.commit()


async def _migrate_tracked_applications(db: aiosqlite.Connection):
    """Add columns introduced after the first schema revision."""
    cursor = await db.execute("PRAGMA table_info(tracked_applications)")
    cols = {row[1] for row in await cursor.fetchall()}

    if "location" not in cols:
        await db.execute("ALTER TABLE tracked_applications ADD COLUMN location TEXT")
    if "submitted_at" not in cols:
        await db.execute("ALTER TABLE tracked_applications ADD COLUMN submitted_at TEXT")


async def _seed_plans(db: aiosqlite.Connection):
    for plan in DEFAULT_PLANS:
        await db.execute(
            """INSERT OR IGNORE INTO subscription_plans
               (id, daily_limit, resumes_allowed, priority, ai_tier)
               VALUES (?, ?, ?, ?, ?)""",
            (plan.id, plan.daily_limit, plan.resumes_allowed, int(plan.priority), plan.ai_tier),
        )


@asynccontextmanager
async def get_db():
    """Get database connection context manager."""
    db = await aiosqlite.connect(DB_PATH)
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA foreign_keys = ON")
    try:
        yield db
    finally:
        await db.close()


@asynccontextmanager
async def transaction():
    """Connection holding the write lock; commits on success, rolls back on error."""
    async with get_db() as db:
        await db.execute("BEGIN IMMEDIATE")
        try:
            yield db
        except BaseException:
            await db.rollback()
            raise
        await db.commit()


# ============== Users / Profiles / Resumes ==============

async def create_user(
    email: str,
    name: str = "",
    phone: str = "",
    subscription_plan: str = "FREE",
    auto_apply_enabled: bool = True,
) -> int:
    async with get_db() as db:
        cursor = await db.execute(
            """INSERT INTO users (name, email, phone, subscription_plan, auto_apply_enabled, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (name, email, phone, subscription_plan, int(auto_apply_enabled), utcnow().isoformat()),
        )
        await db.commit()
        return cursor.lastrowid


async def get_user(user_id: int) -> Optional[Dict]:
    async with get_db() as db:
        cursor = await db.execute("SELECT * FROM users WHERE id = ?", (user_id,))
        row = await cursor.fetchone()
        return dict(row) if row else None


async def set_auto_apply_enabled(user_id: int, enabled: bool):
    async with get_db() as db:
        await db.execute("UPDATE users SET auto_apply_enabled = ? WHERE id = ?", (int(enabled), user_id))
        await db.commit()


async def save_profile(user_id: int, profile: Dict[str, Any]) -> bool:
    """Insert or replace a user's profile."""
    now = utcnow().isoformat()
    async with get_db() as db:
        await db.execute(
            """INSERT OR REPLACE INTO user_profiles
               (user_id, first_name, last_name, full_name, email, phone, address, city, state,
                zip_code, country, linkedin_url, github_url, portfolio_url, website, job_title,
                skills_json, education_json, work_experience_json, match_score_threshold, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                user_id,
                profile.get("first_name"),
                profile.get("last_name"),
                profile.get("full_name"),
                profile.get("email"),
                profile.get("phone"),
                profile.get("address"),
                profile.get("city"),
                profile.get("state"),
                profile.get("zip_code"),
                profile.get("country"),
                profile.get("linkedin_url"),
                profile.get("github_url"),
                profile.get("portfolio_url"),
                profile.get("website"),
                profile.get("job_title"),
                json.dumps(profile.get("skills") or []),
                json.dumps(profile.get("education") or []),
                json.dumps(profile.get("work_experience") or []),
                profile.get("match_score_threshold"),
                now,
            ),
        )
        await db.commit()
        return True


async def get_profile(user_id: int) -> Optional[Dict]:
    async with get_db() as db:
        cursor = await db.execute("SELECT * FROM user_profiles WHERE user_id = ?", (user_id,))
        row = await cursor.fetchone()
        return dict(row) if row else None


async def save_resume(
    user_id: int,
    filename: str,
    file_content: str,
    parsed_text: str,
    content_type: str = "application/pdf",
) -> int:
    async with get_db() as db:
        cursor = await db.execute(
            """INSERT INTO resumes (user_id, filename, content_type, file_content, parsed_text, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (user_id, filename, content_type, file_content, parsed_text, utcnow().isoformat()),
        )
        await db.commit()
        return cursor.lastrowid


async def get_latest_resume(user_id: int) -> Optional[Dict]:
    async with get_db() as db:
        cursor = await db.execute(
            "SELECT * FROM resumes WHERE user_id = ? ORDER BY id DESC LIMIT 1",
            (user_id,),
        )
        row = await cursor.fetchone()
        return dict(row) if row else None


# ============== Plans / Quota ==============

def _plan_from_row(row: Any) -> SubscriptionPlan:
    return SubscriptionPlan(
        id=row["id"],
        daily_limit=int(row["daily_limit"]),
        resumes_allowed=int(row["resumes_allowed"] or 1),
        priority=bool(row["priority"]),
        ai_tier=row["ai_tier"] or "basic",
    )


async def _plan_for_user(db: aiosqlite.Connection, user_id: int) -> SubscriptionPlan:
    cursor = await db.execute(
        """SELECT p.* FROM users u
           JOIN subscription_plans p ON p.id = u.subscription_plan
           WHERE u.id = ?""",
        (user_id,),
    )
    row = await cursor.fetchone()
    if row:
        return _plan_from_row(row)
    cursor = await db.execute("SELECT * FROM subscription_plans WHERE id = 'FREE'")
    row = await cursor.fetchone()
    return _plan_from_row(row) if row else DEFAULT_PLANS[0]


async def get_plan_for_user(user_id: int) -> SubscriptionPlan:
    async with get_db() as db:
        return await _plan_for_user(db, user_id)


async def _quota_snapshot(db: aiosqlite.Connection, user_id: int) -> Dict[str, Any]:
    plan = await _plan_for_user(db, user_id)
    cursor = await db.execute(
        """SELECT COUNT(*) FROM tracked_applications
           WHERE user_id = ? AND status = ? AND applied_at >= ?""",
        (user_id, LifecycleStatus.APPLIED.value, utc_midnight().isoformat()),
    )
    applied_today = (await cursor.fetchone())[0]
    cursor = await db.execute(
        "SELECT COUNT(*) FROM job_queue WHERE user_id = ? AND status IN (?, ?)",
        (user_id, *ACTIVE_QUEUE_STATUSES),
    )
    queued = (await cursor.fetchone())[0]
    return {
        "plan": plan,
        "daily_limit": plan.daily_limit,
        "applied_today": applied_today,
        "queued": queued,
        "remaining_slots": plan.daily_limit - applied_today - queued,
        "remaining_today": max(0, plan.daily_limit - applied_today),
    }


async def get_quota_snapshot(user_id: int) -> Dict[str, Any]:
    async with get_db() as db:
        return await _quota_snapshot(db, user_id)


# ============== Tracked Applications ==============

async def create_tracked_application(user_id: int, job: Dict[str, Any]) -> int:
    now = utcnow().isoformat()
    async with get_db() as db:
        cursor = await db.execute(
            """INSERT INTO tracked_applications
               (user_id, job_title, company, external_job_id, link, description, location,
                status, application_status, match_score, match_explanation, source,
                created_at, updated_at, applied_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                user_id,
                job.get("job_title") or job.get("title") or "",
                job.get("company") or "",
                job.get("external_job_id"),
                job.get("link") or job.get("apply_url"),
                job.get("description"),
                job.get("location"),
                job.get("status") or LifecycleStatus.SAVED.value,
                job.get("application_status") or ApplicationStatus.PENDING.value,
                job.get("match_score"),
                job.get("match_explanation"),
                job.get("source") or "manual",
                now,
                now,
                job.get("applied_at"),
            ),
        )
        await db.commit()
        return cursor.lastrowid


async def upsert_tracked_application(
    user_id: int,
    job: Dict[str, Any],
    match_score: Optional[int],
    match_explanation: Optional[str],
) -> Dict[str, Any]:
    """Insert a scored posting, deduplicated on (user_id, external_job_id)."""
    now = utcnow().isoformat()
    async with get_db() as db:
        await db.execute(
            """INSERT INTO tracked_applications
               (user_id, job_title, company, external_job_id, link, description, location,
                status, application_status, match_score, match_explanation, source, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, 'saved', 'pending', ?, ?, ?, ?, ?)
               ON CONFLICT (user_id, external_job_id) DO UPDATE SET
                   match_score = excluded.match_score,
                   match_explanation = excluded.match_explanation,
                   updated_at = excluded.updated_at""",
            (
                user_id,
                job.get("title") or "",
                job.get("company") or "",
                job.get("external_job_id"),
                job.get("apply_url"),
                job.get("description"),
                job.get("location"),
                match_score,
                match_explanation,
                job.get("source") or "manual",
                now,
                now,
            ),
        )
        await db.commit()
        if job.get("external_job_id"):
            cursor = await db.execute(
                "SELECT * FROM tracked_applications WHERE user_id = ? AND external_job_id = ?",
                (user_id, job["external_job_id"]),
            )
        else:
            cursor = await db.execute("SELECT * FROM tracked_applications WHERE id = last_insert_rowid()")
        row = await cursor.fetchone()
        return dict(row)


async def get_tracked_application(job_id: int) -> Optional[Dict]:
    async with get_db() as db:
        cursor = await db.execute("SELECT * FROM tracked_applications WHERE id = ?", (job_id,))
        row = await cursor.fetchone()
        return dict(row) if row else None


async def delete_tracked_application(job_id: int, user_id: int) -> bool:
    """Delete a tracked application; queue entries, payloads and logs cascade."""
    async with get_db() as db:
        cursor = await db.execute(
            "DELETE FROM tracked_applications WHERE id = ? AND user_id = ?",
            (job_id, user_id),
        )
        await db.commit()
        return cursor.rowcount > 0


async def mark_tracked_applied(job_id: int, applied_at: Optional[datetime] = None):
    """Record an application made outside the queue (counts toward today's quota)."""
    stamp = (applied_at or utcnow()).isoformat()
    async with get_db() as db:
        await db.execute(
            """UPDATE tracked_applications
               SET status = 'applied', application_status = 'applied',
                   applied_at = ?, submitted_at = ?, updated_at = ?
               WHERE id = ?""",
            (stamp, stamp, stamp, job_id),
        )
        await db.commit()


# ============== Queue ==============

async def _active_entry_job_ids(db: aiosqlite.Connection, job_ids: Iterable[int]) -> set:
    ids = list(job_ids)
    if not ids:
        return set()
    placeholders = ",".join("?" for _ in ids)
    cursor = await db.execute(
        f"""SELECT job_id FROM job_queue
            WHERE job_id IN ({placeholders}) AND status IN ('pending', 'processing', 'standby')""",
        ids,
    )
    return {row[0] for row in await cursor.fetchall()}


async def _insert_queue_entry(db: aiosqlite.Connection, user_id: int, job_id: int, priority: int, now: str) -> int:
    cursor = await db.execute(
        """INSERT INTO job_queue (user_id, job_id, priority, status, attempt_count, created_at, updated_at)
           VALUES (?, ?, ?, 'pending', 0, ?, ?)""",
        (user_id, job_id, priority, now, now),
    )
    return cursor.lastrowid


async def enqueue_jobs(user_id: int, job_ids: List[int]) -> Dict[str, Any]:
    """
    Admit the longest prefix of job_ids that fits the user's remaining slots.

    Quota read and inserts share one write-locked transaction, so concurrent
    calls for the same user cannot over-admit. Returns the quota snapshot
    taken before admission plus accepted ids and per-id rejections.
    """
    now = utcnow().isoformat()
    accepted: List[Dict[str, Any]] = []
    rejected: List[Dict[str, Any]] = []
    async with transaction() as db:
        snap = await _quota_snapshot(db, user_id)
        slots = snap["remaining_slots"]
        if slots <= 0:
            return {**snap, "accepted": accepted, "rejected": rejected}

        placeholders = ",".join("?" for _ in job_ids) or "NULL"
        cursor = await db.execute(
            f"SELECT id, application_status FROM tracked_applications WHERE user_id = ? AND id IN ({placeholders})",
            (user_id, *job_ids),
        )
        owned = {row["id"]: row["application_status"] for row in await cursor.fetchall()}
        active = await _active_entry_job_ids(db, owned.keys())
        limit_reason = "queue_full" if snap["applied_today"] < snap["daily_limit"] else "limit_reached"
        seen = set()

        for job_id in job_ids:
            if job_id not in owned:
                rejected.append({"jobId": job_id, "reason": "not_found"})
            elif job_id in active or job_id in seen:
                rejected.append({"jobId": job_id, "reason": "already_queued"})
            elif owned[job_id] == ApplicationStatus.APPLIED.value:
                rejected.append({"jobId": job_id, "reason": "already_applied"})
            elif slots <= 0:
                rejected.append({"jobId": job_id, "reason": limit_reason})
            else:
                queue_id = await _insert_queue_entry(db, user_id, job_id, snap["plan"].queue_priority, now)
                await db.execute(
                    "UPDATE tracked_applications SET application_status = 'pending', updated_at = ? WHERE id = ?",
                    (now, job_id),
                )
                accepted.append({"queueId": queue_id, "jobId": job_id})
                seen.add(job_id)
                slots -= 1

        if accepted:
            await _append_log(db, user_id, None, "Queued", f"{len(accepted)} job(s) added to the auto-apply queue", now)

    return {**snap, "accepted": accepted, "rejected": rejected}


async def requeue_failed_application(user_id: int, job_id: int) -> Dict[str, Any]:
    """
    Put a failed tracked application back in the queue.

    Returns {"status": "not_found" | "not_failed" | "quota" | "queued", ...};
    the caller maps non-queued statuses to errors.
    """
    now = utcnow().isoformat()
    async with transaction() as db:
        cursor = await db.execute(
            "SELECT * FROM tracked_applications WHERE id = ? AND user_id = ?",
            (job_id, user_id),
        )
        tracked = await cursor.fetchone()
        if not tracked:
            return {"status": "not_found"}
        if tracked["application_status"] != ApplicationStatus.FAILED.value:
            return {"status": "not_failed", "application_status": tracked["application_status"]}

        snap = await _quota_snapshot(db, user_id)
        if snap["remaining_slots"] <= 0:
            return {"status": "quota", **snap}

        cursor = await db.execute(
            """SELECT error FROM job_queue
               WHERE job_id = ? AND status = 'failed'
               ORDER BY id DESC LIMIT 1""",
            (job_id,),
        )
        last = await cursor.fetchone()
        previous_error = last["error"] if last else None

        # Superseded payloads
        await db.execute(
            "DELETE FROM application_payloads WHERE queue_id IN (SELECT id FROM job_queue WHERE job_id = ?)",
            (job_id,),
        )
        queue_id = await _insert_queue_entry(db, user_id, job_id, snap["plan"].queue_priority, now)
        await db.execute(
            "UPDATE tracked_applications SET application_status = 'pending', updated_at = ? WHERE id = ?",
            (now, job_id),
        )
        await _append_log(
            db, user_id, job_id, "Resubmitted",
            f"Re-queued after failure: {previous_error}" if previous_error else "Re-queued after failure",
            now,
        )
        return {
            "status": "queued",
            "queue_id": queue_id,
            "previous_error": previous_error,
            "match_score": tracked["match_score"],
            "remaining_slots": snap["remaining_slots"] - 1,
        }


async def get_queue_entry(queue_id: int) -> Optional[Dict]:
    async with get_db() as db:
        cursor = await db.execute("SELECT * FROM job_queue WHERE id = ?", (queue_id,))
        row = await cursor.fetchone()
        return dict(row) if row else None


async def list_queue_entries(user_id: int, limit: int = 200) -> List[Dict[str, Any]]:
    async with get_db() as db:
        cursor = await db.execute(
            """SELECT q.*, t.job_title, t.company FROM job_queue q
               JOIN tracked_applications t ON t.id = q.job_id
               WHERE q.user_id = ?
               ORDER BY q.id DESC LIMIT ?""",
            (user_id, limit),
        )
        return [dict(row) for row in await cursor.fetchall()]


async def get_queue_counts(user_id: int) -> Dict[str, int]:
    counts = {status.value: 0 for status in QueueStatus}
    async with get_db() as db:
        cursor = await db.execute(
            "SELECT status, COUNT(*) AS n FROM job_queue WHERE user_id = ? GROUP BY status",
            (user_id,),
        )
        for row in await cursor.fetchall():
            counts[row["status"]] = row["n"]
    return counts


async def fetch_pending_batch(limit: int) -> List[Dict[str, Any]]:
    """Pending entries, highest priority first, FIFO within a tier."""
    async with get_db() as db:
        cursor = await db.execute(
            """SELECT * FROM job_queue
               WHERE status = 'pending'
               ORDER BY priority DESC, created_at ASC, id ASC
               LIMIT ?""",
            (limit,),
        )
        return [dict(row) for row in await cursor.fetchall()]


async def claim_queue_entry(queue_id: int) -> bool:
    """pending -> processing. False when the entry was not pending."""
    now = utcnow().isoformat()
    async with get_db() as db:
        try:
            cursor = await db.execute(
                """UPDATE job_queue
                   SET status = 'processing', claimed_at = ?, updated_at = ?
                   WHERE id = ? AND status = 'pending'""",
                (now, now, queue_id),
            )
        except aiosqlite.IntegrityError:
            # Another entry for the same application is already processing
            return False
        await db.commit()
        return cursor.rowcount == 1


async def move_to_standby(queue_id: int, user_id: int, job_id: int, message: str) -> bool:
    now = utcnow().isoformat()
    async with transaction() as db:
        cursor = await db.execute(
            """UPDATE job_queue SET status = 'standby', updated_at = ?
               WHERE id = ? AND status IN ('pending', 'processing')""",
            (now, queue_id),
        )
        if cursor.rowcount != 1:
            return False
        await _append_log(db, user_id, job_id, "Standby", message, now)
        return True


async def reactivate_standby_entries() -> List[Dict[str, Any]]:
    """Move standby entries back to pending while their owner has slots left."""
    now = utcnow().isoformat()
    reactivated: List[Dict[str, Any]] = []
    async with transaction() as db:
        cursor = await db.execute("SELECT DISTINCT user_id FROM job_queue WHERE status = 'standby'")
        user_ids = [row[0] for row in await cursor.fetchall()]
        for user_id in user_ids:
            snap = await _quota_snapshot(db, user_id)
            slots = snap["remaining_slots"]
            if slots <= 0:
                continue
            cursor = await db.execute(
                """SELECT id, job_id FROM job_queue
                   WHERE user_id = ? AND status = 'standby'
                   ORDER BY priority DESC, created_at ASC, id ASC
                   LIMIT ?""",
                (user_id, slots),
            )
            for row in await cursor.fetchall():
                await db.execute(
                    "UPDATE job_queue SET status = 'pending', updated_at = ? WHERE id = ?",
                    (now, row["id"]),
                )
                await _append_log(
                    db, user_id, row["job_id"], "Reactivated",
                    "Daily limit reset; job returned to the queue", now,
                )
                reactivated.append({"id": row["id"], "user_id": user_id, "job_id": row["job_id"]})
    return reactivated


async def _resolve_in_tx(
    db: aiosqlite.Connection,
    queue_id: int,
    outcome: QueueStatus,
    message: Optional[str],
    now: str,
) -> Optional[Dict[str, Any]]:
    """
    processing -> terminal. Returns the entry row when it changed, None for a
    no-op on an already-resolved entry.
    """
    cursor = await db.execute("SELECT * FROM job_queue WHERE id = ?", (queue_id,))
    row = await cursor.fetchone()
    if not row:
        raise LookupError(f"Queue entry {queue_id} not found")

    current = QueueStatus(row["status"])
    # A late executor result may replace the staleness sweep's failure
    superseding_timeout = current == QueueStatus.FAILED and row["error"] == STALE_TIMEOUT_ERROR
    if current.is_terminal:
        if not superseding_timeout or outcome == QueueStatus.FAILED:
            return None
    elif current != QueueStatus.PROCESSING:
        raise ValueError(f"Queue entry {queue_id} is {current.value}, not processing")

    attempt_bump = 1 if outcome == QueueStatus.FAILED and not superseding_timeout else 0
    error = message if outcome != QueueStatus.COMPLETED else None
    cursor = await db.execute(
        """UPDATE job_queue
           SET status = ?, error = ?, processed_at = ?, updated_at = ?,
               attempt_count = attempt_count + ?
           WHERE id = ? AND status = ?""",
        (outcome.value, error, now, now, attempt_bump, queue_id, current.value),
    )
    if cursor.rowcount != 1:
        return None
    entry = dict(row)
    entry.update(status=outcome.value, error=error, processed_at=now,
                 attempt_count=entry["attempt_count"] + attempt_bump, previous_status=current.value)
    return entry


async def resolve_queue_entry(queue_id: int, outcome: QueueStatus, message: Optional[str] = None) -> bool:
    """Terminal transition on the queue row only. True when the row changed."""
    async with transaction() as db:
        entry = await _resolve_in_tx(db, queue_id, outcome, message, utcnow().isoformat())
        return entry is not None


async def record_outcome(
    queue_id: int,
    outcome: QueueStatus,
    message: Optional[str],
    application_status: ApplicationStatus,
    log_status: str,
) -> Optional[Dict[str, Any]]:
    """
    Resolve a queue entry and apply its effects on the tracked application
    and the audit log in one transaction. Returns None when the entry was
    already resolved.
    """
    now = utcnow().isoformat()
    async with transaction() as db:
        entry = await _resolve_in_tx(db, queue_id, outcome, message, now)
        if entry is None:
            return None

        if application_status == ApplicationStatus.APPLIED:
            await db.execute(
                """UPDATE tracked_applications
                   SET status = 'applied', application_status = 'applied',
                       applied_at = ?, submitted_at = ?, updated_at = ?
                   WHERE id = ?""",
                (now, now, now, entry["job_id"]),
            )
            # Other attempts at the same job are moot once one has landed
            cursor = await db.execute(
                """UPDATE job_queue
                   SET status = 'skipped', error = ?, processed_at = ?, updated_at = ?
                   WHERE job_id = ? AND id != ? AND status IN ('pending', 'standby')""",
                (ALREADY_APPLIED_ERROR, now, now, entry["job_id"], queue_id),
            )
            if cursor.rowcount:
                await _append_log(
                    db, entry["user_id"], entry["job_id"], "Skipped",
                    f"{cursor.rowcount} queued attempt(s) dropped: {ALREADY_APPLIED_ERROR}", now,
                )
        else:
            await db.execute(
                """UPDATE tracked_applications
                   SET application_status = ?, updated_at = ?
                   WHERE id = ? AND application_status != 'applied'""",
                (application_status.value, now, entry["job_id"]),
            )
        await _append_log(db, entry["user_id"], entry["job_id"], log_status, message, now)
        return entry


async def reclaim_stale_processing(older_than: timedelta) -> List[Dict[str, Any]]:
    """Fail entries stuck in processing past the callback deadline."""
    now_dt = utcnow()
    now = now_dt.isoformat()
    cutoff = (now_dt - older_than).isoformat()
    reclaimed = []
    async with transaction() as db:
        cursor = await db.execute(
            "SELECT id FROM job_queue WHERE status = 'processing' AND claimed_at < ?",
            (cutoff,),
        )
        for row in await cursor.fetchall():
            entry = await _resolve_in_tx(db, row["id"], QueueStatus.FAILED, STALE_TIMEOUT_ERROR, now)
            if entry is None:
                continue
            await db.execute(
                """UPDATE tracked_applications SET application_status = 'failed', updated_at = ?
                   WHERE id = ? AND application_status != 'applied'""",
                (now, entry["job_id"]),
            )
            await _append_log(db, entry["user_id"], entry["job_id"], "Failed", STALE_TIMEOUT_ERROR, now)
            reclaimed.append(entry)
    return reclaimed


async def delete_queue_entry(queue_id: int, user_id: int) -> Optional[Dict[str, Any]]:
    """Remove a queue entry (payload cascades). Returns the removed row."""
    async with transaction() as db:
        cursor = await db.execute(
            "SELECT * FROM job_queue WHERE id = ? AND user_id = ?",
            (queue_id, user_id),
        )
        row = await cursor.fetchone()
        if not row:
            return None
        if row["status"] == QueueStatus.PROCESSING.value:
            raise ValueError("processing")
        await db.execute("DELETE FROM job_queue WHERE id = ?", (queue_id,))
        return dict(row)


# ============== Payloads ==============

async def save_payload(queue_id: int, payload: Dict[str, Any]):
    async with get_db() as db:
        await db.execute(
            """INSERT OR REPLACE INTO application_payloads (queue_id, payload_json, created_at)
               VALUES (?, ?, ?)""",
            (queue_id, json.dumps(payload), utcnow().isoformat()),
        )
        await db.commit()


async def get_payload(queue_id: int) -> Optional[Dict[str, Any]]:
    async with get_db() as db:
        cursor = await db.execute(
            "SELECT payload_json FROM application_payloads WHERE queue_id = ?",
            (queue_id,),
        )
        row = await cursor.fetchone()
        return json.loads(row["payload_json"]) if row else None


# ============== Logs ==============

async def _append_log(
    db: aiosqlite.Connection,
    user_id: int,
    job_id: Optional[int],
    status: str,
    message: Optional[str],
    now: str,
):
    await db.execute(
        "INSERT INTO auto_apply_logs (user_id, job_id, status, message, timestamp) VALUES (?, ?, ?, ?, ?)",
        (user_id, job_id, status, message, now),
    )


async def add_log(user_id: int, job_id: Optional[int], status: str, message: Optional[str] = None):
    async with get_db() as db:
        await _append_log(db, user_id, job_id, status, message, utcnow().isoformat())
        await db.commit()


async def list_logs(user_id: int, limit: int = 100, job_id: Optional[int] = None) -> List[Dict[str, Any]]:
    query = "SELECT * FROM auto_apply_logs WHERE user_id = ?"
    params: List[Any] = [user_id]
    if job_id is not None:
        query += " AND job_id = ?"
        params.append(job_id)
    query += " ORDER BY id DESC LIMIT ?"
    params.append(limit)
    async with get_db() as db:
        cursor = await db.execute(query, params)
        return [dict(row) for row in await cursor.fetchall()]


# ============== Search Sessions ==============

async def save_search_progress(session_id: str, user_id: int, evaluated: int, accepted: int, rejected: int):
    now = utcnow().isoformat()
    async with get_db() as db:
        await db.execute(
            """INSERT INTO search_sessions (id, user_id, evaluated, accepted, rejected, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT (id) DO UPDATE SET
                   evaluated = excluded.evaluated,
                   accepted = excluded.accepted,
                   rejected = excluded.rejected,
                   updated_at = excluded.updated_at""",
            (session_id, user_id, evaluated, accepted, rejected, now, now),
        )
        await db.commit()


async def get_search_progress(session_id: str) -> Optional[Dict[str, Any]]:
    async with get_db() as db:
        cursor = await db.execute("SELECT * FROM search_sessions WHERE id = ?", (session_id,))
        row = await cursor.fetchone()
        return dict(row) if row else None

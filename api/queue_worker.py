#!/usr/bin/env python3
"""
Dispatch Loop

Single cooperative poller that moves queue entries to the browser executor:
- Fails entries whose executor callback never arrived (staleness sweep)
- Returns standby entries to the queue once their owner has quota again
- Claims pending entries in priority order, builds the form payload and
  submits it; the executor reports back via the callback endpoint

This worker is designed to run inside the FastAPI lifespan task. Stopping
it halts new claims but never cancels work the executor already holds.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from ai.application_ai import get_application_ai
from ai.form_intelligence import AnswerGenerator, OptionSelector
from api import database as db
from api import queue_manager
from api.config import config as app_config
from api.errors import AlreadyClaimed, ExecutorUnavailable
from api.logging_config import logger, log_queue_transition
from api.reconciler import apply_outcome
from core.form_mapper import FormSchemaMapper
from core.models import Applicant, ApplicationPayload, ApplicationStatus, Posting, QueueStatus


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class WorkerConfig:
    poll_interval_seconds: float = float(os.getenv("QUEUE_POLL_INTERVAL_SECONDS", "10.0"))
    batch_size: int = int(os.getenv("QUEUE_BATCH_SIZE", "5"))

    # Pause between dispatches inside one batch
    dispatch_delay_seconds: float = float(os.getenv("QUEUE_DISPATCH_DELAY_SECONDS", "1.0"))
    error_backoff_seconds: float = float(os.getenv("QUEUE_ERROR_BACKOFF_SECONDS", "5.0"))

    stale_processing_minutes: float = float(os.getenv("QUEUE_STALE_PROCESSING_MINUTES", "45"))
    liveness_timeout_seconds: float = float(os.getenv("QUEUE_LIVENESS_TIMEOUT_SECONDS", "300"))
    stop_timeout_seconds: float = float(os.getenv("QUEUE_STOP_TIMEOUT_SECONDS", "30"))


def build_submission_request(
    entry: Dict[str, Any],
    tracked: Dict[str, Any],
    applicant: Applicant,
    payload: ApplicationPayload,
    callback_url: str,
) -> Dict[str, Any]:
    """JSON body for the executor's submit endpoint."""
    resume = None
    if applicant.resume and applicant.resume.has_content:
        resume = {**applicant.resume.metadata(), "fileContent": applicant.resume.file_content}
    return {
        "queueId": entry["id"],
        "jobId": entry["job_id"],
        "userId": entry["user_id"],
        "callbackUrl": callback_url,
        "job": {
            "title": tracked.get("job_title"),
            "company": tracked.get("company"),
            "applyUrl": tracked.get("link"),
            "externalJobId": tracked.get("external_job_id"),
        },
        "user": {
            "name": applicant.full_name,
            "email": applicant.contact_email,
            "phone": applicant.contact_phone,
        },
        "matchScore": tracked.get("match_score"),
        "formData": payload.fields,
        "resume": resume,
    }


@dataclass
class QueueWorker:
    executor: Any
    ai_factory: Callable[[str], Any] = get_application_ai
    config: WorkerConfig = field(default_factory=WorkerConfig)
    worker_id: str = field(default_factory=lambda: f"worker_{uuid.uuid4().hex[:10]}")
    _task: Optional[asyncio.Task] = None
    _stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    last_tick_at: Optional[datetime] = None
    ticks: int = 0
    dispatched: int = 0
    last_error: Optional[str] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        if self.running:
            return False
        self._stop_event.clear()
        self.last_tick_at = _now()
        self._task = asyncio.create_task(self.run_loop(), name=f"queue-worker:{self.worker_id}")
        logger.info(f"QueueWorker started: {self.worker_id}")
        return True

    async def stop(self) -> bool:
        if not self.running:
            return False
        self._stop_event.set()
        task = self._task
        done, _ = await asyncio.wait({task}, timeout=self.config.stop_timeout_seconds)
        if not done:
            logger.warning(f"QueueWorker {self.worker_id} did not stop in time; cancelling")
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        logger.info(f"QueueWorker stopped: {self.worker_id}")
        return True

    async def ensure_running(self) -> bool:
        """Start the loop if absent, finished or silent past the liveness timeout."""
        if not self.running:
            if self._task is not None and self._task.done() and not self._task.cancelled():
                exc = self._task.exception()
                if exc:
                    self.last_error = str(exc)
                    logger.error(f"QueueWorker task had died: {exc}")
            return self.start()

        silent_for = (_now() - self.last_tick_at).total_seconds() if self.last_tick_at else 0.0
        if silent_for <= self.config.liveness_timeout_seconds:
            return False

        logger.warning(f"QueueWorker silent for {silent_for:.0f}s; restarting")
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        return self.start()

    def health(self) -> Dict[str, Any]:
        return {
            "workerId": self.worker_id,
            "running": self.running,
            "lastTickAt": self.last_tick_at.isoformat() if self.last_tick_at else None,
            "ticks": self.ticks,
            "dispatched": self.dispatched,
            "lastError": self.last_error,
        }

    async def _sleep(self, seconds: float):
        """Sleep that wakes early when stop() is requested."""
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)

    async def run_loop(self):
        while not self._stop_event.is_set():
            try:
                processed = await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.last_error = str(e)
                logger.error(f"QueueWorker loop error: {e}")
                await self._sleep(self.config.error_backoff_seconds)
                continue

            if processed == 0:
                await self._sleep(self.config.poll_interval_seconds)

    async def tick(self) -> int:
        """One pass: sweep, reactivate, dispatch a batch. Returns entries handled."""
        self.last_tick_at = _now()
        self.ticks += 1

        stale = await db.reclaim_stale_processing(timedelta(minutes=self.config.stale_processing_minutes))
        for entry in stale:
            log_queue_transition(entry["id"], entry["user_id"], "processing", "failed", db.STALE_TIMEOUT_ERROR)

        for entry in await db.reactivate_standby_entries():
            log_queue_transition(entry["id"], entry["user_id"], "standby", "pending", "daily limit reset")

        batch = await queue_manager.next_batch(self.config.batch_size)
        handled = 0
        for entry in batch:
            if self._stop_event.is_set():
                break
            await self._process_entry(entry)
            handled += 1
            self.last_tick_at = _now()
            if self.config.dispatch_delay_seconds > 0:
                await self._sleep(self.config.dispatch_delay_seconds)
        return handled

    async def _process_entry(self, entry: Dict[str, Any]):
        queue_id = int(entry["id"])
        user_id = int(entry["user_id"])
        job_id = int(entry["job_id"])

        snap = await db.get_quota_snapshot(user_id)
        if snap["applied_today"] >= snap["daily_limit"]:
            if await db.move_to_standby(queue_id, user_id, job_id, "Daily limit reached; waiting for reset"):
                log_queue_transition(queue_id, user_id, "pending", "standby", "daily limit reached")
            return

        try:
            await queue_manager.claim(queue_id)
        except AlreadyClaimed:
            logger.debug(f"Queue {queue_id} already claimed; skipping")
            return

        tracked = await db.get_tracked_application(job_id)
        applicant = await queue_manager.load_applicant(user_id)
        if not tracked or not applicant:
            await apply_outcome(queue_id, "failed", "Tracked application or user no longer exists")
            return
        if tracked["application_status"] == ApplicationStatus.APPLIED.value:
            await apply_outcome(queue_id, "skipped", db.ALREADY_APPLIED_ERROR)
            return
        if not applicant.auto_apply_enabled:
            await apply_outcome(queue_id, "skipped", "Auto-apply is disabled")
            return

        posting = Posting.from_tracked(tracked)
        if not posting.apply_url:
            await apply_outcome(queue_id, "skipped", "No apply URL for this job")
            return

        ai = self.ai_factory(applicant.plan.ai_tier)
        mapper = FormSchemaMapper(self.executor, AnswerGenerator(ai), OptionSelector(ai))
        try:
            result = await mapper.build(applicant, posting)
        except ExecutorUnavailable as e:
            await apply_outcome(queue_id, "failed", e.detail)
            return

        if not result.is_ready:
            await apply_outcome(queue_id, "skipped", result.reason)
            return

        await db.save_payload(queue_id, result.payload.to_dict())
        request = build_submission_request(entry, tracked, applicant, result.payload, app_config.callback_url)
        try:
            receipt = await self.executor.submit(request)
        except ExecutorUnavailable as e:
            await apply_outcome(queue_id, "failed", e.detail)
            return

        if receipt.status == "skipped":
            await apply_outcome(queue_id, "skipped", receipt.message or "Executor skipped the application")
        elif receipt.status == "error":
            await apply_outcome(queue_id, "failed", receipt.message or "Executor rejected the submission")
        else:
            self.dispatched += 1
            await db.add_log(user_id, job_id, "Submitted", f"Dispatched to executor ({receipt.status})")
            logger.info(f"Queue {queue_id} dispatched to executor; awaiting callback")

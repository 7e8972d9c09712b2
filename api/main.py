"""
Auto-Apply Orchestrator API - FastAPI Backend
Queue, quota, worker administration and the executor callback endpoint.
"""

from collections import OrderedDict
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import FastAPI, Depends, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, validator

from ai.application_ai import get_application_ai
from ai.match_gate import MatchGate, SearchSession
from api import database as db
from api import queue_manager
from api.auth import get_current_user
from api.config import config
from api.errors import AutoApplyError, BadRequest, NotFound
from api.executor_client import ExecutorClient
from api.logging_config import logger, log_request
from api.queue_worker import QueueWorker
from api.reconciler import on_executor_callback
from core.models import Posting

executor_client = ExecutorClient()

MAX_TRACKED_SESSIONS = 500
_search_sessions: "OrderedDict[str, SearchSession]" = OrderedDict()


def _get_worker(app: FastAPI) -> QueueWorker:
    worker = getattr(app.state, "queue_worker", None)
    if worker is None:
        worker = QueueWorker(executor=executor_client)
        app.state.queue_worker = worker
    return worker


# === Lifespan Management ===

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    logger.info("Starting Auto-Apply Orchestrator...")
    for missing in config.validate():
        logger.warning(f"Configuration missing: {missing}")

    await init_store()

    if config.QUEUE_WORKER_ENABLED:
        _get_worker(app).start()
        logger.info("Queue worker enabled")
    else:
        logger.info("Queue worker disabled")

    yield

    logger.info("Shutting down Auto-Apply Orchestrator...")
    worker = getattr(app.state, "queue_worker", None)
    if worker:
        await worker.stop()


async def init_store():
    await db.init_database()
    logger.info("Database initialized")


app = FastAPI(
    title="Auto-Apply Orchestrator",
    description="Queue-driven job application submission through an external browser executor",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs" if config.DEBUG else None,
    redoc_url="/redoc" if config.DEBUG else None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=config.CORS_ALLOW_CREDENTIALS,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "x-worker-secret"],
)


# === Request Logging Middleware ===

@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all HTTP requests."""
    start_time = datetime.now()
    response = await call_next(request)
    duration = (datetime.now() - start_time).total_seconds() * 1000
    log_request(request.method, request.url.path, response.status_code, duration)
    return response


@app.exception_handler(AutoApplyError)
async def auto_apply_error_handler(request: Request, exc: AutoApplyError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# === Pydantic Models with Validation ===

class EnqueueRequest(BaseModel):
    jobIds: List[int] = Field(..., min_length=1, max_length=200)


class PostingModel(BaseModel):
    title: str = Field(..., min_length=1, max_length=300)
    company: str = Field(..., min_length=1, max_length=300)
    description: str = Field(default="", max_length=20000)
    applyUrl: str = Field(default="", max_length=1000)
    externalJobId: Optional[str] = Field(default=None, max_length=200)
    location: str = Field(default="", max_length=300)
    source: str = Field(default="manual", max_length=50)

    @validator("applyUrl")
    def validate_url(cls, v):
        if v and not v.startswith(("http://", "https://")):
            raise ValueError("Invalid URL format")
        return v

    def to_posting(self) -> Posting:
        return Posting(
            title=self.title,
            company=self.company,
            description=self.description,
            apply_url=self.applyUrl,
            external_job_id=self.externalJobId,
            location=self.location,
            source=self.source,
        )


class EvaluateRequest(BaseModel):
    postings: List[PostingModel] = Field(..., min_length=1, max_length=100)
    sessionId: Optional[str] = Field(default=None, max_length=64)


def _session_for(user_id: int, session_id: Optional[str], saved: Optional[dict]) -> SearchSession:
    if session_id and session_id in _search_sessions:
        session = _search_sessions[session_id]
        if session.user_id != user_id:
            raise NotFound(f"Search session {session_id} not found")
        _search_sessions.move_to_end(session_id)
        return session

    session = SearchSession(user_id=user_id)
    if session_id:
        session.id = session_id
    if saved:
        session.evaluated = saved["evaluated"]
        session.accepted = saved["accepted"]
        session.rejected = saved["rejected"]
    _search_sessions[session.id] = session
    while len(_search_sessions) > MAX_TRACKED_SESSIONS:
        _search_sessions.popitem(last=False)
    return session


# === Health ===

@app.get("/health")
async def health_check():
    return {"status": "healthy", "timestamp": datetime.now().isoformat()}


# === Queue Endpoints ===

@app.post("/api/job-queue/enqueue")
async def enqueue_jobs(payload: EnqueueRequest, user_id: int = Depends(get_current_user)):
    return await queue_manager.enqueue(user_id, payload.jobIds)


@app.get("/api/job-queue/status")
async def get_queue_status(user_id: int = Depends(get_current_user)):
    status = await queue_manager.queue_status(user_id)
    status["entries"] = await db.list_queue_entries(user_id, limit=50)
    return status


@app.delete("/api/job-queue/{queue_id}")
async def dequeue_job(queue_id: int, user_id: int = Depends(get_current_user)):
    return await queue_manager.dequeue(user_id, queue_id)


@app.post("/api/jobs/{job_id}/resubmit")
async def resubmit_job(job_id: int, user_id: int = Depends(get_current_user)):
    return await queue_manager.resubmit(user_id, job_id)


# === Auto-Apply Endpoints ===

@app.post("/api/auto-apply/evaluate")
async def evaluate_postings(payload: EvaluateRequest, user_id: int = Depends(get_current_user)):
    saved = await db.get_search_progress(payload.sessionId) if payload.sessionId else None
    if saved and saved["user_id"] != user_id:
        raise NotFound(f"Search session {payload.sessionId} not found")
    session = _session_for(user_id, payload.sessionId, saved)

    plan = await db.get_plan_for_user(user_id)
    gate = MatchGate(get_application_ai(plan.ai_tier), queue_manager.load_resume_text)
    postings = [p.to_posting() for p in payload.postings]
    return await queue_manager.evaluate_postings(user_id, postings, gate, session)


@app.get("/api/auto-apply/sessions/{session_id}")
async def get_session_progress(session_id: str, user_id: int = Depends(get_current_user)):
    progress = await db.get_search_progress(session_id)
    if not progress or progress["user_id"] != user_id:
        raise NotFound(f"Search session {session_id} not found")
    return progress


@app.get("/api/auto-apply/logs")
async def get_auto_apply_logs(limit: int = 100, user_id: int = Depends(get_current_user)):
    return {"logs": await db.list_logs(user_id, limit=max(1, min(limit, 500)))}


# === Worker Administration ===

@app.post("/api/worker/start")
async def start_worker(request: Request, user_id: int = Depends(get_current_user)):
    started = _get_worker(request.app).start()
    return {"started": started, **_get_worker(request.app).health()}


@app.post("/api/worker/stop")
async def stop_worker(request: Request, user_id: int = Depends(get_current_user)):
    worker = _get_worker(request.app)
    stopped = await worker.stop()
    return {"stopped": stopped, **worker.health()}


@app.get("/api/worker/health")
async def worker_health(request: Request, user_id: int = Depends(get_current_user)):
    return _get_worker(request.app).health()


@app.post("/api/worker/ensure-running")
async def ensure_worker_running(request: Request, user_id: int = Depends(get_current_user)):
    worker = _get_worker(request.app)
    restarted = await worker.ensure_running()
    return {"restarted": restarted, **worker.health()}


# === Executor Callback ===

@app.post("/worker/update-job-status")
async def update_job_status(
    request: Request,
    x_worker_secret: Optional[str] = Header(default=None),
):
    try:
        body = await request.json()
    except ValueError:
        raise BadRequest("Body must be JSON")
    if not isinstance(body, dict):
        raise BadRequest("Body must be a JSON object")

    result = await on_executor_callback(body, header_secret=x_worker_secret)
    return result.to_dict()


# Run with: uvicorn api.main:app --reload --port 8080
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=config.HOST, port=config.PORT)

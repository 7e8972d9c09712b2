"""
Pytest fixtures and configuration for the Auto-Apply Orchestrator test suite.
"""

import pytest
import asyncio
import base64
import itertools
import os
from pathlib import Path
from unittest.mock import AsyncMock

# Add project root to path
import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

os.environ.setdefault("DATABASE_PATH", "/tmp/test_auto_apply.db")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-for-testing-only")
os.environ.setdefault("QUEUE_WORKER_ENABLED", "false")

WORKER_SECRET = "test-worker-secret"


# === Test Data ===

SAMPLE_RESUME_TEXT = """
JANE DOE
Backend Engineer | jane.doe@email.com | (555) 123-4567

EXPERIENCE
Software Engineer at StartupCo (2020-2024)
- Built REST APIs with Python, Django and PostgreSQL
- Ran services on AWS with Docker and Kubernetes

SKILLS
Python, Django, PostgreSQL, AWS, Docker, Kubernetes, Redis

EDUCATION
BS Computer Science, State University (2019)
"""

SAMPLE_PROFILE = {
    "first_name": "Jane",
    "last_name": "Doe",
    "email": "jane.doe@email.com",
    "phone": "555-123-4567",
    "city": "Seattle",
    "state": "WA",
    "country": "United States",
    "linkedin_url": "https://linkedin.com/in/janedoe",
    "job_title": "Backend Engineer",
    "skills": ["Python", "Django", "PostgreSQL", "AWS"],
    "education": [{"degree": "BS Computer Science", "school": "State University"}],
    "work_experience": [{"title": "Software Engineer", "company": "StartupCo"}],
}

RESUME_BYTES = base64.b64encode(b"%PDF-1.4 fake resume").decode()

_job_counter = itertools.count(1)


async def seed_user(
    email: str = "jane.doe@email.com",
    plan: str = "FREE",
    with_profile: bool = True,
    with_resume: bool = True,
    threshold=None,
) -> int:
    from api import database as db

    user_id = await db.create_user(email=email, name="Jane Doe", phone="555-123-4567", subscription_plan=plan)
    if with_profile:
        await db.save_profile(user_id, {**SAMPLE_PROFILE, "email": email, "match_score_threshold": threshold})
    if with_resume:
        await db.save_resume(user_id, "jane_doe.pdf", RESUME_BYTES, SAMPLE_RESUME_TEXT)
    return user_id


async def seed_jobs(user_id: int, count: int, **overrides) -> list:
    from api import database as db

    ids = []
    for i in range(count):
        job = {
            "job_title": f"Backend Engineer {i}",
            "company": f"Company {i}",
            "external_job_id": f"ext-{next(_job_counter)}",
            "link": f"https://jobs.example.com/apply/{i}",
            "description": "Python, Django and PostgreSQL on AWS",
            "match_score": 80,
        }
        job.update(overrides)
        ids.append(await db.create_tracked_application(user_id, job))
    return ids


async def seed_applied_today(user_id: int, count: int) -> list:
    from api import database as db

    return await seed_jobs(
        user_id,
        count,
        status="applied",
        application_status="applied",
        applied_at=db.utcnow().isoformat(),
    )


# === Database ===

@pytest.fixture
def temp_db(tmp_path, monkeypatch):
    """Fresh SQLite file per test; every store function reads DB_PATH at call time."""
    from api import database

    path = tmp_path / "auto_apply_test.db"
    monkeypatch.setattr(database, "DB_PATH", path)
    asyncio.run(database.init_database())
    return path


@pytest.fixture
def worker_secret(monkeypatch):
    from api.config import config

    monkeypatch.setattr(config, "WORKER_SHARED_SECRET", WORKER_SECRET)
    return WORKER_SECRET


# === Mocks ===

@pytest.fixture
def mock_ai():
    """ApplicationAI stand-in with healthy answers."""
    mock = AsyncMock()
    mock.match_score.return_value = {"score": 82, "reasons": ["Strong Python background", "Django experience"]}
    mock.generate_answer.return_value = "I have four years of backend experience building Python services."
    mock.select_option.return_value = 0
    mock.generate_cover_letter.return_value = (
        "Dear Hiring Manager,\n\nI am excited to apply for this backend role. "
        "My Python and Django experience is a close fit.\n\nSincerely,\nJane Doe"
    )
    return mock


@pytest.fixture
def mock_executor():
    """ExecutorClient stand-in: a two-field form and an accepted submission."""
    from api.executor_client import SubmitReceipt

    mock = AsyncMock()
    mock.introspect.return_value = {
        "fields": [
            {"name": "email", "label": "Email", "type": "email", "required": True},
            {"name": "resume", "label": "Resume/CV", "type": "file", "required": True},
        ]
    }
    mock.submit.return_value = SubmitReceipt(status="accepted")
    return mock


# === Authenticated Test Client ===

@pytest.fixture
def authenticated_client(temp_db):
    """
    Test client with authentication bypassed.
    Uses dependency_overrides for proper FastAPI authentication mocking.
    """
    from fastapi.testclient import TestClient
    from api.main import app, get_current_user

    user_id = asyncio.run(seed_user())

    async def mock_get_current_user():
        return user_id

    app.dependency_overrides[get_current_user] = mock_get_current_user

    try:
        client = TestClient(app)
        client.user_id = user_id
        yield client
    finally:
        app.dependency_overrides.pop(get_current_user, None)


@pytest.fixture
def auth_headers():
    """Valid JWT authentication headers for user 1."""
    from api.auth import create_access_token

    token = create_access_token(1)
    return {"Authorization": f"Bearer {token}"}


# === Markers ===

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "unit: fast tests without network or database")
    config.addinivalue_line("markers", "integration: tests against a temporary SQLite database")

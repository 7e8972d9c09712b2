#!/usr/bin/env python3
"""
Match Gate - decides whether a posting is worth auto-applying to.

score() asks the AI provider chain for a 0-100 fit score and falls back to
keyword overlap over a fixed technical vocabulary when the chain is
unavailable. Fallback scores are clamped so they never look as confident
as a model-verified score.
"""

import re
import uuid
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from api.config import config
from api.errors import ProviderUnavailable
from core.models import MatchResult, Posting

logger = logging.getLogger(__name__)


TECH_VOCABULARY = [
    "javascript", "typescript", "python", "java", "c#", "go", "golang", "rust", "ruby",
    "react", "angular", "vue", "node", "express", "django", "flask", "fastapi", "spring",
    "aws", "azure", "gcp", "docker", "kubernetes", "terraform", "devops", "ci/cd",
    "sql", "postgresql", "mysql", "mongodb", "redis", "database", "nosql",
    "frontend", "backend", "fullstack", "full-stack", "software engineer", "developer",
    "machine learning", "data science",
]

_VOCAB_PATTERNS = [
    (term, re.compile(r"(?<![\w#+/-])" + re.escape(term) + r"(?![\w#+/-])"))
    for term in TECH_VOCABULARY
]

NO_RESUME_REASON = "No resume on file - upload a resume to enable matching"


def extract_keywords(text: str) -> List[str]:
    lowered = (text or "").lower()
    return [term for term, pattern in _VOCAB_PATTERNS if pattern.search(lowered)]


def keyword_score(resume_text: str, posting_text: str, lo: int = 30, hi: int = 85) -> MatchResult:
    resume_terms = set(extract_keywords(resume_text))
    job_terms = extract_keywords(posting_text)
    matching = [t for t in job_terms if t in resume_terms]

    pct = round(len(matching) / len(job_terms) * 100) if job_terms else 50
    reasons = [
        "AI scoring unavailable - using keyword matching",
        f"Found {len(matching)} of {len(job_terms)} posting keywords in your resume",
    ]
    if matching:
        reasons.append(f"Shared skills: {', '.join(matching[:5])}")
    return MatchResult(score=max(lo, min(hi, pct)), reasons=reasons, source="keyword")


@dataclass
class SearchSession:
    """
    Per-request scoring scope: caches (user, posting) results and counts
    progress. Persisted by the caller under its id.
    """
    user_id: int
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    evaluated: int = 0
    accepted: int = 0
    rejected: int = 0
    cache: Dict[str, MatchResult] = field(default_factory=dict)

    def key(self, user_id: int, posting: Posting) -> str:
        return f"{user_id}:{posting.cache_key}"

    def record(self, accepted: bool):
        self.evaluated += 1
        if accepted:
            self.accepted += 1
        else:
            self.rejected += 1

    def progress(self) -> Dict[str, int]:
        return {"evaluated": self.evaluated, "accepted": self.accepted, "rejected": self.rejected}


class MatchGate:
    """Scores postings against a user's resume."""

    def __init__(self, ai, resume_loader):
        """
        Args:
            ai: object exposing async match_score(resume_text, posting_text)
            resume_loader: async callable user_id -> resume text or None
        """
        self.ai = ai
        self.resume_loader = resume_loader

    async def score(self, user_id: int, posting: Posting, session: Optional[SearchSession] = None) -> MatchResult:
        key = session.key(user_id, posting) if session else None
        if session and key in session.cache:
            return session.cache[key]

        result = await self._score(user_id, posting)
        if session:
            session.cache[key] = result
        return result

    async def _score(self, user_id: int, posting: Posting) -> MatchResult:
        resume_text = await self.resume_loader(user_id)
        if not resume_text or not resume_text.strip():
            return MatchResult(score=0, reasons=[NO_RESUME_REASON], source="no_resume")

        try:
            data = await self.ai.match_score(resume_text, posting.as_text())
            return MatchResult(score=int(data["score"]), reasons=list(data.get("reasons") or []), source="ai")
        except ProviderUnavailable as e:
            logger.warning(f"[MatchGate] AI scoring failed for {posting.company} - {posting.title}: {e}")

        return keyword_score(
            resume_text,
            posting.description or posting.as_text(),
            lo=config.MATCH_FALLBACK_MIN,
            hi=config.MATCH_FALLBACK_MAX,
        )


def format_explanation(result: MatchResult) -> str:
    return "\n".join(f"• {reason}" for reason in result.reasons)

#!/usr/bin/env python3
"""
Application AI Service

The three model-backed operations the auto-apply pipeline consumes
(match scoring, free-text answers, option selection) plus cover letters,
all routed through a ProviderChain. Every method raises
ProviderUnavailable when no usable answer came back; callers own the
deterministic fallback.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from ai.providers import ProviderChain, build_provider_chain
from api.errors import ProviderUnavailable

logger = logging.getLogger(__name__)


def _safe_json_loads(text: str) -> Any:
    """Parse JSON from text with relaxed extraction."""
    text = (text or "").strip()
    if not text:
        return None

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    # Strip code fences
    if "```" in text:
        if "```json" in text:
            text = text.split("```json", 1)[1].split("```", 1)[0].strip()
        else:
            text = text.split("```", 1)[1].split("```", 1)[0].strip()

    obj_start = text.find("{")
    arr_start = text.find("[")
    if arr_start != -1 and (obj_start == -1 or arr_start < obj_start):
        start, end = arr_start, text.rfind("]") + 1
    else:
        start, end = obj_start, text.rfind("}") + 1

    if start != -1 and end > start:
        try:
            return json.loads(text[start:end])
        except json.JSONDecodeError:
            return None
    return None


class ApplicationAI:
    """
    Model-backed helpers for one AI tier.

    Methods:
      - match_score
      - generate_answer
      - select_option
      - generate_cover_letter
    """

    def __init__(self, chain: ProviderChain):
        self.chain = chain
        self.system_prompt = (
            "You are helping a job seeker complete applications. "
            "Be truthful and concise. "
            "Only use facts present in the resume or profile provided; never invent "
            "employers, dates, credentials or skills."
        )

    async def _ask(self, prompt: str, *, operation: str, max_tokens: int = 500, temperature: float = 0.2) -> str:
        messages = [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": prompt},
        ]
        return await self.chain.complete(
            messages, operation=operation, temperature=temperature, max_tokens=max_tokens
        )

    async def match_score(self, resume_text: str, posting_text: str) -> Dict[str, Any]:
        """Score 0-100 plus up to five short reasons."""
        prompt = (
            "Rate how well this candidate fits the job on a 0-100 scale.\n"
            "Weigh skills, seniority and domain experience.\n\n"
            f"RESUME:\n{resume_text[:6000]}\n\n"
            f"JOB:\n{posting_text[:4000]}\n\n"
            'Respond with JSON only: {"score": <int>, "reasons": ["short reason", ...]}'
        )
        raw = await self._ask(prompt, operation="match_score", max_tokens=400, temperature=0.1)
        data = _safe_json_loads(raw)
        if not isinstance(data, dict) or "score" not in data:
            raise ProviderUnavailable(f"Unparseable match score: {raw[:120]}")
        try:
            score = int(round(float(data["score"])))
        except (TypeError, ValueError):
            raise ProviderUnavailable(f"Non-numeric match score: {data.get('score')!r}")
        reasons = [str(r).strip() for r in (data.get("reasons") or []) if str(r).strip()]
        return {"score": max(0, min(100, score)), "reasons": reasons[:5]}

    async def generate_answer(
        self,
        question: str,
        resume_text: str,
        profile_summary: str,
        posting_text: str,
    ) -> str:
        prompt = (
            "Answer this job application question in 2-4 sentences, first person.\n"
            "Use only the candidate information below.\n\n"
            f"QUESTION: {question}\n\n"
            f"PROFILE:\n{profile_summary}\n\n"
            f"RESUME:\n{resume_text[:4000]}\n\n"
            f"JOB:\n{posting_text[:2000]}\n\n"
            "Return only the answer text."
        )
        return await self._ask(prompt, operation="generate_answer", max_tokens=300)

    async def select_option(
        self,
        question: str,
        options: List[str],
        resume_text: str,
        profile_summary: str,
        posting_text: str,
    ) -> int:
        """Zero-based index of the best option."""
        numbered = "\n".join(f"{i}. {opt}" for i, opt in enumerate(options))
        prompt = (
            "Pick the option a truthful, qualified candidate would choose.\n\n"
            f"QUESTION: {question}\n\n"
            f"OPTIONS:\n{numbered}\n\n"
            f"PROFILE:\n{profile_summary}\n\n"
            f"RESUME:\n{resume_text[:3000]}\n\n"
            f"JOB:\n{posting_text[:1500]}\n\n"
            'Respond with JSON only: {"index": <int>}'
        )
        raw = await self._ask(prompt, operation="select_option", max_tokens=50, temperature=0.0)
        data = _safe_json_loads(raw)
        if isinstance(data, dict):
            data = data.get("index")
        try:
            index = int(data)
        except (TypeError, ValueError):
            raise ProviderUnavailable(f"Unparseable option index: {raw[:80]}")
        if not 0 <= index < len(options):
            raise ProviderUnavailable(f"Option index {index} out of range")
        return index

    async def generate_cover_letter(
        self,
        resume_text: str,
        profile_summary: str,
        job_title: str,
        company: str,
        posting_text: str,
    ) -> str:
        prompt = (
            "Write a concise cover letter (200-350 words).\n"
            "Use only the candidate background provided. Do not invent experience.\n\n"
            f"JOB TITLE: {job_title}\n"
            f"COMPANY: {company}\n"
            f"JOB:\n{posting_text[:2500]}\n\n"
            f"PROFILE:\n{profile_summary}\n\n"
            f"RESUME:\n{resume_text[:4000]}\n\n"
            "Return only the cover letter text."
        )
        return await self._ask(prompt, operation="generate_cover_letter", max_tokens=900, temperature=0.4)


_services: Dict[str, ApplicationAI] = {}


def get_application_ai(tier: Optional[str] = None) -> ApplicationAI:
    """Get the singleton service for an AI tier."""
    key = tier or "basic"
    if key not in _services:
        _services[key] = ApplicationAI(build_provider_chain(key))
    return _services[key]

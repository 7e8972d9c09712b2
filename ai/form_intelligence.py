#!/usr/bin/env python3
"""
AI Form Intelligence - answers and option choices for application forms.

AnswerGenerator fills free-text questions and cover letters; OptionSelector
picks a choice for select/radio/checkbox fields. Both try fixed policy
first where one exists, then the AI provider chain, then a deterministic
fallback, and report which source produced the value.
"""

import re
import logging
from typing import List, Optional, Tuple

from api.errors import ProviderUnavailable
from core.models import Applicant, FieldOption, FieldType, FormField, Posting

logger = logging.getLogger(__name__)


WORK_AUTH_QUESTION = re.compile(
    r"authori[sz]ed to work|legally (?:authori[sz]ed|eligible|able)|eligible to work|right to work|"
    r"work permit|work authori[sz]ation|employment eligibility"
)
SPONSORSHIP_QUESTION = re.compile(r"sponsor|\bvisa\b|\bh-?1b\b")
WITHOUT_SPONSORSHIP = re.compile(r"without (?:\w+ )?sponsorship|not require (?:\w+ )?sponsorship")

NEGATED_SPONSOR_OPTION = re.compile(
    r"(?:do not|don't|won't|will not|not)\s+(?:\w+\s+)?(?:need|require)|no\s+sponsorship|without\s+(?:\w+\s+)?sponsorship"
)
POSITIVE_AUTH_OPTION = re.compile(r"\b(?:authori[sz]ed|eligible|citizen|permanent resident|green card)\b")
NOT_AUTH_OPTION = re.compile(r"\bnot\s+(?:currently\s+)?(?:authori|eligible)")
NEEDS_SPONSOR_OPTION = re.compile(r"\b(?:require|need)s?\b.*\bsponsor")

CONSENT_TERMS = re.compile(r"agree|consent|accept|terms|privacy|gdpr|acknowledge|confirm|certify")

WORK_AUTH_ANSWER = "Yes, I am legally authorized to work in this country and do not require sponsorship."

PLACEHOLDER_MARKERS = ["[", "{{", "<insert", "lorem ipsum", "n/a", "not specified"]
GENERIC_REFUSALS = ["as an ai", "i cannot", "i can't", "i'm sorry", "i am sorry", "language model"]
MIN_ANSWER_LENGTH = 10
NUMBER_PATTERN = re.compile(r"^-?\d+(?:\.\d+)?$")


def is_work_auth_question(text: str) -> bool:
    return bool(WORK_AUTH_QUESTION.search(text) or SPONSORSHIP_QUESTION.search(text))


def numeric_answer(text: Optional[str]) -> Optional[str]:
    """The answer as a plain number string, or None when it is prose."""
    candidate = (text or "").strip().lstrip("$").replace(",", "")
    return candidate if NUMBER_PATTERN.match(candidate) else None


def validate_ai_answer(answer: Optional[str]) -> bool:
    """Reject short, placeholder-laden or refusal-style model output."""
    text = (answer or "").strip()
    if len(text) < MIN_ANSWER_LENGTH:
        return False
    lowered = text.lower()
    if any(marker in lowered for marker in PLACEHOLDER_MARKERS):
        return False
    if any(phrase in lowered for phrase in GENERIC_REFUSALS):
        return False
    return True


# ============== Template Answers ==============

def _skills(applicant: Applicant, n: int = 3) -> str:
    skills = [s for s in applicant.profile.skills if s][:n]
    return ", ".join(skills) if skills else "my core technical and communication skills"


def _latest_role(applicant: Applicant) -> str:
    if applicant.profile.work_experience:
        role = applicant.profile.work_experience[0]
        title, company = role.get("title") or "", role.get("company") or ""
        if title and company:
            return f"{title} at {company}"
        return title or company
    return applicant.profile.job_title


def _experience(applicant: Applicant, posting: Posting) -> str:
    role = _latest_role(applicant)
    lead = f"In my most recent role as {role}, I" if role else "Throughout my career I"
    return f"{lead} have worked extensively with {_skills(applicant)}, which maps directly to the {posting.title} position."


def _strengths(applicant: Applicant, posting: Posting) -> str:
    return f"My key strengths are {_skills(applicant)}, combined with a habit of clear communication and ownership of outcomes."


def _motivation(applicant: Applicant, posting: Posting) -> str:
    company = posting.company or "your company"
    return (
        f"I am excited about {company} because the {posting.title} role lets me apply my experience "
        f"with {_skills(applicant, 2)} to problems that matter to the team."
    )


def _compensation(applicant: Applicant, posting: Posting) -> str:
    return "My salary expectations are flexible and negotiable based on the total compensation package for this role."


def _availability(applicant: Applicant, posting: Posting) -> str:
    return "I can start within two weeks of an accepted offer and am flexible on the exact date."


def _relocation(applicant: Applicant, posting: Posting) -> str:
    return "Yes, I am open to relocation for the right opportunity."


def _remote(applicant: Applicant, posting: Posting) -> str:
    return "I am comfortable working remotely, hybrid or on-site, and have experience collaborating with distributed teams."


def _education(applicant: Applicant, posting: Posting) -> str:
    if applicant.profile.education:
        edu = applicant.profile.education[0]
        degree = edu.get("degree") or "degree"
        school = edu.get("school") or edu.get("institution") or ""
        return f"I hold a {degree}{' from ' + school if school else ''}, and I keep learning through hands-on projects."
    return "My education and continued hands-on learning have prepared me well for this role."


def _languages(applicant: Applicant, posting: Posting) -> str:
    return "I am fluent in English at a professional working level."


def _teamwork(applicant: Applicant, posting: Posting) -> str:
    return (
        "I work well in cross-functional teams: I share context early, ask for feedback, "
        "and make sure hand-offs are clear."
    )


def _default(applicant: Applicant, posting: Posting) -> str:
    return (
        f"My background with {_skills(applicant)} aligns well with the requirements of the "
        f"{posting.title or 'role'}, and I would welcome the chance to discuss it further."
    )


TEMPLATE_ANSWERS = [
    ("experience", re.compile(r"experience|background|years|worked with|familiar"), _experience),
    ("strengths", re.compile(r"strength|skill|good at|best at"), _strengths),
    ("motivation", re.compile(r"why .*(?:join|work|interested|apply)|interest|motivat|passion"), _motivation),
    ("compensation", re.compile(r"salary|compensation|\bpay\b|\brate\b|expectation"), _compensation),
    ("availability", re.compile(r"start|notice|availab|when can"), _availability),
    ("relocation", re.compile(r"relocat|move to|commut"), _relocation),
    ("remote", re.compile(r"remote|hybrid|on-?site|office"), _remote),
    ("education", re.compile(r"education|degree|university|college|school|gpa"), _education),
    ("languages", re.compile(r"language|speak|fluent|english"), _languages),
    ("teamwork", re.compile(r"team|collaborat|conflict|cowork"), _teamwork),
]


def template_answer(question: str, applicant: Applicant, posting: Posting) -> Tuple[str, str]:
    """(answer, topic) from the canned library; 'default' when no topic matches."""
    lowered = question.lower()
    for topic, pattern, render in TEMPLATE_ANSWERS:
        if pattern.search(lowered):
            return render(applicant, posting), topic
    return _default(applicant, posting), "default"


def template_cover_letter(applicant: Applicant, posting: Posting) -> str:
    company = posting.company or "your company"
    role = posting.title or "open"
    name = applicant.full_name
    closing = f"\n\nSincerely,\n{name}" if name else ""
    return (
        f"Dear Hiring Manager,\n\n"
        f"I am writing to express my interest in the {role} position at {company}. "
        f"My background with {_skills(applicant)} aligns well with the requirements of this role.\n\n"
        "I am particularly drawn to this opportunity because it lets me build on my strengths while "
        "taking on new challenges, and I am confident I can contribute to the team from day one.\n\n"
        "Thank you for considering my application. I look forward to discussing how my experience "
        f"can benefit {company}.{closing}"
    )


# ============== Answer Generator ==============

class AnswerGenerator:
    """Free-text answers: fixed policy -> AI -> template."""

    def __init__(self, ai):
        self.ai = ai

    async def answer(self, form_field: FormField, applicant: Applicant, posting: Posting) -> Tuple[str, str]:
        question = form_field.question
        if is_work_auth_question(form_field.text):
            return WORK_AUTH_ANSWER, "fixed"

        try:
            answer = await self.ai.generate_answer(
                question, applicant.resume_text, applicant.profile.summary(), posting.as_text()
            )
            number = numeric_answer(answer)
            if form_field.field_type == FieldType.NUMBER and number is not None:
                return number, "ai_answer"
            if validate_ai_answer(answer):
                return answer.strip()[:1500], "ai_answer"
            logger.warning(f"[FormIntelligence] Rejected AI answer for '{question[:60]}'")
        except ProviderUnavailable as e:
            logger.warning(f"[FormIntelligence] AI answer failed for '{question[:60]}': {e}")

        answer, _topic = template_answer(question, applicant, posting)
        return answer, "template"

    async def cover_letter(self, applicant: Applicant, posting: Posting) -> Tuple[str, str]:
        try:
            letter = await self.ai.generate_cover_letter(
                applicant.resume_text,
                applicant.profile.summary(),
                posting.title,
                posting.company,
                posting.as_text(),
            )
            if validate_ai_answer(letter):
                return letter.strip(), "cover_letter"
        except ProviderUnavailable as e:
            logger.warning(f"[FormIntelligence] Cover letter generation failed: {e}")
        return template_cover_letter(applicant, posting), "template"


# ============== Option Selector ==============

PLACEHOLDER_OPTION = re.compile(
    r"^[-\s.]*(?:please )?(?:select|choose|pick)(?: one| an? \w+)?[-\s.:…]*$|^[-\s.]+$|^none selected$"
)


def is_placeholder_option(option: FieldOption) -> bool:
    label = " ".join(option.label.lower().split())
    return not label or bool(PLACEHOLDER_OPTION.match(label))


def _yes_no_indexes(options: List[FieldOption]) -> Tuple[Optional[int], Optional[int]]:
    yes_idx = no_idx = None
    for i, opt in enumerate(options):
        label = opt.label.strip().lower()
        if yes_idx is None and re.match(r"yes\b", label):
            yes_idx = i
        elif no_idx is None and re.match(r"no\b", label):
            no_idx = i
    return yes_idx, no_idx


def _permissiveness(label: str) -> int:
    text = label.lower()
    negated_sponsor = bool(NEGATED_SPONSOR_OPTION.search(text))
    not_auth = bool(NOT_AUTH_OPTION.search(text))
    score = 0
    if negated_sponsor:
        score += 2
    if POSITIVE_AUTH_OPTION.search(text) and not not_auth:
        score += 2
    if NEEDS_SPONSOR_OPTION.search(text) and not negated_sponsor:
        score -= 3
    if not_auth:
        score -= 3
    return score


def pick_work_authorization(question: str, options: List[FieldOption]) -> Optional[int]:
    """Most permissive 'authorized, no sponsorship needed' option, or None."""
    text = question.lower()
    wants_sponsor = bool(SPONSORSHIP_QUESTION.search(text)) and not WITHOUT_SPONSORSHIP.search(text)
    yes_idx, no_idx = _yes_no_indexes(options)
    if yes_idx is not None and no_idx is not None:
        return no_idx if wants_sponsor else yes_idx

    scored = [(_permissiveness(opt.label), i) for i, opt in enumerate(options)]
    best_score, best_idx = max(scored, key=lambda pair: (pair[0], -pair[1]))
    return best_idx if best_score > 0 else None


def pick_yes(options: List[FieldOption]) -> Optional[int]:
    yes_idx, no_idx = _yes_no_indexes(options)
    if yes_idx is not None and no_idx is not None:
        return yes_idx
    return None


def consent_value(form_field: FormField) -> Optional[bool]:
    """Single checkbox: tick when required or when it reads as consent."""
    if form_field.required or CONSENT_TERMS.search(form_field.text):
        return True
    return None


class OptionSelector:
    """Choice fields: policy rules -> AI -> first option."""

    def __init__(self, ai):
        self.ai = ai

    async def select(self, form_field: FormField, applicant: Applicant, posting: Posting) -> Tuple[FieldOption, str]:
        options = [opt for opt in form_field.options if not is_placeholder_option(opt)] or form_field.options
        text = form_field.text

        if is_work_auth_question(text):
            idx = pick_work_authorization(text, options)
            if idx is not None:
                return options[idx], "policy"

        idx = pick_yes(options)
        if idx is not None:
            return options[idx], "policy"

        try:
            idx = await self.ai.select_option(
                form_field.question,
                [opt.label for opt in options],
                applicant.resume_text,
                applicant.profile.summary(),
                posting.as_text(),
            )
            return options[idx], "ai_option"
        except (ProviderUnavailable, IndexError) as e:
            logger.warning(f"[FormIntelligence] Option selection fell back to first option: {e}")

        return options[0], "first_option"

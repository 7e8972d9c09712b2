"""
Form Schema Mapper

Turns an introspected application form into a field -> value plan for one
submission attempt:

    introspect -> validate feasibility -> assign fields

Assignment walks an ordered list of FieldRule(predicate, assigner). For
each field the first rule whose predicate matches and whose assigner
returns a value wins; a field no rule can fill is omitted from the
payload. Required fields that cannot be satisfied from stored data stop
the attempt before any assignment happens, so a skipped attempt never
carries a partial payload.
"""

import re
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ai.form_intelligence import consent_value, numeric_answer
from api.errors import IntrospectionFailed, InfeasibleForm
from core.models import (
    CHOICE_FIELD_TYPES,
    TEXT_FIELD_TYPES,
    Applicant,
    ApplicationPayload,
    FieldType,
    FormField,
    FormSchema,
    MappingOutcome,
    MappingResult,
    Posting,
)

logger = logging.getLogger(__name__)


# Profile patterns, matched against normalised "label name" text. Order matters:
# email must win over address ("email address"), names over the bare "name".
PROFILE_PATTERNS: List[Tuple[str, "re.Pattern[str]"]] = [
    ("email", re.compile(r"e ?mail")),
    ("first_name", re.compile(r"\bfirst ?name\b|\bgiven ?name\b|\bfname\b|\bforename\b")),
    ("last_name", re.compile(r"\blast ?name\b|\bsurname\b|\bfamily ?name\b|\blname\b")),
    ("full_name", re.compile(r"\bfull ?name\b|\blegal name\b|\byour name\b|\b(?:applicant|candidate) name\b|^name(?: \w+)? name$|^name$")),
    ("phone", re.compile(r"phone|mobile|\btel\b|\bcell\b")),
    ("linkedin_url", re.compile(r"linked ?in")),
    ("github_url", re.compile(r"git ?hub")),
    ("zip_code", re.compile(r"\bzip\b|postal|post ?code")),
    ("city", re.compile(r"\bcity\b|\btown\b")),
    ("state", re.compile(r"\bstate\b(?! (?:your|why|how|what))|\bprovince\b|\bregion\b")),
    ("country", re.compile(r"\bcountry\b")),
    ("address", re.compile(r"\baddress\b|\bstreet\b")),
    ("website", re.compile(r"portfolio|website|personal site|home ?page|\burl\b")),
]

CONTACT_KEYS = ("first_name", "last_name", "full_name", "email")

# Only single-line inputs can hold a profile value
PROFILE_FIELD_TYPES = (FieldType.TEXT, FieldType.EMAIL, FieldType.TEL, FieldType.URL)

LONG_FORM_PROMPT = re.compile(
    r"^(?:please )?(?:describe|tell|explain|why|how|share|walk|give|list|briefly)\b"
)
SHORT_QUESTION_WORDS = 6

RESUME_PATTERN = re.compile(r"resume|résumé|\bcv\b|curriculum")
COVER_LETTER_PATTERN = re.compile(
    r"cover ?letter|motivation|why (?:do )?you want|why are you interested|why .* (?:join|work)"
)


def is_long_form_question(form_field: FormField) -> bool:
    """
    Labels asking for prose ("Describe your email campaigns...") rather than
    a fact. Short questions such as "What is your email?" still count as facts.
    """
    label = " ".join(form_field.question.lower().split())
    if LONG_FORM_PROMPT.match(label):
        return True
    return "?" in label and len(label.split()) > SHORT_QUESTION_WORDS


def profile_key(form_field: FormField) -> Optional[str]:
    if form_field.field_type not in PROFILE_FIELD_TYPES:
        return None
    if form_field.field_type == FieldType.EMAIL:
        return "email"
    if form_field.field_type == FieldType.TEL:
        return "phone"
    if is_long_form_question(form_field):
        return None
    text = form_field.text
    for key, pattern in PROFILE_PATTERNS:
        if pattern.search(text):
            return key
    return None


def profile_value(applicant: Applicant, key: str) -> str:
    profile = applicant.profile
    resolvers: Dict[str, Callable[[], str]] = {
        "first_name": lambda: applicant.first_name,
        "last_name": lambda: applicant.last_name,
        "full_name": lambda: applicant.full_name,
        "email": lambda: applicant.contact_email,
        "phone": lambda: applicant.contact_phone,
        "website": lambda: profile.portfolio_url or profile.website,
    }
    if key in resolvers:
        return (resolvers[key]() or "").strip()
    return str(getattr(profile, key, "") or "").strip()


def is_resume_field(form_field: FormField) -> bool:
    return bool(RESUME_PATTERN.search(form_field.text))


# ============== Feasibility ==============

def unsatisfiable_fields(schema: FormSchema, applicant: Applicant) -> List[str]:
    """Required fields stored data cannot satisfy, as 'name: reason' strings."""
    problems = []
    for f in schema.required_fields:
        if f.field_type == FieldType.FILE:
            # Unknown file kinds are accepted and omitted later
            if is_resume_field(f) and not (applicant.resume and applicant.resume.has_content):
                problems.append(f"{f.name}: no resume on file")
            continue
        if f.field_type in TEXT_FIELD_TYPES:
            key = profile_key(f)
            if key in CONTACT_KEYS and not profile_value(applicant, key):
                problems.append(f"{f.name}: missing {key.replace('_', ' ')}")
    return problems


# ============== Rules ==============

@dataclass
class Assignment:
    value: Any
    source: str


@dataclass
class MappingContext:
    applicant: Applicant
    posting: Posting
    answers: Any  # AnswerGenerator
    options: Any  # OptionSelector


Predicate = Callable[[FormField], bool]
Assigner = Callable[[FormField, MappingContext], Awaitable[Optional[Assignment]]]


@dataclass
class FieldRule:
    name: str
    predicate: Predicate
    assign: Assigner


def _is_text(f: FormField) -> bool:
    return f.field_type in TEXT_FIELD_TYPES


async def _assign_profile(f: FormField, ctx: MappingContext) -> Optional[Assignment]:
    key = profile_key(f)
    value = profile_value(ctx.applicant, key) if key else ""
    return Assignment(value, "profile") if value else None


async def _assign_resume(f: FormField, ctx: MappingContext) -> Optional[Assignment]:
    resume = ctx.applicant.resume
    if not is_resume_field(f) or not resume or not resume.has_content:
        return None
    return Assignment(
        {"fileContent": resume.file_content, "contentType": resume.content_type, "filename": resume.filename},
        "resume",
    )


def _is_cover_letter(f: FormField) -> bool:
    long_form = f.field_type == FieldType.TEXTAREA or "cover" in f.name.lower()
    return long_form and bool(COVER_LETTER_PATTERN.search(f.text))


async def _assign_cover_letter(f: FormField, ctx: MappingContext) -> Optional[Assignment]:
    text, source = await ctx.answers.cover_letter(ctx.applicant, ctx.posting)
    return Assignment(text, source)


async def _assign_choice(f: FormField, ctx: MappingContext) -> Optional[Assignment]:
    if not f.options:
        if f.field_type == FieldType.CHECKBOX:
            ticked = consent_value(f)
            return Assignment(True, "consent") if ticked else None
        return None
    option, source = await ctx.options.select(f, ctx.applicant, ctx.posting)
    if f.field_type == FieldType.CHECKBOX:
        return Assignment([option.submit_value], source)
    return Assignment(option.submit_value, source)


async def _assign_answer(f: FormField, ctx: MappingContext) -> Optional[Assignment]:
    text, source = await ctx.answers.answer(f, ctx.applicant, ctx.posting)
    if f.field_type == FieldType.NUMBER:
        number = numeric_answer(text)
        return Assignment(number, source) if number is not None else None
    return Assignment(text, source)


DEFAULT_RULES: List[FieldRule] = [
    FieldRule("profile", lambda f: _is_text(f) and profile_key(f) is not None, _assign_profile),
    FieldRule("resume", lambda f: f.field_type == FieldType.FILE, _assign_resume),
    FieldRule("cover_letter", lambda f: _is_text(f) and _is_cover_letter(f), _assign_cover_letter),
    FieldRule("choice", lambda f: f.field_type in CHOICE_FIELD_TYPES, _assign_choice),
    FieldRule("answer", lambda f: _is_text(f) and f.required, _assign_answer),
]


# ============== Mapper ==============

class FormSchemaMapper:
    """Builds the ApplicationPayload for one submission attempt."""

    def __init__(self, executor, answers, options, rules: Optional[List[FieldRule]] = None):
        self.executor = executor
        self.answers = answers
        self.options = options
        self.rules = rules or DEFAULT_RULES

    async def introspect(self, apply_url: str) -> FormSchema:
        raw = await self.executor.introspect(apply_url)
        schema = FormSchema.parse(raw)
        if not schema.fields:
            raise IntrospectionFailed(f"No form fields found at {apply_url}")
        return schema

    def validate_feasibility(self, schema: FormSchema, applicant: Applicant):
        problems = unsatisfiable_fields(schema, applicant)
        if problems:
            raise InfeasibleForm("Required field(s) cannot be satisfied: " + "; ".join(problems))

    async def assign_fields(self, schema: FormSchema, applicant: Applicant, posting: Posting) -> ApplicationPayload:
        ctx = MappingContext(applicant, posting, self.answers, self.options)
        payload = ApplicationPayload(resume=applicant.resume.metadata() if applicant.resume else None)

        for f in schema.fields:
            assignment = None
            for rule in self.rules:
                if not rule.predicate(f):
                    continue
                assignment = await rule.assign(f, ctx)
                if assignment is not None:
                    break
            if assignment is None:
                payload.unassigned.append(f.name)
                continue
            payload.fields[f.name] = assignment.value
            payload.field_sources[f.name] = assignment.source

        logger.info(
            f"Mapped {len(payload.fields)}/{len(schema.fields)} fields for {posting.company} - {posting.title}"
        )
        return payload

    async def build(self, applicant: Applicant, posting: Posting) -> MappingResult:
        """
        Run the whole state machine. Introspection and feasibility failures
        come back as a skipped result; executor outages propagate.
        """
        try:
            schema = await self.introspect(posting.apply_url)
            self.validate_feasibility(schema, applicant)
        except (IntrospectionFailed, InfeasibleForm) as e:
            logger.info(f"Skipping {posting.apply_url}: {e.detail}")
            return MappingResult(MappingOutcome.SKIPPED, reason=e.detail)

        payload = await self.assign_fields(schema, applicant, posting)
        return MappingResult(MappingOutcome.READY, payload=payload)


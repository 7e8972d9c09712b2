#!/usr/bin/env python3
"""
Shared Data Models for the Auto-Apply Orchestrator

Queue/tracker status enums, the applicant context handed to the form
mapper, and the transient form schema / payload types.
"""

import json
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional


# ============== Enums ==============

class QueueStatus(str, Enum):
    """QueueEntry lifecycle."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    STANDBY = "standby"

    @property
    def is_terminal(self) -> bool:
        return self in (QueueStatus.COMPLETED, QueueStatus.FAILED, QueueStatus.SKIPPED)


ACTIVE_QUEUE_STATUSES = (QueueStatus.PENDING.value, QueueStatus.PROCESSING.value)


class ApplicationStatus(str, Enum):
    """Auto-apply outcome stored on the tracked application."""
    PENDING = "pending"
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"


class LifecycleStatus(str, Enum):
    """User-facing pipeline stage of a tracked application."""
    SAVED = "saved"
    APPLIED = "applied"
    INTERVIEW = "interview"
    OFFER = "offer"
    REJECTED = "rejected"


class FieldType(str, Enum):
    """Normalised input type of an introspected form field."""
    TEXT = "text"
    EMAIL = "email"
    TEL = "tel"
    URL = "url"
    NUMBER = "number"
    TEXTAREA = "textarea"
    SELECT = "select"
    RADIO = "radio"
    CHECKBOX = "checkbox"
    FILE = "file"
    FIELDSET = "fieldset"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "FieldType":
        value = (raw or "").strip().lower()
        aliases = {
            "phone": cls.TEL,
            "text_area": cls.TEXTAREA,
            "long_text": cls.TEXTAREA,
            "dropdown": cls.SELECT,
            "select-one": cls.SELECT,
            "select-multiple": cls.SELECT,
            "multiselect": cls.SELECT,
            "boolean": cls.CHECKBOX,
            "group": cls.FIELDSET,
        }
        if value in aliases:
            return aliases[value]
        try:
            return cls(value)
        except ValueError:
            return cls.TEXT


TEXT_FIELD_TYPES = (
    FieldType.TEXT, FieldType.EMAIL, FieldType.TEL, FieldType.URL,
    FieldType.NUMBER, FieldType.TEXTAREA,
)
CHOICE_FIELD_TYPES = (FieldType.SELECT, FieldType.RADIO, FieldType.CHECKBOX, FieldType.FIELDSET)


def parse_flag(value: Any) -> bool:
    """Executor flags arrive as JSON booleans or as strings like "false"."""
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "y", "on", "required")
    return bool(value)


class MappingOutcome(str, Enum):
    READY = "ready"
    SKIPPED = "skipped"


# ============== Subscription Plans ==============

@dataclass(frozen=True)
class SubscriptionPlan:
    """Billing reference data; read-only to the queue."""
    id: str
    daily_limit: int
    resumes_allowed: int = 1
    priority: bool = False
    ai_tier: str = "basic"

    @property
    def queue_priority(self) -> int:
        if self.priority:
            return 100
        if self.id != "FREE":
            return 50
        return 10


DEFAULT_PLANS: List[SubscriptionPlan] = [
    SubscriptionPlan("FREE", daily_limit=5, resumes_allowed=1, priority=False, ai_tier="basic"),
    SubscriptionPlan("two_weeks", daily_limit=20, resumes_allowed=2, priority=False, ai_tier="standard"),
    SubscriptionPlan("one_month_silver", daily_limit=40, resumes_allowed=3, priority=False, ai_tier="standard"),
    SubscriptionPlan("one_month_gold", daily_limit=100, resumes_allowed=5, priority=True, ai_tier="premium"),
    SubscriptionPlan("three_months_gold", daily_limit=100, resumes_allowed=5, priority=True, ai_tier="premium"),
]


# ============== Postings ==============

@dataclass
class Posting:
    """A job posting as handed to the Match Gate."""
    title: str
    company: str
    description: str = ""
    apply_url: str = ""
    external_job_id: Optional[str] = None
    location: str = ""
    source: str = "manual"

    @property
    def cache_key(self) -> str:
        if self.external_job_id:
            return f"id:{self.external_job_id}"
        return f"tc:{self.company.lower()}|{self.title.lower()}|{self.apply_url}"

    def as_text(self) -> str:
        parts = [f"Title: {self.title}", f"Company: {self.company}"]
        if self.location:
            parts.append(f"Location: {self.location}")
        if self.description:
            parts.append(f"Description: {self.description}")
        return "\n".join(parts)

    @classmethod
    def from_tracked(cls, row: Dict[str, Any]) -> "Posting":
        return cls(
            title=row.get("job_title") or "",
            company=row.get("company") or "",
            description=row.get("description") or "",
            apply_url=row.get("link") or "",
            external_job_id=row.get("external_job_id"),
            location=row.get("location") or "",
            source=row.get("source") or "manual",
        )


@dataclass
class MatchResult:
    score: int
    reasons: List[str]
    source: str = "ai"  # ai | keyword | no_resume


# ============== Applicant Context ==============

@dataclass
class ApplicantProfile:
    """Profile fields the mapper copies into forms."""
    first_name: str = ""
    last_name: str = ""
    full_name: str = ""
    email: str = ""
    phone: str = ""
    address: str = ""
    city: str = ""
    state: str = ""
    zip_code: str = ""
    country: str = ""
    linkedin_url: str = ""
    github_url: str = ""
    portfolio_url: str = ""
    website: str = ""
    job_title: str = ""
    skills: List[str] = field(default_factory=list)
    education: List[Dict[str, Any]] = field(default_factory=list)
    work_experience: List[Dict[str, Any]] = field(default_factory=list)
    match_score_threshold: Optional[int] = None

    @classmethod
    def from_row(cls, row: Optional[Dict[str, Any]]) -> "ApplicantProfile":
        if not row:
            return cls()

        def _json_list(key: str) -> list:
            raw = row.get(key)
            if not raw:
                return []
            if isinstance(raw, list):
                return raw
            try:
                data = json.loads(raw)
            except (TypeError, ValueError):
                return []
            return data if isinstance(data, list) else []

        known = {k for k in cls.__dataclass_fields__} - {"skills", "education", "work_experience"}
        values = {k: (row.get(k) or "") for k in known if k != "match_score_threshold"}
        return cls(
            **values,
            skills=_json_list("skills_json"),
            education=_json_list("education_json"),
            work_experience=_json_list("work_experience_json"),
            match_score_threshold=row.get("match_score_threshold"),
        )

    def summary(self) -> str:
        lines = []
        if self.job_title:
            lines.append(f"Current title: {self.job_title}")
        if self.skills:
            lines.append(f"Skills: {', '.join(self.skills[:15])}")
        if self.work_experience:
            latest = self.work_experience[0]
            lines.append(f"Recent role: {latest.get('title', '')} at {latest.get('company', '')}".strip())
        if self.education:
            edu = self.education[0]
            lines.append(f"Education: {edu.get('degree', '')} {edu.get('school', '')}".strip())
        return "\n".join(lines)


@dataclass
class ResumeFile:
    filename: str
    content_type: str
    file_content: str  # base64
    text: str = ""

    @property
    def has_content(self) -> bool:
        return bool(self.file_content)

    def metadata(self) -> Dict[str, str]:
        return {"filename": self.filename, "contentType": self.content_type}


@dataclass
class Applicant:
    """Everything about a user the mapper may draw on."""
    user_id: int
    name: str = ""
    email: str = ""
    phone: str = ""
    plan: SubscriptionPlan = DEFAULT_PLANS[0]
    profile: ApplicantProfile = field(default_factory=ApplicantProfile)
    resume: Optional[ResumeFile] = None
    auto_apply_enabled: bool = True

    @property
    def resume_text(self) -> str:
        return self.resume.text if self.resume else ""

    @property
    def first_name(self) -> str:
        if self.profile.first_name:
            return self.profile.first_name
        parts = (self.profile.full_name or self.name).split()
        return parts[0] if parts else ""

    @property
    def last_name(self) -> str:
        if self.profile.last_name:
            return self.profile.last_name
        parts = (self.profile.full_name or self.name).split()
        return " ".join(parts[1:]) if len(parts) > 1 else ""

    @property
    def full_name(self) -> str:
        if self.profile.full_name:
            return self.profile.full_name
        joined = f"{self.profile.first_name} {self.profile.last_name}".strip()
        return joined or self.name

    @property
    def contact_email(self) -> str:
        return self.profile.email or self.email

    @property
    def contact_phone(self) -> str:
        return self.profile.phone or self.phone


# ============== Form Schema ==============

@dataclass
class FieldOption:
    label: str
    value: str = ""

    @property
    def submit_value(self) -> str:
        return self.value or self.label


@dataclass
class FormField:
    """One introspected form field."""
    name: str
    label: str = ""
    field_type: FieldType = FieldType.TEXT
    required: bool = False
    options: List[FieldOption] = field(default_factory=list)
    selector: Optional[str] = None

    @property
    def text(self) -> str:
        """Name and label normalised for pattern matching."""
        raw = f"{self.label} {self.name}".replace("_", " ").replace("-", " ")
        return " ".join(raw.lower().split())

    @property
    def question(self) -> str:
        return self.label or self.name.replace("_", " ")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FormField":
        options = []
        for opt in data.get("options") or []:
            if isinstance(opt, dict):
                label = str(opt.get("label") or opt.get("text") or opt.get("value") or "")
                options.append(FieldOption(label=label, value=str(opt.get("value") or "")))
            else:
                options.append(FieldOption(label=str(opt)))
        name = str(data.get("name") or data.get("id") or data.get("selector") or data.get("label") or "")
        return cls(
            name=name,
            label=str(data.get("label") or ""),
            field_type=FieldType.parse(data.get("type") or data.get("field_type")),
            required=parse_flag(data.get("required", False)),
            options=options,
            selector=data.get("selector"),
        )


@dataclass
class FormSchema:
    fields: List[FormField] = field(default_factory=list)

    @property
    def required_fields(self) -> List[FormField]:
        return [f for f in self.fields if f.required]

    @classmethod
    def parse(cls, raw: Any) -> "FormSchema":
        """Accepts {fields: [...]}, {formSchema: {fields: [...]}} or a bare list."""
        if isinstance(raw, dict):
            if isinstance(raw.get("formSchema"), (dict, list)):
                return cls.parse(raw["formSchema"])
            raw = raw.get("fields")
        if not isinstance(raw, list):
            return cls()
        fields = [FormField.from_dict(item) for item in raw if isinstance(item, dict)]
        return cls(fields=[f for f in fields if f.name])


# ============== Payload ==============

@dataclass
class ApplicationPayload:
    """Field assignments computed for one queue entry."""
    fields: Dict[str, Any] = field(default_factory=dict)
    resume: Optional[Dict[str, str]] = None
    field_sources: Dict[str, str] = field(default_factory=dict)
    unassigned: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApplicationPayload":
        return cls(
            fields=dict(data.get("fields") or {}),
            resume=data.get("resume"),
            field_sources=dict(data.get("field_sources") or {}),
            unassigned=list(data.get("unassigned") or []),
        )


@dataclass
class MappingResult:
    outcome: MappingOutcome
    payload: Optional[ApplicationPayload] = None
    reason: Optional[str] = None

    @property
    def is_ready(self) -> bool:
        return self.outcome == MappingOutcome.READY
